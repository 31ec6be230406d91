"""
MODULE OVERVIEW:
The Personalized Report Engine.

WHAT IS HAPPENING HERE:
Reports differ from the model rooms in one important way: every dashboard
user picks their own date range, granularity and driver. So instead of one
shared snapshot per room, each report is computed with the filters the
client last submitted and sent to that client alone.

Periodic pushes only visit clients that asked for a report of that kind.
Clients with identical filters share one computation per tick, and every
client keeps its own last good report to fall back on. A client never sees
a report computed with somebody else's filters.
"""

from typing import Any, Dict, Iterable, List

from loguru import logger

from fleetsync.server.registry import ClientRegistry, ClientSession
from fleetsync.server.snapshots import SnapshotProvider
from fleetsync.server.validation import is_valid, placeholder
from fleetsync.shared.errors import ReportRequestError
from fleetsync.shared.models import REPORT_EVENTS, REPORT_TYPES, FilterParams, ResourceType

REPORT_ERROR_EVENT = "reportError"
UNAVAILABLE_MESSAGE = "Report data is temporarily unavailable"


class ReportEngine:
    def __init__(self, snapshots: SnapshotProvider, registry: ClientRegistry, max_range_days: int = 365):
        self.snapshots = snapshots
        self.registry = registry
        self.max_range_days = max_range_days

        # connection_id -> kind -> last good report for that client
        self.client_cache: Dict[str, Dict[ResourceType, Dict[str, Any]]] = {}
        # Reports computed with default filters, used to seed the reports room.
        self.shared_cache: Dict[ResourceType, Dict[str, Any]] = {}
        self.in_flight = False
        self.ticks_skipped = 0

        registry.removal_hooks.append(self.forget)

    def forget(self, connection_id: str):
        self.client_cache.pop(connection_id, None)

    def cached_for(self, session: ClientSession, kind: ResourceType) -> Dict[str, Any] | None:
        return self.client_cache.get(session.connection_id, {}).get(kind)

    async def compute(self, kind: ResourceType, filters: FilterParams) -> Dict[str, Any] | None:
        """Returns a validated report, or None if the query or validation failed."""
        result = await self.snapshots.fetch(kind, filters)
        if not (result.ok and is_valid(kind, result.data)):
            return None
        if filters == FilterParams.defaults_for(kind):
            self.shared_cache[kind] = result.data
        return result.data

    # ==========================
    # CLIENT REQUESTS
    # ==========================
    async def handle_request(self, session: ClientSession, kind: ResourceType, raw_params: Any) -> bool:
        """Answers one `requestX` event. Returns True when fresh data was sent."""
        events = REPORT_EVENTS[kind]
        try:
            filters = FilterParams.parse(kind, raw_params, self.max_range_days)
        except ReportRequestError as e:
            logger.warning(f"client_id={session.connection_id} report={kind.value} event=rejected reason='{e.message}'")
            await self.registry.deliver([session], REPORT_ERROR_EVENT, {"type": kind.value, **e.to_payload()})
            return False

        self.registry.set_filters(session, kind, filters)
        report = await self.compute(kind, filters)
        if report is not None:
            self.client_cache.setdefault(session.connection_id, {})[kind] = report
            await self.registry.deliver([session], events.data, report)
            return True

        cached = self.cached_for(session, kind)
        if cached is not None:
            logger.warning(f"client_id={session.connection_id} report={kind.value} event=fallback reason=cached")
            await self.registry.deliver([session], events.data, cached)
            return False

        await self.registry.deliver([session], events.data, placeholder(kind, filters, UNAVAILABLE_MESSAGE))
        await self.registry.deliver(
            [session], REPORT_ERROR_EVENT, {"type": kind.value, "message": UNAVAILABLE_MESSAGE}
        )
        return False

    async def seed(self, session: ClientSession):
        """Sends default-filter reports to a client that just joined the reports room."""
        for kind in REPORT_TYPES:
            report = self.shared_cache.get(kind)
            if report is not None:
                await self.registry.deliver([session], REPORT_EVENTS[kind].data, report)

    # ==========================
    # PERIODIC PUSH
    # ==========================
    async def broadcast(self, kinds: Iterable[ResourceType] = REPORT_TYPES) -> bool:
        if self.in_flight:
            self.ticks_skipped += 1
            logger.debug("event=report_tick_skipped reason=in_flight")
            return False

        self.in_flight = True
        try:
            for kind in kinds:
                try:
                    await self._broadcast_kind(kind)
                except Exception as e:
                    logger.error(f"report={kind.value} event=broadcast_failed reason='{e}'")
        finally:
            self.in_flight = False
        return True

    async def _broadcast_kind(self, kind: ResourceType):
        groups: Dict[FilterParams, List[ClientSession]] = {}
        for session in self.registry.sessions_with_filters(kind):
            groups.setdefault(session.filters[kind], []).append(session)

        update_event = REPORT_EVENTS[kind].update
        for filters, sessions in groups.items():
            report = await self.compute(kind, filters)
            # Clients may have left while the report was computing.
            sessions = [s for s in sessions if s.connection_id in self.registry]

            if report is not None:
                for session in sessions:
                    self.client_cache.setdefault(session.connection_id, {})[kind] = report
                await self.registry.deliver(sessions, update_event, report)
                continue

            logger.warning(f"report={kind.value} event=periodic_fallback clients={len(sessions)}")
            for session in sessions:
                cached = self.cached_for(session, kind)
                if cached is None:
                    cached = placeholder(kind, filters, UNAVAILABLE_MESSAGE)
                await self.registry.deliver([session], update_event, cached)

        if groups:
            logger.debug(f"report={kind.value} event=periodic_push groups={len(groups)}")
