"""
MODULE OVERVIEW:
The Broadcast Engine.

WHAT IS HAPPENING HERE:
One broadcast cycle for a resource type goes IDLE -> COMPUTING and then ends
in one of three ways before returning to IDLE:

  SENT           fresh snapshot validated, cached, pushed to the room
  FALLBACK_SENT  snapshot failed, the last good payload is pushed again
  SUPPRESSED     snapshot failed and nothing is cached, nobody hears anything

A single in-flight flag guards the whole model group. While a refresh is
running, any other trigger (a change event, a timer tick, a manual refresh)
is dropped rather than queued: the running cycle already reflects the latest
state it could read and the next tick catches whatever it missed.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable

from loguru import logger

from fleetsync.server.registry import ClientRegistry, ClientSession
from fleetsync.server.snapshots import SnapshotProvider
from fleetsync.server.validation import is_valid, model_update, placeholder
from fleetsync.shared.models import MODEL_TYPES, ChangeEvent, ResourceType

# Changes to these collections also move the dashboard numbers.
DASHBOARD_SOURCES = (ResourceType.VEHICLES, ResourceType.DRIVERS, ResourceType.RIDES)


class CycleState(str, Enum):
    IDLE = "idle"
    COMPUTING = "computing"
    SENT = "sent"
    FALLBACK_SENT = "fallback_sent"
    SUPPRESSED = "suppressed"


@dataclass
class CachedPayload:
    resource_type: ResourceType
    payload: Dict[str, Any]
    updated_at: datetime


class BroadcastEngine:
    def __init__(
        self,
        snapshots: SnapshotProvider,
        registry: ClientRegistry,
        settle_delay_s: float = 0.1,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.snapshots = snapshots
        self.registry = registry
        self.settle_delay_s = settle_delay_s
        self.clock = clock

        self.cache: Dict[ResourceType, CachedPayload] = {}
        self.states: Dict[ResourceType, CycleState] = {rt: CycleState.IDLE for rt in MODEL_TYPES}
        self.last_outcome: Dict[ResourceType, CycleState] = {}
        self.in_flight = False
        self.cycles_run = 0
        self.triggers_dropped = 0

    def cached(self, resource_type: ResourceType) -> CachedPayload | None:
        return self.cache.get(resource_type)

    # ==========================
    # TRIGGERS
    # ==========================
    async def refresh(self, types: Iterable[ResourceType] = MODEL_TYPES, reason: str = "manual") -> bool:
        """Runs one cycle per type. Returns False if the trigger was dropped."""
        if self.in_flight:
            self.triggers_dropped += 1
            logger.debug(f"event=refresh_dropped reason={reason}")
            return False

        self.in_flight = True
        try:
            for resource_type in types:
                await self.run_cycle(resource_type)
        finally:
            self.in_flight = False
        return True

    async def warm(self):
        await self.refresh(MODEL_TYPES, reason="startup")
        logger.info(f"event=cache_warmed cached={sorted(rt.value for rt in self.cache)}")

    async def on_change(self, event: ChangeEvent):
        resource_type = event.resource_type
        await self.registry.deliver(
            self.registry.members(resource_type.room), event.advisory_event, event.advisory_payload()
        )

        # Let bursts of related writes land before querying.
        await asyncio.sleep(self.settle_delay_s)

        types = [resource_type]
        if resource_type in DASHBOARD_SOURCES:
            types.append(ResourceType.DASHBOARD)
        await self.refresh(types, reason=f"change:{event.advisory_event}")

    # ==========================
    # ONE CYCLE
    # ==========================
    async def run_cycle(self, resource_type: ResourceType) -> CycleState:
        self.states[resource_type] = CycleState.COMPUTING
        self.cycles_run += 1
        try:
            outcome = await self._compute_and_send(resource_type)
        except Exception as e:
            logger.error(f"resource={resource_type.value} event=cycle_failed reason='{e}'")
            outcome = CycleState.SUPPRESSED
        self.last_outcome[resource_type] = outcome
        self.states[resource_type] = CycleState.IDLE
        return outcome

    async def _compute_and_send(self, resource_type: ResourceType) -> CycleState:
        result = await self.snapshots.fetch(resource_type)

        if result.ok and is_valid(resource_type, result.data):
            now = self.clock()
            payload = model_update(result.data, now)
            self.cache[resource_type] = CachedPayload(resource_type, payload, now)
            sent = await self.registry.deliver(
                self.registry.members(resource_type.room), resource_type.update_event, payload
            )
            logger.debug(f"resource={resource_type.value} event=broadcast clients={sent}")
            return CycleState.SENT

        cached = self.cache.get(resource_type)
        if cached:
            await self.registry.deliver(
                self.registry.members(resource_type.room), resource_type.update_event, cached.payload
            )
            logger.warning(f"resource={resource_type.value} event=broadcast_fallback reason=cached")
            return CycleState.FALLBACK_SENT

        logger.warning(f"resource={resource_type.value} event=broadcast_suppressed reason=no_cache")
        return CycleState.SUPPRESSED

    # ==========================
    # SINGLE CLIENT
    # ==========================
    async def seed(self, session: ClientSession, resource_type: ResourceType) -> bool:
        """Sends the cached payload, or an explicit empty placeholder on a cold cache."""
        cached = self.cache.get(resource_type)
        payload = cached.payload if cached else placeholder(resource_type)
        await self.registry.deliver([session], resource_type.update_event, payload)
        return cached is not None

    async def request_refresh(self, session: ClientSession, resource_type: ResourceType):
        ran = await self.refresh([resource_type], reason=f"request:{session.connection_id}")
        if not ran or resource_type.room not in session.joined_rooms:
            await self.seed(session, resource_type)
