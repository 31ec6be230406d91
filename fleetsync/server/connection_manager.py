"""
MODULE OVERVIEW:
The Connection Lifecycle Manager.

WHAT IS HAPPENING HERE:
This is the only object the transport talks to. A WebSocket route hands it
a new connection (as `send`/`close` callables), then every inbound message,
then the disconnect. Everything in between is delegated: bookkeeping to the
ClientRegistry, model rooms to the BroadcastEngine and reports to the
ReportEngine.

Onboarding never waits for the next change or timer. A new connection is
put in the `dashboard` room and immediately receives whatever was last
computed for it, so the first paint is never empty once any data exists.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict

from loguru import logger

from fleetsync.server.broadcast import BroadcastEngine
from fleetsync.server.registry import ClientRegistry, ClientSession, Close, Send
from fleetsync.server.report_engine import ReportEngine
from fleetsync.server.watcher import ChangeWatcher
from fleetsync.shared.errors import UnknownResourceError
from fleetsync.shared.models import (
    DEFAULT_ROOM,
    MODEL_TYPES,
    REPORT_REQUESTS,
    REPORTS_ROOM,
    ConnectionStats,
    ResourceType,
)

Handler = Callable[[ClientSession, Any], Awaitable[None]]


def _model_type(name: Any) -> ResourceType:
    resource_type = ResourceType.from_name(name)
    if resource_type.is_report:
        raise UnknownResourceError(str(name))
    return resource_type


class ConnectionManager:
    def __init__(
        self,
        registry: ClientRegistry,
        broadcaster: BroadcastEngine,
        reports: ReportEngine,
        watcher: ChangeWatcher | None = None,
    ):
        self.registry = registry
        self.broadcaster = broadcaster
        self.reports = reports
        self.watcher = watcher
        self.startup_time = datetime.now(timezone.utc)

        self._handlers: Dict[str, Handler] = {
            "client-connected": self._on_client_connected,
            "join-room": self._on_join_room,
            "leave-room": self._on_leave_room,
            "getLatestData": self._on_get_latest,
            "getLatestVehicles": self._on_get_latest_vehicles,
            "refresh-data": self._on_refresh_data,
            "client-heartbeat": self._on_heartbeat,
        }

    def uptime_s(self) -> float:
        return (datetime.now(timezone.utc) - self.startup_time).total_seconds()

    async def emit(self, session: ClientSession, event: str, data: Any):
        await self.registry.deliver([session], event, data)

    # ==========================
    # CONNECT / DISCONNECT
    # ==========================
    async def connect(self, connection_id: str, send: Send, close: Close) -> ClientSession:
        session = self.registry.add(connection_id, send, close)
        self.registry.join(session, DEFAULT_ROOM)
        logger.info(f"client_id={session.connection_id} event=connect room={DEFAULT_ROOM}")

        await self.emit(session, "connection-established", {
            "message": "Connection successful",
            "socketId": session.connection_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        await self.broadcaster.seed(session, ResourceType.DASHBOARD)
        return session

    def disconnect(self, session: ClientSession, reason: str = "client"):
        if self.registry.remove(session.connection_id):
            logger.info(f"client_id={session.connection_id} event=disconnect reason={reason}")

    async def evict_stale(self, threshold_s: float, reports_only: bool = False) -> int:
        stale = self.registry.stale(threshold_s, reports_only=reports_only)
        for session in stale:
            self.disconnect(session, reason="stale")
            try:
                await session.close()
            except Exception as e:
                logger.debug(f"client_id={session.connection_id} event=close_failed reason='{e}'")
        if stale:
            logger.info(f"event=stale_sweep evicted={len(stale)} reports_only={reports_only}")
        return len(stale)

    async def refresh_models(self) -> bool:
        """Timer tick: keeps model rooms fresh while anybody is listening."""
        if not len(self.registry):
            return False
        return await self.broadcaster.refresh(MODEL_TYPES, reason="timer")

    # ==========================
    # INBOUND MESSAGES
    # ==========================
    async def handle_message(self, session: ClientSession, event: str, data: Any = None):
        self.registry.touch(session)

        if event in REPORT_REQUESTS:
            await self.reports.handle_request(session, REPORT_REQUESTS[event], data)
            return

        handler = self._handlers.get(event)
        if handler is None:
            logger.debug(f"client_id={session.connection_id} event=ignored name={event}")
            return
        try:
            await handler(session, data)
        except UnknownResourceError as e:
            logger.warning(f"client_id={session.connection_id} event=unknown_resource name={e.name}")
            await self.emit(session, "error", {"message": str(e)})

    async def join_room(self, session: ClientSession, room: Any):
        canonical = self.registry.join(session, room)
        logger.info(f"client_id={session.connection_id} event=join room={canonical}")
        if canonical == REPORTS_ROOM:
            await self.reports.seed(session)
        else:
            await self.broadcaster.seed(session, ResourceType.from_name(canonical))

    async def _on_join_room(self, session: ClientSession, data: Any):
        room = data.get("room") if isinstance(data, dict) else data
        await self.join_room(session, room)

    async def _on_leave_room(self, session: ClientSession, data: Any):
        room = data.get("room") if isinstance(data, dict) else data
        canonical = self.registry.leave(session, room)
        logger.info(f"client_id={session.connection_id} event=leave room={canonical}")

    async def _on_client_connected(self, session: ClientSession, data: Any):
        if isinstance(data, dict):
            session.page = data.get("page")
        await self.emit(session, "server-welcome", {
            "message": "Welcome to the vehicle management system",
            "serverTime": datetime.now(timezone.utc).isoformat(),
            "clientId": session.connection_id,
        })
        for resource_type in MODEL_TYPES:
            await self.broadcaster.seed(session, resource_type)

    async def _on_get_latest(self, session: ClientSession, data: Any):
        model = data.get("model") if isinstance(data, dict) else data
        await self.broadcaster.request_refresh(session, _model_type(model))

    async def _on_get_latest_vehicles(self, session: ClientSession, data: Any):
        await self.broadcaster.request_refresh(session, ResourceType.VEHICLES)

    async def _on_refresh_data(self, session: ClientSession, data: Any):
        models = data.get("models") if isinstance(data, dict) else None
        if models is not None and not isinstance(models, list):
            raise UnknownResourceError(str(models))
        types = [_model_type(name) for name in models] if models else list(MODEL_TYPES)

        ran = await self.broadcaster.refresh(types, reason=f"refresh-data:{session.connection_id}")
        for resource_type in types:
            if not ran or resource_type.room not in session.joined_rooms:
                await self.broadcaster.seed(session, resource_type)

        await self.emit(session, "refresh-complete", {
            "success": True,
            "message": "Data refreshed successfully",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    async def _on_heartbeat(self, session: ClientSession, data: Any):
        await self.emit(session, "server-heartbeat", {
            "message": "Server is alive",
            "serverTime": datetime.now(timezone.utc).isoformat(),
            "clientId": data.get("clientId") if isinstance(data, dict) else session.connection_id,
            "uptime": self.uptime_s(),
        })

    # ==========================
    # METRICS
    # ==========================
    def get_stats(self) -> ConnectionStats:
        return ConnectionStats(
            connected_clients=len(self.registry),
            rooms=self.registry.room_sizes(),
            cached_resources=sorted(rt.value for rt in self.broadcaster.cache),
            broadcast_in_flight=self.broadcaster.in_flight,
            reports_in_flight=self.reports.in_flight,
            watch_mode=self.watcher.mode if self.watcher else "disabled",
            watches=self.watcher.state() if self.watcher else {},
            reconnects={rt.value: n for rt, n in self.watcher.reconnects.items()} if self.watcher else {},
            uptime_s=self.uptime_s(),
            server_time=datetime.now(timezone.utc),
        )
