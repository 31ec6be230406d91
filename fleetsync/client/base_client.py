from abc import ABC, abstractmethod
import asyncio
from typing import Awaitable, Callable

from fleetsync.shared.client_utils import make_client_stats, with_reconnect
from fleetsync.shared.models import Envelope

UPDATE_SUFFIXES = ("Update", "Data", "dashboardStats")


class BaseDashboardClient(ABC):
    transport_name: str = "unknown"

    def __init__(self, client_id: str, server_base_url: str):
        self.client_id = client_id
        self.server_base_url = server_base_url.rstrip('/')

        self.on_event_callback: Callable[[Envelope], Awaitable[None]] | None = None
        self.on_status_change_callback: Callable[[str], Awaitable[None]] | None = None

        self.stats = make_client_stats()
        self._is_running = False

    @property
    def events_received(self): return self.stats["events_received"]

    @property
    def updates_received(self): return self.stats["updates_received"]

    @property
    def report_errors(self): return self.stats["report_errors"]

    @property
    def reconnect_count(self): return self.stats["reconnect_count"]

    def set_callbacks(self, on_event, on_status_change):
        self.on_event_callback = on_event
        self.on_status_change_callback = on_status_change

    async def _emit_status(self, status: str):
        if self.on_status_change_callback:
            await self.on_status_change_callback(status)

    async def on_event(self, envelope: Envelope):
        self.stats["events_received"] += 1
        if envelope.event.endswith(UPDATE_SUFFIXES):
            self.stats["updates_received"] += 1
        elif envelope.event == "reportError":
            self.stats["report_errors"] += 1
        if self.on_event_callback:
            await self.on_event_callback(envelope)

    @abstractmethod
    async def connect(self) -> None:
        """The transport loop runs here and raises when the connection drops."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Closes the live transport, if any. Called once the run loop ends."""
        pass

    async def run(self, duration_s: float = 60.0) -> None:
        self._is_running = True
        try:
            await with_reconnect(self.connect, self.stats, duration_s, client_id=self.client_id)
        except asyncio.CancelledError:
            pass
        finally:
            self._is_running = False
            await self.disconnect()
            await self._emit_status("CLOSED")
