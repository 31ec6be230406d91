"""
MODULE OVERVIEW:
The WebSocket observer client.

WHAT IS HAPPENING HERE:
We use the `websockets` library. Two loops share one socket: the reader turns
every incoming {"event", "data"} envelope into an on_event callback, and a
heartbeat task sends `client-heartbeat` so the server's stale sweep never
evicts a tab that is just sitting there watching. On every (re)connect the
client announces itself, re-joins its rooms and re-submits its report
request, since the server forgets all of that when a connection drops.
"""

import asyncio
import json
from typing import Any, Iterable

import websockets
from loguru import logger

from fleetsync.client.base_client import BaseDashboardClient
from fleetsync.shared.models import REPORT_EVENTS, Envelope, ResourceType


class DashboardSocketClient(BaseDashboardClient):
    transport_name: str = "websocket"

    def __init__(
        self,
        client_id: str,
        server_base_url: str,
        rooms: Iterable[str] = (),
        report: ResourceType | None = None,
        report_params: dict[str, Any] | None = None,
        heartbeat_interval_s: float = 30.0,
    ):
        super().__init__(client_id, server_base_url)
        self.ws_url = (
            f"{self.server_base_url.replace('http://', 'ws://').replace('https://', 'wss://')}"
            f"/ws/connect?client_id={self.client_id}"
        )
        self.rooms = list(rooms)
        self.report = report
        self.report_params = report_params or {}
        self.heartbeat_interval_s = heartbeat_interval_s
        self._ws = None

    async def disconnect(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    def opening_messages(self) -> list[Envelope]:
        messages = [Envelope(event="client-connected", data={"page": "cli"})]
        messages += [Envelope(event="join-room", data=room) for room in self.rooms]
        if self.report:
            messages.append(Envelope(event=REPORT_EVENTS[self.report].request, data=self.report_params))
        return messages

    async def _heartbeat(self, ws):
        while True:
            await asyncio.sleep(self.heartbeat_interval_s)
            await ws.send(Envelope(event="client-heartbeat", data={"clientId": self.client_id}).model_dump_json())

    async def connect(self) -> None:
        async with websockets.connect(self.ws_url) as ws:
            self._ws = ws
            await self._emit_status("ACTIVE")
            for message in self.opening_messages():
                await ws.send(message.model_dump_json())

            heartbeat = asyncio.create_task(self._heartbeat(ws))
            try:
                while True:
                    message = await ws.recv()
                    self.stats["bytes_received"] += len(message)
                    try:
                        envelope = Envelope.model_validate(json.loads(message))
                    except (json.JSONDecodeError, ValueError) as e:
                        logger.debug(f"client_id={self.client_id} event=bad_frame reason='{e}'")
                        continue
                    await self.on_event(envelope)
            finally:
                heartbeat.cancel()
                self._ws = None
                await self._emit_status("RECONNECTING")
