"""
MODULE OVERVIEW:
The Change Watcher.

WHAT IS HAPPENING HERE:
One long-lived asyncio task per watched collection. On a replica set each
task holds a MongoDB change stream open and turns every insert, update,
replace or delete into a ChangeEvent on the ChangeBus. A standalone server
has no change streams, so each task falls back to polling the collection's
modification timestamp instead.

A watch that errors or closes is never given up on: it is marked
disconnected, waits a fixed delay and re-opens, for as long as the process
lives. Other collections' watches are unaffected.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List

from loguru import logger

from fleetsync.server.persistence import CANONICAL_QUERIES, PersistenceGateway, to_jsonable
from fleetsync.shared.events import ChangeBus
from fleetsync.shared.models import WATCHED_TYPES, ChangeEvent, ResourceType

OPERATIONS = ("insert", "update", "replace", "delete")


def normalize_change(resource_type: ResourceType, change: Dict[str, Any]) -> ChangeEvent | None:
    """Turns a raw change stream document into a ChangeEvent, or None to skip it."""
    operation = change.get("operationType")
    if operation not in OPERATIONS:
        return None

    key = (change.get("documentKey") or {}).get("_id")
    document = change.get("fullDocument")
    if document:
        document = to_jsonable(document)
        for name in CANONICAL_QUERIES[resource_type].exclude:
            document.pop(name, None)

    return ChangeEvent(
        resource_type=resource_type,
        operation_type=operation,
        affected_id=str(key) if key is not None else None,
        full_document=document or None,
    )


class ChangeWatcher:
    def __init__(
        self,
        gateway: PersistenceGateway,
        bus: ChangeBus,
        reconnect_delay_s: float = 5.0,
        poll_interval_s: float = 2.0,
        types: Iterable[ResourceType] = WATCHED_TYPES,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.gateway = gateway
        self.bus = bus
        self.reconnect_delay_s = reconnect_delay_s
        self.poll_interval_s = poll_interval_s
        self.types = tuple(types)
        self.clock = clock

        self.mode = "stopped"
        self.connected: Dict[ResourceType, bool] = {rt: False for rt in self.types}
        self.reconnects: Dict[ResourceType, int] = {rt: 0 for rt in self.types}
        self._last_seen: Dict[ResourceType, datetime] = {}
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        try:
            use_streams = await self.gateway.supports_change_streams()
        except Exception as e:
            logger.warning(f"event=capability_check_failed reason='{e}'")
            use_streams = False

        self.mode = "change_stream" if use_streams else "polling"
        started = self.clock()
        for resource_type in self.types:
            if use_streams:
                loop = self._watch_loop(resource_type)
            else:
                self._last_seen[resource_type] = started
                loop = self._poll_loop(resource_type)
            self._tasks.append(asyncio.create_task(loop, name=f"watch-{resource_type.value}"))
        logger.info(f"event=watcher_started mode={self.mode} watches={len(self._tasks)}")

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self.connected = {rt: False for rt in self.types}
        self.mode = "stopped"

    def state(self) -> Dict[str, bool]:
        return {rt.value: up for rt, up in self.connected.items()}

    # ==========================
    # CHANGE STREAMS
    # ==========================
    async def _watch_loop(self, resource_type: ResourceType):
        while True:
            try:
                async with self.gateway.watch(resource_type) as stream:
                    self.connected[resource_type] = True
                    logger.info(f"resource={resource_type.value} event=watch_open")
                    async for change in stream:
                        event = normalize_change(resource_type, change)
                        if event:
                            await self.bus.publish(event)
                logger.warning(f"resource={resource_type.value} event=watch_closed")
            except Exception as e:
                logger.error(f"resource={resource_type.value} event=watch_error reason='{e}'")

            self.connected[resource_type] = False
            self.reconnects[resource_type] += 1
            logger.info(
                f"resource={resource_type.value} event=watch_reconnect "
                f"delay_s={self.reconnect_delay_s} attempt={self.reconnects[resource_type]}"
            )
            await asyncio.sleep(self.reconnect_delay_s)

    # ==========================
    # POLLING FALLBACK
    # ==========================
    async def _poll_loop(self, resource_type: ResourceType):
        while True:
            await asyncio.sleep(self.poll_interval_s)
            try:
                latest = await self.gateway.latest_modified(resource_type)
            except Exception as e:
                self.connected[resource_type] = False
                logger.error(f"resource={resource_type.value} event=poll_error reason='{e}'")
                continue

            self.connected[resource_type] = True
            if not latest:
                continue
            affected_id, modified = latest
            if modified.tzinfo is None:
                modified = modified.replace(tzinfo=timezone.utc)
            if modified > self._last_seen[resource_type]:
                self._last_seen[resource_type] = modified
                await self.bus.publish(
                    ChangeEvent(resource_type=resource_type, operation_type="update", affected_id=affected_id)
                )
