"""
MODULE OVERVIEW:
The Client Registry.

WHAT IS HAPPENING HERE:
Every open dashboard tab is a ClientSession. The session does not hold the
WebSocket itself, only two callables the transport hands over (`send` and
`close`), so the broadcast layer can be driven by anything that can deliver a
named event: a FastAPI WebSocket in production, a list in the tests.

Rooms are plain strings on the session. A room's members are computed on
demand, which keeps a single source of truth for membership.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List

from loguru import logger

from fleetsync.shared.models import FilterParams, ResourceType, resolve_room

Send = Callable[[str, Any], Awaitable[None]]
Close = Callable[[], Awaitable[None]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class ClientSession:
    connection_id: str
    send: Send
    close: Close
    connected_at: datetime
    last_activity: datetime
    joined_rooms: set[str] = field(default_factory=set)
    filters: Dict[ResourceType, FilterParams] = field(default_factory=dict)
    page: str | None = None


class ClientRegistry:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._sessions: Dict[str, ClientSession] = {}
        # Called with the connection id whenever a session leaves the registry.
        self.removal_hooks: List[Callable[[str], None]] = []

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._sessions

    def sessions(self) -> List[ClientSession]:
        return list(self._sessions.values())

    # ==========================
    # LIFECYCLE
    # ==========================
    def add(self, connection_id: str, send: Send, close: Close) -> ClientSession:
        if connection_id in self._sessions:
            connection_id = f"{connection_id}-{uuid.uuid4().hex[:4]}"
        now = self.clock()
        session = ClientSession(
            connection_id=connection_id, send=send, close=close,
            connected_at=now, last_activity=now,
        )
        self._sessions[connection_id] = session
        return session

    def get(self, connection_id: str) -> ClientSession | None:
        return self._sessions.get(connection_id)

    def remove(self, connection_id: str) -> ClientSession | None:
        session = self._sessions.pop(connection_id, None)
        if session:
            for hook in self.removal_hooks:
                hook(connection_id)
        return session

    def touch(self, session: ClientSession):
        session.last_activity = self.clock()

    # ==========================
    # ROOMS
    # ==========================
    def join(self, session: ClientSession, room: str) -> str:
        """Raises UnknownResourceError for rooms nobody broadcasts in."""
        canonical = resolve_room(room)
        session.joined_rooms.add(canonical)
        return canonical

    def leave(self, session: ClientSession, room: str) -> str:
        canonical = resolve_room(room)
        session.joined_rooms.discard(canonical)
        return canonical

    def members(self, room: str) -> List[ClientSession]:
        return [s for s in self._sessions.values() if room in s.joined_rooms]

    def room_sizes(self) -> Dict[str, int]:
        sizes: Dict[str, int] = {}
        for session in self._sessions.values():
            for room in session.joined_rooms:
                sizes[room] = sizes.get(room, 0) + 1
        return sizes

    # ==========================
    # REPORT FILTERS
    # ==========================
    def set_filters(self, session: ClientSession, kind: ResourceType, filters: FilterParams):
        session.filters[kind] = filters

    def sessions_with_filters(self, kind: ResourceType) -> List[ClientSession]:
        return [s for s in self._sessions.values() if kind in s.filters]

    def stale(self, threshold_s: float, reports_only: bool = False) -> List[ClientSession]:
        """
        The general sweep (reports_only=False) only looks at sessions holding
        no report filters; those answer to the longer report threshold.
        """
        cutoff = self.clock() - timedelta(seconds=threshold_s)
        return [
            s for s in self._sessions.values()
            if s.last_activity < cutoff and bool(s.filters) == reports_only
        ]

    # ==========================
    # DELIVERY
    # ==========================
    async def deliver(self, sessions: Iterable[ClientSession], event: str, payload: Any) -> int:
        """
        Sends one event to each session in turn. A session whose transport
        fails is dropped; the others still receive the event.
        """
        delivered = 0
        dropped = []
        for session in list(sessions):
            try:
                await session.send(event, payload)
                delivered += 1
            except Exception as e:
                logger.warning(f"client_id={session.connection_id} event=send_failed name={event} reason='{e}'")
                dropped.append(session)
        for session in dropped:
            self.remove(session.connection_id)
        return delivered
