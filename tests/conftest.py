import asyncio
import copy
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from fleetsync.server.broadcast import BroadcastEngine
from fleetsync.server.connection_manager import ConnectionManager
from fleetsync.server.registry import ClientRegistry
from fleetsync.server.report_engine import ReportEngine
from fleetsync.server.snapshots import SnapshotProvider
from fleetsync.shared.models import ResourceType

NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)
DRIVER_A = "a" * 24
DRIVER_B = "b" * 24


def ride(ride_id, when, status, amount, service, driver_id, driver_name):
    return {
        "_id": ride_id,
        "rideTime": when,
        "status": status,
        "amount": amount,
        "service": service,
        "driver": {"_id": driver_id, "name": driver_name},
    }


SAMPLE_RIDES = [
    ride("r1", datetime(2024, 5, 15, 9, 30, tzinfo=timezone.utc), "completed", 120, "Sedan", DRIVER_A, "Asha"),
    ride("r2", datetime(2024, 5, 15, 10, 15, tzinfo=timezone.utc), "cancelled", 0, "SUV", DRIVER_B, "Ravi"),
    ride("r3", datetime(2024, 5, 15, 10, 45, tzinfo=timezone.utc), "completed", 80, "Sedan", DRIVER_B, "Ravi"),
    ride("r4", datetime(2024, 5, 14, 18, 0, tzinfo=timezone.utc), "completed", 200, "SUV", DRIVER_A, "Asha"),
    ride("r5", datetime(2024, 5, 12, 8, 0, tzinfo=timezone.utc), "pending", 50, "Auto", DRIVER_A, "Asha"),
    ride("r6", datetime(2024, 4, 20, 8, 0, tzinfo=timezone.utc), "completed", 300, "Sedan", DRIVER_B, "Ravi"),
]

SAMPLE_COLLECTIONS = {
    ResourceType.VEHICLES: [
        {"_id": "v1", "registrationNumber": "KA01AB1234", "assignedDriver": {"_id": DRIVER_A, "name": "Asha"}},
        {"_id": "v2", "registrationNumber": "KA01CD5678", "assignedDriver": None},
    ],
    ResourceType.DRIVERS: [
        {"_id": DRIVER_A, "name": "Asha", "isOnline": True},
        {"_id": DRIVER_B, "name": "Ravi", "isOnline": False},
    ],
    ResourceType.RIDES: [{"_id": r["_id"], "status": r["status"]} for r in SAMPLE_RIDES],
    ResourceType.ADMINS: [{"_id": "ad1", "name": "Root"}],
    ResourceType.COMPLAINTS: [],
}


class FakeGateway:
    """In-memory PersistenceGateway. Change streams are fed through queues."""

    def __init__(self, collections=None, rides=None, change_streams=False):
        self.collections = copy.deepcopy(SAMPLE_COLLECTIONS if collections is None else collections)
        self.rides = list(SAMPLE_RIDES if rides is None else rides)
        self.change_streams = change_streams
        self.online_drivers = 4
        self.driver_joins = [NOW - timedelta(days=2), NOW - timedelta(days=9)]

        self.failures = {}
        self.rides_failure = None
        self.ping_failure = None
        self.gate = None
        self.fetch_calls = Counter()

        self.latest = {}
        self.watch_errors = Counter()
        self.watch_opened = Counter()
        self._streams = {}
        self.closed = False

    async def ping(self):
        if self.ping_failure is not None:
            raise self.ping_failure
        return True

    async def close(self):
        self.closed = True

    async def supports_change_streams(self):
        return self.change_streams

    async def fetch_collection(self, resource_type):
        self.fetch_calls[resource_type] += 1
        if self.gate is not None:
            await self.gate.wait()
        if resource_type in self.failures:
            raise self.failures[resource_type]
        return copy.deepcopy(self.collections.get(resource_type, []))

    async def latest_modified(self, resource_type):
        return self.latest.get(resource_type)

    async def rides_between(self, start, end, driver_id=None):
        if self.rides_failure is not None:
            raise self.rides_failure
        return [
            r for r in self.rides
            if start <= r["rideTime"] <= end and (driver_id is None or r["driver"]["_id"] == driver_id)
        ]

    async def count_drivers(self, online=True, joined_between=None):
        if joined_between is None:
            return self.online_drivers
        start, end = joined_between
        return sum(1 for joined in self.driver_joins if start <= joined <= end)

    def stream(self, resource_type) -> asyncio.Queue:
        return self._streams.setdefault(resource_type, asyncio.Queue())

    @asynccontextmanager
    async def watch(self, resource_type):
        self.watch_opened[resource_type] += 1
        if self.watch_errors[resource_type] > 0:
            self.watch_errors[resource_type] -= 1
            raise ConnectionError("change stream unavailable")

        queue = self.stream(resource_type)

        async def changes():
            while True:
                item = await queue.get()
                if item is None:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item

        yield changes()


class FakeConnection:
    def __init__(self, fail=False):
        self.sent = []
        self.closed = False
        self.fail = fail

    async def send(self, event, data):
        if self.fail:
            raise ConnectionError("socket gone")
        self.sent.append((event, data))

    async def close(self):
        self.closed = True

    def names(self):
        return [event for event, _ in self.sent]

    def events(self, name):
        return [data for event, data in self.sent if event == name]

    def last(self, name):
        found = self.events(name)
        return found[-1] if found else None


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now += timedelta(**delta)


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def connection():
    return FakeConnection


@pytest.fixture
def waiter():
    return wait_until


@pytest.fixture
def services(gateway, clock):
    registry = ClientRegistry(clock=clock)
    snapshots = SnapshotProvider(gateway, clock=clock)
    broadcaster = BroadcastEngine(snapshots, registry, settle_delay_s=0, clock=clock)
    reports = ReportEngine(snapshots, registry)
    manager = ConnectionManager(registry, broadcaster, reports)
    return SimpleNamespace(
        gateway=gateway,
        registry=registry,
        snapshots=snapshots,
        broadcaster=broadcaster,
        reports=reports,
        manager=manager,
    )
