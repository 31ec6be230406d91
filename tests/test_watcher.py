import asyncio
from datetime import datetime, timedelta, timezone

from bson import ObjectId

from fleetsync.server.watcher import ChangeWatcher, normalize_change
from fleetsync.shared.events import ChangeBus
from fleetsync.shared.models import ResourceType

STARTED = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


def _collecting_bus(*first):
    bus = ChangeBus()
    for callback in first:
        bus.subscribe(callback)
    received = []

    async def collect(event):
        received.append(event)

    bus.subscribe(collect)
    return bus, received


def test_normalize_change_serialises_and_strips_secrets():
    oid = ObjectId()
    event = normalize_change(ResourceType.ADMINS, {
        "operationType": "update",
        "documentKey": {"_id": oid},
        "fullDocument": {"_id": oid, "name": "Root", "password": "hash", "updatedAt": STARTED},
    })
    assert event.affected_id == str(oid)
    assert event.full_document == {"_id": str(oid), "name": "Root", "updatedAt": STARTED.isoformat()}


def test_normalize_change_skips_other_operations():
    assert normalize_change(ResourceType.RIDES, {"operationType": "invalidate"}) is None
    delete = normalize_change(ResourceType.RIDES, {"operationType": "delete", "documentKey": {"_id": "r1"}})
    assert delete.full_document is None
    assert delete.advisory_payload()["data"] == {"_id": "r1"}


def test_watch_reconnects_after_failure_and_resumes(gateway, waiter):
    gateway.change_streams = True
    gateway.watch_errors[ResourceType.VEHICLES] = 1
    bus, received = _collecting_bus()
    watcher = ChangeWatcher(gateway, bus, reconnect_delay_s=0.01, types=[ResourceType.VEHICLES])

    async def scenario():
        await watcher.start()
        await waiter(lambda: watcher.connected[ResourceType.VEHICLES])
        gateway.stream(ResourceType.VEHICLES).put_nowait(
            {"operationType": "insert", "documentKey": {"_id": "v3"}, "fullDocument": {"_id": "v3"}}
        )
        await waiter(lambda: received)
        await watcher.stop()

    asyncio.run(scenario())

    assert watcher.mode == "stopped"
    assert gateway.watch_opened[ResourceType.VEHICLES] == 2
    assert watcher.reconnects[ResourceType.VEHICLES] == 1
    assert received[0].advisory_event == "vehicles:insert"
    assert received[0].affected_id == "v3"


def test_stream_error_mid_flight_reopens(gateway, waiter):
    gateway.change_streams = True
    bus, received = _collecting_bus()
    watcher = ChangeWatcher(gateway, bus, reconnect_delay_s=0.01, types=[ResourceType.RIDES])

    async def scenario():
        await watcher.start()
        stream = gateway.stream(ResourceType.RIDES)
        await waiter(lambda: watcher.connected[ResourceType.RIDES])
        stream.put_nowait(RuntimeError("cursor killed"))
        await waiter(lambda: gateway.watch_opened[ResourceType.RIDES] == 2)
        stream.put_nowait({"operationType": "update", "documentKey": {"_id": "r1"}})
        await waiter(lambda: received)
        await watcher.stop()

    asyncio.run(scenario())
    assert watcher.reconnects[ResourceType.RIDES] == 1
    assert received[0].affected_id == "r1"


def test_failing_subscriber_does_not_kill_the_watch(gateway, waiter):
    gateway.change_streams = True

    async def explode(event):
        raise ValueError("subscriber bug")

    bus, received = _collecting_bus(explode)
    watcher = ChangeWatcher(gateway, bus, reconnect_delay_s=0.01, types=[ResourceType.DRIVERS])

    async def scenario():
        await watcher.start()
        await waiter(lambda: watcher.connected[ResourceType.DRIVERS])
        for key in ("d1", "d2"):
            gateway.stream(ResourceType.DRIVERS).put_nowait({"operationType": "update", "documentKey": {"_id": key}})
        await waiter(lambda: len(received) == 2)
        await watcher.stop()

    asyncio.run(scenario())
    assert watcher.reconnects[ResourceType.DRIVERS] == 0
    assert [e.affected_id for e in received] == ["d1", "d2"]


def test_polling_fallback_detects_new_modifications(gateway, waiter):
    gateway.latest[ResourceType.VEHICLES] = ("v1", STARTED - timedelta(minutes=5))
    bus, received = _collecting_bus()
    watcher = ChangeWatcher(
        gateway, bus, poll_interval_s=0.01, types=[ResourceType.VEHICLES], clock=lambda: STARTED
    )

    async def scenario():
        await watcher.start()
        assert watcher.mode == "polling"
        await waiter(lambda: watcher.connected[ResourceType.VEHICLES])
        await asyncio.sleep(0.03)
        assert received == []

        gateway.latest[ResourceType.VEHICLES] = ("v2", STARTED + timedelta(seconds=1))
        await waiter(lambda: received)
        await asyncio.sleep(0.03)
        await watcher.stop()

    asyncio.run(scenario())
    assert len(received) == 1
    assert received[0].affected_id == "v2"
    assert received[0].operation_type == "update"
