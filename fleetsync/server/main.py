"""
MODULE OVERVIEW:
The FastAPI application Factory.

WHAT IS HAPPENING HERE:
create_app() builds every service once and stores it on `app.state`; route
handlers and timers reach them only from there. On startup the lifespan
warms the model cache, opens the change watches and spawns the periodic
loops (model refresh, report pushes, stale sweeps) as background tasks.
On shutdown the `finally` side cancels all of them and closes the database
client.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from fleetsync.server.broadcast import BroadcastEngine
from fleetsync.server.connection_manager import ConnectionManager
from fleetsync.server.middleware import TimingMiddleware
from fleetsync.server.persistence import MongoGateway, PersistenceGateway
from fleetsync.server.registry import ClientRegistry
from fleetsync.server.report_engine import ReportEngine
from fleetsync.server.reports import ChangePolicy
from fleetsync.server.routes import polling, reports, websocket
from fleetsync.server.snapshots import SnapshotProvider
from fleetsync.server.watcher import ChangeWatcher
from fleetsync.shared.config import Settings, settings as default_settings
from fleetsync.shared.events import ChangeBus
from fleetsync.shared.models import REPORT_TYPES, ResourceType

HEAVY_REPORTS = tuple(kind for kind in REPORT_TYPES if kind is not ResourceType.REPORTS_SUMMARY)


async def run_periodic(name: str, interval_s: float, tick: Callable[[], Awaitable[object]]):
    """Calls `tick` every `interval_s` seconds. A failing tick never ends the loop."""
    try:
        while True:
            await asyncio.sleep(interval_s)
            try:
                await tick()
            except Exception as e:
                logger.error(f"loop={name} event=tick_failed reason='{e}'")
    except asyncio.CancelledError:
        logger.debug(f"loop={name} event=cancelled")


def create_app(gateway: PersistenceGateway | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or default_settings
    gateway = gateway or MongoGateway(
        settings.MONGODB_URL, settings.MONGODB_DATABASE, rides_limit=settings.RIDES_SNAPSHOT_LIMIT
    )

    policy = ChangePolicy(
        cap=settings.CHANGE_CAP_PERCENT,
        zero_baseline_factor=settings.ZERO_BASELINE_CHANGE_FACTOR,
        zero_baseline_max=settings.ZERO_BASELINE_CHANGE_MAX,
    )
    bus = ChangeBus()
    registry = ClientRegistry()
    snapshots = SnapshotProvider(gateway, policy)
    broadcaster = BroadcastEngine(snapshots, registry, settle_delay_s=settings.CHANGE_SETTLE_DELAY_S)
    report_engine = ReportEngine(snapshots, registry, max_range_days=settings.MAX_REPORT_RANGE_DAYS)
    watcher = ChangeWatcher(
        gateway,
        bus,
        reconnect_delay_s=settings.CHANGE_STREAM_RECONNECT_DELAY_S,
        poll_interval_s=settings.POLL_FALLBACK_INTERVAL_S,
    )
    manager = ConnectionManager(registry, broadcaster, report_engine, watcher)
    bus.subscribe(broadcaster.on_change)

    # We store our background tasks here so we can cancel them on shutdown.
    background_tasks: set[asyncio.Task] = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # STARTUP
        logger.info("FleetSync broadcast server starting up...")
        await broadcaster.warm()
        await watcher.start()

        loops = [
            ("models", settings.MODEL_REFRESH_INTERVAL_S, manager.refresh_models),
            ("reports-summary", settings.REPORTS_SUMMARY_INTERVAL_S,
             lambda: report_engine.broadcast([ResourceType.REPORTS_SUMMARY])),
            ("reports-heavy", settings.REPORTS_HEAVY_INTERVAL_S,
             lambda: report_engine.broadcast(HEAVY_REPORTS)),
            ("stale-sweep", settings.STALE_SWEEP_INTERVAL_S,
             lambda: manager.evict_stale(settings.STALE_CONNECTION_TIMEOUT_S)),
            ("report-sweep", settings.REPORT_SWEEP_INTERVAL_S,
             lambda: manager.evict_stale(settings.REPORT_CONNECTION_TIMEOUT_S, reports_only=True)),
        ]
        for name, interval_s, tick in loops:
            background_tasks.add(asyncio.create_task(run_periodic(name, interval_s, tick), name=name))
        logger.info(f"Started {len(background_tasks)} periodic loops.")

        yield

        # SHUTDOWN
        logger.info("Server shutting down. Cancelling background tasks...")
        for task in background_tasks:
            task.cancel()
        if background_tasks:
            await asyncio.gather(*background_tasks, return_exceptions=True)
        background_tasks.clear()
        await watcher.stop()
        await gateway.close()
        logger.info("Shutdown complete.")

    app = FastAPI(
        title="FleetSync",
        description="Change-driven broadcasts and personalised reports for the fleet dashboards",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.gateway = gateway
    app.state.registry = registry
    app.state.broadcaster = broadcaster
    app.state.reports = report_engine
    app.state.watcher = watcher
    app.state.manager = manager

    app.add_middleware(TimingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(websocket.router, tags=["Realtime"])
    app.include_router(polling.router, tags=["Realtime"])
    app.include_router(reports.router, tags=["Reports"])

    @app.get("/healthz", tags=["Ops"])
    async def health_check():
        try:
            database = "up" if await gateway.ping() else "down"
        except Exception as e:
            logger.warning(f"event=health_ping_failed reason='{e}'")
            database = "down"
        status = "ok" if database == "up" else "degraded"
        return {"status": status, "database": database, "watch_mode": watcher.mode}

    @app.get("/stats", tags=["Ops"])
    async def get_stats():
        return manager.get_stats()

    return app
