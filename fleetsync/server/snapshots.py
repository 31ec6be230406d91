"""
MODULE OVERVIEW:
The Snapshot Provider.

WHAT IS HAPPENING HERE:
Given a resource type (and, for reports, the caller's filters) this returns
the current canonical view of that resource. Model types come straight from
their collection query, the dashboard and reports are aggregated from rides
by the pure functions in `server.reports`.

fetch() never raises. A database hiccup becomes a failed SnapshotResult and
the caller decides whether to fall back to a cached payload.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger

from fleetsync.server import reports
from fleetsync.server.persistence import PersistenceGateway
from fleetsync.shared.models import FilterParams, ResourceType


@dataclass
class SnapshotResult:
    ok: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def success(cls, data: Any) -> "SnapshotResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str) -> "SnapshotResult":
        return cls(ok=False, error=error)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotProvider:
    def __init__(
        self,
        gateway: PersistenceGateway,
        policy: reports.ChangePolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gateway = gateway
        self.policy = policy or reports.ChangePolicy()
        self.clock = clock

    async def fetch(self, resource_type: ResourceType, filters: FilterParams | None = None) -> SnapshotResult:
        try:
            if resource_type is ResourceType.DASHBOARD:
                data = await self._dashboard()
            elif resource_type.is_report:
                data = await self._report(resource_type, filters or FilterParams.defaults_for(resource_type))
            else:
                data = await self.gateway.fetch_collection(resource_type)
        except Exception as e:
            logger.error(f"resource={resource_type.value} event=query_failed reason='{e}'")
            return SnapshotResult.failure(str(e))
        return SnapshotResult.success(data)

    async def _report(self, kind: ResourceType, filters: FilterParams) -> dict[str, Any]:
        now = self.clock()

        if kind is ResourceType.REPORTS_SUMMARY:
            current, previous = reports.summary_windows(filters.time_range, now)
            current_rides = await self.gateway.rides_between(*current)
            previous_rides = await self.gateway.rides_between(*previous)
            return reports.reports_summary(current_rides, previous_rides, filters, self.policy, now)

        start, end = reports.report_window(kind, filters, now)
        rides = await self.gateway.rides_between(start, end, filters.driver_id)
        build = {
            ResourceType.EARNINGS: reports.earnings_report,
            ResourceType.DRIVER_PERFORMANCE: reports.driver_performance_report,
            ResourceType.RIDES_ANALYSIS: reports.rides_analysis_report,
        }[kind]
        return build(rides, filters, start, end, now)

    async def _dashboard(self) -> dict[str, Any]:
        windows = reports.dashboard_windows(self.clock())
        today_rides = await self.gateway.rides_between(*windows["today"])
        yesterday_rides = await self.gateway.rides_between(*windows["yesterday"])
        return reports.dashboard_stats(
            today_rides,
            yesterday_rides,
            total_drivers=await self.gateway.count_drivers(online=True),
            new_this_week=await self.gateway.count_drivers(online=True, joined_between=windows["last_week"]),
            new_last_week=await self.gateway.count_drivers(online=True, joined_between=windows["previous_week"]),
        )
