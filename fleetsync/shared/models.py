"""
MODULE OVERVIEW:
Typed data structures shared by the server and the observer client, powered by
Pydantic v2.

WHAT IS HAPPENING HERE:
Every payload that leaves the server has an explicit schema. The broadcast
engines use these schemas as their validation predicate: a computed snapshot
or report is only pushed (and only cached) if it validates against the schema
of its resource type. Field names are camelCase because they are the wire
contract consumed by the dashboards.
"""
import re
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Literal, NamedTuple

from pydantic import BaseModel, ConfigDict, Field

from fleetsync.shared.errors import ReportRequestError, UnknownResourceError

TimeRange = Literal["day", "week", "month"]
OperationType = Literal["insert", "update", "replace", "delete"]

OBJECT_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")


class ResourceType(str, Enum):
    VEHICLES = "vehicles"
    DRIVERS = "drivers"
    RIDES = "rides"
    ADMINS = "admins"
    COMPLAINTS = "complaints"
    DASHBOARD = "dashboard"
    EARNINGS = "earnings"
    DRIVER_PERFORMANCE = "driverPerformance"
    RIDES_ANALYSIS = "ridesAnalysis"
    REPORTS_SUMMARY = "reportsSummary"

    @property
    def is_report(self) -> bool:
        return self in REPORT_EVENTS

    @property
    def room(self) -> str:
        return REPORTS_ROOM if self.is_report else self.value

    @property
    def update_event(self) -> str:
        if self is ResourceType.DASHBOARD:
            return "dashboardStats"
        if self.is_report:
            return REPORT_EVENTS[self].update
        return f"{self.value}Update"

    @classmethod
    def from_name(cls, name: Any) -> "ResourceType":
        if not isinstance(name, str):
            raise UnknownResourceError(str(name))
        try:
            return cls(ROOM_ALIASES.get(name, name))
        except ValueError:
            raise UnknownResourceError(str(name)) from None


class ReportEvents(NamedTuple):
    request: str
    data: str
    update: str
    default_range: str


REPORT_EVENTS: dict[ResourceType, ReportEvents] = {
    ResourceType.EARNINGS: ReportEvents(
        "requestEarningsReport", "earningsReportData", "earningsReportUpdate", "week"),
    ResourceType.DRIVER_PERFORMANCE: ReportEvents(
        "requestDriverPerformance", "driverPerformanceData", "driverPerformanceUpdate", "week"),
    ResourceType.RIDES_ANALYSIS: ReportEvents(
        "requestRidesAnalysis", "ridesAnalysisData", "ridesAnalysisUpdate", "week"),
    ResourceType.REPORTS_SUMMARY: ReportEvents(
        "requestReportsSummary", "reportsSummaryData", "reportsSummaryUpdate", "day"),
}
REPORT_REQUESTS = {events.request: kind for kind, events in REPORT_EVENTS.items()}

# Collections with a change stream (or a polling loop) behind them.
WATCHED_TYPES = (
    ResourceType.RIDES,
    ResourceType.DRIVERS,
    ResourceType.ADMINS,
    ResourceType.VEHICLES,
    ResourceType.COMPLAINTS,
)
MODEL_TYPES = WATCHED_TYPES + (ResourceType.DASHBOARD,)
REPORT_TYPES = tuple(REPORT_EVENTS)

DEFAULT_ROOM = ResourceType.DASHBOARD.value
REPORTS_ROOM = "reports"
ROOM_ALIASES = {"admin-management": ResourceType.ADMINS.value}


def resolve_room(name: Any) -> str:
    """Maps a requested room name onto the canonical room it broadcasts in."""
    if name == REPORTS_ROOM:
        return REPORTS_ROOM
    return ResourceType.from_name(name).room


# ==========================
# CHANGE EVENTS
# ==========================
class ChangeEvent(BaseModel):
    resource_type: ResourceType
    operation_type: OperationType
    affected_id: str | None = None
    full_document: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def advisory_event(self) -> str:
        return f"{self.resource_type.value}:{self.operation_type}"

    def advisory_payload(self) -> dict[str, Any]:
        return {
            "data": self.full_document or {"_id": self.affected_id},
            "timestamp": self.timestamp.isoformat(),
        }


# ==========================
# REPORT FILTERS
# ==========================
def _parse_moment(value: Any, field: str, end_of_day: bool) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.max if end_of_day else time.min)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise ReportRequestError(
                "Invalid date format. Please use YYYY-MM-DD format.", field) from None
        if len(text) == 10 and end_of_day:
            parsed = datetime.combine(parsed.date(), time.max)
    else:
        raise ReportRequestError("Invalid date format. Please use YYYY-MM-DD format.", field)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class FilterParams(BaseModel):
    """Per-client report parameters. Frozen so identical filters hash together."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    start_date: datetime | None = Field(default=None, alias="startDate")
    end_date: datetime | None = Field(default=None, alias="endDate")
    time_range: TimeRange = Field(default="week", alias="timeRange")
    driver_filter: str = Field(default="all", alias="driverFilter")

    @classmethod
    def defaults_for(cls, kind: ResourceType) -> "FilterParams":
        return cls(time_range=REPORT_EVENTS[kind].default_range)

    @classmethod
    def parse(cls, kind: ResourceType, raw: Any, max_range_days: int = 365) -> "FilterParams":
        """
        Validates a client-submitted filter mapping.
        Raises ReportRequestError with a client-presentable message.
        """
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ReportRequestError("Report parameters must be an object.")

        time_range = raw.get("timeRange") or REPORT_EVENTS[kind].default_range
        if time_range not in ("day", "week", "month"):
            raise ReportRequestError(
                "Invalid time range. Must be one of: day, week, month.", "timeRange")

        driver_filter = raw.get("driverFilter") or "all"
        if driver_filter != "all" and not (
                isinstance(driver_filter, str) and OBJECT_ID_RE.match(driver_filter)):
            raise ReportRequestError("Invalid driver ID format.", "driverFilter")

        start_raw, end_raw = raw.get("startDate"), raw.get("endDate")
        start = end = None
        if start_raw and end_raw:
            start = _parse_moment(start_raw, "startDate", end_of_day=False)
            end = _parse_moment(end_raw, "endDate", end_of_day=True)
            if start > end:
                raise ReportRequestError("Start date cannot be after end date.", "startDate")
            if end - start > timedelta(days=max_range_days):
                raise ReportRequestError(
                    f"Date range cannot exceed {max_range_days} days.", "endDate")

        return cls(start_date=start, end_date=end, time_range=time_range,
                   driver_filter=driver_filter)

    @property
    def driver_id(self) -> str | None:
        return None if self.driver_filter == "all" else self.driver_filter

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# ==========================
# OUTBOUND PAYLOAD SCHEMAS
# ==========================
class SnapshotDocument(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(alias="_id")


class ModelUpdate(BaseModel):
    success: bool
    data: list[dict[str, Any]] | dict[str, Any]
    timestamp: str
    message: str | None = None
    hasData: bool | None = None


class DashboardStats(BaseModel):
    todayRides: int
    ridesPercentageChange: float
    totalDrivers: int
    newDriversThisWeek: int
    driversPercentageChange: float
    todayIncome: float
    incomePercentageChange: float
    completedRides: int
    completedPercentageChange: float
    cancelledRides: int
    cancelledPercentageChange: float
    successRate: float
    cancellationRate: float


class DateRange(BaseModel):
    start: str
    end: str


class EarningsPoint(BaseModel):
    name: str
    earnings: int
    rides: int
    cancellations: int
    avgPerRide: float


class EarningsSummary(BaseModel):
    totalEarnings: float
    totalRides: int
    avgEarningPerRide: float
    cancellationRate: float


class EarningsReport(BaseModel):
    chartData: list[EarningsPoint]
    summary: EarningsSummary
    dateRange: DateRange | None = None
    filters: dict[str, Any] = {}
    hasData: bool
    timestamp: str
    message: str | None = None


class DriverSlice(BaseModel):
    id: str
    name: str
    earnings: float
    rides: int


class DriverRow(BaseModel):
    id: str
    name: str
    rides: int
    completedRides: int
    cancelledRides: int
    earnings: float
    avgPerRide: float
    completionRate: float
    cancellationRate: float


class DriverPerformanceReport(BaseModel):
    pieChartData: list[DriverSlice]
    tableData: list[DriverRow]
    dateRange: DateRange | None = None
    filters: dict[str, Any] = {}
    hasData: bool
    timestamp: str
    message: str | None = None


class RidesPoint(BaseModel):
    name: str
    rides: int
    completed: int
    cancelled: int
    pending: int
    inProgress: int


class ServiceDistribution(BaseModel):
    labels: list[str]
    data: list[int]
    earnings: list[float]


class RidesAnalysisReport(BaseModel):
    chartData: list[RidesPoint]
    serviceDistribution: ServiceDistribution
    dateRange: DateRange | None = None
    filters: dict[str, Any] = {}
    hasData: bool
    timestamp: str
    message: str | None = None


class ReportsSummary(BaseModel):
    totalEarnings: float
    earningsChange: float
    totalRides: int
    ridesChange: float
    avgPerRide: float
    avgPerRideChange: float
    cancellationRate: float
    cancellationRateChange: float
    averageEarningPerRide: float
    drivers: list[dict[str, Any]] = []
    timeRange: TimeRange
    filters: dict[str, Any] = {}
    hasData: bool = True
    timestamp: str
    message: str | None = None


# ==========================
# TRANSPORT
# ==========================
class Envelope(BaseModel):
    """One message on the push channel, in either direction."""
    event: str
    data: Any = None


class PollResponse(BaseModel):
    resource: ResourceType
    payload: dict[str, Any] | None
    status: Literal["ok", "empty"]
    next_poll_ms: int
    server_time: datetime


class ConnectionStats(BaseModel):
    connected_clients: int
    rooms: dict[str, int]
    cached_resources: list[str]
    broadcast_in_flight: bool
    reports_in_flight: bool
    watch_mode: str
    watches: dict[str, bool]
    reconnects: dict[str, int]
    uptime_s: float
    server_time: datetime
