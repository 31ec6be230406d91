"""
The validation predicate and cold-start placeholders.

A computed payload is pushed (and cached) only when it validates against the
schema of its resource type. Anything else counts as a failed cycle.
"""

from datetime import datetime, timezone
from typing import Any

from loguru import logger
from pydantic import BaseModel, TypeAdapter, ValidationError

from fleetsync.shared.models import (
    DashboardStats,
    DriverPerformanceReport,
    EarningsReport,
    FilterParams,
    ModelUpdate,
    ReportsSummary,
    ResourceType,
    RidesAnalysisReport,
    SnapshotDocument,
)

SCHEMAS: dict[ResourceType, type[BaseModel]] = {
    ResourceType.DASHBOARD: DashboardStats,
    ResourceType.EARNINGS: EarningsReport,
    ResourceType.DRIVER_PERFORMANCE: DriverPerformanceReport,
    ResourceType.RIDES_ANALYSIS: RidesAnalysisReport,
    ResourceType.REPORTS_SUMMARY: ReportsSummary,
}
_DOCUMENTS = TypeAdapter(list[SnapshotDocument])


def is_valid(resource_type: ResourceType, data: Any) -> bool:
    try:
        schema = SCHEMAS.get(resource_type)
        if schema is None:
            _DOCUMENTS.validate_python(data)
        else:
            schema.model_validate(data)
    except ValidationError as e:
        logger.warning(
            f"resource={resource_type.value} event=invalid_payload errors={e.error_count()}"
        )
        return False
    return True


def placeholder(resource_type: ResourceType, filters: FilterParams | None = None,
                message: str = "No data available yet") -> dict[str, Any]:
    """
    Zeroed payload sent when there is neither fresh nor cached data.
    Report placeholders still validate against their schema.
    """
    timestamp = datetime.now(timezone.utc).isoformat()
    if not resource_type.is_report:
        return ModelUpdate(success=False, data=[], hasData=False, message=message,
                           timestamp=timestamp).model_dump()

    filters = filters or FilterParams.defaults_for(resource_type)
    common = {"filters": filters.to_payload(), "hasData": False, "message": message,
              "timestamp": timestamp}

    if resource_type is ResourceType.EARNINGS:
        return {
            "chartData": [],
            "summary": {"totalEarnings": 0, "totalRides": 0, "avgEarningPerRide": 0,
                        "cancellationRate": 0},
            **common,
        }
    if resource_type is ResourceType.DRIVER_PERFORMANCE:
        return {"pieChartData": [], "tableData": [], **common}
    if resource_type is ResourceType.RIDES_ANALYSIS:
        return {
            "chartData": [],
            "serviceDistribution": {"labels": [], "data": [], "earnings": []},
            **common,
        }
    return {
        "totalEarnings": 0, "earningsChange": 0,
        "totalRides": 0, "ridesChange": 0,
        "avgPerRide": 0, "avgPerRideChange": 0,
        "cancellationRate": 0, "cancellationRateChange": 0,
        "averageEarningPerRide": 0,
        "drivers": [],
        "timeRange": filters.time_range,
        **common,
    }


def model_update(data: Any, timestamp: datetime | None = None) -> dict[str, Any]:
    """The uniform envelope every model room receives."""
    timestamp = timestamp or datetime.now(timezone.utc)
    return ModelUpdate(success=True, data=data, timestamp=timestamp.isoformat()).model_dump(exclude_none=True)
