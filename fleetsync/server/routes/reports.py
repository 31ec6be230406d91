"""
One-off report computation over HTTP, for exports and first paint before
the socket is up. Same filters, same validation and same payloads as the
`requestX` socket events, but nothing is remembered about the caller.
"""
from fastapi import APIRouter, HTTPException, Query, Request

from fleetsync.server.report_engine import UNAVAILABLE_MESSAGE
from fleetsync.server.validation import placeholder
from fleetsync.shared.errors import ReportRequestError
from fleetsync.shared.models import FilterParams
from fleetsync.shared.route_utils import resource_or_404

router = APIRouter()


@router.get("/api/reports/{kind}")
async def get_report(
    kind: str,
    request: Request,
    startDate: str | None = Query(None),
    endDate: str | None = Query(None),
    timeRange: str | None = Query(None),
    driverFilter: str | None = Query(None),
):
    report_kind = resource_or_404(kind, reports=True)
    raw = {
        "startDate": startDate,
        "endDate": endDate,
        "timeRange": timeRange,
        "driverFilter": driverFilter,
    }
    try:
        filters = FilterParams.parse(
            report_kind,
            {k: v for k, v in raw.items() if v is not None},
            request.app.state.settings.MAX_REPORT_RANGE_DAYS,
        )
    except ReportRequestError as e:
        raise HTTPException(status_code=400, detail=e.to_payload()) from None

    report = await request.app.state.reports.compute(report_kind, filters)
    if report is None:
        return placeholder(report_kind, filters, UNAVAILABLE_MESSAGE)
    return report
