import pytest

from fleetsync.server.validation import is_valid, model_update, placeholder
from fleetsync.shared.errors import ReportRequestError, UnknownResourceError
from fleetsync.shared.models import (
    REPORT_TYPES,
    ChangeEvent,
    FilterParams,
    ResourceType,
    resolve_room,
)


def test_resource_type_events_and_rooms():
    assert ResourceType.VEHICLES.update_event == "vehiclesUpdate"
    assert ResourceType.DASHBOARD.update_event == "dashboardStats"
    assert ResourceType.EARNINGS.update_event == "earningsReportUpdate"
    assert ResourceType.EARNINGS.room == "reports"
    assert ResourceType.DRIVERS.room == "drivers"


def test_room_aliases_and_unknown_rooms():
    assert resolve_room("admin-management") == "admins"
    assert resolve_room("reports") == "reports"
    with pytest.raises(UnknownResourceError) as exc:
        resolve_room("invoices")
    assert str(exc.value) == "Unknown resource 'invoices'"
    with pytest.raises(UnknownResourceError):
        ResourceType.from_name(None)


def test_change_event_advisory():
    event = ChangeEvent(resource_type=ResourceType.RIDES, operation_type="delete", affected_id="r9")
    assert event.advisory_event == "rides:delete"
    assert event.advisory_payload()["data"] == {"_id": "r9"}


def test_filter_defaults_per_report():
    assert FilterParams.parse(ResourceType.EARNINGS, None).time_range == "week"
    assert FilterParams.parse(ResourceType.REPORTS_SUMMARY, {}).time_range == "day"
    assert FilterParams.parse(ResourceType.EARNINGS, {}).driver_id is None
    assert FilterParams.parse(ResourceType.EARNINGS, {"driverFilter": "a" * 24}).driver_id == "a" * 24


def test_identical_filters_are_equal_and_hashable():
    first = FilterParams.parse(ResourceType.EARNINGS, {"timeRange": "month"})
    second = FilterParams.parse(ResourceType.EARNINGS, {"timeRange": "month"})
    assert first == second
    assert len({first, second}) == 1


@pytest.mark.parametrize(
    "raw, field",
    [
        ({"timeRange": "year"}, "timeRange"),
        ({"driverFilter": "driver-1"}, "driverFilter"),
        ({"startDate": "yesterday", "endDate": "2024-05-01"}, "startDate"),
        ({"startDate": "2024-05-10", "endDate": "2024-05-01"}, "startDate"),
        ({"startDate": "2022-01-01", "endDate": "2024-01-01"}, "endDate"),
    ],
)
def test_malformed_filters_are_rejected(raw, field):
    with pytest.raises(ReportRequestError) as exc:
        FilterParams.parse(ResourceType.EARNINGS, raw)
    assert exc.value.field == field
    assert exc.value.to_payload()["message"]


def test_filters_must_be_an_object():
    with pytest.raises(ReportRequestError):
        FilterParams.parse(ResourceType.EARNINGS, ["day"])


def test_model_snapshots_need_ids():
    assert is_valid(ResourceType.VEHICLES, [{"_id": "v1", "model": "Swift"}])
    assert is_valid(ResourceType.VEHICLES, [])
    assert not is_valid(ResourceType.VEHICLES, [{"model": "Swift"}])
    assert not is_valid(ResourceType.VEHICLES, {"_id": "v1"})


def test_earnings_without_chart_series_is_invalid():
    report = placeholder(ResourceType.EARNINGS)
    assert is_valid(ResourceType.EARNINGS, report)
    del report["chartData"]
    assert not is_valid(ResourceType.EARNINGS, report)


@pytest.mark.parametrize("kind", REPORT_TYPES)
def test_report_placeholders_validate(kind):
    report = placeholder(kind, message="nothing yet")
    assert is_valid(kind, report)
    assert report["hasData"] is False


def test_model_placeholder_and_update_envelope():
    empty = placeholder(ResourceType.DRIVERS)
    assert empty["success"] is False and empty["data"] == [] and empty["hasData"] is False
    update = model_update([{"_id": "d1"}])
    assert update["success"] is True
    assert is_valid(ResourceType.DRIVERS, update["data"])
