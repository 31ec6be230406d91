from datetime import datetime, timezone

import pytest

from fleetsync.server import reports
from fleetsync.server.reports import ChangePolicy, simple_change
from fleetsync.shared.models import FilterParams, ResourceType

NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "current, previous, expected",
    [
        (0, 0, 0),
        (30, 0, 3),
        (1000, 0, 50),
        (0, 10, -100),
        (50, 10, 200),
        (1, 10, -90.0),
        (11, 10, 10.0),
        (10.5, 10, 5.0),
    ],
)
def test_change_policy_defaults(current, previous, expected):
    assert ChangePolicy().change(current, previous) == expected


def test_change_policy_is_configurable():
    policy = ChangePolicy(cap=100, zero_baseline_factor=1, zero_baseline_max=10)
    assert policy.change(50, 10) == 100
    assert policy.change(7, 0) == 7
    assert policy.change(70, 0) == 10


def test_simple_change_has_no_cap():
    assert simple_change(0, 0) == 0
    assert simple_change(5, 0) == 100
    assert simple_change(50, 10) == 400.0


def test_months_back_clamps_to_month_end():
    assert reports.months_back(datetime(2024, 3, 31, tzinfo=timezone.utc)).date().isoformat() == "2024-02-29"
    assert reports.months_back(datetime(2024, 1, 10, tzinfo=timezone.utc)).date().isoformat() == "2023-12-10"


def test_report_windows_by_range():
    earnings_day = reports.report_window(ResourceType.EARNINGS, FilterParams(time_range="day"), NOW)
    assert earnings_day[0] == datetime(2024, 5, 15, tzinfo=timezone.utc)
    assert earnings_day[1].hour == 23 and earnings_day[1].minute == 59

    earnings_month = reports.report_window(ResourceType.EARNINGS, FilterParams(time_range="month"), NOW)
    assert earnings_month == (datetime(2024, 4, 15, tzinfo=timezone.utc), NOW)

    rides_month = reports.report_window(ResourceType.RIDES_ANALYSIS, FilterParams(time_range="month"), NOW)
    assert rides_month[0] == datetime(2024, 4, 16, tzinfo=timezone.utc)


def test_explicit_dates_override_time_range():
    filters = FilterParams.parse(
        ResourceType.EARNINGS, {"startDate": "2024-05-01", "endDate": "2024-05-03", "timeRange": "day"}
    )
    start, end = reports.report_window(ResourceType.EARNINGS, filters, NOW)
    assert start == datetime(2024, 5, 1, tzinfo=timezone.utc)
    assert end.date().isoformat() == "2024-05-03" and end.hour == 23


def test_summary_windows_compare_previous_period():
    (cur_start, _), (prev_start, prev_end) = reports.summary_windows("week", NOW)
    assert cur_start == datetime(2024, 5, 9, tzinfo=timezone.utc)
    assert prev_end.date().isoformat() == "2024-05-08"
    assert prev_start == datetime(2024, 5, 2, tzinfo=timezone.utc)


def test_earnings_report_day_buckets_by_hour(gateway):
    filters = FilterParams(time_range="day")
    start, end = reports.report_window(ResourceType.EARNINGS, filters, NOW)
    todays = [r for r in gateway.rides if start <= r["rideTime"] <= end]

    report = reports.earnings_report(todays, filters, start, end, NOW)

    assert report["chartData"] == [
        {"name": "09:00", "earnings": 120, "rides": 1, "cancellations": 0, "avgPerRide": 120.0},
        {"name": "10:00", "earnings": 80, "rides": 1, "cancellations": 1, "avgPerRide": 80.0},
    ]
    assert report["summary"] == {
        "totalEarnings": 200.0,
        "totalRides": 2,
        "avgEarningPerRide": 100.0,
        "cancellationRate": 33.3,
    }
    assert report["filters"]["timeRange"] == "day"
    assert report["hasData"] is True


def test_earnings_report_without_rides_has_no_data():
    filters = FilterParams()
    report = reports.earnings_report([], filters, NOW, NOW, NOW)
    assert report["chartData"] == []
    assert report["summary"]["avgEarningPerRide"] == 0.0
    assert report["hasData"] is False


def test_driver_performance_ranks_by_earnings(gateway):
    filters = FilterParams()
    start, end = reports.report_window(ResourceType.DRIVER_PERFORMANCE, filters, NOW)
    week = [r for r in gateway.rides if start <= r["rideTime"] <= end]

    report = reports.driver_performance_report(week, filters, start, end, NOW)

    first, second = report["tableData"]
    assert first["name"] == "Asha"
    assert first["rides"] == 3 and first["completedRides"] == 2
    assert first["earnings"] == 320.0 and first["avgPerRide"] == 160.0
    assert first["completionRate"] == 66.7
    assert second["name"] == "Ravi" and second["cancellationRate"] == 50.0
    assert [s["name"] for s in report["pieChartData"]] == ["Asha", "Ravi"]


def test_rides_analysis_counts_statuses_and_services(gateway):
    filters = FilterParams()
    start, end = reports.report_window(ResourceType.RIDES_ANALYSIS, filters, NOW)
    week = [r for r in gateway.rides if start <= r["rideTime"] <= end]

    report = reports.rides_analysis_report(week, filters, start, end, NOW)

    assert [p["name"] for p in report["chartData"]] == ["2024-05-12", "2024-05-14", "2024-05-15"]
    today = report["chartData"][-1]
    assert (today["rides"], today["completed"], today["cancelled"], today["pending"]) == (3, 2, 1, 0)
    assert report["serviceDistribution"] == {
        "labels": ["Auto", "SUV", "Sedan"],
        "data": [1, 2, 2],
        "earnings": [0.0, 200.0, 200.0],
    }


def test_reports_summary_against_yesterday(gateway):
    filters = FilterParams(time_range="day")
    current, previous = reports.summary_windows("day", NOW)
    in_window = lambda w: [r for r in gateway.rides if w[0] <= r["rideTime"] <= w[1]]

    summary = reports.reports_summary(in_window(current), in_window(previous), filters, ChangePolicy(), NOW)

    assert summary["totalRides"] == 3
    assert summary["ridesChange"] == 200
    assert summary["totalEarnings"] == 200.0
    assert summary["earningsChange"] == 0
    assert summary["cancellationRateChange"] == 3
    assert summary["avgPerRideChange"] == -66.7
    assert summary["timeRange"] == "day"


def test_dashboard_stats(gateway):
    windows = reports.dashboard_windows(NOW)
    in_window = lambda w: [r for r in gateway.rides if w[0] <= r["rideTime"] <= w[1]]

    stats = reports.dashboard_stats(in_window(windows["today"]), in_window(windows["yesterday"]), 4, 1, 0)

    assert stats["todayRides"] == 3
    assert stats["ridesPercentageChange"] == 200.0
    assert stats["todayIncome"] == 200.0
    assert stats["incomePercentageChange"] == 0.0
    assert stats["completedPercentageChange"] == 100.0
    assert stats["driversPercentageChange"] == 100
    assert stats["successRate"] == 66.7
    assert stats["cancellationRate"] == 33.3
