"""
MODULE OVERVIEW:
Report and dashboard aggregations over ride documents.

WHAT IS HAPPENING HERE:
These are plain functions with no I/O: the Snapshot Provider fetches the rides
that fall inside a report window and hands them here. Keeping the arithmetic
separate from the queries lets the same code serve change-driven broadcasts,
periodic personalised pushes and one-off REST requests, and makes every
number in a report checkable in a unit test.

Buckets are hours ("HH", labelled "HH:00") for a `day` range and calendar
dates ("YYYY-MM-DD") otherwise. All times are UTC.
"""

import calendar
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, NamedTuple

from fleetsync.shared.models import FilterParams, ResourceType

STATUS_FIELDS = {
    "completed": "completed",
    "cancelled": "cancelled",
    "pending": "pending",
    "in-progress": "inProgress",
}


@dataclass(frozen=True)
class ChangePolicy:
    """
    Period-over-period percentage change as shown on the dashboards.

    A zero baseline would make every change infinite, so a rising value from
    zero is reported as a small positive figure instead, and everything else
    is clamped to +/- `cap` percent.
    """
    cap: float = 200.0
    zero_baseline_factor: float = 0.1
    zero_baseline_max: float = 50.0

    def change(self, current: float, previous: float) -> float:
        if previous == 0:
            if current > 0:
                return min(self.zero_baseline_max, round(current * self.zero_baseline_factor))
            return 0
        if current == 0:
            return -100
        percent = (current - previous) / previous * 100
        return max(-self.cap, min(self.cap, round(percent, 1)))


def simple_change(current: float, previous: float) -> float:
    """Unclamped change used by the dashboard stats."""
    if previous == 0:
        return 0 if current == 0 else 100
    return round((current - previous) / previous * 100, 1)


class PeriodTotals(NamedTuple):
    rides: int
    completed: int
    cancelled: int
    earnings: float
    gross: float


# ==========================
# TIME WINDOWS
# ==========================
def start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def end_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=23, minute=59, second=59, microsecond=999000)


def months_back(moment: datetime, months: int = 1) -> datetime:
    month, year = moment.month - months, moment.year
    while month < 1:
        month += 12
        year -= 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def report_window(kind: ResourceType, filters: FilterParams, now: datetime) -> tuple[datetime, datetime]:
    if filters.start_date and filters.end_date:
        return filters.start_date, filters.end_date

    if kind is ResourceType.EARNINGS:
        if filters.time_range == "day":
            return start_of_day(now), end_of_day(now)
        if filters.time_range == "month":
            return start_of_day(months_back(now)), now
        return start_of_day(now - timedelta(days=6)), now

    days = {"day": 0, "week": 6, "month": 29}[filters.time_range]
    return start_of_day(now - timedelta(days=days)), now


def summary_windows(time_range: str, now: datetime):
    """Current period and the immediately preceding one of the same kind."""
    if time_range == "day":
        current = (start_of_day(now), end_of_day(now))
        previous_start = current[0] - timedelta(days=1)
        return current, (previous_start, end_of_day(previous_start))

    if time_range == "week":
        current = (start_of_day(now - timedelta(days=6)), now)
        previous_end = end_of_day(current[0] - timedelta(days=1))
        return current, (start_of_day(previous_end - timedelta(days=6)), previous_end)

    current = (start_of_day(months_back(now)), now)
    previous_end = end_of_day(current[0] - timedelta(days=1))
    return current, (start_of_day(months_back(previous_end)), previous_end)


def dashboard_windows(now: datetime) -> dict[str, tuple[datetime, datetime]]:
    today = (start_of_day(now), end_of_day(now))
    yesterday = (today[0] - timedelta(days=1), today[1] - timedelta(days=1))
    last_week = (today[0] - timedelta(days=7), yesterday[1])
    previous_week = (last_week[0] - timedelta(days=7), last_week[1] - timedelta(days=7))
    return {
        "today": today,
        "yesterday": yesterday,
        "last_week": last_week,
        "previous_week": previous_week,
    }


# ==========================
# RIDE HELPERS
# ==========================
def _amount(ride: dict[str, Any]) -> float:
    return float(ride.get("amount") or 0)


def _ride_time(ride: dict[str, Any]) -> datetime:
    value = ride["rideTime"]
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


def _bucket(ride: dict[str, Any], time_range: str) -> str:
    return _ride_time(ride).strftime("%H" if time_range == "day" else "%Y-%m-%d")


def _label(key: str, time_range: str) -> str:
    return f"{key}:00" if time_range == "day" else key


def _date_range(start: datetime, end: datetime) -> dict[str, str]:
    return {"start": start.isoformat(), "end": end.isoformat()}


def period_totals(rides: Iterable[dict[str, Any]]) -> PeriodTotals:
    count = completed = cancelled = 0
    earnings = gross = 0.0
    for ride in rides:
        count += 1
        gross += _amount(ride)
        if ride.get("status") == "completed":
            completed += 1
            earnings += _amount(ride)
        elif ride.get("status") == "cancelled":
            cancelled += 1
    return PeriodTotals(count, completed, cancelled, earnings, gross)


# ==========================
# REPORTS
# ==========================
def earnings_report(rides, filters: FilterParams, start: datetime, end: datetime, now: datetime) -> dict:
    completed = defaultdict(lambda: [0.0, 0])
    cancellations = Counter()
    all_rides = cancelled_total = 0

    for ride in rides:
        key = _bucket(ride, filters.time_range)
        all_rides += 1
        if ride.get("status") == "cancelled":
            cancellations[key] += 1
            cancelled_total += 1
        elif ride.get("status") == "completed":
            completed[key][0] += _amount(ride)
            completed[key][1] += 1

    chart_data = []
    for key in sorted(completed):
        earnings, count = completed[key]
        chart_data.append({
            "name": _label(key, filters.time_range),
            "earnings": round(earnings),
            "rides": count,
            "cancellations": cancellations[key],
            "avgPerRide": round(earnings / count, 2) if count else 0.0,
        })

    total_earnings = sum(earnings for earnings, _ in completed.values())
    total_completed = sum(count for _, count in completed.values())
    return {
        "chartData": chart_data,
        "summary": {
            "totalEarnings": round(total_earnings, 2),
            "totalRides": total_completed,
            "avgEarningPerRide": round(total_earnings / total_completed, 2) if total_completed else 0.0,
            "cancellationRate": round(cancelled_total / all_rides * 100, 1) if all_rides else 0.0,
        },
        "dateRange": _date_range(start, end),
        "filters": filters.to_payload(),
        "hasData": bool(chart_data),
        "timestamp": now.isoformat(),
    }


def driver_performance_report(rides, filters: FilterParams, start: datetime, end: datetime,
                              now: datetime) -> dict:
    groups: dict[str, dict[str, Any]] = {}
    for ride in rides:
        driver = ride.get("driver") or {}
        if driver.get("_id") is None:
            continue
        group = groups.setdefault(str(driver["_id"]), {
            "name": driver.get("name") or "Unknown Driver",
            "rides": 0, "completed": 0, "cancelled": 0, "earnings": 0.0,
        })
        group["rides"] += 1
        if ride.get("status") == "completed":
            group["completed"] += 1
            group["earnings"] += _amount(ride)
        elif ride.get("status") == "cancelled":
            group["cancelled"] += 1

    ranked = sorted(groups.items(), key=lambda item: item[1]["earnings"], reverse=True)
    pie_chart_data = []
    table_data = []
    for driver_id, group in ranked:
        earnings = round(group["earnings"], 2)
        pie_chart_data.append({
            "id": driver_id, "name": group["name"], "earnings": earnings, "rides": group["rides"],
        })
        table_data.append({
            "id": driver_id,
            "name": group["name"],
            "rides": group["rides"],
            "completedRides": group["completed"],
            "cancelledRides": group["cancelled"],
            "earnings": earnings,
            "avgPerRide": round(group["earnings"] / group["completed"], 2) if group["completed"] else 0.0,
            "completionRate": round(group["completed"] / group["rides"] * 100, 1),
            "cancellationRate": round(group["cancelled"] / group["rides"] * 100, 1),
        })

    return {
        "pieChartData": pie_chart_data,
        "tableData": table_data,
        "dateRange": _date_range(start, end),
        "filters": filters.to_payload(),
        "hasData": bool(table_data),
        "timestamp": now.isoformat(),
    }


def rides_analysis_report(rides, filters: FilterParams, start: datetime, end: datetime,
                          now: datetime) -> dict:
    grouped: dict[str, Counter] = defaultdict(Counter)
    services: dict[str, list] = {}
    for ride in rides:
        bucket = grouped[_bucket(ride, filters.time_range)]
        bucket["rides"] += 1
        status_field = STATUS_FIELDS.get(ride.get("status"))
        if status_field:
            bucket[status_field] += 1

        service = services.setdefault(ride.get("service") or "Unknown", [0, 0.0])
        service[0] += 1
        if ride.get("status") == "completed":
            service[1] += _amount(ride)

    chart_data = [
        {
            "name": _label(key, filters.time_range),
            "rides": counts["rides"],
            "completed": counts["completed"],
            "cancelled": counts["cancelled"],
            "pending": counts["pending"],
            "inProgress": counts["inProgress"],
        }
        for key, counts in sorted(grouped.items())
    ]
    labels = sorted(services)
    return {
        "chartData": chart_data,
        "serviceDistribution": {
            "labels": labels,
            "data": [services[label][0] for label in labels],
            "earnings": [round(services[label][1], 2) for label in labels],
        },
        "dateRange": _date_range(start, end),
        "filters": filters.to_payload(),
        "hasData": bool(chart_data),
        "timestamp": now.isoformat(),
    }


def reports_summary(current_rides, previous_rides, filters: FilterParams, policy: ChangePolicy,
                    now: datetime) -> dict:
    current = period_totals(current_rides)
    previous = period_totals(previous_rides)

    def per_ride(totals: PeriodTotals) -> float:
        return totals.earnings / totals.rides if totals.rides else 0.0

    def cancel_rate(totals: PeriodTotals) -> float:
        return totals.cancelled / totals.rides * 100 if totals.rides else 0.0

    return {
        "totalEarnings": round(current.earnings, 2),
        "earningsChange": policy.change(current.earnings, previous.earnings),
        "totalRides": current.rides,
        "ridesChange": policy.change(current.rides, previous.rides),
        "avgPerRide": round(per_ride(current), 2),
        "avgPerRideChange": policy.change(per_ride(current), per_ride(previous)),
        "cancellationRate": round(cancel_rate(current), 1),
        "cancellationRateChange": policy.change(cancel_rate(current), cancel_rate(previous)),
        "averageEarningPerRide": round(per_ride(current), 2),
        "drivers": [],
        "timeRange": filters.time_range,
        "filters": filters.to_payload(),
        "hasData": current.rides > 0,
        "timestamp": now.isoformat(),
    }


def dashboard_stats(today_rides, yesterday_rides, total_drivers: int, new_this_week: int,
                    new_last_week: int) -> dict:
    today = period_totals(today_rides)
    yesterday = period_totals(yesterday_rides)
    return {
        "todayRides": today.rides,
        "ridesPercentageChange": simple_change(today.rides, yesterday.rides),
        "totalDrivers": total_drivers,
        "newDriversThisWeek": new_this_week,
        "driversPercentageChange": simple_change(new_this_week, new_last_week),
        "todayIncome": round(today.gross, 2),
        "incomePercentageChange": simple_change(today.gross, yesterday.gross),
        "completedRides": today.completed,
        "completedPercentageChange": simple_change(today.completed, yesterday.completed),
        "cancelledRides": today.cancelled,
        "cancelledPercentageChange": simple_change(today.cancelled, yesterday.cancelled),
        "successRate": round(today.completed / today.rides * 100, 1) if today.rides else 0,
        "cancellationRate": round(today.cancelled / today.rides * 100, 1) if today.rides else 0,
    }
