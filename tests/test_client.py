import asyncio

from fleetsync.client.visualizer import Visualizer, summarize
from fleetsync.client.websocket_client import DashboardSocketClient
from fleetsync.shared.client_utils import backoff_delay
from fleetsync.shared.models import Envelope, ResourceType


def test_ws_url_and_opening_messages():
    client = DashboardSocketClient(
        "cli", "https://fleet.example.com/", rooms=["vehicles", "reports"],
        report=ResourceType.EARNINGS, report_params={"timeRange": "day"},
    )
    assert client.ws_url == "wss://fleet.example.com/ws/connect?client_id=cli"
    assert [(m.event, m.data) for m in client.opening_messages()] == [
        ("client-connected", {"page": "cli"}),
        ("join-room", "vehicles"),
        ("join-room", "reports"),
        ("requestEarningsReport", {"timeRange": "day"}),
    ]


def test_client_counts_updates_and_report_errors():
    client = DashboardSocketClient("cli", "http://localhost:8000")
    for event in ("vehiclesUpdate", "dashboardStats", "earningsReportData", "reportError", "server-heartbeat"):
        asyncio.run(client.on_event(Envelope(event=event, data={})))
    assert client.events_received == 5
    assert client.updates_received == 3
    assert client.report_errors == 1


def test_disconnect_closes_live_socket():
    class Socket:
        closed = False

        async def close(self):
            self.closed = True

    client = DashboardSocketClient("cli", "http://localhost:8000")
    socket = Socket()
    client._ws = socket

    asyncio.run(client.disconnect())
    asyncio.run(client.disconnect())

    assert socket.closed is True
    assert client._ws is None


def test_summaries():
    assert summarize(Envelope(event="vehiclesUpdate", data={"success": True, "data": [{}, {}]})) == "2 documents"
    placeholder = {"success": False, "data": [], "hasData": False}
    assert summarize(Envelope(event="driversUpdate", data=placeholder)) == "0 documents (placeholder)"
    report = {"chartData": [{}], "filters": {"timeRange": "month"}}
    assert summarize(Envelope(event="earningsReportUpdate", data=report)) == "1 rows range=month"
    assert summarize(Envelope(event="reportError", data={"message": "bad"})) == "bad"


def test_visualizer_tracks_events_and_status():
    visualizer = Visualizer(DashboardSocketClient("cli", "http://localhost:8000"))
    visualizer.on_status_change("ACTIVE")
    visualizer.on_event(Envelope(event="ridesUpdate", data={"data": []}))
    assert visualizer.status == "ACTIVE"
    assert visualizer.recent_events[0][1] == "ridesUpdate"
    assert "ridesUpdate" in visualizer.last_update_by_event
    assert visualizer.generate_layout() is not None


def test_backoff_is_capped():
    assert 2.0 <= backoff_delay(1) <= 2.2
    assert 32.0 <= backoff_delay(10) <= 35.2
