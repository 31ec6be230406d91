"""
MODULE OVERVIEW:
The Rich terminal dashboard for `fleetsync watch`.

WHAT IS HAPPENING HERE:
The client runs in the background and every callback from its hooks updates
the state below; a Live layout redraws it four times a second. Room updates
are summarised (how many documents, which time range) rather than dumped,
since a vehicles snapshot can be hundreds of documents.
"""

from rich.live import Live
from rich.layout import Layout
from rich.panel import Panel
from rich.table import Table
from collections import deque
from datetime import datetime
import asyncio

from fleetsync.client.base_client import BaseDashboardClient
from fleetsync.shared.models import Envelope


def summarize(envelope: Envelope) -> str:
    data = envelope.data
    if not isinstance(data, dict):
        text = str(data)
    elif isinstance(data.get("data"), list):
        text = f"{len(data['data'])} documents"
        if data.get("hasData") is False:
            text += " (placeholder)"
    elif "chartData" in data or "tableData" in data:
        rows = data.get("chartData", data.get("tableData")) or []
        text = f"{len(rows)} rows range={data.get('filters', {}).get('timeRange', '?')}"
    elif "message" in data:
        text = str(data["message"])
    else:
        text = ", ".join(sorted(data))
    return text[:60] + "..." if len(text) > 60 else text


class Visualizer:
    def __init__(self, client: BaseDashboardClient):
        self.client = client
        self.recent_events = deque(maxlen=15)
        self.last_update_by_event: dict[str, str] = {}
        self.status = "INITIALIZING"
        self.timeline = deque(maxlen=5)

    def on_status_change(self, status: str):
        self.status = status
        ts = datetime.now().strftime("%H:%M:%S")
        self.timeline.appendleft(f"[{ts}] State: {status}")

    def on_event(self, envelope: Envelope):
        ts = datetime.now().strftime("%H:%M:%S")
        self.last_update_by_event[envelope.event] = ts
        self.recent_events.appendleft((ts, envelope.event, summarize(envelope)))

    def generate_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="main")
        )
        layout["main"].split_row(
            Layout(name="left", ratio=2),
            Layout(name="right", ratio=1)
        )
        layout["right"].split_column(
            Layout(name="stats"),
            Layout(name="timeline"),
            Layout(name="channels")
        )

        color = "green" if "ACTIVE" in self.status else "yellow" if "RECONNECTING" in self.status else "red"
        layout["header"].update(
            Panel(f"[{color} bold]{getattr(self.client, 'ws_url', self.client.server_base_url)} | Status: {self.status}[/]",
                  style=color)
        )

        table = Table(title="Live Event Feed", expand=True)
        table.add_column("Time", justify="left", style="cyan", no_wrap=True)
        table.add_column("Event", style="magenta")
        table.add_column("Summary", style="green")
        for row in self.recent_events:
            table.add_row(*row)
        layout["left"].update(Panel(table, title="Feed"))

        stats_text = (
            f"Events Received: {self.client.events_received}\n"
            f"Updates: {self.client.updates_received}\n"
            f"Report Errors: {self.client.report_errors}\n"
            f"Reconnects: {self.client.reconnect_count}"
        )
        layout["stats"].update(Panel(stats_text, title="Connection Stats"))

        layout["timeline"].update(Panel("\n".join(self.timeline), title="Timeline"))

        channels = "\n".join(f"{name}: {ts}" for name, ts in sorted(self.last_update_by_event.items()))
        layout["channels"].update(Panel(channels or "waiting...", title="Last Seen"))

        return layout

    async def run(self, duration_s: float):
        # Bridge the client hooks
        async def event_hook(e): self.on_event(e)
        async def status_hook(s): self.on_status_change(s)

        self.client.set_callbacks(event_hook, status_hook)

        client_task = asyncio.create_task(self.client.run(duration_s))

        with Live(self.generate_layout(), refresh_per_second=4) as live:
            while not client_task.done():
                live.update(self.generate_layout())
                await asyncio.sleep(0.25)
