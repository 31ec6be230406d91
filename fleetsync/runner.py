"""
CLI entrypoint for FleetSync.
"""
import asyncio
import sys
from typing import List, Optional

import typer
from loguru import logger

from fleetsync.client.visualizer import Visualizer
from fleetsync.client.websocket_client import DashboardSocketClient
from fleetsync.shared.config import settings
from fleetsync.shared.errors import UnknownResourceError
from fleetsync.shared.models import ResourceType

app = typer.Typer(help="FleetSync realtime broadcast server and observer")


def configure_logging(level: str):
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


@app.callback()
def main(log_level: str = typer.Option(settings.LOG_LEVEL, help="Loguru sink level")):
    configure_logging(log_level)


@app.command()
def server(
    host: str = typer.Option("0.0.0.0", help="Interface to bind"),
    port: int = typer.Option(settings.PORT, help="Port to listen on"),
):
    """Start the FastAPI broadcast server using Uvicorn."""
    import uvicorn
    typer.echo(f"Starting server on port {port}...")
    uvicorn.run(
        "fleetsync.server.main:create_app",
        factory=True,
        host=host,
        port=port,
        log_level=settings.LOG_LEVEL.lower(),
    )


@app.command()
def watch(
    room: List[str] = typer.Option(["dashboard"], help="Room to join, repeatable"),
    report: Optional[str] = typer.Option(None, help="Report to request: earnings, driverPerformance, ridesAnalysis, reportsSummary"),
    time_range: Optional[str] = typer.Option(None, help="Report granularity: day, week or month"),
    driver: Optional[str] = typer.Option(None, help="Driver id to filter the report by"),
    start_date: Optional[str] = typer.Option(None, help="Report start, YYYY-MM-DD"),
    end_date: Optional[str] = typer.Option(None, help="Report end, YYYY-MM-DD"),
    duration: float = typer.Option(300.0, help="How long to watch, in seconds"),
    url: str = typer.Option(f"http://127.0.0.1:{settings.PORT}", help="Server base URL"),
):
    """Join rooms and render incoming broadcasts in a live terminal dashboard."""
    report_kind = None
    if report:
        try:
            report_kind = ResourceType.from_name(report)
        except UnknownResourceError as e:
            typer.echo(str(e))
            raise typer.Exit(1)
        if not report_kind.is_report:
            typer.echo(f"'{report}' is not a report.")
            raise typer.Exit(1)

    params = {
        "timeRange": time_range,
        "driverFilter": driver,
        "startDate": start_date,
        "endDate": end_date,
    }
    client = DashboardSocketClient(
        "cli_watch",
        url,
        rooms=room,
        report=report_kind,
        report_params={k: v for k, v in params.items() if v is not None},
    )
    visualizer = Visualizer(client)
    try:
        asyncio.run(visualizer.run(duration))
    except KeyboardInterrupt:
        pass


@app.command()
def stats(url: str = typer.Option(f"http://127.0.0.1:{settings.PORT}", help="Server base URL")):
    """Query the server for live connection stats."""
    import httpx
    resp = httpx.get(f"{url.rstrip('/')}/stats")
    typer.echo(resp.json())


if __name__ == "__main__":
    app()
