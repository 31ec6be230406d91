"""
MODULE OVERVIEW:
Short polling fallback for the model rooms.

WHAT IS HAPPENING HERE:
Some consumers (scripts, proxies that strip the Upgrade header) cannot hold
a WebSocket open. They can ask for the last broadcast payload of a room over
plain HTTP instead. Nothing is computed here: the response is exactly what
the room's members were last sent, so a poller and a socket client converge
on the same state.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Query, Request, Response

from fleetsync.shared.models import PollResponse
from fleetsync.shared.route_utils import extract_client_id, log_connection, resource_or_404

router = APIRouter()


@router.get("/poll/{resource}", response_model=PollResponse)
async def short_poll(
    resource: str,
    request: Request,
    response: Response,
    client_id: str | None = Query(None)
):
    cid = await extract_client_id(client_id)
    resource_type = resource_or_404(resource, reports=False)
    await log_connection("short_poll:connect", cid, {"resource": resource_type.value})

    interval_ms = request.app.state.settings.SHORT_POLL_INTERVAL_MS
    cached = request.app.state.broadcaster.cached(resource_type)
    response.headers["X-Poll-Interval"] = str(interval_ms)

    return PollResponse(
        resource=resource_type,
        payload=cached.payload if cached else None,
        status="ok" if cached else "empty",
        next_poll_ms=interval_ms,
        server_time=datetime.now(timezone.utc)
    )
