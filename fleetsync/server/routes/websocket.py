"""
MODULE OVERVIEW:
The WebSocket route implementation.

WHAT IS HAPPENING HERE:
Upgrades the HTTP request to a WebSocket and hands the connection to the
ConnectionManager as two callables. Both directions carry JSON envelopes of
the form {"event": name, "data": payload}. Everything the server pushes
(room updates, report data, heartbeats) goes through `send`; this handler
only reads.
"""
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from fleetsync.server.connection_manager import ConnectionManager
from fleetsync.shared.models import Envelope
from fleetsync.shared.route_utils import extract_client_id, log_connection

router = APIRouter()

MALFORMED_MESSAGE = 'Messages must be JSON objects of the form {"event": name, "data": payload}'


@router.websocket("/ws/connect")
async def websocket_endpoint(
    websocket: WebSocket,
    client_id: str | None = Query(None)
):
    manager: ConnectionManager = websocket.app.state.manager
    cid = await extract_client_id(client_id)
    await websocket.accept()

    async def send(event: str, data) -> None:
        await websocket.send_text(Envelope(event=event, data=data).model_dump_json())

    async def close() -> None:
        await websocket.close(code=1001)

    session = await manager.connect(cid, send, close)
    await log_connection("websocket:connect", session.connection_id)

    try:
        while True:
            text_data = await websocket.receive_text()
            try:
                envelope = Envelope.model_validate_json(text_data)
            except ValidationError:
                await manager.emit(session, "error", {"message": MALFORMED_MESSAGE})
                continue
            await manager.handle_message(session, envelope.event, envelope.data)
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(session)
        await log_connection("websocket:disconnect", session.connection_id)
