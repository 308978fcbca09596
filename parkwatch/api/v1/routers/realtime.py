"""
WebSocket endpoint for the channel transport.

Client frames:  {"op": "subscribe" | "unsubscribe", "channel": "<name>"} and {"op": "ping"}
Server frames:  {"type": "event", ...}, {"type": "ack", ...}, {"type": "error", ...}, {"type": "pong"}

Acks and errors go through the connection's outbox, behind any event already
queued, so a client never sees a reply overtake an earlier event.
"""
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from parkwatch.core.constants import Channel
from parkwatch.core.database import aget_db
from parkwatch.core.errors import PermissionDeniedError
from parkwatch.core.security import authenticate_websocket
from parkwatch.realtime.hub import HubConnection, hub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


def _handle_frame(conn: HubConnection, message) -> None:
    if not isinstance(message, dict):
        conn.enqueue({"type": "error", "detail": "Frames must be JSON objects"})
        return
    op = message.get("op")
    if op == "ping":
        conn.enqueue({"type": "pong"})
        return
    if op not in ("subscribe", "unsubscribe"):
        conn.enqueue({"type": "error", "op": op, "detail": f"Unknown op '{op}'"})
        return

    raw_channel = message.get("channel")
    try:
        channel = Channel(raw_channel)
    except ValueError:
        conn.enqueue({"type": "error", "op": op, "channel": raw_channel, "detail": "Unknown channel"})
        return

    if op == "subscribe":
        try:
            hub.join(conn, channel)
        except PermissionDeniedError as e:
            conn.enqueue({"type": "error", "op": op, "channel": channel.value, "detail": e.detail})
            return
    else:
        hub.leave(conn, channel)
    conn.enqueue({"type": "ack", "op": op, "channel": channel.value})


@router.websocket("/ws")
async def channel_socket(websocket: WebSocket, db: AsyncSession = Depends(aget_db)):
    user = await authenticate_websocket(websocket, db)
    # release the session; the socket may stay open for hours
    await db.close()
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    conn = hub.register(websocket, user.id, user.role)
    try:
        while not conn.closed:
            try:
                message = await websocket.receive_json()
            except ValueError:
                conn.enqueue({"type": "error", "detail": "Malformed JSON frame"})
                continue
            _handle_frame(conn, message)
    except WebSocketDisconnect:
        logger.info("User %s disconnected", user.id)
    finally:
        await hub.unregister(conn)
