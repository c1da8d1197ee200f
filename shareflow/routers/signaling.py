"""Signaling WebSocket endpoint."""
from __future__ import annotations

import asyncio
import logging
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..core.errors import InvalidInputError
from ..schemas.signaling import decode_frame
from ..services.relay import SignalingConnection
from ..services.sessions import Session, SessionSupervisor

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/signaling")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """Feed inbound frames to the session supervisor, one consumer per connection."""

    supervisor: SessionSupervisor = websocket.app.state.supervisor
    await websocket.accept()

    connection = SignalingConnection(connection_id=uuid4().hex, send=websocket.send_json)
    session = supervisor.connect(connection)
    consumer = asyncio.create_task(supervisor.serve(session))
    reason = "client disconnect"

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text") or message.get("bytes") or ""
            try:
                event, data = decode_frame(raw)
            except InvalidInputError as exc:
                supervisor.reply_error(session, exc.message)
                continue
            session.submit(event, data)
    except WebSocketDisconnect as exc:
        reason = f"client disconnect ({exc.code})"
    finally:
        # Runs to completion even if the handler itself is cancelled.
        await asyncio.shield(_close_session(supervisor, session, consumer, reason))


async def _close_session(
    supervisor: SessionSupervisor, session: Session, consumer: asyncio.Task, reason: str
) -> None:
    session.close_inbox()
    await consumer
    await supervisor.disconnect(session, reason)
