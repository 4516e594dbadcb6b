"""WebSocket endpoint for real-time updates.

Clients connected to ``/ws/events`` receive every Notifier message:
``connection`` lifecycle changes (the current state is sent first) and
``delta`` messages describing committed projection changes. A ``ping`` is
sent when nothing else was sent for HEARTBEAT_INTERVAL seconds; clients may
send ``{"type": "ping"}`` and get a ``pong`` back.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/ws",
    tags=["WebSocket"]
)

HEARTBEAT_INTERVAL = 30  # seconds


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def forward_notifications(websocket: WebSocket, queue: asyncio.Queue) -> None:
    """Send queued notifier messages, with a ping whenever the queue is idle."""
    while True:
        try:
            message = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_INTERVAL)
        except asyncio.TimeoutError:
            message = {"type": "ping", "timestamp": _now()}
        await websocket.send_json(jsonable_encoder(message))


@router.websocket("/events")
async def events_endpoint(websocket: WebSocket):
    """Stream connection and projection updates."""
    notifier = websocket.app.state.notifier
    await websocket.accept()
    queue = notifier.subscribe()
    sender = asyncio.create_task(forward_notifications(websocket, queue))

    try:
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except ValueError:
                logger.debug(f"Ignoring non-JSON websocket message: {text[:64]}")
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_json({"type": "pong", "timestamp": _now()})
    except WebSocketDisconnect:
        logger.info("Events websocket disconnected")
    finally:
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"Events forwarder ended: {e}")
        notifier.unsubscribe(queue)


__all__ = ['router']
