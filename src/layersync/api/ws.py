"""WebSocket endpoint streaming engine events to renderers."""

import asyncio
import json
from datetime import datetime, timezone
from typing import Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from loguru import logger

router = APIRouter(prefix="/ws", tags=["websocket"])


class ConnectionManager:
    """Manages WebSocket connections for layer updates."""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        async with self._lock:
            self.active_connections.add(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")

    async def disconnect(self, websocket: WebSocket):
        async with self._lock:
            self.active_connections.discard(websocket)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def send_to(self, websocket: WebSocket, message: dict) -> bool:
        """Send a message to one client; False if the socket is gone."""
        try:
            await websocket.send_text(json.dumps(message, default=str))
            return True
        except Exception as e:
            logger.warning(f"Failed to send to websocket: {e}")
            return False


manager = ConnectionManager()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _forward_events(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        event = await queue.get()
        if not await manager.send_to(websocket, event):
            return


async def _receive_messages(websocket: WebSocket) -> None:
    while True:
        data = await websocket.receive_text()
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            await manager.send_to(websocket, {"type": "error", "message": "Invalid JSON"})
            continue
        await handle_client_message(websocket, message)


@router.websocket("/layers")
async def websocket_layers(websocket: WebSocket):
    """Stream ``layer_*``, ``loading_changed``, ``temporal_state`` and
    ``activation_complete`` events of the engine."""
    engine = websocket.app.state.engine
    await manager.connect(websocket)
    queue = engine.bus.subscribe()

    await manager.send_to(websocket, {
        "type": "connected",
        "timestamp": _now(),
        "layers": engine.layers.to_dict(include_features=False),
        "temporal": engine.temporal.snapshot(),
    })

    forward = asyncio.ensure_future(_forward_events(websocket, queue))
    receive = asyncio.ensure_future(_receive_messages(websocket))
    try:
        done, pending = await asyncio.wait({forward, receive}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning(f"WebSocket session ended with error: {exc}")
    finally:
        engine.bus.unsubscribe(queue)
        await manager.disconnect(websocket)


async def handle_client_message(websocket: WebSocket, message: dict):
    msg_type = message.get("type") if isinstance(message, dict) else None

    if msg_type == "ping":
        await manager.send_to(websocket, {"type": "pong", "timestamp": _now()})
    elif msg_type == "snapshot":
        engine = websocket.app.state.engine
        await manager.send_to(websocket, {
            "type": "snapshot",
            "layers": engine.layers.to_dict(include_features=False),
            "temporal": engine.temporal.snapshot(),
        })
    else:
        await manager.send_to(
            websocket,
            {"type": "error", "message": f"Unknown message type: {msg_type}"},
        )
