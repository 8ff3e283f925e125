import asyncio
import logging

from fastapi import APIRouter, WebSocket

from tasksync.services.live import LiveConnection, LiveHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["live"])


async def _receive_loop(websocket: WebSocket, hub: LiveHub, conn: LiveConnection) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
        text = message.get("text")
        if text is None:
            logger.warning("[WS] Ignoring non-text frame")
            continue
        await hub.handle_message(conn, text)


@router.websocket("/ws")
async def live_updates(websocket: WebSocket):
    """Push channel: the client sends {"type": "auth", "token": ...}, then receives task snapshots."""
    hub: LiveHub = websocket.app.state.services.live
    await websocket.accept()
    conn = hub.register(websocket)

    receiver = asyncio.create_task(_receive_loop(websocket, hub, conn))
    sender = asyncio.create_task(conn.send_forever())
    try:
        done, _ = await asyncio.wait({receiver, sender}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if task.exception() is not None:
                logger.debug(f"[WS] Connection ended with {task.exception()!r}")
    finally:
        receiver.cancel()
        sender.cancel()
        hub.unregister(conn)
