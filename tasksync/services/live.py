import asyncio
import json
import logging
from typing import Any

from tasksync.core.errors import AuthError, StorageError
from tasksync.core.logging_setup import short_key
from tasksync.services.sessions import SessionRegistry

logger = logging.getLogger(__name__)


class LiveConnection:
    """One push-channel connection. Unbound until a valid auth handshake arrives."""

    def __init__(self, websocket: Any, queue_size: int = 100):
        self.websocket = websocket
        self.owner_key: str | None = None
        self.queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=queue_size)
        self.open = True

    def drop(self) -> None:
        """Discard queued payloads and tell the sender to close the socket."""
        self.open = False
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)

    async def send_forever(self) -> None:
        """Drain the outbound queue in order until the connection goes away."""
        while True:
            payload = await self.queue.get()
            if payload is None:
                await self.websocket.close(code=1013)
                return
            await self.websocket.send_text(payload)


class LiveHub:
    """
    Fan-out of task snapshots to the connections bound to one owner key.

    ``broadcast`` never awaits a socket: it enqueues on each matching
    connection, and each connection's sender drains its own queue, so
    per-connection delivery order is enqueue order.
    """

    def __init__(self, sessions: SessionRegistry, queue_size: int = 100):
        self.sessions = sessions
        self.queue_size = queue_size
        self._connections: set[LiveConnection] = set()

    def __len__(self) -> int:
        return len(self._connections)

    def register(self, websocket: Any) -> LiveConnection:
        conn = LiveConnection(websocket, self.queue_size)
        self._connections.add(conn)
        logger.info(f"[WS] Client connected | Total clients: {len(self._connections)}")
        return conn

    def unregister(self, conn: LiveConnection) -> None:
        conn.open = False
        if conn not in self._connections:
            return
        self._connections.discard(conn)
        logger.info(f"[WS] Client disconnected | Remaining clients: {len(self._connections)}")

    def bound_count(self, owner_key: str) -> int:
        return sum(1 for c in self._connections if c.owner_key == owner_key)

    async def bind(self, conn: LiveConnection, token: str | None) -> bool:
        """Attach the token's owner key to the connection, or clear it if the token is no good."""
        try:
            session = await self.sessions.resolve(token)
        except AuthError as e:
            conn.owner_key = None
            logger.info(f"[WS] Handshake rejected: {e.message}")
            return False
        except StorageError as e:
            # the token was expired and its removal could not be persisted
            conn.owner_key = None
            logger.warning(f"[WS] Handshake failed on session storage: {e.message}")
            return False
        conn.owner_key = session.owner_key
        logger.info(f"[WS] Authenticated connection for {short_key(session.owner_key)}")
        return True

    async def handle_message(self, conn: LiveConnection, message: str) -> None:
        try:
            data = json.loads(message)
        except ValueError:
            logger.warning(f"[WS] Received invalid message: {message[:100]!r}")
            return
        if isinstance(data, dict) and data.get("type") == "auth":
            await self.bind(conn, data.get("token"))
        else:
            logger.warning(f"[WS] Ignoring unexpected message: {message[:100]!r}")

    def broadcast(self, owner_key: str | None, snapshot: list[dict]) -> int:
        """Queue the snapshot for every open connection bound to owner_key; returns the count."""
        if not owner_key:
            logger.warning("[WS] Broadcast called without an owner key. Not broadcasting.")
            return 0

        payload = json.dumps(snapshot)
        delivered = 0
        for conn in list(self._connections):
            if not conn.open or conn.owner_key != owner_key:
                continue
            try:
                conn.queue.put_nowait(payload)
            except asyncio.QueueFull:
                # a client that stopped reading is dropped rather than buffered forever
                logger.warning(f"[WS] Outbound queue full, dropping client of {short_key(owner_key)}")
                conn.drop()
                self.unregister(conn)
                continue
            delivered += 1
        return delivered
