import asyncio
import logging
import uuid
from typing import Dict, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from config import HEARTBEAT_INTERVAL

logger = logging.getLogger(__name__)

PING = {"type": "ping", "payload": {}}


def short_id(connection_id: str) -> str:
    return connection_id[:6]


class Connection:
    """A live socket plus the bookkeeping the registry needs for it."""

    def __init__(self, connection_id: str, websocket: WebSocket):
        self.id = connection_id
        self.websocket = websocket
        self.is_alive = True
        # frames to one peer go out in the order they were issued
        self._send_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, data: dict):
        async with self._send_lock:
            await self.websocket.send_json(data)

    async def close(self, code: int = 1001):
        if self.websocket.application_state != WebSocketState.DISCONNECTED:
            await self.websocket.close(code=code)


class ConnectionManager:
    """Single authoritative map of connection id to live handle.

    Written by the accept path, the liveness sweep and the broadcaster;
    unregister is idempotent so racing removals are harmless.
    """

    def __init__(self, heartbeat_interval: float = HEARTBEAT_INTERVAL):
        self.active_connections: Dict[str, Connection] = {}
        self.heartbeat_interval = heartbeat_interval

    async def connect(self, websocket: WebSocket) -> Connection:
        await websocket.accept()
        connection = Connection(str(uuid.uuid4()), websocket)
        self.register(connection.id, connection)
        logger.info("Client connected %s", short_id(connection.id))
        return connection

    def register(self, connection_id: str, handle):
        self.active_connections[connection_id] = handle

    def lookup(self, connection_id: Optional[str]):
        if not connection_id:
            return None
        return self.active_connections.get(connection_id)

    def unregister(self, connection_id: str) -> bool:
        return self.active_connections.pop(connection_id, None) is not None

    def mark_alive(self, connection_id: str):
        handle = self.active_connections.get(connection_id)
        if handle is not None:
            handle.is_alive = True

    def __len__(self):
        return len(self.active_connections)

    async def sweep(self):
        """Evict handles that stayed silent since the previous sweep, ping the rest."""
        for connection_id, handle in list(self.active_connections.items()):
            if not handle.is_alive:
                logger.info("Terminating inactive connection %s", short_id(connection_id))
                self.unregister(connection_id)
                try:
                    await handle.close()
                except Exception as e:
                    logger.debug("Close of %s failed: %s", short_id(connection_id), e)
                continue

            handle.is_alive = False
            try:
                await handle.send_json(PING)
            except Exception as e:
                logger.warning("Ping to %s failed, dropping it: %s", short_id(connection_id), e)
                self.unregister(connection_id)

    async def run_heartbeat(self):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.sweep()

    async def close_all(self):
        for connection_id, handle in list(self.active_connections.items()):
            self.unregister(connection_id)
            try:
                await handle.close()
            except Exception as e:
                logger.debug("Close of %s failed: %s", short_id(connection_id), e)
