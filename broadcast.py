import logging
from typing import Optional

from connections import ConnectionManager, short_id
from storage import Storage

logger = logging.getLogger(__name__)


class Broadcaster:
    def __init__(self, storage: Storage, connections: ConnectionManager):
        self.storage = storage
        self.connections = connections

    async def send_to(self, connection_id: str, message: dict) -> bool:
        """Deliver to one connection; a stale or broken handle is unregistered."""
        handle = self.connections.lookup(connection_id)
        if handle is None:
            return False

        if not handle.is_open:
            logger.info("Cleaning up stale connection %s", short_id(connection_id))
            self.connections.unregister(connection_id)
            return False

        try:
            await handle.send_json(message)
        except Exception as e:
            logger.error("Error sending message to client %s: %s", short_id(connection_id), e)
            self.connections.unregister(connection_id)
            return False
        return True

    async def broadcast_to_room(self, room_id: str, exclude_connection_id: Optional[str], message: dict) -> int:
        delivered = 0
        for user in self.storage.get_users_by_room(room_id):
            if not user.socket_id or user.socket_id == exclude_connection_id:
                continue
            if await self.send_to(user.socket_id, message):
                delivered += 1
        return delivered
