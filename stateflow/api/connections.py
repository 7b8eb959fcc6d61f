"""
Run subscribers.

Every step of a run is broadcast to the clients watching it. Each
subscriber gets its own queue, so a slow client never holds up the run or
the other subscribers.
"""

from typing import Any, Dict, Hashable
import asyncio
import logging


logger = logging.getLogger(__name__)

# Message types after which a run sends nothing more
END_TYPES = frozenset({"end", "error", "cancelled"})


class ConnectionManager:
    """Fans run events out to subscribed connections."""

    def __init__(self):
        self.active_connections: Dict[str, Dict[Hashable, asyncio.Queue]] = {}

    def subscribe(self, run_id: str, connection: Hashable) -> asyncio.Queue:
        """Register a connection and return the queue its messages arrive on."""
        queue: asyncio.Queue = asyncio.Queue()
        self.active_connections.setdefault(run_id, {})[connection] = queue
        logger.info(f"Subscriber added for run: {run_id}")
        return queue

    def disconnect(self, connection: Hashable, run_id: str):
        """Remove a connection."""
        subscribers = self.active_connections.get(run_id)
        if subscribers is not None:
            subscribers.pop(connection, None)
            if not subscribers:
                del self.active_connections[run_id]
        logger.info(f"Subscriber removed from run: {run_id}")

    def subscriber_count(self, run_id: str) -> int:
        return len(self.active_connections.get(run_id, {}))

    async def broadcast(self, run_id: str, message: Dict[str, Any]):
        """Send a message to every subscriber of a run."""
        for queue in list(self.active_connections.get(run_id, {}).values()):
            await queue.put(message)


# Global connection manager
manager = ConnectionManager()
