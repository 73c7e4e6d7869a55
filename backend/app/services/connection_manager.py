"""WebSocket Connection Manager.

Tracks the guardian portal WebSockets of each household so recorded
activity can be pushed live instead of polled.
"""

import asyncio
import logging
import uuid

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Active guardian portal connections, grouped by household."""

    def __init__(self) -> None:
        self._portals: dict[uuid.UUID, set[WebSocket]] = {}  # household_id → WebSockets
        self._lock = asyncio.Lock()

    async def connect(
        self, household_id: uuid.UUID, websocket: WebSocket
    ) -> None:
        """Register a guardian portal connection."""
        async with self._lock:
            if household_id not in self._portals:
                self._portals[household_id] = set()
            self._portals[household_id].add(websocket)
        logger.info("Guardian portal connected for household %s", household_id)

    async def disconnect(
        self, household_id: uuid.UUID, websocket: WebSocket
    ) -> None:
        """Remove a guardian portal connection."""
        async with self._lock:
            if household_id in self._portals:
                self._portals[household_id].discard(websocket)
                if not self._portals[household_id]:
                    del self._portals[household_id]
        logger.info("Guardian portal disconnected for household %s", household_id)

    def connected_count(self, household_id: uuid.UUID) -> int:
        return len(self._portals.get(household_id, set()))

    async def notify_guardians(
        self, household_id: uuid.UUID, message: dict
    ) -> int:
        """Send a message to all connected portals of a household.

        Returns the count of connections successfully notified.
        Cleans up stale connections on failure.
        """
        sockets = self._portals.get(household_id, set()).copy()
        dead: set[WebSocket] = set()
        count = 0
        for ws in sockets:
            try:
                await ws.send_json(message)
                count += 1
            except Exception:
                logger.warning("Failed to push to guardian portal for household %s", household_id)
                dead.add(ws)
        for ws in dead:
            await self.disconnect(household_id, ws)
        return count
