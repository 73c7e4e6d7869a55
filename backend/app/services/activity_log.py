"""Activity Log.

Records guardian-visible activity (approvals, policy edits, household
changes) and pushes each event to the household's connected portals.

Recording is fire-and-forget: a failing insert or push is logged and never
undoes the mutation that produced the event.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.activity import ActivityEvent
from app.schemas.activity import ActivityEntry, ActivityEventResponse
from app.services.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)


class ActivityLog:
    def __init__(
        self,
        db: AsyncSession,
        connections: ConnectionManager | None = None,
    ) -> None:
        self.db = db
        self.connections = connections

    async def record(self, entry: ActivityEntry) -> ActivityEvent | None:
        """Store ``entry`` and notify guardian portals.

        Returns the stored event, or None when the insert failed.
        """
        event = ActivityEvent(
            household_id=entry.household_id,
            child_id=entry.child_id,
            kind=entry.kind.value,
            summary=entry.summary,
            severity=entry.severity.value,
            actor_id=entry.actor_id,
            subject_id=entry.subject_id,
            at=datetime.now(timezone.utc),
        )
        try:
            # Savepoint: a failed insert must not poison the surrounding transaction
            async with self.db.begin_nested():
                self.db.add(event)
        except Exception:
            logger.exception("Failed to record activity %r", entry.kind.value)
            return None

        if self.connections is not None and event.household_id is not None:
            await self._push(event)
        return event

    async def _push(self, event: ActivityEvent) -> None:
        message = {
            "type": "activity",
            "event": ActivityEventResponse.model_validate(event).model_dump(mode="json"),
        }
        try:
            await self.connections.notify_guardians(event.household_id, message)
        except Exception:
            logger.warning("Activity push failed for household %s", event.household_id)
