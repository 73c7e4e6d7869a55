"""Persistence collaborator for the guardian engines.

Wraps one ``AsyncSession`` and converts between ORM rows and the validated
``ChildProfile`` schema. The engines never issue queries themselves; they
load, mutate and hand back through this class so the request's session
stays the single unit of work.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ChildNotFoundError
from app.models.activity import ActivityEvent
from app.models.approval import ApprovalRequest
from app.models.child import ChildProfileRecord
from app.models.household import Household, HouseholdMember
from app.models.user import User
from app.schemas.policy import IDENTITY_FIELDS, ChildProfile

_DATETIME_FIELDS = ("consent_at", "archived_at")


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def profile_from_record(record: ChildProfileRecord) -> ChildProfile:
    data = {field: getattr(record, field) for field in IDENTITY_FIELDS}
    for field in _DATETIME_FIELDS:
        data[field] = as_utc(data[field])
    return ChildProfile.model_validate({**record.policy, **data})


def _apply_profile(record: ChildProfileRecord, profile: ChildProfile) -> None:
    for field in IDENTITY_FIELDS:
        setattr(record, field, getattr(profile, field))
    record.policy = profile.model_dump(mode="json", exclude=set(IDENTITY_FIELDS))


class GuardianRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # -- Children -------------------------------------------------------------

    async def _child_record(self, child_id: uuid.UUID) -> ChildProfileRecord | None:
        result = await self.db.execute(
            select(ChildProfileRecord).where(ChildProfileRecord.id == child_id)
        )
        return result.scalar_one_or_none()

    async def load_child(self, child_id: uuid.UUID) -> ChildProfile | None:
        record = await self._child_record(child_id)
        return profile_from_record(record) if record is not None else None

    async def load_children(self, household_id: uuid.UUID) -> list[ChildProfile]:
        """Active (non-archived) children of a household, oldest first."""
        result = await self.db.execute(
            select(ChildProfileRecord)
            .where(
                ChildProfileRecord.household_id == household_id,
                ChildProfileRecord.archived_at.is_(None),
            )
            .order_by(ChildProfileRecord.created_at, ChildProfileRecord.name)
        )
        return [profile_from_record(r) for r in result.scalars().all()]

    async def insert_child(
        self,
        profile: ChildProfile,
        user_id: uuid.UUID | None = None,
        link_code: str | None = None,
    ) -> ChildProfile:
        record = ChildProfileRecord(user_id=user_id, link_code=link_code)
        _apply_profile(record, profile)
        self.db.add(record)
        await self.db.flush()
        return profile

    async def save_child_patch(self, profile: ChildProfile) -> ChildProfile:
        """Overwrite the stored profile with an already validated one."""
        record = await self._child_record(profile.id)
        if record is None:
            raise ChildNotFoundError(profile.id)
        _apply_profile(record, profile)
        record.updated_at = datetime.now(timezone.utc)
        await self.db.flush()
        return profile

    async def find_child_by_link_code(self, code: str) -> ChildProfile | None:
        result = await self.db.execute(
            select(ChildProfileRecord).where(ChildProfileRecord.link_code == code)
        )
        record = result.scalar_one_or_none()
        return profile_from_record(record) if record is not None else None

    async def find_child_by_user(self, user_id: uuid.UUID) -> ChildProfile | None:
        result = await self.db.execute(
            select(ChildProfileRecord).where(ChildProfileRecord.user_id == user_id)
        )
        record = result.scalar_one_or_none()
        return profile_from_record(record) if record is not None else None

    async def set_link_code(self, child_id: uuid.UUID, code: str | None) -> None:
        record = await self._child_record(child_id)
        if record is not None:
            record.link_code = code
            await self.db.flush()

    async def insert_user(self, user: User) -> User:
        self.db.add(user)
        await self.db.flush()
        return user

    # -- Household ------------------------------------------------------------

    async def load_household(self, household_id: uuid.UUID) -> Household | None:
        result = await self.db.execute(select(Household).where(Household.id == household_id))
        return result.scalar_one_or_none()

    async def insert_household(self, name: str) -> Household:
        household = Household(name=name, approval_mode="any_guardian")
        self.db.add(household)
        await self.db.flush()
        await self.db.refresh(household)
        return household

    async def save_household(self, household: Household) -> Household:
        await self.db.flush()
        return household

    async def load_members(self, household_id: uuid.UUID) -> list[HouseholdMember]:
        result = await self.db.execute(
            select(HouseholdMember)
            .where(HouseholdMember.household_id == household_id)
            .order_by(HouseholdMember.created_at, HouseholdMember.name)
        )
        return list(result.scalars().all())

    async def load_member(self, member_id: uuid.UUID) -> HouseholdMember | None:
        result = await self.db.execute(
            select(HouseholdMember).where(HouseholdMember.id == member_id)
        )
        return result.scalar_one_or_none()

    async def find_member_by_user(
        self, user_id: uuid.UUID, household_id: uuid.UUID,
    ) -> HouseholdMember | None:
        result = await self.db.execute(
            select(HouseholdMember).where(
                HouseholdMember.user_id == user_id,
                HouseholdMember.household_id == household_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_member_by_invite(self, code: str) -> HouseholdMember | None:
        result = await self.db.execute(
            select(HouseholdMember).where(HouseholdMember.invite_code == code)
        )
        return result.scalar_one_or_none()

    async def insert_member(self, member: HouseholdMember) -> HouseholdMember:
        self.db.add(member)
        await self.db.flush()
        await self.db.refresh(member)
        return member

    async def save_member(self, member: HouseholdMember) -> HouseholdMember:
        await self.db.flush()
        return member

    async def delete_member(self, member: HouseholdMember) -> None:
        await self.db.delete(member)
        await self.db.flush()

    # -- Approvals ------------------------------------------------------------

    async def load_approvals(
        self,
        household_id: uuid.UUID,
        status: str | None = None,
        child_id: uuid.UUID | None = None,
    ) -> list[ApprovalRequest]:
        query = select(ApprovalRequest).where(ApprovalRequest.household_id == household_id)
        if status is not None:
            query = query.where(ApprovalRequest.status == status)
        if child_id is not None:
            query = query.where(ApprovalRequest.child_id == child_id)
        result = await self.db.execute(query.order_by(ApprovalRequest.created_at.desc()))
        return list(result.scalars().all())

    async def load_approval(
        self, request_id: uuid.UUID, for_update: bool = False,
    ) -> ApprovalRequest | None:
        """Load one request; ``for_update`` locks the row and re-reads it.

        The row lock is a no-op on SQLite. The re-read overwrites whatever
        the session already holds, so a retried vote sees the latest votes.
        """
        query = select(ApprovalRequest).where(ApprovalRequest.id == request_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    def savepoint(self):
        """Nested transaction; a failed flush inside it rolls back only the savepoint."""
        return self.db.begin_nested()

    async def insert_approval(self, request: ApprovalRequest) -> ApprovalRequest:
        self.db.add(request)
        await self.db.flush()
        await self.db.refresh(request)
        return request

    async def save_approval_decision(self, request: ApprovalRequest) -> ApprovalRequest:
        """Persist a vote or a final decision on ``request``."""
        await self.db.flush()
        return request

    # -- Activity -------------------------------------------------------------

    async def insert_activity(self, event: ActivityEvent) -> ActivityEvent:
        self.db.add(event)
        await self.db.flush()
        return event

    async def load_activity(
        self,
        household_id: uuid.UUID,
        child_id: uuid.UUID | None = None,
        limit: int = 50,
    ) -> list[ActivityEvent]:
        query = select(ActivityEvent).where(ActivityEvent.household_id == household_id)
        if child_id is not None:
            query = query.where(ActivityEvent.child_id == child_id)
        result = await self.db.execute(
            query.order_by(ActivityEvent.at.desc()).limit(limit)
        )
        return list(result.scalars().all())
