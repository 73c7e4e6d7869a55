"""Household Directory.

Household membership (guardians, co-guardians, emergency contacts), the
invitation lifecycle and the household's approval mode.

A household always keeps at least one active guardian-role member and at
least one active member who can vote on approvals.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone

from app.config import settings
from app.core.exceptions import (
    HouseholdNotFoundError,
    InviteCodeError,
    LastGuardianError,
    MemberNotFoundError,
    NotEligibleError,
)
from app.models.household import Household, HouseholdMember
from app.models.user import User
from app.schemas.activity import ActivityEntry, ActivityKind, Severity
from app.schemas.approval import ApprovalStatus
from app.schemas.household import (
    ApprovalMode,
    ApprovalModeChange,
    HouseholdRole,
    HouseholdSummary,
    MemberChannels,
    MemberCreate,
    MemberStatus,
)
from app.services.activity_log import ActivityLog
from app.services.approval_engine import is_eligible_voter, quorum_for
from app.services.invitation_service import generate_invitation_code, normalize_code
from app.services.repository import GuardianRepository, as_utc

logger = logging.getLogger(__name__)

_MODE_LABELS = {
    ApprovalMode.ANY_GUARDIAN: "Any guardian",
    ApprovalMode.BOTH_GUARDIANS: "Both guardians",
}


def _is_active_guardian(member: HouseholdMember) -> bool:
    return member.status == MemberStatus.ACTIVE and member.role == HouseholdRole.GUARDIAN


class HouseholdDirectory:
    def __init__(self, repo: GuardianRepository, activity: ActivityLog) -> None:
        self.repo = repo
        self.activity = activity

    async def create_household(self, name: str, founder: User) -> tuple[Household, HouseholdMember]:
        """Create a household with ``founder`` as its primary, active guardian.

        ``founder`` must not be flushed yet; its ``household_id`` is set here.
        """
        household = await self.repo.insert_household(name)
        founder.household_id = household.id
        await self.repo.insert_user(founder)
        member = await self.repo.insert_member(HouseholdMember(
            household_id=household.id,
            user_id=founder.id,
            name=founder.name,
            role=HouseholdRole.GUARDIAN.value,
            status=MemberStatus.ACTIVE.value,
            email=founder.email,
            phone=founder.phone,
            is_primary=True,
            channels=MemberChannels().model_dump(),
        ))
        logger.info("Household %s created by %s", household.id, founder.id)
        return household, member

    async def get_household(self, household_id: uuid.UUID) -> Household:
        household = await self.repo.load_household(household_id)
        if household is None:
            raise HouseholdNotFoundError(household_id)
        return household

    async def list_members(self, household_id: uuid.UUID) -> list[HouseholdMember]:
        return await self.repo.load_members(household_id)

    async def eligible_voters(self, household_id: uuid.UUID) -> list[HouseholdMember]:
        return [m for m in await self.repo.load_members(household_id) if is_eligible_voter(m)]

    async def summary(self, household_id: uuid.UUID) -> HouseholdSummary:
        members = await self.repo.load_members(household_id)
        children = await self.repo.load_children(household_id)
        pending = await self.repo.load_approvals(household_id, status=ApprovalStatus.PENDING.value)
        return HouseholdSummary(
            children=len(children),
            unverified_children=sum(1 for c in children if not c.guardian_verified),
            co_guardians=sum(1 for m in members if m.role == HouseholdRole.CO_GUARDIAN),
            emergency_contacts=sum(1 for m in members if m.role == HouseholdRole.EMERGENCY_CONTACT),
            pending_invites=sum(1 for m in members if m.status == MemberStatus.PENDING),
            pending_approvals=len(pending),
        )

    async def get_member(
        self, member_id: uuid.UUID, household_id: uuid.UUID | None = None,
    ) -> HouseholdMember:
        member = await self.repo.load_member(member_id)
        if member is None or (household_id is not None and member.household_id != household_id):
            raise MemberNotFoundError(member_id)
        return member

    async def add_member(
        self,
        household_id: uuid.UUID,
        data: MemberCreate,
        actor_id: uuid.UUID | None = None,
    ) -> HouseholdMember:
        """Invite a member; they stay pending until the invite code is accepted."""
        member = await self.repo.insert_member(HouseholdMember(
            household_id=household_id,
            name=data.name,
            role=data.role.value,
            status=MemberStatus.PENDING.value,
            email=data.email,
            phone=data.phone,
            is_primary=False,
            channels=data.channels.model_dump(),
            invite_code=await generate_invitation_code(self.repo.db),
            invite_expires_at=datetime.now(timezone.utc) + timedelta(days=settings.INVITE_EXPIRY_DAYS),
        ))
        logger.info("Invited %s to household %s as %s", member.id, household_id, data.role.value)
        await self.activity.record(ActivityEntry(
            household_id=household_id,
            kind=ActivityKind.HOUSEHOLD_UPDATED,
            summary=f"Invited {member.name} as {data.role.value.replace('_', ' ')}",
            actor_id=actor_id,
            subject_id=member.id,
        ))
        return member

    async def accept_invite(self, code: str, user: User) -> HouseholdMember:
        """Activate the pending member behind ``code`` and attach ``user`` to it."""
        code = normalize_code(code)
        member = await self.repo.find_member_by_invite(code)
        if member is None or member.status != MemberStatus.PENDING:
            raise InviteCodeError(code)
        expires_at = as_utc(member.invite_expires_at)
        if expires_at is not None and expires_at < datetime.now(timezone.utc):
            raise InviteCodeError(code)

        member.status = MemberStatus.ACTIVE.value
        member.user_id = user.id
        member.invite_code = None
        member.invite_expires_at = None
        if member.email is None:
            member.email = user.email
        user.household_id = member.household_id
        await self.repo.save_member(member)
        logger.info("Member %s accepted invitation to household %s", member.id, member.household_id)

        await self.activity.record(ActivityEntry(
            household_id=member.household_id,
            kind=ActivityKind.HOUSEHOLD_UPDATED,
            summary=f"{member.name} joined the household",
            severity=Severity.SUCCESS,
            actor_id=member.id,
            subject_id=member.id,
        ))
        return member

    async def remove_member(
        self,
        household_id: uuid.UUID,
        member_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
    ) -> None:
        """Remove a member (active or pending).

        Raises:
            MemberNotFoundError: Unknown member, or one of another household.
            LastGuardianError: Removal would leave no active guardian, or no
                active member able to vote.
        """
        members = await self.repo.load_members(household_id)
        member = next((m for m in members if m.id == member_id), None)
        if member is None:
            raise MemberNotFoundError(member_id)

        remaining = [m for m in members if m.id != member_id]
        if _is_active_guardian(member) and not any(_is_active_guardian(m) for m in remaining):
            raise LastGuardianError(member_id, household_id)
        if is_eligible_voter(member) and not any(is_eligible_voter(m) for m in remaining):
            raise LastGuardianError(member_id, household_id)

        await self.repo.delete_member(member)
        logger.info("Member %s removed from household %s", member_id, household_id)
        await self.activity.record(ActivityEntry(
            household_id=household_id,
            kind=ActivityKind.HOUSEHOLD_UPDATED,
            summary=f"Removed {member.name} from the household",
            severity=Severity.WARNING,
            actor_id=actor_id,
            subject_id=member_id,
        ))

    async def set_approval_mode(
        self,
        household_id: uuid.UUID,
        mode: ApprovalMode,
        actor_id: uuid.UUID | None = None,
    ) -> ApprovalModeChange:
        """Switch the approval mode.

        ``both_guardians`` with fewer active voters than the quorum is
        accepted, but pending requests could never be approved until another
        guardian joins, so the result carries a warning.
        """
        mode = ApprovalMode(mode)
        household = await self.get_household(household_id)
        voters = await self.eligible_voters(household_id)

        warnings = []
        if len(voters) < quorum_for(mode):
            warnings.append(
                f"{_MODE_LABELS[mode]} needs {quorum_for(mode)} active guardians; "
                f"this household has {len(voters)}. Requests cannot be approved until another guardian joins."
            )
            logger.warning(
                "Household %s switched to %s with %d eligible voters",
                household_id, mode.value, len(voters),
            )

        if household.approval_mode != mode:
            household.approval_mode = mode.value
            await self.repo.save_household(household)
            logger.info("Household %s approval mode set to %s", household_id, mode.value)
            await self.activity.record(ActivityEntry(
                household_id=household_id,
                kind=ActivityKind.HOUSEHOLD_UPDATED,
                summary=f"Approval mode set to {_MODE_LABELS[mode]}",
                severity=Severity.WARNING if warnings else Severity.INFO,
                actor_id=actor_id,
            ))

        return ApprovalModeChange(mode=mode, eligible_voters=len(voters), warnings=warnings)

    async def require_voter(self, household_id: uuid.UUID, member_id: uuid.UUID) -> HouseholdMember:
        """Resolve ``member_id`` to an active guardian/co-guardian of the household."""
        member = await self.get_member(member_id, household_id)
        if not is_eligible_voter(member):
            raise NotEligibleError(member_id, f"{member.name} cannot administer this household")
        return member
