"""Approval Quorum Engine.

Resolves child-raised approval requests (purchases, rides, trips, service
bookings) from guardian votes according to the household's approval mode.

Rules:
- Only active guardians and co-guardians of the request's household vote
- A decline resolves the request immediately, in any mode (veto)
- ``any_guardian``: the first approve resolves the request
- ``both_guardians``: approves accumulate in ``votes`` (a repeat vote from
  the same guardian is a no-op) until two distinct, currently eligible
  guardians have approved
- Decided requests are immutable; any further vote is rejected
- Concurrent votes never overwrite each other: the row carries a version
  counter and a vote that lost the race is re-applied on the fresh row
"""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.core.exceptions import (
    AlreadyDecidedError,
    ApprovalNotFoundError,
    ChildArchivedError,
    NotEligibleError,
    VoteConflictError,
)
from app.models.approval import ApprovalRequest
from app.models.household import HouseholdMember
from app.schemas.activity import ActivityEntry, ActivityKind, Severity
from app.schemas.approval import ApprovalCreate, ApprovalStatus, VoteDecision
from app.schemas.household import ApprovalMode, HouseholdRole, MemberStatus
from app.schemas.policy import ChildProfile
from app.services.activity_log import ActivityLog
from app.services.repository import GuardianRepository

logger = logging.getLogger(__name__)

VOTE_ATTEMPTS = 3


def is_eligible_voter(member: HouseholdMember) -> bool:
    return member.status == MemberStatus.ACTIVE and HouseholdRole(member.role).can_vote


def quorum_for(mode: ApprovalMode) -> int:
    """Distinct approve votes needed to approve under ``mode``."""
    if ApprovalMode(mode) == ApprovalMode.BOTH_GUARDIANS:
        return settings.APPROVAL_QUORUM
    return 1


def _amount(request: ApprovalRequest) -> str:
    return f"{request.currency} {request.amount:,}"


class ApprovalEngine:
    def __init__(self, repo: GuardianRepository, activity: ActivityLog) -> None:
        self.repo = repo
        self.activity = activity

    async def list_requests(
        self,
        household_id: uuid.UUID,
        status: ApprovalStatus | None = None,
        child_id: uuid.UUID | None = None,
    ) -> list[ApprovalRequest]:
        return await self.repo.load_approvals(
            household_id,
            status=status.value if status is not None else None,
            child_id=child_id,
        )

    async def get_request(
        self, request_id: uuid.UUID, household_id: uuid.UUID | None = None,
    ) -> ApprovalRequest:
        request = await self.repo.load_approval(request_id)
        if request is None or (household_id is not None and request.household_id != household_id):
            raise ApprovalNotFoundError(request_id)
        return request

    async def submit_request(self, child: ChildProfile, data: ApprovalCreate) -> ApprovalRequest:
        """Raise a new pending request on behalf of ``child``."""
        if child.archived_at is not None or child.household_id is None:
            raise ChildArchivedError(child.id)

        request = await self.repo.insert_approval(ApprovalRequest(
            child_id=child.id,
            household_id=child.household_id,
            kind=data.kind.value,
            title=data.title,
            amount=data.amount,
            currency=data.currency,
            app=data.app,
            vendor=data.vendor,
            reason=data.reason,
            details=data.details,
            status=ApprovalStatus.PENDING.value,
            votes=[],
        ))
        logger.info("Approval %s requested by child %s", request.id, child.id)
        await self.activity.record(ActivityEntry(
            household_id=request.household_id,
            child_id=child.id,
            kind=ActivityKind.APPROVAL_REQUESTED,
            summary=f"{child.name} requested approval: {request.title} ({_amount(request)})",
            severity=Severity.WARNING,
            subject_id=request.id,
        ))
        return request

    async def cast_vote(
        self,
        request_id: uuid.UUID,
        guardian_id: uuid.UUID,
        decision: VoteDecision,
    ) -> ApprovalRequest:
        """Apply one guardian's vote and resolve the request if quorum is met.

        The vote is applied inside a savepoint against a freshly read row. If
        another vote was flushed in between, the savepoint is rolled back and
        the vote is applied again on top of it.

        Raises:
            ApprovalNotFoundError: Unknown request.
            AlreadyDecidedError: The request is approved or declined already.
            NotEligibleError: ``guardian_id`` is not an active voting member
                of the request's household.
            VoteConflictError: The row kept changing for every attempt.
        """
        decision = VoteDecision(decision)
        for attempt in range(1, VOTE_ATTEMPTS + 1):
            try:
                async with self.repo.savepoint():
                    request, voter = await self._apply_vote(request_id, guardian_id, decision)
            except StaleDataError:
                logger.warning(
                    "Approval %s changed under vote from %s (attempt %d of %d)",
                    request_id, guardian_id, attempt, VOTE_ATTEMPTS,
                )
                continue

            if request.status != ApprovalStatus.PENDING:
                await self._record_decision(request, voter)
            return request

        raise VoteConflictError(request_id, VOTE_ATTEMPTS)

    async def _apply_vote(
        self,
        request_id: uuid.UUID,
        guardian_id: uuid.UUID,
        decision: VoteDecision,
    ) -> tuple[ApprovalRequest, HouseholdMember]:
        request = await self.repo.load_approval(request_id, for_update=True)
        if request is None:
            raise ApprovalNotFoundError(request_id)
        if request.status != ApprovalStatus.PENDING:
            raise AlreadyDecidedError(request_id, request.status)

        members = await self.repo.load_members(request.household_id)
        voter = next((m for m in members if m.id == guardian_id), None)
        if voter is None:
            raise NotEligibleError(guardian_id, "Not a member of this household", request_id)
        if not is_eligible_voter(voter):
            raise NotEligibleError(
                guardian_id, f"{voter.name} cannot vote on approvals", request_id
            )

        if decision == VoteDecision.DECLINE:
            return await self._decide(request, ApprovalStatus.DECLINED, voter), voter

        household = await self.repo.load_household(request.household_id)
        mode = ApprovalMode(household.approval_mode)

        if guardian_id in request.votes:
            logger.debug("Repeat approve from %s on %s ignored", guardian_id, request_id)
        else:
            # Reassign so the change is flushed
            request.votes = [*request.votes, guardian_id]

        eligible = {m.id for m in members if is_eligible_voter(m)}
        approvals = [v for v in request.votes if v in eligible]
        if len(approvals) >= quorum_for(mode):
            return await self._decide(request, ApprovalStatus.APPROVED, voter), voter

        logger.info(
            "Approval %s has %d of %d votes", request_id, len(approvals), quorum_for(mode)
        )
        return await self.repo.save_approval_decision(request), voter

    async def _decide(
        self,
        request: ApprovalRequest,
        status: ApprovalStatus,
        voter: HouseholdMember,
    ) -> ApprovalRequest:
        request.status = status.value
        request.decided_by = voter.id
        request.decided_at = datetime.now(timezone.utc)
        await self.repo.save_approval_decision(request)
        logger.info("Approval %s %s by %s", request.id, status.value, voter.id)
        return request

    async def _record_decision(self, request: ApprovalRequest, voter: HouseholdMember) -> None:
        approved = request.status == ApprovalStatus.APPROVED
        await self.activity.record(ActivityEntry(
            household_id=request.household_id,
            child_id=request.child_id,
            kind=ActivityKind.APPROVAL_APPROVED if approved else ActivityKind.APPROVAL_DECLINED,
            summary=f"{request.title} ({_amount(request)}) {request.status} by {voter.name}",
            severity=Severity.SUCCESS if approved else Severity.ERROR,
            actor_id=voter.id,
            subject_id=request.id,
        ))
