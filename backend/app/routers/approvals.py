"""Approval request router.

Children raise requests from their app; guardians vote on them. A vote is
a gated mutation and only counts once its step-up challenge completes.
"""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from app.core.dependencies import (
    get_approval_engine,
    get_step_up_gate,
    require_child,
    require_guardian,
)
from app.core.exceptions import ChildNotFoundError
from app.models.household import HouseholdMember
from app.models.user import User
from app.routers.step_up import stage_action
from app.schemas.approval import (
    ApprovalCreate,
    ApprovalRequestResponse,
    ApprovalStatus,
    VoteDecision,
    VoteRequest,
)
from app.schemas.step_up import StepUpActionKind, StepUpChallengeResponse
from app.services.approval_engine import ApprovalEngine
from app.services.step_up import StepUpGate

router = APIRouter(prefix="/approvals", tags=["Approvals"])


@router.get("", response_model=list[ApprovalRequestResponse])
async def list_approvals(
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    approvals: Annotated[ApprovalEngine, Depends(get_approval_engine)],
    status_filter: ApprovalStatus | None = Query(None, alias="status"),
    child_id: uuid.UUID | None = None,
):
    """Household approval requests, newest first."""
    return await approvals.list_requests(guardian.household_id, status_filter, child_id)


@router.get("/{request_id}", response_model=ApprovalRequestResponse)
async def get_approval(
    request_id: uuid.UUID,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    approvals: Annotated[ApprovalEngine, Depends(get_approval_engine)],
):
    return await approvals.get_request(request_id, guardian.household_id)


@router.post(
    "",
    response_model=ApprovalRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_approval(
    body: ApprovalCreate,
    approvals: Annotated[ApprovalEngine, Depends(get_approval_engine)],
    current_user: User = Depends(require_child),
):
    """Raise a request from the child app (purchase, ride, trip, booking)."""
    child = await approvals.repo.find_child_by_user(current_user.id)
    if child is None:
        raise ChildNotFoundError(current_user.id)
    return await approvals.submit_request(child, body)


@router.post(
    "/{request_id}/vote",
    response_model=StepUpChallengeResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def vote(
    request_id: uuid.UUID,
    body: VoteRequest,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    approvals: Annotated[ApprovalEngine, Depends(get_approval_engine)],
    gate: Annotated[StepUpGate, Depends(get_step_up_gate)],
):
    request = await approvals.get_request(request_id, guardian.household_id)
    approve = body.decision == VoteDecision.APPROVE
    return await stage_action(
        gate, guardian,
        "Approve request" if approve else "Decline request",
        "This will allow the child to continue." if approve else "This will decline the request.",
        StepUpActionKind.CAST_VOTE,
        {"request_id": str(request.id), "decision": body.decision.value},
    )
