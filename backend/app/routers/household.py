"""Household router: members, invitations and the approval mode."""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, status

from app.core.dependencies import (
    get_current_user,
    get_household_directory,
    get_step_up_gate,
    require_guardian,
)
from app.models.household import HouseholdMember
from app.models.user import User
from app.routers.step_up import stage_action
from app.schemas.household import (
    ApprovalModeUpdate,
    HouseholdMemberResponse,
    HouseholdResponse,
    InvitationAccept,
    MemberCreate,
)
from app.schemas.step_up import StepUpActionKind, StepUpChallengeResponse
from app.services.household_directory import HouseholdDirectory
from app.services.step_up import StepUpGate

router = APIRouter(prefix="/household", tags=["Household"])


@router.get("", response_model=HouseholdResponse)
async def get_household(
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    household: Annotated[HouseholdDirectory, Depends(get_household_directory)],
):
    record = await household.get_household(guardian.household_id)
    members = await household.list_members(guardian.household_id)
    return HouseholdResponse(
        id=record.id,
        name=record.name,
        approval_mode=record.approval_mode,
        members=[HouseholdMemberResponse.model_validate(m) for m in members],
        summary=await household.summary(guardian.household_id),
        created_at=record.created_at,
    )


@router.post(
    "/members",
    response_model=StepUpChallengeResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def invite_member(
    body: MemberCreate,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    gate: Annotated[StepUpGate, Depends(get_step_up_gate)],
):
    return await stage_action(
        gate, guardian,
        "Invite household member",
        "Inviting a guardian changes supervision permissions.",
        StepUpActionKind.ADD_MEMBER,
        body.model_dump(mode="json"),
    )


@router.delete(
    "/members/{member_id}",
    response_model=StepUpChallengeResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def remove_member(
    member_id: uuid.UUID,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    household: Annotated[HouseholdDirectory, Depends(get_household_directory)],
    gate: Annotated[StepUpGate, Depends(get_step_up_gate)],
):
    await household.get_member(member_id, guardian.household_id)
    return await stage_action(
        gate, guardian,
        "Remove household member",
        "This removes access and disables alerts for that member.",
        StepUpActionKind.REMOVE_MEMBER,
        {"member_id": str(member_id)},
    )


@router.put(
    "/approval-mode",
    response_model=StepUpChallengeResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def update_approval_mode(
    body: ApprovalModeUpdate,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    gate: Annotated[StepUpGate, Depends(get_step_up_gate)],
):
    return await stage_action(
        gate, guardian,
        "Update approval mode",
        "This changes who can approve requests.",
        StepUpActionKind.SET_APPROVAL_MODE,
        body.model_dump(mode="json"),
    )


@router.post("/invitations/accept", response_model=HouseholdMemberResponse)
async def accept_invitation(
    body: InvitationAccept,
    household: Annotated[HouseholdDirectory, Depends(get_household_directory)],
    current_user: User = Depends(get_current_user),
):
    """Join a household with an invitation code (signed-in account)."""
    return await household.accept_invite(body.code, current_user)
