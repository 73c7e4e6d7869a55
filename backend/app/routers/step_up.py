"""Step-up authentication endpoints.

Gated endpoints elsewhere answer ``202 Accepted`` with a challenge. The
guardian then completes it here with a password or an MFA code, which runs
the staged command and returns its result.
"""

import uuid
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request

from app.core.dependencies import (
    get_approval_engine,
    get_current_user,
    get_household_directory,
    get_policy_store,
    get_step_up_gate,
    require_guardian,
)
from app.core.rate_limit import limiter
from app.models.household import HouseholdMember
from app.models.user import User
from app.schemas.step_up import (
    MfaSendRequest,
    MfaVerifyRequest,
    PasswordVerifyRequest,
    StepUpAction,
    StepUpActionKind,
    StepUpChallengeResponse,
    StepUpResult,
)
from app.services.action_dispatcher import ActionDispatcher
from app.services.approval_engine import ApprovalEngine
from app.services.household_directory import HouseholdDirectory
from app.services.policy_store import PolicyStore
from app.services.step_up import StepUpGate

router = APIRouter(prefix="/step-up", tags=["Step-Up"])


async def stage_action(
    gate: StepUpGate,
    guardian: HouseholdMember,
    title: str,
    subtitle: str,
    kind: StepUpActionKind,
    payload: dict[str, Any],
) -> StepUpChallengeResponse:
    """Stage a gated command for ``guardian`` and describe the new challenge."""
    challenge = await gate.request_step_up(
        guardian.id,
        guardian.user_id,
        title,
        subtitle,
        StepUpAction(kind=kind, payload=payload),
    )
    return gate.describe(challenge)


def get_dispatcher(
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    policies: Annotated[PolicyStore, Depends(get_policy_store)],
    approvals: Annotated[ApprovalEngine, Depends(get_approval_engine)],
    household: Annotated[HouseholdDirectory, Depends(get_household_directory)],
) -> ActionDispatcher:
    return ActionDispatcher(policies, approvals, household, guardian)


@router.get("/{challenge_id}", response_model=StepUpChallengeResponse)
async def get_challenge(
    challenge_id: uuid.UUID,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    gate: Annotated[StepUpGate, Depends(get_step_up_gate)],
):
    """Current state of one of the caller's challenges."""
    return gate.describe(await gate.get(challenge_id, guardian.id))


@router.post("/{challenge_id}/mfa/send", response_model=StepUpChallengeResponse)
@limiter.limit("10/minute")
async def send_mfa_code(
    request: Request,
    challenge_id: uuid.UUID,
    body: MfaSendRequest,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    gate: Annotated[StepUpGate, Depends(get_step_up_gate)],
    current_user: User = Depends(get_current_user),
):
    """Choose an MFA channel; SMS, WhatsApp and email receive a fresh code."""
    challenge = await gate.send_mfa_code(challenge_id, guardian.id, current_user, body.channel)
    return gate.describe(challenge)


@router.post("/{challenge_id}/password", response_model=StepUpResult)
@limiter.limit("10/minute")
async def confirm_with_password(
    request: Request,
    challenge_id: uuid.UUID,
    body: PasswordVerifyRequest,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    gate: Annotated[StepUpGate, Depends(get_step_up_gate)],
    dispatcher: Annotated[ActionDispatcher, Depends(get_dispatcher)],
    current_user: User = Depends(get_current_user),
):
    """Re-enter the account password, then run the staged command."""
    challenge = await gate.get(challenge_id, guardian.id)
    kind = challenge.action.kind
    result = await gate.confirm_password(
        challenge_id, guardian.id, current_user, body.password, dispatcher.dispatch,
    )
    return StepUpResult(challenge_id=challenge_id, action_kind=kind, result=result)


@router.post("/{challenge_id}/mfa/verify", response_model=StepUpResult)
@limiter.limit("10/minute")
async def confirm_with_mfa(
    request: Request,
    challenge_id: uuid.UUID,
    body: MfaVerifyRequest,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    gate: Annotated[StepUpGate, Depends(get_step_up_gate)],
    dispatcher: Annotated[ActionDispatcher, Depends(get_dispatcher)],
    current_user: User = Depends(get_current_user),
):
    """Enter the MFA code, then run the staged command."""
    challenge = await gate.get(challenge_id, guardian.id)
    kind = challenge.action.kind
    result = await gate.confirm_mfa_code(
        challenge_id, guardian.id, current_user, body.channel, body.code, dispatcher.dispatch,
    )
    return StepUpResult(challenge_id=challenge_id, action_kind=kind, result=result)


@router.delete("/{challenge_id}")
async def cancel_challenge(
    challenge_id: uuid.UUID,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    gate: Annotated[StepUpGate, Depends(get_step_up_gate)],
):
    """Cancel a challenge; has no effect once it is verified."""
    cancelled = await gate.cancel(challenge_id, guardian.id)
    return {"challenge_id": str(challenge_id), "cancelled": cancelled}
