"""Child policy router.

Reads are immediate. Every mutation is staged behind a step-up challenge
and answered with ``202 Accepted``; the change happens once the guardian
completes the challenge under ``/step-up``.
"""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, status

from app.core.dependencies import (
    get_policy_store,
    get_step_up_gate,
    require_child,
    require_guardian,
)
from app.core.exceptions import ChildNotFoundError
from app.models.household import HouseholdMember
from app.models.user import User
from app.routers.step_up import stage_action
from app.schemas.policy import (
    AgeTemplate,
    ChildCreate,
    ChildLinkRequest,
    ChildPatchRequest,
    ChildProfile,
    TemplateApplyRequest,
)
from app.schemas.step_up import StepUpActionKind, StepUpChallengeResponse
from app.services.policy_store import PolicyStore
from app.services.step_up import StepUpGate
from app.services.template_resolver import resolve_template

router = APIRouter(prefix="/children", tags=["Children"])


@router.get("", response_model=list[ChildProfile])
async def list_children(
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    policies: Annotated[PolicyStore, Depends(get_policy_store)],
):
    """List the household's supervised children."""
    return await policies.list_children(guardian.household_id)


@router.get("/me", response_model=ChildProfile)
async def get_own_profile(
    policies: Annotated[PolicyStore, Depends(get_policy_store)],
    current_user: User = Depends(require_child),
):
    """The signed-in child's own (read-only) policy."""
    profile = await policies.repo.find_child_by_user(current_user.id)
    if profile is None:
        raise ChildNotFoundError(current_user.id)
    return profile


@router.get("/{child_id}", response_model=ChildProfile)
async def get_child(
    child_id: uuid.UUID,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    policies: Annotated[PolicyStore, Depends(get_policy_store)],
):
    return await policies.get_child(child_id, guardian.household_id)


@router.get("/{child_id}/templates/{template}")
async def preview_template(
    child_id: uuid.UUID,
    template: AgeTemplate,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    policies: Annotated[PolicyStore, Depends(get_policy_store)],
) -> dict:
    """Show the patch a template would apply, without applying it."""
    current = await policies.get_child(child_id, guardian.household_id)
    return resolve_template(template, current)


# ---------------------------------------------------------------------------
# Gated mutations
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=StepUpChallengeResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def create_child(
    body: ChildCreate,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    gate: Annotated[StepUpGate, Depends(get_step_up_gate)],
):
    return await stage_action(
        gate, guardian,
        "Create supervised child",
        "Creating a child sets you as the guardian.",
        StepUpActionKind.CREATE_CHILD,
        body.model_dump(mode="json"),
    )


@router.post(
    "/link",
    response_model=StepUpChallengeResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def link_child(
    body: ChildLinkRequest,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    gate: Annotated[StepUpGate, Depends(get_step_up_gate)],
):
    return await stage_action(
        gate, guardian,
        "Link child account",
        "Linking changes supervision and privacy settings.",
        StepUpActionKind.LINK_CHILD,
        body.model_dump(mode="json"),
    )


@router.patch(
    "/{child_id}",
    response_model=StepUpChallengeResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def update_child(
    child_id: uuid.UUID,
    body: ChildPatchRequest,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    policies: Annotated[PolicyStore, Depends(get_policy_store)],
    gate: Annotated[StepUpGate, Depends(get_step_up_gate)],
):
    child = await policies.get_child(child_id, guardian.household_id)
    title = "Update charging restrictions" if "charging" in body.patch else "Update child settings"
    return await stage_action(
        gate, guardian,
        title,
        f"This changes what {child.name} can do.",
        StepUpActionKind.PATCH_POLICY,
        {"child_id": str(child_id), **body.model_dump(mode="json")},
    )


@router.post(
    "/{child_id}/template",
    response_model=StepUpChallengeResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def apply_template(
    child_id: uuid.UUID,
    body: TemplateApplyRequest,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    policies: Annotated[PolicyStore, Depends(get_policy_store)],
    gate: Annotated[StepUpGate, Depends(get_step_up_gate)],
):
    child = await policies.get_child(child_id, guardian.household_id)
    return await stage_action(
        gate, guardian,
        f"Apply {body.template.label} template",
        f"This overwrites several of {child.name}'s settings.",
        StepUpActionKind.APPLY_TEMPLATE,
        {"child_id": str(child_id), "template": body.template.value},
    )


@router.delete(
    "/{child_id}",
    response_model=StepUpChallengeResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def archive_child(
    child_id: uuid.UUID,
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    policies: Annotated[PolicyStore, Depends(get_policy_store)],
    gate: Annotated[StepUpGate, Depends(get_step_up_gate)],
):
    child = await policies.get_child(child_id, guardian.household_id)
    return await stage_action(
        gate, guardian,
        "Unlink child",
        f"{child.name} will no longer be supervised by this household.",
        StepUpActionKind.ARCHIVE_CHILD,
        {"child_id": str(child_id)},
    )
