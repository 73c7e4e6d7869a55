"""Step-up command execution.

Maps a verified ``StepUpAction`` onto the engine call it stands for and
returns a JSON-ready result. Payloads are validated again here because a
command may have been staged long before it runs.
"""

import uuid

from pydantic import BaseModel

from app.models.household import HouseholdMember
from app.schemas.approval import ApprovalRequestResponse, VoteRequest
from app.schemas.household import (
    ApprovalModeUpdate,
    HouseholdMemberResponse,
    MemberCreate,
)
from app.schemas.policy import (
    ChildCreate,
    ChildLinkRequest,
    ChildPatchRequest,
    TemplateApplyRequest,
)
from app.schemas.step_up import StepUpAction, StepUpActionKind
from app.services.approval_engine import ApprovalEngine
from app.services.household_directory import HouseholdDirectory
from app.services.policy_store import PolicyStore


class _ChildTarget(BaseModel):
    child_id: uuid.UUID


class _PatchPayload(_ChildTarget, ChildPatchRequest):
    pass


class _TemplatePayload(_ChildTarget, TemplateApplyRequest):
    pass


class _VotePayload(VoteRequest):
    request_id: uuid.UUID


class _MemberTarget(BaseModel):
    member_id: uuid.UUID


class ActionDispatcher:
    def __init__(
        self,
        policies: PolicyStore,
        approvals: ApprovalEngine,
        household: HouseholdDirectory,
        guardian: HouseholdMember,
    ) -> None:
        self.policies = policies
        self.approvals = approvals
        self.household = household
        self.guardian = guardian

    async def dispatch(self, action: StepUpAction) -> dict:
        handler = getattr(self, f"_{StepUpActionKind(action.kind).value}")
        return await handler(action.payload)

    @property
    def household_id(self) -> uuid.UUID:
        return self.guardian.household_id

    # -- Children -------------------------------------------------------------

    async def _patch_policy(self, payload: dict) -> dict:
        data = _PatchPayload.model_validate(payload)
        profile = await self.policies.apply_patch(
            data.child_id,
            data.patch,
            audit_event=data.audit,
            actor_id=self.guardian.id,
            household_id=self.household_id,
        )
        return profile.model_dump(mode="json")

    async def _apply_template(self, payload: dict) -> dict:
        data = _TemplatePayload.model_validate(payload)
        profile = await self.policies.apply_template(
            data.child_id, data.template, actor_id=self.guardian.id, household_id=self.household_id,
        )
        return profile.model_dump(mode="json")

    async def _create_child(self, payload: dict) -> dict:
        data = ChildCreate.model_validate(payload)
        profile = await self.policies.create_child(self.household_id, data, actor_id=self.guardian.id)
        return profile.model_dump(mode="json")

    async def _link_child(self, payload: dict) -> dict:
        data = ChildLinkRequest.model_validate(payload)
        profile = await self.policies.link_child(self.household_id, data.code, actor_id=self.guardian.id)
        return profile.model_dump(mode="json")

    async def _archive_child(self, payload: dict) -> dict:
        data = _ChildTarget.model_validate(payload)
        profile, link_code = await self.policies.archive_child(
            data.child_id, actor_id=self.guardian.id, household_id=self.household_id,
        )
        return {"child": profile.model_dump(mode="json"), "link_code": link_code}

    # -- Approvals ------------------------------------------------------------

    async def _cast_vote(self, payload: dict) -> dict:
        data = _VotePayload.model_validate(payload)
        # Scope check: requests of other households are not found
        await self.approvals.get_request(data.request_id, self.household_id)
        request = await self.approvals.cast_vote(data.request_id, self.guardian.id, data.decision)
        return ApprovalRequestResponse.model_validate(request).model_dump(mode="json")

    # -- Household ------------------------------------------------------------

    async def _add_member(self, payload: dict) -> dict:
        data = MemberCreate.model_validate(payload)
        member = await self.household.add_member(self.household_id, data, actor_id=self.guardian.id)
        return HouseholdMemberResponse.model_validate(member).model_dump(mode="json")

    async def _remove_member(self, payload: dict) -> dict:
        data = _MemberTarget.model_validate(payload)
        await self.household.remove_member(self.household_id, data.member_id, actor_id=self.guardian.id)
        return {"removed": str(data.member_id)}

    async def _set_approval_mode(self, payload: dict) -> dict:
        data = ApprovalModeUpdate.model_validate(payload)
        change = await self.household.set_approval_mode(
            self.household_id, data.mode, actor_id=self.guardian.id,
        )
        return change.model_dump(mode="json")
