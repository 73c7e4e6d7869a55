import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class HouseholdRole(StrEnum):
    GUARDIAN = "guardian"
    CO_GUARDIAN = "co_guardian"
    EMERGENCY_CONTACT = "emergency_contact"

    @property
    def can_vote(self) -> bool:
        return self in (HouseholdRole.GUARDIAN, HouseholdRole.CO_GUARDIAN)


class MemberStatus(StrEnum):
    ACTIVE = "active"
    PENDING = "pending"


class ApprovalMode(StrEnum):
    ANY_GUARDIAN = "any_guardian"
    BOTH_GUARDIANS = "both_guardians"


class MemberChannels(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: bool = True
    sms: bool = True
    whatsapp: bool = False


class MemberCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    role: HouseholdRole = HouseholdRole.CO_GUARDIAN
    email: EmailStr | None = None
    phone: str | None = Field(None, max_length=30)
    channels: MemberChannels = Field(default_factory=MemberChannels)


class HouseholdMemberResponse(BaseModel):
    id: uuid.UUID
    household_id: uuid.UUID
    user_id: uuid.UUID | None = None
    name: str
    role: HouseholdRole
    status: MemberStatus
    email: str | None = None
    phone: str | None = None
    is_primary: bool
    channels: MemberChannels
    invite_code: str | None = None
    invite_expires_at: datetime | None = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class HouseholdSummary(BaseModel):
    """Snapshot counts shown on the guardian dashboard."""

    children: int = 0
    unverified_children: int = 0
    co_guardians: int = 0
    emergency_contacts: int = 0
    pending_invites: int = 0
    pending_approvals: int = 0


class HouseholdResponse(BaseModel):
    id: uuid.UUID
    name: str
    approval_mode: ApprovalMode
    members: list[HouseholdMemberResponse] = []
    summary: HouseholdSummary = Field(default_factory=HouseholdSummary)
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class ApprovalModeUpdate(BaseModel):
    mode: ApprovalMode


class ApprovalModeChange(BaseModel):
    """Result of an approval-mode switch; ``warnings`` flags latent states."""

    mode: ApprovalMode
    eligible_voters: int
    warnings: list[str] = []


class InvitationAccept(BaseModel):
    code: str = Field(min_length=4, max_length=20)
