import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class ApprovalKind(StrEnum):
    PURCHASE = "purchase"
    RIDE = "ride"
    TRIP = "trip"
    SERVICE_BOOKING = "service_booking"


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class VoteDecision(StrEnum):
    APPROVE = "approve"
    DECLINE = "decline"


class ApprovalCreate(BaseModel):
    kind: ApprovalKind
    title: str = Field(min_length=1, max_length=200)
    amount: int = Field(ge=0)
    currency: str = Field("UGX", min_length=3, max_length=3)
    app: str = Field(min_length=1, max_length=50)
    vendor: str | None = None
    reason: str = ""
    details: str | None = None


class VoteRequest(BaseModel):
    decision: VoteDecision


class ApprovalRequestResponse(BaseModel):
    id: uuid.UUID
    child_id: uuid.UUID
    household_id: uuid.UUID
    kind: ApprovalKind
    title: str
    amount: int
    currency: str
    app: str
    vendor: str | None = None
    reason: str
    details: str | None = None
    status: ApprovalStatus
    votes: list[uuid.UUID] = []
    decided_by: uuid.UUID | None = None
    decided_at: datetime | None = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)
