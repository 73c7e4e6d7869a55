import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict


class ActivityKind(StrEnum):
    LOGIN = "Login"
    PURCHASE = "Purchase"
    BLOCKED = "Blocked"
    APPROVAL_REQUESTED = "Approval Requested"
    APPROVAL_APPROVED = "Approval Approved"
    APPROVAL_DECLINED = "Approval Declined"
    LIMIT_UPDATED = "Limit Updated"
    APP_ACCESS_UPDATED = "App Access Updated"
    SCHEDULE_UPDATED = "Schedule Updated"
    SAFETY_UPDATED = "Safety Updated"
    TEMPLATE_APPLIED = "Template Applied"
    CHARGING_UPDATED = "Charging Updated"
    HOUSEHOLD_UPDATED = "Household Updated"


class Severity(StrEnum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ActivityEntry(BaseModel):
    """An event handed to the activity log (id and timestamp are assigned on record)."""

    household_id: uuid.UUID | None = None
    child_id: uuid.UUID | None = None
    kind: ActivityKind
    summary: str
    severity: Severity = Severity.INFO
    actor_id: uuid.UUID | None = None
    subject_id: uuid.UUID | None = None


class ActivityEventResponse(BaseModel):
    id: uuid.UUID
    household_id: uuid.UUID | None = None
    child_id: uuid.UUID | None = None
    kind: ActivityKind
    summary: str
    severity: Severity
    actor_id: uuid.UUID | None = None
    subject_id: uuid.UUID | None = None
    at: datetime
    model_config = ConfigDict(from_attributes=True)
