"""Step-up authentication schemas."""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class StepUpState(StrEnum):
    IDLE = "idle"
    AWAITING_CREDENTIAL = "awaiting_credential"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    FAILED = "failed"


class StepUpMode(StrEnum):
    PASSWORD = "password"
    MFA = "mfa"


class MfaChannel(StrEnum):
    AUTHENTICATOR = "authenticator"
    SMS = "sms"
    WHATSAPP = "whatsapp"
    EMAIL = "email"

    @property
    def sends_code(self) -> bool:
        return self is not MfaChannel.AUTHENTICATOR


class StepUpActionKind(StrEnum):
    PATCH_POLICY = "patch_policy"
    APPLY_TEMPLATE = "apply_template"
    CREATE_CHILD = "create_child"
    LINK_CHILD = "link_child"
    ARCHIVE_CHILD = "archive_child"
    CAST_VOTE = "cast_vote"
    ADD_MEMBER = "add_member"
    REMOVE_MEMBER = "remove_member"
    SET_APPROVAL_MODE = "set_approval_mode"


class StepUpAction(BaseModel):
    """A deferred mutation, staged until the guardian re-authenticates.

    The gate never looks inside ``payload``; it only hands the command to
    an executor once, after verification.
    """

    kind: StepUpActionKind
    payload: dict[str, Any] = Field(default_factory=dict)


class StepUpChallengeResponse(BaseModel):
    id: uuid.UUID
    guardian_id: uuid.UUID
    title: str
    subtitle: str
    action_kind: StepUpActionKind
    state: StepUpState
    mode: StepUpMode | None = None
    channel: MfaChannel | None = None
    failed_attempts: int = 0
    resend_available_in: int = 0
    expires_at: datetime


class PasswordVerifyRequest(BaseModel):
    password: str = Field(min_length=1)


class MfaSendRequest(BaseModel):
    channel: MfaChannel


class MfaVerifyRequest(BaseModel):
    channel: MfaChannel
    code: str = Field(..., min_length=6, max_length=6, pattern="^[0-9]{6}$")


class StepUpResult(BaseModel):
    challenge_id: uuid.UUID
    action_kind: StepUpActionKind
    result: Any = None
