"""Domain errors raised by the guardian engines.

Every error carries the identifiers needed to explain the rejection
(child, request, member or challenge id and the violated rule) and the
HTTP status the API maps it to.
"""

from __future__ import annotations

from fastapi import status


class GuardianControlsError(Exception):
    """Base class for all engine errors."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, **context) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: str(v) if v is not None else None for k, v in context.items()}

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "error": type(self).__name__,
            "context": self.context,
        }


# -- Child policy -------------------------------------------------------------


class ChildNotFoundError(GuardianControlsError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, child_id) -> None:
        super().__init__("Child profile not found", child_id=child_id)


class ChildArchivedError(GuardianControlsError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, child_id) -> None:
        super().__init__("Child profile is archived", child_id=child_id)


class InvalidPatchError(GuardianControlsError):
    """Policy patch rejected before anything was written."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, child_id, rule: str, message: str) -> None:
        super().__init__(message, child_id=child_id, rule=rule)
        self.rule = rule


class LinkCodeError(GuardianControlsError):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, code: str) -> None:
        super().__init__("Link code is invalid or already used", code=code)


# -- Approvals ----------------------------------------------------------------


class ApprovalNotFoundError(GuardianControlsError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, request_id) -> None:
        super().__init__("Approval request not found", request_id=request_id)


class AlreadyDecidedError(GuardianControlsError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, request_id, current_status: str) -> None:
        super().__init__(
            f"Approval request is already {current_status}",
            request_id=request_id,
            status=current_status,
        )


class VoteConflictError(GuardianControlsError):
    """Other votes kept landing on the request while this one was applied."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, request_id, attempts: int) -> None:
        super().__init__(
            "Approval request changed concurrently, please retry",
            request_id=request_id,
            attempts=attempts,
        )


class NotEligibleError(GuardianControlsError):
    """Member may not vote on (or administer) this household's requests."""

    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, member_id, reason: str, request_id=None) -> None:
        super().__init__(reason, member_id=member_id, request_id=request_id)


# -- Household ----------------------------------------------------------------


class HouseholdNotFoundError(GuardianControlsError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, household_id) -> None:
        super().__init__("Household not found", household_id=household_id)


class MemberNotFoundError(GuardianControlsError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, member_id) -> None:
        super().__init__("Household member not found", member_id=member_id)


class LastGuardianError(GuardianControlsError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, member_id, household_id) -> None:
        super().__init__(
            "The last guardian of a household cannot be removed",
            member_id=member_id,
            household_id=household_id,
        )


class InviteCodeError(GuardianControlsError):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, code: str) -> None:
        super().__init__("Invitation code is invalid or expired", code=code)


# -- Step-up authentication ---------------------------------------------------


class ChallengeNotFoundError(GuardianControlsError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, challenge_id) -> None:
        super().__init__("Step-up challenge not found", challenge_id=challenge_id)


class ChallengeExpiredError(GuardianControlsError):
    status_code = status.HTTP_410_GONE

    def __init__(self, challenge_id) -> None:
        super().__init__("Step-up challenge expired", challenge_id=challenge_id)


class StepUpStateError(GuardianControlsError):
    """Operation not allowed in the challenge's current state."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, challenge_id, state: str, message: str) -> None:
        super().__init__(message, challenge_id=challenge_id, state=state)


class CooldownActiveError(GuardianControlsError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, challenge_id, channel: str, retry_after: int) -> None:
        super().__init__(
            f"A code was sent recently; retry in {retry_after}s",
            challenge_id=challenge_id,
            channel=channel,
            retry_after=retry_after,
        )
        self.retry_after = retry_after


class VerificationFailedError(GuardianControlsError):
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, challenge_id, mode: str) -> None:
        super().__init__("Verification failed", challenge_id=challenge_id, mode=mode)


class CodeDeliveryError(GuardianControlsError):
    """The identity collaborator refused to send a code on a channel."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, challenge_id, channel: str) -> None:
        super().__init__(
            f"Could not send a code via {channel}",
            challenge_id=challenge_id,
            channel=channel,
        )


class IdentityUnavailableError(GuardianControlsError):
    """Identity collaborator timed out or failed; the challenge was discarded."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, challenge_id) -> None:
        super().__init__(
            "Identity verification is temporarily unavailable",
            challenge_id=challenge_id,
        )
