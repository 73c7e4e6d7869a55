"""Step-Up Authentication Gate.

Every sensitive guardian mutation is staged as a ``StepUpAction`` command
and only runs after the acting guardian re-authenticates with a password or
an MFA code.

Lifecycle of one challenge::

    idle -> awaiting_credential -> verifying -> verified -> (executed) idle
                    ^                  |
                    +-- wrong code ----+--> failed (identity unavailable)

- One unfinished challenge per guardian; staging a new one replaces it
- A wrong credential is retryable and leaves the resend cooldown alone
- Resends are rate limited per challenge and channel
- Identity calls are bounded by a timeout; a timeout or collaborator error
  fails the challenge and discards its command
- Cancel is honoured until the challenge is verified, never afterwards
- The TTL stops applying once verification starts
- A verified command is handed to its executor exactly once

Challenges live only in memory, in a ``ChallengeRegistry`` owned by the
application. Expired challenges are discarded on access and by a periodic
sweep.
"""

import asyncio
import logging
import math
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from app.config import settings
from app.core.exceptions import (
    ChallengeExpiredError,
    ChallengeNotFoundError,
    CodeDeliveryError,
    CooldownActiveError,
    IdentityUnavailableError,
    StepUpStateError,
    VerificationFailedError,
)
from app.models.user import User
from app.schemas.step_up import (
    MfaChannel,
    StepUpAction,
    StepUpChallengeResponse,
    StepUpMode,
    StepUpState,
)
from app.services.identity_service import IdentityService

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], datetime]
Executor = Callable[[StepUpAction], Awaitable[T]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StepUpChallenge:
    id: uuid.UUID
    guardian_id: uuid.UUID
    user_id: uuid.UUID
    title: str
    subtitle: str
    action: StepUpAction
    created_at: datetime
    expires_at: datetime
    state: StepUpState = StepUpState.AWAITING_CREDENTIAL
    mode: StepUpMode | None = None
    channel: MfaChannel | None = None
    sent_at: dict[MfaChannel, datetime] = field(default_factory=dict)
    failed_attempts: int = 0
    last_outcome: str | None = None
    cancelled: bool = False
    executing: bool = False

    def is_expired(self, now: datetime) -> bool:
        # Once verification has started the command is committed to running
        if self.state in (StepUpState.VERIFYING, StepUpState.VERIFIED) or self.executing:
            return False
        return now >= self.expires_at

    def cooldown_remaining(self, channel: MfaChannel, now: datetime, cooldown_seconds: int) -> int:
        sent = self.sent_at.get(channel)
        if sent is None:
            return 0
        remaining = cooldown_seconds - (now - sent).total_seconds()
        return max(0, math.ceil(remaining))

    def to_response(self, now: datetime, cooldown_seconds: int) -> StepUpChallengeResponse:
        return StepUpChallengeResponse(
            id=self.id,
            guardian_id=self.guardian_id,
            title=self.title,
            subtitle=self.subtitle,
            action_kind=self.action.kind,
            state=self.state,
            mode=self.mode,
            channel=self.channel,
            failed_attempts=self.failed_attempts,
            resend_available_in=(
                self.cooldown_remaining(self.channel, now, cooldown_seconds)
                if self.channel is not None else 0
            ),
            expires_at=self.expires_at,
        )


class ChallengeRegistry:
    """In-memory store of unfinished challenges, one per guardian."""

    def __init__(self) -> None:
        self._challenges: dict[uuid.UUID, StepUpChallenge] = {}
        self._by_guardian: dict[uuid.UUID, uuid.UUID] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._challenges)

    def get(self, challenge_id: uuid.UUID) -> StepUpChallenge | None:
        return self._challenges.get(challenge_id)

    def for_guardian(self, guardian_id: uuid.UUID) -> StepUpChallenge | None:
        challenge_id = self._by_guardian.get(guardian_id)
        return self._challenges.get(challenge_id) if challenge_id is not None else None

    async def stage(self, challenge: StepUpChallenge) -> StepUpChallenge | None:
        """Register ``challenge``; returns the guardian's replaced challenge, if any."""
        async with self._lock:
            replaced = None
            previous_id = self._by_guardian.get(challenge.guardian_id)
            if previous_id is not None:
                replaced = self._challenges.pop(previous_id, None)
                if replaced is not None and not replaced.executing:
                    replaced.cancelled = True
            self._challenges[challenge.id] = challenge
            self._by_guardian[challenge.guardian_id] = challenge.id
            return replaced

    async def discard(self, challenge_id: uuid.UUID) -> StepUpChallenge | None:
        async with self._lock:
            challenge = self._challenges.pop(challenge_id, None)
            if challenge is not None and self._by_guardian.get(challenge.guardian_id) == challenge_id:
                del self._by_guardian[challenge.guardian_id]
            return challenge

    async def sweep(self, now: datetime) -> int:
        """Discard every expired challenge; returns how many were dropped."""
        async with self._lock:
            expired = [c for c in self._challenges.values() if c.is_expired(now)]
            for challenge in expired:
                del self._challenges[challenge.id]
                if self._by_guardian.get(challenge.guardian_id) == challenge.id:
                    del self._by_guardian[challenge.guardian_id]
        if expired:
            logger.info("Discarded %d expired step-up challenges", len(expired))
        return len(expired)


class StepUpGate:
    def __init__(
        self,
        registry: ChallengeRegistry,
        identity: IdentityService,
        ttl_seconds: int | None = None,
        cooldown_seconds: int | None = None,
        identity_timeout: float | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.registry = registry
        self.identity = identity
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.STEP_UP_CHALLENGE_TTL_SECONDS
        self.cooldown_seconds = (
            cooldown_seconds if cooldown_seconds is not None else settings.STEP_UP_RESEND_COOLDOWN_SECONDS
        )
        self.identity_timeout = (
            identity_timeout if identity_timeout is not None else settings.STEP_UP_IDENTITY_TIMEOUT_SECONDS
        )
        self.clock = clock

    def describe(self, challenge: StepUpChallenge) -> StepUpChallengeResponse:
        return challenge.to_response(self.clock(), self.cooldown_seconds)

    # -- Staging --------------------------------------------------------------

    async def request_step_up(
        self,
        guardian_id: uuid.UUID,
        user_id: uuid.UUID,
        title: str,
        subtitle: str,
        action: StepUpAction,
    ) -> StepUpChallenge:
        """Stage ``action`` behind a new challenge for ``guardian_id``."""
        now = self.clock()
        challenge = StepUpChallenge(
            id=uuid.uuid4(),
            guardian_id=guardian_id,
            user_id=user_id,
            title=title,
            subtitle=subtitle,
            action=action,
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        replaced = await self.registry.stage(challenge)
        if replaced is not None:
            logger.info("Challenge %s replaced by %s", replaced.id, challenge.id)
        logger.info(
            "Step-up %s requested by guardian %s for %s",
            challenge.id, guardian_id, action.kind.value,
        )
        return challenge

    async def get(self, challenge_id: uuid.UUID, guardian_id: uuid.UUID) -> StepUpChallenge:
        """Return the guardian's live challenge.

        Raises:
            ChallengeNotFoundError: Unknown id, already finished, or owned by
                another guardian.
            ChallengeExpiredError: The challenge outlived its TTL; it is
                discarded and its command never runs.
        """
        challenge = self.registry.get(challenge_id)
        if challenge is None or challenge.guardian_id != guardian_id:
            raise ChallengeNotFoundError(challenge_id)
        if challenge.is_expired(self.clock()):
            await self.registry.discard(challenge_id)
            logger.info("Challenge %s expired", challenge_id)
            raise ChallengeExpiredError(challenge_id)
        return challenge

    async def _awaiting(self, challenge_id: uuid.UUID, guardian_id: uuid.UUID) -> StepUpChallenge:
        challenge = await self.get(challenge_id, guardian_id)
        if challenge.state != StepUpState.AWAITING_CREDENTIAL:
            raise StepUpStateError(
                challenge_id, challenge.state, "Challenge is not awaiting a credential"
            )
        return challenge

    # -- Identity calls -------------------------------------------------------

    async def _call_identity(self, challenge: StepUpChallenge, call: Awaitable[Any]) -> Any:
        """Await an identity call; timeouts and errors fail the challenge."""
        try:
            return await asyncio.wait_for(call, timeout=self.identity_timeout)
        except Exception:
            logger.exception("Identity call failed for challenge %s", challenge.id)
            challenge.state = StepUpState.FAILED
            challenge.last_outcome = "identity_unavailable"
            await self.registry.discard(challenge.id)
            raise IdentityUnavailableError(challenge.id)

    async def send_mfa_code(
        self,
        challenge_id: uuid.UUID,
        guardian_id: uuid.UUID,
        user: User,
        channel: MfaChannel,
    ) -> StepUpChallenge:
        """Select an MFA channel and, for SMS/WhatsApp/email, send a code.

        Raises:
            CooldownActiveError: A code went out on this channel less than the
                cooldown ago; carries the seconds left.
            CodeDeliveryError: The guardian has no phone/email/authenticator
                for this channel.
        """
        channel = MfaChannel(channel)
        challenge = await self._awaiting(challenge_id, guardian_id)
        now = self.clock()

        previous = challenge.sent_at.get(channel)
        if channel.sends_code:
            remaining = challenge.cooldown_remaining(channel, now, self.cooldown_seconds)
            if remaining > 0:
                raise CooldownActiveError(challenge_id, channel.value, remaining)
            # Claim the cooldown before awaiting so an overlapping resend is refused
            challenge.sent_at[channel] = now

        delivered = False
        try:
            sent = await self._call_identity(challenge, self.identity.send_mfa_challenge(user, channel))
            if challenge.cancelled:
                raise StepUpStateError(challenge_id, StepUpState.IDLE, "Challenge was cancelled")
            if not sent:
                raise CodeDeliveryError(challenge_id, channel.value)
            delivered = True
        finally:
            if channel.sends_code and not delivered and challenge.sent_at.get(channel) == now:
                if previous is None:
                    challenge.sent_at.pop(channel, None)
                else:
                    challenge.sent_at[channel] = previous

        challenge.mode = StepUpMode.MFA
        challenge.channel = channel
        if channel.sends_code:
            logger.info("Step-up code sent for challenge %s via %s", challenge_id, channel.value)
        return challenge

    async def _verify(
        self,
        challenge: StepUpChallenge,
        mode: StepUpMode,
        call: Awaitable[bool],
    ) -> StepUpChallenge:
        challenge.state = StepUpState.VERIFYING
        challenge.mode = mode
        ok = await self._call_identity(challenge, call)

        if challenge.cancelled:
            # Cancelled while verifying: the result no longer matters
            await self.registry.discard(challenge.id)
            raise StepUpStateError(challenge.id, StepUpState.IDLE, "Challenge was cancelled")

        if not ok:
            challenge.state = StepUpState.AWAITING_CREDENTIAL
            challenge.failed_attempts += 1
            challenge.last_outcome = "rejected"
            logger.info(
                "Step-up %s rejected (%s, attempt %d)",
                challenge.id, mode.value, challenge.failed_attempts,
            )
            raise VerificationFailedError(challenge.id, mode.value)

        challenge.state = StepUpState.VERIFIED
        challenge.last_outcome = "verified"
        logger.info("Step-up %s verified by %s", challenge.id, mode.value)
        return challenge

    async def verify_password(
        self,
        challenge_id: uuid.UUID,
        guardian_id: uuid.UUID,
        user: User,
        password: str,
    ) -> StepUpChallenge:
        challenge = await self._awaiting(challenge_id, guardian_id)
        return await self._verify(
            challenge, StepUpMode.PASSWORD, self.identity.verify_password(user, password)
        )

    async def verify_mfa_code(
        self,
        challenge_id: uuid.UUID,
        guardian_id: uuid.UUID,
        user: User,
        channel: MfaChannel,
        code: str,
    ) -> StepUpChallenge:
        channel = MfaChannel(channel)
        challenge = await self._awaiting(challenge_id, guardian_id)
        challenge.channel = channel
        return await self._verify(
            challenge, StepUpMode.MFA, self.identity.verify_mfa_code(user, channel, code)
        )

    # -- Execution ------------------------------------------------------------

    async def execute(
        self,
        challenge_id: uuid.UUID,
        guardian_id: uuid.UUID,
        executor: Executor,
    ) -> T:
        """Run the verified command once and return the guardian to idle.

        The challenge is gone afterwards whether the executor succeeds or
        raises; a second call fails with ``ChallengeNotFoundError``.
        """
        challenge = await self.get(challenge_id, guardian_id)
        if challenge.state != StepUpState.VERIFIED or challenge.executing:
            raise StepUpStateError(challenge_id, challenge.state, "Challenge is not verified")

        challenge.executing = True
        try:
            result = await executor(challenge.action)
        finally:
            await self.registry.discard(challenge_id)
        logger.info("Step-up %s executed %s", challenge_id, challenge.action.kind.value)
        return result

    async def confirm_password(
        self,
        challenge_id: uuid.UUID,
        guardian_id: uuid.UUID,
        user: User,
        password: str,
        executor: Executor,
    ) -> T:
        await self.verify_password(challenge_id, guardian_id, user, password)
        return await self.execute(challenge_id, guardian_id, executor)

    async def confirm_mfa_code(
        self,
        challenge_id: uuid.UUID,
        guardian_id: uuid.UUID,
        user: User,
        channel: MfaChannel,
        code: str,
        executor: Executor,
    ) -> T:
        await self.verify_mfa_code(challenge_id, guardian_id, user, channel, code)
        return await self.execute(challenge_id, guardian_id, executor)

    # -- Cancellation ---------------------------------------------------------

    async def cancel(self, challenge_id: uuid.UUID, guardian_id: uuid.UUID) -> bool:
        """Cancel a challenge before it is verified.

        Returns True when the command was discarded, False when the
        challenge was already verified (its command will still run).
        """
        challenge = self.registry.get(challenge_id)
        if challenge is None or challenge.guardian_id != guardian_id:
            raise ChallengeNotFoundError(challenge_id)
        if challenge.state == StepUpState.VERIFIED or challenge.executing:
            logger.info("Cancel of verified challenge %s ignored", challenge_id)
            return False

        challenge.cancelled = True
        challenge.last_outcome = "cancelled"
        await self.registry.discard(challenge_id)
        logger.info("Step-up %s cancelled", challenge_id)
        return True

    async def sweep(self) -> int:
        return await self.registry.sweep(self.clock())
