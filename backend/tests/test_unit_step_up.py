"""Unit tests for the step-up authentication gate (no database required).

A scripted identity collaborator and a hand-driven clock make every state
transition deterministic.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

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
    StepUpActionKind,
    StepUpMode,
    StepUpState,
)
from app.services.step_up import ChallengeRegistry, StepUpGate


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeIdentity:
    """Identity collaborator with scripted answers."""

    def __init__(self, password="correct", code="123456"):
        self.password = password
        self.code = code
        self.sent: list[MfaChannel] = []
        self.deliverable = True
        self.fail_with: Exception | None = None
        self.block: asyncio.Event | None = None

    async def _maybe_fail(self):
        if self.block is not None:
            await self.block.wait()
        if self.fail_with is not None:
            raise self.fail_with

    async def verify_password(self, user, password):
        await self._maybe_fail()
        return password == self.password

    async def send_mfa_challenge(self, user, channel):
        await self._maybe_fail()
        if not self.deliverable:
            return False
        self.sent.append(channel)
        return True

    async def verify_mfa_code(self, user, channel, code):
        await self._maybe_fail()
        return code == self.code


class RecordingExecutor:
    def __init__(self):
        self.calls: list[StepUpAction] = []

    async def __call__(self, action: StepUpAction):
        self.calls.append(action)
        return {"ok": True, "kind": action.kind.value}


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def identity():
    return FakeIdentity()


@pytest.fixture()
def gate(clock, identity):
    return StepUpGate(
        ChallengeRegistry(),
        identity,
        ttl_seconds=300,
        cooldown_seconds=30,
        identity_timeout=0.2,
        clock=clock,
    )


@pytest.fixture()
def user():
    return User(id=uuid.uuid4(), household_id=uuid.uuid4(), name="Sarah", role="guardian")


GUARDIAN = uuid.uuid4()
ACTION = StepUpAction(
    kind=StepUpActionKind.PATCH_POLICY,
    payload={"child_id": str(uuid.uuid4()), "patch": {"daily_limit": 5000}},
)


async def _stage(gate, user, guardian=GUARDIAN, action=ACTION):
    return await gate.request_step_up(guardian, user.id, "Update child settings", "Subtitle", action)


class TestStaging:
    async def test_new_challenge_awaits_credential(self, gate, user):
        challenge = await _stage(gate, user)
        assert challenge.state == StepUpState.AWAITING_CREDENTIAL
        assert challenge.expires_at == challenge.created_at + timedelta(seconds=300)
        response = gate.describe(challenge)
        assert response.action_kind == StepUpActionKind.PATCH_POLICY
        assert response.resend_available_in == 0

    async def test_new_challenge_replaces_previous(self, gate, user):
        first = await _stage(gate, user)
        second = await _stage(gate, user)
        assert first.cancelled is True
        with pytest.raises(ChallengeNotFoundError):
            await gate.get(first.id, GUARDIAN)
        assert (await gate.get(second.id, GUARDIAN)).id == second.id
        assert len(gate.registry) == 1

    async def test_guardians_are_independent(self, gate, user):
        first = await _stage(gate, user)
        await _stage(gate, user, guardian=uuid.uuid4())
        assert (await gate.get(first.id, GUARDIAN)).id == first.id

    async def test_other_guardian_cannot_see_challenge(self, gate, user):
        challenge = await _stage(gate, user)
        with pytest.raises(ChallengeNotFoundError):
            await gate.get(challenge.id, uuid.uuid4())


class TestPassword:
    async def test_correct_password_verifies(self, gate, user):
        challenge = await _stage(gate, user)
        verified = await gate.verify_password(challenge.id, GUARDIAN, user, "correct")
        assert verified.state == StepUpState.VERIFIED
        assert verified.mode == StepUpMode.PASSWORD

    async def test_wrong_password_is_retryable(self, gate, user):
        challenge = await _stage(gate, user)
        with pytest.raises(VerificationFailedError):
            await gate.verify_password(challenge.id, GUARDIAN, user, "wrong")
        assert challenge.state == StepUpState.AWAITING_CREDENTIAL
        assert challenge.failed_attempts == 1

        await gate.verify_password(challenge.id, GUARDIAN, user, "correct")
        assert challenge.state == StepUpState.VERIFIED

    async def test_cannot_verify_twice(self, gate, user):
        challenge = await _stage(gate, user)
        await gate.verify_password(challenge.id, GUARDIAN, user, "correct")
        with pytest.raises(StepUpStateError):
            await gate.verify_password(challenge.id, GUARDIAN, user, "correct")


class TestMfa:
    async def test_send_then_verify(self, gate, identity, user):
        challenge = await _stage(gate, user)
        await gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.SMS)
        assert identity.sent == [MfaChannel.SMS]
        assert challenge.channel == MfaChannel.SMS

        verified = await gate.verify_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.SMS, "123456")
        assert verified.state == StepUpState.VERIFIED
        assert verified.mode == StepUpMode.MFA

    async def test_resend_within_cooldown_rejected(self, gate, clock, identity, user):
        challenge = await _stage(gate, user)
        await gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.SMS)
        clock.advance(10)

        with pytest.raises(CooldownActiveError) as exc_info:
            await gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.SMS)
        assert exc_info.value.retry_after == 20
        assert gate.describe(challenge).resend_available_in == 20
        assert identity.sent == [MfaChannel.SMS]

    async def test_resend_after_cooldown(self, gate, clock, identity, user):
        challenge = await _stage(gate, user)
        await gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.SMS)
        clock.advance(30)
        await gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.SMS)
        assert identity.sent == [MfaChannel.SMS, MfaChannel.SMS]

    async def test_cooldown_is_per_channel(self, gate, identity, user):
        challenge = await _stage(gate, user)
        await gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.SMS)
        await gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.EMAIL)
        assert identity.sent == [MfaChannel.SMS, MfaChannel.EMAIL]

    async def test_authenticator_has_no_cooldown(self, gate, user):
        challenge = await _stage(gate, user)
        await gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.AUTHENTICATOR)
        await gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.AUTHENTICATOR)
        assert challenge.sent_at == {}

    async def test_wrong_code_leaves_cooldown_alone(self, gate, clock, user):
        challenge = await _stage(gate, user)
        await gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.SMS)
        clock.advance(5)
        with pytest.raises(VerificationFailedError):
            await gate.verify_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.SMS, "000000")
        assert challenge.failed_attempts == 1
        assert gate.describe(challenge).resend_available_in == 25

    async def test_undeliverable_channel(self, gate, identity, user):
        identity.deliverable = False
        challenge = await _stage(gate, user)
        with pytest.raises(CodeDeliveryError):
            await gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.WHATSAPP)
        assert challenge.state == StepUpState.AWAITING_CREDENTIAL

    async def test_overlapping_resends_send_one_code(self, gate, identity, user):
        identity.block = asyncio.Event()
        challenge = await _stage(gate, user)
        first = asyncio.create_task(gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.SMS))
        second = asyncio.create_task(gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.SMS))
        await asyncio.sleep(0)
        identity.block.set()

        results = await asyncio.gather(first, second, return_exceptions=True)

        refused = [r for r in results if isinstance(r, CooldownActiveError)]
        assert len(refused) == 1
        assert refused[0].retry_after == 30
        assert identity.sent == [MfaChannel.SMS]

    async def test_failed_delivery_releases_cooldown(self, gate, identity, user):
        identity.deliverable = False
        challenge = await _stage(gate, user)
        with pytest.raises(CodeDeliveryError):
            await gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.SMS)
        assert challenge.sent_at == {}

        identity.deliverable = True
        await gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.SMS)
        assert identity.sent == [MfaChannel.SMS]


class TestIdentityFailures:
    async def test_timeout_fails_challenge(self, gate, identity, user):
        identity.block = asyncio.Event()
        challenge = await _stage(gate, user)
        with pytest.raises(IdentityUnavailableError):
            await gate.verify_password(challenge.id, GUARDIAN, user, "correct")
        assert challenge.state == StepUpState.FAILED
        with pytest.raises(ChallengeNotFoundError):
            await gate.get(challenge.id, GUARDIAN)

    async def test_collaborator_error_fails_challenge(self, gate, identity, user):
        identity.fail_with = ConnectionError("sms gateway down")
        challenge = await _stage(gate, user)
        with pytest.raises(IdentityUnavailableError):
            await gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.SMS)
        assert challenge.state == StepUpState.FAILED
        assert len(gate.registry) == 0


class TestExpiry:
    async def test_expired_challenge_is_discarded(self, gate, clock, user):
        challenge = await _stage(gate, user)
        clock.advance(301)
        with pytest.raises(ChallengeExpiredError):
            await gate.verify_password(challenge.id, GUARDIAN, user, "correct")
        with pytest.raises(ChallengeNotFoundError):
            await gate.get(challenge.id, GUARDIAN)

    async def test_verified_challenge_outlives_ttl(self, gate, clock, user):
        executor = RecordingExecutor()
        challenge = await _stage(gate, user)
        await gate.verify_password(challenge.id, GUARDIAN, user, "correct")
        clock.advance(301)
        assert await gate.sweep() == 0

        await gate.execute(challenge.id, GUARDIAN, executor)
        assert executor.calls == [ACTION]

    async def test_ttl_passing_during_verification_still_executes(self, gate, clock, identity, user):
        executor = RecordingExecutor()
        challenge = await _stage(gate, user)
        clock.advance(299)
        identity.block = asyncio.Event()
        confirm = asyncio.create_task(
            gate.confirm_password(challenge.id, GUARDIAN, user, "correct", executor)
        )
        await asyncio.sleep(0)
        assert challenge.state == StepUpState.VERIFYING

        clock.advance(2)
        identity.block.set()
        result = await confirm

        assert result == {"ok": True, "kind": "patch_policy"}
        assert executor.calls == [ACTION]
        assert len(gate.registry) == 0

    async def test_sweep(self, gate, clock, user):
        await _stage(gate, user)
        await _stage(gate, user, guardian=uuid.uuid4())
        clock.advance(100)
        fresh = await _stage(gate, user, guardian=uuid.uuid4())
        clock.advance(250)

        assert await gate.sweep() == 2
        assert len(gate.registry) == 1
        assert (await gate.get(fresh.id, fresh.guardian_id)).id == fresh.id


class TestExecution:
    async def test_executes_exactly_once(self, gate, user):
        executor = RecordingExecutor()
        challenge = await _stage(gate, user)
        await gate.verify_password(challenge.id, GUARDIAN, user, "correct")

        result = await gate.execute(challenge.id, GUARDIAN, executor)

        assert result == {"ok": True, "kind": "patch_policy"}
        assert executor.calls == [ACTION]
        with pytest.raises(ChallengeNotFoundError):
            await gate.execute(challenge.id, GUARDIAN, executor)
        assert len(executor.calls) == 1

    async def test_unverified_cannot_execute(self, gate, user):
        executor = RecordingExecutor()
        challenge = await _stage(gate, user)
        with pytest.raises(StepUpStateError):
            await gate.execute(challenge.id, GUARDIAN, executor)
        assert executor.calls == []

    async def test_failing_executor_still_discards(self, gate, user):
        async def boom(action):
            raise ValueError("engine rejected")

        challenge = await _stage(gate, user)
        await gate.verify_password(challenge.id, GUARDIAN, user, "correct")
        with pytest.raises(ValueError):
            await gate.execute(challenge.id, GUARDIAN, boom)
        assert len(gate.registry) == 0

    async def test_confirm_password(self, gate, user):
        executor = RecordingExecutor()
        challenge = await _stage(gate, user)
        result = await gate.confirm_password(challenge.id, GUARDIAN, user, "correct", executor)
        assert result["ok"] is True

    async def test_confirm_mfa_code(self, gate, user):
        executor = RecordingExecutor()
        challenge = await _stage(gate, user)
        await gate.send_mfa_code(challenge.id, GUARDIAN, user, MfaChannel.EMAIL)
        result = await gate.confirm_mfa_code(
            challenge.id, GUARDIAN, user, MfaChannel.EMAIL, "123456", executor,
        )
        assert result["kind"] == "patch_policy"


class TestCancel:
    async def test_cancel_before_verification(self, gate, user):
        executor = RecordingExecutor()
        challenge = await _stage(gate, user)
        assert await gate.cancel(challenge.id, GUARDIAN) is True
        with pytest.raises(ChallengeNotFoundError):
            await gate.execute(challenge.id, GUARDIAN, executor)
        assert executor.calls == []

    async def test_cancel_after_verification_is_ignored(self, gate, user):
        executor = RecordingExecutor()
        challenge = await _stage(gate, user)
        await gate.verify_password(challenge.id, GUARDIAN, user, "correct")
        assert await gate.cancel(challenge.id, GUARDIAN) is False
        await gate.execute(challenge.id, GUARDIAN, executor)
        assert executor.calls == [ACTION]

    async def test_cancel_while_verifying(self, gate, identity, user):
        identity.block = asyncio.Event()
        challenge = await _stage(gate, user)
        verify = asyncio.create_task(gate.verify_password(challenge.id, GUARDIAN, user, "correct"))
        await asyncio.sleep(0)
        assert challenge.state == StepUpState.VERIFYING

        assert await gate.cancel(challenge.id, GUARDIAN) is True
        identity.block.set()
        with pytest.raises(StepUpStateError):
            await verify
        assert len(gate.registry) == 0

    async def test_cancel_unknown(self, gate):
        with pytest.raises(ChallengeNotFoundError):
            await gate.cancel(uuid.uuid4(), GUARDIAN)
