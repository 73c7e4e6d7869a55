"""Unit tests for identity_service.py (no database required).

Redis points at a closed port in tests, so one-time codes use the
in-process store.
"""

import re
import uuid

import pyotp
import pytest

from app.core.security import get_password_hash
from app.models.user import User
from app.schemas.step_up import MfaChannel
from app.services.identity_service import (
    IdentityService,
    OneTimeCodeStore,
    generate_one_time_code,
    generate_totp_secret,
    get_provisioning_uri,
    verify_totp_code,
)


def make_user(**fields) -> User:
    data = {
        "id": uuid.uuid4(),
        "household_id": uuid.uuid4(),
        "name": "Sarah",
        "role": "guardian",
        "email": "sarah@test.ug",
        "phone": "+256700000002",
        "password_hash": get_password_hash("testpassword123"),
    }
    data.update(fields)
    return User(**data)


class DeliveryRecorder:
    def __init__(self):
        self.sent: list[tuple[MfaChannel, str]] = []

    async def __call__(self, user, channel, code):
        self.sent.append((channel, code))


class TestTotp:
    def test_secret_is_base32(self):
        secret = generate_totp_secret()
        assert re.match(r"^[A-Z2-7]+=*$", secret), f"Unexpected format: {secret!r}"
        assert len(secret.rstrip("=")) >= 16

    def test_provisioning_uri(self):
        uri = get_provisioning_uri(generate_totp_secret(), "sarah@test.ug", "Nakato Household")
        assert uri.startswith("otpauth://totp/")
        assert "Nakato" in uri

    def test_current_code_passes(self):
        secret = generate_totp_secret()
        assert verify_totp_code(secret, pyotp.TOTP(secret).now()) is True

    def test_wrong_code_fails(self):
        secret = generate_totp_secret()
        for code in ["aaaaaa", "------"]:
            assert verify_totp_code(secret, code) is False


class TestOneTimeCodeStore:
    def test_code_format(self):
        assert re.match(r"^[0-9]{6}$", generate_one_time_code())

    async def test_code_is_single_use(self):
        store = OneTimeCodeStore(ttl_seconds=60)
        user_id = uuid.uuid4()
        await store.put(user_id, MfaChannel.SMS, "482913")
        assert await store.consume(user_id, MfaChannel.SMS, "482913") is True
        assert await store.consume(user_id, MfaChannel.SMS, "482913") is False

    async def test_wrong_code_keeps_stored_code(self):
        store = OneTimeCodeStore(ttl_seconds=60)
        user_id = uuid.uuid4()
        await store.put(user_id, MfaChannel.EMAIL, "482913")
        assert await store.consume(user_id, MfaChannel.EMAIL, "000000") is False
        assert await store.consume(user_id, MfaChannel.EMAIL, "482913") is True

    async def test_codes_are_per_channel(self):
        store = OneTimeCodeStore(ttl_seconds=60)
        user_id = uuid.uuid4()
        await store.put(user_id, MfaChannel.SMS, "111111")
        assert await store.consume(user_id, MfaChannel.WHATSAPP, "111111") is False

    async def test_new_code_replaces_old(self):
        store = OneTimeCodeStore(ttl_seconds=60)
        user_id = uuid.uuid4()
        await store.put(user_id, MfaChannel.SMS, "111111")
        await store.put(user_id, MfaChannel.SMS, "222222")
        assert await store.consume(user_id, MfaChannel.SMS, "111111") is False
        assert await store.consume(user_id, MfaChannel.SMS, "222222") is True


class TestIdentityService:
    async def test_password(self):
        identity = IdentityService(OneTimeCodeStore())
        user = make_user()
        assert await identity.verify_password(user, "testpassword123") is True
        assert await identity.verify_password(user, "wrong") is False
        assert await identity.verify_password(make_user(password_hash=None), "") is False

    async def test_sms_code_roundtrip(self):
        recorder = DeliveryRecorder()
        identity = IdentityService(OneTimeCodeStore(), deliver=recorder)
        user = make_user()

        assert await identity.send_mfa_challenge(user, MfaChannel.SMS) is True
        (channel, code), = recorder.sent
        assert channel == MfaChannel.SMS
        assert await identity.verify_mfa_code(user, MfaChannel.SMS, code) is True
        assert await identity.verify_mfa_code(user, MfaChannel.SMS, code) is False

    async def test_missing_phone_cannot_receive_sms(self):
        recorder = DeliveryRecorder()
        identity = IdentityService(OneTimeCodeStore(), deliver=recorder)
        assert await identity.send_mfa_challenge(make_user(phone=None), MfaChannel.WHATSAPP) is False
        assert recorder.sent == []

    async def test_authenticator_sends_nothing(self):
        recorder = DeliveryRecorder()
        identity = IdentityService(OneTimeCodeStore(), deliver=recorder)
        secret = generate_totp_secret()
        user = make_user(totp_secret=secret)

        assert await identity.send_mfa_challenge(user, MfaChannel.AUTHENTICATOR) is True
        assert recorder.sent == []
        assert await identity.verify_mfa_code(user, MfaChannel.AUTHENTICATOR, pyotp.TOTP(secret).now())

    async def test_authenticator_requires_enrolment(self):
        identity = IdentityService(OneTimeCodeStore())
        user = make_user()
        assert await identity.send_mfa_challenge(user, MfaChannel.AUTHENTICATOR) is False
        assert await identity.verify_mfa_code(user, MfaChannel.AUTHENTICATOR, "123456") is False
