"""Identity Service.

Guardian credential checks used by the step-up gate: bcrypt passwords,
authenticator (TOTP) codes and one-time codes sent over SMS, WhatsApp or
email.

Outbound delivery is a hook: the default one only logs that a code was
dispatched. Codes are stored hashed and are never logged.
"""

import asyncio
import hashlib
import logging
import secrets
import time
import uuid
from collections.abc import Awaitable, Callable

import pyotp

from app.config import settings
from app.core.redis_client import get_redis
from app.core.security import verify_password as check_password
from app.models.user import User
from app.schemas.step_up import MfaChannel

logger = logging.getLogger(__name__)

CodeDelivery = Callable[[User, MfaChannel, str], Awaitable[None]]


# ---------------------------------------------------------------------------
# Authenticator (TOTP)
# ---------------------------------------------------------------------------


def generate_totp_secret() -> str:
    """Generate a cryptographically random Base32-encoded TOTP secret."""
    return pyotp.random_base32()


def get_provisioning_uri(secret: str, guardian_email: str, household_name: str) -> str:
    """Return the otpauth:// URI for QR code display in authenticator apps."""
    return pyotp.TOTP(secret).provisioning_uri(
        name=guardian_email,
        issuer_name=f"Guardian Controls – {household_name}",
    )


def verify_totp_code(secret: str, code: str) -> bool:
    """Verify a TOTP code. Allows ±30 seconds clock drift (valid_window=1)."""
    return pyotp.TOTP(secret).verify(code, valid_window=1)


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------


def generate_one_time_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def _digest(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


class OneTimeCodeStore:
    """Hashed one-time codes keyed by user and channel.

    Uses Redis when reachable so codes survive across workers; otherwise an
    in-process dict with the same expiry semantics.
    """

    def __init__(self, ttl_seconds: int | None = None) -> None:
        self.ttl_seconds = ttl_seconds or settings.MFA_CODE_TTL_SECONDS
        self._local: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _key(user_id: uuid.UUID, channel: MfaChannel) -> str:
        return f"stepup:code:{user_id}:{channel.value}"

    async def put(self, user_id: uuid.UUID, channel: MfaChannel, code: str) -> None:
        key = self._key(user_id, channel)
        redis = await get_redis()
        if redis is not None:
            await redis.setex(key, self.ttl_seconds, _digest(code))
            return
        async with self._lock:
            self._local[key] = (_digest(code), time.monotonic() + self.ttl_seconds)

    async def consume(self, user_id: uuid.UUID, channel: MfaChannel, code: str) -> bool:
        """Check ``code``; a matching code is removed so it works only once."""
        key = self._key(user_id, channel)
        redis = await get_redis()
        if redis is not None:
            stored = await redis.get(key)
            if stored is None or not secrets.compare_digest(stored, _digest(code)):
                return False
            await redis.delete(key)
            return True

        async with self._lock:
            entry = self._local.get(key)
            if entry is None:
                return False
            stored, expires_at = entry
            if expires_at < time.monotonic():
                del self._local[key]
                return False
            if not secrets.compare_digest(stored, _digest(code)):
                return False
            del self._local[key]
            return True


async def log_delivery(user: User, channel: MfaChannel, code: str) -> None:
    """Default delivery hook: nothing leaves the process."""
    logger.info("Step-up code dispatched to user %s via %s", user.id, channel.value)


# ---------------------------------------------------------------------------
# Identity collaborator
# ---------------------------------------------------------------------------


class IdentityService:
    def __init__(
        self,
        codes: OneTimeCodeStore,
        deliver: CodeDelivery = log_delivery,
    ) -> None:
        self.codes = codes
        self.deliver = deliver

    @staticmethod
    def channel_available(user: User, channel: MfaChannel) -> bool:
        if channel == MfaChannel.AUTHENTICATOR:
            return bool(user.totp_secret)
        if channel in (MfaChannel.SMS, MfaChannel.WHATSAPP):
            return bool(user.phone)
        return bool(user.email)

    async def verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            return False
        return check_password(password, user.password_hash)

    async def send_mfa_challenge(self, user: User, channel: MfaChannel) -> bool:
        """Send a fresh code over ``channel``; False when the user cannot receive it.

        The authenticator channel sends nothing: the app generates the code.
        """
        channel = MfaChannel(channel)
        if not self.channel_available(user, channel):
            return False
        if not channel.sends_code:
            return True
        code = generate_one_time_code()
        await self.codes.put(user.id, channel, code)
        await self.deliver(user, channel, code)
        return True

    async def verify_mfa_code(self, user: User, channel: MfaChannel, code: str) -> bool:
        channel = MfaChannel(channel)
        if channel == MfaChannel.AUTHENTICATOR:
            return bool(user.totp_secret) and verify_totp_code(user.totp_secret, code)
        return await self.codes.consume(user.id, channel, code)
