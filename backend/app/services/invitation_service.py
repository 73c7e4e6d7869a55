"""Invitation Service.

Generate unique codes for household invitations and child account links.
"""

import secrets
import string

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.child import ChildProfileRecord
from app.models.household import HouseholdMember


def _generate_code() -> str:
    """Generate a code like 'QXRT-MBWA' (four letters, dash, four letters)."""
    letters = [secrets.choice(string.ascii_uppercase) for _ in range(8)]
    return f"{''.join(letters[:4])}-{''.join(letters[4:])}"


def normalize_code(code: str) -> str:
    """Codes are typed by hand; accept lower case and stray whitespace."""
    return code.strip().upper()


async def _unique_code(db: AsyncSession, column) -> str:
    for _ in range(10):
        code = _generate_code()
        result = await db.execute(select(column).where(column == code))
        if result.scalar_one_or_none() is None:
            return code
    raise RuntimeError("Could not generate a unique code")


async def generate_invitation_code(db: AsyncSession) -> str:
    """Generate a unique household invitation code, retrying on collision."""
    return await _unique_code(db, HouseholdMember.invite_code)


async def generate_link_code(db: AsyncSession) -> str:
    """Generate a unique child link code, retrying on collision."""
    return await _unique_code(db, ChildProfileRecord.link_code)
