"""Authentication router.

Endpoints for login, registration, token refresh, logout and guardian
authenticator enrolment.
"""

import hashlib
import uuid
from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from jose import JWTError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.dependencies import (
    get_activity_log,
    get_current_user,
    get_household_directory,
)
from app.core.rate_limit import limiter
from app.core.security import (
    create_access_token,
    create_refresh_token,
    decode_token,
    get_password_hash,
    verify_password,
)
from app.database import get_db
from app.models.household import Household
from app.models.user import RefreshToken, User
from app.schemas.activity import ActivityEntry, ActivityKind
from app.schemas.auth import (
    LoginRequest,
    PinLoginRequest,
    RefreshRequest,
    RegisterRequest,
    RegisterWithInvitationRequest,
    TokenResponse,
    TotpSetupResponse,
)
from app.services.activity_log import ActivityLog
from app.services.household_directory import HouseholdDirectory
from app.services.identity_service import generate_totp_secret, get_provisioning_uri
from app.services.invitation_service import normalize_code

router = APIRouter(prefix="/auth", tags=["Auth"])


@router.get("/me")
async def get_me(current_user: User = Depends(get_current_user)):
    """Return basic info about the currently authenticated user."""
    return {
        "id": str(current_user.id),
        "household_id": str(current_user.household_id),
        "name": current_user.name,
        "role": current_user.role,
        "totp_enabled": current_user.totp_secret is not None,
    }


def _hash_token(token: str) -> str:
    """Return the SHA-256 hex digest of a raw token string."""
    return hashlib.sha256(token.encode()).hexdigest()


async def _create_tokens_for_user(
    db: AsyncSession, user: User
) -> TokenResponse:
    """Create an access + refresh token pair and persist the refresh token."""
    access_token = create_access_token(data={"sub": str(user.id)})
    raw_refresh = create_refresh_token(data={"sub": str(user.id)})

    refresh_record = RefreshToken(
        user_id=user.id,
        token_hash=_hash_token(raw_refresh),
        expires_at=datetime.now(timezone.utc)
        + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
    )
    db.add(refresh_record)
    await db.flush()

    return TokenResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
    )


async def _ensure_email_free(db: AsyncSession, email: str) -> None:
    existing = await db.execute(select(User).where(User.email == email))
    if existing.scalar_one_or_none() is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered",
        )


@router.post("/login", response_model=TokenResponse)
@limiter.limit("10/minute")
async def login(
    request: Request,
    body: LoginRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    activity: Annotated[ActivityLog, Depends(get_activity_log)],
):
    """Authenticate a guardian with email + password and return tokens."""
    result = await db.execute(select(User).where(User.email == body.email))
    user = result.scalar_one_or_none()

    if user is None or user.password_hash is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    if not verify_password(body.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    await activity.record(ActivityEntry(
        household_id=user.household_id,
        kind=ActivityKind.LOGIN,
        summary=f"{user.name} signed in",
        subject_id=user.id,
    ))
    return await _create_tokens_for_user(db, user)


@router.post("/register", response_model=TokenResponse)
async def register(
    body: RegisterRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    household: Annotated[HouseholdDirectory, Depends(get_household_directory)],
):
    """Register a guardian and create their household with them as primary guardian."""
    await _ensure_email_free(db, body.email)

    user = User(
        name=body.name,
        role="guardian",
        email=body.email,
        phone=body.phone,
        password_hash=get_password_hash(body.password),
    )
    await household.create_household(body.household_name, user)

    return await _create_tokens_for_user(db, user)


@router.post("/register-with-invitation", response_model=TokenResponse)
async def register_with_invitation(
    body: RegisterWithInvitationRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    household: Annotated[HouseholdDirectory, Depends(get_household_directory)],
):
    """Register a guardian account and accept a household invitation in one step."""
    if body.password != body.password_confirm:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Passwords do not match",
        )
    await _ensure_email_free(db, body.email)

    member = await household.repo.find_member_by_invite(normalize_code(body.invitation_code))
    if member is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invitation code is invalid or expired",
        )

    user = User(
        household_id=member.household_id,
        name=body.name,
        role="guardian",
        email=body.email,
        password_hash=get_password_hash(body.password),
    )
    await household.repo.insert_user(user)
    await household.accept_invite(body.invitation_code, user)

    return await _create_tokens_for_user(db, user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    body: RefreshRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Exchange a valid refresh token for a new token pair (rotation)."""
    try:
        payload = decode_token(body.refresh_token)
        user_id = payload.get("sub")
        token_type = payload.get("type")
        if user_id is None or token_type != "refresh":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid refresh token",
            )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid refresh token",
        )

    token_hash = _hash_token(body.refresh_token)
    result = await db.execute(
        select(RefreshToken).where(
            RefreshToken.token_hash == token_hash,
            RefreshToken.revoked == False,  # noqa: E712
        )
    )
    stored_token = result.scalar_one_or_none()

    if stored_token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token not found or already revoked",
        )

    expires = stored_token.expires_at
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    if expires < datetime.now(timezone.utc):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token expired",
        )

    # Revoke the old token (rotation)
    stored_token.revoked = True
    await db.flush()

    user_result = await db.execute(
        select(User).where(User.id == uuid.UUID(user_id))
    )
    user = user_result.scalar_one_or_none()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )

    return await _create_tokens_for_user(db, user)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    body: RefreshRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Revoke the provided refresh token."""
    token_hash = _hash_token(body.refresh_token)
    result = await db.execute(
        select(RefreshToken).where(
            RefreshToken.token_hash == token_hash,
            RefreshToken.revoked == False,  # noqa: E712
        )
    )
    stored_token = result.scalar_one_or_none()

    if stored_token is not None:
        stored_token.revoked = True
        await db.flush()

    # Always 204, whether or not the token was found
    return None


@router.post("/login-pin", response_model=TokenResponse)
@limiter.limit("10/minute")
async def login_pin(
    request: Request,
    body: PinLoginRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    activity: Annotated[ActivityLog, Depends(get_activity_log)],
):
    """Authenticate a child app login with household name + child name + PIN."""
    not_found = HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail="Child not found",
    )
    result = await db.execute(
        select(Household).where(
            func.lower(Household.name) == body.household_name.strip().lower()
        )
    )
    household = result.scalars().first()
    if household is None:
        raise not_found

    result = await db.execute(
        select(User).where(
            User.household_id == household.id,
            func.lower(User.name) == body.child_name.strip().lower(),
            User.role == "child",
        )
    )
    user = result.scalars().first()
    if user is None:
        raise not_found

    if user.pin_hash is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No PIN set; ask a guardian to set one",
        )

    if not verify_password(body.pin, user.pin_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid PIN",
        )

    await activity.record(ActivityEntry(
        household_id=user.household_id,
        kind=ActivityKind.LOGIN,
        summary=f"{user.name} signed in to the app",
        subject_id=user.id,
    ))
    return await _create_tokens_for_user(db, user)


# ---------------------------------------------------------------------------
# Guardian authenticator (TOTP) enrolment
# ---------------------------------------------------------------------------


@router.post(
    "/totp/setup",
    response_model=TotpSetupResponse,
    status_code=status.HTTP_201_CREATED,
)
async def setup_totp(
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: User = Depends(get_current_user),
) -> TotpSetupResponse:
    """Generate a new authenticator secret for the signed-in guardian."""
    if current_user.role != "guardian":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Guardian role required",
        )
    result = await db.execute(select(Household).where(Household.id == current_user.household_id))
    household = result.scalar_one_or_none()

    secret = generate_totp_secret()
    uri = get_provisioning_uri(
        secret, current_user.email or current_user.name, household.name if household else "Household",
    )
    current_user.totp_secret = secret
    await db.flush()

    return TotpSetupResponse(secret=secret, provisioning_uri=uri)


@router.delete("/totp", status_code=status.HTTP_204_NO_CONTENT)
async def disable_totp(
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: User = Depends(get_current_user),
) -> None:
    """Remove the signed-in user's authenticator secret."""
    current_user.totp_secret = None
    await db.flush()
