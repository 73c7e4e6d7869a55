from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import decode_token
from app.database import get_db
from app.models.household import HouseholdMember
from app.models.user import User
from app.schemas.household import HouseholdRole, MemberStatus
from app.services.activity_log import ActivityLog
from app.services.approval_engine import ApprovalEngine
from app.services.connection_manager import ConnectionManager
from app.services.household_directory import HouseholdDirectory
from app.services.identity_service import IdentityService, OneTimeCodeStore
from app.services.policy_store import PolicyStore
from app.services.repository import GuardianRepository
from app.services.step_up import ChallengeRegistry, StepUpGate

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login")


async def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """Extract and validate the JWT from the Authorization header.

    Returns the User ORM instance for the authenticated user.

    Raises:
        HTTPException 401: If the token is missing, invalid, or the user
            does not exist.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_token(token)
        user_id: str | None = payload.get("sub")
        token_type: str | None = payload.get("type")
        if user_id is None or token_type != "access":
            raise credentials_exception
        user_uuid = UUID(user_id)
    except (JWTError, ValueError):
        raise credentials_exception

    result = await db.execute(select(User).where(User.id == user_uuid))
    user = result.scalar_one_or_none()

    if user is None:
        raise credentials_exception

    return user


async def require_child(
    current_user: User = Depends(get_current_user),
) -> User:
    """Dependency that ensures the current user is a child app login.

    Raises:
        HTTPException 403: If the user is not a child.
    """
    if current_user.role != "child":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Child role required",
        )
    return current_user


async def require_guardian(
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: User = Depends(get_current_user),
) -> HouseholdMember:
    """Dependency resolving the caller to an active guardian or co-guardian.

    Emergency contacts and members whose invitation is still pending can
    sign in but cannot read or change supervision settings.

    Raises:
        HTTPException 403: If the user is not an active voting member of
            their household.
    """
    forbidden = HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Active guardian role required",
    )
    if current_user.role != "guardian":
        raise forbidden

    member = await GuardianRepository(db).find_member_by_user(
        current_user.id, current_user.household_id
    )
    if (
        member is None
        or member.status != MemberStatus.ACTIVE
        or not HouseholdRole(member.role).can_vote
    ):
        raise forbidden
    return member


# ---------------------------------------------------------------------------
# App-owned state
# ---------------------------------------------------------------------------


def get_challenge_registry(request: Request) -> ChallengeRegistry:
    return request.app.state.step_up


def get_code_store(request: Request) -> OneTimeCodeStore:
    return request.app.state.codes


def get_connections(request: Request) -> ConnectionManager:
    return request.app.state.connections


# ---------------------------------------------------------------------------
# Per-request engines
# ---------------------------------------------------------------------------


def get_repository(db: Annotated[AsyncSession, Depends(get_db)]) -> GuardianRepository:
    return GuardianRepository(db)


def get_activity_log(
    db: Annotated[AsyncSession, Depends(get_db)],
    connections: Annotated[ConnectionManager, Depends(get_connections)],
) -> ActivityLog:
    return ActivityLog(db, connections)


def get_policy_store(
    repo: Annotated[GuardianRepository, Depends(get_repository)],
    activity: Annotated[ActivityLog, Depends(get_activity_log)],
) -> PolicyStore:
    return PolicyStore(repo, activity)


def get_approval_engine(
    repo: Annotated[GuardianRepository, Depends(get_repository)],
    activity: Annotated[ActivityLog, Depends(get_activity_log)],
) -> ApprovalEngine:
    return ApprovalEngine(repo, activity)


def get_household_directory(
    repo: Annotated[GuardianRepository, Depends(get_repository)],
    activity: Annotated[ActivityLog, Depends(get_activity_log)],
) -> HouseholdDirectory:
    return HouseholdDirectory(repo, activity)


def get_identity_service(
    codes: Annotated[OneTimeCodeStore, Depends(get_code_store)],
) -> IdentityService:
    return IdentityService(codes)


def get_step_up_gate(
    registry: Annotated[ChallengeRegistry, Depends(get_challenge_registry)],
    identity: Annotated[IdentityService, Depends(get_identity_service)],
) -> StepUpGate:
    return StepUpGate(registry, identity)
