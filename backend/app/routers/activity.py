"""Activity feed router."""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from app.core.dependencies import get_repository, require_guardian
from app.models.household import HouseholdMember
from app.schemas.activity import ActivityEventResponse
from app.services.repository import GuardianRepository

router = APIRouter(prefix="/activity", tags=["Activity"])


@router.get("", response_model=list[ActivityEventResponse])
async def list_activity(
    guardian: Annotated[HouseholdMember, Depends(require_guardian)],
    repo: Annotated[GuardianRepository, Depends(get_repository)],
    child_id: uuid.UUID | None = None,
    limit: int = Query(50, ge=1, le=200),
):
    """Most recent household activity first."""
    return await repo.load_activity(guardian.household_id, child_id=child_id, limit=limit)
