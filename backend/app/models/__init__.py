"""SQLAlchemy ORM models.

All models are imported here so that Alembic can discover them
via ``Base.metadata`` when generating migrations.
"""

from app.models.activity import ActivityEvent  # noqa: F401
from app.models.approval import ApprovalRequest  # noqa: F401
from app.models.child import ChildProfileRecord  # noqa: F401
from app.models.household import Household, HouseholdMember  # noqa: F401
from app.models.user import RefreshToken, User  # noqa: F401

__all__ = [
    "ActivityEvent",
    "ApprovalRequest",
    "ChildProfileRecord",
    "Household",
    "HouseholdMember",
    "RefreshToken",
    "User",
]
