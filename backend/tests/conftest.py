"""Shared fixtures for the guardian controls backend tests.

Uses SQLite (aiosqlite) by default, one fresh in-memory database per test.
Set TEST_DATABASE_URL to override (e.g. for CI with real PostgreSQL).
Redis is pointed at a closed port so caching and shared code storage fall
back to process memory.
"""

import os
import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite://")

# Ensure settings can be loaded without .env
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-unit-tests")
os.environ["REDIS_URL"] = os.environ.get("TEST_REDIS_URL", "redis://127.0.0.1:1/0")

from app.database import Base  # noqa: E402

PASSWORD = "testpassword123"


def _sqlite_savepoints(engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest correctly on SQLite."""

    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")


# ---------------------------------------------------------------------------
# Per-test engine and session
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture()
async def db_engine():
    import app.models  # noqa: F401  (populates Base.metadata)

    engine_kwargs = {}
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine_kwargs = {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, **engine_kwargs)
    if TEST_DATABASE_URL.startswith("sqlite"):
        _sqlite_savepoints(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(db_engine):
    session_factory = async_sessionmaker(
        bind=db_engine, class_=AsyncSession, expire_on_commit=False,
    )
    async with session_factory() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# Reset rate-limiter counters and app-owned state before every test
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_rate_limits():
    """Clear in-memory rate-limit counters so tests never block each other."""
    from app.core.rate_limit import limiter

    storage = getattr(limiter, "_storage", None)
    if storage is not None and hasattr(storage, "reset"):
        storage.reset()


@pytest.fixture(autouse=True)
def _reset_app_state():
    from app.main import app
    from app.services.connection_manager import ConnectionManager
    from app.services.identity_service import OneTimeCodeStore
    from app.services.step_up import ChallengeRegistry

    app.state.step_up = ChallengeRegistry()
    app.state.codes = OneTimeCodeStore()
    app.state.connections = ConnectionManager()


# ---------------------------------------------------------------------------
# HTTP test client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture()
async def client(db_session: AsyncSession):
    from app.database import get_db
    from app.main import app

    async def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Convenience: registered guardian with tokens + household ids
# ---------------------------------------------------------------------------

async def _register(client: AsyncClient, db_session: AsyncSession, label: str) -> dict:
    from app.core.security import decode_token
    from app.models.household import HouseholdMember
    from app.models.user import User

    suffix = uuid.uuid4().hex[:8]
    email = f"{label}-{suffix}@test.ug"
    household_name = f"Household {suffix}"
    resp = await client.post("/api/v1/auth/register", json={
        "email": email,
        "password": PASSWORD,
        "name": f"{label.title()} Guardian",
        "household_name": household_name,
        "phone": "+256700000001",
    })
    assert resp.status_code == 200, resp.text
    tokens = resp.json()

    user_id = uuid.UUID(decode_token(tokens["access_token"])["sub"])
    user = (await db_session.execute(select(User).where(User.id == user_id))).scalar_one()
    member = (await db_session.execute(
        select(HouseholdMember).where(HouseholdMember.user_id == user_id)
    )).scalar_one()

    return {
        "headers": {"Authorization": f"Bearer {tokens['access_token']}"},
        "user_id": str(user.id),
        "member_id": str(member.id),
        "household_id": str(user.household_id),
        "household_name": household_name,
        "email": email,
        "password": PASSWORD,
        "tokens": tokens,
    }


@pytest_asyncio.fixture()
async def registered_guardian(client: AsyncClient, db_session: AsyncSession):
    """Register a guardian and return context dict.

    Keys: headers, user_id, member_id, household_id, household_name, email,
    password, tokens
    """
    return await _register(client, db_session, "guardian")


@pytest_asyncio.fixture()
async def other_guardian(client: AsyncClient, db_session: AsyncSession):
    """A guardian of a second, unrelated household."""
    return await _register(client, db_session, "other")


@pytest.fixture()
def confirm(client: AsyncClient):
    """Complete a staged challenge with the account password.

    Usage: ``resp = await confirm(staged_response, guardian)``
    """

    async def _confirm(staged, guardian: dict, password: str | None = None):
        assert staged.status_code == 202, staged.text
        challenge_id = staged.json()["id"]
        return await client.post(
            f"/api/v1/step-up/{challenge_id}/password",
            json={"password": password or guardian["password"]},
            headers=guardian["headers"],
        )

    return _confirm


@pytest_asyncio.fixture()
async def child(client: AsyncClient, registered_guardian: dict, confirm):
    """A child created in the registered guardian's household from the child template."""
    staged = await client.post("/api/v1/children", json={
        "name": "Amani",
        "dob": "2015-04-12",
        "template": "child",
        "pin": "1234",
    }, headers=registered_guardian["headers"])
    resp = await confirm(staged, registered_guardian)
    assert resp.status_code == 200, resp.text
    return resp.json()["result"]


# ---------------------------------------------------------------------------
# Service-level fixtures (no HTTP)
# ---------------------------------------------------------------------------

class Engines:
    """The guardian engines wired to one test session."""

    def __init__(self, db_session: AsyncSession) -> None:
        from app.services.activity_log import ActivityLog
        from app.services.approval_engine import ApprovalEngine
        from app.services.connection_manager import ConnectionManager
        from app.services.household_directory import HouseholdDirectory
        from app.services.policy_store import PolicyStore
        from app.services.repository import GuardianRepository

        self.db = db_session
        self.repo = GuardianRepository(db_session)
        self.connections = ConnectionManager()
        self.activity = ActivityLog(db_session, self.connections)
        self.policies = PolicyStore(self.repo, self.activity)
        self.approvals = ApprovalEngine(self.repo, self.activity)
        self.household = HouseholdDirectory(self.repo, self.activity)

    async def new_household(self, name: str = "Nakato Household"):
        """Create a household; returns ``(household, founder_user, founder_member)``."""
        from app.core.security import get_password_hash
        from app.models.user import User

        founder = User(
            name="Sarah",
            role="guardian",
            email=f"sarah-{uuid.uuid4().hex[:8]}@test.ug",
            phone="+256700000002",
            password_hash=get_password_hash(PASSWORD),
        )
        household, member = await self.household.create_household(name, founder)
        return household, founder, member

    async def add_active_member(self, household_id, name: str, role: str = "co_guardian"):
        """Invite a member and accept the invite with a fresh account."""
        from app.core.security import get_password_hash
        from app.models.user import User
        from app.schemas.household import MemberCreate

        member = await self.household.add_member(household_id, MemberCreate(name=name, role=role))
        user = User(
            household_id=household_id,
            name=name,
            role="guardian",
            email=f"{name.lower()}-{uuid.uuid4().hex[:8]}@test.ug",
            password_hash=get_password_hash(PASSWORD),
        )
        await self.repo.insert_user(user)
        return await self.household.accept_invite(member.invite_code, user)

    async def activity_kinds(self, household_id) -> list[str]:
        events = await self.repo.load_activity(household_id, limit=200)
        return [e.kind for e in events]


@pytest_asyncio.fixture()
async def engines(db_session: AsyncSession) -> Engines:
    return Engines(db_session)
