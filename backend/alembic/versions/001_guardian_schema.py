"""Guardian controls schema: households, members, child profiles, approvals, activity.

Revision ID: 001
Revises: None
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id", postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"), primary_key=True,
    )


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def upgrade() -> None:
    """Create all tables."""

    # ── households ────────────────────────────────────────────────────
    op.create_table(
        "households",
        _uuid_pk(),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("approval_mode", sa.String(20), nullable=False, server_default="any_guardian"),
        _created_at(),
    )

    # ── users ─────────────────────────────────────────────────────────
    op.create_table(
        "users",
        _uuid_pk(),
        sa.Column("household_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("households.id"), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=True),
        sa.Column("password_hash", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(30), nullable=True),
        sa.Column("totp_secret", sa.String(64), nullable=True),
        sa.Column("pin_hash", sa.String(255), nullable=True),
        _created_at(),
    )

    # ── refresh_tokens ────────────────────────────────────────────────
    op.create_table(
        "refresh_tokens",
        _uuid_pk(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("token_hash", sa.String(255), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _created_at(),
    )

    # ── household_members ─────────────────────────────────────────────
    op.create_table(
        "household_members",
        _uuid_pk(),
        sa.Column("household_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("households.id"), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(30), nullable=True),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("channels", postgresql.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("invite_code", sa.String(20), unique=True, nullable=True),
        sa.Column("invite_expires_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_household_members_household_id", "household_members", ["household_id"])

    # ── child_profiles ────────────────────────────────────────────────
    op.create_table(
        "child_profiles",
        _uuid_pk(),
        sa.Column("household_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("households.id"), nullable=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("dob", sa.Date(), nullable=False),
        sa.Column("school", sa.String(200), nullable=True),
        sa.Column("grade", sa.String(50), nullable=True),
        sa.Column("country", sa.String(100), nullable=False, server_default=""),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("guardian_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("consent_version", sa.String(20), nullable=False, server_default="v1.0"),
        sa.Column("consent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("template", sa.String(20), nullable=False, server_default="custom"),
        sa.Column("guardian_relationship", sa.String(20), nullable=False, server_default="parent"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="UGX"),
        sa.Column("link_code", sa.String(20), unique=True, nullable=True),
        sa.Column("policy", postgresql.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_child_profiles_household_id", "child_profiles", ["household_id"])

    # ── approval_requests ─────────────────────────────────────────────
    op.create_table(
        "approval_requests",
        _uuid_pk(),
        sa.Column("child_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("child_profiles.id"), nullable=False),
        sa.Column("household_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("households.id"), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="UGX"),
        sa.Column("app", sa.String(50), nullable=False),
        sa.Column("vendor", sa.String(200), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False, server_default=""),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column(
            "votes", postgresql.ARRAY(postgresql.UUID(as_uuid=True)),
            nullable=False, server_default=sa.text("'{}'"),
        ),
        sa.Column("decided_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _created_at(),
    )
    op.create_index("ix_approval_requests_child_id", "approval_requests", ["child_id"])
    op.create_index("ix_approval_requests_household_id", "approval_requests", ["household_id"])
    # Pending queue per household
    op.create_index(
        "ix_approval_requests_household_status",
        "approval_requests",
        ["household_id", "status"],
    )

    # ── activity_events ───────────────────────────────────────────────
    op.create_table(
        "activity_events",
        _uuid_pk(),
        sa.Column("household_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("child_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("kind", sa.String(40), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("severity", sa.String(10), nullable=False, server_default="info"),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("subject_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_activity_events_household_id", "activity_events", ["household_id"])
    op.create_index("ix_activity_events_child_id", "activity_events", ["child_id"])
    op.create_index("ix_activity_events_at", "activity_events", ["at"])


def downgrade() -> None:
    """Drop all tables (reverse order)."""
    op.drop_table("activity_events")
    op.drop_table("approval_requests")
    op.drop_table("child_profiles")
    op.drop_table("household_members")
    op.drop_table("refresh_tokens")
    op.drop_table("users")
    op.drop_table("households")
