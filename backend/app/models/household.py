import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class Household(Base):
    __tablename__ = "households"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    approval_mode: Mapped[str] = mapped_column(
        String(20), nullable=False, default="any_guardian"
    )  # 'any_guardian' or 'both_guardians'
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    members: Mapped[list["HouseholdMember"]] = relationship(
        back_populates="household", order_by="HouseholdMember.created_at"
    )
    users: Mapped[list["User"]] = relationship(back_populates="household")  # noqa: F821

    def __repr__(self) -> str:
        return f"<Household(id={self.id}, name={self.name!r})>"


class HouseholdMember(Base):
    __tablename__ = "household_members"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    household_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("households.id"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)  # guardian, co_guardian, emergency_contact
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    channels: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    invite_code: Mapped[str | None] = mapped_column(String(20), unique=True, nullable=True)
    invite_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    household: Mapped["Household"] = relationship(back_populates="members")

    def __repr__(self) -> str:
        return f"<HouseholdMember(id={self.id}, name={self.name!r}, role={self.role!r})>"
