from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from punchclock.db import Base

JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class PunchType(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"

    @property
    def opposite(self) -> PunchType:
        return PunchType.OUT if self is PunchType.IN else PunchType.IN


class PunchSource(str, enum.Enum):
    NFC = "NFC"
    MANUAL = "MANUAL"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class UserRole(str, enum.Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class AuditActorType(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class AuditAction(str, enum.Enum):
    PUNCH_CREATE = "PUNCH_CREATE"
    PUNCH_EDIT = "PUNCH_EDIT"
    PUNCH_DELETE = "PUNCH_DELETE"
    PUNCH_AUTO_CLOSE = "PUNCH_AUTO_CLOSE"
    PUNCH_ORPHAN_FLAG = "PUNCH_ORPHAN_FLAG"
    PUNCH_CHANGE_NOT_APPLIED = "PUNCH_CHANGE_NOT_APPLIED"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role"),
        nullable=False,
        default=UserRole.USER,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    # Work profile; NULL means "use the process default".
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    daily_work_target_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    working_days: Mapped[list[str] | None] = mapped_column(JsonColumn, nullable=True)
    business_hours_start: Mapped[str | None] = mapped_column(String(5), nullable=True)
    business_hours_end: Mapped[str | None] = mapped_column(String(5), nullable=True)
    grace_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    shift_start_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    minimum_work_hours: Mapped[float | None] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    punches: Mapped[list[PunchLog]] = relationship(
        back_populates="user",
        foreign_keys="PunchLog.user_id",
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class PunchLog(Base):
    __tablename__ = "punch_logs"
    __table_args__ = (
        Index("ix_punch_logs_user_time", "user_id", "punch_time"),
        Index("ix_punch_logs_user_type_time", "user_id", "punch_type", "punch_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    punch_type: Mapped[PunchType] = mapped_column(Enum(PunchType, name="punch_type"), nullable=False)
    punch_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    source: Mapped[PunchSource] = mapped_column(Enum(PunchSource, name="punch_source"), nullable=False)

    edited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    edited_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    edited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    edit_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    original_punch_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    original_punch_type: Mapped[PunchType | None] = mapped_column(
        Enum(PunchType, name="punch_type"),
        nullable=True,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    user: Mapped[User] = relationship(back_populates="punches", foreign_keys=[user_id])

    def to_state(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "punch_type": self.punch_type.value if self.punch_type is not None else None,
            "punch_time": self.punch_time.isoformat() if self.punch_time is not None else None,
            "source": self.source.value if self.source is not None else None,
            "edited": bool(self.edited),
            "edited_by": self.edited_by,
            "edit_reason": self.edit_reason,
            "original_punch_time": (
                self.original_punch_time.isoformat() if self.original_punch_time is not None else None
            ),
            "original_punch_type": (
                self.original_punch_type.value if self.original_punch_type is not None else None
            ),
            "notes": self.notes,
        }


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    action: Mapped[AuditAction] = mapped_column(Enum(AuditAction, name="audit_action"), nullable=False, index=True)
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    performed_by: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    target_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    resource_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    previous_state: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, nullable=True)
    new_state: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, nullable=True)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)
