from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from dreamdiary.models.base import Base


class Plan(str, Enum):
    FREE = "FREE"
    DEEP = "DEEP"


class Role(str, Enum):
    STANDARD = "STANDARD"
    SUPERADMIN = "SUPERADMIN"


class User(Base):
    """Account with its entitlement record.

    Invariant: ``plan == FREE`` implies ``plan_expires_at is None``.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False, unique=True)
    username = Column(String(20), nullable=True, unique=True)
    name = Column(String(255), nullable=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(16), nullable=False, default=Role.STANDARD.value)

    plan = Column(String(8), nullable=False, default=Plan.FREE.value)
    plan_expires_at = Column(DateTime(timezone=True), nullable=True)
    lifetime_analysis_count = Column(Integer, nullable=False, default=0)
    lifetime_weekly_report_count = Column(Integer, nullable=False, default=0)
    was_admin_upgraded = Column(Boolean, nullable=False, default=False)
    has_seen_upgrade_notice = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    dreams = relationship(
        "Dream", cascade="all, delete-orphan", passive_deletes=True
    )
    weekly_reports = relationship(
        "WeeklyReport", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        CheckConstraint(
            "plan <> 'FREE' OR plan_expires_at IS NULL", name="ck_users_free_no_expiry"
        ),
    )


__all__ = ["Plan", "Role", "User"]
