from datetime import datetime, timezone

from sqlalchemy import JSON, Column, Date, DateTime, ForeignKey, Index, Integer

from .base import Base


class WeeklyReport(Base):
    """Generated weekly report; append-only."""

    __tablename__ = "weekly_reports"

    id = Column(Integer, primary_key=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    analysis = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (Index("ix_weekly_reports_user_created", "user_id", "created_at"),)


__all__ = ["WeeklyReport"]
