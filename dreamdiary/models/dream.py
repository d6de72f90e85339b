from datetime import datetime, timezone

from sqlalchemy import JSON, Column, Date, DateTime, ForeignKey, Index, Integer, String, Text

from .base import Base


class Dream(Base):
    """Journal entry. ``dream_date`` is the night it describes, not the creation time."""

    __tablename__ = "dreams"

    id = Column(Integer, primary_key=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    content = Column(Text, nullable=False)
    dream_type = Column(String(32), nullable=False)
    dream_date = Column(Date, nullable=False)
    tags = Column(JSON, nullable=False, default=list)
    analysis = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (Index("ix_dreams_user_date", "user_id", "dream_date"),)


__all__ = ["Dream"]
