from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, String, Text

from app.models.base import Base


class TechUsage(Base):
    """A device the user reported during onboarding."""

    __tablename__ = "tech_usages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(
        String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    device_type = Column(String(64), nullable=False)
    device_name = Column(String(255))
    skill_level = Column(String(32))
    usage_frequency = Column(String(32))
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


__all__ = ["TechUsage"]
