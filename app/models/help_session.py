from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Index, String, Text, text
from sqlalchemy.orm import relationship

from app.models.base import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


class HelpSession(Base):
    """A support conversation between one user and the support team."""

    __tablename__ = "help_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String(64), nullable=False)
    title = Column(String(255), nullable=False, default="")
    type = Column(String(32), nullable=False, default="general")
    status = Column(String(16), nullable=False, default="pending")
    completed = Column(Boolean, nullable=False, default=False)
    last_message = Column(Text)
    session_recap = Column(Text)
    priority = Column(String(16), nullable=False, default="medium")
    usage_reported = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)

    messages = relationship(
        "Message",
        back_populates="help_session",
        order_by="Message.created_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'active', 'completed')",
            name="ck_help_sessions_status",
        ),
        Index("ix_help_sessions_user_updated", "user_id", "updated_at"),
        # one non-completed session per user
        Index(
            "uq_help_sessions_user_open",
            "user_id",
            unique=True,
            postgresql_where=text("completed = false"),
            sqlite_where=text("completed = 0"),
        ),
    )


__all__ = ["HelpSession"]
