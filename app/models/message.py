from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from app.models.base import Base

CONTENT_KINDS = ("text", "image")


class Message(Base):
    """Append-only chat message; only ``read`` changes after insert."""

    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    help_session_id = Column(
        String(36),
        ForeignKey("help_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    content = Column(Text, nullable=False, default="")
    content_kind = Column(String(8), nullable=False, default="text")
    image_url = Column(Text)
    is_admin = Column(Boolean, nullable=False, default=False)
    read = Column(Boolean, nullable=False, default=False)
    client_message_id = Column(String(64))
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    help_session = relationship("HelpSession", back_populates="messages")

    __table_args__ = (
        CheckConstraint(
            "content_kind IN ('text', 'image')", name="ck_messages_content_kind"
        ),
        Index("ix_messages_session_created", "help_session_id", "created_at"),
        Index("ix_messages_session_read", "help_session_id", "read"),
    )


__all__ = ["Message", "CONTENT_KINDS"]
