from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.models import HelpSession, Message

TITLE_MAX = 50


def _now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def derive_title(text: str | None, has_image: bool) -> str:
    text = (text or "").strip()
    if text:
        return text if len(text) <= TITLE_MAX else text[: TITLE_MAX - 3] + "..."
    if has_image:
        return "Image upload"
    return "New help request"


def get_help_session(db: Session, session_id: str) -> HelpSession | None:
    return db.get(HelpSession, session_id)


def get_open_session(db: Session, *, user_id: str) -> HelpSession | None:
    return (
        db.query(HelpSession)
        .filter(HelpSession.user_id == user_id, HelpSession.completed.is_(False))
        .order_by(HelpSession.updated_at.desc())
        .first()
    )


def list_user_sessions(db: Session, *, user_id: str) -> list[HelpSession]:
    return (
        db.query(HelpSession)
        .filter(HelpSession.user_id == user_id)
        .order_by(HelpSession.updated_at.desc())
        .all()
    )


def count_user_sessions(db: Session, *, user_id: str) -> int:
    return (
        db.query(func.count(HelpSession.id))
        .filter(HelpSession.user_id == user_id)
        .scalar()
        or 0
    )


def create_help_session(
    db: Session,
    *,
    user_id: str,
    title: str,
    last_message: str,
    priority: str = "medium",
    session_type: str = "general",
) -> HelpSession:
    """Insert a pending session; caller commits."""
    now = _now()
    record = HelpSession(
        user_id=user_id,
        title=title,
        type=session_type,
        priority=priority,
        status="pending",
        completed=False,
        last_message=last_message,
        created_at=now,
        updated_at=now,
    )
    db.add(record)
    db.flush()
    return record


def update_help_session_fields(
    db: Session, record: HelpSession, **fields: Any
) -> HelpSession:
    for name, value in fields.items():
        if not hasattr(HelpSession, name):
            raise AttributeError(f"HelpSession has no field {name!r}")
        setattr(record, name, value)
    record.updated_at = _now()
    return record


def append_message(
    db: Session,
    *,
    help_session_id: str,
    content: str,
    is_admin: bool,
    image_url: str | None = None,
    client_message_id: str | None = None,
) -> Message:
    message = Message(
        help_session_id=help_session_id,
        content=content,
        content_kind="image" if image_url else "text",
        image_url=image_url,
        is_admin=is_admin,
        read=False,
        client_message_id=client_message_id,
        created_at=_now(),
    )
    db.add(message)
    db.flush()
    return message


def get_transcript(db: Session, *, help_session_id: str) -> list[Message]:
    return (
        db.query(Message)
        .filter(Message.help_session_id == help_session_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )


def get_unread_messages(db: Session, *, help_session_id: str) -> list[Message]:
    return (
        db.query(Message)
        .filter(Message.help_session_id == help_session_id, Message.read.is_(False))
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )


def mark_messages_read(
    db: Session, *, help_session_id: str, message_ids: Iterable[str]
) -> int:
    """Mark the given ids read; already-read ids are a no-op. Returns rows changed."""
    ids = list({str(mid) for mid in message_ids})
    if not ids:
        return 0
    result = db.execute(
        update(Message)
        .where(
            Message.help_session_id == help_session_id,
            Message.id.in_(ids),
            Message.read.is_(False),
        )
        .values(read=True)
    )
    return result.rowcount or 0


def mark_prior_messages_read(
    db: Session, *, help_session_id: str, exclude_id: str | None = None
) -> int:
    stmt = update(Message).where(
        Message.help_session_id == help_session_id, Message.read.is_(False)
    )
    if exclude_id:
        stmt = stmt.where(Message.id != exclude_id)
    result = db.execute(stmt.values(read=True))
    return result.rowcount or 0


def session_duration_minutes(record: HelpSession, messages: list[Message]) -> int | None:
    """Minutes between first and last message of a completed session."""
    if not record.completed or len(messages) < 2:
        return None
    first = as_utc(messages[0].created_at)
    last = as_utc(messages[-1].created_at)
    return int((last - first).total_seconds() // 60)


__all__ = [
    "as_utc",
    "derive_title",
    "get_help_session",
    "get_open_session",
    "list_user_sessions",
    "count_user_sessions",
    "create_help_session",
    "update_help_session_fields",
    "append_message",
    "get_transcript",
    "get_unread_messages",
    "mark_messages_read",
    "mark_prior_messages_read",
    "session_duration_minutes",
]
