"""Help session lifecycle: open, continue, reply, close.

All blocking database work runs in ``asyncio.to_thread``; calls to Stripe,
Twilio and OpenAI happen outside the database transaction and never fail the
user-facing operation.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Iterable, NamedTuple

from sqlalchemy.exc import IntegrityError

from app import db as db_module
from app.config import Settings
from app.metrics import (
    chat_messages_total,
    help_sessions_closed_total,
    help_sessions_created_total,
    quota_reject_total,
    session_conflict_total,
    summary_fallback_total,
    summary_latency_seconds,
    usage_report_fail_total,
    usage_report_total,
)
from app.models import Event, HelpSession, Message
from app.services import billing, notifications, summarizer
from app.services.help_sessions import (
    append_message,
    count_user_sessions,
    create_help_session,
    derive_title,
    get_help_session,
    get_open_session,
    get_transcript,
    get_unread_messages,
    mark_messages_read,
    mark_prior_messages_read,
    update_help_session_fields,
)
from app.services.usage_policy import (
    BillingState,
    UsageDecision,
    evaluate_usage,
    should_report_usage,
)
from app.services.users import get_or_create_user

logger = logging.getLogger(__name__)
settings = Settings()

FALLBACK_RECAP = "Session closed by user"


class LifecycleError(Exception):
    """Base class for rejected lifecycle operations."""


class SessionNotFound(LifecycleError):
    pass


class SessionForbidden(LifecycleError):
    pass


class SessionClosed(LifecycleError):
    pass


class SessionConflict(LifecycleError):
    """The user already has a non-completed session."""

    def __init__(self, session: HelpSession):
        super().__init__("An open help session already exists")
        self.session = session


class QuotaExceeded(LifecycleError):
    def __init__(self, decision: UsageDecision):
        super().__init__(decision.error_message)
        self.decision = decision


class ChatResult(NamedTuple):
    session: HelpSession
    message: Message
    usage: UsageDecision
    is_new_session: bool


def _snapshot(content: str, image_url: str | None) -> str:
    if content:
        return content
    return "[image]" if image_url else ""


def _owned_session(db, *, user_id: str, help_session_id: str) -> HelpSession:
    record = get_help_session(db, help_session_id)
    if record is None:
        raise SessionNotFound(help_session_id)
    if record.user_id != user_id:
        raise SessionForbidden(help_session_id)
    return record


async def send_user_message(
    *,
    user_id: str,
    content: str,
    image_url: str | None = None,
    help_session_id: str | None = None,
    client_message_id: str | None = None,
    session_type: str = "general",
) -> ChatResult:
    """Store a user message, opening a new session when no id is given."""
    snapshot = _snapshot(content, image_url)

    def _db_call():
        with db_module.SessionLocal() as db:
            user = get_or_create_user(db, user_id)
            state = BillingState.from_user(user)
            decision = evaluate_usage(
                state, count_user_sessions(db, user_id=user_id)
            )
            user_name = user.name
            customer_id = user.stripe_customer_id

            if help_session_id:
                record = _owned_session(
                    db, user_id=user_id, help_session_id=help_session_id
                )
                if record.completed:
                    raise SessionClosed(help_session_id)
                message = append_message(
                    db,
                    help_session_id=record.id,
                    content=content,
                    is_admin=False,
                    image_url=image_url,
                    client_message_id=client_message_id,
                )
                update_help_session_fields(db, record, last_message=snapshot)
                db.commit()
                return record, message, decision, False, user_name, customer_id

            existing = get_open_session(db, user_id=user_id)
            if existing is not None:
                raise SessionConflict(existing)

            if not decision.can_chat:
                db.add(Event(user_id=user_id, event="quota_rejected"))
                db.commit()
                raise QuotaExceeded(decision)

            try:
                record = create_help_session(
                    db,
                    user_id=user_id,
                    title=derive_title(content, bool(image_url)),
                    last_message=snapshot,
                    priority="high" if state.subscription_id else "medium",
                    session_type=session_type,
                )
                message = append_message(
                    db,
                    help_session_id=record.id,
                    content=content,
                    is_admin=False,
                    image_url=image_url,
                    client_message_id=client_message_id,
                )
                db.add(Event(user_id=user_id, event="session_created"))
                db.commit()
            except IntegrityError:
                # lost the race against a concurrent open
                db.rollback()
                winner = get_open_session(db, user_id=user_id)
                if winner is None:
                    raise
                raise SessionConflict(winner)
            return record, message, decision, True, user_name, customer_id

    try:
        record, message, decision, is_new, user_name, customer_id = (
            await asyncio.to_thread(_db_call)
        )
    except SessionConflict:
        session_conflict_total.inc()
        raise
    except QuotaExceeded as exc:
        quota_reject_total.inc()
        logger.info(
            "Quota exceeded",
            extra={"user_id": user_id, "event_type": exc.decision.plan.value},
        )
        raise

    chat_messages_total.labels(author="user").inc()
    if is_new:
        help_sessions_created_total.inc()
        logger.info(
            "Help session opened",
            extra={"user_id": user_id, "help_session_id": record.id},
        )

    if should_report_usage(decision, is_new_session=is_new):
        await _report_usage(user_id, record.id, customer_id)

    try:
        await notifications.notify_support_new_message(
            user_name=user_name,
            help_session_id=record.id,
            content=content,
            is_new_session=is_new,
            has_image=bool(image_url),
        )
    except Exception:
        logger.exception(
            "Support notification failed",
            extra={"help_session_id": record.id},
        )

    return ChatResult(record, message, decision, is_new)


async def _report_usage(
    user_id: str, help_session_id: str, customer_id: str | None
) -> bool:
    if not customer_id:
        logger.warning(
            "Metered user without Stripe customer, usage not reported",
            extra={"user_id": user_id, "help_session_id": help_session_id},
        )
        usage_report_fail_total.inc()
        return False

    def _already_reported() -> bool:
        with db_module.SessionLocal() as db:
            record = get_help_session(db, help_session_id)
            return bool(record and record.usage_reported)

    if await asyncio.to_thread(_already_reported):
        return False

    try:
        await billing.report_session_usage(customer_id, help_session_id)
    except billing.BillingError as exc:
        usage_report_fail_total.inc()
        logger.error(
            "Usage report failed: %s",
            exc,
            extra={"user_id": user_id, "help_session_id": help_session_id},
        )
        return False

    def _mark() -> None:
        with db_module.SessionLocal() as db:
            record = get_help_session(db, help_session_id)
            if record is not None:
                record.usage_reported = True
            db.add(Event(user_id=user_id, event="usage_reported"))
            db.commit()

    await asyncio.to_thread(_mark)
    usage_report_total.inc()
    logger.info(
        "Usage reported",
        extra={"user_id": user_id, "help_session_id": help_session_id},
    )
    return True


async def admin_reply(
    *, help_session_id: str, content: str, mark_all_read: bool = True
) -> tuple[HelpSession, Message]:
    def _db_call():
        with db_module.SessionLocal() as db:
            record = get_help_session(db, help_session_id)
            if record is None:
                raise SessionNotFound(help_session_id)
            if record.completed:
                raise SessionClosed(help_session_id)
            message = append_message(
                db,
                help_session_id=record.id,
                content=content,
                is_admin=True,
            )
            update_help_session_fields(
                db, record, last_message=content, status="active"
            )
            if mark_all_read:
                mark_prior_messages_read(
                    db, help_session_id=record.id, exclude_id=message.id
                )
            db.commit()
            return record, message

    record, message = await asyncio.to_thread(_db_call)
    chat_messages_total.labels(author="admin").inc()
    return record, message


async def check_messages(
    *, user_id: str, help_session_id: str
) -> tuple[HelpSession, list[Message]]:
    def _db_call():
        with db_module.SessionLocal() as db:
            record = _owned_session(
                db, user_id=user_id, help_session_id=help_session_id
            )
            return record, get_unread_messages(db, help_session_id=record.id)

    return await asyncio.to_thread(_db_call)


async def mark_read(
    *, user_id: str, help_session_id: str, message_ids: Iterable[str]
) -> int:
    ids = list(message_ids)

    def _db_call() -> int:
        with db_module.SessionLocal() as db:
            _owned_session(db, user_id=user_id, help_session_id=help_session_id)
            changed = mark_messages_read(
                db, help_session_id=help_session_id, message_ids=ids
            )
            db.commit()
            return changed

    return await asyncio.to_thread(_db_call)


async def load_session(
    *, user_id: str, help_session_id: str
) -> tuple[HelpSession, list[Message]]:
    def _db_call():
        with db_module.SessionLocal() as db:
            record = _owned_session(
                db, user_id=user_id, help_session_id=help_session_id
            )
            return record, get_transcript(db, help_session_id=record.id)

    return await asyncio.to_thread(_db_call)


async def _summarize(
    transcript: list[Message], fallback_title: str
) -> summarizer.SessionSummary:
    start = time.perf_counter()
    try:
        result = await asyncio.wait_for(
            asyncio.to_thread(summarizer.summarize_session, transcript),
            timeout=settings.summary_timeout_s,
        )
    except Exception as exc:
        summary_fallback_total.inc()
        logger.warning("Summary failed, using fallback recap: %r", exc)
        return summarizer.SessionSummary(recap=FALLBACK_RECAP, title=fallback_title)
    finally:
        summary_latency_seconds.observe(time.perf_counter() - start)
    return summarizer.SessionSummary(
        recap=result.recap, title=result.title or fallback_title
    )


async def close_session(*, user_id: str, help_session_id: str) -> HelpSession:
    """Mark the session completed and store a recap.

    A completed session is returned as is; the summarizer is not called twice.
    """
    record, transcript = await load_session(
        user_id=user_id, help_session_id=help_session_id
    )
    if record.completed:
        return record

    summary = await _summarize(transcript, record.title)

    def _db_call() -> HelpSession:
        with db_module.SessionLocal() as db:
            current = get_help_session(db, help_session_id)
            if current is None:
                raise SessionNotFound(help_session_id)
            if not current.completed:
                update_help_session_fields(
                    db,
                    current,
                    completed=True,
                    status="completed",
                    session_recap=summary.recap,
                    title=summary.title,
                )
                db.add(Event(user_id=user_id, event="session_closed"))
                db.commit()
            return current

    closed = await asyncio.to_thread(_db_call)
    help_sessions_closed_total.inc()
    logger.info(
        "Help session closed",
        extra={"user_id": user_id, "help_session_id": help_session_id},
    )
    return closed


__all__ = [
    "FALLBACK_RECAP",
    "LifecycleError",
    "SessionNotFound",
    "SessionForbidden",
    "SessionClosed",
    "SessionConflict",
    "QuotaExceeded",
    "ChatResult",
    "send_user_message",
    "admin_reply",
    "check_messages",
    "mark_read",
    "load_session",
    "close_session",
]
