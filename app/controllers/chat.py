from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, ConfigDict, Field

from app import db as db_module
from app.config import Settings
from app.dependencies import ErrorResponse, http_error, rate_limit
from app.models import ErrorCode, HelpSession
from app.services import lifecycle, storage
from app.services.help_sessions import (
    count_user_sessions,
    list_user_sessions,
    session_duration_minutes,
)
from app.services.usage_policy import BillingState, evaluate_usage
from app.services.users import get_or_create_user

logger = logging.getLogger(__name__)
settings = Settings()

router = APIRouter()


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    help_session_id: str
    content: str
    content_kind: str
    image_url: str | None = None
    is_admin: bool
    read: bool
    client_message_id: str | None = None
    created_at: datetime


class HelpSessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: str
    type: str
    status: str
    completed: bool
    last_message: str | None = None
    session_recap: str | None = None
    priority: str
    created_at: datetime
    updated_at: datetime


class UsageOut(BaseModel):
    plan: str
    can_chat: bool
    remaining_chats: int
    error_message: str
    upgrade_required: bool
    is_payg_warning: bool


class ChatResponse(BaseModel):
    success: bool = True
    session: HelpSessionOut
    message: MessageOut
    usage: UsageOut
    is_new_session: bool


class CheckMessagesResponse(BaseModel):
    success: bool = True
    session_status: str
    unread_messages: list[MessageOut]


class MarkReadRequest(BaseModel):
    help_session_id: str
    message_ids: list[str] = Field(default_factory=list)


class MarkReadResponse(BaseModel):
    success: bool = True
    marked_as_read: int


class CloseSessionRequest(BaseModel):
    help_session_id: str


class SessionResponse(BaseModel):
    success: bool = True
    session: HelpSessionOut


class SessionListResponse(BaseModel):
    success: bool = True
    sessions: list[HelpSessionOut]
    has_active_session: bool


class SessionMessagesResponse(BaseModel):
    success: bool = True
    session: HelpSessionOut
    messages: list[MessageOut]


class ChatHistoryResponse(SessionMessagesResponse):
    duration: int | None = None


class UsageResponse(UsageOut):
    total_sessions: int


def session_payload(record: HelpSession) -> dict:
    return HelpSessionOut.model_validate(record).model_dump(mode="json")


def lifecycle_http_error(exc: lifecycle.LifecycleError) -> HTTPException:
    """Translate a rejected lifecycle operation into an API error."""
    if isinstance(exc, lifecycle.SessionNotFound):
        return http_error(404, ErrorCode.NOT_FOUND, "Help session not found")
    if isinstance(exc, lifecycle.SessionForbidden):
        return http_error(403, ErrorCode.FORBIDDEN, "Unauthorized access to help session")
    if isinstance(exc, lifecycle.SessionClosed):
        return http_error(409, ErrorCode.SESSION_CLOSED, "Help session is closed")
    if isinstance(exc, lifecycle.SessionConflict):
        return http_error(
            409,
            ErrorCode.CONFLICT,
            "You already have an open help session",
            session=session_payload(exc.session),
        )
    if isinstance(exc, lifecycle.QuotaExceeded):
        return http_error(
            402,
            ErrorCode.QUOTA_EXCEEDED,
            exc.decision.error_message,
            usage=exc.decision.as_dict(),
        )
    return http_error(400, ErrorCode.BAD_REQUEST, str(exc))


def _require_session_id(help_session_id: str | None) -> str:
    if not help_session_id or not help_session_id.strip():
        raise http_error(400, ErrorCode.BAD_REQUEST, "Help session ID is required")
    return help_session_id.strip()


async def upload_image_file(user_id: str, file: UploadFile) -> str:
    """Validate and upload an image, returning its object key."""
    content_type = (file.content_type or "").lower()
    if not content_type.startswith("image/"):
        raise http_error(400, ErrorCode.BAD_REQUEST, "Only image uploads are supported")
    if storage.image_extension(content_type) is None:
        raise http_error(400, ErrorCode.BAD_REQUEST, "Unsupported image type")
    data = await file.read()
    if not data:
        raise http_error(400, ErrorCode.BAD_REQUEST, "Empty file")
    if len(data) > settings.max_image_bytes:
        raise http_error(413, ErrorCode.PAYLOAD_TOO_LARGE, "File size exceeds 5MB limit")
    try:
        return await storage.upload_image(user_id, data, content_type)
    except storage.StorageError as exc:
        raise http_error(
            500, ErrorCode.SERVICE_UNAVAILABLE, "Image upload failed"
        ) from exc


async def store_image(user_id: str, file: UploadFile) -> str:
    """Validate and upload an image, returning its public URL."""
    return storage.get_public_url(await upload_image_file(user_id, file))


@router.post(
    "/chat",
    response_model=ChatResponse,
    responses={
        400: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
    },
)
async def chat(
    message: str = Form(""),
    file: UploadFile | None = File(None),
    help_session_id: str | None = Form(None),
    client_message_id: str | None = Form(None),
    session_type: str = Form("general", alias="type"),
    user_id: str = Depends(rate_limit),
):
    text = (message or "").strip()
    if not text and file is None:
        raise http_error(400, ErrorCode.BAD_REQUEST, "Message content is required")
    image_key = await upload_image_file(user_id, file) if file is not None else None
    image_url = storage.get_public_url(image_key) if image_key else None

    try:
        result = await lifecycle.send_user_message(
            user_id=user_id,
            content=text,
            image_url=image_url,
            help_session_id=(help_session_id or "").strip() or None,
            client_message_id=client_message_id,
            session_type=session_type or "general",
        )
    except lifecycle.LifecycleError as exc:
        if image_key:
            # rejected before the message row existed
            await storage.delete_image(image_key)
        raise lifecycle_http_error(exc) from exc

    return ChatResponse(
        session=HelpSessionOut.model_validate(result.session),
        message=MessageOut.model_validate(result.message),
        usage=UsageOut(**result.usage.as_dict()),
        is_new_session=result.is_new_session,
    )


@router.get(
    "/checkMessages",
    response_model=CheckMessagesResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def check_messages(
    help_session_id: str | None = None,
    user_id: str = Depends(rate_limit),
):
    session_id = _require_session_id(help_session_id)
    try:
        record, unread = await lifecycle.check_messages(
            user_id=user_id, help_session_id=session_id
        )
    except lifecycle.LifecycleError as exc:
        raise lifecycle_http_error(exc) from exc
    return CheckMessagesResponse(
        session_status=record.status,
        unread_messages=[MessageOut.model_validate(m) for m in unread],
    )


@router.post(
    "/checkMessages",
    response_model=MarkReadResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def mark_messages_read(
    body: MarkReadRequest, user_id: str = Depends(rate_limit)
):
    session_id = _require_session_id(body.help_session_id)
    try:
        changed = await lifecycle.mark_read(
            user_id=user_id,
            help_session_id=session_id,
            message_ids=body.message_ids,
        )
    except lifecycle.LifecycleError as exc:
        raise lifecycle_http_error(exc) from exc
    return MarkReadResponse(marked_as_read=changed)


@router.post(
    "/closeSession",
    response_model=SessionResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def close_session(
    body: CloseSessionRequest, user_id: str = Depends(rate_limit)
):
    session_id = _require_session_id(body.help_session_id)
    try:
        record = await lifecycle.close_session(
            user_id=user_id, help_session_id=session_id
        )
    except lifecycle.LifecycleError as exc:
        raise lifecycle_http_error(exc) from exc
    return SessionResponse(session=HelpSessionOut.model_validate(record))


@router.get("/getUserSessions", response_model=SessionListResponse)
async def get_user_sessions(user_id: str = Depends(rate_limit)):
    def _db_call() -> list[HelpSession]:
        with db_module.SessionLocal() as db:
            return list_user_sessions(db, user_id=user_id)

    records = await asyncio.to_thread(_db_call)
    return SessionListResponse(
        sessions=[HelpSessionOut.model_validate(r) for r in records],
        has_active_session=any(not r.completed for r in records),
    )


@router.get(
    "/getSessionMessages",
    response_model=SessionMessagesResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_session_messages(
    help_session_id: str | None = None,
    user_id: str = Depends(rate_limit),
):
    session_id = _require_session_id(help_session_id)
    try:
        record, messages = await lifecycle.load_session(
            user_id=user_id, help_session_id=session_id
        )
    except lifecycle.LifecycleError as exc:
        raise lifecycle_http_error(exc) from exc
    return SessionMessagesResponse(
        session=HelpSessionOut.model_validate(record),
        messages=[MessageOut.model_validate(m) for m in messages],
    )


@router.get(
    "/getChatHistory",
    response_model=ChatHistoryResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_chat_history(
    help_session_id: str | None = None,
    user_id: str = Depends(rate_limit),
):
    session_id = _require_session_id(help_session_id)
    try:
        record, messages = await lifecycle.load_session(
            user_id=user_id, help_session_id=session_id
        )
    except lifecycle.LifecycleError as exc:
        raise lifecycle_http_error(exc) from exc
    return ChatHistoryResponse(
        session=HelpSessionOut.model_validate(record),
        messages=[MessageOut.model_validate(m) for m in messages],
        duration=session_duration_minutes(record, messages),
    )


@router.get("/usage", response_model=UsageResponse)
async def get_usage(user_id: str = Depends(rate_limit)):
    def _db_call():
        with db_module.SessionLocal() as db:
            user = get_or_create_user(db, user_id)
            db.commit()
            total = count_user_sessions(db, user_id=user_id)
            return evaluate_usage(BillingState.from_user(user), total), total

    decision, total = await asyncio.to_thread(_db_call)
    return UsageResponse(**decision.as_dict(), total_sessions=total)
