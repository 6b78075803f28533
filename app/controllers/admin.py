from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.controllers.chat import (
    HelpSessionOut,
    MessageOut,
    lifecycle_http_error,
)
from app.dependencies import ErrorResponse, require_admin
from app.services import lifecycle

logger = logging.getLogger(__name__)

router = APIRouter()


class AdminReplyRequest(BaseModel):
    help_session_id: str = Field(min_length=1)
    content: str = Field(min_length=1)
    mark_all_as_read: bool = True


class AdminReplyResponse(BaseModel):
    success: bool = True
    session: HelpSessionOut
    message: MessageOut


@router.post(
    "/adminReply",
    response_model=AdminReplyResponse,
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def admin_reply(
    body: AdminReplyRequest, staff_id: str = Depends(require_admin)
):
    try:
        record, message = await lifecycle.admin_reply(
            help_session_id=body.help_session_id,
            content=body.content,
            mark_all_read=body.mark_all_as_read,
        )
    except lifecycle.LifecycleError as exc:
        raise lifecycle_http_error(exc) from exc
    logger.info(
        "Admin %s replied", staff_id, extra={"help_session_id": record.id}
    )
    return AdminReplyResponse(
        session=HelpSessionOut.model_validate(record),
        message=MessageOut.model_validate(message),
    )
