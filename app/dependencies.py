from __future__ import annotations

import logging
from typing import Any

import jwt
import redis.asyncio as redis
from redis.exceptions import RedisError
from fastapi import Depends, Header, HTTPException, Request
from pydantic import BaseModel

from app.config import Settings
from app.models import ErrorCode

settings = Settings()
redis_client = redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)


logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    code: str
    message: str


def http_error(
    status_code: int, code: ErrorCode, message: str, **extra: Any
) -> HTTPException:
    """Build an ``HTTPException`` carrying an ``ErrorResponse`` payload."""
    detail = ErrorResponse(code=ErrorCode(code).value, message=message).model_dump()
    detail.update(extra)
    return HTTPException(status_code=status_code, detail=detail)


async def require_api_headers(
    x_api_key: str = Header(..., alias="X-API-Key"),
    x_api_ver: str | None = Header(None, alias="X-API-Ver"),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
) -> str:
    if x_api_ver is None:
        raise http_error(426, ErrorCode.UPGRADE_REQUIRED, "Missing API version")

    if x_api_ver != "v1":
        raise http_error(426, ErrorCode.UPGRADE_REQUIRED, "Invalid API version")

    if x_api_key != settings.api_key:
        raise http_error(401, ErrorCode.UNAUTHORIZED, "Invalid API key")

    if not x_user_id or not x_user_id.strip():
        raise http_error(401, ErrorCode.UNAUTHORIZED, "Not authenticated")

    return x_user_id.strip()


def _client_ip(request: Request) -> str:
    client_host = request.client.host if request.client else ""
    xff = request.headers.get("X-Forwarded-For")
    if xff and client_host in settings.trusted_proxies:
        forwarded = [h.strip() for h in xff.split(",") if h.strip()]
        proxies = forwarded[1:] + [client_host]
        if forwarded and all(p in settings.trusted_proxies for p in proxies):
            return forwarded[0]
    return client_host


async def rate_limit(request: Request, user_id: str = Depends(require_api_headers)) -> str:
    """Throttle requests by IP and user via Redis."""
    ip_key = f"rate:ip:{_client_ip(request)}"
    user_key = f"rate:user:{user_id}"

    try:
        pipe = redis_client.pipeline()
        pipe.incr(ip_key)
        pipe.expire(ip_key, 60)
        pipe.incr(user_key)
        pipe.expire(user_key, 60)
        ip_count, _, user_count, _ = await pipe.execute()
    except RedisError as exc:
        logger.exception("Redis unavailable for rate limiting: %s", exc)
        raise http_error(
            503, ErrorCode.SERVICE_UNAVAILABLE, "Rate limiter unavailable"
        ) from exc
    if (
        ip_count > settings.rate_limit_ip_per_min
        or user_count > settings.rate_limit_user_per_min
    ):
        raise http_error(429, ErrorCode.TOO_MANY_REQUESTS, "Rate limit exceeded")

    return user_id


async def require_admin(
    authorization: str | None = Header(None, alias="Authorization"),
) -> str:
    """Return the staff member id from an admin JWT."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise http_error(401, ErrorCode.UNAUTHORIZED, "Missing JWT")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError as exc:
        raise http_error(401, ErrorCode.UNAUTHORIZED, "Expired JWT") from exc
    except jwt.PyJWTError as exc:
        raise http_error(401, ErrorCode.UNAUTHORIZED, "Invalid JWT") from exc
    if payload.get("role") != "admin":
        raise http_error(403, ErrorCode.FORBIDDEN, "Admin role required")
    return str(payload.get("sub") or "admin")
