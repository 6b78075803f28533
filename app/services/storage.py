import logging
from asyncio import Lock
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from uuid import uuid4

import aioboto3
from aiobotocore.client import AioBaseClient
from botocore.exceptions import BotoCoreError, ClientError

from app.config import Settings


logger = logging.getLogger("s3")

IMAGE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}

_settings: Settings = Settings()

_client_ctx: AbstractAsyncContextManager[AioBaseClient] | None = None
_client: AioBaseClient | None = None
_client_lock: Lock = Lock()


class StorageError(Exception):
    """Object store rejected or failed an upload."""


async def _make_client() -> AioBaseClient:
    session = aioboto3.Session()
    client_ctx = session.client(
        "s3",
        endpoint_url=_settings.s3_endpoint,
        region_name=_settings.s3_region,
        aws_access_key_id=_settings.s3_access_key,
        aws_secret_access_key=_settings.s3_secret_key,
    )
    try:
        client = await client_ctx.__aenter__()
    except Exception as exc:
        try:
            await client_ctx.__aexit__(None, None, None)
        except Exception:  # pragma: no cover - best effort cleanup
            logger.exception("Failed to close S3 client after failed entry")
        logger.exception("Failed to create S3 client: %s", exc)
        raise
    global _client_ctx
    _client_ctx = client_ctx
    return client


async def get_client() -> AioBaseClient:
    """Return a cached aioboto3 client, creating it if needed."""
    global _client
    if _client is not None:
        return _client

    async with _client_lock:
        if _client is None:
            _client = await _make_client()
        return _client


async def close_client() -> None:
    """Close the cached S3 client if it exists."""
    global _client, _client_ctx
    if _client_ctx is not None:
        try:
            await _client_ctx.__aexit__(None, None, None)
        except Exception:  # pragma: no cover - best effort cleanup
            logger.exception("Failed to close S3 client")
    _client = None
    _client_ctx = None


async def init_storage(cfg: Settings) -> None:
    """Store settings and reinitialize the client."""
    global _settings
    _settings = cfg
    await close_client()


def image_extension(content_type: str | None) -> str | None:
    return IMAGE_EXTENSIONS.get((content_type or "").split(";")[0].strip().lower())


async def upload_image(user_id: str, data: bytes, content_type: str) -> str:
    """Upload a chat image and return the object key."""
    ext = image_extension(content_type)
    if ext is None:
        raise StorageError(f"Unsupported content type {content_type!r}")
    ts = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    prefix = _settings.s3_prefix.strip("/")
    key = f"{prefix}/{user_id}/{ts}-{uuid4().hex}.{ext}"
    try:
        client = await get_client()
        await client.put_object(
            Bucket=_settings.s3_bucket, Key=key, Body=data, ContentType=content_type
        )
    except (BotoCoreError, ClientError) as exc:
        logger.exception("S3 upload failed: %s", exc)
        raise StorageError("S3 upload failed") from exc
    return key


async def delete_image(key: str) -> bool:
    """Remove an uploaded object. Best effort: failures are logged only."""
    try:
        client = await get_client()
        await client.delete_object(Bucket=_settings.s3_bucket, Key=key)
    except (BotoCoreError, ClientError) as exc:
        logger.warning("S3 delete of %s failed: %s", key, exc)
        return False
    return True


def get_public_url(key: str) -> str:
    """Return a public URL for the object."""
    bucket = _settings.s3_bucket
    if _settings.s3_public_url:
        return f"{_settings.s3_public_url.rstrip('/')}/{key}"
    if _settings.s3_endpoint:
        return f"{_settings.s3_endpoint.rstrip('/')}/{bucket}/{key}"
    return f"https://{bucket}.s3.{_settings.s3_region}.amazonaws.com/{key}"


__all__ = [
    "StorageError",
    "init_storage",
    "close_client",
    "get_client",
    "image_extension",
    "upload_image",
    "delete_image",
    "get_public_url",
]
