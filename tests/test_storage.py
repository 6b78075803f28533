from __future__ import annotations
import base64
import logging
import re

import boto3
import pytest
import pytest_asyncio
from botocore.exceptions import BotoCoreError

from moto import mock_aws

from app.services import storage
from app.config import Settings
from app.services.storage import (
    StorageError,
    delete_image,
    get_client,
    get_public_url,
    upload_image,
)


ORIGINAL_MAKE_CLIENT = storage._make_client

PNG_BASE64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mP8Xw8AAoMBgN4abH0AAAAASUVORK5CYII="
)
PNG_BYTES = base64.b64decode(PNG_BASE64)


def _settings(**overrides) -> Settings:
    values = {"s3_bucket": "testbucket", "s3_region": "us-east-1", "s3_endpoint": None}
    values.update(overrides)
    return Settings(_env_file=None, **values)


class _AsyncWrapper:
    def __init__(self, client: boto3.client):
        self._client = client
        self.meta = client.meta

    async def put_object(self, *args, **kwargs):
        return self._client.put_object(*args, **kwargs)

    async def delete_object(self, *args, **kwargs):
        return self._client.delete_object(*args, **kwargs)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._client.close()


@pytest_asyncio.fixture(autouse=True)
async def use_sync_client(monkeypatch):
    async def _make():
        ctx = _AsyncWrapper(boto3.client("s3", region_name="us-east-1"))
        storage._client_ctx = ctx
        return await ctx.__aenter__()

    monkeypatch.setattr(storage, "_make_client", _make)
    storage._client = None
    storage._client_ctx = None
    yield
    await storage.close_client()
    await storage.init_storage(Settings())


@pytest.mark.asyncio
async def test_lazy_client_initialization():
    with mock_aws():
        await storage.init_storage(_settings())
        assert storage._client is None
        first = await get_client()
        assert first is storage._client
        again = await get_client()
        assert again is first


@pytest.mark.asyncio
async def test_upload_and_url():
    await storage.init_storage(_settings(s3_public_url="http://localhost:9000"))

    with mock_aws():
        s3 = boto3.client("s3", region_name="us-east-1")
        s3.create_bucket(Bucket="testbucket")

        key = await upload_image("user-42", PNG_BYTES, "image/png")
        assert re.fullmatch(r"chat-images/user-42/\d{14}-[0-9a-f]{32}\.png", key)
        obj = s3.get_object(Bucket="testbucket", Key=key)
        assert obj["Body"].read() == PNG_BYTES
        assert obj["ContentType"] == "image/png"

        assert get_public_url(key) == f"http://localhost:9000/{key}"


@pytest.mark.asyncio
async def test_delete_image_removes_object():
    await storage.init_storage(_settings())

    with mock_aws():
        s3 = boto3.client("s3", region_name="us-east-1")
        s3.create_bucket(Bucket="testbucket")

        key = await upload_image("user-42", PNG_BYTES, "image/png")
        assert await delete_image(key) is True
        listed = s3.list_objects_v2(Bucket="testbucket")
        assert listed.get("KeyCount", 0) == 0


@pytest.mark.asyncio
async def test_delete_image_failure_is_logged(caplog):
    await storage.init_storage(_settings())

    with mock_aws():
        # bucket is never created
        with caplog.at_level(logging.WARNING, logger="s3"):
            assert await delete_image("chat-images/user-42/gone.png") is False
    assert "S3 delete of chat-images/user-42/gone.png failed" in caplog.text


@pytest.mark.parametrize(
    "overrides,expected",
    [
        ({"s3_endpoint": "http://minio:9000/"}, "http://minio:9000/testbucket/k.png"),
        ({}, "https://testbucket.s3.us-east-1.amazonaws.com/k.png"),
    ],
)
@pytest.mark.asyncio
async def test_public_url_fallbacks(overrides, expected):
    await storage.init_storage(_settings(**overrides))
    assert get_public_url("k.png") == expected


@pytest.mark.parametrize(
    "content_type,ext",
    [
        ("image/jpeg", "jpg"),
        ("IMAGE/PNG; charset=binary", "png"),
        ("image/webp", "webp"),
        ("image/bmp", None),
        (None, None),
    ],
)
def test_image_extension(content_type, ext):
    assert storage.image_extension(content_type) == ext


@pytest.mark.asyncio
async def test_upload_rejects_unsupported_type():
    with pytest.raises(StorageError):
        await upload_image("user-1", b"BM", "image/bmp")


@pytest.mark.asyncio
async def test_make_client_logs_error(monkeypatch, caplog):
    class FailingCtx:
        async def __aenter__(self):
            raise BotoCoreError()

        async def __aexit__(self, exc_type, exc, tb):
            return False

    class FakeSession:
        def client(self, *args, **kwargs):
            return FailingCtx()

    monkeypatch.setattr(storage, "_make_client", ORIGINAL_MAKE_CLIENT)
    monkeypatch.setattr(storage.aioboto3, "Session", lambda: FakeSession())
    storage._client = None
    storage._client_ctx = None
    with caplog.at_level(logging.ERROR, logger="s3"):
        with pytest.raises(BotoCoreError):
            await storage._make_client()
    assert "Failed to create S3 client" in caplog.text


class DummyClient:
    def __init__(self):
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True


@pytest.mark.asyncio
async def test_close_client_closes():
    dummy = DummyClient()
    storage._client = await dummy.__aenter__()
    storage._client_ctx = dummy
    await storage.close_client()
    assert dummy.closed
    assert storage._client is None


class FailingClient:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        raise RuntimeError("boom")


@pytest.mark.asyncio
async def test_close_client_ignores_errors(caplog):
    failing = FailingClient()
    storage._client = await failing.__aenter__()
    storage._client_ctx = failing
    with caplog.at_level(logging.ERROR):
        await storage.close_client()
    assert "Failed to close S3 client" in caplog.text
    assert storage._client is None


@pytest.mark.asyncio
async def test_init_storage_closes_existing_client():
    dummy = DummyClient()
    storage._client = await dummy.__aenter__()
    storage._client_ctx = dummy
    await storage.init_storage(_settings())
    assert dummy.closed
    assert storage._client is None


@pytest.mark.asyncio
async def test_upload_failure():
    await storage.init_storage(_settings())

    with mock_aws():
        # bucket is never created
        with pytest.raises(StorageError):
            await upload_image("user-42", PNG_BYTES, "image/png")
