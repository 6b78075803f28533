import os
import uuid
from contextlib import redirect_stderr, redirect_stdout
from datetime import datetime, timedelta, timezone
from io import StringIO
from pathlib import Path
from types import SimpleNamespace

import pytest
from alembic import command
from alembic.config import Config

from app import dependencies

# Ensure tests run against SQLite when DATABASE_URL is not defined
os.environ.setdefault("DATABASE_URL", "sqlite:////tmp/helpdesk_test.db")
os.environ.pop("OPENAI_API_KEY", None)

from fastapi.testclient import TestClient
from app.main import app
from app.config import Settings
from app.db import SessionLocal, init_db
from app.models import HelpSession, Message, User
from app.services import billing, notifications, summarizer


def _sqlite_path() -> Path | None:
    db_url = os.environ.get("DATABASE_URL")
    if db_url and db_url.startswith("sqlite:///"):
        return Path(db_url.replace("sqlite:///", ""))
    return None


@pytest.fixture(scope="session", autouse=True)
def apply_migrations():
    """Apply Alembic migrations before running tests."""
    db_path = _sqlite_path()
    if db_path is not None and db_path.exists():
        db_path.unlink()
    cfg_path = Path(__file__).resolve().parent.parent / "alembic.ini"
    config = Config(str(cfg_path))
    stdout_buf, stderr_buf = StringIO(), StringIO()
    try:
        with redirect_stdout(stdout_buf), redirect_stderr(stderr_buf):
            command.upgrade(config, "head")
    except Exception as exc:
        print("Alembic upgrade failed:", exc)
        print("stdout:\n", stdout_buf.getvalue())
        print("stderr:\n", stderr_buf.getvalue())
        raise
    init_db(Settings())


@pytest.fixture(scope="session", autouse=True)
def remove_test_db():
    """Remove temporary SQLite database after tests finish."""
    yield
    db_path = _sqlite_path()
    if db_path is not None and db_path.exists():
        db_path.unlink()


@pytest.fixture(scope="module")
def client(apply_migrations):
    """Yields a TestClient with lifespan events."""
    with TestClient(app) as client:
        yield client


@pytest.fixture(autouse=True)
def mock_redis(monkeypatch):
    class _Pipe:
        def __init__(self, store):
            self.store = store
            self.ops = []

        def incr(self, key):
            self.ops.append(("incr", key))
            return self

        def expire(self, key, ttl):
            self.ops.append(("expire", key, ttl))
            return self

        async def execute(self):
            results = []
            for op in self.ops:
                if op[0] == "incr":
                    key = op[1]
                    self.store[key] = self.store.get(key, 0) + 1
                    results.append(self.store[key])
                else:
                    results.append(True)
            self.ops.clear()
            return results

    class _Redis:
        def __init__(self):
            self.store = {}

        def pipeline(self):
            return _Pipe(self.store)

    fake = _Redis()
    monkeypatch.setattr(dependencies, "redis_client", fake)
    yield


@pytest.fixture
def make_user(apply_migrations):
    """Insert a user with a random id and the given billing fields."""

    def _make(**fields) -> str:
        user_id = fields.pop("id", None) or f"user-{uuid.uuid4().hex[:12]}"
        with SessionLocal() as db:
            db.add(User(id=user_id, sms_consent=fields.pop("sms_consent", False), **fields))
            db.commit()
        return user_id

    return _make


@pytest.fixture
def make_session(apply_migrations):
    """Insert a help session directly, completed unless told otherwise."""

    def _make(user_id: str, *, completed: bool = True, messages=(), **fields) -> str:
        now = datetime.now(timezone.utc)
        with SessionLocal() as db:
            record = HelpSession(
                user_id=user_id,
                title=fields.pop("title", "Old issue"),
                status="completed" if completed else fields.pop("status", "pending"),
                completed=completed,
                created_at=now,
                updated_at=now,
                **fields,
            )
            db.add(record)
            db.flush()
            for offset, (content, is_admin) in enumerate(messages):
                db.add(
                    Message(
                        help_session_id=record.id,
                        content=content,
                        is_admin=is_admin,
                        created_at=now + timedelta(minutes=offset * 5),
                    )
                )
            db.commit()
            return record.id

    return _make


@pytest.fixture
def collaborators(monkeypatch):
    """Record calls to SMS, metering and the summarizer instead of hitting the network."""
    calls = SimpleNamespace(sms=[], usage=[], summaries=0)

    async def _notify(**kwargs):
        calls.sms.append(kwargs)
        return True

    async def _report(customer_id, identifier):
        calls.usage.append((customer_id, identifier))
        return {"object": "billing.meter_event"}

    def _summarize(messages):
        calls.summaries += 1
        return summarizer.SessionSummary(recap="User fixed the printer.", title="Printer fix")

    monkeypatch.setattr(notifications, "notify_support_new_message", _notify)
    monkeypatch.setattr(billing, "report_session_usage", _report)
    monkeypatch.setattr(summarizer, "summarize_session", _summarize)
    return calls
