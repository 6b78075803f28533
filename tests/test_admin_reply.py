from __future__ import annotations

from app.db import SessionLocal
from app.models import Message
from tests.utils.auth import admin_headers, build_headers


def test_admin_reply_requires_jwt(client, make_user, make_session):
    session_id = make_session(make_user(), completed=False)
    resp = client.post(
        "/v1/adminReply", json={"help_session_id": session_id, "content": "hi"}
    )
    assert resp.status_code == 401


def test_admin_reply_rejects_non_admin(client, make_user, make_session):
    session_id = make_session(make_user(), completed=False)
    resp = client.post(
        "/v1/adminReply",
        json={"help_session_id": session_id, "content": "hi"},
        headers=admin_headers(role="user"),
    )
    assert resp.status_code == 403


def test_admin_reply_rejects_expired_token(client, make_user, make_session):
    session_id = make_session(make_user(), completed=False)
    resp = client.post(
        "/v1/adminReply",
        json={"help_session_id": session_id, "content": "hi"},
        headers=admin_headers(expires_in=-60),
    )
    assert resp.status_code == 401


def test_admin_reply_activates_session(client, make_user, make_session):
    user_id = make_user()
    session_id = make_session(
        user_id, completed=False, messages=[("modem blinking", False), ("red light", False)]
    )
    resp = client.post(
        "/v1/adminReply",
        json={"help_session_id": session_id, "content": "Unplug it for 30 seconds"},
        headers=admin_headers(),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["session"]["status"] == "active"
    assert body["session"]["last_message"] == "Unplug it for 30 seconds"
    assert body["message"]["is_admin"] is True
    assert body["message"]["read"] is False

    with SessionLocal() as db:
        rows = db.query(Message).filter_by(help_session_id=session_id).all()
        by_content = {m.content: m.read for m in rows}
    assert by_content == {
        "modem blinking": True,
        "red light": True,
        "Unplug it for 30 seconds": False,
    }

    resp = client.get(
        "/v1/checkMessages",
        params={"help_session_id": session_id},
        headers=build_headers(user_id),
    )
    body = resp.json()
    assert body["session_status"] == "active"
    assert [m["content"] for m in body["unread_messages"]] == ["Unplug it for 30 seconds"]


def test_admin_reply_can_skip_mark_read(client, make_user, make_session):
    session_id = make_session(make_user(), completed=False, messages=[("hello", False)])
    resp = client.post(
        "/v1/adminReply",
        json={"help_session_id": session_id, "content": "hi", "mark_all_as_read": False},
        headers=admin_headers(),
    )
    assert resp.status_code == 200
    with SessionLocal() as db:
        assert db.query(Message).filter_by(help_session_id=session_id, read=False).count() == 2


def test_user_message_after_admin_reply_keeps_active(client, make_user, make_session, collaborators):
    user_id = make_user()
    session_id = make_session(user_id, completed=False, messages=[("hello", False)])
    client.post(
        "/v1/adminReply",
        json={"help_session_id": session_id, "content": "hi there"},
        headers=admin_headers(),
    )
    resp = client.post(
        "/v1/chat",
        headers=build_headers(user_id),
        data={"message": "thanks", "help_session_id": session_id},
    )
    assert resp.json()["session"]["status"] == "active"


def test_admin_reply_unknown_session(client):
    resp = client.post(
        "/v1/adminReply",
        json={"help_session_id": "nope", "content": "hi"},
        headers=admin_headers(),
    )
    assert resp.status_code == 404


def test_admin_reply_closed_session(client, make_user, make_session):
    session_id = make_session(make_user(), completed=True)
    resp = client.post(
        "/v1/adminReply",
        json={"help_session_id": session_id, "content": "hi"},
        headers=admin_headers(),
    )
    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "SESSION_CLOSED"
