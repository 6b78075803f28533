import uuid

import pytest

from app.db import SessionLocal
from app.models import User
from tests.utils.auth import build_headers


def _new_user_id() -> str:
    return f"user-{uuid.uuid4().hex[:12]}"


def test_me_creates_user_on_first_contact(client):
    user_id = _new_user_id()
    resp = client.get("/v1/users/me", headers=build_headers(user_id))
    assert resp.status_code == 200
    body = resp.json()
    assert body["id"] == user_id
    assert body["plan"] == "free"
    assert body["onboarding_complete"] is False
    with SessionLocal() as db:
        assert db.get(User, user_id) is not None


def test_onboarding_makes_customer(client):
    user_id = _new_user_id()
    resp = client.post(
        "/v1/onboarding/step1",
        json={"name": " Ana ", "phone": "+1 (555) 123-4567", "sms_consent": True},
        headers=build_headers(user_id),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["name"] == "Ana"
    assert body["phone"] == "+15551234567"
    assert body["plan"] == "customer"
    assert body["onboarding_complete"] is True

    me = client.get("/v1/users/me", headers=build_headers(user_id)).json()
    assert me["plan"] == "customer"


def test_onboarding_without_consent_stays_free(client):
    user_id = _new_user_id()
    resp = client.post(
        "/v1/onboarding/step1",
        json={"name": "Bo", "phone": "5551234567"},
        headers=build_headers(user_id),
    )
    assert resp.status_code == 200
    assert resp.json()["plan"] == "free"


@pytest.mark.parametrize(
    "payload,message",
    [
        ({"name": "", "phone": "5551234567"}, "Name and phone are required."),
        ({"name": "Ana", "phone": "  "}, "Name and phone are required."),
        ({"name": "Ana", "phone": "call me"}, "Invalid phone number"),
    ],
)
def test_onboarding_validation(client, payload, message):
    resp = client.post(
        "/v1/onboarding/step1", json=payload, headers=build_headers(_new_user_id())
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == {"code": "BAD_REQUEST", "message": message}


def test_me_reports_subscription_plan(client, make_user):
    user_id = make_user(stripe_subscription_id="sub_me", plan_type="plus-monthly")
    body = client.get("/v1/users/me", headers=build_headers(user_id)).json()
    assert body["plan"] == "monthly_or_yearly"
    assert body["plan_type"] == "plus-monthly"


def test_missing_user_header_unauthorized(client):
    headers = build_headers("x")
    headers.pop("X-User-ID")
    resp = client.get("/v1/users/me", headers=headers)
    assert resp.status_code == 401


def test_update_user_changes_profile(client, make_user):
    user_id = make_user(name="Old", phone="5550000000")
    email = f"{uuid.uuid4().hex[:8]}@example.com"
    resp = client.post(
        "/v1/updateUser",
        json={"name": " New Name ", "email": f" {email.upper()} ", "phone": "+1 555 765 4321"},
        headers=build_headers(user_id),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["name"] == "New Name"
    assert body["email"] == email
    assert body["phone"] == "+15557654321"

    # fields left out keep their values
    resp = client.post(
        "/v1/updateUser", json={"experience_level": "beginner"}, headers=build_headers(user_id)
    )
    assert resp.status_code == 200
    assert resp.json()["name"] == "New Name"
    assert resp.json()["experience_level"] == "beginner"


@pytest.mark.parametrize(
    "payload,message",
    [
        ({"email": "not-an-email"}, "Invalid email format"),
        ({"email": "a@b"}, "Invalid email format"),
        ({"name": "  "}, "Name cannot be empty"),
        ({"phone": "call me"}, "Invalid phone number"),
    ],
)
def test_update_user_validation(client, make_user, payload, message):
    user_id = make_user()
    resp = client.post("/v1/updateUser", json=payload, headers=build_headers(user_id))
    assert resp.status_code == 400
    assert resp.json()["detail"] == {"code": "BAD_REQUEST", "message": message}


def test_update_user_email_in_use(client, make_user):
    email = f"{uuid.uuid4().hex[:8]}@example.com"
    owner = make_user(email=email)
    other = make_user()

    resp = client.post("/v1/updateUser", json={"email": email}, headers=build_headers(other))
    assert resp.status_code == 400
    assert resp.json()["detail"]["message"] == "Email already in use"

    # re-saving one's own address is fine
    resp = client.post("/v1/updateUser", json={"email": email}, headers=build_headers(owner))
    assert resp.status_code == 200
    with SessionLocal() as db:
        assert db.get(User, other).email is None


def test_preferences_saved_and_listed(client, make_user):
    user_id = make_user()
    headers = build_headers(user_id)
    resp = client.post(
        "/v1/onboarding/preferences",
        json={
            "description": "Retired nurse",
            "age": 71,
            "accessibility_needs": "large text",
            "preferred_contact_method": "phone",
            "email_list": True,
            "tech_usage_items": [
                {"device_type": "phone", "device_name": "Pixel 6", "skill_level": "basic"},
                {"device_type": "laptop"},
            ],
        },
        headers=headers,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["age"] == 71
    assert body["accessibility_needs"] == "large text"
    assert body["email_list"] is True
    assert sorted(t["device_type"] for t in body["tech_usages"]) == ["laptop", "phone"]

    # empty values keep what was stored; a new device list replaces the old one
    resp = client.post(
        "/v1/onboarding/preferences",
        json={
            "description": "",
            "experience_level": "beginner",
            "tech_usage_items": [{"device_type": "tablet", "usage_frequency": "daily"}],
        },
        headers=headers,
    )
    assert resp.status_code == 200

    me = client.get("/v1/users/me", headers=headers).json()
    assert me["description"] == "Retired nurse"
    assert me["experience_level"] == "beginner"
    assert me["email_list"] is True
    assert [(t["device_type"], t["usage_frequency"]) for t in me["tech_usages"]] == [
        ("tablet", "daily")
    ]


def test_preferences_reject_bad_device(client, make_user):
    resp = client.post(
        "/v1/onboarding/preferences",
        json={"tech_usage_items": [{"device_type": ""}]},
        headers=build_headers(make_user()),
    )
    assert resp.status_code == 422
