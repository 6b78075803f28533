from __future__ import annotations

import pytest

from app.db import SessionLocal
from app.models import StripeSubscription, User
from app.services import billing
from tests.utils.auth import build_headers


@pytest.fixture
def fake_stripe(monkeypatch):
    calls = {"cancel": [], "cancel_at_period_end": [], "customers": [], "checkout": []}

    async def _cancel(subscription_id):
        calls["cancel"].append(subscription_id)
        return {"id": subscription_id, "status": "canceled"}

    async def _cancel_later(subscription_id):
        calls["cancel_at_period_end"].append(subscription_id)
        return {"id": subscription_id, "cancel_at_period_end": True}

    async def _customer(**kwargs):
        calls["customers"].append(kwargs)
        return {"id": "cus_new"}

    async def _price(price_id):
        return {"id": price_id, "type": "recurring", "recurring": {"usage_type": "licensed"}}

    async def _checkout(**kwargs):
        calls["checkout"].append(kwargs)
        return {"id": "cs_1", "url": "https://checkout.test/cs_1"}

    async def _retrieve(subscription_id):
        return {
            "id": subscription_id,
            "status": "active",
            "cancel_at_period_end": False,
            "items": {
                "data": [
                    {
                        "id": "si_1",
                        "price": {"id": billing.settings.stripe_price_plus_yearly},
                        "current_period_start": 1760000000,
                        "current_period_end": 1791536000,
                    }
                ]
            },
        }

    monkeypatch.setattr(billing, "cancel_subscription", _cancel)
    monkeypatch.setattr(billing, "cancel_subscription_at_period_end", _cancel_later)
    monkeypatch.setattr(billing, "create_customer", _customer)
    monkeypatch.setattr(billing, "retrieve_price", _price)
    monkeypatch.setattr(billing, "create_checkout_session", _checkout)
    monkeypatch.setattr(billing, "retrieve_subscription", _retrieve)
    return calls


def _checkout(client, user_id, plan):
    return client.post(
        "/v1/createCheckoutSession",
        json={"plan_type": plan},
        headers=build_headers(user_id),
    )


def test_unknown_plan_rejected(client, make_user, fake_stripe):
    resp = _checkout(client, make_user(), "gold")
    assert resp.status_code == 400
    assert fake_stripe["checkout"] == []


def test_free_without_subscription_rejected(client, make_user, fake_stripe):
    resp = _checkout(client, make_user(), "free")
    assert resp.status_code == 400
    assert resp.json()["detail"]["message"] == "No active subscription to cancel"


def test_free_cancels_at_period_end(client, make_user, fake_stripe):
    user_id = make_user(stripe_subscription_id="sub_free")
    resp = _checkout(client, user_id, "free")
    assert resp.status_code == 200
    assert resp.json()["url"].endswith("/app/plans?downgraded=true")
    assert fake_stripe["cancel_at_period_end"] == ["sub_free"]
    with SessionLocal() as db:
        assert db.get(User, user_id).stripe_subscription_id == "sub_free"


def test_new_customer_created(client, make_user, fake_stripe):
    user_id = make_user(name="Lee")
    resp = _checkout(client, user_id, "plus-monthly")
    assert resp.status_code == 200
    assert resp.json()["url"] == "https://checkout.test/cs_1"
    assert fake_stripe["customers"][0]["user_id"] == user_id
    assert fake_stripe["checkout"][0]["customer_id"] == "cus_new"
    assert fake_stripe["checkout"][0]["plan_type"] == "plus-monthly"
    with SessionLocal() as db:
        assert db.get(User, user_id).stripe_customer_id == "cus_new"


def test_plus_plan_clears_previous_billing(client, make_user, fake_stripe):
    user_id = make_user(
        stripe_customer_id="cus_old",
        stripe_subscription_id="sub_old",
        stripe_usage_id="si_old",
    )
    with SessionLocal() as db:
        db.add(
            StripeSubscription(
                id=f"row-{user_id}",
                user_id=user_id,
                stripe_subscription_id="sub_old",
                status="active",
                plan_type="paygo",
            )
        )
        db.commit()

    resp = _checkout(client, user_id, "plus-yearly")
    assert resp.status_code == 200
    assert fake_stripe["cancel"] == ["sub_old"]
    assert fake_stripe["customers"] == []
    with SessionLocal() as db:
        user = db.get(User, user_id)
        assert user.stripe_subscription_id is None
        assert user.stripe_usage_id is None
        assert db.query(StripeSubscription).filter_by(stripe_subscription_id="sub_old").count() == 0


def test_paygo_keeps_usage_id(client, make_user, fake_stripe):
    user_id = make_user(
        stripe_customer_id="cus_pg",
        stripe_subscription_id="sub_monthly_pg",
        stripe_usage_id="pi_prev",
    )
    resp = _checkout(client, user_id, "paygo")
    assert resp.status_code == 200
    assert fake_stripe["cancel"] == ["sub_monthly_pg"]
    with SessionLocal() as db:
        user = db.get(User, user_id)
        assert user.stripe_subscription_id is None
        assert user.stripe_usage_id == "pi_prev"


def test_checkout_billing_outage(client, make_user, fake_stripe, monkeypatch):
    async def _down(price_id):
        raise billing.BillingError("down")

    monkeypatch.setattr(billing, "retrieve_price", _down)
    resp = _checkout(client, make_user(stripe_customer_id="cus_x"), "plus-monthly")
    assert resp.status_code == 502
    assert resp.json()["detail"]["code"] == "SERVICE_UNAVAILABLE"


def test_get_subscription(client, make_user, fake_stripe):
    user_id = make_user(stripe_subscription_id="sub_view")
    resp = client.get("/v1/getSubscription", headers=build_headers(user_id))
    assert resp.status_code == 200
    body = resp.json()
    assert body["id"] == "sub_view"
    assert body["plan_type"] == "plus-yearly"
    assert body["cancel_at_period_end"] is False
    assert body["current_period_end"].startswith("2026-10-09")


def test_get_subscription_none(client, make_user, fake_stripe):
    resp = client.get("/v1/getSubscription", headers=build_headers(make_user()))
    assert resp.status_code == 404


def test_upcoming_invoice(client, make_user, monkeypatch):
    calls = []

    async def _preview(customer_id, subscription_id):
        calls.append((customer_id, subscription_id))
        return {
            "id": "in_up",
            "amount_due": 1200,
            "currency": "usd",
            "next_payment_attempt": 1762592000,
            "lines": {"data": [{"description": "Plus", "amount": 1200, "quantity": 1}]},
        }

    monkeypatch.setattr(billing, "preview_upcoming_invoice", _preview)
    user_id = make_user(stripe_customer_id="cus_inv", stripe_subscription_id="sub_inv")
    resp = client.get("/v1/getUpcomingInvoice", headers=build_headers(user_id))
    assert resp.status_code == 200
    body = resp.json()
    assert calls == [("cus_inv", "sub_inv")]
    assert body["invoice_id"] == "in_up"
    assert body["amount_due"] == 12.0
    assert body["currency"] == "USD"
    assert body["next_payment_attempt"].startswith("2025-11-08")
    assert body["line_items"] == [
        {
            "description": "Plus",
            "amount": 12.0,
            "quantity": 1,
            "period_start": None,
            "period_end": None,
        }
    ]


def test_upcoming_invoice_without_subscription(client, make_user, monkeypatch):
    async def _preview(customer_id, subscription_id):
        raise AssertionError("Stripe must not be called")

    monkeypatch.setattr(billing, "preview_upcoming_invoice", _preview)
    resp = client.get(
        "/v1/getUpcomingInvoice",
        headers=build_headers(make_user(stripe_customer_id="cus_free")),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["amount_due"] == 0.0
    assert body["currency"] == "USD"
    assert body["line_items"] == []


def test_upcoming_invoice_billing_outage(client, make_user, monkeypatch):
    async def _down(customer_id, subscription_id):
        raise billing.BillingError("down", status_code=500)

    monkeypatch.setattr(billing, "preview_upcoming_invoice", _down)
    user_id = make_user(stripe_customer_id="cus_o", stripe_subscription_id="sub_o")
    resp = client.get("/v1/getUpcomingInvoice", headers=build_headers(user_id))
    assert resp.status_code == 502
    assert resp.json()["detail"]["code"] == "SERVICE_UNAVAILABLE"
