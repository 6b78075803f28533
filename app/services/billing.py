"""Stripe REST client for checkout, subscriptions and metered usage."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from app.config import Settings

logger = logging.getLogger(__name__)
settings = Settings()

PLAN_TYPES = ("free", "plus-monthly", "plus-yearly", "paygo", "priority-paygo")


class BillingError(Exception):
    """Stripe call failed or Stripe is not configured."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


# Stripe error codes meaning "nothing to preview" rather than an outage
NO_INVOICE_CODES = frozenset({"invoice_upcoming_none", "resource_missing"})


def price_for_plan(plan_type: str) -> str | None:
    return {
        "plus-monthly": settings.stripe_price_plus_monthly,
        "plus-yearly": settings.stripe_price_plus_yearly,
        "paygo": settings.stripe_price_paygo,
        "priority-paygo": settings.stripe_price_priority_paygo,
    }.get(plan_type)


def plan_for_price(price_id: str | None) -> str:
    for plan in PLAN_TYPES[1:]:
        if price_id and price_for_plan(plan) == price_id:
            return plan
    return "unknown"


def encode_form(data: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Flatten nested dicts/lists into Stripe's ``a[b][0]=c`` form encoding."""
    pairs: list[tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for idx, item in enumerate(value):
                item_name = f"{name}[{idx}]"
                if isinstance(item, dict):
                    pairs.extend(encode_form(item, item_name))
                else:
                    pairs.append((item_name, _scalar(item)))
        else:
            pairs.append((name, _scalar(value)))
    return pairs


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _error_code(response: httpx.Response) -> str | None:
    try:
        error = response.json().get("error") or {}
    except (ValueError, AttributeError):
        return None
    return error.get("code") if isinstance(error, dict) else None


async def _request(
    method: str, path: str, data: dict[str, Any] | None = None
) -> dict[str, Any]:
    if not settings.stripe_secret_key:
        raise BillingError("Stripe secret key is not configured")
    url = f"{settings.stripe_api_base.rstrip('/')}{path}"
    headers = {"Authorization": f"Bearer {settings.stripe_secret_key}"}
    try:
        async with httpx.AsyncClient() as client:
            if method == "GET":
                resp = await client.get(url, headers=headers, timeout=10)
            else:
                resp = await client.post(
                    url,
                    data=encode_form(data or {}),
                    headers=headers,
                    timeout=10,
                )
            resp.raise_for_status()
            return resp.json()
    except httpx.HTTPStatusError as exc:
        logger.error("Stripe %s %s failed: %s", method, path, exc.response.text)
        status = exc.response.status_code
        raise BillingError(
            f"Stripe request failed ({status})",
            status_code=status,
            code=_error_code(exc.response),
        ) from exc
    except httpx.HTTPError as exc:
        logger.error("Stripe %s %s failed: %s", method, path, exc)
        raise BillingError("Stripe request failed") from exc
    except ValueError as exc:
        logger.error("Stripe response parsing failed: %s", exc)
        raise BillingError("Malformed Stripe response") from exc


async def report_session_usage(customer_id: str, identifier: str) -> dict[str, Any]:
    """Send one billing meter event for a help session.

    ``identifier`` is the help session id; Stripe de-duplicates meter events by
    identifier so a retried report never double-charges.
    """
    return await _request(
        "POST",
        "/v1/billing/meter_events",
        {
            "event_name": settings.stripe_meter_event_name,
            "identifier": identifier,
            "timestamp": int(time.time()),
            "payload": {"stripe_customer_id": customer_id, "value": 1},
        },
    )


async def retrieve_price(price_id: str) -> dict[str, Any]:
    return await _request("GET", f"/v1/prices/{price_id}")


async def retrieve_subscription(subscription_id: str) -> dict[str, Any]:
    return await _request("GET", f"/v1/subscriptions/{subscription_id}")


async def cancel_subscription(subscription_id: str) -> dict[str, Any]:
    return await _request("POST", f"/v1/subscriptions/{subscription_id}/cancel")


async def cancel_subscription_at_period_end(subscription_id: str) -> dict[str, Any]:
    return await _request(
        "POST",
        f"/v1/subscriptions/{subscription_id}",
        {"cancel_at_period_end": True},
    )


async def create_customer(
    *, user_id: str, email: str | None, name: str | None, phone: str | None
) -> dict[str, Any]:
    return await _request(
        "POST",
        "/v1/customers",
        {
            "email": email,
            "name": name,
            "phone": phone,
            "metadata": {"userId": user_id},
        },
    )


async def create_checkout_session(
    *,
    customer_id: str,
    user_id: str,
    plan_type: str,
    price: dict[str, Any],
) -> dict[str, Any]:
    is_metered = (price.get("recurring") or {}).get("usage_type") == "metered"
    mode = "subscription"
    if "paygo" in plan_type and price.get("type") == "one_time":
        mode = "payment"
    line_item: dict[str, Any] = {"price": price["id"]}
    if not is_metered:
        line_item["quantity"] = 1
    base = settings.app_base_url.rstrip("/")
    return await _request(
        "POST",
        "/v1/checkout/sessions",
        {
            "customer": customer_id,
            "payment_method_types": ["card"],
            "line_items": [line_item],
            "mode": mode,
            "success_url": f"{base}/app/dashboard?success=true",
            "cancel_url": f"{base}/app/plans?canceled=true",
            "metadata": {"userId": user_id, "planType": plan_type},
        },
    )


async def preview_upcoming_invoice(
    customer_id: str, subscription_id: str
) -> dict[str, Any] | None:
    """Preview the next invoice of a subscription.

    Returns ``None`` when Stripe has nothing to bill (no upcoming invoice,
    unknown customer or subscription).
    """
    try:
        return await _request(
            "POST",
            "/v1/invoices/create_preview",
            {"customer": customer_id, "subscription": subscription_id},
        )
    except BillingError as exc:
        if exc.code in NO_INVOICE_CODES:
            logger.info("No upcoming invoice for customer %s", customer_id)
            return None
        raise


def _cents(value: Any) -> float:
    return int(value or 0) / 100


def _ts_or_none(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def summarize_invoice(invoice: dict[str, Any] | None) -> dict[str, Any]:
    """Reduce a Stripe invoice to amount due, line items and next attempt."""
    if not invoice:
        return {
            "invoice_id": None,
            "amount_due": 0.0,
            "currency": "USD",
            "next_payment_attempt": None,
            "line_items": [],
        }
    lines = []
    for line in (invoice.get("lines") or {}).get("data") or []:
        period = line.get("period") or {}
        lines.append(
            {
                "description": line.get("description"),
                "amount": _cents(line.get("amount")),
                "quantity": line.get("quantity"),
                "period_start": _ts_or_none(period.get("start")),
                "period_end": _ts_or_none(period.get("end")),
            }
        )
    return {
        "invoice_id": invoice.get("id"),
        "amount_due": _cents(invoice.get("amount_due")),
        "currency": (invoice.get("currency") or "usd").upper(),
        "next_payment_attempt": _ts_or_none(invoice.get("next_payment_attempt")),
        "line_items": lines,
    }


def subscription_period(subscription: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    """Billing period from the first subscription item (falls back to the top level)."""
    items = ((subscription.get("items") or {}).get("data")) or []
    source = items[0] if items else subscription
    start = source.get("current_period_start") or subscription.get("current_period_start")
    end = source.get("current_period_end") or subscription.get("current_period_end")
    return _ts_or_none(start), _ts_or_none(end)


def first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = ((subscription.get("items") or {}).get("data")) or []
    return items[0] if items else {}


__all__ = [
    "PLAN_TYPES",
    "BillingError",
    "price_for_plan",
    "plan_for_price",
    "encode_form",
    "report_session_usage",
    "retrieve_price",
    "retrieve_subscription",
    "cancel_subscription",
    "cancel_subscription_at_period_end",
    "create_customer",
    "create_checkout_session",
    "preview_upcoming_invoice",
    "summarize_invoice",
    "subscription_period",
    "first_item",
]
