from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel

from app import db as db_module
from app.config import Settings
from app.dependencies import ErrorResponse, http_error, rate_limit
from app.metrics import webhook_forbidden_total
from app.models import ErrorCode
from app.services import billing
from app.services.hmac import verify_stripe_signature
from app.services.subscriptions import (
    apply_checkout_completed,
    apply_subscription_deleted,
    apply_subscription_updated,
    clear_user_subscription,
    set_subscription_status,
)
from app.services.users import get_or_create_user

logger = logging.getLogger(__name__)
settings = Settings()

router = APIRouter()


class CheckoutRequest(BaseModel):
    plan_type: str


class CheckoutResponse(BaseModel):
    success: bool = True
    url: str | None = None
    message: str | None = None


class SubscriptionOut(BaseModel):
    id: str
    status: str
    plan_type: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool


class InvoiceLineOut(BaseModel):
    description: str | None = None
    amount: float
    quantity: int | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None


class UpcomingInvoiceOut(BaseModel):
    invoice_id: str | None = None
    amount_due: float
    currency: str
    next_payment_attempt: datetime | None = None
    line_items: list[InvoiceLineOut]


class WebhookAck(BaseModel):
    received: bool = True


def _billing_unavailable(exc: Exception):
    return http_error(502, ErrorCode.SERVICE_UNAVAILABLE, "Billing provider unavailable")


async def _cancel_current(subscription_id: str) -> None:
    try:
        await billing.cancel_subscription(subscription_id)
    except billing.BillingError as exc:
        logger.error("Error canceling subscription %s: %s", subscription_id, exc)


@router.post(
    "/createCheckoutSession",
    response_model=CheckoutResponse,
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def create_checkout_session(
    body: CheckoutRequest, user_id: str = Depends(rate_limit)
):
    plan_type = body.plan_type.strip()

    def _load_user():
        with db_module.SessionLocal() as db:
            user = get_or_create_user(db, user_id)
            db.commit()
            return user

    user = await asyncio.to_thread(_load_user)

    if plan_type == "free":
        if not user.stripe_subscription_id:
            raise http_error(400, ErrorCode.BAD_REQUEST, "No active subscription to cancel")
        try:
            await billing.cancel_subscription_at_period_end(user.stripe_subscription_id)
        except billing.BillingError as exc:
            raise _billing_unavailable(exc) from exc
        logger.info("Downgrade scheduled", extra={"user_id": user_id})
        return CheckoutResponse(
            message="Subscription will be canceled at the end of the current period",
            url=f"{settings.app_base_url.rstrip('/')}/app/plans?downgraded=true",
        )

    price_id = billing.price_for_plan(plan_type)
    if price_id is None:
        raise http_error(400, ErrorCode.BAD_REQUEST, "Invalid plan type")

    is_paygo = plan_type in ("paygo", "priority-paygo")
    if user.stripe_subscription_id:
        await _cancel_current(user.stripe_subscription_id)

    def _clear():
        with db_module.SessionLocal() as db:
            current = get_or_create_user(db, user_id)
            clear_user_subscription(db, current, clear_usage=not is_paygo)
            db.commit()

    if user.stripe_subscription_id or not is_paygo:
        await asyncio.to_thread(_clear)

    try:
        customer_id = user.stripe_customer_id
        if not customer_id:
            customer = await billing.create_customer(
                user_id=user_id, email=user.email, name=user.name, phone=user.phone
            )
            customer_id = customer["id"]

            def _save_customer():
                with db_module.SessionLocal() as db:
                    current = get_or_create_user(db, user_id)
                    current.stripe_customer_id = customer_id
                    db.commit()

            await asyncio.to_thread(_save_customer)

        price = await billing.retrieve_price(price_id)
        checkout = await billing.create_checkout_session(
            customer_id=customer_id,
            user_id=user_id,
            plan_type=plan_type,
            price=price,
        )
    except (billing.BillingError, KeyError) as exc:
        raise _billing_unavailable(exc) from exc

    logger.info("Checkout session created", extra={"user_id": user_id})
    return CheckoutResponse(url=checkout.get("url"))


@router.get(
    "/getSubscription",
    response_model=SubscriptionOut,
    responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def get_subscription(user_id: str = Depends(rate_limit)):
    def _db_call() -> str | None:
        with db_module.SessionLocal() as db:
            user = get_or_create_user(db, user_id)
            db.commit()
            return user.stripe_subscription_id

    subscription_id = await asyncio.to_thread(_db_call)
    if not subscription_id:
        raise http_error(404, ErrorCode.NOT_FOUND, "No active subscription")
    try:
        subscription = await billing.retrieve_subscription(subscription_id)
    except billing.BillingError as exc:
        raise _billing_unavailable(exc) from exc

    item = billing.first_item(subscription)
    start, end = billing.subscription_period(subscription)
    return SubscriptionOut(
        id=subscription.get("id", subscription_id),
        status=subscription.get("status", "unknown"),
        plan_type=billing.plan_for_price((item.get("price") or {}).get("id")),
        current_period_start=start,
        current_period_end=end,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
    )


@router.get(
    "/getUpcomingInvoice",
    response_model=UpcomingInvoiceOut,
    responses={502: {"model": ErrorResponse}},
)
async def get_upcoming_invoice(user_id: str = Depends(rate_limit)):
    def _db_call() -> tuple[str | None, str | None]:
        with db_module.SessionLocal() as db:
            user = get_or_create_user(db, user_id)
            db.commit()
            return user.stripe_customer_id, user.stripe_subscription_id

    customer_id, subscription_id = await asyncio.to_thread(_db_call)
    invoice = None
    if customer_id and subscription_id:
        try:
            invoice = await billing.preview_upcoming_invoice(customer_id, subscription_id)
        except billing.BillingError as exc:
            raise _billing_unavailable(exc) from exc
    return UpcomingInvoiceOut(**billing.summarize_invoice(invoice))


@router.post(
    "/stripe/webhook",
    response_model=WebhookAck,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
):
    body = await request.body()
    if not verify_stripe_signature(
        stripe_signature or "",
        body,
        settings.stripe_webhook_secret,
        settings.stripe_webhook_tolerance_s,
    ):
        webhook_forbidden_total.inc()
        logger.warning("audit: invalid stripe webhook signature")
        raise http_error(403, ErrorCode.FORBIDDEN, "Invalid webhook signature")

    try:
        event = json.loads(body)
    except json.JSONDecodeError as err:
        logger.exception("failed to parse webhook body as JSON")
        raise http_error(400, ErrorCode.BAD_REQUEST, "Invalid JSON") from err
    if not isinstance(event, dict):
        logger.warning("audit: non-object webhook payload")
        raise http_error(400, ErrorCode.BAD_REQUEST, "Invalid webhook payload")

    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    logger.info("Stripe event received", extra={"event_type": event_type})

    if event_type == "checkout.session.completed":
        subscription = None
        if obj.get("mode") == "subscription" and obj.get("subscription"):
            try:
                subscription = await billing.retrieve_subscription(obj["subscription"])
            except billing.BillingError as exc:
                logger.error("Could not load subscription for checkout: %s", exc)

        def _apply():
            with db_module.SessionLocal() as db:
                if apply_checkout_completed(db, obj, subscription):
                    db.commit()

    elif event_type in (
        "customer.subscription.created",
        "customer.subscription.updated",
    ):
        def _apply():
            with db_module.SessionLocal() as db:
                if apply_subscription_updated(db, obj):
                    db.commit()

    elif event_type == "customer.subscription.deleted":
        def _apply():
            with db_module.SessionLocal() as db:
                apply_subscription_deleted(db, obj.get("id") or "")
                db.commit()

    elif event_type in ("invoice.payment_succeeded", "invoice.payment_failed"):
        status = "active" if event_type == "invoice.payment_succeeded" else "past_due"

        def _apply():
            subscription_id = obj.get("subscription")
            if not subscription_id:
                return
            with db_module.SessionLocal() as db:
                if set_subscription_status(db, subscription_id, status):
                    db.commit()

    else:
        logger.info("Unhandled Stripe event", extra={"event_type": event_type})
        return WebhookAck()

    await asyncio.to_thread(_apply)
    return WebhookAck()
