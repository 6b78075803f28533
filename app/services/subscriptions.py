"""Apply Stripe webhook events to users and subscription rows."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy.orm import Session

from app.models import StripeSubscription, User
from app.services.billing import first_item, subscription_period

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_subscription_row(db: Session, subscription_id: str) -> StripeSubscription | None:
    return (
        db.query(StripeSubscription)
        .filter(StripeSubscription.stripe_subscription_id == subscription_id)
        .first()
    )


def apply_checkout_completed(
    db: Session,
    checkout: dict[str, Any],
    subscription: dict[str, Any] | None = None,
) -> bool:
    """Store Stripe ids from a completed checkout.

    ``subscription`` is the retrieved subscription object for subscription
    mode checkouts. Returns ``False`` when the checkout carries no user.
    """
    metadata = checkout.get("metadata") or {}
    user_id = metadata.get("userId")
    plan_type = metadata.get("planType")
    if not user_id or not plan_type:
        logger.error("Missing metadata in checkout session %s", checkout.get("id"))
        return False

    user = db.get(User, user_id)
    if user is None:
        logger.error("Checkout for unknown user", extra={"user_id": user_id})
        return False

    user.stripe_customer_id = checkout.get("customer")
    user.plan_type = plan_type
    mode = checkout.get("mode")
    subscription_id = checkout.get("subscription")

    if mode == "subscription" and subscription_id:
        user.stripe_subscription_id = subscription_id
        item = first_item(subscription or {})
        if "paygo" in plan_type:
            # si_... item id for metered plans
            user.stripe_usage_id = item.get("id")
        start, end = subscription_period(subscription or {})
        row = get_subscription_row(db, subscription_id)
        if row is None:
            row = StripeSubscription(
                id=str(uuid4()),
                user_id=user_id,
                stripe_subscription_id=subscription_id,
                created_at=_now(),
            )
            db.add(row)
        row.stripe_customer_id = checkout.get("customer")
        row.status = (subscription or {}).get("status") or "active"
        row.plan_type = plan_type
        row.price_id = (item.get("price") or {}).get("id")
        row.current_period_start = start
        row.current_period_end = end
        row.cancel_at_period_end = bool(
            (subscription or {}).get("cancel_at_period_end")
        )
        row.updated_at = _now()
    elif mode == "payment":
        user.stripe_usage_id = checkout.get("payment_intent")
    return True


def apply_subscription_updated(db: Session, subscription: dict[str, Any]) -> bool:
    row = get_subscription_row(db, subscription.get("id") or "")
    if row is None:
        return False
    start, end = subscription_period(subscription)
    row.status = subscription.get("status") or row.status
    row.current_period_start = start or row.current_period_start
    row.current_period_end = end or row.current_period_end
    row.cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))
    row.updated_at = _now()
    return True


def apply_subscription_deleted(db: Session, subscription_id: str) -> int:
    """Clear the subscription from its users and drop the local row."""
    users = (
        db.query(User).filter(User.stripe_subscription_id == subscription_id).all()
    )
    for user in users:
        user.stripe_subscription_id = None
        user.stripe_usage_id = None
    db.query(StripeSubscription).filter(
        StripeSubscription.stripe_subscription_id == subscription_id
    ).delete(synchronize_session=False)
    return len(users)


def set_subscription_status(db: Session, subscription_id: str, status: str) -> bool:
    row = get_subscription_row(db, subscription_id)
    if row is None:
        return False
    row.status = status
    row.updated_at = _now()
    return True


def clear_user_subscription(db: Session, user: User, *, clear_usage: bool) -> None:
    """Forget the current subscription after it was canceled in Stripe."""
    if user.stripe_subscription_id:
        db.query(StripeSubscription).filter(
            StripeSubscription.stripe_subscription_id == user.stripe_subscription_id
        ).delete(synchronize_session=False)
    user.stripe_subscription_id = None
    if clear_usage:
        user.stripe_usage_id = None


__all__ = [
    "get_subscription_row",
    "apply_checkout_completed",
    "apply_subscription_updated",
    "apply_subscription_deleted",
    "set_subscription_status",
    "clear_user_subscription",
]
