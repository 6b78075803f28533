"""Plan classification and chat allowance.

Billing tiers are not stored as an enum; they are derived from the raw Stripe
fields on the user row:
- subscription id + usage id -> pay-as-you-go (metered)
- subscription id only -> monthly/yearly (unlimited)
- usage id only -> pay-as-you-go (metered)
- nothing -> customer (onboarded) or free
"""
from __future__ import annotations

from enum import Enum
from typing import NamedTuple

from app.config import Settings

settings = Settings()

UNLIMITED = -1


class PlanType(str, Enum):
    FREE = "free"
    CUSTOMER = "customer"
    MONTHLY_OR_YEARLY = "monthly_or_yearly"
    PAYGO = "paygo"
    PRIORITY_PAYGO = "priority_paygo"


METERED_PLANS = frozenset({PlanType.PAYGO, PlanType.PRIORITY_PAYGO})


class BillingState(NamedTuple):
    """Raw billing fields the policy reads."""
    subscription_id: str | None = None
    usage_id: str | None = None
    phone: str | None = None
    sms_consent: bool = False
    plan_type: str | None = None

    @classmethod
    def from_user(cls, user) -> "BillingState":
        return cls(
            subscription_id=user.stripe_subscription_id,
            usage_id=user.stripe_usage_id,
            phone=user.phone,
            sms_consent=bool(user.sms_consent),
            plan_type=user.plan_type,
        )


class UsageDecision(NamedTuple):
    plan: PlanType
    can_chat: bool
    remaining_chats: int
    error_message: str
    upgrade_required: bool
    is_payg_warning: bool

    def as_dict(self) -> dict:
        data = self._asdict()
        data["plan"] = self.plan.value
        return data


def has_real_phone(phone: str | None) -> bool:
    """Placeholder numbers such as ``0000000000`` do not count."""
    digits = [ch for ch in (phone or "") if ch.isdigit()]
    return any(ch != "0" for ch in digits)


def onboarding_complete(state: BillingState) -> bool:
    return has_real_phone(state.phone) and state.sms_consent


def _paygo_variant(state: BillingState) -> PlanType:
    if (state.plan_type or "").replace("_", "-") == "priority-paygo":
        return PlanType.PRIORITY_PAYGO
    return PlanType.PAYGO


def classify_plan(state: BillingState) -> PlanType:
    # Order matters: a usage id always wins over the unlimited subscription path.
    if state.subscription_id and state.usage_id:
        return _paygo_variant(state)
    if state.subscription_id:
        return PlanType.MONTHLY_OR_YEARLY
    if state.usage_id:
        return _paygo_variant(state)
    if onboarding_complete(state):
        return PlanType.CUSTOMER
    return PlanType.FREE


def evaluate_usage(
    state: BillingState,
    total_sessions: int,
    free_limit: int | None = None,
) -> UsageDecision:
    """Map billing state and historical session count to a chat decision."""
    limit = settings.free_chat_limit if free_limit is None else free_limit
    plan = classify_plan(state)
    used = max(0, total_sessions)

    if plan is PlanType.MONTHLY_OR_YEARLY:
        return UsageDecision(
            plan=plan,
            can_chat=True,
            remaining_chats=UNLIMITED,
            error_message="",
            upgrade_required=False,
            is_payg_warning=False,
        )

    remaining = max(0, limit - used)

    if plan in METERED_PLANS:
        warning = remaining == 0
        return UsageDecision(
            plan=plan,
            can_chat=True,
            remaining_chats=remaining,
            error_message=(
                "You have used your free chats. "
                "New sessions will be billed to your pay-as-you-go plan."
                if warning
                else ""
            ),
            upgrade_required=False,
            is_payg_warning=warning,
        )

    can_chat = used < limit
    return UsageDecision(
        plan=plan,
        can_chat=can_chat,
        remaining_chats=remaining,
        error_message=(
            ""
            if can_chat
            else f"You have used all {limit} free chats. Upgrade your plan to keep chatting."
        ),
        upgrade_required=not can_chat,
        is_payg_warning=False,
    )


def should_report_usage(
    decision: UsageDecision, *, is_new_session: bool
) -> bool:
    """Metered charge applies once per new session after the free allowance."""
    return (
        is_new_session
        and decision.plan in METERED_PLANS
        and decision.remaining_chats == 0
    )


__all__ = [
    "UNLIMITED",
    "PlanType",
    "METERED_PLANS",
    "BillingState",
    "UsageDecision",
    "has_real_phone",
    "onboarding_complete",
    "classify_plan",
    "evaluate_usage",
    "should_report_usage",
]
