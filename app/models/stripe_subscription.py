from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, String

from app.models.base import Base


class StripeSubscription(Base):
    __tablename__ = "stripe_subscriptions"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    stripe_subscription_id = Column(String(255), nullable=False, unique=True)
    stripe_customer_id = Column(String(255))
    status = Column(String(32), nullable=False)
    plan_type = Column(String(32), nullable=False)
    price_id = Column(String(255))
    current_period_start = Column(DateTime(timezone=True))
    current_period_end = Column(DateTime(timezone=True))
    cancel_at_period_end = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
