from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from app.models.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), unique=True)
    name = Column(String(255))
    phone = Column(String(32))
    sms_consent = Column(Boolean, default=False, nullable=False)
    stripe_customer_id = Column(String(255), index=True)
    stripe_subscription_id = Column(String(255))
    # subscription item id (si_...) or payment intent used for metered billing
    stripe_usage_id = Column(String(255))
    plan_type = Column(String(32))
    # optional onboarding preferences
    description = Column(Text)
    age = Column(Integer)
    accessibility_needs = Column(Text)
    preferred_contact_method = Column(String(32))
    experience_level = Column(String(32))
    email_list = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


__all__ = ["User"]
