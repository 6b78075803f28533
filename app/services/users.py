from __future__ import annotations

import re
from typing import Any, Iterable

from sqlalchemy.orm import Session

from app.models import TechUsage, User

_PHONE_RE = re.compile(r"^\+?[0-9 ()\-]{7,20}$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

PREFERENCE_FIELDS = (
    "description",
    "age",
    "accessibility_needs",
    "preferred_contact_method",
    "experience_level",
)


def get_or_create_user(db: Session, user_id: str) -> User:
    """Return the user row, inserting a bare one on first contact."""
    user = db.get(User, user_id)
    if user is None:
        user = User(id=user_id, sms_consent=False)
        db.add(user)
        db.flush()
    return user


def normalize_phone(phone: str) -> str | None:
    phone = (phone or "").strip()
    if not _PHONE_RE.match(phone):
        return None
    digits = re.sub(r"[^0-9]", "", phone)
    return f"+{digits}" if phone.startswith("+") else digits


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email or ""))


def email_taken(db: Session, email: str, *, user_id: str) -> bool:
    """True when another user already registered ``email``."""
    owner = db.query(User.id).filter(User.email == email).first()
    return owner is not None and owner[0] != user_id


def save_onboarding(
    db: Session,
    user: User,
    *,
    name: str,
    phone: str,
    sms_consent: bool,
) -> User:
    user.name = name
    user.phone = phone
    user.sms_consent = sms_consent
    return user


def update_profile(user: User, changes: dict[str, Any]) -> User:
    """Copy already validated profile fields onto the user."""
    for field, value in changes.items():
        setattr(user, field, value)
    return user


def save_preferences(
    db: Session,
    user: User,
    preferences: dict[str, Any],
    *,
    email_list: bool | None = None,
    tech_usages: Iterable[dict[str, Any]] = (),
) -> User:
    """Store onboarding preferences.

    Empty values leave the stored field alone. A non-empty device list
    replaces the previous one.
    """
    for field in PREFERENCE_FIELDS:
        value = preferences.get(field)
        if value:
            setattr(user, field, value)
    if email_list is not None:
        user.email_list = email_list

    items = list(tech_usages)
    if items:
        db.query(TechUsage).filter(TechUsage.user_id == user.id).delete(
            synchronize_session=False
        )
        for item in items:
            db.add(TechUsage(user_id=user.id, **item))
    return user


def list_tech_usages(db: Session, user_id: str) -> list[TechUsage]:
    return (
        db.query(TechUsage)
        .filter(TechUsage.user_id == user_id)
        .order_by(TechUsage.created_at)
        .all()
    )


__all__ = [
    "PREFERENCE_FIELDS",
    "get_or_create_user",
    "normalize_phone",
    "is_valid_email",
    "email_taken",
    "save_onboarding",
    "update_profile",
    "save_preferences",
    "list_tech_usages",
]
