import asyncio
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import IntegrityError

from app import db as db_module
from app.dependencies import ErrorResponse, http_error, rate_limit
from app.models import ErrorCode
from app.services.usage_policy import BillingState, classify_plan, onboarding_complete
from app.services.users import (
    email_taken,
    get_or_create_user,
    is_valid_email,
    list_tech_usages,
    normalize_phone,
    save_onboarding,
    save_preferences,
    update_profile,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class OnboardingStep1Request(BaseModel):
    name: str = ""
    phone: str = ""
    sms_consent: bool = False


class TechUsageIn(BaseModel):
    device_type: str = Field(..., min_length=1, max_length=64)
    device_name: str | None = Field(None, max_length=255)
    skill_level: str | None = Field(None, max_length=32)
    usage_frequency: str | None = Field(None, max_length=32)
    notes: str | None = None


class TechUsageOut(TechUsageIn):
    model_config = ConfigDict(from_attributes=True)

    id: str


class PreferencesRequest(BaseModel):
    description: str | None = None
    age: int | None = Field(None, ge=0, le=130)
    accessibility_needs: str | None = None
    preferred_contact_method: str | None = Field(None, max_length=32)
    experience_level: str | None = Field(None, max_length=32)
    email_list: bool | None = None
    tech_usage_items: list[TechUsageIn] = Field(default_factory=list)


class UpdateUserRequest(BaseModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    description: str | None = None
    age: int | None = Field(None, ge=0, le=130)
    accessibility_needs: str | None = None
    preferred_contact_method: str | None = Field(None, max_length=32)
    experience_level: str | None = Field(None, max_length=32)


class UserProfile(BaseModel):
    id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    sms_consent: bool
    plan: str
    plan_type: str | None = None
    onboarding_complete: bool
    description: str | None = None
    age: int | None = None
    accessibility_needs: str | None = None
    preferred_contact_method: str | None = None
    experience_level: str | None = None
    email_list: bool = False
    tech_usages: list[TechUsageOut] = Field(default_factory=list)


def _profile(db, user) -> UserProfile:
    state = BillingState.from_user(user)
    return UserProfile(
        id=user.id,
        name=user.name,
        email=user.email,
        phone=user.phone,
        sms_consent=bool(user.sms_consent),
        plan=classify_plan(state).value,
        plan_type=user.plan_type,
        onboarding_complete=onboarding_complete(state),
        description=user.description,
        age=user.age,
        accessibility_needs=user.accessibility_needs,
        preferred_contact_method=user.preferred_contact_method,
        experience_level=user.experience_level,
        email_list=bool(user.email_list),
        tech_usages=[
            TechUsageOut.model_validate(t) for t in list_tech_usages(db, user.id)
        ],
    )


@router.post(
    "/onboarding/step1",
    response_model=UserProfile,
    responses={400: {"model": ErrorResponse}},
)
async def onboarding_step1(
    body: OnboardingStep1Request, user_id: str = Depends(rate_limit)
):
    name = body.name.strip()
    if not name or not body.phone.strip():
        raise http_error(400, ErrorCode.BAD_REQUEST, "Name and phone are required.")
    phone = normalize_phone(body.phone)
    if phone is None:
        raise http_error(400, ErrorCode.BAD_REQUEST, "Invalid phone number")

    def _db_call() -> UserProfile:
        with db_module.SessionLocal() as db:
            user = get_or_create_user(db, user_id)
            save_onboarding(
                db, user, name=name, phone=phone, sms_consent=body.sms_consent
            )
            db.commit()
            return _profile(db, user)

    profile = await asyncio.to_thread(_db_call)
    logger.info("Onboarding step 1 saved", extra={"user_id": user_id})
    return profile


@router.post("/onboarding/preferences", response_model=UserProfile)
async def onboarding_preferences(
    body: PreferencesRequest, user_id: str = Depends(rate_limit)
):
    preferences = body.model_dump(exclude={"email_list", "tech_usage_items"})
    items = [item.model_dump() for item in body.tech_usage_items]

    def _db_call() -> UserProfile:
        with db_module.SessionLocal() as db:
            user = get_or_create_user(db, user_id)
            save_preferences(
                db, user, preferences, email_list=body.email_list, tech_usages=items
            )
            db.commit()
            return _profile(db, user)

    profile = await asyncio.to_thread(_db_call)
    logger.info("Onboarding preferences saved", extra={"user_id": user_id})
    return profile


@router.post(
    "/updateUser",
    response_model=UserProfile,
    responses={400: {"model": ErrorResponse}},
)
async def update_user(body: UpdateUserRequest, user_id: str = Depends(rate_limit)):
    changes = body.model_dump(exclude_unset=True)
    if "name" in changes:
        changes["name"] = (changes["name"] or "").strip()
        if not changes["name"]:
            raise http_error(400, ErrorCode.BAD_REQUEST, "Name cannot be empty")
    if "email" in changes:
        changes["email"] = (changes["email"] or "").strip().lower()
        if not is_valid_email(changes["email"]):
            raise http_error(400, ErrorCode.BAD_REQUEST, "Invalid email format")
    if "phone" in changes:
        phone = normalize_phone(changes["phone"] or "")
        if phone is None:
            raise http_error(400, ErrorCode.BAD_REQUEST, "Invalid phone number")
        changes["phone"] = phone

    def _db_call() -> UserProfile:
        with db_module.SessionLocal() as db:
            if "email" in changes and email_taken(db, changes["email"], user_id=user_id):
                raise http_error(400, ErrorCode.BAD_REQUEST, "Email already in use")
            user = get_or_create_user(db, user_id)
            update_profile(user, changes)
            try:
                db.commit()
            except IntegrityError as exc:
                # concurrent registration of the same address
                db.rollback()
                raise http_error(
                    400, ErrorCode.BAD_REQUEST, "Email already in use"
                ) from exc
            return _profile(db, user)

    profile = await asyncio.to_thread(_db_call)
    logger.info("User profile updated", extra={"user_id": user_id})
    return profile


@router.get("/users/me", response_model=UserProfile)
async def get_me(user_id: str = Depends(rate_limit)):
    def _db_call() -> UserProfile:
        with db_module.SessionLocal() as db:
            user = get_or_create_user(db, user_id)
            db.commit()
            return _profile(db, user)

    return await asyncio.to_thread(_db_call)
