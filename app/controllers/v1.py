from fastapi import APIRouter

from . import admin, billing, chat, uploads, users

router = APIRouter(prefix="/v1")
router.include_router(chat.router)
router.include_router(admin.router)
router.include_router(uploads.router)
# checkout, subscription lookup and the Stripe webhook
router.include_router(billing.router)
router.include_router(users.router)
