from __future__ import annotations

import logging

import httpx

from app.config import Settings
from app.metrics import sms_fail_total

logger = logging.getLogger(__name__)
settings = Settings()

SMS_PREVIEW_CHARS = 120


async def send_sms(to: str, body: str) -> bool:
    """Send an SMS through the Twilio Messages API. Never raises."""
    sid = settings.twilio_account_sid
    token = settings.twilio_auth_token
    sender = settings.twilio_from_number
    if not (sid and token and sender):
        logger.warning("Twilio credentials missing, skip SMS")
        return False
    url = (
        f"{settings.twilio_api_base.rstrip('/')}"
        f"/2010-04-01/Accounts/{sid}/Messages.json"
    )
    payload = {"To": to, "From": sender, "Body": body}
    try:
        async with httpx.AsyncClient() as client:
            resp = await client.post(url, data=payload, auth=(sid, token), timeout=10)
        if resp.status_code >= 400:
            logger.warning("Twilio send failed: %s", resp.text)
            sms_fail_total.inc()
            return False
        return True
    except httpx.HTTPError as exc:
        logger.warning("Twilio send failed: %s", exc)
        sms_fail_total.inc()
        return False


def _preview(text: str) -> str:
    text = " ".join((text or "").split())
    if len(text) <= SMS_PREVIEW_CHARS:
        return text
    return text[: SMS_PREVIEW_CHARS - 3] + "..."


async def notify_support_new_message(
    *,
    user_name: str | None,
    help_session_id: str,
    content: str,
    is_new_session: bool,
    has_image: bool = False,
) -> bool:
    """Tell support staff that a user wrote. Best effort."""
    to = settings.support_phone_number
    if not to:
        logger.warning("Support phone number missing, skip SMS")
        return False
    who = user_name or "A user"
    head = "New help session" if is_new_session else "New message"
    body = f"{head} from {who}: {_preview(content)}"
    if has_image:
        body = f"{body} [image]"
    body = f"{body}\nSession: {help_session_id}"
    return await send_sms(to, body)


__all__ = ["send_sms", "notify_support_new_message"]
