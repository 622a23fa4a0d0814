from __future__ import annotations

import logging
from typing import Optional

import telnyx

from config import settings
from echovault.types.condition_contract import Message
from echovault.types.errors import TransientDeliveryError
from echovault.utils.urls import map_url

_LOGGER = logging.getLogger(__name__)

FROM_NUM = settings.TELNYX_WHATSAPP_NUMBER
TELNYX_API_KEY = settings.TELNYX_API_KEY
if TELNYX_API_KEY:
    telnyx.api_key = TELNYX_API_KEY


def send_whatsapp(to: str, text: str) -> None:
    if not TELNYX_API_KEY or not FROM_NUM:
        _LOGGER.info("[WHATSAPP] DEV mode: would send to %s: %s", to, text)
        return
    try:
        telnyx.Message.create(from_=FROM_NUM, to=to, text=text, type="WhatsApp")
    except telnyx.error.TelnyxError as exc:
        raise TransientDeliveryError("whatsapp", str(exc)) from exc


def build_whatsapp_text(
    message: Message,
    sender_name: str,
    is_emergency: bool,
    access_url: Optional[str] = None,
) -> str:
    if is_emergency:
        text = f"⚠️ EMERGENCY ALERT: {message.title}\n\n{message.content or ''}"
        if message.location is not None:
            loc = message.location
            label = loc.name or f"{loc.latitude}, {loc.longitude}"
            text += f"\n\n📍 {label}\n{map_url(loc.latitude, loc.longitude)}"
        return text + "\n\nCheck your email for more information."

    text = f"🔔 {sender_name} has sent you a secure message: {message.title}"
    if access_url:
        text += f"\n\nOpen it here: {access_url}"
    return text
