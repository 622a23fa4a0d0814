from __future__ import annotations

from typing import Optional
from urllib.parse import quote, urlencode

from config import settings


def _base_url(domain: Optional[str] = None) -> str:
    domain = (domain or settings.APP_DOMAIN).rstrip("/")
    if domain.startswith(("http://", "https://")):
        return domain
    return f"https://{domain}"


def generate_access_url(
    message_id: str,
    recipient_email: str,
    delivery_id: str,
    domain: Optional[str] = None,
) -> str:
    """Public viewer link sent to a recipient."""
    query = urlencode({"delivery": delivery_id, "recipient": recipient_email})
    return f"{_base_url(domain)}/access/message/{quote(message_id, safe='')}?{query}"


def map_url(latitude: float, longitude: float) -> str:
    return f"https://maps.google.com/?q={latitude},{longitude}"
