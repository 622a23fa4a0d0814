"""
Outbound email through the Resend HTTP API.

Without `RESEND_API_KEY` the transport runs in DEV mode and only logs.
Provider failures worth retrying raise `TransientDeliveryError`; the dispatch
pipeline owns the retry policy, so nothing here sleeps or loops.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

import requests

from config import settings
from echovault.types.errors import TransientDeliveryError
from echovault.utils.time_math import format_duration

_LOGGER = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
_RETRYABLE_STATUS = (408, 425, 429, 500, 502, 503, 504)

EMERGENCY_HEADERS = {
    "X-Priority": "1",
    "X-MSMail-Priority": "High",
    "Importance": "high",
}


@dataclass
class OutgoingEmail:
    to: str
    subject: str
    html: str
    text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)


def send_email(email: OutgoingEmail) -> Optional[str]:
    """Send one email; returns the provider id (None in DEV mode)."""
    if not settings.RESEND_API_KEY:
        _LOGGER.info("[EMAIL] DEV mode: would send to %s: %s", email.to, email.subject)
        return None

    payload = {
        "from": settings.EMAIL_FROM,
        "to": [email.to],
        "subject": email.subject,
        "html": email.html,
    }
    if email.text:
        payload["text"] = email.text
    if email.headers:
        payload["headers"] = email.headers

    try:
        response = requests.post(
            RESEND_URL,
            headers={
                "Authorization": f"Bearer {settings.RESEND_API_KEY}",
                "Content-Type": "application/json",
            },
            json=payload,
            timeout=settings.EMAIL_TIMEOUT,
        )
    except requests.RequestException as exc:
        raise TransientDeliveryError("email", str(exc)) from exc

    if response.status_code in _RETRYABLE_STATUS or response.status_code >= 500:
        raise TransientDeliveryError("email", f"HTTP {response.status_code}")
    if response.status_code >= 400:
        # Bad address / rejected payload; retrying will not help.
        raise RuntimeError(f"Resend error: {response.status_code} {response.text}")
    return response.json().get("id")


# ──────────────────────────────
# Templates
# ──────────────────────────────


def notification_subject(sender_name: str, title: str, is_emergency: bool) -> str:
    prefix = "⚠️ EMERGENCY: " if is_emergency else ""
    return f'{prefix}{sender_name} has sent you a secure message: "{title}"'


def build_notification_email(
    *,
    to: str,
    recipient_name: Optional[str],
    sender_name: str,
    title: str,
    access_url: str,
    is_emergency: bool = False,
    has_pin: bool = False,
    unlock_delay_hours: int = 0,
    expiry_hours: int = 0,
) -> OutgoingEmail:
    app_name = html.escape(settings.APP_NAME)
    safe_sender = html.escape(sender_name)
    safe_title = html.escape(title)
    safe_recipient = html.escape(recipient_name or "there")
    safe_url = html.escape(access_url, quote=True)

    banner = ""
    if is_emergency:
        banner = (
            '<div style="background-color:#ffebee;border-left:4px solid #f44336;padding:15px;margin-bottom:20px;">'
            "<strong>EMERGENCY MESSAGE:</strong> This is an urgent communication that requires "
            "your immediate attention.</div>"
        )

    notes = []
    if has_pin:
        notes.append("You will need a PIN code from the sender to open it.")
    if unlock_delay_hours:
        notes.append(f"It unlocks {unlock_delay_hours} hour(s) after delivery.")
    if expiry_hours:
        notes.append(f"It expires {expiry_hours} hour(s) after delivery.")
    notes_html = ""
    if notes:
        notes_html = (
            '<div style="background-color:#f8fafc;border-left:4px solid #2563eb;padding:15px;margin:20px 0;">'
            + "".join(f'<p style="margin:0;">{n}</p>' for n in notes)
            + "</div>"
        )

    body = f"""
<div style="font-family:sans-serif;max-width:600px;margin:0 auto;padding:20px;color:#333;">
  {banner}
  <div style="background-color:#f5f5f5;padding:20px;border-radius:8px;margin-bottom:20px;">
    <h1 style="color:#2563eb;margin-top:0;">{app_name}</h1>
    <p style="font-size:16px;margin-bottom:0;">Secure Message Notification</p>
  </div>
  <h2 style="font-size:20px;">Hello {safe_recipient},</h2>
  <p><strong>{safe_sender}</strong> has sent you a secure message titled "<strong>{safe_title}</strong>".</p>
  <p>This message can only be opened through the link below.</p>
  <div style="text-align:center;margin:30px 0;">
    <a href="{safe_url}" style="background-color:#2563eb;color:white;padding:12px 24px;text-decoration:none;border-radius:4px;font-weight:bold;display:inline-block;">
      Access Secure Message
    </a>
  </div>
  {notes_html}
  <div style="border-top:1px solid #e5e5e5;padding-top:20px;font-size:14px;color:#666;">
    <p>This email was sent from a notification-only address. Please do not reply.</p>
    <p style="margin-bottom:0;">&copy; {datetime.now(timezone.utc).year} {app_name}</p>
  </div>
</div>
"""
    text = (
        f"Hello {recipient_name or 'there'},\n\n"
        f'{sender_name} has sent you a secure message titled "{title}".\n\n'
        f"Open it here: {access_url}\n"
    )
    return OutgoingEmail(
        to=to,
        subject=notification_subject(sender_name, title, is_emergency),
        html=body,
        text=text,
        headers=dict(EMERGENCY_HEADERS) if is_emergency else {},
    )


def build_reminder_email(*, to: str, title: str, deadline: datetime, minutes_left: int) -> OutgoingEmail:
    """Nudge to the message owner that a check-in deadline is approaching."""
    left = format_duration(minutes_left)
    when = deadline.strftime("%b %d, %Y at %H:%M UTC")
    subject = f'Reminder: check in within {left} to hold "{title}"'
    body = (
        f"<p>Your message <strong>{html.escape(title)}</strong> will be delivered on "
        f"<strong>{when}</strong> unless you check in.</p>"
        f"<p>Open {html.escape(settings.APP_NAME)} and check in to reset the timer.</p>"
    )
    text = f'Your message "{title}" will be delivered on {when} unless you check in.'
    return OutgoingEmail(to=to, subject=subject, html=body, text=text)
