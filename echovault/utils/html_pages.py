"""Server-rendered pages for the public message viewer."""

from __future__ import annotations

import html
import json
from datetime import datetime
from typing import Optional

from config import settings
from echovault.types.condition_contract import Message
from echovault.utils.urls import map_url

_STYLE = """
    * { box-sizing: border-box; }
    body {
      font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", sans-serif;
      background: #f5f5f5; color: #333;
      margin: 0; padding: 24px;
      display: flex; justify-content: center;
    }
    .card {
      background: white; border-radius: 12px; padding: 32px;
      max-width: 640px; width: 100%;
      box-shadow: 0 2px 12px rgba(0,0,0,0.08);
    }
    h1 { color: #2563eb; font-size: 22px; margin-top: 0; }
    .muted { color: #757575; font-size: 14px; }
    .content { white-space: pre-wrap; line-height: 1.6; font-size: 16px; }
    .error { color: #c62828; }
    input[type=password] {
      width: 100%; padding: 12px; font-size: 18px;
      border: 1px solid #ccc; border-radius: 8px; margin: 12px 0;
    }
    button {
      width: 100%; padding: 14px; font-size: 16px; font-weight: bold;
      background: #2563eb; color: white; border: none; border-radius: 8px; cursor: pointer;
    }
    ul.attachments { padding-left: 18px; }
"""


def _page(title: str, body: str, script: str = "") -> str:
    app_name = html.escape(settings.APP_NAME)
    script_tag = f"<script>{script}</script>" if script else ""
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>{app_name} | {html.escape(title)}</title>
  <style>{_STYLE}</style>
</head>
<body>
  <div class="card">
    {body}
    <p class="muted">Delivered securely by {app_name}.</p>
  </div>
  {script_tag}
</body>
</html>"""


def _js(data: dict) -> str:
    return json.dumps(data).replace("<", "\\u003c")


def _fmt(dt: Optional[datetime]) -> str:
    return dt.strftime("%B %d, %Y at %H:%M UTC") if dt else "an unknown time"


def render_error_page(title: str, detail: str) -> str:
    body = f'<h1 class="error">{html.escape(title)}</h1><p>{html.escape(detail)}</p>'
    return _page(title, body)


def render_expired_page(expiry_date: Optional[datetime]) -> str:
    body = (
        "<h1>This message has expired</h1>"
        f"<p>Access to this message ended on {_fmt(expiry_date)}.</p>"
    )
    return _page("Message expired", body)


def render_delayed_page(unlock_date: Optional[datetime]) -> str:
    body = (
        "<h1>This message is not available yet</h1>"
        f"<p>The sender set a delay. You can open it from {_fmt(unlock_date)}.</p>"
    )
    return _page("Message locked", body)


def render_pin_page(message_id: str, delivery_id: str, recipient_email: str) -> str:
    payload = _js({
        "messageId": message_id,
        "deliveryId": delivery_id,
        "recipientEmail": recipient_email,
    })
    body = """
    <h1>This message is protected</h1>
    <p>Enter the PIN code the sender shared with you.</p>
    <form id="pin-form">
      <input type="password" id="pin" inputmode="numeric" autocomplete="off" required>
      <button type="submit">Unlock message</button>
    </form>
    <p id="pin-error" class="error"></p>
    """
    script = f"""
    const ctx = {payload};
    document.getElementById("pin-form").addEventListener("submit", async (ev) => {{
      ev.preventDefault();
      const res = await fetch("/access/message/verify-pin", {{
        method: "POST",
        headers: {{"Content-Type": "application/json"}},
        body: JSON.stringify({{...ctx, pin: document.getElementById("pin").value}}),
      }});
      const data = await res.json().catch(() => ({{}}));
      if (res.ok && data.success) {{
        window.location.reload();
      }} else {{
        document.getElementById("pin-error").textContent = data.error || "Incorrect PIN";
      }}
    }});
    """
    return _page("PIN required", body, script)


def render_message_page(
    message: Message,
    delivery_id: Optional[str] = None,
    expiry_date: Optional[datetime] = None,
) -> str:
    parts = [f"<h1>{html.escape(message.title)}</h1>"]
    if message.sender_name:
        parts.append(f'<p class="muted">From {html.escape(message.sender_name)}</p>')
    if message.content:
        parts.append(f'<div class="content">{html.escape(message.content)}</div>')
    if message.location is not None:
        loc = message.location
        label = html.escape(loc.name or f"{loc.latitude}, {loc.longitude}")
        url = html.escape(map_url(loc.latitude, loc.longitude), quote=True)
        parts.append(f'<p>📍 <a href="{url}" target="_blank" rel="noopener">{label}</a></p>')
    if message.attachments:
        items = "".join(
            f"<li>{html.escape(a.name)} <span class=\"muted\">({a.size} bytes)</span></li>"
            for a in message.attachments
        )
        parts.append(f'<h3>Attachments</h3><ul class="attachments">{items}</ul>')
    if expiry_date is not None:
        parts.append(f'<p class="muted">This message expires on {_fmt(expiry_date)}.</p>')

    script = ""
    if delivery_id:
        payload = _js({"messageId": message.id, "deliveryId": delivery_id})
        script = f"""
    fetch("/access/message/record-view", {{
      method: "POST",
      headers: {{"Content-Type": "application/json"}},
      body: JSON.stringify({{...{payload}, deviceInfo: navigator.userAgent}}),
    }});
    """
    return _page(message.title, "\n".join(parts), script)
