import logging
from typing import Optional

import telnyx
from fastapi import FastAPI, Request, HTTPException, Header, Query, status, BackgroundTasks
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse

import db
from config import settings
from echovault.services import check_in, dispatch, health, panic, security
from echovault.services.security import AccessView
from echovault.types.api_contract import (
    CheckInRequest,
    NotificationTriggerRequest,
    PanicTriggerRequest,
    RecordViewRequest,
    VerifyPinRequest,
)
from echovault.types.errors import AuthorizationError, NotFoundError
from echovault.utils import html_pages
from echovault.utils.whatsapp import send_whatsapp

_LOGGER = logging.getLogger(__name__)

# Configure telnyx public key
if settings.TELNYX_PUBLIC_KEY:
    telnyx.public_key = settings.TELNYX_PUBLIC_KEY

app = FastAPI(title=settings.APP_NAME)


@app.on_event("shutdown")
async def shutdown_event():
    await db.dispose_engine()


# --------------------------------------------
# Notification trigger
# --------------------------------------------
@app.post("/v1/notifications")
async def trigger_notifications(body: Optional[NotificationTriggerRequest] = None):
    body = body or NotificationTriggerRequest()
    options = dispatch.DispatchOptions(
        is_emergency=body.is_emergency,
        debug=body.debug,
        bypass_deduplication=body.bypass_deduplication,
        keep_armed=body.keep_armed,
        test_mode=body.test_mode,
        source=body.source,
    )
    try:
        return await dispatch.process_due_notifications(
            message_id=body.message_id,
            options=options,
            force_send=body.force_send,
        )
    except Exception as exc:  # noqa: BLE001
        _LOGGER.exception("Notification run failed")
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))


@app.get("/v1/notifications/status")
async def notifications_status():
    return await health.get_system_health()


# --------------------------------------------
# Panic button (server side of the firing step)
# --------------------------------------------
@app.post("/v1/panic/{message_id}/trigger")
async def trigger_panic(
    message_id: str,
    body: Optional[PanicTriggerRequest] = None,
    user_id: str = Header(..., alias="X-User-Id"),
):
    keep_armed = body.keep_armed if body else None
    try:
        outcome = await panic.trigger_panic_message(user_id, message_id, keep_armed=keep_armed)
    except NotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(exc))
    except AuthorizationError as exc:
        raise HTTPException(status.HTTP_403_FORBIDDEN, str(exc))

    payload = {"success": outcome.success, "keepArmed": outcome.keep_armed}
    if not outcome.success:
        payload["error"] = outcome.error
        return JSONResponse(payload, status_code=status.HTTP_502_BAD_GATEWAY)
    return payload


# --------------------------------------------
# Check-in
# --------------------------------------------
@app.post("/v1/check-in")
async def check_in_endpoint(
    body: Optional[CheckInRequest] = None,
    user_id: str = Header(..., alias="X-User-Id"),
):
    result = await check_in.perform_check_in(user_id, (body or CheckInRequest()).method)
    return {
        "success": True,
        "timestamp": result.timestamp.isoformat(),
        "conditions_updated": result.conditions_updated,
    }


# --------------------------------------------
# Public message viewer
# --------------------------------------------
def _html(content: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(content, status_code=status_code)


async def _render_access(message_id: Optional[str], recipient: Optional[str], delivery: Optional[str]) -> HTMLResponse:
    if not message_id:
        return _html(html_pages.render_error_page("Invalid link", "This link is missing the message id."), 400)
    try:
        ctx = await security.load_access_context(message_id, recipient, delivery)
    except NotFoundError:
        return _html(html_pages.render_error_page("Message not found", "This message does not exist or was removed."), 404)
    except AuthorizationError:
        return _html(html_pages.render_error_page("Access denied", "You are not authorized to view this message."), 403)
    except Exception:  # noqa: BLE001
        _LOGGER.exception("Viewer failed for message %s", message_id)
        return _html(html_pages.render_error_page("Something went wrong", "Please try again later."), 500)

    if ctx.view is AccessView.EXPIRED:
        return _html(html_pages.render_expired_page(ctx.status.expiry_date))
    if ctx.view is AccessView.DELAYED:
        return _html(html_pages.render_delayed_page(ctx.status.unlock_date))
    if ctx.view is AccessView.PIN_REQUIRED:
        if not delivery:
            return _html(html_pages.render_error_page("Invalid link", "This link is missing its delivery code."), 400)
        return _html(html_pages.render_pin_page(message_id, delivery, recipient or ""))
    return _html(html_pages.render_message_page(ctx.message, delivery, ctx.status.expiry_date))


@app.get("/access/message", response_class=HTMLResponse)
async def access_message_query(
    id: Optional[str] = Query(None),
    recipient: Optional[str] = Query(None),
    delivery: Optional[str] = Query(None),
):
    return await _render_access(id, recipient, delivery)


@app.get("/access/message/{message_id}", response_class=HTMLResponse)
async def access_message(
    message_id: str,
    recipient: Optional[str] = Query(None),
    delivery: Optional[str] = Query(None),
):
    return await _render_access(message_id, recipient, delivery)


@app.post("/access/message/verify-pin")
async def verify_pin(body: VerifyPinRequest):
    try:
        ok = await security.verify_pin(
            body.message_id, body.delivery_id, body.recipient_email, body.pin, body.device_info
        )
    except NotFoundError:
        return JSONResponse({"success": False, "error": "Message or delivery not found"}, status_code=404)
    except AuthorizationError:
        return JSONResponse({"success": False, "error": "Not authorized"}, status_code=403)
    if not ok:
        return JSONResponse({"success": False, "error": "Invalid PIN"}, status_code=401)
    return {"success": True}


@app.post("/access/message/record-view")
async def record_view(body: RecordViewRequest):
    try:
        recorded = await security.record_view_if_allowed(body.message_id, body.delivery_id, body.device_info)
    except NotFoundError:
        return JSONResponse({"success": False, "error": "Message not found"}, status_code=404)
    return {"success": recorded}


# --------------------------------------------
# WhatsApp inbound (Telnyx)
# --------------------------------------------
@app.post("/v1/whatsapp/webhook", response_class=PlainTextResponse)
async def whatsapp_webhook(request: Request, background: BackgroundTasks):
    raw_body = await request.body()
    sig = request.headers.get("telnyx-signature-ed25519")
    ts = request.headers.get("telnyx-timestamp")

    try:
        if settings.TELNYX_PUBLIC_KEY:
            event = telnyx.Webhook.construct_event(raw_body.decode(), sig, ts)
            payload = event.data["payload"]
        else:  # dev mode: skip signature verification
            payload = (await request.json())["data"]["payload"]
    except Exception:  # noqa: BLE001
        raise HTTPException(400, "Bad signature")

    # TelnyxObject -> dict if needed
    if hasattr(payload, "to_dict"):
        payload = payload.to_dict()
    if payload.get("type") == "ping":
        return PlainTextResponse("PONG")

    sender = payload.get("from") or payload.get("from_", {})
    if hasattr(sender, "to_dict"):
        sender = sender.to_dict()
    from_num = sender.get("phone_number")
    text = payload.get("text", "")

    if not from_num:
        return PlainTextResponse("IGNORED", status_code=status.HTTP_200_OK)

    _LOGGER.info("[Webhook] WhatsApp message from %s", from_num)
    reply = await check_in.handle_whatsapp_message(from_num, text)
    background.add_task(send_whatsapp, from_num, reply)
    return PlainTextResponse("OK")
