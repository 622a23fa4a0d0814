"""Request bodies for the HTTP surface. Field aliases match the web client's
camelCase payloads; snake_case names are accepted too."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class NotificationTriggerRequest(_Body):
    message_id: Optional[str] = Field(default=None, alias="messageId")
    is_emergency: bool = Field(default=False, alias="isEmergency")
    debug: bool = False
    force_send: bool = Field(default=False, alias="forceSend")
    test_mode: bool = Field(default=False, alias="testMode")
    source: str = "api"
    bypass_deduplication: bool = Field(default=False, alias="bypassDeduplication")
    keep_armed: Optional[bool] = Field(default=None, alias="keepArmed")


class PanicTriggerRequest(_Body):
    keep_armed: Optional[bool] = Field(default=None, alias="keepArmed")


class VerifyPinRequest(_Body):
    pin: str
    message_id: str = Field(alias="messageId")
    delivery_id: str = Field(alias="deliveryId")
    recipient_email: str = Field(alias="recipientEmail")
    device_info: Optional[str] = Field(default=None, alias="deviceInfo")


class RecordViewRequest(_Body):
    message_id: str = Field(alias="messageId")
    delivery_id: str = Field(alias="deliveryId")
    device_info: Optional[str] = Field(default=None, alias="deviceInfo")


class CheckInRequest(_Body):
    method: str = "app"
