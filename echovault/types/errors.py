"""Error taxonomy shared by the services and the HTTP layer.

Validation problems carry a machine-readable `ValidationIssue` so form
callers can map them to field messages. Lookup and permission failures map
to 404 / 403 at the HTTP boundary. Delivery failures are retried and then
aggregated per recipient; they never abort a dispatch.
"""

from __future__ import annotations

from enum import Enum


class ValidationIssue(str, Enum):
    ZERO_DURATION = "zero_duration"
    NON_QUARTER_INTERVAL = "non_quarter_interval"
    EXCEEDS_THRESHOLD = "exceeds_threshold"
    DUPLICATE_REMINDER = "duplicate_reminder"
    INVALID_PATTERN = "invalid_pattern"
    INVALID_CANCEL_WINDOW = "invalid_cancel_window"


ISSUE_MESSAGES: dict[ValidationIssue, str] = {
    ValidationIssue.ZERO_DURATION: "Reminder time must be greater than zero",
    ValidationIssue.NON_QUARTER_INTERVAL: "Minutes must be in 15-minute intervals (0, 15, 30, 45)",
    ValidationIssue.EXCEEDS_THRESHOLD: "Reminder must be earlier than the deadline",
    ValidationIssue.DUPLICATE_REMINDER: "This reminder time already exists",
    ValidationIssue.INVALID_PATTERN: "Invalid recurring pattern",
    ValidationIssue.INVALID_CANCEL_WINDOW: "Cancel window must be one of 0, 5, 10, 15, 30 or 60 seconds",
}


class ValidationError(ValueError):
    """Bad user input for a reminder offset, recurring pattern or panic config."""

    def __init__(self, issue: ValidationIssue, detail: str | None = None):
        self.issue = issue
        self.detail = detail or ISSUE_MESSAGES[issue]
        super().__init__(self.detail)


class NotFoundError(LookupError):
    """Message, condition or recipient does not exist."""


class AuthorizationError(PermissionError):
    """Caller is not allowed to see or act on the resource."""


class TransientDeliveryError(RuntimeError):
    """Email / WhatsApp provider failure that is worth retrying."""

    def __init__(self, channel: str, detail: str):
        self.channel = channel
        super().__init__(f"{channel} delivery failed: {detail}")
