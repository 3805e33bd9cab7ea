"""
Error taxonomy of the registration flow.

Every error carries a user-facing message and the next action the user
should take, so nothing bubbles up to the visitor as a bare stack trace.
"""
from typing import Any, Dict, Optional

NEXT_ACTION_FIX_FORM = "fix the highlighted fields"
NEXT_ACTION_TRY_AGAIN = "try again"
NEXT_ACTION_CHECK_STATUS = "check your registration status"
NEXT_ACTION_CONTACT_SUPPORT = "contact support"
NEXT_ACTION_DOWNLOAD = "download your pass manually"


class RegistrationError(Exception):
    """Base class for every failure surfaced by the registration portal."""

    default_next_action = NEXT_ACTION_TRY_AGAIN

    def __init__(self, message: str, next_action: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.next_action = next_action or self.default_next_action


class ValidationError(RegistrationError):
    """Client-side, pre-network validation failure scoped to form fields."""

    default_next_action = NEXT_ACTION_FIX_FORM

    def __init__(self, field_errors: Dict[str, str], message: Optional[str] = None):
        super().__init__(message or "Please correct the highlighted fields")
        self.field_errors = dict(field_errors)


class UploadError(RegistrationError):
    """Photo optimization or upload failed; the whole submission must be retried."""


class NetworkError(RegistrationError):
    """Timeout or connection-level failure talking to the backend."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class ServerRejection(RegistrationError):
    """
    The backend answered with a 4xx/5xx and (usually) a message body.

    The backend message is kept verbatim in ``message``.
    """

    def __init__(self, status_code: int, message: str, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500


class GatewayCancellation(RegistrationError):
    """The visitor dismissed the checkout; not an error, the form is resubmittable."""


class DeliveryError(RegistrationError):
    """WhatsApp or PDF dispatch failed; never blocks the confirmation view."""

    default_next_action = NEXT_ACTION_DOWNLOAD


class CheckInConflict(RegistrationError):
    """Attendance cannot be reversed; rejected outright and never retried."""

    default_next_action = NEXT_ACTION_CONTACT_SUPPORT


class IllegalTransition(RegistrationError):
    """A registration phase change that the state machine does not allow."""

    default_next_action = NEXT_ACTION_CHECK_STATUS


class NotFound(RegistrationError):
    """A portal resource (session, QR image) does not exist or has expired."""

    default_next_action = "start a new registration"
