"""
Visitor pass delivery.

The backend sends the pass PDF over WhatsApp by itself after a new
registration; here we only reflect what the confirmation said about it, and
offer the manual download/resend actions.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from mandapam.core.errors import DeliveryError, RegistrationError

logger = logging.getLogger(__name__)


class DeliveryStatus(str, Enum):
    SENT = "sent"
    PENDING = "pending"
    ERROR = "error"
    NOT_ATTEMPTED = "not_attempted"
    UNKNOWN = "unknown"


MSG_PENDING = "Your visitor pass will be sent to your WhatsApp number shortly."
MSG_SENT = "Your visitor pass has been sent to your WhatsApp number."
MSG_ERROR = "We could not send your pass on WhatsApp. Please download it manually."
MSG_ALREADY_SENT = "Your visitor pass was already sent to this WhatsApp number."
MSG_DOWNLOAD = "Download your visitor pass below."


@dataclass(frozen=True)
class PassDeliveryState:
    status: DeliveryStatus
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"status": self.status.value, "message": self.message}


NOT_ATTEMPTED = PassDeliveryState(DeliveryStatus.NOT_ATTEMPTED, MSG_DOWNLOAD)


@dataclass(frozen=True)
class PassDocument:
    filename: str
    content: bytes
    media_type: str = "application/pdf"


def pass_filename(registration_id: int) -> str:
    return f"mandapam-visitor-pass-{registration_id}.pdf"


def delivery_from_confirmation(response: Optional[Dict[str, Any]], is_new: bool) -> PassDeliveryState:
    """
    Read delivery state out of a registration/confirmation response.

    A lookup of a pre-existing registration never claims the pass "will be
    sent"; neither does a response that says nothing about delivery.
    """
    if not is_new:
        return NOT_ATTEMPTED
    response = response or {}

    if response.get("whatsappError") or str(response.get("whatsappStatus", "")).lower() in ("failed", "error"):
        return PassDeliveryState(DeliveryStatus.ERROR, MSG_ERROR)
    if response.get("whatsappSent") is True or str(response.get("whatsappStatus", "")).lower() == "sent":
        return PassDeliveryState(DeliveryStatus.SENT, MSG_SENT)
    if response.get("shouldSendWhatsApp") is True:
        return PassDeliveryState(DeliveryStatus.PENDING, MSG_PENDING)
    if response.get("shouldSendWhatsApp") is False:
        return NOT_ATTEMPTED
    return PassDeliveryState(DeliveryStatus.UNKNOWN, MSG_DOWNLOAD)


class PassDeliveryCoordinator:
    """
    Manual pass actions: PDF download and WhatsApp resend.

    Each action has a single in-flight guard per (event, registration); a
    duplicate call while one is running is rejected, not queued.
    """

    def __init__(self, api):
        self._api = api
        self._downloads: Set[Tuple[int, int]] = set()
        self._sends: Set[Tuple[int, int]] = set()

    def is_downloading(self, event_id: int, registration_id: int) -> bool:
        return (event_id, registration_id) in self._downloads

    async def download_pass(self, event_id: int, registration_id: int) -> PassDocument:
        """
        Fetch the visitor pass PDF.

        Raises:
            DeliveryError: a download is already running, or the backend failed
        """
        key = (event_id, registration_id)
        if key in self._downloads:
            raise DeliveryError("A download for this pass is already in progress", next_action="wait a moment")

        self._downloads.add(key)
        try:
            content = await self._api.download_registration_pdf(event_id, registration_id)
        except RegistrationError as e:
            logger.warning(
                f"Pass download failed: event_id={event_id}, registration_id={registration_id}, "
                f"error={type(e).__name__}: {e}"
            )
            raise DeliveryError("Failed to download the visitor pass. Please try again.", next_action="try again") from e
        finally:
            self._downloads.discard(key)

        if not content:
            raise DeliveryError("The visitor pass is not available yet. Please try again shortly.", next_action="try again")
        logger.info(f"Pass downloaded: event_id={event_id}, registration_id={registration_id}, bytes={len(content)}")
        return PassDocument(filename=pass_filename(registration_id), content=content)

    async def resend(self, event_id: int, registration_id: int) -> PassDeliveryState:
        """
        Ask the backend to (re-)send the pass on WhatsApp.

        Failures downgrade to "download manually" and never raise, except for
        a duplicate call while one is in flight.
        """
        key = (event_id, registration_id)
        if key in self._sends:
            raise DeliveryError("The pass is already being sent", next_action="wait a moment")

        self._sends.add(key)
        try:
            result = await self._api.send_registration_whatsapp(event_id, registration_id)
        except RegistrationError as e:
            logger.warning(
                f"WhatsApp pass delivery failed: event_id={event_id}, registration_id={registration_id}, "
                f"error={type(e).__name__}: {e}"
            )
            return PassDeliveryState(DeliveryStatus.ERROR, MSG_ERROR)
        finally:
            self._sends.discard(key)

        result = result if isinstance(result, dict) else {}
        if result.get("alreadySent"):
            return PassDeliveryState(DeliveryStatus.SENT, result.get("message") or MSG_ALREADY_SENT)
        if result.get("success") is False:
            logger.warning(
                f"WhatsApp pass delivery rejected: event_id={event_id}, registration_id={registration_id}, "
                f"message={result.get('message')}"
            )
            return PassDeliveryState(DeliveryStatus.ERROR, MSG_ERROR)
        return PassDeliveryState(DeliveryStatus.SENT, result.get("message") or MSG_SENT)
