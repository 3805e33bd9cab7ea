"""
One visitor's registration session: the composition root that wires the
status probe, association lookup, photo handling, payment orchestrator and
pass delivery for a single event.

Two flavours share the same wiring:
- public self-registration
- staff-assisted (manual) registration, which also chooses cash or razorpay
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from mandapam.config import AppConfig
from mandapam.core.association_lookup import AssociationLookupClient
from mandapam.core.errors import IllegalTransition, NEXT_ACTION_CHECK_STATUS, ValidationError
from mandapam.core.models import Event, ProbeOutcome, StatusProbeResult
from mandapam.core.normalizers import mask_phone, normalize_phone, phone_digits
from mandapam.core.pass_delivery import PassDeliveryCoordinator, PassDocument
from mandapam.core.payment_orchestrator import PaymentOrchestrator
from mandapam.core.photo import PhotoCaptureAndOptimizer
from mandapam.core.registration_state import EDITABLE_PHASES, MSG_PHONE, RegistrationForm
from mandapam.core.retry import Sleep
from mandapam.core.status_probe import RegistrationStatusProbe
from mandapam.infra.checkout_gateway import GatewayEvent

logger = logging.getLogger(__name__)

MSG_DUPLICATE_PHONE = "This phone number is already registered for this event. Please use a different number."
MSG_ALREADY_REGISTERED = "You are already registered for this event."
MSG_UNVERIFIED = "We could not verify your registration status right now. Please try again in a moment."
MSG_NOT_FOUND = "No registration found for this phone number."
MSG_WAIT_FOR_CHECK = "Please wait while we check your registration status"


class SessionMode(str, Enum):
    PUBLIC = "public"
    MANUAL = "manual"


class PhoneCheck(str, Enum):
    IDLE = "idle"
    REGISTERED = "registered"
    NOT_REGISTERED = "not_registered"
    UNVERIFIED = "unverified"


@dataclass
class PhoneCheckState:
    state: PhoneCheck = PhoneCheck.IDLE
    phone: Optional[str] = None
    message: Optional[str] = None


class EventRegistrationSession:
    """
    Registration session for one event, held in memory while the visitor
    fills the form.
    """

    def __init__(
        self,
        session_id: str,
        event: Event,
        mode: SessionMode,
        api,
        config: AppConfig,
        sleep: Sleep = asyncio.sleep,
        on_change: Optional[Callable[["EventRegistrationSession"], None]] = None,
    ):
        self.session_id = session_id
        self.event = event
        self.mode = mode
        self.created_at = time.time()
        self.last_activity = self.created_at
        self.phone_check = PhoneCheckState()
        self.photo = None
        self._on_change = on_change

        self.probe = RegistrationStatusProbe(api, config.phone_check_debounce_ms, sleep)
        self.associations = AssociationLookupClient(api, config.association_debounce_ms, sleep)
        self.photos = PhotoCaptureAndOptimizer(
            max_upload_bytes=config.photo_max_upload_bytes,
            max_dimension=config.photo_max_dimension,
            target_bytes=config.photo_target_bytes,
            quality=config.photo_quality,
        )
        self.delivery = PassDeliveryCoordinator(api)
        self.orchestrator = PaymentOrchestrator(
            api,
            event,
            self.probe,
            self.photos,
            config,
            sleep=sleep,
            on_change=self._changed,
            on_confirmed=self.remove_photo,
        )

    def touch(self) -> None:
        self.last_activity = time.time()

    def _changed(self) -> None:
        if self._on_change:
            self._on_change(self)

    def _require_editable(self) -> None:
        if self.orchestrator.phase not in EDITABLE_PHASES:
            raise IllegalTransition(
                "The form cannot be changed right now",
                next_action=NEXT_ACTION_CHECK_STATUS if self.orchestrator.confirmed else "wait for the current step to finish",
            )

    @property
    def can_submit(self) -> bool:
        if self.orchestrator.phase not in EDITABLE_PHASES or self.probe.checking:
            return False
        return self.phone_check.state != PhoneCheck.REGISTERED

    # Phone and status probe

    def _apply_probe_result(self, phone: str, result: StatusProbeResult, explicit: bool) -> None:
        if result.outcome == ProbeOutcome.REGISTERED:
            self.phone_check = PhoneCheckState(PhoneCheck.REGISTERED, phone, MSG_DUPLICATE_PHONE)
            if self.mode == SessionMode.PUBLIC and self.orchestrator.adopt_existing(result):
                self.phone_check.message = MSG_ALREADY_REGISTERED
        elif result.outcome == ProbeOutcome.UNVERIFIED and explicit:
            self.phone_check = PhoneCheckState(PhoneCheck.UNVERIFIED, phone, MSG_UNVERIFIED)
        else:
            # A background check that could not reach the backend never blocks the form
            message = MSG_NOT_FOUND if explicit else None
            self.phone_check = PhoneCheckState(PhoneCheck.NOT_REGISTERED, phone, message)
        self._changed()

    async def update_phone(self, raw: Optional[str]) -> None:
        """
        Phone edit. Once it reaches exactly 10 digits, a debounced background
        status check runs.
        """
        self.touch()
        self._require_editable()
        if self.probe.phone_locked:
            raise IllegalTransition("Phone is being verified", next_action="wait a moment")

        if len(phone_digits(raw)) != 10:
            self.probe.invalidate()
            self.phone_check = PhoneCheckState()
            self._changed()
            return

        phone = normalize_phone(raw)
        self.phone_check = PhoneCheckState(PhoneCheck.IDLE, phone)
        result = await self.probe.check_on_phone_change(self.event.id, phone)
        if result is None:
            return
        if self.orchestrator.phase not in EDITABLE_PHASES:
            logger.debug(f"Ignoring background probe during submission: session_id={self.session_id}")
            return
        self._apply_probe_result(phone, result, explicit=False)

    async def verify_status(self, raw: Optional[str] = None) -> StatusProbeResult:
        """
        Explicit "check my registration" request.

        Unlike the background check, an unreachable backend is reported as
        "could not verify" instead of "not registered".
        """
        self.touch()
        phone = normalize_phone(raw if raw is not None else self.phone_check.phone)
        if phone is None:
            raise ValidationError({"phone": MSG_PHONE})

        self.probe.invalidate()
        result = await self.probe.check_status(self.event.id, phone)
        if self.orchestrator.phase in EDITABLE_PHASES:
            self._apply_probe_result(phone, result, explicit=True)
        logger.info(
            f"Explicit status check: session_id={self.session_id}, phone={mask_phone(phone)}, "
            f"outcome={result.outcome.value}"
        )
        return result

    # City and associations

    async def update_city(self, city: Optional[str]) -> None:
        self.touch()
        await self.associations.on_city_change(city)

    # Photo

    def attach_photo(self, filename: Optional[str], content_type: Optional[str], data: bytes) -> None:
        self.touch()
        self._require_editable()
        self.photo = self.photos.capture(filename, content_type, data)
        logger.info(f"Photo attached: session_id={self.session_id}, bytes={len(data)}, type={self.photo.content_type}")

    def remove_photo(self) -> None:
        self.photo = None

    # Submission and gateway

    async def submit(self, data: Dict[str, Any]) -> None:
        self.touch()
        form = RegistrationForm.from_payload(data)
        if self.probe.checking:
            raise ValidationError({"phone": MSG_WAIT_FOR_CHECK})
        if (
            self.phone_check.state == PhoneCheck.REGISTERED
            and normalize_phone(form.phone) == self.phone_check.phone
        ):
            raise ValidationError({"phone": MSG_DUPLICATE_PHONE})
        if len((form.city or "").strip()) == 0:
            # No city, no association
            form.association_id = None

        await self.orchestrator.submit(form, self.photo, manual=self.mode == SessionMode.MANUAL)

    async def gateway_event(self, kind: str, payload: Optional[Dict[str, Any]]) -> bool:
        self.touch()
        event = GatewayEvent.from_callback(kind, payload)
        return await self.orchestrator.deliver_gateway_event(event)

    # Pass

    def _confirmed_registration_id(self) -> int:
        registration = self.orchestrator.registration
        if not self.orchestrator.confirmed or registration is None or registration.id is None:
            raise IllegalTransition("No confirmed registration in this session", next_action="complete the registration first")
        return registration.id

    async def download_pass(self) -> PassDocument:
        self.touch()
        return await self.delivery.download_pass(self.event.id, self._confirmed_registration_id())

    async def resend_pass(self) -> None:
        self.touch()
        state = await self.delivery.resend(self.event.id, self._confirmed_registration_id())
        self.orchestrator.delivery = state
        self._changed()

    async def close(self) -> None:
        await self.orchestrator.close()

    def to_dict(self) -> Dict[str, Any]:
        o = self.orchestrator
        return {
            "sessionId": self.session_id,
            "eventId": self.event.id,
            "mode": self.mode.value,
            "phase": o.phase.value,
            "attempt": o.attempt,
            "fieldErrors": dict(o.field_errors),
            "error": o.error,
            "nextAction": o.next_action,
            "phoneCheck": {
                "checking": self.probe.checking,
                "locked": self.probe.phone_locked,
                "state": self.phone_check.state.value,
                "message": self.phone_check.message,
            },
            "associations": self.associations.to_dict(),
            "photo": {
                "attached": self.photo is not None,
                "previewDataUrl": self.photo.preview_data_url if self.photo else None,
            },
            "checkout": o.checkout_options,
            "registration": o.registration.to_dict() if o.registration else None,
            "delivery": o.delivery.to_dict(),
            "alreadyRegistered": o.confirmed and not o.is_new_registration,
            "canSubmit": self.can_submit,
        }
