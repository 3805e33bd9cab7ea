"""
Payment orchestrator: drives one visitor's registration attempts.

Free path:  IDLE → VALIDATING → SUBMITTING → CONFIRMED
Paid path:  IDLE → VALIDATING → SUBMITTING → ORDER_CREATED → AWAITING_GATEWAY
            → CONFIRMING → CONFIRMED

Ambiguous outcomes (network failure after the backend may already have
processed the request) go through POLLING, where the status probe decides
between CONFIRMED and FAILED. Nothing that may have moved money is retried
blindly.
"""
import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, Optional

from mandapam.config import AppConfig
from mandapam.core.errors import (
    GatewayCancellation,
    IllegalTransition,
    NEXT_ACTION_CHECK_STATUS,
    NEXT_ACTION_CONTACT_SUPPORT,
    NEXT_ACTION_TRY_AGAIN,
    NetworkError,
    RegistrationError,
    UploadError,
    ValidationError,
)
from mandapam.core.models import (
    CheckoutOrder,
    Event,
    PaymentMethod,
    ProbeOutcome,
    Registration,
    StatusProbeResult,
)
from mandapam.core.normalizers import mask_phone
from mandapam.core.pass_delivery import (
    NOT_ATTEMPTED,
    PassDeliveryState,
    delivery_from_confirmation,
)
from mandapam.core.photo import CapturedPhoto, PhotoCaptureAndOptimizer
from mandapam.core.qr import ensure_qr_image
from mandapam.core.registration_state import (
    BUSY_PHASES,
    EDITABLE_PHASES,
    IN_FLIGHT_PHASES,
    RegistrationForm,
    RegistrationPhase,
    ValidatedRegistration,
    next_phase,
    validate_registration_form,
)
from mandapam.core.retry import Retrier, Sleep, poll_until
from mandapam.core.status_probe import RegistrationStatusProbe
from mandapam.infra.checkout_gateway import (
    GatewayChannel,
    GatewayEvent,
    GatewayEventKind,
    build_checkout_options,
)

logger = logging.getLogger(__name__)

P = RegistrationPhase

MSG_CANCELLED = "Payment cancelled. You can submit the form again when ready."
MSG_ABANDONED = "Checkout was not completed. You can submit the form again when ready."
MSG_GATEWAY_FAILED = "Payment failed. Please try again."
MSG_UPLOAD_FAILED = "Failed to upload the profile photo. Please try again."
MSG_UNREACHABLE = "Could not reach the server. Please try again."
MSG_ORDER_INVALID = "Payment could not be started. Please try again."
MSG_UNVERIFIED_RETRY = (
    "We could not verify whether your previous attempt went through. "
    "Please check your registration status before trying again."
)
MSG_REGISTRATION_UNCONFIRMED = (
    "We could not confirm your registration. "
    "Please check your registration status before submitting again."
)


class PaymentOrchestrator:
    """
    State machine of the registration attempts of one session.

    Gateway callbacks arrive through a ``GatewayChannel`` and are handled one
    at a time by a consumer task, so a duplicated success callback finds the
    attempt already past AWAITING_GATEWAY and is dropped.
    """

    def __init__(
        self,
        api,
        event: Event,
        probe: RegistrationStatusProbe,
        photos: PhotoCaptureAndOptimizer,
        config: AppConfig,
        sleep: Sleep = asyncio.sleep,
        on_change: Optional[Callable[[], None]] = None,
        on_confirmed: Optional[Callable[[], None]] = None,
    ):
        self._api = api
        self._event = event
        self._probe = probe
        self._photos = photos
        self._config = config
        self._sleep = sleep
        self._on_change = on_change
        self._on_confirmed = on_confirmed

        self.phase = P.IDLE
        self.attempt = 0
        self.field_errors: Dict[str, str] = {}
        self.error: Optional[str] = None
        self.next_action: Optional[str] = None
        self.registration: Optional[Registration] = None
        self.checkout_options: Optional[Dict[str, Any]] = None
        self.delivery: PassDeliveryState = NOT_ATTEMPTED
        self.is_new_registration = False
        self.polls = 0
        self.confirm_calls = 0

        self._validated: Optional[ValidatedRegistration] = None
        self._photo_preview: Optional[str] = None
        self._order: Optional[CheckoutOrder] = None
        self._channel: Optional[GatewayChannel] = None
        self._consumer: Optional[asyncio.Task] = None
        self._poll_cancel = asyncio.Event()
        # payment.failed leaves the checkout open; a retry there may still succeed
        self._gateway_retry_open = False
        # Phone of an attempt that ended without a definite answer
        self._unresolved_phone: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self.phase in BUSY_PHASES

    @property
    def in_flight(self) -> bool:
        return self.phase in IN_FLIGHT_PHASES

    @property
    def confirmed(self) -> bool:
        return self.phase == P.CONFIRMED

    @property
    def order_id(self) -> Optional[str]:
        return self._order.order_id if self._order else None

    def _transition(self, target: RegistrationPhase) -> None:
        previous = self.phase
        self.phase = next_phase(previous, target)
        logger.info(
            f"Registration phase: event_id={self._event.id}, attempt={self.attempt}, "
            f"{previous.value} -> {target.value}"
        )
        if self._on_change:
            self._on_change()

    def _fail(self, message: str, next_action: str) -> None:
        self.error = message
        self.next_action = next_action
        self.checkout_options = None
        self._transition(P.FAILED)

    def _confirm(
        self,
        registration: Optional[Registration],
        response: Optional[Dict[str, Any]],
        is_new: bool,
    ) -> None:
        """
        Store the merged registration and move to CONFIRMED.

        Server fields win; the phone typed by the visitor and the local photo
        preview only fill what the server left empty. An adopted existing
        registration never takes the preview of this session's photo.
        """
        registration = registration or Registration(id=None, event_id=self._event.id)
        phone = self._validated.phone if self._validated else None
        preview = self._photo_preview if is_new else None
        registration = replace(
            registration,
            event_id=registration.event_id or self._event.id,
            phone=registration.phone or phone or "",
            photo=registration.photo or preview,
        )
        self.registration = ensure_qr_image(registration)
        self.delivery = delivery_from_confirmation(response, is_new)
        self.is_new_registration = is_new
        self.error = None
        self.next_action = None
        self.field_errors = {}
        self.checkout_options = None
        self._unresolved_phone = None
        self._transition(P.CONFIRMED)
        if self._on_confirmed:
            self._on_confirmed()

    def adopt_existing(self, result: StatusProbeResult) -> bool:
        """
        Switch to the confirmation view for a registration that already exists.

        Only applies while the form is editable; a probe answer arriving during
        a submission is ignored.
        """
        if not result.is_registered or self.phase not in EDITABLE_PHASES:
            return False
        self._close_gateway_wait()
        self._confirm(result.registration, None, is_new=False)
        return True

    async def submit(
        self,
        form: RegistrationForm,
        photo: Optional[CapturedPhoto],
        manual: bool = False,
    ) -> None:
        """
        Run one registration attempt up to CONFIRMED, FAILED or AWAITING_GATEWAY.

        Args:
            form: Raw form data
            photo: Captured profile photo (mandatory)
            manual: Staff-assisted registration (payment method required)

        Raises:
            ValidationError: invalid form; no network call was made
            IllegalTransition: an attempt is in progress or the visitor is
                already registered
        """
        if self.phase == P.CONFIRMED:
            raise IllegalTransition("You are already registered for this event", next_action=NEXT_ACTION_CHECK_STATUS)
        if self.busy:
            raise IllegalTransition("A registration is already in progress", next_action="wait for it to finish")

        # 1. Validation (no network)
        self._close_gateway_wait()
        self._transition(P.VALIDATING)
        self.attempt += 1
        self.field_errors = {}
        self.error = None
        self.next_action = None
        self.checkout_options = None
        try:
            validated = validate_registration_form(form, has_photo=photo is not None, require_payment_method=manual)
        except ValidationError as e:
            self.field_errors = e.field_errors
            self._transition(P.IDLE)
            raise

        self._validated = validated
        self._photo_preview = photo.preview_data_url
        self._transition(P.SUBMITTING)
        cash = validated.payment_method == PaymentMethod.CASH
        settles_immediately = self._event.is_free or cash

        # 2. A previous attempt for this phone ended ambiguously: look before submitting again
        if self._unresolved_phone == validated.phone:
            result = await self._probe.check_status(self._event.id, validated.phone)
            if result.is_registered and (settles_immediately or result.is_paid):
                logger.info(
                    f"Previous attempt had succeeded: event_id={self._event.id}, phone={mask_phone(validated.phone)}"
                )
                self._confirm(result.registration, None, is_new=True)
                return
            if result.outcome == ProbeOutcome.UNVERIFIED:
                self._fail(MSG_UNVERIFIED_RETRY, NEXT_ACTION_CHECK_STATUS)
                return
            self._unresolved_phone = None

        # 3. Photo optimization and upload
        try:
            optimized = await asyncio.to_thread(self._photos.optimize, photo)
            photo_url = await self._api.upload_profile_image(optimized.filename, optimized.content_type, optimized.data)
        except UploadError as e:
            self._fail(e.message, NEXT_ACTION_TRY_AGAIN)
            return
        except RegistrationError as e:
            logger.warning(f"Photo upload failed: event_id={self._event.id}, error={type(e).__name__}: {e}")
            self._fail(MSG_UPLOAD_FAILED, NEXT_ACTION_TRY_AGAIN)
            return

        payload = validated.to_payload(photo_url)

        # 4. Registration call
        try:
            if cash:
                response = await self._api.create_manual_registration(self._event.id, payload)
            else:
                response = await self._api.initiate_registration(self._event.id, payload)
        except NetworkError as e:
            logger.error(
                f"Registration call unreachable: event_id={self._event.id}, attempt={self.attempt}, "
                f"phone={mask_phone(validated.phone)}, error={e}"
            )
            if settles_immediately:
                await self._recover_registration(validated.phone)
            else:
                # No payment has started yet; resubmitting is safe
                self._fail(MSG_UNREACHABLE, NEXT_ACTION_TRY_AGAIN)
            return
        except RegistrationError as e:
            self._fail(e.message, e.next_action)
            return

        response = response if isinstance(response, dict) else {}
        payment_options = response.get("paymentOptions")
        if cash or response.get("isFree") or (self._event.is_free and not payment_options):
            registration = Registration.from_api(response.get("registration") or {}, envelope=response)
            self._confirm(registration, response, is_new=response.get("isNewRegistration") is not False)
            return

        # 5. Paid path: open the checkout
        order = CheckoutOrder.from_initiate_response(response)
        if not order.order_id or order.member_id is None:
            logger.error(f"Invalid order descriptor: event_id={self._event.id}, keys={sorted(response.keys())}")
            self._fail(MSG_ORDER_INVALID, NEXT_ACTION_TRY_AGAIN)
            return

        self._order = order
        self._transition(P.ORDER_CREATED)
        self.checkout_options = build_checkout_options(order, self._event, validated, self._config.razorpay_key_id)
        self._open_channel()
        self._transition(P.AWAITING_GATEWAY)

    async def _recover_registration(self, phone: str) -> None:
        """Free/cash path: the backend may have registered us; poll before anything else."""
        self._transition(P.POLLING)
        result = await poll_until(
            lambda: self._probe.check_status(self._event.id, phone),
            lambda r: r.is_registered,
            max_attempts=self._config.confirm_poll_attempts,
            interval_s=self._config.confirm_poll_interval_ms / 1000.0,
            sleep=self._sleep,
            cancel=self._poll_cancel,
            describe=f"registration status poll event_id={self._event.id}",
        )
        self.polls = result.attempts
        if result.found:
            self._confirm(result.value.registration, None, is_new=True)
            return
        self._unresolved_phone = phone
        self._fail(MSG_REGISTRATION_UNCONFIRMED, NEXT_ACTION_CHECK_STATUS)

    # Gateway boundary

    def _open_channel(self) -> None:
        self._channel = GatewayChannel(self.attempt)
        self._consumer = asyncio.create_task(self._consume(self._channel))

    async def deliver_gateway_event(self, event: GatewayEvent) -> bool:
        """
        Hand a checkout callback to the current attempt and wait until it is handled.

        Returns:
            False when no attempt is waiting for the gateway (late or
            duplicated callback, ignored)
        """
        channel = self._channel
        if channel is None:
            if event.kind == GatewayEventKind.SUCCESS and self.phase != P.CONFIRMED:
                logger.error(
                    f"Captured payment arrived with no checkout open, manual reconciliation needed: "
                    f"event_id={self._event.id}, order_id={event.order_id}, payment_id={event.payment_id}, "
                    f"phase={self.phase.value}"
                )
            else:
                logger.info(
                    f"Ignoring gateway event: kind={event.kind.value}, order_id={event.order_id}, "
                    f"phase={self.phase.value}"
                )
            return False
        done = channel.emit(event)
        return await done

    async def _consume(self, channel: GatewayChannel) -> None:
        while True:
            event, done = await channel.receive()
            handled = False
            try:
                handled = await self._handle_gateway_event(event, channel.attempt)
            except Exception as e:
                logger.error(
                    f"Unexpected error handling gateway event: event_id={self._event.id}, "
                    f"order_id={self.order_id}, kind={event.kind.value}, error={type(e).__name__}: {e}",
                    exc_info=True,
                )
                if self.phase not in (P.CONFIRMED, P.FAILED, P.CANCELLED):
                    self._fail("Something went wrong while confirming your payment.", NEXT_ACTION_CHECK_STATUS)
            finally:
                if not done.done():
                    done.set_result(handled)

            waiting = self.phase in (P.AWAITING_GATEWAY, P.CONFIRMING, P.POLLING) or self._gateway_retry_open
            if not waiting:
                # Attempt is over: late duplicates are ignored from now on
                if self._channel is channel:
                    self._channel = None
                channel.drain()
                return

    async def _handle_gateway_event(self, event: GatewayEvent, attempt: int) -> bool:
        retrying = self.phase == P.FAILED and self._gateway_retry_open
        if attempt != self.attempt or not (self.phase == P.AWAITING_GATEWAY or retrying):
            logger.warning(
                f"Dropping gateway event: kind={event.kind.value}, order_id={event.order_id}, "
                f"payment_id={event.payment_id}, phase={self.phase.value}, attempt={attempt}"
            )
            return False
        if event.order_id and self._order and event.order_id != self._order.order_id:
            logger.warning(
                f"Dropping gateway event for another order: expected={self._order.order_id}, got={event.order_id}"
            )
            return False

        if event.kind == GatewayEventKind.DISMISSED:
            if retrying:
                # Checkout closed after a failed payment; the attempt stays FAILED
                self._gateway_retry_open = False
                logger.info(f"Checkout closed after payment failure: order_id={self.order_id}")
                return True
            cancellation = GatewayCancellation(MSG_CANCELLED)
            self.error = cancellation.message
            self.next_action = cancellation.next_action
            self.checkout_options = None
            self._transition(P.CANCELLED)
            return True

        if event.kind == GatewayEventKind.FAILED:
            logger.info(
                f"Gateway reported payment failure: order_id={self.order_id}, "
                f"payment_id={event.payment_id}, reason={event.error_description}"
            )
            self._gateway_retry_open = True
            if retrying:
                self.error = event.error_description or MSG_GATEWAY_FAILED
                if self._on_change:
                    self._on_change()
            else:
                self._fail(event.error_description or MSG_GATEWAY_FAILED, NEXT_ACTION_TRY_AGAIN)
            return True

        # ASSERT: SUCCESS while the checkout is open; CONFIRMING is never re-entered in this attempt
        if retrying:
            logger.info(
                f"Payment succeeded on retry after a failure: order_id={self.order_id}, payment_id={event.payment_id}"
            )
        self._gateway_retry_open = False
        self._transition(P.CONFIRMING)
        await self._confirm_payment(event)
        return True

    async def _confirm_payment(self, event: GatewayEvent) -> None:
        order = self._order
        payload = {
            "memberId": order.member_id,
            "razorpay_order_id": event.order_id,
            "razorpay_payment_id": event.payment_id,
            "razorpay_signature": event.signature,
        }
        context = f"event_id={self._event.id}, order_id={event.order_id}, payment_id={event.payment_id}"

        async def call():
            self.confirm_calls += 1
            return await self._api.confirm_payment(self._event.id, payload)

        retrier = Retrier(
            max_retries=self._config.confirm_max_retries,
            base_delay_ms=self._config.retry_base_delay_ms,
            sleep=self._sleep,
        )
        try:
            response = await retrier.run(call, describe=f"confirm-payment {context}")
        except NetworkError as e:
            logger.error(
                f"Payment confirmation unreachable, polling registration status: {context}, "
                f"attempts={retrier.attempts}, error={e}"
            )
            await self._poll_for_payment(event, context)
            return
        except RegistrationError as e:
            logger.error(
                f"Payment confirmation rejected: {context}, attempts={retrier.attempts}, "
                f"error={type(e).__name__}: {e.message}"
            )
            self._fail(e.message, f"{NEXT_ACTION_CONTACT_SUPPORT} with payment id {event.payment_id}")
            return

        response = response if isinstance(response, dict) else {}
        registration = Registration.from_api(response.get("registration") or {}, envelope=response)
        logger.info(f"Payment confirmed: {context}, registration_id={registration.id}, attempts={retrier.attempts}")
        self._confirm(registration, response, is_new=response.get("isNewRegistration") is not False)

    async def _poll_for_payment(self, event: GatewayEvent, context: str) -> None:
        """Payment may have gone through server-side; look for a paid registration."""
        self._transition(P.POLLING)
        phone = self._validated.phone
        result = await poll_until(
            lambda: self._probe.check_status(self._event.id, phone),
            lambda r: r.is_paid,
            max_attempts=self._config.confirm_poll_attempts,
            interval_s=self._config.confirm_poll_interval_ms / 1000.0,
            sleep=self._sleep,
            cancel=self._poll_cancel,
            describe=f"payment status poll {context}",
        )
        self.polls = result.attempts
        if result.found:
            logger.info(f"Payment found by polling: {context}, polls={result.attempts}")
            self._confirm(result.value.registration, None, is_new=True)
            return

        logger.error(f"Payment state unknown, manual reconciliation needed: {context}, polls={result.attempts}")
        self._unresolved_phone = phone
        self._fail(
            "We could not confirm your payment yet. Please check your registration status, "
            f"or contact support with payment id {event.payment_id}.",
            NEXT_ACTION_CHECK_STATUS,
        )

    def _close_gateway_wait(self) -> bool:
        """Stop waiting for checkout callbacks. Returns True when a wait was open."""
        consumer = self._consumer
        waiting = consumer is not None and not consumer.done() and not self.in_flight
        if waiting:
            consumer.cancel()
        if self._channel is not None and not self.in_flight:
            self._channel.drain()
            self._channel = None
        self._gateway_retry_open = False
        return waiting

    async def close(self) -> None:
        """
        Stop background work of an abandoned session.

        A confirmation already in flight is left to finish; an idle wait for
        the gateway and pending polls are cancelled.
        """
        self._poll_cancel.set()
        if self._close_gateway_wait() and self.phase == P.AWAITING_GATEWAY:
            logger.info(
                f"Abandoned checkout closed: event_id={self._event.id}, order_id={self.order_id}, "
                f"attempt={self.attempt}"
            )
            self.error = MSG_ABANDONED
            self.next_action = GatewayCancellation(MSG_ABANDONED).next_action
            self.checkout_options = None
            self._transition(P.CANCELLED)
