"""
Boundary with the hosted checkout widget (Razorpay).

The widget runs out of process, in the visitor's browser. It is modelled as an
actor that emits one of three events into the orchestrator's channel. The
channel makes no at-most-once promise: the success handler may fire twice.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from mandapam.core.errors import ValidationError
from mandapam.core.models import CheckoutOrder, Event
from mandapam.core.registration_state import ValidatedRegistration

logger = logging.getLogger(__name__)


class GatewayEventKind(str, Enum):
    SUCCESS = "success"
    DISMISSED = "dismissed"
    FAILED = "failed"


@dataclass(frozen=True)
class GatewayEvent:
    kind: GatewayEventKind
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    signature: Optional[str] = None
    error_description: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_callback(cls, kind: str, payload: Optional[Dict[str, Any]] = None) -> "GatewayEvent":
        """
        Parse what the checkout widget handed to the browser callback.

        Raises:
            ValidationError: unknown event kind, or a success without the
                three razorpay_* fields
        """
        payload = payload or {}
        try:
            event_kind = GatewayEventKind(str(kind).lower())
        except ValueError as e:
            raise ValidationError({"event": "Event must be success, dismissed or failed"}) from e

        if event_kind == GatewayEventKind.SUCCESS:
            missing = [
                key for key in ("razorpay_order_id", "razorpay_payment_id", "razorpay_signature")
                if not payload.get(key)
            ]
            if missing:
                raise ValidationError({key: "Missing from payment response" for key in missing})

        error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
        return cls(
            kind=event_kind,
            order_id=payload.get("razorpay_order_id") or (error.get("metadata") or {}).get("order_id"),
            payment_id=payload.get("razorpay_payment_id") or (error.get("metadata") or {}).get("payment_id"),
            signature=payload.get("razorpay_signature"),
            error_description=error.get("description") or payload.get("description"),
            raw=dict(payload),
        )


class GatewayChannel:
    """
    Mailbox between the checkout widget and one registration attempt.

    Each emitted event comes with a future resolved once the orchestrator has
    handled it, so the HTTP caller can wait for the outcome.
    """

    def __init__(self, attempt: int):
        self.attempt = attempt
        self._queue: "asyncio.Queue[Tuple[GatewayEvent, asyncio.Future]]" = asyncio.Queue()

    def emit(self, event: GatewayEvent) -> asyncio.Future:
        done = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((event, done))
        return done

    async def receive(self) -> Tuple[GatewayEvent, asyncio.Future]:
        return await self._queue.get()

    def drain(self) -> None:
        """Resolve every undelivered event (the attempt is over)."""
        while not self._queue.empty():
            event, done = self._queue.get_nowait()
            if not done.done():
                done.set_result(False)


def build_checkout_options(
    order: CheckoutOrder,
    event: Event,
    registration: ValidatedRegistration,
    default_key: str = "",
) -> Dict[str, Any]:
    """
    Options handed to the checkout widget.

    Starts from the backend order descriptor and only fills what it left out.
    """
    options = dict(order.options)
    options.setdefault("key", order.key or default_key)
    options.setdefault("order_id", order.order_id)
    options.setdefault("amount", order.amount)
    options.setdefault("currency", order.currency)
    options.setdefault("name", "Mandapam Association")
    options.setdefault("description", f"Registration for {event.title}")

    prefill = dict(options.get("prefill") or {})
    prefill.setdefault("name", registration.name)
    prefill.setdefault("contact", registration.phone)
    if registration.email:
        prefill.setdefault("email", registration.email)
    options["prefill"] = prefill

    notes = dict(options.get("notes") or {})
    notes.setdefault("eventId", str(event.id))
    if order.member_id is not None:
        notes.setdefault("memberId", str(order.member_id))
    options["notes"] = notes
    return options
