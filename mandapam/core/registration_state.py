"""
Explicit state machine of one registration attempt.

All phase changes go through ``next_phase``; anything not listed in
``ALLOWED_TRANSITIONS`` raises ``IllegalTransition``. ``CONFIRMING`` is never
re-entered within one attempt, which is what makes it the confirmation mutex.
"""
from enum import Enum
from dataclasses import dataclass, replace
from typing import Dict, FrozenSet, Optional

from mandapam.core.errors import IllegalTransition, ValidationError
from mandapam.core.models import BusinessType, PaymentMethod
from mandapam.core.normalizers import (
    clean_text,
    is_valid_email,
    normalize_phone,
    parse_association_id,
)


class RegistrationPhase(str, Enum):
    """
    Phases of the registration flow.
    """
    IDLE = "idle"
    VALIDATING = "validating"
    SUBMITTING = "submitting"
    ORDER_CREATED = "order_created"
    AWAITING_GATEWAY = "awaiting_gateway"
    CONFIRMING = "confirming"
    POLLING = "polling"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


P = RegistrationPhase

ALLOWED_TRANSITIONS: Dict[RegistrationPhase, FrozenSet[RegistrationPhase]] = {
    # IDLE/FAILED/CANCELLED → CONFIRMED: the status probe found an existing registration
    P.IDLE: frozenset({P.VALIDATING, P.CONFIRMED}),
    P.VALIDATING: frozenset({P.IDLE, P.SUBMITTING, P.FAILED}),
    P.SUBMITTING: frozenset({P.CONFIRMED, P.ORDER_CREATED, P.POLLING, P.FAILED}),
    P.ORDER_CREATED: frozenset({P.AWAITING_GATEWAY, P.FAILED}),
    P.AWAITING_GATEWAY: frozenset({P.CONFIRMING, P.CANCELLED, P.FAILED}),
    P.CONFIRMING: frozenset({P.CONFIRMED, P.POLLING, P.FAILED}),
    P.POLLING: frozenset({P.CONFIRMED, P.FAILED}),
    # FAILED → CONFIRMING: the visitor retried inside the still-open checkout after payment.failed
    P.FAILED: frozenset({P.VALIDATING, P.CONFIRMED, P.CONFIRMING}),
    P.CANCELLED: frozenset({P.VALIDATING, P.CONFIRMED}),
    P.CONFIRMED: frozenset(),
}

# Phases in which the form is editable and a new attempt may start
EDITABLE_PHASES = frozenset({P.IDLE, P.FAILED, P.CANCELLED})

# Phases in which a submission is in progress and the submit control is disabled
BUSY_PHASES = frozenset({
    P.VALIDATING, P.SUBMITTING, P.ORDER_CREATED,
    P.AWAITING_GATEWAY, P.CONFIRMING, P.POLLING,
})

# Phases with a backend call or poll running; an idle session in any other
# phase (including an abandoned checkout) may be expired
IN_FLIGHT_PHASES = frozenset({P.VALIDATING, P.SUBMITTING, P.ORDER_CREATED, P.CONFIRMING, P.POLLING})


def next_phase(current: RegistrationPhase, target: RegistrationPhase) -> RegistrationPhase:
    """
    Validate a phase change and return the new phase.

    Raises:
        IllegalTransition: when ``target`` is not reachable from ``current``
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        raise IllegalTransition(
            f"Cannot move registration from '{current.value}' to '{target.value}'"
        )
    return target


# Field-level messages shown next to each input
MSG_NAME = "Name must be at least 2 characters"
MSG_PHONE = "Phone must be exactly 10 digits"
MSG_EMAIL = "Invalid email address"
MSG_BUSINESS_NAME = "Business name must be at least 2 characters"
MSG_BUSINESS_TYPE = "Business type is required"
MSG_CITY = "City must be at least 2 characters"
MSG_ASSOCIATION = "Association must be numeric"
MSG_PHOTO = "Profile photo is required"
MSG_PAYMENT_METHOD = "Payment method must be cash or razorpay"


@dataclass
class RegistrationForm:
    """
    Data typed into the registration form.
    """
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    business_name: Optional[str] = None
    business_type: Optional[str] = None
    city: Optional[str] = None
    association_id: Optional[object] = None
    payment_method: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, object]) -> "RegistrationForm":
        return cls(
            name=data.get("name"),
            phone=data.get("phone"),
            email=data.get("email"),
            business_name=data.get("businessName"),
            business_type=data.get("businessType"),
            city=data.get("city"),
            association_id=data.get("associationId"),
            payment_method=data.get("paymentMethod"),
        )


@dataclass(frozen=True)
class ValidatedRegistration:
    """Normalized form, ready to be sent to the backend."""
    name: str
    phone: str
    email: Optional[str]
    business_name: str
    business_type: str
    city: Optional[str]
    association_id: Optional[int]
    payment_method: Optional[PaymentMethod] = None

    def to_payload(self, photo_url: Optional[str]) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "businessName": self.business_name,
            "businessType": self.business_type,
            "city": self.city,
            "associationId": self.association_id,
            "photo": photo_url,
        }
        if self.payment_method is not None:
            payload["paymentMethod"] = self.payment_method.value
        return payload

    def with_payment_method(self, method: Optional[PaymentMethod]) -> "ValidatedRegistration":
        return replace(self, payment_method=method)


def validate_registration_form(
    form: RegistrationForm,
    has_photo: bool,
    require_payment_method: bool = False,
) -> ValidatedRegistration:
    """
    Validate the form before any network call.

    The phone is normalized first (non-digits stripped), so "98765-43210"
    is checked and sent as "9876543210".

    Args:
        form: Raw form data
        has_photo: Whether a profile photo is attached
        require_payment_method: Manual registrations must choose cash or razorpay

    Returns:
        ValidatedRegistration with normalized values

    Raises:
        ValidationError: with one message per invalid field
    """
    errors: Dict[str, str] = {}

    name = clean_text(form.name)
    if not name or len(name) < 2:
        errors["name"] = MSG_NAME

    phone = normalize_phone(form.phone)
    if phone is None:
        errors["phone"] = MSG_PHONE

    email = clean_text(form.email)
    if email is not None and not is_valid_email(email):
        errors["email"] = MSG_EMAIL

    business_name = clean_text(form.business_name)
    if not business_name or len(business_name) < 2:
        errors["businessName"] = MSG_BUSINESS_NAME

    business_type = clean_text(form.business_type)
    if not business_type or business_type.lower() not in {t.value for t in BusinessType}:
        errors["businessType"] = MSG_BUSINESS_TYPE

    city = clean_text(form.city)
    if city is not None and len(city) < 2:
        errors["city"] = MSG_CITY

    association_id, association_ok = parse_association_id(form.association_id)
    if not association_ok:
        errors["associationId"] = MSG_ASSOCIATION

    payment_method: Optional[PaymentMethod] = None
    if require_payment_method:
        try:
            payment_method = PaymentMethod(str(form.payment_method or "").lower())
        except ValueError:
            errors["paymentMethod"] = MSG_PAYMENT_METHOD

    if not has_photo:
        errors["photo"] = MSG_PHOTO

    if errors:
        raise ValidationError(errors)

    # ASSERT: every required value was checked above
    return ValidatedRegistration(
        name=name,
        phone=phone,
        email=email,
        business_name=business_name,
        business_type=business_type.lower(),
        city=city,
        association_id=association_id,
        payment_method=payment_method,
    )
