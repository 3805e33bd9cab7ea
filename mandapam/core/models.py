"""
Domain models consumed from the Mandapam backend.

The backend is not always consistent with field names (camelCase aliases,
embedded vs. flat member data, several spellings of the QR image field), so
every model exposes a ``from_api`` constructor that tolerates those aliases.
"""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional


class RegistrationStatus(str, Enum):
    REGISTERED = "registered"
    ATTENDED = "attended"
    CANCELLED = "cancelled"
    PENDING = "pending"


class PaymentStatus(str, Enum):
    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"


class BusinessType(str, Enum):
    CATERING = "catering"
    SOUND = "sound"
    MANDAP = "mandap"
    LIGHT = "light"
    DECORATOR = "decorator"
    PHOTOGRAPHY = "photography"
    VIDEOGRAPHY = "videography"
    TRANSPORT = "transport"
    OTHER = "other"


class ExhibitorCategory(str, Enum):
    FLOWER_DECORATION = "Flower Decoration"
    TENT = "Tent"
    LIGHTING = "Lighting"
    SOUND = "Sound"
    FURNITURE = "Furniture"
    OTHER = "Other"


class PaymentMethod(str, Enum):
    """Payment method of a staff-assisted (manual) registration."""
    CASH = "cash"
    RAZORPAY = "razorpay"


QR_IMAGE_ALIASES = ("qrDataURL", "qrCode", "qrCodeUrl", "qrCodeDataURL")


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _to_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _to_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _enum_or(enum_cls, value: Any, default):
    try:
        return enum_cls(str(value).lower()) if value is not None else default
    except ValueError:
        return default


@dataclass(frozen=True)
class Event:
    """Event details, read-only from the registration flow's perspective."""
    id: int
    title: str
    description: str = ""
    start_at: Optional[str] = None
    end_at: Optional[str] = None
    address: str = ""
    city: str = ""
    state: str = ""
    district: str = ""
    pincode: str = ""
    registration_fee: float = 0.0
    image: Optional[str] = None

    @property
    def is_free(self) -> bool:
        return self.registration_fee <= 0

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Event":
        return cls(
            id=int(data["id"]),
            title=_first(data, "title", "name") or "",
            description=data.get("description") or "",
            start_at=_first(data, "startDateTime", "startDate", "start_at"),
            end_at=_first(data, "endDateTime", "endDate", "end_at"),
            address=data.get("address") or "",
            city=data.get("city") or "",
            state=data.get("state") or "",
            district=data.get("district") or "",
            pincode=str(data.get("pincode") or ""),
            registration_fee=_to_float(_first(data, "registrationFee", "fee")),
            image=_first(data, "imageURL", "image"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "startDateTime": self.start_at,
            "endDateTime": self.end_at,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "district": self.district,
            "pincode": self.pincode,
            "registrationFee": self.registration_fee,
            "image": self.image,
        }


@dataclass(frozen=True)
class Member:
    """Attendee profile, created or reused as a side effect of registration."""
    id: Optional[int]
    name: str = ""
    phone: str = ""
    email: Optional[str] = None
    business_name: str = ""
    business_type: Optional[str] = None
    city: Optional[str] = None
    association_id: Optional[int] = None
    profile_image: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Member":
        return cls(
            id=_to_int(data.get("id")),
            name=_first(data, "name", "memberName") or "",
            phone=str(data.get("phone") or ""),
            email=data.get("email") or None,
            business_name=data.get("businessName") or "",
            business_type=data.get("businessType") or None,
            city=data.get("city") or None,
            association_id=_to_int(data.get("associationId")),
            profile_image=_first(data, "profileImageURL", "profileImage", "photo"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "businessName": self.business_name,
            "businessType": self.business_type,
            "city": self.city,
            "associationId": self.association_id,
            "profileImage": self.profile_image,
        }


@dataclass(frozen=True)
class Registration:
    """
    Record linking a member to an event, with payment and attendance state.

    ``attended_at`` is append-only: once set it is never cleared.
    """
    id: Optional[int]
    event_id: Optional[int] = None
    member_id: Optional[int] = None
    status: RegistrationStatus = RegistrationStatus.REGISTERED
    payment_status: PaymentStatus = PaymentStatus.PENDING
    amount_paid: float = 0.0
    registered_at: Optional[str] = None
    attended_at: Optional[str] = None
    qr_token: Optional[str] = None
    qr_image: Optional[str] = None
    association_id: Optional[int] = None
    name: str = ""
    phone: str = ""
    email: Optional[str] = None
    business_name: str = ""
    business_type: Optional[str] = None
    photo: Optional[str] = None
    member: Optional[Member] = None

    @property
    def has_qr(self) -> bool:
        return bool(self.qr_token or self.qr_image)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    @classmethod
    def from_api(cls, data: Dict[str, Any], envelope: Optional[Dict[str, Any]] = None) -> "Registration":
        """
        Build a registration from a backend payload.

        Args:
            data: The registration object itself
            envelope: The surrounding response (may carry ``member`` and the
                QR image next to the registration instead of inside it)
        """
        envelope = envelope or {}
        member_data = data.get("member") or envelope.get("member")
        member = Member.from_api(member_data) if isinstance(member_data, dict) else None

        qr_image = _first(data, *QR_IMAGE_ALIASES) or _first(envelope, *QR_IMAGE_ALIASES)
        return cls(
            id=_to_int(data.get("id")),
            event_id=_to_int(data.get("eventId")),
            member_id=_to_int(data.get("memberId")) or (member.id if member else None),
            status=_enum_or(RegistrationStatus, data.get("status"), RegistrationStatus.REGISTERED),
            payment_status=_enum_or(PaymentStatus, data.get("paymentStatus"), PaymentStatus.PENDING),
            amount_paid=_to_float(data.get("amountPaid")),
            registered_at=_first(data, "registeredAt", "createdAt"),
            attended_at=data.get("attendedAt") or None,
            qr_token=_first(data, "qrToken") or _first(envelope, "qrToken"),
            qr_image=qr_image,
            association_id=_to_int(data.get("associationId")),
            name=_first(data, "name", "memberName") or (member.name if member else ""),
            phone=str(_first(data, "phone", "memberPhone") or (member.phone if member else "")),
            email=data.get("email") or (member.email if member else None),
            business_name=data.get("businessName") or (member.business_name if member else ""),
            business_type=data.get("businessType") or (member.business_type if member else None),
            photo=_first(data, "photo", "profileImage") or (member.profile_image if member else None),
            member=member,
        )

    def merged_with(self, **changes: Any) -> "Registration":
        """Return a copy, filling only the fields passed with a value."""
        return replace(self, **{k: v for k, v in changes.items() if v not in (None, "")})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "eventId": self.event_id,
            "memberId": self.member_id,
            "status": self.status.value,
            "paymentStatus": self.payment_status.value,
            "amountPaid": self.amount_paid,
            "registeredAt": self.registered_at,
            "attendedAt": self.attended_at,
            "qrToken": self.qr_token,
            "qrDataURL": self.qr_image,
            "associationId": self.association_id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "businessName": self.business_name,
            "businessType": self.business_type,
            "photo": self.photo,
            "member": self.member.to_dict() if self.member else None,
        }


@dataclass(frozen=True)
class Association:
    id: int
    name: str
    city: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Association":
        return cls(id=int(data["id"]), name=data.get("name") or "", city=data.get("city") or "")

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "city": self.city}


@dataclass(frozen=True)
class Exhibitor:
    """Independent aggregate, CRUD only."""
    id: Optional[int]
    event_id: Optional[int]
    name: str
    business_category: str
    phone: Optional[str] = None
    description: Optional[str] = None
    logo: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Exhibitor":
        return cls(
            id=_to_int(data.get("id")),
            event_id=_to_int(data.get("eventId")),
            name=data.get("name") or "",
            business_category=data.get("businessCategory") or ExhibitorCategory.OTHER.value,
            phone=data.get("phone") or None,
            description=data.get("description") or None,
            logo=data.get("logo") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "eventId": self.event_id,
            "name": self.name,
            "businessCategory": self.business_category,
            "phone": self.phone,
            "description": self.description,
            "logo": self.logo,
        }


class ProbeOutcome(str, Enum):
    REGISTERED = "registered"
    NOT_REGISTERED = "not_registered"
    UNVERIFIED = "unverified"  # backend unreachable, nothing asserted


@dataclass(frozen=True)
class StatusProbeResult:
    """Answer of the registration status probe for (event, phone)."""
    outcome: ProbeOutcome
    registration: Optional[Registration] = None
    error: Optional[str] = None

    @property
    def is_registered(self) -> bool:
        return self.outcome == ProbeOutcome.REGISTERED

    @property
    def is_paid(self) -> bool:
        return self.is_registered and self.registration is not None and self.registration.is_paid


@dataclass
class CheckoutOrder:
    """Gateway order descriptor returned by the initiate call for paid events."""
    order_id: str
    amount: int
    currency: str = "INR"
    key: Optional[str] = None
    member_id: Optional[int] = None
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_initiate_response(cls, data: Dict[str, Any]) -> "CheckoutOrder":
        options = dict(data.get("paymentOptions") or {})
        member = data.get("member") or {}
        return cls(
            order_id=str(_first(options, "order_id", "orderId", "id") or ""),
            amount=int(_to_float(options.get("amount"))),
            currency=options.get("currency") or "INR",
            key=options.get("key"),
            member_id=_to_int(member.get("id")) or _to_int(data.get("memberId")),
            options=options,
        )


def registrations_from_api(items: List[Dict[str, Any]]) -> List[Registration]:
    return [Registration.from_api(item) for item in items if isinstance(item, dict)]
