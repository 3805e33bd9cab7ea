"""
QR check-in and the admin registrations board.
"""
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from mandapam.core.errors import CheckInConflict, RegistrationError, ServerRejection, ValidationError
from mandapam.core.models import (
    Member,
    PaymentStatus,
    Registration,
    RegistrationStatus,
    registrations_from_api,
)
from mandapam.core.qr import ensure_qr_image
from mandapam.core.status_probe import RegistrationStatusProbe

logger = logging.getLogger(__name__)

MSG_UNCHECK = "Un-check not supported"
MSG_NO_QR_TOKEN = "QR token not available for this registration"
MSG_TOKEN_REQUIRED = "QR token is required"

PAGE_SIZE = 10
ALL = "all"


@dataclass(frozen=True)
class CheckInResult:
    qr_token: str
    attended_at: Optional[str]
    already_attended: bool = False
    registration: Optional[Registration] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attendedAt": self.attended_at,
            "alreadyAttended": self.already_attended,
            "registration": self.registration.to_dict() if self.registration else None,
        }


def _attended_at(data: Dict[str, Any]) -> Optional[str]:
    registration = data.get("registration") if isinstance(data.get("registration"), dict) else {}
    return data.get("attendedAt") or registration.get("attendedAt")


def _looks_already_attended(error: ServerRejection) -> bool:
    if error.status_code not in (400, 409):
        return False
    text = f"{error.message} {error.payload.get('code', '')}".lower()
    return "already" in text and ("attend" in text or "check" in text)


class CheckInController:
    """
    Marks attendance from a QR token.

    Check-in is idempotent: presenting a token that was already used is a
    success carrying the original ``attendedAt``, never an error. Attendance
    is never reversed.
    """

    def __init__(self, api):
        self._api = api

    async def check_in(self, qr_token: Optional[str]) -> CheckInResult:
        token = (qr_token or "").strip()
        if not token:
            raise ValidationError({"qrToken": MSG_TOKEN_REQUIRED})

        try:
            data = await self._api.check_in(token)
        except ServerRejection as e:
            if not _looks_already_attended(e):
                raise
            # Another desk (or a second scan) got there first
            logger.info(f"Check-in repeated: token=...{token[-4:]}, status={e.status_code}")
            return CheckInResult(token, _attended_at(e.payload), already_attended=True)

        data = data if isinstance(data, dict) else {}
        registration_data = data.get("registration")
        registration = Registration.from_api(registration_data) if isinstance(registration_data, dict) else None
        already = bool(data.get("alreadyAttended") or data.get("alreadyCheckedIn"))
        result = CheckInResult(token, _attended_at(data), already_attended=already, registration=registration)
        logger.info(
            f"Check-in ok: token=...{token[-4:]}, attended_at={result.attended_at}, already={already}"
        )
        return result

    async def set_attendance(self, registration: Registration, attended: bool) -> Registration:
        """
        Admin attendance toggle. Only "mark attended" exists.

        Raises:
            CheckInConflict: attempt to un-mark attendance
            ValidationError: the registration has no QR token
        """
        if not attended:
            raise CheckInConflict(MSG_UNCHECK)
        if registration.attended_at:
            return registration
        if not registration.qr_token:
            raise ValidationError({"qrToken": MSG_NO_QR_TOKEN}, message=MSG_NO_QR_TOKEN)

        result = await self.check_in(registration.qr_token)
        return replace(
            registration,
            attended_at=result.attended_at or registration.attended_at,
            status=RegistrationStatus.ATTENDED,
        )


@dataclass
class RegistrationFilter:
    search: str = ""
    status: str = ALL
    payment: str = ALL

    def matches(self, registration: Registration) -> bool:
        if self.status != ALL and registration.status.value != self.status:
            return False
        if self.payment != ALL and registration.payment_status.value != self.payment:
            return False
        term = self.search.strip().lower()
        if not term:
            return True
        member = registration.member
        haystack = [
            registration.name,
            member.name if member else "",
            registration.phone,
            registration.business_name,
            member.business_name if member else "",
            registration.email or "",
        ]
        return any(term in (value or "").lower() for value in haystack)


def filter_registrations(items: List[Registration], flt: RegistrationFilter) -> List[Registration]:
    return [r for r in items if flt.matches(r)]


def registration_metrics(items: List[Registration]) -> Dict[str, int]:
    """Totals shown above the table; pending = registered but not paid."""
    return {
        "total": len(items),
        "paid": sum(1 for r in items if r.payment_status == PaymentStatus.PAID),
        "attended": sum(1 for r in items if r.attended_at or r.status == RegistrationStatus.ATTENDED),
        "pending": sum(
            1 for r in items
            if r.status == RegistrationStatus.REGISTERED and r.payment_status != PaymentStatus.PAID
        ),
    }


def paginate(items: List[Registration], page: int, page_size: int = PAGE_SIZE) -> Dict[str, Any]:
    total_pages = max(1, -(-len(items) // page_size))
    page = min(max(1, page), total_pages)
    start = (page - 1) * page_size
    return {
        "page": page,
        "pageSize": page_size,
        "totalPages": total_pages,
        "items": items[start:start + page_size],
    }


class RegistrationBoard:
    """
    Admin view of an event's registrations: list, detail drawer, cancel.
    """

    def __init__(self, api, probe: RegistrationStatusProbe):
        self._api = api
        self._probe = probe

    async def load(self, event_id: int) -> List[Registration]:
        items = await self._api.list_registrations(event_id)
        return registrations_from_api(items)

    async def find(self, event_id: int, registration_id: int) -> Registration:
        """Fresh registration from the backend, falling back to the list."""
        try:
            data = await self._api.get_registration(event_id, registration_id)
            if data:
                return Registration.from_api(data)
        except ServerRejection as e:
            if e.status_code != 404:
                raise
        for registration in await self.load(event_id):
            if registration.id == registration_id:
                return registration
        raise ServerRejection(404, "Registration not found")

    async def detail(self, event_id: int, registration_id: int) -> Registration:
        """
        Resolve everything the detail drawer shows.

        1. fresh registration
        2. member profile when the registration does not embed it
        3. QR fields through the status probe when still missing
        4. QR image rendered locally from the token as a last resort
        """
        registration = await self.find(event_id, registration_id)

        if registration.member is None and registration.member_id is not None:
            try:
                member = Member.from_api(await self._api.get_member(registration.member_id))
                registration = replace(
                    registration,
                    member=member,
                    name=registration.name or member.name,
                    phone=registration.phone or member.phone,
                    business_name=registration.business_name or member.business_name,
                    photo=registration.photo or member.profile_image,
                )
            except RegistrationError as e:
                logger.warning(f"Member lookup failed: member_id={registration.member_id}, error={e}")

        if not registration.has_qr and registration.phone:
            result = await self._probe.check_status(event_id, registration.phone)
            if result.is_registered and result.registration is not None:
                found = result.registration
                registration = replace(
                    registration,
                    qr_token=registration.qr_token or found.qr_token,
                    qr_image=registration.qr_image or found.qr_image,
                )

        return ensure_qr_image(registration)

    async def cancel(self, event_id: int, registration_id: int) -> Registration:
        registration = await self.find(event_id, registration_id)
        if registration.status == RegistrationStatus.CANCELLED:
            return registration
        if registration.attended_at:
            raise CheckInConflict("An attended registration cannot be cancelled")
        await self._api.cancel_registration(event_id, registration_id)
        logger.info(f"Registration cancelled: event_id={event_id}, registration_id={registration_id}")
        return replace(registration, status=RegistrationStatus.CANCELLED)
