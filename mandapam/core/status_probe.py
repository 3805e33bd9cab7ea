"""
Registration status probe: "is this phone already registered for the event?"

Used in two ways:
- background check once the phone reaches 10 digits (debounced, silent on errors)
- recovery lookups after an ambiguous registration/payment outcome
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from mandapam.core.errors import RegistrationError
from mandapam.core.models import ProbeOutcome, Registration, StatusProbeResult
from mandapam.core.normalizers import mask_phone, normalize_phone
from mandapam.core.retry import Sleep

logger = logging.getLogger(__name__)


def _result_from_response(data: Dict[str, Any]) -> StatusProbeResult:
    if not data.get("isRegistered"):
        return StatusProbeResult(outcome=ProbeOutcome.NOT_REGISTERED)
    registration_data = data.get("registration") or {}
    registration = Registration.from_api(registration_data, envelope=data) if registration_data else None
    return StatusProbeResult(outcome=ProbeOutcome.REGISTERED, registration=registration)


class RegistrationStatusProbe:
    """
    Looks up an existing registration by (event id, phone).

    Background checks are keyed by a generation counter: every phone change
    bumps it, and a response whose generation is no longer current is
    discarded, so a slow lookup for an old number never overwrites a newer one.
    """

    def __init__(self, api, debounce_ms: int = 500, sleep: Sleep = asyncio.sleep):
        self._api = api
        self._debounce_s = debounce_ms / 1000.0
        self._sleep = sleep
        self._generation = 0
        self._pending = 0
        self._in_flight = 0

    @property
    def checking(self) -> bool:
        """True while a background check is pending or in flight; submission waits."""
        return self._pending > 0 or self._in_flight > 0

    @property
    def phone_locked(self) -> bool:
        """True while a lookup is on the wire; the phone field is disabled."""
        return self._in_flight > 0

    def invalidate(self) -> None:
        """Discard whatever background check is pending."""
        self._generation += 1

    async def check_status(self, event_id: int, phone: str) -> StatusProbeResult:
        """
        Single lookup against the backend.

        Never raises for backend errors: an unreachable backend resolves to
        ``UNVERIFIED`` so the caller decides whether to stay silent or tell
        the visitor the status could not be verified.
        """
        normalized = normalize_phone(phone)
        if normalized is None:
            return StatusProbeResult(outcome=ProbeOutcome.NOT_REGISTERED)

        try:
            data = await self._api.get_registration_status(event_id, normalized)
        except RegistrationError as e:
            logger.warning(
                f"Status probe failed: event_id={event_id}, phone={mask_phone(normalized)}, "
                f"error={type(e).__name__}: {e}"
            )
            return StatusProbeResult(outcome=ProbeOutcome.UNVERIFIED, error=e.message)

        result = _result_from_response(data if isinstance(data, dict) else {})
        logger.info(
            f"Status probe: event_id={event_id}, phone={mask_phone(normalized)}, outcome={result.outcome.value}"
        )
        return result

    async def check_on_phone_change(self, event_id: int, phone: str) -> Optional[StatusProbeResult]:
        """
        Debounced background check triggered by a phone edit.

        Returns:
            The probe result, or None when the phone is not 10 digits yet or
            the check was superseded by a newer edit.
        """
        self._generation += 1
        generation = self._generation

        if normalize_phone(phone) is None:
            return None

        self._pending += 1
        try:
            await self._sleep(self._debounce_s)
        finally:
            self._pending -= 1
        if generation != self._generation:
            return None

        self._in_flight += 1
        try:
            result = await self.check_status(event_id, phone)
        finally:
            self._in_flight -= 1

        if generation != self._generation:
            logger.debug(f"Discarding stale status probe: event_id={event_id}, generation={generation}")
            return None
        return result
