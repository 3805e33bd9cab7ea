import asyncio

from mandapam.core.errors import NetworkError
from mandapam.core.models import ProbeOutcome
from mandapam.core.status_probe import RegistrationStatusProbe

from fakes import PHONE, FakeMandapamApi, status_registered


# Purpose: Verify a registered answer carries the QR image from the envelope.
def test_registered_with_envelope_qr(free_api, sleeper) -> None:
    response = status_registered(101)
    response["qrDataURL"] = "data:image/png;base64,AAAA"
    free_api.status_responses = [response]
    probe = RegistrationStatusProbe(free_api, sleep=sleeper)

    result = asyncio.run(probe.check_status(7, PHONE))

    assert result.outcome == ProbeOutcome.REGISTERED
    assert result.is_paid
    assert result.registration.id == 101
    assert result.registration.qr_image == "data:image/png;base64,AAAA"


# Purpose: Verify an unreachable backend resolves to "unverified", never raising.
def test_backend_error_is_unverified(free_api, sleeper) -> None:
    free_api.status_responses = [NetworkError("Could not reach the server")]
    probe = RegistrationStatusProbe(free_api, sleep=sleeper)

    result = asyncio.run(probe.check_status(7, PHONE))

    assert result.outcome == ProbeOutcome.UNVERIFIED
    assert result.error == "Could not reach the server"
    assert not result.is_registered


# Purpose: Verify an incomplete phone is never sent to the backend.
def test_incomplete_phone_skips_lookup(free_api, sleeper) -> None:
    probe = RegistrationStatusProbe(free_api, sleep=sleeper)
    result = asyncio.run(probe.check_status(7, "98765"))
    assert result.outcome == ProbeOutcome.NOT_REGISTERED
    assert free_api.calls == []


# Purpose: Verify background checks are debounced and report progress flags.
def test_background_check_is_debounced(free_api) -> None:
    probe = RegistrationStatusProbe(free_api, debounce_ms=500)
    seen = []

    async def sleep(seconds):
        seen.append((seconds, probe.checking, probe.phone_locked))

    probe._sleep = sleep
    result = asyncio.run(probe.check_on_phone_change(7, PHONE))

    assert result.outcome == ProbeOutcome.NOT_REGISTERED
    assert seen == [(0.5, True, False)]
    assert not probe.checking


# Purpose: Verify only the newest phone edit reaches the backend.
def test_superseded_edit_is_discarded(free_api, sleeper) -> None:
    probe = RegistrationStatusProbe(free_api, sleep=sleeper)

    async def scenario():
        return await asyncio.gather(
            probe.check_on_phone_change(7, "9876543210"),
            probe.check_on_phone_change(7, "9876543211"),
        )

    first, second = asyncio.run(scenario())

    assert first is None
    assert second.outcome == ProbeOutcome.NOT_REGISTERED
    assert [c[2] for c in free_api.called("get_registration_status")] == ["9876543211"]


# Purpose: Verify a response for an edit that changed mid-flight is dropped.
def test_stale_response_is_dropped(sleeper) -> None:
    class EditDuringLookup(FakeMandapamApi):
        async def get_registration_status(self, event_id, phone):
            probe.invalidate()
            return status_registered()

    probe = RegistrationStatusProbe(EditDuringLookup(), sleep=sleeper)
    assert asyncio.run(probe.check_on_phone_change(7, PHONE)) is None
