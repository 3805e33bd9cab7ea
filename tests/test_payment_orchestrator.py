import asyncio
from dataclasses import replace

import pytest

from mandapam.config import AppConfig
from mandapam.core.errors import IllegalTransition, NetworkError, ServerRejection, ValidationError
from mandapam.core.models import Event
from mandapam.core.pass_delivery import DeliveryStatus
from mandapam.core.payment_orchestrator import (
    MSG_ABANDONED,
    MSG_CANCELLED,
    MSG_REGISTRATION_UNCONFIRMED,
    MSG_UNREACHABLE,
    MSG_UPLOAD_FAILED,
    PaymentOrchestrator,
)
from mandapam.core.photo import PhotoCaptureAndOptimizer
from mandapam.core.registration_state import RegistrationForm, RegistrationPhase as P
from mandapam.core.status_probe import RegistrationStatusProbe
from mandapam.infra.checkout_gateway import GatewayEvent

from fakes import (
    PHONE,
    UPLOADED_PHOTO_URL,
    VALID_FORM,
    jpeg_bytes,
    order_response,
    status_registered,
    success_payload,
)


def make_orchestrator(api, config, sleeper) -> PaymentOrchestrator:
    event = Event.from_api(api.event)
    probe = RegistrationStatusProbe(api, sleep=sleeper)
    return PaymentOrchestrator(api, event, probe, PhotoCaptureAndOptimizer(), config, sleep=sleeper)


def form(**overrides) -> RegistrationForm:
    return RegistrationForm.from_payload({**VALID_FORM, **overrides})


def photo():
    return PhotoCaptureAndOptimizer().capture("ravi.jpg", "image/jpeg", jpeg_bytes())


def success(order_id="order_1", payment_id="pay_1") -> GatewayEvent:
    return GatewayEvent.from_callback("success", success_payload(order_id, payment_id))


# Purpose: Verify the free path confirms in one call and renders the QR locally.
def test_free_event_confirms(free_api, config, sleeper) -> None:
    orchestrator = make_orchestrator(free_api, config, sleeper)

    asyncio.run(orchestrator.submit(form(), photo()))

    assert orchestrator.phase == P.CONFIRMED
    assert orchestrator.registration.id == 101
    assert orchestrator.registration.phone == PHONE
    assert orchestrator.registration.qr_image.startswith("data:image/png;base64,")
    assert orchestrator.delivery.status == DeliveryStatus.PENDING
    assert orchestrator.is_new_registration

    (_, event_id, payload), = free_api.called("initiate_registration")
    assert event_id == 7
    assert payload["phone"] == PHONE
    assert payload["photo"] == UPLOADED_PHOTO_URL
    assert payload["associationId"] == 12


# Purpose: Verify validation failures make no network call and return to IDLE.
def test_validation_failure_makes_no_calls(free_api, config, sleeper) -> None:
    orchestrator = make_orchestrator(free_api, config, sleeper)

    with pytest.raises(ValidationError) as exc:
        asyncio.run(orchestrator.submit(form(phone="12345"), None))

    assert set(exc.value.field_errors) == {"phone", "photo"}
    assert orchestrator.phase == P.IDLE
    assert orchestrator.field_errors == exc.value.field_errors
    assert free_api.calls == []


# Purpose: Verify the paid path waits for the gateway, then confirms once.
def test_paid_event_confirms_after_gateway_success(paid_api, config, sleeper) -> None:
    orchestrator = make_orchestrator(paid_api, config, sleeper)

    async def scenario():
        await orchestrator.submit(form(), photo())
        assert orchestrator.phase == P.AWAITING_GATEWAY
        assert orchestrator.checkout_options["order_id"] == "order_1"
        assert orchestrator.checkout_options["prefill"]["contact"] == PHONE
        assert await orchestrator.deliver_gateway_event(success())

    asyncio.run(scenario())

    assert orchestrator.phase == P.CONFIRMED
    assert orchestrator.registration.id == 202
    assert orchestrator.checkout_options is None
    (_, _, payload), = paid_api.called("confirm_payment")
    assert payload == {
        "memberId": 55,
        "razorpay_order_id": "order_1",
        "razorpay_payment_id": "pay_1",
        "razorpay_signature": "sig_abc",
    }


# Purpose: Verify a duplicated success callback yields exactly one confirmation.
def test_duplicate_success_confirms_once(paid_api, config, sleeper) -> None:
    orchestrator = make_orchestrator(paid_api, config, sleeper)

    async def scenario():
        await orchestrator.submit(form(), photo())
        handled = await asyncio.gather(
            orchestrator.deliver_gateway_event(success()),
            orchestrator.deliver_gateway_event(success()),
        )
        late = await orchestrator.deliver_gateway_event(success())
        return handled, late

    handled, late = asyncio.run(scenario())

    assert handled == [True, False]
    assert late is False
    assert orchestrator.confirm_calls == 1
    assert len(paid_api.called("confirm_payment")) == 1
    assert orchestrator.phase == P.CONFIRMED


# Purpose: Verify dismissal cancels, and a stale success for the old order is ignored.
def test_dismiss_then_resubmit(paid_api, config, sleeper) -> None:
    paid_api.initiate_responses = [order_response("order_1"), order_response("order_2")]
    orchestrator = make_orchestrator(paid_api, config, sleeper)

    async def scenario():
        await orchestrator.submit(form(), photo())
        assert await orchestrator.deliver_gateway_event(GatewayEvent.from_callback("dismissed"))
        assert orchestrator.phase == P.CANCELLED
        assert orchestrator.error == MSG_CANCELLED

        await orchestrator.submit(form(), photo())
        assert orchestrator.attempt == 2
        assert orchestrator.order_id == "order_2"
        stale = await orchestrator.deliver_gateway_event(success("order_1", "pay_old"))
        fresh = await orchestrator.deliver_gateway_event(success("order_2", "pay_2"))
        return stale, fresh

    stale, fresh = asyncio.run(scenario())

    assert (stale, fresh) == (False, True)
    assert orchestrator.phase == P.CONFIRMED
    assert [c[2]["razorpay_order_id"] for c in paid_api.called("confirm_payment")] == ["order_2"]


# Purpose: Verify a gateway failure ends the attempt with its description.
def test_gateway_failure(paid_api, config, sleeper) -> None:
    orchestrator = make_orchestrator(paid_api, config, sleeper)
    failure = GatewayEvent.from_callback(
        "failed",
        {"error": {"description": "Card declined", "metadata": {"order_id": "order_1", "payment_id": "pay_9"}}},
    )

    async def scenario():
        await orchestrator.submit(form(), photo())
        return await orchestrator.deliver_gateway_event(failure)

    assert asyncio.run(scenario())
    assert orchestrator.phase == P.FAILED
    assert orchestrator.error == "Card declined"
    assert paid_api.called("confirm_payment") == []


def card_declined(payment_id="pay_0") -> GatewayEvent:
    return GatewayEvent.from_callback(
        "failed",
        {"error": {"description": "Card declined", "metadata": {"order_id": "order_1", "payment_id": payment_id}}},
    )


# Purpose: Verify a payment retried inside the checkout after a failure is still confirmed.
def test_success_after_gateway_failure_confirms(paid_api, config, sleeper) -> None:
    orchestrator = make_orchestrator(paid_api, config, sleeper)

    async def scenario():
        await orchestrator.submit(form(), photo())
        assert await orchestrator.deliver_gateway_event(card_declined())
        assert orchestrator.phase == P.FAILED
        assert await orchestrator.deliver_gateway_event(card_declined("pay_1"))
        assert orchestrator.phase == P.FAILED
        return await orchestrator.deliver_gateway_event(success("order_1", "pay_2"))

    assert asyncio.run(scenario()) is True
    assert orchestrator.phase == P.CONFIRMED
    assert orchestrator.registration.id == 202
    (_, _, payload), = paid_api.called("confirm_payment")
    assert payload["razorpay_payment_id"] == "pay_2"


# Purpose: Verify closing the checkout after a failure ends the wait for callbacks.
def test_checkout_closed_after_gateway_failure(paid_api, config, sleeper) -> None:
    orchestrator = make_orchestrator(paid_api, config, sleeper)

    async def scenario():
        await orchestrator.submit(form(), photo())
        await orchestrator.deliver_gateway_event(card_declined())
        closed = await orchestrator.deliver_gateway_event(GatewayEvent.from_callback("dismissed"))
        late = await orchestrator.deliver_gateway_event(success("order_1", "pay_2"))
        return closed, late

    assert asyncio.run(scenario()) == (True, False)
    assert orchestrator.phase == P.FAILED
    assert orchestrator.error == "Card declined"
    assert paid_api.called("confirm_payment") == []


# Purpose: Verify a new submission after a gateway failure stops listening to the old order.
def test_resubmit_after_gateway_failure(paid_api, config, sleeper) -> None:
    paid_api.initiate_responses = [order_response("order_1"), order_response("order_2")]
    orchestrator = make_orchestrator(paid_api, config, sleeper)

    async def scenario():
        await orchestrator.submit(form(), photo())
        await orchestrator.deliver_gateway_event(card_declined())
        await orchestrator.submit(form(), photo())
        stale = await orchestrator.deliver_gateway_event(success("order_1", "pay_old"))
        fresh = await orchestrator.deliver_gateway_event(success("order_2", "pay_2"))
        return stale, fresh

    assert asyncio.run(scenario()) == (False, True)
    assert [c[2]["razorpay_order_id"] for c in paid_api.called("confirm_payment")] == ["order_2"]


# Purpose: Verify an existing registration found later never shows the photo of a failed attempt.
def test_adopted_registration_keeps_server_photo(free_api, config, sleeper) -> None:
    free_api.initiate_responses = [ServerRejection(400, "Registration closed")]
    free_api.status_responses = [status_registered(101)]
    orchestrator = make_orchestrator(free_api, config, sleeper)

    async def scenario():
        await orchestrator.submit(form(), photo())
        assert orchestrator.phase == P.FAILED
        result = await orchestrator._probe.check_status(7, PHONE)
        return orchestrator.adopt_existing(result)

    assert asyncio.run(scenario()) is True
    assert orchestrator.phase == P.CONFIRMED
    assert orchestrator.registration.id == 101
    assert orchestrator.registration.photo is None


# Purpose: Verify an unreachable confirmation polls 6 times, 2s apart, then fails clearly.
def test_confirmation_unreachable_polls_then_fails(paid_api, config, sleeper) -> None:
    paid_api.confirm_responses = [NetworkError("Could not reach the server")] * 3
    orchestrator = make_orchestrator(paid_api, config, sleeper)

    async def scenario():
        await orchestrator.submit(form(), photo())
        await orchestrator.deliver_gateway_event(success())

    asyncio.run(scenario())

    assert orchestrator.phase == P.FAILED
    assert orchestrator.confirm_calls == 3
    assert orchestrator.polls == 6
    assert len(paid_api.called("get_registration_status")) == 6
    assert sleeper.calls.count(2.0) == 6
    assert "pay_1" in orchestrator.error
    assert orchestrator.next_action == "check your registration status"


# Purpose: Verify polling finds a payment the backend recorded despite the timeout.
def test_confirmation_recovered_by_polling(paid_api, sleeper) -> None:
    config = AppConfig(confirm_max_retries=1)
    paid_api.confirm_responses = [NetworkError("timeout"), NetworkError("timeout")]
    paid_api.status_responses = [
        {"isRegistered": False},
        status_registered(202, payment_status="pending"),
        status_registered(202, payment_status="paid"),
    ]
    orchestrator = make_orchestrator(paid_api, config, sleeper)

    async def scenario():
        await orchestrator.submit(form(), photo())
        await orchestrator.deliver_gateway_event(success())

    asyncio.run(scenario())

    assert orchestrator.phase == P.CONFIRMED
    assert orchestrator.confirm_calls == 2
    assert orchestrator.polls == 3
    assert orchestrator.registration.id == 202
    assert orchestrator.registration.is_paid


# Purpose: Verify a signature rejection is not retried and keeps the backend message.
def test_confirmation_rejected(paid_api, config, sleeper) -> None:
    paid_api.confirm_responses = [ServerRejection(400, "Invalid payment signature")]
    orchestrator = make_orchestrator(paid_api, config, sleeper)

    async def scenario():
        await orchestrator.submit(form(), photo())
        await orchestrator.deliver_gateway_event(success())

    asyncio.run(scenario())

    assert orchestrator.phase == P.FAILED
    assert orchestrator.error == "Invalid payment signature"
    assert orchestrator.confirm_calls == 1
    assert "pay_1" in orchestrator.next_action
    assert paid_api.called("get_registration_status") == []


# Purpose: Verify a transient 503 on confirmation is retried.
def test_confirmation_retried_on_503(paid_api, config, sleeper) -> None:
    paid_api.confirm_responses = [ServerRejection(503, "Service unavailable")]
    orchestrator = make_orchestrator(paid_api, config, sleeper)

    async def scenario():
        await orchestrator.submit(form(), photo())
        await orchestrator.deliver_gateway_event(success())

    asyncio.run(scenario())

    assert orchestrator.phase == P.CONFIRMED
    assert orchestrator.confirm_calls == 2


# Purpose: Verify the free path polls after a network error instead of re-registering.
def test_free_network_error_recovered_by_polling(free_api, config, sleeper) -> None:
    free_api.initiate_responses = [NetworkError("timeout")]
    free_api.status_responses = [{"isRegistered": False}, status_registered(101)]
    orchestrator = make_orchestrator(free_api, config, sleeper)

    asyncio.run(orchestrator.submit(form(), photo()))

    assert orchestrator.phase == P.CONFIRMED
    assert orchestrator.polls == 2
    assert len(free_api.called("initiate_registration")) == 1


# Purpose: Verify the next attempt looks up the status before registering again.
def test_free_retry_probes_first(free_api, config, sleeper) -> None:
    free_api.initiate_responses = [NetworkError("timeout")]
    free_api.status_responses = [{"isRegistered": False}] * 6 + [status_registered(101)]
    orchestrator = make_orchestrator(free_api, config, sleeper)

    async def scenario():
        await orchestrator.submit(form(), photo())
        assert orchestrator.phase == P.FAILED
        assert orchestrator.error == MSG_REGISTRATION_UNCONFIRMED
        await orchestrator.submit(form(), photo())

    asyncio.run(scenario())

    assert orchestrator.phase == P.CONFIRMED
    assert len(free_api.called("initiate_registration")) == 1
    assert len(free_api.called("get_registration_status")) == 7


# Purpose: Verify a paid initiation failure fails fast; no money has moved yet.
def test_paid_initiate_unreachable(paid_api, config, sleeper) -> None:
    paid_api.initiate_responses = [NetworkError("timeout")]
    orchestrator = make_orchestrator(paid_api, config, sleeper)

    asyncio.run(orchestrator.submit(form(), photo()))

    assert orchestrator.phase == P.FAILED
    assert orchestrator.error == MSG_UNREACHABLE
    assert paid_api.called("get_registration_status") == []


# Purpose: Verify a backend rejection message reaches the visitor verbatim.
def test_initiate_rejected(free_api, config, sleeper) -> None:
    free_api.initiate_responses = [ServerRejection(400, "Registration is closed for this event")]
    orchestrator = make_orchestrator(free_api, config, sleeper)

    asyncio.run(orchestrator.submit(form(), photo()))

    assert orchestrator.phase == P.FAILED
    assert orchestrator.error == "Registration is closed for this event"


# Purpose: Verify an upload failure stops before registering.
def test_upload_failure(free_api, config, sleeper) -> None:
    free_api.upload_error = ServerRejection(500, "disk full")
    orchestrator = make_orchestrator(free_api, config, sleeper)

    asyncio.run(orchestrator.submit(form(), photo()))

    assert orchestrator.phase == P.FAILED
    assert orchestrator.error == MSG_UPLOAD_FAILED
    assert free_api.called("initiate_registration") == []


# Purpose: Verify an image that cannot be processed reports the upload error message.
def test_unprocessable_photo(free_api, config, sleeper) -> None:
    orchestrator = make_orchestrator(free_api, config, sleeper)
    broken = replace(photo(), data=b"garbage")

    asyncio.run(orchestrator.submit(form(), broken))

    assert orchestrator.phase == P.FAILED
    assert orchestrator.error == "The selected photo could not be processed. Please choose another image."
    assert free_api.called("upload_profile_image") == []


# Purpose: Verify a second submission is refused while one is in progress.
def test_submit_while_busy(paid_api, config, sleeper) -> None:
    orchestrator = make_orchestrator(paid_api, config, sleeper)

    async def scenario():
        await orchestrator.submit(form(), photo())
        with pytest.raises(IllegalTransition):
            await orchestrator.submit(form(), photo())
        await orchestrator.close()

    asyncio.run(scenario())
    assert orchestrator.attempt == 1


# Purpose: Verify closing an abandoned checkout cancels it and ignores later callbacks.
def test_close_while_awaiting_gateway(paid_api, config, sleeper) -> None:
    orchestrator = make_orchestrator(paid_api, config, sleeper)

    async def scenario():
        await orchestrator.submit(form(), photo())
        await orchestrator.close()
        await asyncio.sleep(0)
        return await orchestrator.deliver_gateway_event(success())

    assert asyncio.run(scenario()) is False
    assert orchestrator.phase == P.CANCELLED
    assert orchestrator.error == MSG_ABANDONED
    assert orchestrator.checkout_options is None
    assert paid_api.called("confirm_payment") == []
