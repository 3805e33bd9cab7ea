import asyncio

import pytest

from mandapam.core.errors import ValidationError
from mandapam.core.exhibitors import ExhibitorDirectory, validate_exhibitor
from mandapam.core.models import Event
from mandapam.domain.event_info import get_event_info

from fakes import FREE_EVENT, PAID_EVENT


# Purpose: Verify the display lines of a free, single-day event.
def test_free_event_info() -> None:
    info = get_event_info(Event.from_api(FREE_EVENT))
    assert info["isFree"] is True
    assert info["feeLabel"] == "Free"
    assert info["dateLine"] == "12 Jan 2026, 10:00 AM - 06:00 PM"
    assert info["locationLine"] == "Shivaji Nagar Grounds, Pune, Maharashtra - 411005"


# Purpose: Verify the fee label and fallbacks of a paid event.
def test_paid_event_info() -> None:
    info = get_event_info(Event.from_api({**PAID_EVENT, "city": "", "startDateTime": None}))
    assert info["isFree"] is False
    assert info["feeLabel"] == "₹500.00"
    assert info["dateLine"] == "TBA"
    assert info["locationLine"] == "Venue to be announced"


# Purpose: Verify exhibitor forms are checked before reaching the backend.
def test_exhibitor_validation() -> None:
    with pytest.raises(ValidationError) as exc:
        validate_exhibitor({"name": " ", "businessCategory": "Catering", "phone": "123"})
    assert set(exc.value.field_errors) == {"name", "businessCategory", "phone"}

    payload = validate_exhibitor({"name": "Shree Tents", "businessCategory": "Tent", "phone": "98765 43210"})
    assert payload["phone"] == "9876543210"
    assert validate_exhibitor({"name": "Shree Tents"})["businessCategory"] == "Other"


# Purpose: Verify exhibitor create, list and delete go through the backend.
def test_exhibitor_directory(free_api) -> None:
    directory = ExhibitorDirectory(free_api)

    async def scenario():
        created = await directory.create(7, {"name": "Shree Tents", "businessCategory": "Tent"})
        listed = await directory.list(7)
        await directory.delete(7, created.id)
        return created, listed, await directory.list(7)

    created, listed, after = asyncio.run(scenario())

    assert created.id == 1
    assert [e.name for e in listed] == ["Shree Tents"]
    assert after == []
