"""
Public presentation of an event on the registration page.

Turns the raw event into the lines the page shows: when, where and how much.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from mandapam.core.models import Event


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def format_datetime(value: Optional[str]) -> str:
    """
    Format an ISO timestamp the way the page shows it.

    Examples:
        "2026-01-12T10:00:00Z" → "12 Jan 2026, 10:00 AM"
        None → "TBA"
    """
    moment = _parse_timestamp(value)
    if moment is None:
        return value or "TBA"
    return moment.strftime("%d %b %Y, %I:%M %p")


def date_line(event: Event) -> str:
    start = format_datetime(event.start_at)
    if not event.end_at:
        return start
    start_dt, end_dt = _parse_timestamp(event.start_at), _parse_timestamp(event.end_at)
    if start_dt and end_dt and start_dt.date() == end_dt.date():
        return f"{start} - {end_dt.strftime('%I:%M %p')}"
    return f"{start} - {format_datetime(event.end_at)}"


def location_line(event: Event) -> str:
    parts = [event.address, event.city, event.district, event.state]
    line = ", ".join(p.strip() for p in parts if p and p.strip())
    if event.pincode:
        line = f"{line} - {event.pincode}" if line else event.pincode
    return line or "Venue to be announced"


def fee_label(event: Event) -> str:
    if event.is_free:
        return "Free"
    return f"₹{event.registration_fee:,.2f}"


def get_event_info(event: Event) -> Dict[str, Any]:
    """
    Event details plus display lines for the public registration page.

    Returns:
        Dict with the event fields and:
        - dateLine, locationLine, feeLabel
        - isFree (drives the free vs. paid registration path)
    """
    info = event.to_dict()
    info.update({
        "dateLine": date_line(event),
        "locationLine": location_line(event),
        "feeLabel": fee_label(event),
        "isFree": event.is_free,
    })
    return info
