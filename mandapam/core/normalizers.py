"""
Helpers to normalize and validate visitor input.
"""
import re
import hashlib
from typing import Optional, Tuple

EMAIL_PATTERN = re.compile(r"^[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}$", re.IGNORECASE)

PHONE_LENGTH = 10


def phone_digits(raw: Optional[str]) -> str:
    """
    Strip every non-digit character from a phone number.

    Examples:
        "98765-43210" → "9876543210"
        "(987) 654 3210" → "9876543210"
    """
    return re.sub(r"\D", "", raw or "")


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """
    Normalize a phone number to exactly 10 digits.

    Returns None when the digits left after stripping are not exactly 10.
    """
    digits = phone_digits(raw)
    if len(digits) != PHONE_LENGTH:
        return None
    return digits


def is_valid_email(raw: Optional[str]) -> bool:
    if not raw:
        return False
    return bool(EMAIL_PATTERN.match(raw.strip()))


def clean_text(raw: Optional[str]) -> Optional[str]:
    """Trim a free-text field, returning None when nothing is left."""
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def parse_association_id(raw) -> Tuple[Optional[int], bool]:
    """
    Parse an optional association id.

    Returns:
        (association_id, ok): ``(None, True)`` when absent, ``(None, False)``
        when present but not numeric.
    """
    if raw is None:
        return None, True
    if isinstance(raw, bool):
        return None, False
    if isinstance(raw, int):
        return raw, True
    text = str(raw).strip()
    if not text:
        return None, True
    if not text.isdigit():
        return None, False
    return int(text), True


def mask_phone(phone: Optional[str]) -> str:
    """
    Mask a phone number for logs: last 4 digits plus a short hash.

    Never log the full number.
    """
    digits = phone_digits(phone)
    if not digits:
        return "none"
    digest = hashlib.sha256(digits.encode()).hexdigest()[:8]
    return f"***{digits[-4:]}#{digest}"
