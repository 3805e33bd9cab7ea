from mandapam.core.normalizers import (
    clean_text,
    is_valid_email,
    mask_phone,
    normalize_phone,
    parse_association_id,
)


# Purpose: Verify formatting characters are stripped before the 10-digit check.
def test_normalize_phone_strips_formatting() -> None:
    assert normalize_phone("98765-43210") == "9876543210"
    assert normalize_phone("(987) 654 3210") == "9876543210"
    assert normalize_phone(" 9876543210 ") == "9876543210"


# Purpose: Verify anything other than exactly 10 digits is rejected.
def test_normalize_phone_rejects_wrong_length() -> None:
    assert normalize_phone("12345") is None
    assert normalize_phone("+91 98765 43210") is None
    assert normalize_phone("") is None
    assert normalize_phone(None) is None


# Purpose: Verify the email pattern accepts normal addresses only.
def test_email_validation() -> None:
    assert is_valid_email("ravi@example.com")
    assert is_valid_email("ravi.kumar+expo@mail.example.in")
    assert not is_valid_email("ravi@")
    assert not is_valid_email("ravi example.com")
    assert not is_valid_email(None)


# Purpose: Verify the association id is optional but numeric when present.
def test_parse_association_id() -> None:
    assert parse_association_id(None) == (None, True)
    assert parse_association_id("") == (None, True)
    assert parse_association_id("12") == (12, True)
    assert parse_association_id(12) == (12, True)
    assert parse_association_id("12a") == (None, False)
    assert parse_association_id(True) == (None, False)


# Purpose: Verify logs never carry the full phone number.
def test_mask_phone_hides_number() -> None:
    masked = mask_phone("98765-43210")
    assert masked.startswith("***3210#")
    assert "9876543210" not in masked
    assert mask_phone(None) == "none"


# Purpose: Verify blank text collapses to None.
def test_clean_text() -> None:
    assert clean_text("  Pune ") == "Pune"
    assert clean_text("   ") is None
    assert clean_text(None) is None
