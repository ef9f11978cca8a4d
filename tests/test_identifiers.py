import pytest

from app.core.errors import ValidationError
from app.utils.identifiers import Identifier, is_email, mask_identifier, normalize_identifier


def test_email_is_trimmed_and_lowercased():
    assert normalize_identifier(email="  Alice@Example.COM ") == Identifier("alice@example.com", "email")


def test_phone_is_stripped_of_formatting():
    assert normalize_identifier(phone="+1 (555) 123-4567") == Identifier("+15551234567", "phone")
    assert normalize_identifier(phone="555.123.4567") == Identifier("5551234567", "phone")


@pytest.mark.parametrize(
    "kwargs",
    [
        {},
        {"email": "", "phone": ""},
        {"email": "a@b.co", "phone": "+15551234567"},
        {"email": "no-at-sign"},
        {"email": "a@b"},
        {"email": "x" * 250 + "@b.co"},
        {"phone": "0123"},
        {"phone": "+1234567890123456"},
        {"phone": "call-me"},
    ],
)
def test_invalid_identifiers_rejected(kwargs):
    with pytest.raises(ValidationError):
        normalize_identifier(**kwargs)


def test_is_email():
    assert is_email("bob@example.com")
    assert not is_email("+15551234567")
    assert not is_email("")


def test_mask_identifier_hides_most_of_the_value():
    assert mask_identifier("alice@example.com") == "a***@example.com"
    assert mask_identifier("+15551234567") == "***4567"
    assert mask_identifier("123") == "***"
    assert mask_identifier(None) == "-"
