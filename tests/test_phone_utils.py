"""Tests for destination-number normalisation and masking."""

import pytest

from roadassist.errors import InvalidNumberError
from roadassist.phone_utils import mask_phone, normalise_phone


class TestNormalisePhone:
    """Test phone number normalisation to E.164."""

    def test_international_with_plus(self):
        assert normalise_phone("+15551234567") == "+15551234567"

    def test_digits_without_plus_are_international(self):
        assert normalise_phone("15551234567") == "+15551234567"

    def test_with_punctuation(self):
        assert normalise_phone("+1 (555) 123-4567") == "+15551234567"

    def test_national_number_uses_default_region(self):
        assert normalise_phone("06 12345678", default_region="NL") == "+31612345678"

    def test_double_zero_prefix(self):
        assert normalise_phone("0031612345678") == "+31612345678"

    def test_too_few_digits(self):
        with pytest.raises(InvalidNumberError):
            normalise_phone("555-1234")

    def test_letters_only(self):
        with pytest.raises(InvalidNumberError):
            normalise_phone("not-a-phone")

    def test_empty_string(self):
        with pytest.raises(InvalidNumberError):
            normalise_phone("")

    def test_whitespace_only(self):
        with pytest.raises(InvalidNumberError):
            normalise_phone("   ")


class TestMaskPhone:
    def test_keeps_last_four(self):
        assert mask_phone("+15551234567") == "+*******4567"

    def test_short_input_unchanged(self):
        assert mask_phone("1234") == "1234"
