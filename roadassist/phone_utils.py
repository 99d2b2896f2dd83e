"""
Destination-number normalisation (E.164) and masking for the call gateway.
Uses the `phonenumbers` library.
"""

from __future__ import annotations

import re

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

from roadassist.errors import InvalidNumberError

# Shortest digit string the provider will dial
MIN_DIGITS = 10

_NON_DIGITS = re.compile(r"\D")


def normalise_phone(raw: str, default_region: str = "NL") -> str:
    """
    Normalise a destination number to E.164.

    Digit strings without a ``+`` are treated as international
    (``15551234567`` -> ``+15551234567``), except national numbers that
    start with ``0``, which are parsed in *default_region*. A leading
    ``00`` is an international prefix.

    Raises
    ------
    InvalidNumberError
        Fewer than ``MIN_DIGITS`` digits, or not a possible number.
    """
    cleaned = (raw or "").strip()
    digits = _NON_DIGITS.sub("", cleaned)
    if len(digits) < MIN_DIGITS:
        raise InvalidNumberError(f"Phone number needs at least {MIN_DIGITS} digits")

    if cleaned.startswith("+"):
        candidate, region = "+" + digits, None
    elif digits.startswith("00"):
        candidate, region = "+" + digits[2:], None
    elif digits.startswith("0"):
        candidate, region = digits, default_region
    else:
        candidate, region = "+" + digits, None

    try:
        parsed = phonenumbers.parse(candidate, region)
    except NumberParseException as exc:
        raise InvalidNumberError(str(exc)) from exc

    # Not is_valid_number: test ranges such as +1 555 must still dial.
    if not phonenumbers.is_possible_number(parsed):
        raise InvalidNumberError("Not a possible phone number")

    return phonenumbers.format_number(parsed, PhoneNumberFormat.E164)


def mask_phone(number: str) -> str:
    """Mask every digit except the last four."""
    return re.sub(r"\d(?=\d{4})", "*", number)
