"""
Phone number and amount normalization for STK push requests.

Daraja only accepts Safaricom MSISDNs in international format without the
plus sign (``2547XXXXXXXX``, ``2541[01]XXXXXXX``) and whole-shilling amounts.

Example:
    normalize_phone("0712 345 678")  -> "254712345678"
    normalize_phone("+254712345678") -> "254712345678"
    validate_amount("49.6")          -> 50
"""
import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

COUNTRY_CODE = "254"
CANONICAL_PHONE_LENGTH = 12
CANONICAL_PHONE_REGEX = re.compile(r"^254(?:7\d|1[01])\d{7}$")


class PhoneNumberError(ValueError):
    """Raised when a phone number cannot be normalized."""

    pass


class AmountError(ValueError):
    """Raised when an amount is not a positive number."""

    pass


def normalize_phone(raw: Any) -> str:
    """
    Canonicalize a phone number to ``254XXXXXXXXX``.

    Accepts local (``07XXXXXXXX``/``01XXXXXXXX``), bare subscriber
    (``7XXXXXXXX``/``1XXXXXXXX``) and international (``2547XXXXXXXX``, with or
    without ``+``) forms. Separators are ignored. Inputs starting with ``254``
    that are longer than 12 digits are cut to the first 12 digits; nothing
    else is coerced.

    Args:
        raw: User-submitted phone number

    Returns:
        str: Canonical MSISDN

    Raises:
        PhoneNumberError: If the number is empty, has the wrong length or is
            not a Safaricom mobile prefix
    """
    text = str(raw if raw is not None else "").strip()
    if text.startswith("+"):
        text = text[1:]
    digits = re.sub(r"\D", "", text)

    if not digits:
        raise PhoneNumberError("Phone number is required")

    if len(digits) == 10 and digits.startswith("0"):
        digits = COUNTRY_CODE + digits[1:]
    elif len(digits) == 9 and digits[0] in "71":
        digits = COUNTRY_CODE + digits
    elif len(digits) > CANONICAL_PHONE_LENGTH and digits.startswith(COUNTRY_CODE):
        digits = digits[:CANONICAL_PHONE_LENGTH]

    if len(digits) != CANONICAL_PHONE_LENGTH or not digits.startswith(COUNTRY_CODE):
        raise PhoneNumberError(
            f"Invalid phone number length or format: {digits}. "
            "Use 07XXXXXXXX, 7XXXXXXXX or 2547XXXXXXXX"
        )

    if not CANONICAL_PHONE_REGEX.match(digits):
        raise PhoneNumberError(
            f"Invalid Safaricom number: {digits}. "
            "Expected 2547XXXXXXXX, 25410XXXXXXX or 25411XXXXXXX"
        )

    return digits


def validate_amount(raw: Any) -> int:
    """
    Validate an amount and round it to whole shillings (half up).

    Args:
        raw: Amount as number or numeric string

    Returns:
        int: Positive integer amount

    Raises:
        AmountError: If the amount is missing, non-numeric, not finite, not
            positive, or rounds down to zero
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise AmountError("Amount is required")
    if isinstance(raw, bool):
        raise AmountError("Amount must be a valid number")
    if isinstance(raw, float) and not math.isfinite(raw):
        raise AmountError("Amount must be a finite number")

    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise AmountError("Amount must be a valid number")

    if not value.is_finite():
        raise AmountError("Amount must be a finite number")
    if value <= 0:
        raise AmountError("Amount must be greater than 0")

    rounded = int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if rounded < 1:
        raise AmountError("Amount must be at least 1 after rounding to whole shillings")
    return rounded
