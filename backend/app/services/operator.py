import re

from app.core.config import settings
from app.core.errors import ValidationError
from app.models.payment_model import Operator

# -------------------------------------------------------------------
# Cameroon mobile-money prefix tables (digits after the 237 code)
# -------------------------------------------------------------------

MTN_PREFIXES = frozenset({"50", "51", "52", "53", "54", "65", "67", "68"})
MTN_LEADING = frozenset({"7", "8"})

ORANGE_PREFIXES = frozenset({"55", "56", "57", "58", "59", "69"})
ORANGE_LEADING = frozenset({"9"})

MIN_SUBSCRIBER_DIGITS = 8

_NON_DIGITS = re.compile(r"\D")

OPERATOR_LABELS = {
    Operator.MTN: "MTN Mobile Money",
    Operator.ORANGE: "Orange Money",
}

PAYMENT_METHODS = {
    Operator.MTN: "mtn_mobile_money",
    Operator.ORANGE: "orange_money",
}


def _subscriber_digits(raw_phone: str) -> str:
    digits = _NON_DIGITS.sub("", raw_phone or "")
    country_code = settings.PHONE_COUNTRY_CODE
    if digits.startswith(country_code):
        digits = digits[len(country_code):]
    return digits


def detect(raw_phone: str) -> Operator:
    """
    Classify a phone number by its mobile-money operator.
    Formatting noise (+, spaces, dashes) and a leading 237 are ignored.
    Returns UNKNOWN instead of raising when the number can't be classified.
    """
    digits = _subscriber_digits(raw_phone)
    if len(digits) < MIN_SUBSCRIBER_DIGITS:
        return Operator.UNKNOWN

    # MTN table first
    if digits[:2] in MTN_PREFIXES or digits[0] in MTN_LEADING:
        return Operator.MTN
    if digits[:2] in ORANGE_PREFIXES or digits[0] in ORANGE_LEADING:
        return Operator.ORANGE
    return Operator.UNKNOWN


def normalize_phone(raw_phone: str) -> str:
    """Digits only, 237-prefixed. 650123456 → 237650123456"""
    digits = _subscriber_digits(raw_phone)
    if len(digits) < MIN_SUBSCRIBER_DIGITS:
        raise ValidationError("Enter a valid mobile money number", {"phone": raw_phone})
    return f"{settings.PHONE_COUNTRY_CODE}{digits}"


def operator_label(operator: Operator) -> str:
    return OPERATOR_LABELS.get(operator, "Mobile Money")


def payment_method_for(operator: Operator) -> str:
    return PAYMENT_METHODS.get(operator, "mobile_money")
