"""
Phone number helpers for mobile money gateways.
"""
import re
from typing import Optional

from app.config import settings


def normalize_msisdn(phone: str, country_code: Optional[str] = None) -> str:
    """
    Normalize a phone number to international MSISDN form (digits only).

    - 0771234567      → 263771234567
    - +263 77 123 4567 → 263771234567
    - 771234567       → 263771234567

    Normalizing an already normalized number returns it unchanged.

    Raises:
        ValueError: If the input has no digits
    """
    country_code = country_code or settings.mobile_money_country_code
    digits = re.sub(r"\D", "", phone or "")
    if not digits:
        raise ValueError("Phone number is empty")

    if digits.startswith(country_code):
        return digits
    if digits.startswith("0"):
        return country_code + digits[1:]
    return country_code + digits

