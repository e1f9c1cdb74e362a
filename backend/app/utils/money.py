"""
Money helpers. Amounts are always integer minor units (cents).
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Union


def format_minor_units(amount_cents: int) -> str:
    """1050 → '10.50' (the decimal string most gateways expect)."""
    return str((Decimal(amount_cents) / 100).quantize(Decimal("0.01")))


def parse_major_units(amount: Union[str, int, float, Decimal]) -> int:
    """'10.50' → 1050. Rounds half up to the nearest cent."""
    value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return int(value * 100)
