from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Coerce to a two-place Decimal (half-up), the precision of every money column."""
    if value is None:
        raise ValueError("money value is required")
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value: Optional[Decimal]) -> Optional[str]:
    """Serialize money for JSON without float rounding surprises."""
    if value is None:
        return None
    return str(to_money(value))
