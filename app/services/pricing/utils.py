from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except Exception:
        return None


def to_money(value: Any) -> Decimal | None:
    amount = to_decimal(value)
    if amount is None:
        return None
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def ceil_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_CEILING)


def floor_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_FLOOR)


def to_percent(value: Any) -> Decimal | None:
    return to_money(value)


def margin_percent(price: Decimal | None, cost: Decimal | None) -> Decimal | None:
    """Margin on selling price: (price - cost) / price * 100."""
    if price is None or cost is None or price <= 0:
        return None
    return (price - cost) / price * HUNDRED


def price_for_margin(cost: Decimal, margin: Decimal) -> Decimal:
    """Inverse of margin_percent: cost / (1 - margin / 100), unrounded."""
    denominator = 1 - margin / HUNDRED
    if denominator <= 0:
        raise ValueError(f"margin {margin}% leaves no room for a price")
    return cost / denominator


def change_percent(old: Decimal, new: Decimal) -> Decimal:
    if old <= 0:
        raise ValueError("old price must be positive")
    return (new - old) / old * HUNDRED


def excl_to_incl(price: Decimal, tax_rate: Decimal) -> Decimal:
    return price * (1 + tax_rate / HUNDRED)


def incl_to_excl(price: Decimal, tax_rate: Decimal) -> Decimal:
    return price / (1 + tax_rate / HUNDRED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive timestamps; they are stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
