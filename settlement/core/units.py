"""
Amount conversions between human units and chain base units.

Native currency has 9 decimals, the settlement token has 6.
"""

from __future__ import annotations

import re
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

NATIVE_DECIMALS = 9
TOKEN_DECIMALS = 6

_NATIVE_SCALE = Decimal(10) ** NATIVE_DECIMALS
_TOKEN_SCALE = Decimal(10) ** TOKEN_DECIMALS
_PRICE_RE = re.compile(r"(\d+(?:\.\d+)?)")

Number = Union[int, float, str, Decimal]


def to_nano(amount: Number) -> int:
    """Convert a native amount such as "0.1" to base units (floored)."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError(f"invalid native amount: {amount!r}") from exc
    return int((value * _NATIVE_SCALE).to_integral_value(rounding=ROUND_DOWN))


def from_nano(units: int) -> Decimal:
    return Decimal(units) / _NATIVE_SCALE


def usd_cents_to_token_units(usd_cents: int) -> int:
    # 1 cent == 10_000 units at 6 decimals
    return int(usd_cents) * 10_000


def token_units_to_usd(units: int) -> Decimal:
    return (Decimal(units) / _TOKEN_SCALE).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def parse_price(price: object) -> Decimal:
    """Pull the first number out of a listing price like "100 USDT"; 0 if none."""
    if price is None:
        return Decimal(0)
    match = _PRICE_RE.search(str(price))
    return Decimal(match.group(1)) if match else Decimal(0)
