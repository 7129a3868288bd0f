"""
Tests for unit conversions and price parsing.
"""
from decimal import Decimal

import pytest

from settlement.core.units import (
    from_nano,
    parse_price,
    to_nano,
    token_units_to_usd,
    usd_cents_to_token_units,
)


def test_to_nano_native_constants():
    assert to_nano("0.1") == 100_000_000
    assert to_nano("0.038") == 38_000_000
    assert to_nano(1) == 1_000_000_000


def test_to_nano_floors_sub_unit_precision():
    assert to_nano("0.0000000019") == 1


def test_to_nano_rejects_garbage():
    with pytest.raises(ValueError):
        to_nano("ten")


def test_from_nano():
    assert from_nano(38_000_000) == Decimal("0.038")


def test_usd_cents_to_token_units():
    assert usd_cents_to_token_units(100) == 1_000_000
    assert usd_cents_to_token_units(1) == 10_000


def test_token_units_to_usd_rounds_half_up():
    assert token_units_to_usd(1_000_000) == Decimal("1.00")
    assert token_units_to_usd(1_005_000) == Decimal("1.01")


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("100 USDT", Decimal("100")),
        ("$12.50", Decimal("12.50")),
        (42, Decimal("42")),
        ("free", Decimal("0")),
        (None, Decimal("0")),
    ],
)
def test_parse_price(raw, expected):
    assert parse_price(raw) == expected
