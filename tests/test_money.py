"""Tests for decimal money helpers."""

from decimal import Decimal

import pytest

from paygate.money import convert, format_amount, quantize, to_decimal, to_minor_units


def test_quantize_rounds_half_up():
    assert quantize("0.745", "USD") == Decimal("0.75")
    assert quantize("0.744", "USD") == Decimal("0.74")


def test_zero_and_three_decimal_currencies():
    assert format_amount("1500.4", "JPY") == "1500"
    assert format_amount("1.2345", "KWD") == "1.235"


def test_minor_units():
    assert to_minor_units("100.00", "NPR") == 10000
    assert to_minor_units("0.75", "USD") == 75
    assert to_minor_units("500", "JPY") == 500


def test_floats_rejected():
    with pytest.raises(TypeError):
        to_decimal(0.1)


def test_garbage_rejected():
    with pytest.raises(ValueError):
        to_decimal("ten dollars")


def test_npr_to_usd_conversion():
    rate = Decimal("1") / Decimal("133.0")
    assert convert(Decimal("100.00"), rate, "USD") == Decimal("0.75")
