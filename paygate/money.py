"""
Decimal money helpers.

Amounts are carried as ``Decimal`` end to end. Precision per currency follows
ISO 4217 minor units for the currencies the gateways handle; anything not
listed uses two decimal places.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND", "CLP", "ISK", "UGX"}
THREE_DECIMAL_CURRENCIES = {"BHD", "JOD", "KWD", "OMR", "TND"}

Numeric = Union[Decimal, int, str]


def to_decimal(value: Numeric) -> Decimal:
    """Coerce to Decimal. Floats are rejected so binary rounding never leaks in."""
    if isinstance(value, float):
        raise TypeError("float amounts are not accepted; pass Decimal or str")
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e


def currency_exponent(currency: str) -> int:
    code = currency.upper()
    if code in ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def quantize(amount: Numeric, currency: str) -> Decimal:
    """Round half-up to the currency's precision."""
    exponent = currency_exponent(currency)
    return to_decimal(amount).quantize(Decimal(1).scaleb(-exponent), rounding=ROUND_HALF_UP)


def to_minor_units(amount: Numeric, currency: str) -> int:
    """Convert a major-unit amount to an integer count of minor units (cents, fils...)."""
    exponent = currency_exponent(currency)
    return int(quantize(amount, currency).scaleb(exponent))


def format_amount(amount: Numeric, currency: str) -> str:
    """Fixed-point string at the currency's precision, e.g. ``"100.00"``."""
    return str(quantize(amount, currency))


def convert(amount: Numeric, rate: Numeric, target_currency: str) -> Decimal:
    """Apply an exchange rate (units of target per unit of source) and round for the target."""
    return quantize(to_decimal(amount) * to_decimal(rate), target_currency)
