"""
Currency Module

This module handles currency codes and minor-unit arithmetic for the group
balance engine.

Features:
    - ISO 4217 code validation
    - Per-currency precision (0, 2 or 3 decimal digits)
    - Conversion between Decimal amounts and integer minor units
    - Settled-balance threshold per currency

Money is never handled as float inside the engine. Amounts arrive as float,
int, str or Decimal and are converted with Decimal(str(value)); all ledger
arithmetic is done on integer minor units.

Functions:
    normalize_currency: Validate and normalize a currency code.
    get_precision: Decimal digits of a currency.
    to_decimal: Convert a raw value to Decimal.
    to_minor_units: Exact conversion of an amount to minor units.
    round_to_minor_units: Rounded conversion of an amount to minor units.
    from_minor_units: Convert minor units back to a Decimal amount.
    quantize: Round an amount to the currency precision.
    settled_epsilon: Threshold under which a balance counts as settled.
    is_settled: Check whether a balance counts as settled.
"""

import re
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from errors import ValidationError


DEFAULT_PRECISION = 2

# Currencies whose minor unit is not 1/100
ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW",
    "PYG", "RWF", "UGX", "VND", "XOF", "XPF",
}
THREE_DECIMAL_CURRENCIES = {"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"}

_CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")


def normalize_currency(code: str) -> str:
    """
    Validate a currency code and return it stripped.

    Args:
        code: ISO 4217 code, e.g. "USD".

    Returns:
        str: The validated code.

    Raises:
        ValidationError: If the code is not three uppercase letters.
    """
    if not isinstance(code, str) or not _CURRENCY_PATTERN.match(code.strip()):
        raise ValidationError(f"currency must be a 3-letter uppercase ISO 4217 code, got: {code!r}")
    return code.strip()


def get_precision(code: str) -> int:
    """Return the number of decimal digits used by a currency."""
    code = normalize_currency(code)
    if code in ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in THREE_DECIMAL_CURRENCIES:
        return 3
    return DEFAULT_PRECISION


def _unit(code: str) -> Decimal:
    return Decimal(1).scaleb(-get_precision(code))


def to_decimal(value) -> Decimal:
    """
    Convert a raw monetary value to Decimal.

    Floats go through str() so 33.34 becomes Decimal("33.34") rather than
    its binary approximation.

    Raises:
        ValidationError: If the value is not a finite number.
    """
    if isinstance(value, bool):
        raise ValidationError(f"amount must be a number, got: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(f"amount must be a number, got: {value!r}") from None
    else:
        raise ValidationError(f"amount must be a number, got: {value!r}")

    if not result.is_finite():
        raise ValidationError(f"amount must be finite, got: {value!r}")
    return result


def to_minor_units(amount, code: str) -> int:
    """
    Convert an amount to integer minor units without rounding.

    Args:
        amount: Monetary amount (float, int, str or Decimal).
        code: Currency code.

    Returns:
        int: Amount in minor units (cents for USD, yen for JPY).

    Raises:
        ValidationError: If the amount has more decimal places than the
            currency allows (e.g. 10.005 USD or 100.5 JPY).
    """
    value = to_decimal(amount)
    scaled = value.scaleb(get_precision(code))
    if scaled != scaled.to_integral_value():
        raise ValidationError(
            f"amount {value} has more precision than {code} allows "
            f"({get_precision(code)} decimal places)"
        )
    return int(scaled)


def round_to_minor_units(amount, code: str) -> int:
    """Convert an amount to minor units, rounding half up."""
    value = to_decimal(amount)
    return int(value.scaleb(get_precision(code)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(units: int, code: str) -> Decimal:
    """Convert integer minor units back to a Decimal quantized to the currency."""
    return Decimal(units).scaleb(-get_precision(code)).quantize(_unit(code))


def quantize(amount, code: str) -> Decimal:
    """Round an amount to the currency precision using ROUND_HALF_UP."""
    return to_decimal(amount).quantize(_unit(code), rounding=ROUND_HALF_UP)


def settled_epsilon(code: str) -> Decimal:
    """
    Return the threshold under which a balance counts as settled.

    This is one minor unit of the currency: 0.01 for USD, 1 for JPY and
    0.001 for KWD.
    """
    return _unit(code)


def is_settled(amount, code: str) -> bool:
    """Check whether a net balance is within one minor unit of zero."""
    return abs(to_decimal(amount)) <= settled_epsilon(code)
