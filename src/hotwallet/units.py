"""Conversion between integer base units and decimal strings.

All value-bearing arithmetic uses ``int``; ``Decimal`` only appears at the
string boundary. Floats are rejected.
"""

from decimal import Decimal, InvalidOperation
from typing import Union

from hotwallet.errors import ValidationError

# Largest amount any supported chain can carry (EVM uint256)
MAX_BASE_UNITS = 2**256
MAX_DIGITS = len(str(MAX_BASE_UNITS))


def format_units(value: int, decimals: int) -> str:
    """Format base units as a decimal string.

    Always keeps at least one fractional digit: ``format_units(10**18, 18)``
    is ``"1.0"``.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError("value must be an int")
    sign = "-" if value < 0 else ""
    value = abs(value)
    if decimals == 0:
        return f"{sign}{value}.0"
    whole, frac = divmod(value, 10**decimals)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0") or "0"
    return f"{sign}{whole}.{frac_str}"


def parse_units(amount: Union[str, int, Decimal], decimals: int) -> int:
    """Parse a decimal amount into base units.

    Scaling is exact integer arithmetic on the decimal digits, so no
    amount is rounded and no exponent can overflow the decimal context.

    Raises:
        ValidationError: If the amount is malformed, negative, a float, out
            of range, or has more fractional digits than the asset supports
    """
    if isinstance(amount, float):
        raise ValidationError("Amounts must be strings or Decimals, not floats", amount=amount)
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount}", amount=str(amount))

    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount}", amount=str(amount))
    if value < 0:
        raise ValidationError("Amount must not be negative", amount=str(amount))
    if value == 0:
        return 0

    _, digits, exponent = value.as_tuple()
    coefficient = int("".join(str(d) for d in digits))
    shift = exponent + decimals
    if shift < 0:
        if -shift > len(digits) or coefficient % 10**-shift:
            raise ValidationError(
                f"Amount {amount} has more than {decimals} decimal places", amount=str(amount)
            )
        scaled = coefficient // 10**-shift
    elif len(digits) + shift > MAX_DIGITS:
        raise ValidationError(f"Amount out of range: {amount}", amount=str(amount))
    else:
        scaled = coefficient * 10**shift

    if scaled >= MAX_BASE_UNITS:
        raise ValidationError(f"Amount out of range: {amount}", amount=str(amount))
    return scaled
