"""Fixed-point money helpers.

Amounts travel over the wire as decimals (``50``, ``"12.5"``) and are stored
as integers in minor units, ``10 ** -settings.amount_scale`` each.
"""

from decimal import Decimal, InvalidOperation

from watermeter.config import settings
from watermeter.services.errors import InvalidAmount


def _quantum(scale: int) -> Decimal:
    return Decimal(1).scaleb(-scale)


def to_minor(value, scale: int | None = None) -> int:
    """Parse a positive decimal amount into minor units.

    Raises InvalidAmount for non-numeric, non-finite, non-positive values, for
    values above ``settings.max_amount`` and for values with more fractional
    digits than the configured scale.
    """
    scale = settings.amount_scale if scale is None else scale
    if value is None or isinstance(value, bool):
        raise InvalidAmount("Amount is required")
    try:
        # str() keeps floats like 0.1 from dragging in binary noise
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"Invalid amount: {value!r}")

    if not amount.is_finite():
        raise InvalidAmount(f"Invalid amount: {value!r}")
    if amount <= 0:
        raise InvalidAmount("Amount must be greater than zero")
    if amount > settings.max_amount:
        raise InvalidAmount(f"Amount must not exceed {settings.max_amount}")

    try:
        quantized = amount.quantize(_quantum(scale))
    except InvalidOperation:
        raise InvalidAmount(f"Invalid amount: {value!r}")
    if quantized != amount:
        raise InvalidAmount(f"Amount supports at most {scale} decimal places")
    return int(quantized.scaleb(scale))


def from_minor(units: int, scale: int | None = None) -> Decimal:
    scale = settings.amount_scale if scale is None else scale
    return Decimal(units).scaleb(-scale).quantize(_quantum(scale))


def to_number(units: int, scale: int | None = None) -> int | float:
    """Render minor units as a JSON number (integral amounts stay ints)."""
    value = from_minor(units, scale)
    if value == value.to_integral_value():
        return int(value)
    return float(value)
