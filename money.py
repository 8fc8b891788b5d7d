"""Fixed-point amounts.

Amounts are persisted as integers of ten-thousandths ("units"), i.e. decimal
scale 4. Conversion to and from ``Decimal`` happens only at the edges.
"""

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from errors import ValidationError

SCALE = 4
UNITS_PER_WHOLE = 10**SCALE
AMOUNT_PATTERN = r"^-?\d+(\.\d{1,4})?$"

_AMOUNT_RE = re.compile(AMOUNT_PATTERN)
_QUANTUM = Decimal(1).scaleb(-SCALE)

AmountLike = Union[str, int, Decimal]


def parse_amount(value: AmountLike) -> Decimal:
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, int):
        amount = Decimal(value)
    else:
        clean = value.strip()
        if not _AMOUNT_RE.match(clean):
            raise ValidationError(f"Invalid amount format: {value!r}")
        try:
            amount = Decimal(clean)
        except InvalidOperation as exc:
            raise ValidationError(f"Invalid amount format: {value!r}") from exc
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    if amount != amount.quantize(_QUANTUM):
        raise ValidationError("Amounts support at most 4 decimal places")
    return amount


def to_units(value: AmountLike) -> int:
    return int(parse_amount(value) * UNITS_PER_WHOLE)


def from_units(units: int) -> Decimal:
    return (Decimal(units) / UNITS_PER_WHOLE).quantize(_QUANTUM)


def format_amount(units: int) -> str:
    return str(from_units(units))


def positive_units(value: AmountLike, field: str = "amount") -> int:
    units = to_units(value)
    if units <= 0:
        raise ValidationError(f"{field.capitalize()} must be greater than zero")
    return units


def convert_units(units: int, rate: Decimal) -> int:
    """Multiply by an FX rate, rounding half-up to the nearest unit."""
    return int((Decimal(units) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percentage(part_units: int, whole_units: int) -> Decimal:
    if whole_units == 0:
        return Decimal("0.00")
    ratio = Decimal(part_units) / Decimal(whole_units) * 100
    return ratio.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
