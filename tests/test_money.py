from decimal import Decimal

import pytest

from errors import ValidationError
from money import (
    convert_units,
    format_amount,
    parse_amount,
    percentage,
    positive_units,
    to_units,
)


def test_parse_accepts_up_to_four_places():
    assert parse_amount("12.3456") == Decimal("12.3456")
    assert parse_amount(" -7 ") == Decimal("-7")
    assert to_units("0.0001") == 1


@pytest.mark.parametrize("raw", ["12.34567", "1e3", "abc", "", "1,5"])
def test_parse_rejects_malformed_amounts(raw):
    with pytest.raises(ValidationError):
        parse_amount(raw)


def test_format_always_has_four_places():
    assert format_amount(125_000) == "12.5000"
    assert format_amount(-1) == "-0.0001"
    assert format_amount(0) == "0.0000"


def test_positive_units_names_the_field():
    with pytest.raises(ValidationError, match="Split amount"):
        positive_units("0", "split amount")


def test_conversion_and_percentage_rounding():
    assert convert_units(10_001, Decimal("0.5")) == 5_001
    assert percentage(1, 3) == Decimal("33.33")
    assert percentage(2, 3) == Decimal("66.67")
    assert percentage(5, 0) == Decimal("0.00")
