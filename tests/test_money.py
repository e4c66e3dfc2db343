"""Fixed-point amount parsing."""

from decimal import Decimal

import pytest

from watermeter.services.errors import InvalidAmount
from watermeter.utils.money import from_minor, to_minor, to_number


@pytest.mark.parametrize(
    "value, units",
    [(50, 5000), ("12.5", 1250), (0.1, 10), ("0.01", 1), (Decimal("3.40"), 340)],
)
def test_to_minor_accepts_positive_decimals(value, units):
    assert to_minor(value) == units


@pytest.mark.parametrize(
    "value",
    [0, -5, "-0.01", "abc", "", None, True, float("nan"), float("inf"), "1.001",
     "1e30", "1e17", "100000000000000000", "1000000000.01"],
)
def test_to_minor_rejects(value):
    with pytest.raises(InvalidAmount):
        to_minor(value)


def test_scale_is_configurable():
    assert to_minor("1.001", scale=3) == 1001
    assert from_minor(1001, scale=3) == Decimal("1.001")


def test_to_number_keeps_integers_integral():
    assert to_number(5000) == 50
    assert isinstance(to_number(5000), int)
    assert to_number(1250) == 12.5
    assert to_number(0) == 0


def test_largest_accepted_amount():
    assert to_minor(1_000_000_000) == 100_000_000_000


def test_unrepresentable_precision_is_rejected(monkeypatch):
    from watermeter.config import settings

    # Lift the cap so the quantize step itself overflows the decimal context
    monkeypatch.setattr(settings, "max_amount", 10**40)
    with pytest.raises(InvalidAmount):
        to_minor("1e30")
