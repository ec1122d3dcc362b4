import math
from decimal import Decimal

import pytest

from utils.safe_number import (
    safe_number, safe_int, safe_divide, safe_percent_change, clamp_slippage, slippage_to_bps,
    sol_to_lamports, lamports_to_sol, validate_curve_reserves, DEFAULT_SLIPPAGE, MAX_SLIPPAGE,
)


@pytest.mark.parametrize("value,expected", [
    (1, 1.0),
    ("2.5", 2.5),
    ("  3 ", 3.0),
    (Decimal("0.25"), 0.25),
    (b"4", 4.0),
])
def test_safe_number_accepts_numeric_input(value, expected):
    assert safe_number(value) == expected


@pytest.mark.parametrize("value", [None, "", "abc", float("nan"), float("inf"), "-inf", True, [1], {}])
def test_safe_number_falls_back_on_garbage(value):
    assert safe_number(value, -1.0) == -1.0
    assert safe_number(value, None) is None


def test_safe_int_truncates():
    assert safe_int("7.9") == 7
    assert safe_int("x", 3) == 3


def test_safe_divide_never_raises():
    assert safe_divide(1, 0) == 0.0
    assert safe_divide(1, "0", None) is None
    assert safe_divide("nan", 2, 5.0) == 5.0
    assert safe_divide(3, 2) == 1.5


def test_percent_change_requires_positive_reference():
    assert safe_percent_change(1.5, 1.0) == pytest.approx(50.0)
    assert safe_percent_change(0.8, 1.0) == pytest.approx(-20.0)
    assert safe_percent_change(1.0, 0) == 0.0
    assert safe_percent_change(1.0, -1, None) is None


@pytest.mark.parametrize("value,expected", [
    (0.1, 0.1),
    (0.5, 0.5),
    (0.9, MAX_SLIPPAGE),
    (25, MAX_SLIPPAGE),
    (0, DEFAULT_SLIPPAGE),
    (-0.2, DEFAULT_SLIPPAGE),
    (float("nan"), DEFAULT_SLIPPAGE),
    ("abc", DEFAULT_SLIPPAGE),
    (0.00001, DEFAULT_SLIPPAGE),
])
def test_clamp_slippage(value, expected):
    assert clamp_slippage(value) == expected


def test_slippage_to_bps():
    assert slippage_to_bps(0.15) == 1500
    assert slippage_to_bps(2) == 5000


def test_sol_to_lamports_validates():
    assert sol_to_lamports(0.1) == 100_000_000
    assert sol_to_lamports("1") == 1_000_000_000
    with pytest.raises(ValueError):
        sol_to_lamports("bad", "position size")
    with pytest.raises(ValueError):
        sol_to_lamports(-1)
    assert lamports_to_sol(2_500_000_000) == 2.5
    assert not math.isnan(lamports_to_sol(None))


def test_validate_curve_reserves():
    assert validate_curve_reserves(30, 1_000_000_000)
    assert not validate_curve_reserves(0, 1)
    assert not validate_curve_reserves(1, None)
    assert not validate_curve_reserves(float("inf"), 1)
