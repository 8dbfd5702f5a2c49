"""Tests for perpledger/core/market/math.py: fixed-point helpers."""

import pytest

from perpledger.core.market.math import (
    UNIT,
    ceil_div,
    clamp,
    div,
    div_away,
    div_up,
    format_fixed,
    mul,
    mul_div,
    mul_up,
    to_fixed,
)


class TestRounding:
    def test_mul_floors_toward_negative_infinity(self):
        assert mul(1, 1) == 0
        assert mul(-1, 1) == -1
        assert mul(3 * UNIT, 2 * UNIT) == 6 * UNIT

    def test_mul_up_rounds_up(self):
        assert mul_up(1, 1) == 1
        assert mul_up(UNIT, UNIT) == UNIT

    def test_div_and_div_up(self):
        assert div(UNIT, 3 * UNIT) == 333_333
        assert div_up(UNIT, 3 * UNIT) == 333_334
        assert div(5, 0) == 0
        assert div_up(5, 0) == 0

    def test_ceil_div_and_div_away(self):
        assert ceil_div(7, 2) == 4
        assert ceil_div(-7, 2) == -3
        assert div_away(7, 2) == 4
        assert div_away(-7, 2) == -4

    def test_mul_div_zero_denominator(self):
        assert mul_div(10, 10, 0) == 0
        assert mul_div(10, 10, 3) == 33

    def test_clamp(self):
        assert clamp(5, 0, 3) == 3
        assert clamp(-5, 0, 3) == 0
        assert clamp(2, 0, 3) == 2


class TestParsing:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("0.3", 300_000),
            ("-1.2", -1_200_000),
            ("40000", 40_000 * UNIT),
            (".5", 500_000),
            ("1.000000", UNIT),
            ("1_000", 1_000 * UNIT),
        ],
    )
    def test_decimal_strings(self, text, expected):
        assert to_fixed(text) == expected

    def test_ints_are_already_scaled(self):
        assert to_fixed(123) == 123

    def test_floats_rejected(self):
        with pytest.raises(TypeError):
            to_fixed(0.1)

    def test_booleans_rejected(self):
        with pytest.raises(TypeError):
            to_fixed(True)

    @pytest.mark.parametrize("text", ["", "-", "abc", "1.0000001", "1.2.3"])
    def test_malformed_rejected(self, text):
        with pytest.raises(ValueError):
            to_fixed(text)

    def test_format_fixed(self):
        assert format_fixed(1_500_000) == "1.5"
        assert format_fixed(-2 * UNIT) == "-2"
        assert format_fixed(1) == "0.000001"
