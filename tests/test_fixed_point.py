"""Tests for navarb/fixed_point.py — sqrt-price codec and tick math."""
import math
from itertools import product

import pytest

from navarb.fixed_point import (
    MAX_SQRT_RATIO,
    MAX_TICK,
    MIN_SQRT_RATIO,
    MIN_TICK,
    PRICE_SCALE,
    Q96,
    Q192,
    isqrt,
    mul_div,
    mul_div_rounding_up,
    price_to_sqrt_price_x96,
    sqrt_price_at_tick,
    sqrt_price_x96_to_price,
)

DECIMALS = (0, 6, 8, 18)


@pytest.mark.parametrize("n", [0, 1, 2, 3, 4, 15, 16, 17, 99, 10 ** 40, 2 ** 255 + 12345])
def test_isqrt_matches_math_isqrt(n):
    assert isqrt(n) == math.isqrt(n)


def test_isqrt_exact_square():
    root = 2 ** 128 - 1
    assert isqrt(root * root) == root
    assert isqrt(root * root - 1) == root - 1


def test_isqrt_negative_raises():
    with pytest.raises(ValueError):
        isqrt(-1)


def test_mul_div_floor_and_ceil():
    assert mul_div(7, 3, 2) == 10
    assert mul_div_rounding_up(7, 3, 2) == 11
    assert mul_div_rounding_up(6, 3, 2) == 9


def test_mul_div_zero_denominator():
    with pytest.raises(ZeroDivisionError):
        mul_div(1, 1, 0)
    with pytest.raises(ZeroDivisionError):
        mul_div_rounding_up(1, 1, 0)


def test_price_one_equal_decimals_is_q96():
    assert price_to_sqrt_price_x96(PRICE_SCALE, 6, 6) == Q96
    assert sqrt_price_x96_to_price(Q96, 6, 6) == PRICE_SCALE


def test_decimal_asymmetry_scales_raw_price():
    # 1 token0 (18 dec) = 1 token1 (6 dec) -> raw price 1e-12, sqrt 1e-6
    s = price_to_sqrt_price_x96(PRICE_SCALE, 18, 6)
    assert s == isqrt(Q192 // 10 ** 12)
    assert abs(s - Q96 // 10 ** 6) <= 1


@pytest.mark.parametrize("dec0,dec1", list(product(DECIMALS, DECIMALS)))
def test_round_trip_within_one_unit(dec0, dec1):
    prices = [
        10 ** 15,
        3 * 10 ** 16,
        10 ** 18,
        1_050_000_000_000_000_000,
        7 * 10 ** 19,
        10 ** 21,
    ]
    for p in prices:
        back = sqrt_price_x96_to_price(price_to_sqrt_price_x96(p, dec0, dec1), dec0, dec1)
        assert 0 <= p - back <= 1, (p, back, dec0, dec1)


def test_codec_rejects_negative_inputs():
    with pytest.raises(ValueError):
        price_to_sqrt_price_x96(-1, 6, 6)
    with pytest.raises(ValueError):
        sqrt_price_x96_to_price(-1, 6, 6)
    with pytest.raises(ValueError):
        price_to_sqrt_price_x96(PRICE_SCALE, -1, 6)


def test_tick_zero_is_price_one():
    assert sqrt_price_at_tick(0) == Q96


def test_tick_bounds_match_on_chain_constants():
    assert sqrt_price_at_tick(MIN_TICK) == MIN_SQRT_RATIO
    assert sqrt_price_at_tick(MAX_TICK) == MAX_SQRT_RATIO


@pytest.mark.parametrize("tick", [MIN_TICK - 1, MAX_TICK + 1])
def test_tick_out_of_range_raises(tick):
    with pytest.raises(ValueError):
        sqrt_price_at_tick(tick)


@pytest.mark.parametrize("t", [1, 10, 100, 1000, 50_000, 200_000])
def test_negative_tick_is_reciprocal(t):
    product_ = sqrt_price_at_tick(t) * sqrt_price_at_tick(-t)
    assert abs(product_ - Q192) / Q192 < 1e-9


@pytest.mark.parametrize("t", [-100_000, -1, 1, 887, 100_000])
def test_tick_matches_float_reference(t):
    expected = 1.0001 ** (t / 2)
    got = sqrt_price_at_tick(t) / Q96
    assert abs(got - expected) / expected < 1e-9


def test_tick_is_monotonic():
    ticks = [-500_000, -1000, -1, 0, 1, 1000, 500_000]
    values = [sqrt_price_at_tick(t) for t in ticks]
    assert values == sorted(values)
    assert len(set(values)) == len(values)
