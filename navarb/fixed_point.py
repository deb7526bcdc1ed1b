"""Fixed-point price codec for concentrated-liquidity pools.

Prices travel through the engine in two integer encodings:
  - E18: human relative price (token1 per token0) scaled by 10**18
  - X96: square root of the *raw* price (raw token1 units per raw token0
    unit) in Q64.96 fixed point, as stored in the pool's slot0

All conversions stay in Python ints. Decimal-exponent asymmetry between the
two tokens is folded into a single full-precision product before the one
floor division, so no intermediate rounding is introduced.
"""
from __future__ import annotations

__all__ = [
    "Q96",
    "Q192",
    "PRICE_SCALE",
    "MIN_TICK",
    "MAX_TICK",
    "MIN_SQRT_RATIO",
    "MAX_SQRT_RATIO",
    "isqrt",
    "mul_div",
    "mul_div_rounding_up",
    "price_to_sqrt_price_x96",
    "sqrt_price_x96_to_price",
    "sqrt_price_at_tick",
]

Q96 = 1 << 96
Q192 = 1 << 192
PRICE_SCALE = 10 ** 18

MIN_TICK = -887272
MAX_TICK = 887272
MIN_SQRT_RATIO = 4295128739
MAX_SQRT_RATIO = 1461446703485210103287273052203988822378723970342

_MAX_UINT256 = (1 << 256) - 1

# sqrt(1.0001) ** -(2**i) in Q128, i = 0..19 (TickMath.getSqrtRatioAtTick)
_TICK_RATIOS = (
    0xFFFCB933BD6FAD37AA2D162D1A594001,
    0xFFF97272373D413259A46990580E213A,
    0xFFF2E50F5F656932EF12357CF3C7FDCC,
    0xFFE5CACA7E10E4E61C3624EAA0941CD0,
    0xFFCB9843D60F6159C9DB58835C926644,
    0xFF973B41FA98C081472E6896DFB254C0,
    0xFF2EA16466C96A3843EC78B326B52861,
    0xFE5DEE046A99A2A811C461F1969C3053,
    0xFCBE86C7900A88AEDCFFC83B479AA3A4,
    0xF987A7253AC413176F2B074CF7815E54,
    0xF3392B0822B70005940C7A398E4B70F3,
    0xE7159475A2C29B7443B29C7FA6E889D9,
    0xD097F3BDFD2022B8845AD8F792AA5825,
    0xA9F746462D870FDF8A65DC1F90E061E5,
    0x70D869A156D2A1B890BB3DF62BAF32F7,
    0x31BE135F97D08FD981231505542FCFA6,
    0x9AA508B5B7A84E1C677DE54F3E99BC9,
    0x5D6AF8DEDB81196699C329225EE604,
    0x2216E584F5FA1EA926041BEDFE98,
    0x48A170391F7DC42444E8FA2,
)


def isqrt(n: int) -> int:
    """Floor square root by Newton's iteration on arbitrary-precision ints."""
    if n < 0:
        raise ValueError(f"isqrt of negative number {n}")
    if n < 2:
        return n
    x0 = n
    x1 = (n >> 1) + 1
    while x1 < x0:
        x0 = x1
        x1 = (x1 + n // x1) >> 1
    return x0


def mul_div(a: int, b: int, denominator: int) -> int:
    """floor(a * b / denominator) at full precision."""
    if denominator == 0:
        raise ZeroDivisionError("mul_div by zero")
    return (a * b) // denominator


def mul_div_rounding_up(a: int, b: int, denominator: int) -> int:
    if denominator == 0:
        raise ZeroDivisionError("mul_div_rounding_up by zero")
    return -((-(a * b)) // denominator)


def _check_decimals(dec0: int, dec1: int) -> None:
    if dec0 < 0 or dec1 < 0:
        raise ValueError(f"token decimals must be non-negative, got ({dec0}, {dec1})")


def price_to_sqrt_price_x96(price_e18: int, dec0: int, dec1: int) -> int:
    """Human E18 price (token1 per token0) -> sqrtPriceX96.

    raw price = human * 10**dec1 / 10**dec0, so
    sqrtPriceX96 = isqrt(price_e18 * 10**dec1 * Q96**2 // (10**dec0 * 10**18)).
    """
    if price_e18 < 0:
        raise ValueError(f"price must be non-negative, got {price_e18}")
    _check_decimals(dec0, dec1)
    radicand = (price_e18 * 10 ** dec1 * Q192) // (10 ** dec0 * PRICE_SCALE)
    return isqrt(radicand)


def sqrt_price_x96_to_price(sqrt_price_x96: int, dec0: int, dec1: int) -> int:
    """sqrtPriceX96 -> human E18 price, squaring before any rescale."""
    if sqrt_price_x96 < 0:
        raise ValueError(f"sqrt price must be non-negative, got {sqrt_price_x96}")
    _check_decimals(dec0, dec1)
    num = sqrt_price_x96 * sqrt_price_x96 * 10 ** dec0 * PRICE_SCALE
    return num // (Q192 * 10 ** dec1)


def sqrt_price_at_tick(tick: int) -> int:
    """sqrt(1.0001 ** tick) in Q64.96, bit-for-bit with on-chain TickMath.

    The ratio table walks the negative direction; positive ticks take the
    full-width reciprocal. The final Q128 -> Q96 shift rounds up.
    """
    if tick < MIN_TICK or tick > MAX_TICK:
        raise ValueError(f"Tick {tick} out of bounds [{MIN_TICK}, {MAX_TICK}]")

    abs_tick = -tick if tick < 0 else tick
    ratio = _TICK_RATIOS[0] if abs_tick & 1 else 1 << 128
    for bit in range(1, len(_TICK_RATIOS)):
        if abs_tick & (1 << bit):
            ratio = (ratio * _TICK_RATIOS[bit]) >> 128

    if tick > 0:
        ratio = _MAX_UINT256 // ratio

    return (ratio >> 32) + (0 if ratio % (1 << 32) == 0 else 1)
