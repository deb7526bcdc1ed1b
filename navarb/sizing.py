"""Trade sizing: the exact fee-free counter-trade that returns the pool to NAV.

Within a single liquidity band the pool obeys
    amount0 = L * (1/sqrtP_a - 1/sqrtP_b),  amount1 = L * (sqrtP_b - sqrtP_a)
so moving the price from ``sqrt_now`` to ``sqrt_target`` has a closed form.
All divisions floor; ``amount_out`` is an upper bound on what the pool pays.
"""
from __future__ import annotations

__all__ = [
    "Direction",
    "PoolState",
    "TradeSizing",
    "NoOpportunity",
    "size_push_price_down",
    "size_push_price_up",
    "size_correction",
    "amounts_for_liquidity",
]

import enum
import logging
from dataclasses import dataclass
from typing import Any

from navarb.errors import NoLiquidity, OrderingViolation
from navarb.fixed_point import (
    MAX_TICK,
    MIN_TICK,
    Q96,
    price_to_sqrt_price_x96,
    sqrt_price_at_tick,
    sqrt_price_x96_to_price,
)

logger = logging.getLogger(__name__)


class Direction(str, enum.Enum):
    PUSH_PRICE_DOWN = "push_price_down"  # zeroForOne: token0 in, token1 out
    PUSH_PRICE_UP = "push_price_up"      # oneForZero: token1 in, token0 out

    @property
    def zero_for_one(self) -> bool:
        return self is Direction.PUSH_PRICE_DOWN


@dataclass(frozen=True)
class PoolState:
    """Point-in-time pool snapshot. Read fresh for every cycle."""
    liquidity: int
    sqrt_price_x96: int
    tick: int
    token0_decimals: int
    token1_decimals: int
    pool_id: str = "default"
    block_number: int | None = None

    @property
    def price_e18(self) -> int:
        return sqrt_price_x96_to_price(
            self.sqrt_price_x96, self.token0_decimals, self.token1_decimals,
        )

    def validate(self) -> None:
        if self.liquidity < 0:
            raise ValueError(f"liquidity must be non-negative, got {self.liquidity}")
        if self.sqrt_price_x96 <= 0:
            raise ValueError(f"sqrt price must be positive, got {self.sqrt_price_x96}")
        if self.tick < MIN_TICK or self.tick >= MAX_TICK:
            raise ValueError(f"tick {self.tick} outside [{MIN_TICK}, {MAX_TICK})")
        lower = sqrt_price_at_tick(self.tick)
        upper = sqrt_price_at_tick(self.tick + 1)
        if not lower <= self.sqrt_price_x96 < upper:
            logger.warning(
                "pool %s: sqrt price %d outside band of tick %d [%d, %d)",
                self.pool_id, self.sqrt_price_x96, self.tick, lower, upper,
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pool_id": self.pool_id,
            "liquidity": self.liquidity,
            "sqrt_price_x96": self.sqrt_price_x96,
            "tick": self.tick,
            "token0_decimals": self.token0_decimals,
            "token1_decimals": self.token1_decimals,
            "block_number": self.block_number,
        }


@dataclass(frozen=True)
class TradeSizing:
    direction: Direction
    amount_in: int
    amount_out: int
    sqrt_price_now: int
    sqrt_price_target: int
    sqrt_price_post: int
    price_now: int
    price_target: int
    price_post: int
    price_impact_percent: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "direction": self.direction.value,
            "amount_in": self.amount_in,
            "amount_out": self.amount_out,
            "sqrt_price_now": self.sqrt_price_now,
            "sqrt_price_target": self.sqrt_price_target,
            "sqrt_price_post": self.sqrt_price_post,
            "price_now": self.price_now,
            "price_target": self.price_target,
            "price_post": self.price_post,
            "price_impact_percent": round(self.price_impact_percent, 6),
        }


@dataclass(frozen=True)
class NoOpportunity:
    """Sentinel: the pool already sits at (or within) the reference price."""
    reason: str
    deviation_bps: int = 0
    price_now: int | None = None
    price_target: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "deviation_bps": self.deviation_bps,
            "price_now": self.price_now,
            "price_target": self.price_target,
        }


def size_push_price_down(liquidity: int, sqrt_now: int, sqrt_target: int) -> tuple[int, int, int]:
    """zeroForOne amounts. Returns (amount0_in, amount1_out, sqrt_price_post).

    The post price is recomputed from the truncated ``amount0_in`` and is the
    authoritative landing price.
    """
    if sqrt_target >= sqrt_now:
        raise OrderingViolation(
            f"push_price_down requires sqrt_target < sqrt_now ({sqrt_target} >= {sqrt_now})"
        )
    if liquidity == 0:
        raise NoLiquidity("active liquidity is zero")

    d = sqrt_now - sqrt_target
    amount_in = (liquidity * d * Q96) // (sqrt_now * sqrt_target)
    amount_out = (liquidity * d) // Q96
    sqrt_post = (liquidity * sqrt_now * Q96) // (amount_in * sqrt_now + liquidity * Q96)
    return amount_in, amount_out, sqrt_post


def size_push_price_up(liquidity: int, sqrt_now: int, sqrt_target: int) -> tuple[int, int, int]:
    """oneForZero amounts. Returns (amount1_in, amount0_out, sqrt_price_post)."""
    if sqrt_target <= sqrt_now:
        raise OrderingViolation(
            f"push_price_up requires sqrt_target > sqrt_now ({sqrt_target} <= {sqrt_now})"
        )
    if liquidity == 0:
        raise NoLiquidity("active liquidity is zero")

    amount_in = (liquidity * (sqrt_target - sqrt_now)) // Q96
    amount_out = (liquidity * ((Q96 * Q96) // sqrt_now - (Q96 * Q96) // sqrt_target)) // Q96
    sqrt_post = sqrt_now + (amount_in * Q96) // liquidity
    return amount_in, amount_out, sqrt_post


def size_correction(pool: PoolState, target_price_e18: int) -> TradeSizing | NoOpportunity:
    """Pick the direction from the square-root ordering and size the trade."""
    dec0, dec1 = pool.token0_decimals, pool.token1_decimals
    sqrt_now = pool.sqrt_price_x96
    sqrt_target = price_to_sqrt_price_x96(target_price_e18, dec0, dec1)
    price_now = pool.price_e18

    if sqrt_target == 0:
        raise ValueError(f"target price {target_price_e18} rounds to a zero sqrt price")
    if sqrt_now == sqrt_target:
        return NoOpportunity(
            reason="pool at reference price",
            price_now=price_now,
            price_target=target_price_e18,
        )

    if sqrt_now > sqrt_target:
        direction = Direction.PUSH_PRICE_DOWN
        amount_in, amount_out, sqrt_post = size_push_price_down(pool.liquidity, sqrt_now, sqrt_target)
    else:
        direction = Direction.PUSH_PRICE_UP
        amount_in, amount_out, sqrt_post = size_push_price_up(pool.liquidity, sqrt_now, sqrt_target)

    price_post = sqrt_price_x96_to_price(sqrt_post, dec0, dec1)
    impact = (price_post - price_now) / price_now * 100 if price_now else 0.0

    sizing = TradeSizing(
        direction=direction,
        amount_in=amount_in,
        amount_out=amount_out,
        sqrt_price_now=sqrt_now,
        sqrt_price_target=sqrt_target,
        sqrt_price_post=sqrt_post,
        price_now=price_now,
        price_target=target_price_e18,
        price_post=price_post,
        price_impact_percent=impact,
    )
    logger.info(
        "sizing %s in=%d out=%d price %d -> %d (target %d, impact %.4f%%)",
        direction.value, amount_in, amount_out, price_now, price_post,
        target_price_e18, impact,
    )
    return sizing


def amounts_for_liquidity(
    liquidity: int,
    sqrt_price_x96: int,
    tick_lower: int = MIN_TICK,
    tick_upper: int = MAX_TICK,
) -> tuple[int, int]:
    """Token reserves (amount0, amount1) backing ``liquidity`` between two ticks."""
    sqrt_a = sqrt_price_at_tick(min(tick_lower, tick_upper))
    sqrt_b = sqrt_price_at_tick(max(tick_lower, tick_upper))

    if sqrt_price_x96 <= sqrt_a:
        return (liquidity * (sqrt_b - sqrt_a) * Q96) // (sqrt_b * sqrt_a), 0
    if sqrt_price_x96 >= sqrt_b:
        return 0, (liquidity * (sqrt_b - sqrt_a)) // Q96

    amount0 = (liquidity * (sqrt_b - sqrt_price_x96) * Q96) // (sqrt_b * sqrt_price_x96)
    amount1 = (liquidity * (sqrt_price_x96 - sqrt_a)) // Q96
    return amount0, amount1
