"""Direction selection and slippage/deadline-bounded execution parameters."""
from __future__ import annotations

__all__ = [
    "BPS",
    "deviation_bps",
    "OpportunityCheck",
    "evaluate_opportunity",
    "ExecutionParams",
    "build_execution_params",
    "min_out_with_slippage",
    "ensure_deadline",
    "gas_limit_with_margin",
]

import logging
from dataclasses import dataclass
from typing import Any

from navarb.chain import CorrectionAction
from navarb.errors import DeadlineExpired
from navarb.sizing import Direction, NoOpportunity, PoolState, TradeSizing, size_correction

logger = logging.getLogger(__name__)

BPS = 10_000


def deviation_bps(price_now_e18: int, price_target_e18: int) -> int:
    """|target - now| in basis points of target, floor."""
    if price_target_e18 <= 0:
        raise ValueError(f"reference price must be positive, got {price_target_e18}")
    return abs(price_target_e18 - price_now_e18) * BPS // price_target_e18


@dataclass(frozen=True)
class OpportunityCheck:
    triggered: bool
    deviation_bps: int
    trigger_bps: int
    price_now: int
    price_target: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "triggered": self.triggered,
            "deviation_bps": self.deviation_bps,
            "trigger_bps": self.trigger_bps,
            "price_now": self.price_now,
            "price_target": self.price_target,
        }


def evaluate_opportunity(
    pool: PoolState,
    price_target_e18: int,
    trigger_bps: int,
) -> tuple[OpportunityCheck, TradeSizing | NoOpportunity]:
    """Gate on deviation (``>=`` trigger) and size the trade when it fires."""
    price_now = pool.price_e18
    dev = deviation_bps(price_now, price_target_e18)
    check = OpportunityCheck(
        triggered=dev >= trigger_bps,
        deviation_bps=dev,
        trigger_bps=trigger_bps,
        price_now=price_now,
        price_target=price_target_e18,
    )
    if not check.triggered:
        return check, NoOpportunity(
            reason=f"deviation {dev} bps below trigger {trigger_bps} bps",
            deviation_bps=dev,
            price_now=price_now,
            price_target=price_target_e18,
        )

    logger.debug("selector: deviation %d bps >= trigger %d bps (now=%d target=%d)",
                 dev, trigger_bps, price_now, price_target_e18)
    sizing = size_correction(pool, price_target_e18)
    if isinstance(sizing, NoOpportunity):
        return check, NoOpportunity(
            reason=sizing.reason,
            deviation_bps=dev,
            price_now=price_now,
            price_target=price_target_e18,
        )
    return check, sizing


_ACTIONS = {
    Direction.PUSH_PRICE_DOWN: CorrectionAction.MINT_THEN_SELL,
    Direction.PUSH_PRICE_UP: CorrectionAction.BUY_AND_QUEUE,
}


@dataclass(frozen=True)
class ExecutionParams:
    action: CorrectionAction
    direction: Direction | None
    max_amount_in: int
    min_amount_out: int
    deadline: int | None
    slippage_pct: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "direction": self.direction.value if self.direction else None,
            "max_amount_in": self.max_amount_in,
            "min_amount_out": self.min_amount_out,
            "deadline": self.deadline,
            "slippage_pct": self.slippage_pct,
        }


def min_out_with_slippage(amount_out: int, slippage_pct: int) -> int:
    if not 0 <= slippage_pct < 100:
        raise ValueError(f"slippage_pct must be in [0, 100), got {slippage_pct}")
    return amount_out * (100 - slippage_pct) // 100


def build_execution_params(
    sizing: TradeSizing,
    chain_time: int,
    slippage_pct: int = 1,
    margin_seconds: int = 3000,
) -> ExecutionParams:
    """Exact ``max_amount_in``; ``min_amount_out`` floored by the tolerance."""
    if sizing.amount_in <= 0:
        raise ValueError(f"refusing to build params for a zero-amount trade ({sizing.amount_in})")
    return ExecutionParams(
        action=_ACTIONS[sizing.direction],
        direction=sizing.direction,
        max_amount_in=sizing.amount_in,
        min_amount_out=min_out_with_slippage(sizing.amount_out, slippage_pct),
        deadline=chain_time + margin_seconds,
        slippage_pct=slippage_pct,
    )


def ensure_deadline(params: ExecutionParams, chain_time: int) -> None:
    """Raise DeadlineExpired unless the deadline is strictly after ``chain_time``."""
    if params.deadline is None:
        raise ValueError(f"{params.action.value} params carry no deadline")
    if params.deadline <= chain_time:
        raise DeadlineExpired(params.deadline, chain_time)


def gas_limit_with_margin(estimate: int, margin_pct: int = 120) -> int:
    return estimate * margin_pct // 100
