"""Contracts for the external chain collaborators.

The engine never signs, broadcasts or reads the chain itself. A deployment
injects a ``PoolStateReader`` and an ``ExecutionClient``; tests inject fakes.
"""
from __future__ import annotations

__all__ = [
    "CorrectionAction",
    "Receipt",
    "Reverted",
    "ValuationReading",
    "PoolStateReader",
    "ExecutionClient",
]

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from navarb.selector import ExecutionParams
    from navarb.sizing import PoolState


class CorrectionAction(str, enum.Enum):
    MINT_THEN_SELL = "arb_mint_then_sell"          # push price down, settles in one tx
    BUY_AND_QUEUE = "arb_buy_and_queue"            # push price up, queues a redemption
    COMPLETE_QUEUED_REDEEM = "complete_queued_redeem"


@dataclass(frozen=True)
class Receipt:
    tx_ref: str
    block_number: int | None = None
    gas_used: int | None = None
    gas_price: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_ref": self.tx_ref,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
            "gas_price": self.gas_price,
        }


@dataclass(frozen=True)
class Reverted:
    reason: str
    tx_ref: str | None = None


@dataclass(frozen=True)
class ValuationReading:
    """Raw holdings of the arbitrage account plus the vault share price (E18)."""
    balance_token0: int
    balance_token1: int
    share_price: int


class PoolStateReader(Protocol):
    async def read_pool_state(self) -> PoolState: ...

    async def read_reference_price(self) -> int: ...

    async def read_valuation(self) -> ValuationReading: ...


class ExecutionClient(Protocol):
    async def chain_time(self) -> int: ...

    async def estimate(self, action: CorrectionAction, params: ExecutionParams) -> int: ...

    async def submit(self, action: CorrectionAction, params: ExecutionParams, gas_limit: int) -> str: ...

    async def wait(self, pending_ref: str) -> Receipt | Reverted: ...
