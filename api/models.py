from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class PendingStatusFilter(str, Enum):
    PENDING = "pending"
    COMPLETING = "completing"
    FINALIZED = "finalized"
    FAILED = "failed"


class CheckRequest(BaseModel):
    source: str = Field("manual", max_length=64, description="Free-form label recorded on the cycle")


class CycleResponse(BaseModel):
    cycle_id: str
    outcome: str
    pool_id: str
    source: str
    timestamp: float
    elapsed_ms: float
    check: Optional[dict[str, Any]] = None
    sizing: Optional[dict[str, Any]] = None
    params: Optional[dict[str, Any]] = None
    gas_limit: Optional[int] = None
    tx_ref: Optional[str] = None
    receipt: Optional[dict[str, Any]] = None
    pending: Optional[dict[str, Any]] = None
    ledger_entry: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class LedgerEntryModel(BaseModel):
    timestamp: float
    balance_token0: int
    balance_token1: int
    share_price: int = Field(..., description="Reference price, E18")
    total_value: int = Field(..., description="Holdings in raw token1 units")
    tx_ref: Optional[str] = None
    direction: Optional[str] = None
    change_from_previous: Optional[int] = None
    change_percent_from_previous: Optional[float] = None
    cumulative_profit: int
    cumulative_profit_percent: float


class EntriesResponse(BaseModel):
    pool_id: str
    count: int
    entries: list[LedgerEntryModel]


class SummaryResponse(BaseModel):
    pool_id: str
    has_data: bool
    start_time: Optional[float] = None
    last_update_time: Optional[float] = None
    starting_balance: Optional[int] = None
    current_balance: Optional[int] = None
    total_profit: int = 0
    total_profit_percent: float = 0.0
    trade_count: int = 0
    correction_count: int = 0
    winning_entries: int = 0
    losing_entries: int = 0
    win_rate: float = Field(0.0, description="Percent of entries with a positive change")
    avg_profit_per_entry: float = 0.0
    max_drawdown_percent: float = 0.0
    hours_running: float = 0.0
    profit_per_hour: float = 0.0
    profit_per_day: float = 0.0


class ResetResponse(BaseModel):
    pool_id: str
    reset: bool
    trade_count: int


class PendingRecordModel(BaseModel):
    record_id: str
    pool_id: str
    queue_tx_ref: str
    min_amount_out: int
    unlock_at: float
    created_at: float
    updated_at: float
    status: str
    attempts: int
    last_error: Optional[str] = None
    finalize_tx_ref: Optional[str] = None


class PendingResponse(BaseModel):
    pool_id: str
    records: list[PendingRecordModel]


class StatusResponse(BaseModel):
    driver: Optional[dict[str, Any]] = Field(None, description="None when no driver is wired")
    hot_config: dict[str, Any]


class ConfigResponse(BaseModel):
    pool_id: str
    token0_decimals: int
    token1_decimals: int
    arb_trigger_bps: int
    slippage_pct: int
    deadline_margin_seconds: int
    gas_limit_margin_pct: int
    redemption_delay_seconds: int
    monitor_enabled: bool
    active_overrides: dict[str, Any]
