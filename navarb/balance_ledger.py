"""Append-only balance ledger with derived profit statistics.

Every correction attempt (and the opening observation) appends one immutable
``LedgerEntry``. Derived fields depend only on the starting balance and the
sequence of raw ``total_value``s, so replaying the raw snapshots always
reproduces the stored log exactly (``BalanceLog.verify``).

Persistence: one JSON document per pool id (``LedgerStore``), rewritten
atomically after each append. A missing or empty document starts a new log.
"""
from __future__ import annotations

__all__ = [
    "ValuationSnapshot",
    "LedgerEntry",
    "LedgerSummary",
    "BalanceLog",
    "LedgerStore",
    "EXPORT_COLUMNS",
    "value_in_token1",
    "derive_entry",
    "compute_summary",
    "get_balance_log",
]

import json
import logging
import os
import re
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from fractions import Fraction
from pathlib import Path
from typing import Any, Iterable, Iterator

import pandas as pd

import navarb.config as cfg
from navarb.fixed_point import PRICE_SCALE

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "timestamp",
    "balance_token0",
    "balance_token1",
    "share_price",
    "total_value",
    "change",
    "change_percent",
    "cumulative_profit",
    "cumulative_profit_percent",
    "direction",
    "tx_ref",
]


def value_in_token1(balance0: int, balance1: int, share_price: int, dec0: int, dec1: int) -> int:
    """Holdings valued in raw token1 units; token0 (the vault share) at ``share_price`` E18."""
    return balance1 + (balance0 * share_price * 10 ** dec1) // (PRICE_SCALE * 10 ** dec0)


@dataclass(frozen=True)
class ValuationSnapshot:
    """Raw observation fed to the ledger."""
    balance_token0: int
    balance_token1: int
    share_price: int
    total_value: int
    timestamp: float = field(default_factory=time.time)
    tx_ref: str | None = None
    direction: str | None = None

    @classmethod
    def from_balances(
        cls,
        balance_token0: int,
        balance_token1: int,
        share_price: int,
        token0_decimals: int,
        token1_decimals: int,
        tx_ref: str | None = None,
        direction: str | None = None,
        timestamp: float | None = None,
    ) -> ValuationSnapshot:
        return cls(
            balance_token0=balance_token0,
            balance_token1=balance_token1,
            share_price=share_price,
            total_value=value_in_token1(
                balance_token0, balance_token1, share_price, token0_decimals, token1_decimals,
            ),
            timestamp=time.time() if timestamp is None else timestamp,
            tx_ref=tx_ref,
            direction=direction,
        )


@dataclass(frozen=True)
class LedgerEntry:
    timestamp: float
    balance_token0: int
    balance_token1: int
    share_price: int
    total_value: int
    tx_ref: str | None
    direction: str | None
    change_from_previous: int | None
    change_percent_from_previous: float | None
    cumulative_profit: int
    cumulative_profit_percent: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerEntry:
        return cls(**data)

    def raw(self) -> ValuationSnapshot:
        return ValuationSnapshot(
            balance_token0=self.balance_token0,
            balance_token1=self.balance_token1,
            share_price=self.share_price,
            total_value=self.total_value,
            timestamp=self.timestamp,
            tx_ref=self.tx_ref,
            direction=self.direction,
        )


def _percent(numerator: int, denominator: int) -> float:
    if denominator == 0:
        return 0.0
    return numerator / denominator * 100


def derive_entry(
    snapshot: ValuationSnapshot,
    previous_total: int | None,
    starting_balance: int,
) -> LedgerEntry:
    """Annotate a raw snapshot against the previous entry and the starting balance."""
    if previous_total is None:
        change = None
        change_pct = None
    else:
        change = snapshot.total_value - previous_total
        change_pct = _percent(change, previous_total)

    profit = snapshot.total_value - starting_balance
    return LedgerEntry(
        timestamp=snapshot.timestamp,
        balance_token0=snapshot.balance_token0,
        balance_token1=snapshot.balance_token1,
        share_price=snapshot.share_price,
        total_value=snapshot.total_value,
        tx_ref=snapshot.tx_ref,
        direction=snapshot.direction,
        change_from_previous=change,
        change_percent_from_previous=change_pct,
        cumulative_profit=profit,
        cumulative_profit_percent=_percent(profit, starting_balance),
    )


@dataclass(frozen=True)
class LedgerSummary:
    has_data: bool
    start_time: float | None = None
    last_update_time: float | None = None
    starting_balance: int | None = None
    current_balance: int | None = None
    total_profit: int = 0
    total_profit_percent: float = 0.0
    trade_count: int = 0
    correction_count: int = 0
    winning_entries: int = 0
    losing_entries: int = 0
    win_rate: float = 0.0
    avg_profit_per_entry: float = 0.0
    max_drawdown_percent: float = 0.0
    hours_running: float = 0.0
    profit_per_hour: float = 0.0
    profit_per_day: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def compute_summary(
    entries: list[LedgerEntry],
    starting_balance: int | None,
    start_time: float | None = None,
) -> LedgerSummary:
    """Aggregate statistics over a whole log."""
    if not entries or starting_balance is None:
        return LedgerSummary(has_data=False, start_time=start_time)

    last = entries[-1]
    total_profit = last.total_value - starting_balance
    start = entries[0].timestamp if start_time is None else start_time

    # Peak starts at the starting balance and only moves forward.
    peak = starting_balance
    max_drawdown = Fraction(0)
    for e in entries:
        if e.total_value > peak:
            peak = e.total_value
        if peak > 0:
            drawdown = Fraction(peak - e.total_value, peak)
            if drawdown > max_drawdown:
                max_drawdown = drawdown

    with_change = [e for e in entries if e.change_from_previous is not None]
    winning = sum(1 for e in with_change if e.change_from_previous > 0)
    losing = sum(1 for e in with_change if e.change_from_previous < 0)
    win_rate = winning / len(with_change) * 100 if with_change else 0.0

    elapsed = max(0.0, last.timestamp - start)
    hours = max(0.01, elapsed / 3600)
    days = max(1.0, elapsed / 86_400)

    return LedgerSummary(
        has_data=True,
        start_time=start,
        last_update_time=last.timestamp,
        starting_balance=starting_balance,
        current_balance=last.total_value,
        total_profit=total_profit,
        total_profit_percent=_percent(total_profit, starting_balance),
        trade_count=len(entries),
        correction_count=sum(1 for e in entries if e.direction and e.tx_ref),
        winning_entries=winning,
        losing_entries=losing,
        win_rate=win_rate,
        avg_profit_per_entry=total_profit / len(entries),
        max_drawdown_percent=float(max_drawdown * 100),
        hours_running=hours,
        profit_per_hour=total_profit / hours,
        profit_per_day=total_profit / days,
    )


_SAFE_ID = re.compile(r"[^A-Za-z0-9_.-]")


class LedgerStore:
    """JSON document per pool id, replaced atomically on every save."""

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)

    def path_for(self, pool_id: str) -> Path:
        return self._dir / f"{_SAFE_ID.sub('_', pool_id)}.json"

    def load(self, pool_id: str) -> dict[str, Any] | None:
        path = self.path_for(pool_id)
        if not path.exists():
            return None
        text = path.read_text()
        if not text.strip():
            return None
        return json.loads(text)

    def save(self, pool_id: str, data: dict[str, Any]) -> None:
        path = self.path_for(pool_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        os.replace(tmp, path)


class BalanceLog:
    """Process-wide, append-only valuation log for one pool."""

    def __init__(
        self,
        pool_id: str = "default",
        store: LedgerStore | None = None,
        starting_balance: int | None = None,
        start_time: float | None = None,
    ) -> None:
        self._pool_id = pool_id
        self._store = store
        self._lock = threading.RLock()
        self._entries: list[LedgerEntry] = []
        self._starting_balance = starting_balance
        self._start_time = time.time() if start_time is None else start_time

    # ── Construction ──

    @classmethod
    def open(cls, pool_id: str, store: LedgerStore) -> BalanceLog:
        """Load the pool's log from ``store``, initializing it when absent."""
        data = store.load(pool_id)
        if data is None:
            log = cls(pool_id=pool_id, store=store)
            log._persist()
            logger.info("balance_ledger: initialized empty log for pool %s", pool_id)
            return log

        log = cls(
            pool_id=pool_id,
            store=store,
            starting_balance=data.get("startingBalance"),
            start_time=data.get("startTime"),
        )
        log._entries = [LedgerEntry.from_dict(item) for item in data.get("entries", [])]
        if not log.verify():
            logger.error("balance_ledger: stored derived fields for pool %s do not match replay", pool_id)
        logger.info("balance_ledger: restored %d entries for pool %s", len(log._entries), pool_id)
        return log

    @classmethod
    def replay(
        cls,
        snapshots: Iterable[ValuationSnapshot],
        starting_balance: int | None = None,
        pool_id: str = "default",
        start_time: float | None = None,
    ) -> BalanceLog:
        """Rebuild a log from raw snapshots, without persistence."""
        log = cls(pool_id=pool_id, starting_balance=starting_balance, start_time=start_time)
        for snap in snapshots:
            log.append(snap)
        return log

    # ── Writes ──

    def append(self, snapshot: ValuationSnapshot) -> LedgerEntry:
        """Derive and append one entry; derivation and append happen under one lock."""
        with self._lock:
            opening = self._starting_balance is None
            if opening:
                self._starting_balance = snapshot.total_value

            previous = self._entries[-1].total_value if self._entries else None
            entry = derive_entry(snapshot, previous, self._starting_balance)
            self._entries.append(entry)
            try:
                self._persist()
            except Exception:
                # memory must not run ahead of the store
                self._entries.pop()
                if opening:
                    self._starting_balance = None
                raise
            if opening:
                logger.info("balance_ledger: starting balance %d", snapshot.total_value)

        if entry.change_from_previous is not None:
            logger.info(
                "balance_ledger: change %+d (%+.4f%%) total profit %+d (%+.4f%%) value=%d tx=%s",
                entry.change_from_previous, entry.change_percent_from_previous,
                entry.cumulative_profit, entry.cumulative_profit_percent,
                entry.total_value, entry.tx_ref or "-",
            )
        else:
            logger.info("balance_ledger: first entry value=%d", entry.total_value)
        return entry

    def reset(self) -> None:
        """Reinitialize every field; the underlying store document is kept."""
        with self._lock:
            self._entries = []
            self._starting_balance = None
            self._start_time = time.time()
            self._persist()
        logger.warning("balance_ledger: log for pool %s has been reset", self._pool_id)

    # ── Reads ──

    @property
    def pool_id(self) -> str:
        return self._pool_id

    @property
    def starting_balance(self) -> int | None:
        return self._starting_balance

    @property
    def start_time(self) -> float:
        return self._start_time

    @property
    def trade_count(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def current_balance(self) -> int | None:
        with self._lock:
            return self._entries[-1].total_value if self._entries else None

    @property
    def entries(self) -> list[LedgerEntry]:
        with self._lock:
            return list(self._entries)

    def recent(self, n: int = 10) -> Iterator[LedgerEntry]:
        """Most recent first. Each call snapshots the current log."""
        with self._lock:
            window = self._entries[-n:] if n > 0 else []
        return reversed(window)

    def summary(self) -> LedgerSummary:
        with self._lock:
            return compute_summary(list(self._entries), self._starting_balance, self._start_time)

    def verify(self) -> bool:
        """True when replaying the raw snapshots reproduces every derived field."""
        with self._lock:
            entries = list(self._entries)
            starting = self._starting_balance
        rebuilt = BalanceLog.replay((e.raw() for e in entries), starting_balance=starting)
        return rebuilt.entries == entries

    def export(self) -> pd.DataFrame:
        rows = []
        for e in self.entries:
            rows.append({
                "timestamp": datetime.fromtimestamp(e.timestamp, tz=timezone.utc).isoformat(),
                "balance_token0": e.balance_token0,
                "balance_token1": e.balance_token1,
                "share_price": e.share_price,
                "total_value": e.total_value,
                "change": e.change_from_previous,
                "change_percent": e.change_percent_from_previous,
                "cumulative_profit": e.cumulative_profit,
                "cumulative_profit_percent": e.cumulative_profit_percent,
                "direction": e.direction,
                "tx_ref": e.tx_ref,
            })
        return pd.DataFrame(rows, columns=EXPORT_COLUMNS, dtype=object)

    def export_csv(self, path: str | Path) -> Path:
        path = Path(path)
        self.export().to_csv(path, index=False)
        logger.info("balance_ledger: exported %d entries to %s", self.trade_count, path)
        return path

    # ── Persistence ──

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "poolId": self._pool_id,
                "startTime": self._start_time,
                "startingBalance": self._starting_balance,
                "currentBalance": self._entries[-1].total_value if self._entries else None,
                "tradeCount": len(self._entries),
                "entries": [e.to_dict() for e in self._entries],
            }

    def _persist(self) -> None:
        if self._store is not None:
            self._store.save(self._pool_id, self.to_dict())


_log: BalanceLog | None = None


def get_balance_log() -> BalanceLog:
    global _log
    if _log is None:
        _log = BalanceLog.open(cfg.POOL_ID, LedgerStore(cfg.LEDGER_DIR))
    return _log
