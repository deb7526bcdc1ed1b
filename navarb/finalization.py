"""Queued-redemption bookkeeping for the push-price-up correction.

A confirmed buy-and-queue leaves value locked until an unlock time. Each one
becomes a ``PendingFinalization`` record, persisted before anything is
scheduled, so a restarted process (or an operator) can complete it later.
``FinalizationScheduler`` runs exactly one completion attempt per record at
its unlock time; failed records wait for a manual retry.
"""
from __future__ import annotations

__all__ = [
    "FinalizationStatus",
    "PendingFinalization",
    "PendingFinalizationStore",
    "FinalizationScheduler",
]

import asyncio
import enum
import json
import os
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

import structlog

log = structlog.get_logger()


class FinalizationStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETING = "completing"
    FINALIZED = "finalized"
    FAILED = "failed"


@dataclass
class PendingFinalization:
    pool_id: str
    queue_tx_ref: str
    min_amount_out: int
    unlock_at: float
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    status: FinalizationStatus = FinalizationStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    finalize_tx_ref: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status in (FinalizationStatus.PENDING, FinalizationStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "pool_id": self.pool_id,
            "queue_tx_ref": self.queue_tx_ref,
            "min_amount_out": self.min_amount_out,
            "unlock_at": self.unlock_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "finalize_tx_ref": self.finalize_tx_ref,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingFinalization:
        return cls(
            record_id=data["record_id"],
            pool_id=data["pool_id"],
            queue_tx_ref=data["queue_tx_ref"],
            min_amount_out=int(data["min_amount_out"]),
            unlock_at=float(data["unlock_at"]),
            created_at=data.get("created_at", 0.0),
            updated_at=data.get("updated_at", 0.0),
            status=FinalizationStatus(data.get("status", "pending")),
            attempts=data.get("attempts", 0),
            last_error=data.get("last_error"),
            finalize_tx_ref=data.get("finalize_tx_ref"),
        )


class PendingFinalizationStore:
    """All records for one pool in a single JSON document, rewritten atomically."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @classmethod
    def for_pool(cls, directory: str | Path, pool_id: str) -> PendingFinalizationStore:
        return cls(Path(directory) / f"{re.sub(r'[^A-Za-z0-9_.-]', '_', pool_id)}.pending.json")

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, PendingFinalization]:
        if not self._path.exists():
            return {}
        text = self._path.read_text()
        if not text.strip():
            return {}
        items = json.loads(text).get("records", [])
        return {item["record_id"]: PendingFinalization.from_dict(item) for item in items}

    def _write(self, records: dict[str, PendingFinalization]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps({"records": [r.to_dict() for r in records.values()]}, indent=2))
        os.replace(tmp, self._path)

    def put(self, record: PendingFinalization) -> None:
        record.updated_at = time.time()
        with self._lock:
            records = self._read()
            records[record.record_id] = record
            self._write(records)

    def get(self, record_id: str) -> PendingFinalization | None:
        with self._lock:
            return self._read().get(record_id)

    def list(self, status: FinalizationStatus | None = None) -> list[PendingFinalization]:
        with self._lock:
            records = list(self._read().values())
        if status is not None:
            records = [r for r in records if r.status == status]
        return sorted(records, key=lambda r: r.created_at)

    def open_records(self) -> list[PendingFinalization]:
        return [r for r in self.list() if r.is_open]


class FinalizationScheduler:
    """One asyncio task per record, sleeping until unlock then invoking ``callback``."""

    def __init__(
        self,
        callback: Callable[[str], Awaitable[Any]],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._callback = callback
        self._clock = clock
        self._tasks: dict[str, asyncio.Task] = {}

    def schedule(self, record: PendingFinalization) -> bool:
        """Returns False when the record already has a live timer."""
        existing = self._tasks.get(record.record_id)
        if existing is not None and not existing.done():
            return False

        delay = max(0.0, record.unlock_at - self._clock())
        task = asyncio.get_running_loop().create_task(self._run(record.record_id, delay))
        self._tasks[record.record_id] = task
        log.info("finalization.scheduled", record_id=record.record_id, delay_s=round(delay, 3))
        return True

    async def _run(self, record_id: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            await self._callback(record_id)
        except asyncio.CancelledError:
            log.info("finalization.timer cancelled", record_id=record_id)
            raise
        except Exception:
            log.exception("finalization.task failed", record_id=record_id)
        finally:
            if self._tasks.get(record_id) is asyncio.current_task():
                del self._tasks[record_id]

    def cancel(self, record_id: str) -> bool:
        task = self._tasks.pop(record_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    @property
    def scheduled(self) -> list[str]:
        return [rid for rid, task in self._tasks.items() if not task.done()]

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
