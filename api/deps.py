"""Process-wide wiring between the HTTP layer and the engine.

The driver needs chain collaborators the HTTP layer cannot build itself, so
a deployment constructs it and registers it with ``set_driver`` before
serving. Read-only ledger routes work without a driver.
"""

from fastapi import HTTPException

import navarb.config as cfg
from api.metrics import record_cycle
from navarb.balance_ledger import BalanceLog, get_balance_log
from navarb.correction_driver import CorrectionDriver
from navarb.finalization import PendingFinalizationStore

_driver: CorrectionDriver | None = None


def set_driver(driver: CorrectionDriver | None) -> None:
    global _driver
    _driver = driver
    if driver is not None:
        driver.add_listener(record_cycle)


def current_driver() -> CorrectionDriver | None:
    return _driver


def get_driver() -> CorrectionDriver:
    if _driver is None:
        raise HTTPException(status_code=503, detail="Correction driver not configured")
    return _driver


def get_ledger() -> BalanceLog:
    if _driver is not None:
        return _driver.ledger
    return get_balance_log()


def get_pending_store() -> PendingFinalizationStore:
    if _driver is not None:
        return _driver.pending_store
    return PendingFinalizationStore.for_pool(cfg.LEDGER_DIR, cfg.POOL_ID)
