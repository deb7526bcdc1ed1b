"""NAV correction endpoints: trigger checks, ledger reads, queued redemptions."""

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Body, HTTPException, Query
from fastapi.responses import Response

import navarb.config as cfg
from api import deps
from api.metrics import ledger_entries
from api.models import (
    CheckRequest,
    ConfigResponse,
    CycleResponse,
    EntriesResponse,
    PendingResponse,
    PendingStatusFilter,
    ResetResponse,
    StatusResponse,
    SummaryResponse,
)
from navarb.finalization import FinalizationStatus
from navarb.hot_config import get_reloader

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/arb", tags=["arb"])


@router.post("/check", summary="Run one correction cycle", response_model=CycleResponse)
async def trigger_check(req: CheckRequest | None = None):
    """Read pool state, size a correction if the deviation clears the trigger, and submit it."""
    driver = deps.get_driver()
    try:
        result = await driver.trigger_check(source=req.source if req else "manual")
    except Exception as exc:
        logger.exception("Correction cycle failed")
        raise HTTPException(status_code=500, detail=str(exc))
    return result.to_dict()


@router.post("/events", summary="Submit a chain event", response_model=CycleResponse)
async def post_event(payload: dict[str, Any] = Body(...)):
    """Validate a raw chain event (``price_changed`` / ``nav_updated``) and trigger a check."""
    driver = deps.get_driver()
    try:
        result = await driver.handle_event(payload)
    except Exception as exc:
        logger.exception("Event handling failed")
        raise HTTPException(status_code=500, detail=str(exc))
    return result.to_dict()


@router.get("/status", summary="Driver and hot-config status", response_model=StatusResponse)
def get_status():
    driver = deps.current_driver()
    return {
        "driver": driver.get_status() if driver else None,
        "hot_config": get_reloader().get_status(),
    }


@router.get("/summary", summary="Ledger profit statistics", response_model=SummaryResponse)
def get_summary():
    ledger = deps.get_ledger()
    try:
        summary = ledger.summary()
    except Exception as exc:
        logger.exception("Ledger summary failed")
        raise HTTPException(status_code=500, detail=str(exc))
    return {"pool_id": ledger.pool_id, **summary.to_dict()}


@router.get("/entries", summary="Recent ledger entries", response_model=EntriesResponse)
def get_entries(n: int = Query(10, ge=1, le=500)):
    """Most recent first."""
    ledger = deps.get_ledger()
    entries = [e.to_dict() for e in ledger.recent(n)]
    return {"pool_id": ledger.pool_id, "count": len(entries), "entries": entries}


@router.get("/export", summary="Export the ledger as CSV")
def export_ledger():
    ledger = deps.get_ledger()
    try:
        csv = ledger.export().to_csv(index=False)
    except Exception as exc:
        logger.exception("Ledger export failed")
        raise HTTPException(status_code=500, detail=str(exc))
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d")
    return Response(
        content=csv,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="ledger_{ledger.pool_id}_{stamp}.csv"'},
    )


@router.post("/reset", summary="Reset the ledger", response_model=ResetResponse)
def reset_ledger():
    """Clears every entry and the starting balance. The store document is kept."""
    ledger = deps.get_ledger()
    ledger.reset()
    ledger_entries.set(0)
    return {"pool_id": ledger.pool_id, "reset": True, "trade_count": ledger.trade_count}


@router.get("/pending", summary="Queued redemptions", response_model=PendingResponse)
def list_pending(status: PendingStatusFilter | None = None):
    store = deps.get_pending_store()
    records = store.list(FinalizationStatus(status.value) if status else None)
    driver = deps.current_driver()
    return {
        "pool_id": driver.pool_id if driver else cfg.POOL_ID,
        "records": [r.to_dict() for r in records],
    }


@router.post(
    "/pending/{record_id}/finalize",
    summary="Retry a queued redemption",
    response_model=CycleResponse,
)
async def finalize_pending(record_id: str):
    """Operator retry for a PENDING or FAILED redemption. Never retried automatically."""
    driver = deps.get_driver()
    try:
        result = await driver.retry_finalization(record_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown finalization record {record_id}")
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except Exception as exc:
        logger.exception("Finalization retry failed")
        raise HTTPException(status_code=500, detail=str(exc))
    return result.to_dict()


@router.get("/config", summary="Effective tunables", response_model=ConfigResponse)
def get_config():
    return {
        "pool_id": cfg.POOL_ID,
        "token0_decimals": cfg.TOKEN0_DECIMALS,
        "token1_decimals": cfg.TOKEN1_DECIMALS,
        "arb_trigger_bps": cfg.ARB_TRIGGER_BPS,
        "slippage_pct": cfg.SLIPPAGE_PCT,
        "deadline_margin_seconds": cfg.DEADLINE_MARGIN_SECONDS,
        "gas_limit_margin_pct": cfg.GAS_LIMIT_MARGIN_PCT,
        "redemption_delay_seconds": cfg.REDEMPTION_DELAY_SECONDS,
        "monitor_enabled": cfg.MONITOR_ENABLED,
        "active_overrides": get_reloader().get_active_overrides(),
    }
