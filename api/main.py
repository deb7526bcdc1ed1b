"""FastAPI application for the NAV arbitrage engine.

Run with: uvicorn api.main:app

A deployment registers its ``CorrectionDriver`` (built with real chain
collaborators) through ``api.deps.set_driver`` before serving; the ledger
read routes work without one.
"""

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path

import structlog
from dotenv import load_dotenv

# Load .env from project root before any config access
_project_root = Path(__file__).resolve().parents[1]
load_dotenv(_project_root / ".env")

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

import navarb.config as cfg
from api import deps
from api.middleware import (
    RateLimitMiddleware,
    RequestContextMiddleware,
    get_allowed_origins,
    verify_api_key,
)
from api.routes.arb import router as arb_router
from navarb import __version__
from navarb.hot_config import get_reloader

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    level = getattr(logging, cfg.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = (
        structlog.processors.JSONRenderer()
        if cfg.LOG_FORMAT == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    reloader = get_reloader()
    await reloader.start()
    driver = deps.current_driver()
    if driver is not None:
        if driver.ledger.trade_count == 0:
            await driver.record_observation()
        await driver.restore_pending()
    logger.info("NAV arbitrage API started (pool=%s, trigger=%d bps)", cfg.POOL_ID, cfg.ARB_TRIGGER_BPS)
    yield
    if driver is not None:
        await driver.shutdown()
    await reloader.stop()


app = FastAPI(
    title="NAV Arbitrage Engine",
    version=__version__,
    description="Keeps a concentrated-liquidity pool priced at its vault's NAV",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(arb_router, prefix="/api/v1", dependencies=[Depends(verify_api_key)])
app.mount("/metrics", make_asgi_app())


@app.get("/health", tags=["system"])
def health():
    driver = deps.current_driver()
    return {
        "status": "ok",
        "version": __version__,
        "driver": driver.state.value if driver else None,
    }
