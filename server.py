#!/usr/bin/env python3
"""
htlcswap Server
Cross-chain HTLC atomic swap coordination.

Chains: Bitcoin, Ethereum, Tron, TON (each enabled by its HTLCSWAP_* settings)

Endpoints:
  GET    /api/status                - Health check
  POST   /orders                    - Create swap order
  GET    /orders                    - List orders
  GET    /orders/{id}               - Order status
  GET    /orders/{id}/stream        - Order status stream (SSE)
  POST   /orders/{id}/redeem        - Reveal secret on the destination leg
  POST   /orders/{id}/fund          - Fund source leg from the coordinator key
  DELETE /orders/{id}/monitor       - Stop monitoring an order
"""

import os
import time
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from htlcswap import __version__
from htlcswap.config import load_settings, build_adapters, close_adapters
from htlcswap.swap.executor import SwapExecutor
from htlcswap.swap.monitor import OrderMonitor
from htlcswap.swap.store import JSONOrderStore
from routes import orders as orders_routes

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

# =============================================================================
# STATE
# =============================================================================

# Filled at startup
_state: Dict[str, Any] = {
    "adapters": {},
    "monitor": None,
    "executor": None,
    "started_at": 0,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build adapters, store, monitor and executor; resume active orders."""
    settings = load_settings()
    adapters = build_adapters(settings)
    store = JSONOrderStore(os.path.expanduser(settings.db_path))
    monitor = OrderMonitor(adapters, store, settings.monitor)
    executor = SwapExecutor(adapters, monitor, store, settings.swap)
    orders_routes.configure(executor, settings.monitor.stream_close_delay)
    _state.update(adapters=adapters, monitor=monitor, executor=executor, started_at=int(time.time()))

    resumed = await executor.resume()
    log.info(f"htlcswap {__version__} started: chains={sorted(adapters)}, resumed={resumed}")
    try:
        yield
    finally:
        await _state["monitor"].shutdown()
        close_adapters(adapters)
        log.info("htlcswap stopped")


# =============================================================================
# APP SETUP
# =============================================================================

app = FastAPI(
    title="htlcswap",
    description="Cross-chain HTLC atomic swap coordinator",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(orders_routes.router)


@app.get("/api/status")
async def api_status():
    """Health check: configured chains and running monitors."""
    monitor = _state["monitor"]
    return {
        "status": "ok",
        "version": __version__,
        "chains": sorted(_state["adapters"]),
        "activeMonitors": monitor.active_count() if monitor else 0,
        "uptime": int(time.time()) - _state["started_at"] if _state["started_at"] else 0,
        "timestamp": int(time.time()),
    }


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting htlcswap on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)
