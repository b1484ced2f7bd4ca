#!/usr/bin/env python3
"""
hashswap Server

Cross-chain HTLC atomic swaps: ERC20 on an EVM chain (A) <-> Stellar (B).

Endpoints:
    GET    /api/health                      - Chain connectivity + monitor state
    GET    /api/tokens                      - Token allowlist
    GET    /api/stats                       - Swap counts and volume

    POST   /api/orders                      - createOrder
    GET    /api/orders                      - listOrders (?phase=)
    GET    /api/orders/{id}                 - getOrder
    POST   /api/orders/{id}/fill            - fillOrder
    POST   /api/orders/{id}/escrow          - createEscrow (lock on A)
    POST   /api/orders/{id}/fund            - fundOther (claimable balance on B)
    POST   /api/orders/{id}/claim-other     - claimOther (claim B, reveals secret)
    POST   /api/orders/{id}/claim-first     - claimFirst (claim A with secret)
    POST   /api/orders/{id}/refund          - Refund after timelock
    DELETE /api/orders/{id}                 - Cancel before any lock
"""

import os
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hashswap import __version__
from hashswap.config import Settings
from hashswap.services import Services, build_services
from routes import orders

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
log = logging.getLogger(__name__)


# =============================================================================
# APP
# =============================================================================

def create_app(services: Optional[Services] = None, start_monitor: bool = True) -> FastAPI:
    """
    Build the API app.

    Without `services`, the component graph is built from the environment
    at startup. The event monitor runs for the lifetime of the app.
    """
    app = FastAPI(
        title="hashswap",
        description="Cross-chain HTLC atomic swaps between an EVM chain and Stellar",
        version=__version__
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(orders.router)
    app.state.services = services

    @app.get("/")
    def root():
        return {"name": "hashswap", "version": __version__, "docs": "/docs"}

    @app.on_event("startup")
    async def startup_event():
        if app.state.services is None:
            app.state.services = build_services(Settings.from_env())
        if start_monitor:
            app.state.services.monitor.start()
        log.info("Swap API ready")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cleanup on shutdown."""
        if app.state.services is not None:
            app.state.services.monitor.stop()
        log.info("Swap API stopped")

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting hashswap on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)
