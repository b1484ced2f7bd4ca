"""
Swap order endpoints.

Thin layer over SwapOrchestrator: every handler returns the swap snapshot
or a typed error. Raw transport errors never reach the client; retryable
failures are reported as 503 with status "pending".
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from hashswap.errors import (
    SwapError,
    SwapNotFound,
    InvalidParameters,
    InvalidPhase,
    SecretMismatch,
    InsufficientFunds,
    ExpiredBeforeCompletion,
    TransactionReverted,
    TransientChainError,
)

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# =============================================================================
# MODELS
# =============================================================================

class OrderCreateRequest(BaseModel):
    maker: str = Field(..., description="Maker address on chain A (locks maker_asset)")
    maker_receiver: str = Field(..., description="Maker address on chain B (receives taker_asset)")
    maker_asset: str = Field("USDC", description="Chain A asset symbol")
    taker_asset: str = Field("XLM", description="Chain B asset symbol")
    making_amount: int = Field(..., gt=0, description="Base units of maker_asset")
    taking_amount: int = Field(..., gt=0, description="Base units of taker_asset")
    timelock_duration: Optional[int] = Field(None, gt=0, description="Seconds until refund")


class OrderFillRequest(BaseModel):
    taker: str = Field(..., description="Taker address on chain B (funds taker_asset)")
    taker_receiver: str = Field(..., description="Taker address on chain A (receives maker_asset)")
    making_amount: Optional[int] = None
    taking_amount: Optional[int] = None
    maker_asset: Optional[str] = None
    taker_asset: Optional[str] = None


class ClaimRequest(BaseModel):
    secret: Optional[str] = Field(None, description="Revealed secret (hex); defaults to the one seen on chain B")


# =============================================================================
# HELPERS
# =============================================================================

# Most specific first
ERROR_STATUS = [
    (SwapNotFound, 404),
    (InvalidParameters, 400),
    (InvalidPhase, 409),
    (SecretMismatch, 422),
    (InsufficientFunds, 402),
    (ExpiredBeforeCompletion, 410),
    (TransactionReverted, 502),
    (TransientChainError, 503),
]

RETRY_MESSAGE = "Chain temporarily unavailable; retry the same request"


def http_error(error: SwapError) -> HTTPException:
    status = 500
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            status = code
            break
    detail = error.to_dict()
    detail["success"] = False
    detail["status"] = "pending" if error.retryable else "failed"
    if error.retryable:
        # Transport text stays in the log
        detail["detail"] = RETRY_MESSAGE
    if status >= 500:
        log.warning(f"Request failed: {error.code}: {error}")
    return HTTPException(status_code=status, detail=detail)


def _services(request: Request):
    return request.app.state.services


def _ok(data):
    return {"success": True, "data": data}


# =============================================================================
# INFO
# =============================================================================

@router.get("/health")
def health(request: Request):
    """Chain connectivity, monitor state and swap counts."""
    services = _services(request)
    stats = services.ledger.stats()
    return {
        "status": "ok",
        "chains": {
            "a": services.chain_a.health(),
            "b": services.chain_b.health(),
        },
        "monitor": services.monitor.running,
        "active_swaps": stats["pending"],
    }


@router.get("/tokens")
def list_tokens(request: Request):
    return _ok(_services(request).tokens.to_dict())


@router.get("/stats")
def stats(request: Request):
    return _ok(_services(request).ledger.stats())


# =============================================================================
# ORDERS
# =============================================================================

@router.post("/orders")
def create_order(req: OrderCreateRequest, request: Request):
    """createOrder: new swap with a fresh hashlock. The secret is never returned here."""
    try:
        snapshot = _services(request).orchestrator.create_order(
            maker=req.maker,
            maker_receiver=req.maker_receiver,
            maker_asset=req.maker_asset,
            taker_asset=req.taker_asset,
            making_amount=req.making_amount,
            taking_amount=req.taking_amount,
            timelock_duration=req.timelock_duration,
        )
    except SwapError as e:
        raise http_error(e)
    return _ok(snapshot)


@router.get("/orders")
def list_orders(request: Request, phase: Optional[str] = Query(None)):
    try:
        return _ok(_services(request).orchestrator.list_orders(phase))
    except SwapError as e:
        raise http_error(e)


@router.get("/orders/{swap_id}")
def get_order(swap_id: str, request: Request):
    try:
        return _ok(_services(request).orchestrator.get_order(swap_id))
    except SwapError as e:
        raise http_error(e)


@router.post("/orders/{swap_id}/fill")
def fill_order(swap_id: str, req: OrderFillRequest, request: Request):
    try:
        snapshot = _services(request).orchestrator.fill_order(
            swap_id,
            taker=req.taker,
            taker_receiver=req.taker_receiver,
            making_amount=req.making_amount,
            taking_amount=req.taking_amount,
            maker_asset=req.maker_asset,
            taker_asset=req.taker_asset,
        )
    except SwapError as e:
        raise http_error(e)
    return _ok(snapshot)


@router.post("/orders/{swap_id}/escrow")
def create_escrow(swap_id: str, request: Request):
    """createEscrow: lock making_amount on chain A."""
    try:
        return _ok(_services(request).orchestrator.lock_a(swap_id))
    except SwapError as e:
        raise http_error(e)


@router.post("/orders/{swap_id}/fund")
def fund_other(swap_id: str, request: Request):
    """fundOther: hashlocked claimable balance on chain B."""
    try:
        return _ok(_services(request).orchestrator.fund_b(swap_id))
    except SwapError as e:
        raise http_error(e)


@router.post("/orders/{swap_id}/claim-other")
def claim_other(swap_id: str, request: Request):
    """claimOther: maker claims chain B, revealing the secret."""
    try:
        return _ok(_services(request).orchestrator.claim_b(swap_id))
    except SwapError as e:
        raise http_error(e)


@router.post("/orders/{swap_id}/claim-first")
def claim_first(swap_id: str, request: Request, req: Optional[ClaimRequest] = None):
    """claimFirst: taker claims chain A with the revealed secret."""
    secret = req.secret if req else None
    try:
        return _ok(_services(request).orchestrator.claim_a(swap_id, secret=secret))
    except SwapError as e:
        raise http_error(e)


@router.post("/orders/{swap_id}/refund")
def refund(swap_id: str, request: Request):
    try:
        return _ok(_services(request).orchestrator.refund(swap_id))
    except SwapError as e:
        raise http_error(e)


@router.delete("/orders/{swap_id}")
def cancel_order(swap_id: str, request: Request):
    """Drop an order that has no lock on any chain."""
    try:
        return _ok(_services(request).orchestrator.cancel_order(swap_id))
    except SwapError as e:
        raise http_error(e)
