"""
Order and escrow endpoints.

Extracted from server.py for modularity. server.py calls configure() once at
startup with the orchestrator this router drives.
"""

import logging
from typing import Dict, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from xchain.core import EscrowSide
from xchain.errors import (
    AlreadyExists, AlreadyFinalized, ChainMismatch, DeploymentFailed,
    EscrowNotFound, InvalidSecret, LedgerCallError, MonitorTimeout,
    OrderNotFound, SwapError, TimelockNotMet, TransferFailed, Unauthorized,
    ValidationError,
)
from xchain.swap.monitor import WatchBudget
from xchain.swap.orchestrator import OrderOrchestrator, OrderParams

log = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Orchestrator (set by server.py at init)
# ---------------------------------------------------------------------------

_orchestrator: Optional[OrderOrchestrator] = None


def configure(orchestrator: OrderOrchestrator):
    """Configure the orders module. Called once at startup by server.py."""
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> OrderOrchestrator:
    if _orchestrator is None:
        raise HTTPException(503, "Orchestrator not configured")
    return _orchestrator


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

# First match wins, so subclasses come before their bases
HTTP_STATUS = (
    (OrderNotFound, 404),
    (EscrowNotFound, 404),
    (AlreadyExists, 409),
    (AlreadyFinalized, 409),
    (Unauthorized, 403),
    (InvalidSecret, 422),
    (TimelockNotMet, 425),
    (DeploymentFailed, 502),
    (TransferFailed, 502),
    (LedgerCallError, 502),
    (MonitorTimeout, 504),
    (ChainMismatch, 400),
    (ValidationError, 400),
)


def http_error(e: SwapError) -> HTTPException:
    for error_type, status in HTTP_STATUS:
        if isinstance(e, error_type):
            return HTTPException(status, e.to_dict())
    return HTTPException(500, e.to_dict())


def parse_side(side: str) -> EscrowSide:
    try:
        return EscrowSide(side.lower())
    except ValueError:
        raise HTTPException(400, {
            "code": ValidationError.code,
            "message": f"Unknown side: {side}",
            "retryable": False,
        })


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class OrderCreateRequest(BaseModel):
    maker: str
    taker: str
    making_amount: int
    taking_amount: int
    source_chain_id: int
    destination_chain_id: int
    hashlock: str
    timelocks: Optional[Dict[str, int]] = None
    source_asset: str = "native"
    destination_asset: str = "native"
    src_safety_deposit: Optional[int] = None
    dst_safety_deposit: Optional[int] = None
    salt: Optional[int] = None


class SecretRequest(BaseModel):
    secret: str
    caller: Optional[str] = None


class CancelRequest(BaseModel):
    caller: Optional[str] = None


class WatchRequest(BaseModel):
    max_attempts: Optional[int] = None
    max_seconds: Optional[float] = None
    poll_interval: Optional[float] = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/api/orders")
def create_order(req: OrderCreateRequest):
    """Register a new order (Pending)."""
    orchestrator = get_orchestrator()
    try:
        order = orchestrator.create_order(OrderParams(**req.model_dump()))
    except SwapError as e:
        raise http_error(e)
    return order.to_dict()


@router.get("/api/orders")
def list_orders(status: Optional[str] = None):
    """List orders, optionally filtered by status."""
    orders = get_orchestrator().list_orders()
    if status:
        orders = [o for o in orders if o.status.value == status]
    return {
        "orders": [o.to_dict() for o in orders],
        "count": len(orders),
    }


@router.get("/api/orders/{order_id}")
def get_order(order_id: str):
    try:
        order = get_orchestrator().require_order(order_id)
    except SwapError as e:
        raise http_error(e)
    return order.to_dict()


@router.post("/api/orders/{order_id}/deploy/{side}")
def deploy(order_id: str, side: str):
    """Deploy the source or destination escrow."""
    orchestrator = get_orchestrator()
    escrow_side = parse_side(side)
    try:
        if escrow_side is EscrowSide.SOURCE:
            order = orchestrator.deploy_source(order_id)
        else:
            order = orchestrator.deploy_destination(order_id)
    except SwapError as e:
        raise http_error(e)
    return order.to_dict()


@router.post("/api/orders/{order_id}/secret")
def submit_secret(order_id: str, req: SecretRequest):
    """Report a disclosed secret and withdraw every open escrow."""
    try:
        order = get_orchestrator().on_secret_observed(order_id, req.secret, req.caller)
    except SwapError as e:
        raise http_error(e)
    return order.to_dict()


@router.post("/api/orders/{order_id}/cancel")
def cancel(order_id: str, req: Optional[CancelRequest] = None):
    caller = req.caller if req else None
    try:
        order = get_orchestrator().cancel_order(order_id, caller)
    except SwapError as e:
        raise http_error(e)
    return order.to_dict()


@router.post("/api/orders/{order_id}/watch/{side}")
def watch(order_id: str, side: str, req: Optional[WatchRequest] = None):
    """Start a background watch for the secret on one ledger."""
    orchestrator = get_orchestrator()
    escrow_side = parse_side(side)

    budget = WatchBudget.from_config(orchestrator.config.monitor)
    if req:
        if req.max_attempts is not None:
            budget.max_attempts = req.max_attempts
        if req.max_seconds is not None:
            budget.max_seconds = req.max_seconds
        if req.poll_interval is not None:
            budget.poll_interval = req.poll_interval

    try:
        orchestrator.watch_order(order_id, escrow_side, budget)
    except SwapError as e:
        raise http_error(e)
    return {"order_id": order_id, "side": escrow_side.value, "watching": True}


@router.get("/api/escrows/{side}/{order_id}")
def get_escrow(side: str, order_id: str):
    """Escrow record plus its resolved timelock stages."""
    ledger = get_orchestrator().ledgers[parse_side(side)]
    try:
        record = ledger.require(order_id)
        stages = ledger.timelock_info(order_id)
    except SwapError as e:
        raise http_error(e)

    data = record.to_dict()
    data["stages"] = [
        {"stage": name, "timestamp": ts, "reached": reached}
        for name, ts, reached in stages
    ]
    data["now"] = ledger.client.now()
    return data
