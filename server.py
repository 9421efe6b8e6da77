#!/usr/bin/env python3
"""
xchain Coordinator Server
Cross-ledger atomic swap coordination over two escrow ledgers.

Endpoints:
  GET  /api/status                        - Health check
  POST /api/orders                        - Create order
  GET  /api/orders                        - List orders
  GET  /api/orders/{id}                   - Get order status
  POST /api/orders/{id}/deploy/{side}     - Deploy source/destination escrow
  POST /api/orders/{id}/secret            - Report secret, withdraw both sides
  POST /api/orders/{id}/cancel            - Cancel after timelocks
  POST /api/orders/{id}/watch/{side}      - Watch a ledger for the secret
  GET  /api/escrows/{side}/{id}           - Escrow record and timelock stages
"""

import logging
import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from xchain import __version__
from xchain.chains.evm import EVMLogSource
from xchain.chains.memory import InMemoryLedgerClient
from xchain.config import LedgerConfig, ServerConfig
from xchain.core import EscrowSide, OrderStatus
from xchain.errors import ValidationError
from xchain.htlc.escrow import EscrowLedger
from xchain.swap.monitor import CounterChainMonitor
from xchain.swap.orchestrator import OrderOrchestrator

from routes import orders as orders_routes

# =============================================================================
# CONFIGURATION
# =============================================================================

CONFIG = ServerConfig.from_env()

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=getattr(logging, CONFIG.log_level, logging.INFO),
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

# =============================================================================
# LEDGERS
# =============================================================================


def _ledger_client(ledger_config: LedgerConfig) -> InMemoryLedgerClient:
    client = InMemoryLedgerClient(ledger_config.chain_id, ledger_config.name)
    for address, amount in ledger_config.balances.items():
        client.credit(address, amount)
    if ledger_config.balances:
        log.info(f"{ledger_config.name or ledger_config.chain_id}: funded "
                 f"{len(ledger_config.balances)} account(s)")
    return client


def build_orchestrator(config: ServerConfig) -> OrderOrchestrator:
    """
    Wire both ledgers, the monitor and the orchestrator.

    Ledgers are in-process and start with the configured opening balances
    (XCHAIN_SRC_BALANCES / XCHAIN_DST_BALANCES). A side with an rpc_url and
    escrow_address is watched through eth_getLogs instead of its local event log.
    """
    source = EscrowLedger(EscrowSide.SOURCE, _ledger_client(config.source))
    destination = EscrowLedger(EscrowSide.DESTINATION, _ledger_client(config.destination))

    monitor = CounterChainMonitor(
        {EscrowSide.SOURCE: source, EscrowSide.DESTINATION: destination},
        config.orchestrator.monitor,
    )
    for side, ledger_config in ((EscrowSide.SOURCE, config.source),
                                (EscrowSide.DESTINATION, config.destination)):
        if ledger_config.rpc_url and ledger_config.escrow_address:
            monitor.add_source(side, EVMLogSource(ledger_config.rpc_url, ledger_config.escrow_address))
            log.info(f"{side.value} ledger watched via RPC: {ledger_config.rpc_url}")

    return OrderOrchestrator(source, destination, monitor, config.orchestrator)


orchestrator = build_orchestrator(CONFIG)
orders_routes.configure(orchestrator)

# =============================================================================
# APP SETUP
# =============================================================================

app = FastAPI(
    title="xchain",
    description="Cross-ledger atomic swap coordinator",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(orders_routes.router)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are validation errors (400), like any other bad input."""
    return JSONResponse(status_code=400, content={"detail": {
        "code": ValidationError.code,
        "message": "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        ),
        "retryable": False,
    }})

# =============================================================================
# ENDPOINTS
# =============================================================================


@app.get("/api/status")
async def get_status():
    """Health check."""
    orchestrator = orders_routes.get_orchestrator()
    orders = orchestrator.list_orders()
    by_status = {status.value: 0 for status in OrderStatus}
    for order in orders:
        by_status[order.status.value] += 1

    return {
        "status": "ok",
        "version": __version__,
        "timestamp": int(time.time()),
        "orders_total": len(orders),
        "orders_pending": len(orchestrator.pending_orders()),
        "orders_by_status": by_status,
        "ledgers": {
            side.value: {
                "chain_id": ledger.chain_id,
                "name": ledger.client.name,
                "now": ledger.client.now(),
                "escrows": len(ledger.records()),
                "checkpoint": ledger.checkpoint,
            }
            for side, ledger in orchestrator.ledgers.items()
        },
    }


@app.on_event("shutdown")
async def shutdown_event():
    """Stop background watches."""
    orchestrator = orders_routes.get_orchestrator()
    for order in orchestrator.list_orders():
        orchestrator.stop_watches(order.order_id)
    log.info("Coordinator stopped")


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    log.info(f"Starting xchain coordinator on {CONFIG.host}:{CONFIG.port}")
    log.info(f"Source: {CONFIG.source.name} ({CONFIG.source.chain_id}), "
             f"destination: {CONFIG.destination.name} ({CONFIG.destination.chain_id})")
    log.info(f"Docs: http://{CONFIG.host}:{CONFIG.port}/docs")
    uvicorn.run(app, host=CONFIG.host, port=CONFIG.port)
