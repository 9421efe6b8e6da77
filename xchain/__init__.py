"""
xchain - Cross-Ledger Atomic Swap Library

Hashlock/timelock escrows mirrored on two ledgers. Withdrawing one escrow
reveals the secret that unlocks the other; if nobody withdraws, both
depositors cancel after their timelocks.

Usage:
    from xchain import generate_secret, EscrowLedger, OrderOrchestrator
    from xchain import InMemoryLedgerClient, OrderParams, EscrowSide

    # One ledger per side
    src = EscrowLedger(EscrowSide.SOURCE, InMemoryLedgerClient(84532, "base_sepolia"))
    dst = EscrowLedger(EscrowSide.DESTINATION, InMemoryLedgerClient(1000, "icp"))

    orchestrator = OrderOrchestrator(src, dst)

    # Maker generates the secret and publishes only the hashlock
    secret, hashlock = generate_secret()
    order = orchestrator.create_order(OrderParams(
        maker, taker, 1000, 2000, 84532, 1000, hashlock))
    orchestrator.deploy_source(order.order_id)
    orchestrator.deploy_destination(order.order_id)
    orchestrator.watch_order(order.order_id, EscrowSide.DESTINATION)
"""

from .core import (
    EscrowSide,
    EscrowStatus,
    OrderStatus,
    commit,
    verify,
    generate_secret,
    derive_order_id,
    to_bytes32,
    to_hex32,
)

from .errors import (
    SwapError,
    ValidationError,
    InvalidSchedule,
    EscrowNotFound,
    OrderNotFound,
    AlreadyExists,
    InvalidSecret,
    TimelockNotMet,
    Unauthorized,
    AlreadyFinalized,
    ChainMismatch,
    LedgerCallError,
    DeploymentFailed,
    TransferFailed,
    MonitorTimeout,
)

from .config import LedgerConfig, MonitorConfig, OrchestratorConfig, ServerConfig

from .chains.base import LedgerClient
from .chains.memory import InMemoryLedgerClient
from .chains.evm import EVMLogSource

from .htlc.timelocks import TimelockStage, TimelockSchedule, ResolvedTimelocks
from .htlc.escrow import EscrowLedger, EscrowRecord, EscrowEvent
from .htlc.payload import EscrowPayload, decode_payload

from .swap.monitor import CounterChainMonitor, WatchBudget, WatchHandle, WatchOutcome, PollResult
from .swap.orchestrator import OrderOrchestrator, OrderParams, CrossChainOrder, EscrowRef

__version__ = "0.1.0"
__all__ = [
    # Core types
    "EscrowSide",
    "EscrowStatus",
    "OrderStatus",
    # Hash commitment
    "commit",
    "verify",
    "generate_secret",
    "derive_order_id",
    "to_bytes32",
    "to_hex32",
    # Errors
    "SwapError",
    "ValidationError",
    "InvalidSchedule",
    "EscrowNotFound",
    "OrderNotFound",
    "AlreadyExists",
    "InvalidSecret",
    "TimelockNotMet",
    "Unauthorized",
    "AlreadyFinalized",
    "ChainMismatch",
    "LedgerCallError",
    "DeploymentFailed",
    "TransferFailed",
    "MonitorTimeout",
    # Config
    "LedgerConfig",
    "MonitorConfig",
    "OrchestratorConfig",
    "ServerConfig",
    # Clients
    "LedgerClient",
    "InMemoryLedgerClient",
    "EVMLogSource",
    # HTLC
    "TimelockStage",
    "TimelockSchedule",
    "ResolvedTimelocks",
    "EscrowLedger",
    "EscrowRecord",
    "EscrowEvent",
    "EscrowPayload",
    "decode_payload",
    # Swap
    "CounterChainMonitor",
    "WatchBudget",
    "WatchHandle",
    "WatchOutcome",
    "PollResult",
    "OrderOrchestrator",
    "OrderParams",
    "CrossChainOrder",
    "EscrowRef",
]
