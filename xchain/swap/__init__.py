"""
Swap coordination for xchain.

Orchestrates orders across both ledgers and watches for secret disclosure.
"""

from .monitor import CounterChainMonitor, WatchBudget
from .orchestrator import OrderOrchestrator, OrderParams

__all__ = ["CounterChainMonitor", "WatchBudget", "OrderOrchestrator", "OrderParams"]
