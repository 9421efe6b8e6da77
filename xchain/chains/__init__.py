"""
Ledger clients for xchain.

A client custodies escrowed funds and supplies the ledger clock:
- memory: in-process ledger with balances and a settable clock
- evm: JSON-RPC log reader for SecretRevealed events
"""

from .base import LedgerClient
from .memory import InMemoryLedgerClient
from .evm import EVMLogSource

__all__ = ["LedgerClient", "InMemoryLedgerClient", "EVMLogSource"]
