"""
In-memory ledger client.

Keeps balances per (address, asset) and an escrow custody pool. The clock is
explicit so timelock gates can be driven deterministically.
"""

import logging
import threading
from collections import defaultdict
from typing import Dict, Tuple

from ..errors import LedgerCallError
from .base import LedgerClient

log = logging.getLogger(__name__)


class InMemoryLedgerClient(LedgerClient):
    """Ledger collaborator backed by dictionaries."""

    def __init__(self, chain_id: int, name: str = "", start_time: int = 1_700_000_000):
        super().__init__(chain_id, name)
        self._time = start_time
        self._balances: Dict[Tuple[str, str], int] = defaultdict(int)
        self._custody: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    # =========================================================================
    # Clock
    # =========================================================================

    def now(self) -> int:
        return self._time

    def set_time(self, timestamp: int):
        self._time = timestamp

    def advance(self, seconds: int) -> int:
        self._time += seconds
        return self._time

    # =========================================================================
    # Balances
    # =========================================================================

    def credit(self, address: str, amount: int, asset_ref: str = "native"):
        with self._lock:
            self._balances[(address, asset_ref)] += amount

    def balance_of(self, address: str, asset_ref: str = "native") -> int:
        return self._balances.get((address, asset_ref), 0)

    def custody_of(self, asset_ref: str = "native") -> int:
        return self._custody.get(asset_ref, 0)

    # =========================================================================
    # LedgerClient
    # =========================================================================

    def lock_funds(self, amount: int, owner: str, asset_ref: str) -> None:
        with self._lock:
            available = self._balances.get((owner, asset_ref), 0)
            if available < amount:
                raise LedgerCallError(
                    f"{self.name}: insufficient {asset_ref} balance for {owner}: "
                    f"{available} < {amount}"
                )
            self._balances[(owner, asset_ref)] = available - amount
            self._custody[asset_ref] += amount
        log.debug(f"{self.name}: locked {amount} {asset_ref} from {owner}")

    def release_funds(self, amount: int, recipient: str, asset_ref: str) -> None:
        with self._lock:
            held = self._custody.get(asset_ref, 0)
            if held < amount:
                raise LedgerCallError(
                    f"{self.name}: escrow custody short on {asset_ref}: {held} < {amount}"
                )
            self._custody[asset_ref] = held - amount
            self._balances[(recipient, asset_ref)] += amount
        log.debug(f"{self.name}: released {amount} {asset_ref} to {recipient}")
