"""
Ledger collaborator boundary.

The escrow ledger decides *whether* funds move; a LedgerClient decides *how*
(signing, fees, native coin vs token). Implementations raise LedgerCallError
when the underlying call fails.
"""

import time


class LedgerClient:
    """
    Capabilities an EscrowLedger needs from its chain.

    Subclasses implement lock_funds / release_funds for a concrete asset
    transport. now() is the ledger's notion of time (block timestamp).
    """

    def __init__(self, chain_id: int, name: str = ""):
        self.chain_id = chain_id
        self.name = name or f"chain-{chain_id}"

    def now(self) -> int:
        return int(time.time())

    def is_valid_address(self, address: str) -> bool:
        return isinstance(address, str) and bool(address.strip())

    def lock_funds(self, amount: int, owner: str, asset_ref: str) -> None:
        """Move ``amount`` of ``asset_ref`` from ``owner`` into escrow custody."""
        raise NotImplementedError

    def release_funds(self, amount: int, recipient: str, asset_ref: str) -> None:
        """Move ``amount`` of ``asset_ref`` out of escrow custody to ``recipient``."""
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}({self.name}, chain_id={self.chain_id})"
