"""
HTLC (Hash Time-Locked Contract) escrows.

An escrow guarantees:
1. Funds can only be withdrawn with knowledge of the secret (preimage)
2. Funds can be cancelled back to the depositor after the timelock
"""

from .timelocks import TimelockStage, TimelockSchedule, ResolvedTimelocks
from .escrow import EscrowLedger, EscrowRecord, EscrowEvent
from .payload import EscrowPayload, decode_payload

__all__ = [
    "TimelockStage",
    "TimelockSchedule",
    "ResolvedTimelocks",
    "EscrowLedger",
    "EscrowRecord",
    "EscrowEvent",
    "EscrowPayload",
    "decode_payload",
]
