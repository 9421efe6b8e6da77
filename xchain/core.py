"""
Core types and utilities for xchain.
"""

import secrets
from enum import Enum
from typing import Tuple, Union

from web3 import Web3

from .errors import ValidationError

BytesLike = Union[bytes, bytearray, str]


class EscrowSide(Enum):
    """Which leg of a cross-chain order an escrow lives on."""
    SOURCE = "source"
    DESTINATION = "destination"

    @property
    def counter(self) -> "EscrowSide":
        if self is EscrowSide.SOURCE:
            return EscrowSide.DESTINATION
        return EscrowSide.SOURCE


class EscrowStatus(Enum):
    """Escrow lifecycle. CREATED is the only non-terminal state."""
    CREATED = "created"
    WITHDRAWN = "withdrawn"     # Secret revealed, funds released to recipient
    CANCELLED = "cancelled"     # Funds returned to depositor


class OrderStatus(Enum):
    """Cross-chain order lifecycle."""
    PENDING = "pending"                          # Validated, nothing deployed
    SOURCE_DEPLOYED = "source_deployed"          # Source escrow locked
    DESTINATION_DEPLOYED = "destination_deployed"  # Destination escrow locked
    FUNDED = "funded"                            # Both escrows locked
    EXECUTED = "executed"                        # Both escrows withdrawn
    CANCELLED = "cancelled"
    FAILED = "failed"                            # Recoverable, see order.error


TERMINAL_ESCROW_STATES = (EscrowStatus.WITHDRAWN, EscrowStatus.CANCELLED)
TERMINAL_ORDER_STATES = (OrderStatus.EXECUTED, OrderStatus.CANCELLED)


# =============================================================================
# Constants
# =============================================================================

SECRET_SIZE = 32
HASHLOCK_SIZE = 32
ZERO_BYTES32 = b"\x00" * 32

UINT32_MAX = 2**32 - 1
UINT256_MAX = 2**256 - 1


# =============================================================================
# bytes32 helpers
# =============================================================================

def to_bytes32(value: BytesLike, name: str = "value") -> bytes:
    """
    Normalize a 32-byte value.

    Accepts raw bytes or a hex string with or without the 0x prefix.
    Raises ValidationError on anything else.
    """
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str):
        text = value[2:] if value[:2].lower() == "0x" else value
        try:
            raw = bytes.fromhex(text)
        except ValueError:
            raise ValidationError(f"{name} is not valid hex")
    else:
        raise ValidationError(f"{name} must be bytes or hex string, got {type(value).__name__}")

    if len(raw) != 32:
        raise ValidationError(f"{name} must be 32 bytes, got {len(raw)}")
    return raw


def to_hex32(value: BytesLike, name: str = "value") -> str:
    """Canonical 0x-prefixed lowercase hex for a bytes32 value."""
    return "0x" + to_bytes32(value, name).hex()


def short_hex(value: bytes) -> str:
    """Truncated hex for log lines."""
    return value.hex()[:16] + "..."


# =============================================================================
# HashCommitment
# =============================================================================

def commit(secret: BytesLike) -> bytes:
    """
    Compute the hashlock for a secret: keccak256(secret).

    The digest must match what every ledger computes, so this is the only
    place a hashlock is ever derived.
    """
    raw = to_bytes32(secret, "secret")
    return bytes(Web3.keccak(raw))


def verify(secret: BytesLike, hashlock: BytesLike) -> bool:
    """
    Verify that keccak256(secret) == hashlock.

    Returns False for any malformed input instead of raising.
    """
    try:
        expected = to_bytes32(hashlock, "hashlock")
        return commit(secret) == expected
    except ValidationError:
        return False


def generate_secret() -> Tuple[bytes, bytes]:
    """
    Generate a random secret and its hashlock.

    Returns:
        (secret, hashlock)
    """
    secret = secrets.token_bytes(SECRET_SIZE)
    return secret, commit(secret)


def derive_order_id(maker: str, taker: str, making_amount: int, taking_amount: int,
                    source_chain_id: int, destination_chain_id: int,
                    hashlock: bytes, salt: int) -> str:
    """Deterministic order hash over the order parameters."""
    digest = Web3.solidity_keccak(
        ["string", "string", "uint256", "uint256", "uint256", "uint256", "bytes32", "uint256"],
        [maker, taker, making_amount, taking_amount,
         source_chain_id, destination_chain_id, hashlock, salt],
    )
    return "0x" + bytes(digest).hex()
