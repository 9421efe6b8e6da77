"""
Cross-ledger escrow creation payload.

Versioned, tagged JSON document carried between ledgers instead of ad-hoc
byte concatenation. Decoding validates everything; unknown versions, kinds
or fields are rejected rather than defaulted.
"""

from typing import Literal, TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..core import EscrowSide, UINT32_MAX, UINT256_MAX
from ..errors import InvalidSchedule, ValidationError
from .timelocks import TimelockSchedule

if TYPE_CHECKING:
    from ..swap.orchestrator import CrossChainOrder

PAYLOAD_VERSION = 1
PAYLOAD_KIND = "escrow.create"

_HEX32 = r"^0x[0-9a-f]{64}$"


class TimelocksPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, strict=True)

    src_withdrawal: int = Field(..., ge=0, le=UINT32_MAX)
    src_public_withdrawal: int = Field(..., ge=0, le=UINT32_MAX)
    src_cancellation: int = Field(..., ge=0, le=UINT32_MAX)
    src_public_cancellation: int = Field(..., ge=0, le=UINT32_MAX)
    dst_withdrawal: int = Field(..., ge=0, le=UINT32_MAX)
    dst_public_withdrawal: int = Field(..., ge=0, le=UINT32_MAX)
    dst_cancellation: int = Field(..., ge=0, le=UINT32_MAX)


class EscrowPayload(BaseModel):
    """Parameters one ledger needs to create its side of an order."""
    model_config = ConfigDict(extra="forbid", frozen=True, strict=True)

    version: Literal[1]
    kind: Literal["escrow.create"]
    side: Literal["source", "destination"]
    order_id: str = Field(..., pattern=_HEX32)
    hashlock: str = Field(..., pattern=_HEX32)
    maker: str = Field(..., min_length=1)
    taker: str = Field(..., min_length=1)
    asset_ref: str = Field(..., min_length=1)
    amount: int = Field(..., ge=1, le=UINT256_MAX)
    safety_deposit: int = Field(..., ge=0, le=UINT256_MAX)
    timelocks: TimelocksPayload
    source_chain_id: int = Field(..., ge=0)
    destination_chain_id: int = Field(..., ge=0)

    @model_validator(mode="after")
    def _check_consistency(self):
        if self.source_chain_id == self.destination_chain_id:
            raise ValueError("source and destination chains must differ")
        if self.hashlock == "0x" + "00" * 32:
            raise ValueError("hashlock must not be zero")
        try:
            self.to_schedule()
        except InvalidSchedule as e:
            raise ValueError(str(e))
        return self

    @property
    def escrow_side(self) -> EscrowSide:
        return EscrowSide(self.side)

    @property
    def chain_id(self) -> int:
        if self.escrow_side is EscrowSide.SOURCE:
            return self.source_chain_id
        return self.destination_chain_id

    def to_schedule(self) -> TimelockSchedule:
        return TimelockSchedule(**self.timelocks.model_dump())

    def encode(self) -> bytes:
        return self.model_dump_json().encode()

    @classmethod
    def from_order(cls, order: "CrossChainOrder", side: EscrowSide) -> "EscrowPayload":
        """
        Build the payload for one side of an order.

        Raises:
            ValidationError: order fields the payload cannot carry
        """
        if side is EscrowSide.SOURCE:
            asset_ref, amount, deposit = order.source_asset, order.making_amount, order.src_safety_deposit
        else:
            asset_ref, amount, deposit = order.destination_asset, order.taking_amount, order.dst_safety_deposit
        try:
            return cls(
                version=PAYLOAD_VERSION,
                kind=PAYLOAD_KIND,
                side=side.value,
                order_id=order.order_id,
                hashlock="0x" + order.hashlock.hex(),
                maker=order.maker,
                taker=order.taker,
                asset_ref=asset_ref,
                amount=amount,
                safety_deposit=deposit,
                timelocks=TimelocksPayload(**order.timelocks.to_dict()),
                source_chain_id=order.source_chain_id,
                destination_chain_id=order.destination_chain_id,
            )
        except PydanticValidationError as e:
            raise _invalid(e) from e


def _invalid(error: PydanticValidationError) -> ValidationError:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
        for err in error.errors()
    )
    return ValidationError(f"invalid escrow payload: {problems}")


def decode_payload(data) -> EscrowPayload:
    """
    Decode and validate an escrow payload (bytes or str JSON).

    Raises:
        ValidationError: malformed, unknown version/kind, or extra fields
    """
    try:
        return EscrowPayload.model_validate_json(data)
    except PydanticValidationError as e:
        raise _invalid(e) from e
