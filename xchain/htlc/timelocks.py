"""
Timelock schedule for cross-chain escrows.

Seven stages, each an offset in seconds from escrow deployment:

    Source:       SrcWithdrawal < SrcPublicWithdrawal < SrcCancellation < SrcPublicCancellation
    Destination:  DstWithdrawal < DstPublicWithdrawal < DstCancellation

"Public" stages let any caller trigger the gated action so an unresponsive
counterparty cannot freeze funds.

Packed form matches 1inch TimelocksLib: stage i occupies bits [32*i, 32*i+32)
of a uint256, the deployment timestamp occupies bits [224, 256).
"""

from dataclasses import dataclass, fields
from enum import IntEnum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..core import EscrowSide, UINT32_MAX
from ..errors import InvalidSchedule, ValidationError


class TimelockStage(IntEnum):
    SRC_WITHDRAWAL = 0
    SRC_PUBLIC_WITHDRAWAL = 1
    SRC_CANCELLATION = 2
    SRC_PUBLIC_CANCELLATION = 3
    DST_WITHDRAWAL = 4
    DST_PUBLIC_WITHDRAWAL = 5
    DST_CANCELLATION = 6

    @property
    def field_name(self) -> str:
        return self.name.lower()


_SIDE_STAGES = {
    EscrowSide.SOURCE: {
        "withdrawal": TimelockStage.SRC_WITHDRAWAL,
        "public_withdrawal": TimelockStage.SRC_PUBLIC_WITHDRAWAL,
        "cancellation": TimelockStage.SRC_CANCELLATION,
        "public_cancellation": TimelockStage.SRC_PUBLIC_CANCELLATION,
    },
    EscrowSide.DESTINATION: {
        "withdrawal": TimelockStage.DST_WITHDRAWAL,
        "public_withdrawal": TimelockStage.DST_PUBLIC_WITHDRAWAL,
        "cancellation": TimelockStage.DST_CANCELLATION,
        "public_cancellation": None,
    },
}

_DEPLOYED_AT_SHIFT = 224
_PACKED_BYTES = 32


def withdrawal_stage(side: EscrowSide) -> TimelockStage:
    return _SIDE_STAGES[side]["withdrawal"]


def public_withdrawal_stage(side: EscrowSide) -> TimelockStage:
    return _SIDE_STAGES[side]["public_withdrawal"]


def cancellation_stage(side: EscrowSide) -> TimelockStage:
    return _SIDE_STAGES[side]["cancellation"]


def public_cancellation_stage(side: EscrowSide) -> Optional[TimelockStage]:
    """None on the destination side: only the depositor may cancel there."""
    return _SIDE_STAGES[side]["public_cancellation"]


@dataclass(frozen=True)
class TimelockSchedule:
    """Relative timelock offsets (seconds since deployment)."""
    src_withdrawal: int
    src_public_withdrawal: int
    src_cancellation: int
    src_public_cancellation: int
    dst_withdrawal: int
    dst_public_withdrawal: int
    dst_cancellation: int

    def __post_init__(self):
        errors = self.validate()
        if errors:
            raise InvalidSchedule(errors)

    def validate(self) -> List[str]:
        """Return every violated rule (empty when valid)."""
        errors = []
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, int):
                errors.append(f"{f.name} must be an integer")
            elif value < 0 or value > UINT32_MAX:
                errors.append(f"{f.name} must fit in uint32")
        if errors:
            return errors

        chains = [
            ("src_withdrawal", "src_public_withdrawal"),
            ("src_public_withdrawal", "src_cancellation"),
            ("src_cancellation", "src_public_cancellation"),
            ("dst_withdrawal", "dst_public_withdrawal"),
            ("dst_public_withdrawal", "dst_cancellation"),
        ]
        for earlier, later in chains:
            if getattr(self, earlier) >= getattr(self, later):
                errors.append(f"{earlier} must be before {later}")
        return errors

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def default(cls) -> "TimelockSchedule":
        return cls(
            src_withdrawal=10,
            src_public_withdrawal=120,
            src_cancellation=121,
            src_public_cancellation=240,
            dst_withdrawal=10,
            dst_public_withdrawal=100,
            dst_cancellation=101,
        )

    @classmethod
    def from_offsets(cls, offsets: Union[Mapping, Sequence[int]]) -> "TimelockSchedule":
        """Build from a mapping (stage name or TimelockStage keys) or 7 offsets in stage order."""
        if isinstance(offsets, Mapping):
            values = {}
            for key, value in offsets.items():
                name = key.field_name if isinstance(key, TimelockStage) else str(key)
                values[name] = value
            missing = [s.field_name for s in TimelockStage if s.field_name not in values]
            unknown = sorted(set(values) - {s.field_name for s in TimelockStage})
            if missing or unknown:
                raise InvalidSchedule(
                    [f"missing offset: {m}" for m in missing]
                    + [f"unknown offset: {u}" for u in unknown]
                )
            return cls(**values)

        offsets = list(offsets)
        if len(offsets) != len(TimelockStage):
            raise InvalidSchedule([f"expected {len(TimelockStage)} offsets, got {len(offsets)}"])
        return cls(*offsets)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def offset(self, stage: TimelockStage) -> int:
        return getattr(self, TimelockStage(stage).field_name)

    def resolve(self, deployed_at: int) -> "ResolvedTimelocks":
        """Absolute timestamps for an escrow deployed at ``deployed_at``."""
        return ResolvedTimelocks(
            deployed_at=deployed_at,
            times={stage: deployed_at + self.offset(stage) for stage in TimelockStage},
        )

    def is_reached(self, stage: TimelockStage, now: int, deployed_at: int = 0) -> bool:
        return now >= deployed_at + self.offset(stage)

    def to_dict(self) -> Dict[str, int]:
        return {stage.field_name: self.offset(stage) for stage in TimelockStage}

    # -------------------------------------------------------------------------
    # Packed uint256 codec
    # -------------------------------------------------------------------------

    def pack(self, deployed_at: int = 0) -> int:
        if deployed_at < 0 or deployed_at > UINT32_MAX:
            raise ValidationError("deployed_at must fit in uint32")
        value = deployed_at << _DEPLOYED_AT_SHIFT
        for stage in TimelockStage:
            value |= self.offset(stage) << (32 * int(stage))
        return value

    @classmethod
    def unpack(cls, value: int) -> Tuple["TimelockSchedule", int]:
        """Returns (schedule, deployed_at)."""
        if value < 0 or value >= 1 << 256:
            raise ValidationError("packed timelocks must fit in uint256")
        offsets = [(value >> (32 * int(stage))) & UINT32_MAX for stage in TimelockStage]
        deployed_at = value >> _DEPLOYED_AT_SHIFT
        return cls(*offsets), deployed_at

    def to_bytes(self, deployed_at: int = 0) -> bytes:
        return self.pack(deployed_at).to_bytes(_PACKED_BYTES, "big")

    @classmethod
    def from_bytes(cls, data: bytes) -> Tuple["TimelockSchedule", int]:
        if len(data) != _PACKED_BYTES:
            raise ValidationError(f"packed timelocks must be {_PACKED_BYTES} bytes, got {len(data)}")
        return cls.unpack(int.from_bytes(data, "big"))


@dataclass(frozen=True)
class ResolvedTimelocks:
    """Absolute stage timestamps for one deployment."""
    deployed_at: int
    times: Dict[TimelockStage, int]

    def __getitem__(self, stage: TimelockStage) -> int:
        return self.times[stage]

    def is_reached(self, stage: TimelockStage, now: int) -> bool:
        return now >= self.times[stage]

    def reached_stages(self, now: int) -> List[TimelockStage]:
        return [stage for stage in TimelockStage if self.is_reached(stage, now)]

    def next_stage(self, now: int) -> Optional[Tuple[TimelockStage, int]]:
        """Earliest stage still in the future, or None."""
        future = [(t, stage) for stage, t in self.times.items() if t > now]
        if not future:
            return None
        t, stage = min(future)
        return stage, t
