"""
Escrow ledger: the per-side hashlock/timelock state machine.

    Created --withdraw(secret)--> Withdrawn
       +--cancel()-------------> Cancelled

Withdrawing reveals the secret on this ledger, which is exactly what the
counterparty needs to withdraw the mirrored escrow on the other ledger.

One EscrowLedger instance per chain side owns the order_id -> EscrowRecord
mapping for that ledger. Every create/withdraw/cancel runs under the ledger
lock, so calls against a record are atomic and totally ordered: the ledger,
not the caller, decides who wins a race.
"""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

from ..chains.base import LedgerClient
from ..core import (
    BytesLike, EscrowSide, EscrowStatus, UINT256_MAX, ZERO_BYTES32,
    short_hex, to_bytes32, to_hex32, verify,
)
from ..errors import (
    AlreadyExists, AlreadyFinalized, DeploymentFailed, EscrowNotFound,
    InvalidSecret, LedgerCallError, TimelockNotMet, TransferFailed,
    Unauthorized, ValidationError,
)
from .timelocks import (
    TimelockSchedule, TimelockStage, cancellation_stage,
    public_cancellation_stage, public_withdrawal_stage, withdrawal_stage,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscrowRecord:
    """
    Escrow state on one ledger.

    Immutable: the ledger stores a new copy on each transition, so the only
    fields that ever differ between copies are status and the finalization
    fields.
    """
    order_id: str               # 0x-prefixed bytes32
    hashlock: bytes
    maker: str
    taker: str
    asset_ref: str
    amount: int
    safety_deposit: int
    timelocks: TimelockSchedule
    deployed_at: int
    side: EscrowSide
    chain_id: int
    status: EscrowStatus = EscrowStatus.CREATED

    # Finalization
    secret: Optional[bytes] = None
    finalized_at: Optional[int] = None
    finalized_by: Optional[str] = None

    @property
    def depositor(self) -> str:
        """Who locked the funds and gets them back on cancel."""
        return self.maker if self.side is EscrowSide.SOURCE else self.taker

    @property
    def recipient(self) -> str:
        """Who receives ``amount`` on withdraw."""
        return self.taker if self.side is EscrowSide.SOURCE else self.maker

    @property
    def locked_amount(self) -> int:
        return self.amount + self.safety_deposit

    @property
    def is_terminal(self) -> bool:
        return self.status is not EscrowStatus.CREATED

    def stage_time(self, stage: TimelockStage) -> int:
        return self.deployed_at + self.timelocks.offset(stage)

    def to_dict(self) -> Dict:
        return {
            "order_id": self.order_id,
            "hashlock": "0x" + self.hashlock.hex(),
            "maker": self.maker,
            "taker": self.taker,
            "asset_ref": self.asset_ref,
            "amount": self.amount,
            "safety_deposit": self.safety_deposit,
            "timelocks": self.timelocks.to_dict(),
            "deployed_at": self.deployed_at,
            "side": self.side.value,
            "chain_id": self.chain_id,
            "status": self.status.value,
            "secret": "0x" + self.secret.hex() if self.secret else None,
            "finalized_at": self.finalized_at,
            "finalized_by": self.finalized_by,
        }


@dataclass(frozen=True)
class EscrowEvent:
    """Append-only ledger log entry. ``position`` is the monitoring checkpoint."""
    position: int
    kind: str                   # created, withdrawn, cancelled
    order_id: str
    hashlock: bytes
    timestamp: int
    secret: Optional[bytes] = None


class EscrowLedger:
    """
    Escrow registry and state machine for one chain side.

    Args:
        side: Which leg of the swap this ledger serves
        client: Ledger collaborator that custodies funds and supplies time
    """

    def __init__(self, side: EscrowSide, client: LedgerClient):
        self.side = side
        self.client = client
        self._records: Dict[str, EscrowRecord] = {}
        self._events: List[EscrowEvent] = []
        self._lock = threading.RLock()

    @property
    def chain_id(self) -> int:
        return self.client.chain_id

    def __repr__(self):
        return f"EscrowLedger({self.side.value}, {self.client!r})"

    # =========================================================================
    # Transitions
    # =========================================================================

    def create(self, order_id: BytesLike, hashlock: BytesLike, maker: str, taker: str,
               asset_ref: str, amount: int, safety_deposit: int,
               timelocks: TimelockSchedule, caller: Optional[str] = None) -> EscrowRecord:
        """
        Create the escrow and lock ``amount + safety_deposit`` from the depositor.

        The depositor is the maker on the source side and the taker on the
        destination side. If ``caller`` is given it must be the depositor.

        Raises:
            ValidationError: bad parameters (nothing locked)
            AlreadyExists: order already has an escrow on this side
            Unauthorized: caller is not the depositor
            DeploymentFailed: collaborator could not lock the funds
        """
        key = to_hex32(order_id, "order_id")
        lock = to_bytes32(hashlock, "hashlock")
        self._validate_create(lock, maker, taker, asset_ref, amount, safety_deposit, timelocks)

        depositor = maker if self.side is EscrowSide.SOURCE else taker
        if caller is not None and caller != depositor:
            raise Unauthorized(f"only the depositor {depositor} may fund the {self.side.value} escrow")

        with self._lock:
            if key in self._records:
                raise AlreadyExists(f"escrow {key} already exists on {self.side.value} ledger")

            total = amount + safety_deposit
            try:
                self.client.lock_funds(total, depositor, asset_ref)
            except LedgerCallError as e:
                log.error(f"Escrow {key} lock failed on {self.client.name}: {e}")
                raise DeploymentFailed(f"{self.side.value} escrow {key}: {e}") from e

            record = EscrowRecord(
                order_id=key,
                hashlock=lock,
                maker=maker,
                taker=taker,
                asset_ref=asset_ref,
                amount=amount,
                safety_deposit=safety_deposit,
                timelocks=timelocks,
                deployed_at=self.client.now(),
                side=self.side,
                chain_id=self.chain_id,
            )
            self._records[key] = record
            self._emit("created", record)

        log.info(f"Escrow created: {self.side.value} {key[:18]}..., "
                 f"amount={amount}, deposit={safety_deposit}, hashlock={short_hex(lock)}")
        return record

    def withdraw(self, order_id: BytesLike, secret: BytesLike, caller: str) -> EscrowRecord:
        """
        Release ``amount`` to the recipient by revealing the secret.

        The safety deposit goes to the caller. Before the public withdrawal
        stage only the recipient may call; afterwards anyone may relay.

        Raises:
            EscrowNotFound, AlreadyFinalized, InvalidSecret, TimelockNotMet,
            Unauthorized, TransferFailed
        """
        key = to_hex32(order_id, "order_id")

        with self._lock:
            record = self._require(key)
            if record.is_terminal:
                raise AlreadyFinalized(f"escrow {key} already {record.status.value}")

            if not verify(secret, record.hashlock):
                raise InvalidSecret(f"secret does not match hashlock of escrow {key}")
            raw_secret = to_bytes32(secret, "secret")

            now = self.client.now()
            self._require_stage(record, withdrawal_stage(self.side), now)

            public_stage = public_withdrawal_stage(self.side)
            if now < record.stage_time(public_stage) and caller != record.recipient:
                raise Unauthorized(
                    f"only {record.recipient} may withdraw before {public_stage.name}"
                )

            try:
                self.client.release_funds(record.amount, record.recipient, record.asset_ref)
                if record.safety_deposit:
                    self.client.release_funds(record.safety_deposit, caller, record.asset_ref)
            except LedgerCallError as e:
                log.error(f"Escrow {key} withdraw transfer failed: {e}")
                raise TransferFailed(f"{self.side.value} escrow {key}: {e}") from e

            record = replace(
                record,
                status=EscrowStatus.WITHDRAWN,
                secret=raw_secret,
                finalized_at=now,
                finalized_by=caller,
            )
            self._records[key] = record
            self._emit("withdrawn", record)

        log.info(f"Escrow withdrawn: {self.side.value} {key[:18]}... by {caller}, "
                 f"secret={short_hex(raw_secret)}")
        return record

    def cancel(self, order_id: BytesLike, caller: str) -> EscrowRecord:
        """
        Return ``amount + safety_deposit`` to the depositor.

        Before the public cancellation stage (source side only) only the
        depositor may call.

        Raises:
            EscrowNotFound, AlreadyFinalized, TimelockNotMet, Unauthorized,
            TransferFailed
        """
        key = to_hex32(order_id, "order_id")

        with self._lock:
            record = self._require(key)
            if record.is_terminal:
                raise AlreadyFinalized(f"escrow {key} already {record.status.value}")

            now = self.client.now()
            self._require_stage(record, cancellation_stage(self.side), now)

            public_stage = public_cancellation_stage(self.side)
            public_open = public_stage is not None and now >= record.stage_time(public_stage)
            if not public_open and caller != record.depositor:
                raise Unauthorized(f"only {record.depositor} may cancel this escrow now")

            try:
                self.client.release_funds(record.locked_amount, record.depositor, record.asset_ref)
            except LedgerCallError as e:
                log.error(f"Escrow {key} cancel transfer failed: {e}")
                raise TransferFailed(f"{self.side.value} escrow {key}: {e}") from e

            record = replace(
                record,
                status=EscrowStatus.CANCELLED,
                finalized_at=now,
                finalized_by=caller,
            )
            self._records[key] = record
            self._emit("cancelled", record)

        log.info(f"Escrow cancelled: {self.side.value} {key[:18]}... by {caller}")
        return record

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, order_id: BytesLike) -> Optional[EscrowRecord]:
        return self._records.get(to_hex32(order_id, "order_id"))

    def require(self, order_id: BytesLike) -> EscrowRecord:
        return self._require(to_hex32(order_id, "order_id"))

    def records(self) -> List[EscrowRecord]:
        with self._lock:
            return list(self._records.values())

    @property
    def checkpoint(self) -> int:
        """Position the next event will get."""
        return len(self._events)

    def events(self, from_checkpoint: int = 0) -> List[EscrowEvent]:
        with self._lock:
            return self._events[max(0, from_checkpoint):]

    def get_logs_for_hashlock(self, hashlock: BytesLike,
                              from_checkpoint: int = 0) -> List[Tuple[bytes, int]]:
        """
        Secrets disclosed for ``hashlock`` at or after ``from_checkpoint``.

        Returns:
            [(secret, position), ...]
        """
        lock = to_bytes32(hashlock, "hashlock")
        return [
            (event.secret, event.position)
            for event in self.events(from_checkpoint)
            if event.kind == "withdrawn" and event.hashlock == lock
        ]

    def timelock_info(self, order_id: BytesLike) -> List[Tuple[str, int, bool]]:
        """(stage name, absolute timestamp, reached) for every stage."""
        record = self.require(order_id)
        resolved = record.timelocks.resolve(record.deployed_at)
        now = self.client.now()
        return [
            (stage.name, resolved[stage], resolved.is_reached(stage, now))
            for stage in TimelockStage
        ]

    # =========================================================================
    # Internals
    # =========================================================================

    def _require(self, key: str) -> EscrowRecord:
        record = self._records.get(key)
        if record is None:
            raise EscrowNotFound(f"no escrow {key} on {self.side.value} ledger")
        return record

    def _require_stage(self, record: EscrowRecord, stage: TimelockStage, now: int):
        available_at = record.stage_time(stage)
        if now < available_at:
            raise TimelockNotMet(
                f"{stage.name} opens at {available_at}, now {now}",
                stage=stage,
                available_at=available_at,
            )

    def _validate_create(self, hashlock: bytes, maker: str, taker: str, asset_ref: str,
                         amount: int, safety_deposit: int, timelocks: TimelockSchedule):
        if hashlock == ZERO_BYTES32:
            raise ValidationError("hashlock must not be zero")
        if not self.client.is_valid_address(maker):
            raise ValidationError(f"invalid maker address: {maker!r}")
        if not self.client.is_valid_address(taker):
            raise ValidationError(f"invalid taker address: {taker!r}")
        if not isinstance(asset_ref, str) or not asset_ref:
            raise ValidationError("asset_ref is required")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("amount must be a positive integer")
        if isinstance(safety_deposit, bool) or not isinstance(safety_deposit, int) or safety_deposit < 0:
            raise ValidationError("safety_deposit must be a non-negative integer")
        if amount + safety_deposit > UINT256_MAX:
            raise ValidationError("amount + safety_deposit exceeds uint256")
        if not isinstance(timelocks, TimelockSchedule):
            raise ValidationError("timelocks must be a TimelockSchedule")

    def _emit(self, kind: str, record: EscrowRecord):
        event = EscrowEvent(
            position=len(self._events),
            kind=kind,
            order_id=record.order_id,
            hashlock=record.hashlock,
            timestamp=self.client.now(),
            secret=record.secret if kind == "withdrawn" else None,
        )
        self._events.append(event)
