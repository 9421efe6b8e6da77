"""
Order orchestrator for xchain.

Coordinates the two mirrored escrows of a cross-chain order:

1. Client submits order parameters (hashlock generated by the maker)
2. Orchestrator deploys the source escrow (maker's funds) and the
   destination escrow (taker's funds), in either order
3. Someone withdraws on one ledger, revealing the secret
4. CounterChainMonitor observes the secret on that ledger
5. Orchestrator withdraws the other escrow with the same secret
6. If no secret appears, both depositors cancel after their gates

The orchestrator never holds funds; it references escrows owned by the
ledgers and drives their transitions. Several orchestrators may act on the
same order, so every action tolerates having been done already; the ledger
is the final arbiter.
"""

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

from ..config import OrchestratorConfig
from ..core import (
    BytesLike, EscrowSide, EscrowStatus, OrderStatus, TERMINAL_ORDER_STATES,
    ZERO_BYTES32, derive_order_id, short_hex, to_bytes32, to_hex32, verify,
)
from ..errors import (
    AlreadyExists, AlreadyFinalized, ChainMismatch, DeploymentFailed,
    InvalidSecret, MonitorTimeout, OrderNotFound, SwapError, TimelockNotMet,
    Unauthorized, ValidationError,
)
from ..htlc.escrow import EscrowLedger, EscrowRecord
from ..htlc.payload import EscrowPayload
from ..htlc.timelocks import (
    TimelockSchedule, TimelockStage, public_cancellation_stage,
    public_withdrawal_stage,
)
from .monitor import CounterChainMonitor, PollResult, WatchBudget, WatchHandle

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscrowRef:
    """Reference to an escrow owned by an EscrowLedger."""
    side: EscrowSide
    chain_id: int
    order_id: str

    def to_dict(self) -> Dict:
        return {"side": self.side.value, "chain_id": self.chain_id, "order_id": self.order_id}


@dataclass
class OrderParams:
    """Client-supplied order parameters."""
    maker: str
    taker: str
    making_amount: int              # Locked on the source ledger
    taking_amount: int              # Locked on the destination ledger
    source_chain_id: int
    destination_chain_id: int
    hashlock: BytesLike
    timelocks: Union[TimelockSchedule, Mapping, Sequence[int], None] = None
    source_asset: str = "native"
    destination_asset: str = "native"
    src_safety_deposit: Optional[int] = None
    dst_safety_deposit: Optional[int] = None
    salt: Optional[int] = None
    order_id: Optional[BytesLike] = None


@dataclass
class CrossChainOrder:
    """Order state. Owned by the orchestrator."""
    order_id: str
    maker: str
    taker: str
    making_amount: int
    taking_amount: int
    source_asset: str
    destination_asset: str
    source_chain_id: int
    destination_chain_id: int
    hashlock: bytes
    timelocks: TimelockSchedule
    src_safety_deposit: int = 0
    dst_safety_deposit: int = 0

    status: OrderStatus = OrderStatus.PENDING
    source_escrow_ref: Optional[EscrowRef] = None
    destination_escrow_ref: Optional[EscrowRef] = None
    secret: Optional[bytes] = None      # Set once disclosed, never changed
    error: Optional[str] = None

    created_at: int = 0
    updated_at: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATES

    def chain_id(self, side: EscrowSide) -> int:
        if side is EscrowSide.SOURCE:
            return self.source_chain_id
        return self.destination_chain_id

    def escrow_ref(self, side: EscrowSide) -> Optional[EscrowRef]:
        if side is EscrowSide.SOURCE:
            return self.source_escrow_ref
        return self.destination_escrow_ref

    def deployed_sides(self) -> List[EscrowSide]:
        return [side for side in EscrowSide if self.escrow_ref(side) is not None]

    def to_dict(self) -> Dict:
        return {
            "order_id": self.order_id,
            "status": self.status.value,
            "maker": self.maker,
            "taker": self.taker,
            "making_amount": self.making_amount,
            "taking_amount": self.taking_amount,
            "source_asset": self.source_asset,
            "destination_asset": self.destination_asset,
            "source_chain_id": self.source_chain_id,
            "destination_chain_id": self.destination_chain_id,
            "hashlock": "0x" + self.hashlock.hex(),
            "timelocks": self.timelocks.to_dict(),
            "src_safety_deposit": self.src_safety_deposit,
            "dst_safety_deposit": self.dst_safety_deposit,
            "source_escrow": self.source_escrow_ref.to_dict() if self.source_escrow_ref else None,
            "destination_escrow": (
                self.destination_escrow_ref.to_dict() if self.destination_escrow_ref else None
            ),
            "secret": "0x" + self.secret.hex() if self.secret else None,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class OrderOrchestrator:
    """
    Drives cross-chain orders across a source and a destination ledger.

    Args:
        source_ledger: EscrowLedger for the source side
        destination_ledger: EscrowLedger for the destination side
        monitor: CounterChainMonitor (defaults to watching both ledgers directly)
        config: OrchestratorConfig
        clock: Wall clock for order bookkeeping timestamps
    """

    def __init__(self, source_ledger: EscrowLedger, destination_ledger: EscrowLedger,
                 monitor: CounterChainMonitor = None, config: OrchestratorConfig = None,
                 clock: Callable[[], float] = time.time):
        if source_ledger.side is not EscrowSide.SOURCE:
            raise ValidationError("source_ledger must serve the source side")
        if destination_ledger.side is not EscrowSide.DESTINATION:
            raise ValidationError("destination_ledger must serve the destination side")

        self.config = config or OrchestratorConfig()
        self.ledgers: Dict[EscrowSide, EscrowLedger] = {
            EscrowSide.SOURCE: source_ledger,
            EscrowSide.DESTINATION: destination_ledger,
        }
        self.monitor = monitor or CounterChainMonitor(
            {EscrowSide.SOURCE: source_ledger, EscrowSide.DESTINATION: destination_ledger},
            self.config.monitor,
        )
        self._clock = clock

        self.orders: Dict[str, CrossChainOrder] = {}
        self._watches: Dict[str, List[WatchHandle]] = {}
        self._lock = threading.RLock()

    # =========================================================================
    # Order creation
    # =========================================================================

    def create_order(self, params: OrderParams) -> CrossChainOrder:
        """
        Validate parameters and register a Pending order.

        Raises:
            ValidationError / InvalidSchedule: bad parameters
            AlreadyExists: order id already registered
        """
        for name in ("maker", "taker"):
            value = getattr(params, name)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{name} is required")
        for name in ("making_amount", "taking_amount"):
            value = getattr(params, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValidationError(f"{name} must be a positive integer")
        for name in ("source_asset", "destination_asset"):
            value = getattr(params, name)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{name} is required")
        for name in ("source_chain_id", "destination_chain_id"):
            value = getattr(params, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{name} must be a non-negative integer")
        if params.source_chain_id == params.destination_chain_id:
            raise ValidationError("source and destination chains must be different")

        hashlock = to_bytes32(params.hashlock, "hashlock")
        if hashlock == ZERO_BYTES32:
            raise ValidationError("hashlock must not be zero")

        timelocks = self._coerce_timelocks(params.timelocks)

        src_deposit = params.src_safety_deposit
        if src_deposit is None:
            src_deposit = self.config.default_src_safety_deposit
        dst_deposit = params.dst_safety_deposit
        if dst_deposit is None:
            dst_deposit = self.config.default_dst_safety_deposit
        for name, value in (("src_safety_deposit", src_deposit), ("dst_safety_deposit", dst_deposit)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{name} must be a non-negative integer")

        if params.order_id is not None:
            order_id = to_hex32(params.order_id, "order_id")
        else:
            salt = params.salt if params.salt is not None else secrets.randbits(64)
            order_id = derive_order_id(
                params.maker, params.taker, params.making_amount, params.taking_amount,
                params.source_chain_id, params.destination_chain_id, hashlock, salt,
            )

        now = int(self._clock())
        order = CrossChainOrder(
            order_id=order_id,
            maker=params.maker,
            taker=params.taker,
            making_amount=params.making_amount,
            taking_amount=params.taking_amount,
            source_asset=params.source_asset,
            destination_asset=params.destination_asset,
            source_chain_id=params.source_chain_id,
            destination_chain_id=params.destination_chain_id,
            hashlock=hashlock,
            timelocks=timelocks,
            src_safety_deposit=src_deposit,
            dst_safety_deposit=dst_deposit,
            created_at=now,
            updated_at=now,
        )
        # Both sides must be deployable as-is
        for side in EscrowSide:
            EscrowPayload.from_order(order, side)

        with self._lock:
            if order_id in self.orders:
                raise AlreadyExists(f"order {order_id} already exists")
            self.orders[order_id] = order

        log.info(f"Order created: {order_id[:18]}..., {params.making_amount} "
                 f"{params.source_asset}@{params.source_chain_id} -> {params.taking_amount} "
                 f"{params.destination_asset}@{params.destination_chain_id}")
        return order

    def _coerce_timelocks(self, value) -> TimelockSchedule:
        if value is None:
            return TimelockSchedule.default()
        if isinstance(value, TimelockSchedule):
            return value
        return TimelockSchedule.from_offsets(value)

    # =========================================================================
    # Deployment
    # =========================================================================

    def deploy_source(self, order_id: BytesLike) -> CrossChainOrder:
        """Create the source escrow (locks making_amount from the maker)."""
        return self._deploy(order_id, EscrowSide.SOURCE)

    def deploy_destination(self, order_id: BytesLike) -> CrossChainOrder:
        """Create the destination escrow (locks taking_amount from the taker)."""
        return self._deploy(order_id, EscrowSide.DESTINATION)

    def _deploy(self, order_id: BytesLike, side: EscrowSide) -> CrossChainOrder:
        with self._lock:
            order = self.require_order(order_id)
            if order.is_terminal:
                raise AlreadyFinalized(f"order {order.order_id} already {order.status.value}")
            if order.escrow_ref(side) is not None:
                raise AlreadyExists(f"{side.value} escrow already deployed for {order.order_id}")

            ledger = self.ledgers[side]
            if ledger.chain_id != order.chain_id(side):
                raise ChainMismatch(
                    f"{side.value} ledger serves chain {ledger.chain_id}, "
                    f"order expects {order.chain_id(side)}"
                )

            payload = EscrowPayload.from_order(order, side)
            try:
                record = ledger.create(
                    payload.order_id,
                    payload.hashlock,
                    payload.maker,
                    payload.taker,
                    payload.asset_ref,
                    payload.amount,
                    payload.safety_deposit,
                    payload.to_schedule(),
                )
            except AlreadyExists:
                record = ledger.require(order.order_id)
                if record.hashlock != order.hashlock:
                    raise
                log.info(f"Adopting existing {side.value} escrow for {order.order_id[:18]}...")
            except DeploymentFailed as e:
                self._mark_failed(order, e)
                raise

            ref = EscrowRef(side=side, chain_id=ledger.chain_id, order_id=record.order_id)
            if side is EscrowSide.SOURCE:
                order.source_escrow_ref = ref
            else:
                order.destination_escrow_ref = ref
            order.error = None
            self._sync_status(order)

        log.info(f"Order {order.order_id[:18]}... {side.value} escrow deployed, "
                 f"status={order.status.value}")
        return order

    # =========================================================================
    # Secret disclosure
    # =========================================================================

    def on_secret_observed(self, order_id: BytesLike, secret: BytesLike,
                           caller: Optional[str] = None) -> CrossChainOrder:
        """
        Withdraw every deployed escrow that is still open, using ``secret``.

        Safe to call repeatedly with the same secret. Sides whose withdrawal
        gate has not opened are left for a later call.

        Raises:
            InvalidSecret: secret does not match the order hashlock
        """
        with self._lock:
            order = self.require_order(order_id)
            if not verify(secret, order.hashlock):
                raise InvalidSecret(f"secret does not match hashlock of order {order.order_id}")
            raw = to_bytes32(secret, "secret")

            if order.secret is None:
                order.secret = raw
                order.updated_at = int(self._clock())
                log.info(f"Order {order.order_id[:18]}... secret known: {short_hex(raw)}")

            if order.status is OrderStatus.EXECUTED:
                return order

            try:
                for side in order.deployed_sides():
                    self._withdraw_side(order, side, raw, caller)
            finally:
                self._sync_status(order)
            return order

    def _withdraw_side(self, order: CrossChainOrder, side: EscrowSide, secret: bytes,
                       caller: Optional[str]):
        ledger = self.ledgers[side]
        record = ledger.require(order.order_id)
        if record.status is EscrowStatus.WITHDRAWN:
            return
        if record.status is EscrowStatus.CANCELLED:
            log.warning(f"Order {order.order_id[:18]}... {side.value} escrow already "
                        f"cancelled, cannot withdraw")
            return

        actor = self._caller_for(ledger, record, caller, public_withdrawal_stage(side),
                                 record.recipient)
        try:
            ledger.withdraw(order.order_id, secret, actor)
        except AlreadyFinalized:
            log.info(f"Order {order.order_id[:18]}... {side.value} escrow finalized "
                     f"by another caller")
        except TimelockNotMet as e:
            log.info(f"Order {order.order_id[:18]}... {side.value} withdrawal not yet "
                     f"open: {e}")
        except Unauthorized as e:
            log.warning(f"Order {order.order_id[:18]}... {side.value} withdrawal refused "
                        f"for {actor}: {e}")

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel_order(self, order_id: BytesLike, caller: Optional[str] = None) -> CrossChainOrder:
        """
        Cancel every deployed escrow that is still open.

        Withdrawal takes precedence: if a verified secret is known (on the
        order or disclosed on either ledger) this withdraws instead. The first
        successful cancellation makes the order Cancelled; calling again
        finishes the other side once its gate opens.

        Raises:
            AlreadyFinalized: order already executed
            TimelockNotMet: no side could be cancelled yet
        """
        with self._lock:
            order = self.require_order(order_id)
            if order.status is OrderStatus.EXECUTED:
                raise AlreadyFinalized(f"order {order.order_id} already executed")

            secret = order.secret or self._disclosed_secret(order)
            if secret is not None:
                log.info(f"Order {order.order_id[:18]}... has a verified secret, "
                         f"withdrawing instead of cancelling")
                return self.on_secret_observed(order.order_id, secret, caller)

            deployed = order.deployed_sides()
            if not deployed:
                self._set_status(order, OrderStatus.CANCELLED)
                log.info(f"Order {order.order_id[:18]}... cancelled before deployment")
                return order

            cancelled = False
            not_met: List[TimelockNotMet] = []
            try:
                for side in deployed:
                    ledger = self.ledgers[side]
                    record = ledger.require(order.order_id)
                    if record.status is EscrowStatus.CANCELLED:
                        cancelled = True
                        continue
                    if record.status is not EscrowStatus.CREATED:
                        continue

                    actor = self._caller_for(ledger, record, caller,
                                             public_cancellation_stage(side), record.depositor)
                    try:
                        ledger.cancel(order.order_id, actor)
                        cancelled = True
                    except AlreadyFinalized:
                        status = ledger.require(order.order_id).status
                        cancelled = cancelled or status is EscrowStatus.CANCELLED
                    except TimelockNotMet as e:
                        not_met.append(e)
                    except Unauthorized as e:
                        log.warning(f"Order {order.order_id[:18]}... {side.value} cancellation "
                                    f"refused for {actor}: {e}")
            finally:
                self._sync_status(order)

            # A racing withdrawal may have disclosed the secret meanwhile
            secret = self._disclosed_secret(order)
            if secret is not None:
                return self.on_secret_observed(order.order_id, secret, caller)

            if not cancelled and not_met:
                raise not_met[0]
            return order

    # =========================================================================
    # Monitoring
    # =========================================================================

    def watch_order(self, order_id: BytesLike, side: EscrowSide = EscrowSide.SOURCE,
                    budget: WatchBudget = None) -> WatchHandle:
        """
        Watch ``side`` for the secret in the background.

        When found, on_secret_observed() runs on the watch thread. Budget
        exhaustion marks the order Failed (still queryable; watch again to
        extend monitoring). The watch is cancelled when the order completes.
        """
        with self._lock:
            order = self.require_order(order_id)
            if order.is_terminal:
                raise AlreadyFinalized(f"order {order.order_id} already {order.status.value}")
            key = order.order_id

        def on_secret(result: PollResult):
            self.on_secret_observed(key, result.secret)

        def on_timeout(result: PollResult):
            with self._lock:
                self._mark_failed(self.orders[key], MonitorTimeout(
                    f"no secret on {side.value} ledger after {result.attempt} attempts"
                ))

        handle = self.monitor.start(
            key, order.hashlock, side,
            budget or WatchBudget.from_config(self.config.monitor),
            on_secret=on_secret,
            on_timeout=on_timeout,
        )
        with self._lock:
            self._watches.setdefault(key, []).append(handle)
            if order.is_terminal:
                handle.cancel()
        return handle

    def poll_order(self, order_id: BytesLike, side: EscrowSide = EscrowSide.SOURCE,
                   budget: WatchBudget = None) -> CrossChainOrder:
        """
        Blocking variant of watch_order().

        Raises:
            AlreadyFinalized: order already executed or cancelled
            MonitorTimeout: budget exhausted (order marked Failed)
        """
        order = self.require_order(order_id)
        if order.is_terminal:
            raise AlreadyFinalized(f"order {order.order_id} already {order.status.value}")
        try:
            secret = self.monitor.wait_for_secret(
                order.order_id, order.hashlock, side,
                budget or WatchBudget.from_config(self.config.monitor),
            )
        except MonitorTimeout as e:
            with self._lock:
                self._mark_failed(order, e)
            raise
        if secret is None:
            return order
        return self.on_secret_observed(order.order_id, secret)

    def stop_watches(self, order_id: BytesLike):
        with self._lock:
            for handle in self._watches.pop(to_hex32(order_id, "order_id"), []):
                handle.cancel()

    # =========================================================================
    # Queries
    # =========================================================================

    def get_order(self, order_id: BytesLike) -> Optional[CrossChainOrder]:
        return self.orders.get(to_hex32(order_id, "order_id"))

    def require_order(self, order_id: BytesLike) -> CrossChainOrder:
        order = self.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"order {order_id} not found")
        return order

    def list_orders(self) -> List[CrossChainOrder]:
        with self._lock:
            return list(self.orders.values())

    def pending_orders(self) -> List[CrossChainOrder]:
        """Orders still in flight (not terminal, not failed)."""
        with self._lock:
            return [
                o for o in self.orders.values()
                if not o.is_terminal and o.status is not OrderStatus.FAILED
            ]

    def clear_completed_orders(self) -> int:
        """Forget Executed and Cancelled orders. Failed orders are kept for the operator."""
        with self._lock:
            done = [k for k, o in self.orders.items() if o.is_terminal]
            for key in done:
                del self.orders[key]
                self._watches.pop(key, None)
            return len(done)

    def escrow_records(self, order_id: BytesLike) -> Dict[EscrowSide, Optional[EscrowRecord]]:
        order = self.require_order(order_id)
        return {side: self.ledgers[side].get(order.order_id) for side in EscrowSide}

    def escrow_payload(self, order_id: BytesLike, side: EscrowSide) -> EscrowPayload:
        """Versioned creation payload for one side of the order."""
        return EscrowPayload.from_order(self.require_order(order_id), side)

    # =========================================================================
    # Internals
    # =========================================================================

    def _actor(self, ledger: EscrowLedger, record: EscrowRecord,
               public_stage: Optional[TimelockStage], default: str) -> str:
        """Relayer once the public stage is open, otherwise the designated party."""
        relayer = self.config.relayer_address
        if relayer and public_stage is not None:
            if record.timelocks.is_reached(public_stage, ledger.client.now(), record.deployed_at):
                return relayer
        return default

    def _caller_for(self, ledger: EscrowLedger, record: EscrowRecord, caller: Optional[str],
                    public_stage: Optional[TimelockStage], designated: str) -> str:
        """
        Pick who acts on one escrow.

        An explicit caller is used where the ledger would accept it: it is the
        designated party, or the public stage for this side is open. Anywhere
        else the default actor is used so one caller never blocks the other side.
        """
        if caller:
            if caller == designated:
                return caller
            if public_stage is not None and record.timelocks.is_reached(
                    public_stage, ledger.client.now(), record.deployed_at):
                return caller
        return self._actor(ledger, record, public_stage, designated)

    def _disclosed_secret(self, order: CrossChainOrder) -> Optional[bytes]:
        for side in order.deployed_sides():
            record = self.ledgers[side].get(order.order_id)
            if record and record.secret and verify(record.secret, order.hashlock):
                return record.secret
        return None

    def _sync_status(self, order: CrossChainOrder):
        """Recompute order status from the escrow records."""
        statuses = {}
        for side in order.deployed_sides():
            statuses[side] = self.ledgers[side].require(order.order_id).status

        withdrawn = [s for s, st in statuses.items() if st is EscrowStatus.WITHDRAWN]
        cancelled = [s for s, st in statuses.items() if st is EscrowStatus.CANCELLED]

        if len(withdrawn) == 2:
            self._set_status(order, OrderStatus.EXECUTED)
        elif withdrawn and cancelled:
            order.error = (f"{withdrawn[0].value} escrow withdrawn but "
                           f"{cancelled[0].value} escrow cancelled")
            self._set_status(order, OrderStatus.FAILED)
            log.error(f"Order {order.order_id[:18]}... {order.error}")
        elif cancelled:
            self._set_status(order, OrderStatus.CANCELLED)
        elif len(statuses) == 2:
            self._set_status(order, OrderStatus.FUNDED)
        elif EscrowSide.SOURCE in statuses:
            self._set_status(order, OrderStatus.SOURCE_DEPLOYED)
        elif EscrowSide.DESTINATION in statuses:
            self._set_status(order, OrderStatus.DESTINATION_DEPLOYED)
        else:
            self._set_status(order, OrderStatus.PENDING)

    def _set_status(self, order: CrossChainOrder, status: OrderStatus):
        if order.status is not status:
            log.info(f"Order {order.order_id[:18]}... {order.status.value} -> {status.value}")
            order.status = status
        order.updated_at = int(self._clock())
        if order.is_terminal:
            for handle in self._watches.pop(order.order_id, []):
                handle.cancel()

    def _mark_failed(self, order: CrossChainOrder, error: SwapError):
        if order.is_terminal:
            log.info(f"Order {order.order_id[:18]}... already {order.status.value}, "
                     f"ignoring {error.code}")
            return
        order.error = f"{error.code}: {error}"
        self._set_status(order, OrderStatus.FAILED)
        log.error(f"Order {order.order_id[:18]}... failed: {order.error}")
