"""
Counter-chain monitor for xchain.

Watches the opposite ledger for a withdrawal that discloses the secret of a
known hashlock. Polling is bounded by a budget (attempts and/or seconds) and
backs off between attempts; exhausting the budget is always surfaced as an
explicit TIMEOUT result, never as silent looping.

Observations from the remote ledger are advisory: every secret is re-verified
locally against the hashlock before it is reported.
"""

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from ..config import MonitorConfig
from ..core import BytesLike, EscrowSide, short_hex, to_bytes32, verify
from ..errors import LedgerCallError, MonitorTimeout, ValidationError

log = logging.getLogger(__name__)


class LogSource:
    """
    Anything that can list secrets disclosed for a hashlock.

    EscrowLedger and EVMLogSource both implement this.
    """

    def get_logs_for_hashlock(self, hashlock: BytesLike,
                              from_checkpoint: int = 0) -> List[Tuple[bytes, int]]:
        raise NotImplementedError


class WatchOutcome(Enum):
    SECRET_FOUND = "secret_found"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class PollResult:
    """Outcome of one poll attempt."""
    outcome: WatchOutcome
    order_id: str
    side: EscrowSide
    attempt: int
    checkpoint: int
    secret: Optional[bytes] = None
    position: Optional[int] = None

    @property
    def found(self) -> bool:
        return self.outcome is WatchOutcome.SECRET_FOUND


@dataclass
class WatchBudget:
    """Bounds for one watch. At least one of max_attempts / max_seconds is required."""
    max_attempts: Optional[int] = 120
    max_seconds: Optional[float] = None
    poll_interval: float = 5.0
    backoff_factor: float = 1.5
    max_interval: float = 60.0
    from_checkpoint: int = 0

    @classmethod
    def from_config(cls, config: MonitorConfig, from_checkpoint: int = 0) -> "WatchBudget":
        return cls(
            max_attempts=config.max_attempts,
            max_seconds=config.max_seconds,
            poll_interval=config.poll_interval,
            backoff_factor=config.backoff_factor,
            max_interval=config.max_interval,
            from_checkpoint=from_checkpoint,
        )

    def interval(self, attempt: int) -> float:
        """Delay after ``attempt`` (1-based)."""
        delay = self.poll_interval * (self.backoff_factor ** max(0, attempt - 1))
        return min(self.max_interval, delay)


class WatchHandle:
    """
    Handle for a watch running on a background thread.

    result() returns the final PollResult (SECRET_FOUND or TIMEOUT), or None
    if the watch was cancelled first.
    """

    def __init__(self, order_id: str, side: EscrowSide):
        self.order_id = order_id
        self.side = side
        self.cancel_event = threading.Event()
        self.future: Future = Future()
        self._thread: Optional[threading.Thread] = None

    def cancel(self):
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> Optional[PollResult]:
        return self.future.result(timeout)

    def join(self, timeout: Optional[float] = None):
        if self._thread:
            self._thread.join(timeout)


class CounterChainMonitor:
    """
    Polls log sources for secret disclosure.

    Args:
        sources: side -> LogSource for each ledger that can be watched
        config: Default budget when watch() is called without one
        clock: Monotonic clock for max_seconds accounting
    """

    def __init__(self, sources: Dict[EscrowSide, LogSource] = None,
                 config: MonitorConfig = None,
                 clock: Callable[[], float] = time.monotonic):
        self.sources: Dict[EscrowSide, LogSource] = dict(sources or {})
        self.config = config or MonitorConfig()
        self._clock = clock

    def add_source(self, side: EscrowSide, source: LogSource):
        self.sources[side] = source

    def watch(self, order_id: str, hashlock: BytesLike, side: EscrowSide,
              budget: WatchBudget = None,
              cancel_event: threading.Event = None) -> Iterator[PollResult]:
        """
        Lazy sequence of poll attempts against the ledger on ``side``.

        Yields NOT_FOUND per empty attempt, then ends with a single
        SECRET_FOUND or TIMEOUT. Setting ``cancel_event`` ends the sequence
        without a further result. Each call starts over from
        ``budget.from_checkpoint``.
        """
        budget = budget or WatchBudget.from_config(self.config)
        if budget.max_attempts is None and budget.max_seconds is None:
            raise ValidationError("watch budget needs max_attempts or max_seconds")
        source = self.sources.get(side)
        if source is None:
            raise ValidationError(f"no log source for {side.value} ledger")
        lock = to_bytes32(hashlock, "hashlock")

        return self._poll(order_id, lock, side, source, budget,
                          cancel_event or threading.Event())

    def _poll(self, order_id: str, hashlock: bytes, side: EscrowSide, source: LogSource,
              budget: WatchBudget, cancel_event: threading.Event) -> Iterator[PollResult]:
        started = self._clock()
        checkpoint = budget.from_checkpoint
        attempt = 0

        while True:
            if cancel_event.is_set():
                log.info(f"Watch cancelled: {order_id[:18]}... on {side.value}")
                return

            if self._exhausted(budget, attempt, started):
                log.warning(f"Watch budget exhausted: {order_id[:18]}... on {side.value} "
                            f"after {attempt} attempts")
                yield PollResult(WatchOutcome.TIMEOUT, order_id, side, attempt, checkpoint)
                return

            attempt += 1
            try:
                entries = source.get_logs_for_hashlock(hashlock, checkpoint)
            except LedgerCallError as e:
                log.error(f"Log query failed for {order_id[:18]}... on {side.value}: {e}")
                entries = []

            for secret, position in sorted(entries, key=lambda entry: entry[1]):
                checkpoint = max(checkpoint, position + 1)
                if not verify(secret, hashlock):
                    log.warning(f"Ignoring secret at position {position} that does not "
                                f"match hashlock {short_hex(hashlock)}")
                    continue
                log.info(f"Secret observed on {side.value} for {order_id[:18]}...: "
                         f"{short_hex(secret)} at position {position}")
                yield PollResult(WatchOutcome.SECRET_FOUND, order_id, side, attempt,
                                 checkpoint, secret=secret, position=position)
                return

            yield PollResult(WatchOutcome.NOT_FOUND, order_id, side, attempt, checkpoint)

            if self._exhausted(budget, attempt, started):
                continue
            if cancel_event.wait(budget.interval(attempt)):
                continue

    def _exhausted(self, budget: WatchBudget, attempt: int, started: float) -> bool:
        if budget.max_attempts is not None and attempt >= budget.max_attempts:
            return True
        if budget.max_seconds is not None and self._clock() - started >= budget.max_seconds:
            return True
        return False

    def wait_for_secret(self, order_id: str, hashlock: BytesLike, side: EscrowSide,
                        budget: WatchBudget = None,
                        cancel_event: threading.Event = None) -> Optional[bytes]:
        """
        Block until the secret is observed.

        Returns the secret, or None if cancelled.

        Raises:
            MonitorTimeout: budget exhausted
        """
        for result in self.watch(order_id, hashlock, side, budget, cancel_event):
            if result.outcome is WatchOutcome.SECRET_FOUND:
                return result.secret
            if result.outcome is WatchOutcome.TIMEOUT:
                raise MonitorTimeout(
                    f"no secret for {order_id} on {side.value} after {result.attempt} attempts"
                )
        return None

    def start(self, order_id: str, hashlock: BytesLike, side: EscrowSide,
              budget: WatchBudget = None,
              on_secret: Callable[[PollResult], None] = None,
              on_timeout: Callable[[PollResult], None] = None) -> WatchHandle:
        """Run watch() on a daemon thread and return its handle."""
        handle = WatchHandle(order_id, side)
        results = self.watch(order_id, hashlock, side, budget, handle.cancel_event)

        def run():
            final = None
            try:
                for result in results:
                    final = result
                    if result.outcome is WatchOutcome.SECRET_FOUND and on_secret:
                        on_secret(result)
                    elif result.outcome is WatchOutcome.TIMEOUT and on_timeout:
                        on_timeout(result)
            except Exception as e:
                log.error(f"Watch for {order_id[:18]}... failed: {e}")
                handle.future.set_exception(e)
                return
            if final is not None and final.outcome is WatchOutcome.NOT_FOUND:
                final = None
            handle.future.set_result(final)

        handle._thread = threading.Thread(target=run, name=f"watch-{order_id[:10]}", daemon=True)
        handle._thread.start()
        log.info(f"Watching {side.value} ledger for {order_id[:18]}...")
        return handle
