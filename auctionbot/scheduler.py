"""
Polling scheduler with one worker per monitored pool.

Each worker runs fetch -> decide -> execute -> confirm to completion before
the next tick. A worker holds at most one cycle at a time; ticks that arrive
while a cycle is running are dropped, not queued. Workers for different pools
share nothing but the chain client and the signing key.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from auctionbot.decision import decide
from auctionbot.errors import (
    ChainReadError,
    ConfirmationAbandoned,
    ConfirmationTimeout,
    ExecutionReverted,
)
from auctionbot.estimator import guarded_estimate
from auctionbot.executor import OutcomeKind
from auctionbot.models import NoAction, SetFee, SubmitBid

logger = logging.getLogger(__name__)


class CycleState(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DECIDING = "deciding"
    EXECUTING = "executing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"


@dataclass
class CycleResult:
    pool: str
    block_number: int | None = None
    action: object = None
    outcome: str = "skipped"
    tx_hash: str | None = None
    error: str | None = None


class DecisionJournal:
    """Appends one JSON line per cycle; safe to share between workers."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def record(self, result: CycleResult, snapshot=None, estimate=None) -> None:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "pool": result.pool,
            "block": result.block_number,
            "action": getattr(result.action, "kind", None),
            "reason": getattr(result.action, "reason", None),
            "outcome": result.outcome,
            "tx_hash": result.tx_hash,
            "error": result.error,
        }
        if isinstance(result.action, SubmitBid):
            record["amount"] = str(result.action.amount)
        elif isinstance(result.action, SetFee):
            record["fee"] = result.action.fee
        if snapshot is not None:
            record.update(
                {
                    "manager": snapshot.state.current_manager,
                    "rent": str(snapshot.state.rent_per_block),
                    "pending_rent": str(snapshot.pending.rent_per_block),
                    "current_fee": snapshot.state.current_fee,
                }
            )
        if estimate is not None:
            record["profit_per_block"] = str(estimate.profit_per_block)
            record["volatility"] = (
                None if estimate.volatility is None else str(estimate.volatility)
            )

        with self._lock:
            with open(self.path, "a") as f:
                f.write(json.dumps(record) + "\n")


class PoolWorker:
    """Drives the auction cycle for a single pool."""

    def __init__(
        self,
        pool: dict,
        reader,
        estimator,
        executor,
        params,
        operator: str,
        stop_event: threading.Event,
        abandon_on_stop: bool = True,
        estimate_max_age: float | None = None,
        journal: DecisionJournal | None = None,
    ):
        self.name = pool["name"]
        self.pool_id = pool["pool_id"]
        self.reader = reader
        self.estimator = estimator
        self.executor = executor
        self.params = params
        self.operator = operator
        self.stop_event = stop_event
        self.abandon_on_stop = abandon_on_stop
        self.estimate_max_age = estimate_max_age
        self.journal = journal

        self._cycle_lock = threading.Lock()
        self._state = CycleState.IDLE
        # Broadcast by an earlier cycle, receipt not yet seen.
        self.outstanding_tx: str | None = None
        self._last_volatility: Decimal | None = None
        self.cycles = 0
        self.dropped_ticks = 0

    @property
    def state(self) -> CycleState:
        return self._state

    def _enter(self, state: CycleState) -> None:
        logger.debug("[%s] %s -> %s", self.name, self._state.value, state.value)
        self._state = state

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self) -> CycleResult | None:
        """Run one full cycle, or drop the tick if a cycle is already running."""
        if not self._cycle_lock.acquire(blocking=False):
            self.dropped_ticks += 1
            logger.debug("[%s] tick dropped, cycle in %s", self.name, self._state.value)
            return None
        try:
            self.cycles += 1
            return self._run_cycle()
        finally:
            self._enter(CycleState.IDLE)
            self._cycle_lock.release()

    def _run_cycle(self) -> CycleResult:
        result = CycleResult(pool=self.name)

        if self.outstanding_tx is not None and not self._settle_outstanding(result):
            self._journal(result)
            return result

        self._enter(CycleState.FETCHING)
        try:
            snapshot = self.reader.fetch(self.pool_id)
        except ChainReadError as e:
            logger.warning("[%s] chain read failed, skipping cycle: %s", self.name, e)
            result.outcome = "read_failed"
            result.error = str(e)
            self._journal(result)
            return result
        result.block_number = snapshot.block_number

        self._enter(CycleState.DECIDING)
        estimate = guarded_estimate(
            self.estimator,
            self.pool_id,
            snapshot.state,
            max_age=self.estimate_max_age,
            fallback_volatility=self._last_volatility,
        )
        if estimate.volatility is not None:
            self._last_volatility = estimate.volatility
        action = decide(snapshot.state, snapshot.pending, estimate, self.params, self.operator)
        result.action = action
        self._log_snapshot(snapshot, estimate, action)

        if isinstance(action, NoAction):
            self._journal(result, snapshot, estimate)
            return result

        self._enter(CycleState.EXECUTING)
        outcome = self.executor.execute(action, snapshot)
        result.outcome = outcome.kind.value
        result.tx_hash = outcome.tx_hash
        if outcome.error is not None:
            result.error = str(outcome.error)

        if outcome.kind is OutcomeKind.SUBMITTED:
            self._enter(CycleState.AWAITING_CONFIRMATION)
            self._confirm(result)

        self._log_outcome(result)
        self._journal(result, snapshot, estimate)
        return result

    def _confirm(self, result: CycleResult) -> None:
        stop = self.stop_event if self.abandon_on_stop else None
        try:
            self.executor.await_confirmation(result.tx_hash, stop)
            result.outcome = "confirmed"
        except ExecutionReverted as e:
            result.outcome = "reverted"
            result.error = str(e)
        except ConfirmationAbandoned as e:
            result.outcome = "abandoned"
            result.error = str(e)
            self.outstanding_tx = result.tx_hash
        except (ConfirmationTimeout, ChainReadError) as e:
            result.outcome = "unconfirmed"
            result.error = str(e)
            self.outstanding_tx = result.tx_hash

    def _settle_outstanding(self, result: CycleResult) -> bool:
        """Look up the receipt of an earlier unconfirmed tx; False while it is unmined."""
        tx_hash = self.outstanding_tx
        self._enter(CycleState.AWAITING_CONFIRMATION)
        try:
            mined = self.executor.poll_receipt(tx_hash) is not None
        except ExecutionReverted as e:
            logger.warning("[%s] earlier %s", self.name, e)
            mined = True
        except ChainReadError as e:
            logger.warning("[%s] receipt lookup for %s failed: %s", self.name, tx_hash, e)
            mined = False

        if not mined:
            logger.info("[%s] tx %s still unmined, skipping cycle", self.name, tx_hash)
            result.outcome = "tx_pending"
            result.tx_hash = tx_hash
            return False
        self.outstanding_tx = None
        return True

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self, interval: float) -> None:
        """Tick every `interval` seconds until the stop event is set."""
        logger.info("[%s] worker started, polling every %.1fs", self.name, interval)
        while not self.stop_event.is_set():
            started = time.monotonic()
            try:
                self.tick()
            except Exception as e:
                logger.error("[%s] error in cycle: %s", self.name, e, exc_info=True)
            elapsed = time.monotonic() - started
            if elapsed > interval:
                self.dropped_ticks += int(elapsed // interval)
            self.stop_event.wait(max(0.0, interval - elapsed))
        logger.info("[%s] worker stopped after %d cycle(s)", self.name, self.cycles)

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def _log_snapshot(self, snapshot, estimate, action) -> None:
        state, pending = snapshot.state, snapshot.pending
        logger.info(
            "[%s] block=%d manager=%s rent=%d fee=%d | profit=%d vol=%s | %s",
            self.name,
            snapshot.block_number,
            _short(state.current_manager),
            state.rent_per_block,
            state.current_fee,
            estimate.profit_per_block,
            estimate.volatility,
            action.kind,
        )
        if pending.exists:
            logger.info(
                "[%s]   pending bid: %d wei/block by %s (activates at block %d)",
                self.name,
                pending.rent_per_block,
                _short(pending.bidder),
                pending.activation_block,
            )
        logger.debug("[%s]   reason: %s", self.name, action.reason)

    def _log_outcome(self, result: CycleResult) -> None:
        if result.outcome in ("confirmed", "dry_run"):
            logger.info(
                "[%s] %s %s tx=%s", self.name, result.action.kind, result.outcome, result.tx_hash
            )
        elif result.outcome in ("reverted", "abandoned", "unconfirmed"):
            logger.warning(
                "[%s] %s %s tx=%s: %s",
                self.name,
                result.action.kind,
                result.outcome,
                result.tx_hash,
                result.error,
            )
        else:
            logger.error(
                "[%s] %s %s: %s", self.name, result.action.kind, result.outcome, result.error
            )

    def _journal(self, result, snapshot=None, estimate=None) -> None:
        if self.journal is None:
            return
        try:
            self.journal.record(result, snapshot, estimate)
        except OSError as e:
            logger.warning("[%s] could not write decision journal: %s", self.name, e)


class AuctionScheduler:
    """Runs one PoolWorker thread per pool and stops them together."""

    def __init__(self, workers: list, interval: float, stop_event: threading.Event):
        self.workers = workers
        self.interval = interval
        self.stop_event = stop_event
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        for worker in self.workers:
            thread = threading.Thread(
                target=worker.run,
                args=(self.interval,),
                name=f"pool-{worker.name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        self.stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout)

    def run_forever(self) -> None:
        self.start()
        try:
            while not self.stop_event.wait(1.0):
                pass
        finally:
            self.stop()
            self.join()


def _short(address: str | None) -> str:
    if address is None:
        return "none"
    if len(address) > 10:
        return address[:6] + "..." + address[-4:]
    return address
