"""Tests for PoolWorker cycles, single-flight ticks and the decision journal."""

import json
import threading
from decimal import Decimal
from unittest.mock import MagicMock

from web3.exceptions import TimeExhausted, TransactionNotFound

from auctionbot.errors import (
    ChainReadError,
    ConfirmationAbandoned,
    ConfirmationTimeout,
    EstimationError,
    ExecutionReverted,
)
from auctionbot.executor import ActionExecutor, OutcomeKind, Receipt
from auctionbot.models import ExpectedProfit, NoAction, SetFee, SubmitBid
from auctionbot.scheduler import AuctionScheduler, CycleState, DecisionJournal, PoolWorker
from tests.conftest import (
    OPERATOR,
    RIVAL,
    FakeEstimator,
    FakeExecutor,
    FakeReader,
    make_state,
    snapshot,
)

PROFITABLE = ExpectedProfit(2 * 10**15, Decimal("0"))


def make_worker(
    params, reader, executor, estimate=PROFITABLE, name="eth-usdc", stop_event=None, **kwargs
):
    if stop_event is None:
        stop_event = threading.Event()
    return PoolWorker(
        {"name": name, "pool_id": b"\x01" * 32},
        reader,
        FakeEstimator(estimate),
        executor,
        params,
        OPERATOR,
        stop_event,
        **kwargs,
    )


class TestTick:
    """One fetch -> decide -> execute -> confirm cycle."""

    def test_bid_is_executed_and_confirmed(self, params):
        executor = FakeExecutor()
        worker = make_worker(params, FakeReader(snapshot(make_state())), executor)

        result = worker.tick()

        assert result.outcome == "confirmed"
        assert result.block_number == 1000
        assert executor.executed == [SubmitBid(amount=16 * 10**14)]
        assert worker.state is CycleState.IDLE
        assert worker.cycles == 1

    def test_no_action_skips_executor(self, params):
        executor = FakeExecutor()
        state = make_state(manager=RIVAL, rent=10**18)
        worker = make_worker(params, FakeReader(snapshot(state)), executor)

        result = worker.tick()

        assert isinstance(result.action, NoAction)
        assert result.outcome == "skipped"
        assert executor.executed == []

    def test_fee_update_for_managed_pool(self, params):
        executor = FakeExecutor()
        state = make_state(manager=OPERATOR, rent=10**15, fee=3000)
        worker = make_worker(
            params,
            FakeReader(snapshot(state)),
            executor,
            estimate=ExpectedProfit(0, Decimal("0.02")),
        )
        worker.tick()
        assert executor.executed == [SetFee(fee=3200)]

    def test_read_failure_skips_cycle(self, params):
        executor = FakeExecutor()
        worker = make_worker(params, FakeReader(error=ChainReadError("rpc down")), executor)

        result = worker.tick()

        assert result.outcome == "read_failed"
        assert "rpc down" in result.error
        assert executor.executed == []
        assert worker.state is CycleState.IDLE

    def test_build_failure_is_reported(self, params):
        executor = FakeExecutor(kind=OutcomeKind.BUILD_FAILED)
        worker = make_worker(params, FakeReader(snapshot(make_state())), executor)
        result = worker.tick()
        assert result.outcome == "build_failed"
        assert executor.confirm_stop_events == []

    def test_revert_is_reported(self, params):
        receipt = Receipt(status=0, tx_hash="0xdead")
        executor = FakeExecutor(confirm_error=ExecutionReverted(receipt))
        worker = make_worker(params, FakeReader(snapshot(make_state())), executor)
        assert worker.tick().outcome == "reverted"

    def test_unmined_tx_blocks_new_broadcasts(self, params):
        executor = FakeExecutor(confirm_error=ConfirmationTimeout("no receipt"))
        executor.mined = False
        reader = FakeReader(snapshot(make_state()))
        worker = make_worker(params, reader, executor)

        first = worker.tick()
        assert first.outcome == "unconfirmed"
        assert worker.outstanding_tx == first.tx_hash

        second = worker.tick()
        assert second.outcome == "tx_pending"
        assert second.tx_hash == first.tx_hash
        assert len(executor.executed) == 1
        assert reader.calls == 1
        assert worker.state is CycleState.IDLE

    def test_cycle_resumes_once_outstanding_tx_is_mined(self, params):
        executor = FakeExecutor(confirm_error=ConfirmationTimeout("no receipt"))
        executor.mined = False
        worker = make_worker(params, FakeReader(snapshot(make_state())), executor)
        worker.tick()
        worker.tick()

        executor.mined = True
        executor.confirm_error = None
        result = worker.tick()

        assert result.outcome == "confirmed"
        assert worker.outstanding_tx is None
        assert len(executor.executed) == 2
        assert len(executor.polled) == 2

    def test_abandoned_tx_is_tracked(self, params):
        executor = FakeExecutor(confirm_error=ConfirmationAbandoned("stopping"))
        executor.mined = False
        worker = make_worker(params, FakeReader(snapshot(make_state())), executor)
        assert worker.tick().outcome == "abandoned"
        assert worker.tick().outcome == "tx_pending"

    def test_real_executor_sends_once_while_unmined(
        self, params, fake_w3, fake_account, exec_config, pool_key, rules
    ):
        exec_config.CONFIRMATION_TIMEOUT = 0
        hook = MagicMock()
        fake_w3.eth.contract.return_value = hook
        hook.functions.submitBid.return_value.estimate_gas.return_value = 100_000
        hook.functions.submitBid.return_value.build_transaction.side_effect = dict
        fake_w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("not yet")
        fake_w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("unknown")
        executor = ActionExecutor(fake_w3, fake_account, exec_config, pool_key, rules)
        worker = make_worker(params, FakeReader(snapshot(make_state())), executor)

        outcomes = [worker.tick().outcome for _ in range(3)]

        assert outcomes == ["unconfirmed", "tx_pending", "tx_pending"]
        assert fake_w3.eth.send_raw_transaction.call_count == 1

    def test_estimator_failure_keeps_last_volatility(self, params):
        class FlakyEstimator:
            def __init__(self):
                self.calls = 0

            def estimate(self, pool_id, state):
                self.calls += 1
                if self.calls > 1:
                    raise EstimationError("StateView unreachable")
                return ExpectedProfit(0, Decimal("0.02"))

        executor = FakeExecutor()
        state = make_state(manager=OPERATOR, rent=10**15, fee=3200)
        worker = make_worker(params, FakeReader(snapshot(state)), executor)
        worker.estimator = FlakyEstimator()

        first = worker.tick()
        second = worker.tick()

        assert isinstance(first.action, NoAction)
        assert isinstance(second.action, NoAction)
        assert executor.executed == []

    def test_estimator_failure_before_any_reading_leaves_fee(self, params):
        class BrokenEstimator:
            def estimate(self, pool_id, state):
                raise EstimationError("no prices yet")

        executor = FakeExecutor()
        state = make_state(manager=OPERATOR, rent=10**15, fee=3200)
        worker = make_worker(params, FakeReader(snapshot(state)), executor)
        worker.estimator = BrokenEstimator()

        assert isinstance(worker.tick().action, NoAction)
        assert executor.executed == []

    def test_stop_event_passed_only_when_abandoning(self, params):
        stop = threading.Event()
        executor = FakeExecutor()
        worker = make_worker(
            params, FakeReader(snapshot(make_state())), executor, stop_event=stop
        )
        worker.tick()
        keeper = make_worker(
            params,
            FakeReader(snapshot(make_state())),
            executor,
            stop_event=stop,
            abandon_on_stop=False,
        )
        keeper.tick()
        assert executor.confirm_stop_events == [stop, None]

    def test_stale_estimate_does_not_bid(self, params):
        executor = FakeExecutor()
        old = ExpectedProfit(2 * 10**15, Decimal("0"), observed_at=0.0)
        worker = make_worker(
            params, FakeReader(snapshot(make_state())), executor, estimate=old, estimate_max_age=60
        )
        assert isinstance(worker.tick().action, NoAction)


class TestSingleFlight:
    """At most one cycle per pool at any time."""

    def test_tick_dropped_while_awaiting_confirmation(self, params):
        executor = FakeExecutor(block=True)
        reader = FakeReader(snapshot(make_state()))
        worker = make_worker(params, reader, executor)

        thread = threading.Thread(target=worker.tick)
        thread.start()
        assert executor.entered_confirmation.wait(5)

        assert worker.state is CycleState.AWAITING_CONFIRMATION
        assert worker.tick() is None
        assert worker.dropped_ticks == 1
        assert reader.calls == 1

        executor.release.set()
        thread.join(5)
        assert worker.state is CycleState.IDLE
        assert len(executor.executed) == 1

    def test_pools_progress_independently(self, params):
        blocked = FakeExecutor(block=True)
        free = FakeExecutor()
        slow = make_worker(params, FakeReader(snapshot(make_state())), blocked, name="slow")
        fast = make_worker(params, FakeReader(snapshot(make_state())), free, name="fast")

        thread = threading.Thread(target=slow.tick)
        thread.start()
        assert blocked.entered_confirmation.wait(5)

        assert fast.tick().outcome == "confirmed"
        assert fast.tick().outcome == "confirmed"

        blocked.release.set()
        thread.join(5)
        assert len(free.executed) == 2
        assert len(blocked.executed) == 1


class TestRunLoop:
    """Polling loop, error containment and shutdown."""

    def test_unexpected_error_does_not_kill_the_loop(self, params):
        stop = threading.Event()

        class FlakyReader(FakeReader):
            def fetch(self, pool_id):
                self.calls += 1
                if self.calls == 1:
                    raise RuntimeError("decoder bug")
                stop.set()
                return snapshot(make_state(manager=RIVAL, rent=10**18))

        reader = FlakyReader()
        worker = make_worker(params, reader, FakeExecutor(), stop_event=stop)
        worker.run(interval=0.01)

        assert reader.calls == 2
        assert worker.cycles == 2

    def test_scheduler_stops_all_workers(self, params):
        stop = threading.Event()
        state = make_state(manager=RIVAL, rent=10**18)
        workers = [
            make_worker(params, FakeReader(snapshot(state)), FakeExecutor(), name=n, stop_event=stop)
            for n in ("a", "b")
        ]
        scheduler = AuctionScheduler(workers, interval=0.01, stop_event=stop)
        scheduler.start()
        scheduler.stop()
        scheduler.join(5)

        assert all(not t.is_alive() for t in scheduler._threads)
        assert [t.name for t in scheduler._threads] == ["pool-a", "pool-b"]


class TestDecisionJournal:
    """JSON lines written per cycle."""

    def test_records_cycle(self, params, tmp_path):
        path = tmp_path / "decisions.jsonl"
        journal = DecisionJournal(str(path))
        worker = make_worker(
            params, FakeReader(snapshot(make_state())), FakeExecutor(), journal=journal
        )
        worker.tick()

        lines = path.read_text().splitlines()
        assert len(lines) == 1
        record = json.loads(lines[0])
        assert record["pool"] == "eth-usdc"
        assert record["action"] == "submit_bid"
        assert record["amount"] == str(16 * 10**14)
        assert record["outcome"] == "confirmed"
        assert record["block"] == 1000
        assert record["profit_per_block"] == str(2 * 10**15)

    def test_read_failure_recorded_without_snapshot(self, params, tmp_path):
        path = tmp_path / "decisions.jsonl"
        worker = make_worker(
            params,
            FakeReader(error=ChainReadError("timeout")),
            FakeExecutor(),
            journal=DecisionJournal(str(path)),
        )
        worker.tick()
        record = json.loads(path.read_text())
        assert record["outcome"] == "read_failed"
        assert record["action"] is None
        assert "manager" not in record

    def test_unwritable_journal_does_not_fail_cycle(self, params, tmp_path):
        journal = DecisionJournal(str(tmp_path / "missing" / "decisions.jsonl"))
        worker = make_worker(
            params, FakeReader(snapshot(make_state())), FakeExecutor(), journal=journal
        )
        assert worker.tick().outcome == "confirmed"
