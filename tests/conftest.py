"""
Shared fixtures: auction states, strategy params and fakes for the chain
collaborators.
"""

import threading
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from auctionbot import config
from auctionbot.decision import DecisionParams
from auctionbot.executor import ActionOutcome, OutcomeKind, Receipt
from auctionbot.models import AuctionRules, AuctionSnapshot, AuctionState, PendingBid

OPERATOR = "0x1111111111111111111111111111111111111111"
RIVAL = "0x2222222222222222222222222222222222222222"
HOOK = "0x3333333333333333333333333333333333333333"
ETH = 10**18


def make_state(manager=None, rent=0, fee=3000, deposit=None, last_rent_block=0, total=0):
    return AuctionState(
        current_manager=manager,
        rent_per_block=rent,
        manager_deposit=rent * 100 if deposit is None else deposit,
        last_rent_block=last_rent_block,
        current_fee=fee,
        total_rent_paid=total,
    )


def make_pending(bidder=None, rent=0, activation_block=0):
    if bidder is None:
        return PendingBid.empty()
    return PendingBid(bidder, rent, rent * 100, activation_block, 1_700_000_000)


@pytest.fixture
def params():
    return DecisionParams(
        bid_fraction=Decimal("0.8"),
        min_profit_threshold=10**15,
        fee_volatility_multiplier=Decimal("10000"),
        fee_update_threshold=100,
        min_bid_increment=100,
        max_fee=10000,
        min_fee=100,
        base_fee=3000,
    )


@pytest.fixture
def rules():
    return AuctionRules(
        min_bid_increment=100,
        min_deposit_blocks=100,
        activation_delay=5,
        min_fee=100,
        max_fee=10000,
    )


@pytest.fixture
def exec_config():
    """Minimal config surface consumed by ActionExecutor."""
    return SimpleNamespace(
        HOOK_ADDRESS=HOOK,
        DRY_RUN=False,
        GAS_LIMIT_MULTIPLIER=Decimal("1.2"),
        GAS_PRICE_MULTIPLIER=Decimal("1.2"),
        CONFIRMATION_TIMEOUT=5.0,
        RECEIPT_POLL_INTERVAL=0.01,
        pool_key_tuple=config.pool_key_tuple,
    )


@pytest.fixture
def pool_key():
    return {
        "currency0": "0x0000000000000000000000000000000000000000",
        "currency1": "0x4444444444444444444444444444444444444444",
        "fee": 3000,
        "tick_spacing": 60,
        "hooks": HOOK,
    }


@pytest.fixture
def fake_w3():
    w3 = MagicMock()
    w3.eth.chain_id = 31337
    w3.eth.block_number = 1000
    w3.eth.gas_price = 10**9
    w3.eth.get_transaction_count.return_value = 7
    w3.eth.send_raw_transaction.return_value = b"\xab" * 32
    return w3


@pytest.fixture
def fake_account():
    account = MagicMock()
    account.address = OPERATOR
    account.sign_transaction.return_value = SimpleNamespace(raw_transaction=b"\x01\x02")
    return account


class FakeReader:
    def __init__(self, snapshot=None, error=None):
        self.snapshot = snapshot
        self.error = error
        self.calls = 0

    def fetch(self, pool_id):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.snapshot


class FakeEstimator:
    def __init__(self, estimate):
        self.value = estimate

    def estimate(self, pool_id, state):
        return self.value


class FakeExecutor:
    """Records calls; optionally blocks inside await_confirmation."""

    def __init__(self, kind=OutcomeKind.SUBMITTED, confirm_error=None, block=False):
        self.kind = kind
        self.confirm_error = confirm_error
        self.executed = []
        self.confirm_stop_events = []
        self.polled = []
        self.mined = True
        self.entered_confirmation = threading.Event()
        self.release = threading.Event()
        if not block:
            self.release.set()

    def execute(self, action, snapshot=None):
        self.executed.append(action)
        tx_hash = "0x" + "ab" * 32 if self.kind is OutcomeKind.SUBMITTED else None
        return ActionOutcome(self.kind, action, tx_hash=tx_hash)

    def await_confirmation(self, tx_hash, stop_event=None):
        self.confirm_stop_events.append(stop_event)
        self.entered_confirmation.set()
        self.release.wait(5)
        if self.confirm_error is not None:
            raise self.confirm_error
        return Receipt(status=1, tx_hash=tx_hash, block_number=1001, gas_used=50_000)

    def poll_receipt(self, tx_hash):
        self.polled.append(tx_hash)
        if not self.mined:
            return None
        return Receipt(status=1, tx_hash=tx_hash, block_number=1002, gas_used=50_000)


def snapshot(state, pending=None, block=1000):
    return AuctionSnapshot(state, pending or PendingBid.empty(), block)
