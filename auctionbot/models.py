"""
Auction domain model: value types for the AuctionPool hook state and the
pure checks that mirror the hook's bidding rules.

All amounts are integers in wei; fees are in hundredths of a basis point.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class InvalidBid(ValueError):
    pass


class InvalidFee(ValueError):
    pass


def _normalize_address(address) -> str | None:
    if address is None:
        return None
    address = str(address)
    if int(address, 16) == 0:
        return None
    return address


def same_address(a: str | None, b: str | None) -> bool:
    if a is None or b is None:
        return False
    return a.lower() == b.lower()


@dataclass(frozen=True)
class AuctionRules:
    """Hook constants that bound every bid and fee update."""

    min_bid_increment: int
    min_deposit_blocks: int
    activation_delay: int
    min_fee: int
    max_fee: int


@dataclass(frozen=True)
class AuctionState:
    current_manager: str | None
    rent_per_block: int
    manager_deposit: int
    last_rent_block: int
    current_fee: int
    total_rent_paid: int

    def __post_init__(self):
        object.__setattr__(self, "current_manager", _normalize_address(self.current_manager))

    @property
    def has_manager(self) -> bool:
        return self.current_manager is not None

    def is_managed_by(self, address: str) -> bool:
        return same_address(self.current_manager, address)

    def rent_owed(self, current_block: int) -> int:
        """Rent accrued since the last settlement, never negative."""
        return max(0, current_block - self.last_rent_block) * self.rent_per_block


@dataclass(frozen=True)
class PendingBid:
    bidder: str | None
    rent_per_block: int
    deposit: int
    activation_block: int
    timestamp: int

    def __post_init__(self):
        object.__setattr__(self, "bidder", _normalize_address(self.bidder))

    @classmethod
    def empty(cls) -> "PendingBid":
        return cls(None, 0, 0, 0, 0)

    @classmethod
    def accepted(
        cls,
        bidder: str,
        rent_per_block: int,
        deposit: int,
        bid_block: int,
        timestamp: int,
        activation_delay: int,
    ) -> "PendingBid":
        return cls(
            bidder=bidder,
            rent_per_block=rent_per_block,
            deposit=deposit,
            activation_block=bid_block + activation_delay,
            timestamp=timestamp,
        )

    @property
    def exists(self) -> bool:
        return self.bidder is not None

    def can_activate(self, current_block: int) -> bool:
        # Never before activation_block: no same-block displacement.
        return self.exists and current_block >= self.activation_block


@dataclass(frozen=True)
class BidHistory:
    """Append-only record of accepted bids, oldest first."""

    bids: tuple = ()

    def append(self, bid: PendingBid) -> "BidHistory":
        return BidHistory(self.bids + (bid,))

    @property
    def latest(self) -> PendingBid | None:
        return self.bids[-1] if self.bids else None

    def by_bidder(self, address: str) -> tuple:
        return tuple(b for b in self.bids if same_address(b.bidder, address))

    def __iter__(self):
        return iter(self.bids)

    def __len__(self):
        return len(self.bids)


@dataclass(frozen=True)
class AuctionSnapshot:
    """One consistent read of a pool's auction at a given block."""

    state: AuctionState
    pending: PendingBid
    block_number: int


@dataclass(frozen=True)
class ExpectedProfit:
    """Profit in wei per block; volatility is None when it is not known."""

    profit_per_block: int
    volatility: Decimal | None = Decimal(0)
    observed_at: float | None = None

    @classmethod
    def zero(cls, volatility: Decimal | None = Decimal(0)) -> "ExpectedProfit":
        return cls(0, volatility)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SubmitBid:
    amount: int
    reason: str = field(default="", compare=False)
    kind = "submit_bid"


@dataclass(frozen=True)
class SetFee:
    fee: int
    reason: str = field(default="", compare=False)
    kind = "set_fee"


@dataclass(frozen=True)
class NoAction:
    reason: str = field(default="", compare=False)
    kind = "no_action"


@dataclass(frozen=True)
class ClaimRent:
    reason: str = field(default="", compare=False)
    kind = "claim_rent"


@dataclass(frozen=True)
class WithdrawManagerFees:
    reason: str = field(default="", compare=False)
    kind = "withdraw_manager_fees"


# ---------------------------------------------------------------------------
# Invariant checks
# ---------------------------------------------------------------------------


def highest_rent(state: AuctionState, pending: PendingBid) -> int:
    return max(state.rent_per_block, pending.rent_per_block)


def min_acceptable_rent(state: AuctionState, pending: PendingBid, min_bid_increment: int) -> int:
    return highest_rent(state, pending) + min_bid_increment


def is_bid_acceptable(
    rent_per_block: int, state: AuctionState, pending: PendingBid, min_bid_increment: int
) -> bool:
    return rent_per_block >= min_acceptable_rent(state, pending, min_bid_increment)


def required_deposit(rent_per_block: int, min_deposit_blocks: int) -> int:
    return rent_per_block * min_deposit_blocks


def has_sufficient_deposit(rent_per_block: int, deposit: int, min_deposit_blocks: int) -> bool:
    return deposit >= required_deposit(rent_per_block, min_deposit_blocks)


def clamp_fee(fee: int, min_fee: int, max_fee: int) -> int:
    return max(min_fee, min(max_fee, fee))


def validate_bid(
    state: AuctionState,
    pending: PendingBid,
    rent_per_block: int,
    deposit: int,
    rules: AuctionRules,
) -> None:
    """Raise InvalidBid when the hook would reject this bid."""
    if rent_per_block <= 0:
        raise InvalidBid(f"rent per block must be positive, got {rent_per_block}")
    if not is_bid_acceptable(rent_per_block, state, pending, rules.min_bid_increment):
        raise InvalidBid(
            f"rent {rent_per_block} below minimum "
            f"{min_acceptable_rent(state, pending, rules.min_bid_increment)}"
        )
    if not has_sufficient_deposit(rent_per_block, deposit, rules.min_deposit_blocks):
        raise InvalidBid(
            f"deposit {deposit} below required "
            f"{required_deposit(rent_per_block, rules.min_deposit_blocks)}"
        )


def validate_fee(fee: int, rules: AuctionRules) -> None:
    if fee != clamp_fee(fee, rules.min_fee, rules.max_fee):
        raise InvalidFee(f"fee {fee} outside [{rules.min_fee}, {rules.max_fee}]")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def accept_bid(
    state: AuctionState,
    pending: PendingBid,
    history: BidHistory,
    bidder: str,
    rent_per_block: int,
    deposit: int,
    bid_block: int,
    timestamp: int,
    rules: AuctionRules,
) -> tuple[PendingBid, BidHistory]:
    """Accept a bid: it replaces any earlier pending bid and is appended to history."""
    validate_bid(state, pending, rent_per_block, deposit, rules)
    bid = PendingBid.accepted(
        bidder, rent_per_block, deposit, bid_block, timestamp, rules.activation_delay
    )
    return bid, history.append(bid)


def activate_pending(
    state: AuctionState, pending: PendingBid, current_block: int
) -> tuple[AuctionState, PendingBid]:
    """Promote the pending bid to manager once its activation block is reached.

    Outstanding rent of the outgoing manager is settled into total_rent_paid.
    """
    if not pending.can_activate(current_block):
        return state, pending

    new_state = replace(
        state,
        current_manager=pending.bidder,
        rent_per_block=pending.rent_per_block,
        manager_deposit=pending.deposit,
        last_rent_block=current_block,
        total_rent_paid=state.total_rent_paid + state.rent_owed(current_block),
    )
    return new_state, PendingBid.empty()


def apply_fee(state: AuctionState, fee: int, rules: AuctionRules) -> AuctionState:
    validate_fee(fee, rules)
    return replace(state, current_fee=fee)
