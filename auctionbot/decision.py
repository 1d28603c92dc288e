"""
Bid/fee decision engine.

decide() is a pure function of the observed auction, the profitability
estimate and the strategy parameters. Bidding is evaluated before fee
repricing, so one cycle never produces both.
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from auctionbot.models import (
    AuctionState,
    ExpectedProfit,
    NoAction,
    PendingBid,
    SetFee,
    SubmitBid,
    clamp_fee,
    highest_rent,
)


@dataclass(frozen=True)
class DecisionParams:
    bid_fraction: Decimal
    min_profit_threshold: int
    fee_volatility_multiplier: Decimal
    fee_update_threshold: int
    min_bid_increment: int
    max_fee: int
    min_fee: int
    base_fee: int


def affordable_rent(profit_per_block: int, bid_fraction: Decimal) -> int:
    """Share of the expected profit offered as rent, rounded down to whole wei."""
    rent = Decimal(profit_per_block) * bid_fraction
    return int(rent.to_integral_value(rounding=ROUND_DOWN))


def optimal_fee(volatility: Decimal, params: DecisionParams) -> int:
    raw = Decimal(params.base_fee) + Decimal(volatility) * params.fee_volatility_multiplier
    fee = int(raw.to_integral_value(rounding=ROUND_HALF_UP))
    return clamp_fee(fee, params.min_fee, params.max_fee)


def decide(
    state: AuctionState,
    pending: PendingBid,
    estimate: ExpectedProfit,
    params: DecisionParams,
    operator: str,
):
    """Return SubmitBid, SetFee or NoAction for one pool."""
    profit = estimate.profit_per_block
    to_beat = highest_rent(state, pending)
    offer = affordable_rent(profit, params.bid_fraction)
    required = to_beat + params.min_bid_increment

    if profit > params.min_profit_threshold and offer >= required:
        return SubmitBid(
            amount=offer,
            reason=f"profit={profit} offer={offer} required={required}",
        )

    if state.is_managed_by(operator):
        if estimate.volatility is None:
            return NoAction(reason=f"volatility unknown, fee stays at {state.current_fee}")
        fee = optimal_fee(estimate.volatility, params)
        diff = abs(fee - state.current_fee)
        if diff > params.fee_update_threshold:
            return SetFee(
                fee=fee,
                reason=f"fee {state.current_fee}->{fee} diff={diff} volatility={estimate.volatility}",
            )
        return NoAction(reason=f"fee diff {diff} within threshold {params.fee_update_threshold}")

    if profit <= params.min_profit_threshold:
        return NoAction(reason=f"profit {profit} <= threshold {params.min_profit_threshold}")
    return NoAction(reason=f"offer {offer} < required {required}")
