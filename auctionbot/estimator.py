"""
Profitability estimators consumed by the decision engine.

An estimator returns an ExpectedProfit (wei per block + volatility) for a
pool. Estimates are treated as opaque and possibly wrong: guarded_estimate()
turns any failure into a zero-profit estimate so the loop keeps running.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from decimal import Decimal

import numpy as np

from auctionbot.errors import EstimationError, StaleEstimate
from auctionbot.models import AuctionState, ExpectedProfit

logger = logging.getLogger(__name__)


class ProfitabilityEstimator(ABC):
    @abstractmethod
    def estimate(self, pool_id: bytes, state: AuctionState) -> ExpectedProfit:
        """Expected profit per block and current volatility for one pool."""


class FixedProfitEstimator(ProfitabilityEstimator):
    """Constant profit and volatility, for demos and dry runs."""

    def __init__(self, profit_per_block: int, volatility: Decimal = Decimal(0)):
        self.profit_per_block = profit_per_block
        self.volatility = Decimal(volatility)

    def estimate(self, pool_id, state):
        return ExpectedProfit(self.profit_per_block, self.volatility, observed_at=time.time())


class PoolVolatilityEstimator(ProfitabilityEstimator):
    """Fixed profit with volatility from a rolling window of pool prices.

    Volatility is the standard deviation of log returns over the last
    `window` distinct price readings of each pool.
    """

    def __init__(self, price_source, profit_per_block: int, window: int = 20):
        self.price_source = price_source
        self.profit_per_block = profit_per_block
        self.window = window
        self._prices: dict[bytes, deque] = {}

    def record_price(self, pool_id: bytes, price: float) -> None:
        history = self._prices.setdefault(bytes(pool_id), deque(maxlen=self.window + 1))
        if history and history[-1] == price:
            return
        history.append(price)

    def volatility(self, pool_id: bytes) -> Decimal:
        prices = np.array(self._prices.get(bytes(pool_id), ()), dtype=np.float64)
        if prices.size < 2 or np.any(prices <= 0):
            return Decimal(0)
        returns = np.diff(np.log(prices))
        vol = float(np.std(returns))
        if not np.isfinite(vol):
            return Decimal(0)
        return Decimal(str(vol))

    def estimate(self, pool_id, state):
        try:
            price = float(self.price_source(pool_id))
        except Exception as e:
            raise EstimationError(f"price source failed: {e}") from e
        self.record_price(pool_id, price)
        return ExpectedProfit(
            self.profit_per_block, self.volatility(pool_id), observed_at=time.time()
        )


def check_fresh(estimate: ExpectedProfit, max_age: float | None, now: float | None = None) -> None:
    if max_age is None or estimate.observed_at is None:
        return
    age = (time.time() if now is None else now) - estimate.observed_at
    if age > max_age:
        raise StaleEstimate(f"Stale estimate ({age:.1f}s old, max {max_age:.1f}s)")


def guarded_estimate(
    estimator: ProfitabilityEstimator,
    pool_id: bytes,
    state: AuctionState,
    max_age: float | None = None,
    now: float | None = None,
    fallback_volatility: Decimal | None = None,
) -> ExpectedProfit:
    """Call the estimator; failures yield zero profit, stale estimates keep volatility.

    On failure the volatility is `fallback_volatility`, normally the last good
    reading for the pool. None leaves the fee untouched.
    """
    try:
        estimate = estimator.estimate(pool_id, state)
    except EstimationError as e:
        logger.warning("Estimator failed, treating profit as zero: %s", e)
        return ExpectedProfit.zero(fallback_volatility)
    except Exception as e:
        logger.warning("Estimator crashed, treating profit as zero: %s", e, exc_info=True)
        return ExpectedProfit.zero(fallback_volatility)

    try:
        check_fresh(estimate, max_age, now)
    except StaleEstimate as e:
        logger.warning("%s, treating profit as zero", e)
        return ExpectedProfit.zero(estimate.volatility)
    return estimate
