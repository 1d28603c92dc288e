"""
AuctionAgent: autonomous operator for AuctionPool management rights.

Wires the state reader, estimator, decision engine and executor for every
configured pool, then polls until SIGINT/SIGTERM.
"""

import argparse
import logging
import os
import signal
import sys
import threading

from web3 import Web3

from auctionbot import config
from auctionbot.decision import decide
from auctionbot.errors import AuctionBotError, ChainReadError, ExecutionReverted
from auctionbot.estimator import (
    FixedProfitEstimator,
    PoolVolatilityEstimator,
    guarded_estimate,
)
from auctionbot.executor import ActionExecutor, OutcomeKind
from auctionbot.models import ClaimRent, WithdrawManagerFees
from auctionbot.scheduler import AuctionScheduler, DecisionJournal, PoolWorker
from auctionbot.state_reader import AuctionStateReader, PoolPriceReader

logger = logging.getLogger("auctionbot")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def setup_logging(log_dir: str = config.LOG_DIR, level: str = config.LOG_LEVEL) -> str:
    """Console + decisions.log handlers on the `auctionbot` logger.

    Returns the decisions directory, where decisions.jsonl is also written.
    """
    decisions_dir = os.path.join(log_dir, "decisions")
    os.makedirs(decisions_dir, exist_ok=True)

    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(getattr(logging, level.upper(), logging.INFO))
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(console)

    fh = logging.FileHandler(os.path.join(decisions_dir, "decisions.log"))
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(fh)
    return decisions_dir


class AuctionAgent:
    """Autonomous bidder and fee manager for AuctionPool hooks."""

    def __init__(self, private_key: str, w3: Web3 | None = None):
        config.validate()

        if w3 is None:
            logger.info("Connecting to RPC: %s", config.RPC_URL)
            w3 = Web3(Web3.HTTPProvider(config.RPC_URL))
            if not w3.is_connected():
                raise ConnectionError(f"Cannot connect to RPC at {config.RPC_URL}")
        self.w3 = w3

        chain_id = self.w3.eth.chain_id
        logger.info("Connected. Chain ID: %d", chain_id)
        if config.EXPECTED_CHAIN_ID is not None and chain_id != config.EXPECTED_CHAIN_ID:
            raise RuntimeError(
                f"Connected to chain {chain_id}, expected {config.EXPECTED_CHAIN_ID}"
            )

        self.account = self.w3.eth.account.from_key(private_key)
        logger.info("Operator address: %s", self.account.address)

        self.reader = AuctionStateReader(self.w3, config)
        if config.SYNC_CONTRACT_CONSTANTS:
            rules = self.reader.get_rules()
            config.apply_contract_rules(rules)
            logger.info(
                "Hook constants: min_bid_increment=%d min_deposit_blocks=%d "
                "activation_delay=%d max_fee=%d",
                rules.min_bid_increment,
                rules.min_deposit_blocks,
                rules.activation_delay,
                rules.max_fee,
            )
            config.validate()
        self.rules = config.auction_rules()
        self.params = config.decision_params()

        self.pools = config.configured_pools()
        self.estimator = self._build_estimator()
        send_lock = threading.Lock()
        self.executors = {
            pool["name"]: ActionExecutor(
                self.w3, self.account, config, pool["pool_key"], self.rules, send_lock
            )
            for pool in self.pools
        }
        self.stop_event = threading.Event()

        logger.info(
            "Strategy: bid_fraction=%s min_profit=%d wei base_fee=%d fee_range=[%d, %d]%s",
            self.params.bid_fraction,
            self.params.min_profit_threshold,
            self.params.base_fee,
            self.params.min_fee,
            self.params.max_fee,
            " (DRY RUN)" if config.DRY_RUN else "",
        )

    def _build_estimator(self):
        if config.STATE_VIEW_ADDRESS:
            prices = PoolPriceReader(self.w3, config)
            return PoolVolatilityEstimator(
                prices.get_price, config.EXPECTED_PROFIT, window=config.VOLATILITY_WINDOW
            )
        return FixedProfitEstimator(config.EXPECTED_PROFIT, config.FIXED_VOLATILITY)

    def pool(self, name: str | None) -> dict:
        if name is None:
            return self.pools[0]
        for pool in self.pools:
            if pool["name"] == name:
                return pool
        raise KeyError(f"unknown pool {name!r}")

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def build_scheduler(self, journal: DecisionJournal | None = None) -> AuctionScheduler:
        workers = [
            PoolWorker(
                pool,
                self.reader,
                self.estimator,
                self.executors[pool["name"]],
                self.params,
                self.account.address,
                self.stop_event,
                abandon_on_stop=config.ABANDON_CONFIRMATION_ON_STOP,
                estimate_max_age=config.ESTIMATE_MAX_AGE,
                journal=journal,
            )
            for pool in self.pools
        ]
        return AuctionScheduler(workers, config.POLL_INTERVAL, self.stop_event)

    def run(self, journal: DecisionJournal | None = None) -> None:
        scheduler = self.build_scheduler(journal)

        def _stop(signum, frame):
            logger.info("Received signal %d, stopping after current cycle...", signum)
            self.stop_event.set()

        signal.signal(signal.SIGINT, _stop)
        signal.signal(signal.SIGTERM, _stop)

        logger.info(
            "Agent running on %d pool(s). Checking every %.0fs. Press Ctrl+C to stop.",
            len(self.pools),
            config.POLL_INTERVAL,
        )
        scheduler.run_forever()
        logger.info("Agent stopped.")

    # ------------------------------------------------------------------
    # One-shot commands
    # ------------------------------------------------------------------

    def status(self, pool_name: str | None = None) -> dict:
        pool = self.pool(pool_name)
        snapshot = self.reader.fetch(pool["pool_id"])
        estimate = guarded_estimate(
            self.estimator, pool["pool_id"], snapshot.state, max_age=config.ESTIMATE_MAX_AGE
        )
        action = decide(
            snapshot.state, snapshot.pending, estimate, self.params, self.account.address
        )
        return {
            "pool": pool["name"],
            "pool_id": Web3.to_hex(pool["pool_id"]),
            "block": snapshot.block_number,
            "manager": snapshot.state.current_manager,
            "rent_per_block": snapshot.state.rent_per_block,
            "manager_deposit": snapshot.state.manager_deposit,
            "rent_owed": snapshot.state.rent_owed(snapshot.block_number),
            "current_fee": snapshot.state.current_fee,
            "total_rent_paid": snapshot.state.total_rent_paid,
            "pending_bidder": snapshot.pending.bidder,
            "pending_rent": snapshot.pending.rent_per_block,
            "pending_activation_block": snapshot.pending.activation_block,
            "profit_per_block": estimate.profit_per_block,
            "volatility": str(estimate.volatility),
            "decision": action.kind,
            "reason": action.reason,
        }

    def manager_operation(self, action, pool_name: str | None = None) -> int:
        """Execute claim-rent / withdraw-fees synchronously; returns an exit code."""
        executor = self.executors[self.pool(pool_name)["name"]]
        outcome = executor.execute(action)
        if outcome.kind is OutcomeKind.DRY_RUN:
            return 0
        if outcome.kind is not OutcomeKind.SUBMITTED:
            return 1
        try:
            executor.await_confirmation(outcome.tx_hash)
        except ExecutionReverted:
            return 1
        except AuctionBotError as e:
            logger.error("%s not confirmed: %s", action.kind, e)
            return 1
        return 0


# ======================================================================
# Entry point
# ======================================================================


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="AuctionPool management-rights operator")
    parser.add_argument(
        "--private-key",
        default=config.OPERATOR_PRIVATE_KEY,
        help="Operator private key (default: $OPERATOR_PRIVATE_KEY)",
    )
    parser.add_argument("--log-level", default=config.LOG_LEVEL)
    parser.add_argument("--log-dir", default=config.LOG_DIR)
    parser.add_argument("--pool", default=None, help="Pool name for one-shot commands")
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=["run", "status", "claim-rent", "withdraw-fees"],
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    decisions_dir = setup_logging(args.log_dir, args.log_level)

    if not args.private_key:
        logger.error("OPERATOR_PRIVATE_KEY environment variable or --private-key required")
        return 2

    try:
        agent = AuctionAgent(args.private_key)
    except (ValueError, ConnectionError, RuntimeError, ChainReadError) as e:
        logger.error("Startup failed: %s", e)
        return 1

    if args.command == "status":
        try:
            status = agent.status(args.pool)
        except (ChainReadError, KeyError) as e:
            logger.error("Status read failed: %s", e)
            return 1
        for key, value in status.items():
            print(f"{key:>26}: {value}")
        return 0
    if args.command == "claim-rent":
        return agent.manager_operation(ClaimRent(reason="cli"), args.pool)
    if args.command == "withdraw-fees":
        return agent.manager_operation(WithdrawManagerFees(reason="cli"), args.pool)

    journal = DecisionJournal(os.path.join(decisions_dir, "decisions.jsonl"))
    agent.run(journal)
    return 0


if __name__ == "__main__":
    sys.exit(main())
