"""
AuctionPool hook transactions: submit bids, set the swap fee, claim rent and
withdraw manager fees. Each call is validated, gas-estimated, signed with the
operator key and broadcast; confirmation is awaited separately.
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from auctionbot.errors import (
    BuildError,
    ChainReadError,
    ConfirmationAbandoned,
    ConfirmationTimeout,
    ExecutionReverted,
    SubmissionError,
)
from auctionbot.models import (
    ClaimRent,
    InvalidBid,
    InvalidFee,
    NoAction,
    SetFee,
    SubmitBid,
    WithdrawManagerFees,
    required_deposit,
    validate_bid,
    validate_fee,
)

logger = logging.getLogger(__name__)

ABI_DIR = os.path.join(os.path.dirname(__file__), "abi")


def _load_abi(filename: str) -> list:
    with open(os.path.join(ABI_DIR, filename)) as f:
        return json.load(f)


class OutcomeKind(Enum):
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"
    SUBMITTED = "submitted"
    BUILD_FAILED = "build_failed"
    SUBMISSION_FAILED = "submission_failed"


@dataclass(frozen=True)
class Receipt:
    status: int
    tx_hash: str
    block_number: int | None = None
    gas_used: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class ActionOutcome:
    kind: OutcomeKind
    action: object
    tx_hash: str | None = None
    error: Exception | None = None


class ActionExecutor:
    """Builds, signs and sends hook transactions for one pool."""

    def __init__(self, w3: Web3, account, config, pool_key: dict, rules, send_lock=None):
        self.w3 = w3
        self.account = account
        self.config = config
        self.rules = rules
        self.pool_key = config.pool_key_tuple(pool_key)
        self.dry_run = config.DRY_RUN
        self._chain_id = None
        # Executors signing with the same account must share one lock.
        self.send_lock = threading.Lock() if send_lock is None else send_lock

        self.hook = w3.eth.contract(
            address=Web3.to_checksum_address(config.HOOK_ADDRESS),
            abi=_load_abi("auction_pool_hook.json"),
        )

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    def execute(self, action, snapshot=None) -> ActionOutcome:
        """Broadcast the transaction for `action`; blocks until sent or failed.

        With a snapshot, bids are checked against the observed auction before
        any gas is spent.
        """
        if isinstance(action, NoAction):
            return ActionOutcome(OutcomeKind.SKIPPED, action)

        try:
            self._prevalidate(action, snapshot)
            fn, value = self._build_call(action)
            gas_limit = self._estimate_gas(fn, value)
            if self.dry_run:
                logger.info(
                    "DRY RUN %s value=%d gas=%d, not broadcasting", action.kind, value, gas_limit
                )
                return ActionOutcome(OutcomeKind.DRY_RUN, action)
            tx_hash = self._sign_and_send(fn, value, gas_limit)
        except BuildError as e:
            logger.error("Build failed for %s: %s", action.kind, e)
            return ActionOutcome(OutcomeKind.BUILD_FAILED, action, error=e)
        except SubmissionError as e:
            logger.error("Submission failed for %s: %s", action.kind, e)
            return ActionOutcome(OutcomeKind.SUBMISSION_FAILED, action, error=e)

        logger.info("%s submitted tx=%s", action.kind, tx_hash)
        return ActionOutcome(OutcomeKind.SUBMITTED, action, tx_hash=tx_hash)

    def _prevalidate(self, action, snapshot) -> None:
        try:
            if isinstance(action, SubmitBid):
                if snapshot is not None:
                    validate_bid(
                        snapshot.state,
                        snapshot.pending,
                        action.amount,
                        self.bid_deposit(action.amount),
                        self.rules,
                    )
                elif action.amount <= 0:
                    raise InvalidBid(f"rent per block must be positive, got {action.amount}")
            elif isinstance(action, SetFee):
                validate_fee(action.fee, self.rules)
        except (InvalidBid, InvalidFee) as e:
            raise BuildError(str(e)) from e

    def bid_deposit(self, rent_per_block: int) -> int:
        return required_deposit(rent_per_block, self.rules.min_deposit_blocks)

    def _build_call(self, action):
        """Return (contract function, msg.value) for an action."""
        fns = self.hook.functions
        try:
            if isinstance(action, SubmitBid):
                return fns.submitBid(self.pool_key, action.amount), self.bid_deposit(action.amount)
            if isinstance(action, SetFee):
                return fns.setSwapFee(self.pool_key, action.fee), 0
            if isinstance(action, ClaimRent):
                return fns.claimRent(self.pool_key), 0
            if isinstance(action, WithdrawManagerFees):
                return fns.withdrawManagerFees(self.pool_key), 0
        except Exception as e:
            raise BuildError(f"cannot encode {action.kind}: {e}") from e
        raise BuildError(f"unsupported action: {action!r}")

    def _estimate_gas(self, fn, value: int) -> int:
        try:
            estimated = fn.estimate_gas({"from": self.account.address, "value": value})
        except ContractLogicError as e:
            raise BuildError(f"call would revert: {e}") from e
        except Exception as e:
            raise SubmissionError(f"gas estimation failed: {e}") from e
        return int(Decimal(estimated) * self.config.GAS_LIMIT_MULTIPLIER)

    def _sign_and_send(self, fn, value: int, gas_limit: int) -> str:
        with self.send_lock:
            return self._send_locked(fn, value, gas_limit)

    def _send_locked(self, fn, value: int, gas_limit: int) -> str:
        sender = self.account.address
        try:
            nonce = self.w3.eth.get_transaction_count(sender, "pending")
            gas_price = int(Decimal(self.w3.eth.gas_price) * self.config.GAS_PRICE_MULTIPLIER)
            chain_id = self.chain_id
        except Exception as e:
            raise SubmissionError(f"cannot prepare transaction: {e}") from e

        try:
            tx = fn.build_transaction(
                {
                    "from": sender,
                    "nonce": nonce,
                    "value": value,
                    "gas": gas_limit,
                    "gasPrice": gas_price,
                    "chainId": chain_id,
                }
            )
        except Exception as e:
            raise BuildError(f"cannot build transaction: {e}") from e

        try:
            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            raise SubmissionError(f"cannot sign or send transaction: {e}") from e

        logger.debug(
            "tx nonce=%d gas=%d gasPrice=%d value=%d", nonce, gas_limit, gas_price, value
        )
        return Web3.to_hex(tx_hash)

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self.w3.eth.chain_id
        return self._chain_id

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    def await_confirmation(self, tx_hash: str, stop_event=None) -> Receipt:
        """Wait for the receipt of `tx_hash`.

        If `stop_event` is given and gets set, the wait is abandoned between
        polls. The broadcast transaction itself is left alone.
        """
        deadline = time.monotonic() + self.config.CONFIRMATION_TIMEOUT
        poll = self.config.RECEIPT_POLL_INTERVAL

        while True:
            if stop_event is not None and stop_event.is_set():
                raise ConfirmationAbandoned(f"stopped while waiting for {tx_hash}")
            try:
                raw = self.w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=poll, poll_latency=min(poll, 0.5)
                )
                break
            except TimeExhausted:
                if time.monotonic() >= deadline:
                    raise ConfirmationTimeout(
                        f"no receipt for {tx_hash} after {self.config.CONFIRMATION_TIMEOUT}s"
                    )
            except Exception as e:
                raise ChainReadError(f"receipt for {tx_hash}: {e}") from e

        return self._settle(tx_hash, raw)

    def poll_receipt(self, tx_hash: str) -> Receipt | None:
        """Single receipt lookup; None while the transaction is unmined."""
        try:
            raw = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise ChainReadError(f"receipt for {tx_hash}: {e}") from e
        if raw is None:
            return None
        return self._settle(tx_hash, raw)

    def _settle(self, tx_hash: str, raw) -> Receipt:
        receipt = Receipt(
            status=int(raw["status"]),
            tx_hash=tx_hash,
            block_number=raw.get("blockNumber"),
            gas_used=raw.get("gasUsed"),
        )
        if not receipt.succeeded:
            logger.error("Transaction reverted: tx=%s", tx_hash)
            raise ExecutionReverted(receipt)

        logger.info(
            "Transaction confirmed: tx=%s block=%s gas_used=%s",
            tx_hash,
            receipt.block_number,
            receipt.gas_used,
        )
        return receipt
