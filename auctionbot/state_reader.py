"""
Reads AuctionPool hook state and Uniswap V4 pool prices.
"""

import json
import logging
import os
from decimal import Decimal, getcontext

from web3 import Web3

from auctionbot.errors import ChainReadError
from auctionbot.models import (
    AuctionRules,
    AuctionSnapshot,
    AuctionState,
    BidHistory,
    PendingBid,
)

getcontext().prec = 40

logger = logging.getLogger(__name__)

ABI_DIR = os.path.join(os.path.dirname(__file__), "abi")


def _load_abi(filename: str) -> list:
    with open(os.path.join(ABI_DIR, filename)) as f:
        return json.load(f)


def _pool_id_bytes(pool_id) -> bytes:
    if isinstance(pool_id, str):
        return bytes.fromhex(pool_id[2:] if pool_id.startswith("0x") else pool_id)
    return bytes(pool_id)


class AuctionStateReader:
    """Reads auction and pending-bid state via the AuctionPool hook contract."""

    def __init__(self, w3: Web3, config):
        self.w3 = w3
        self.config = config
        self.hook = w3.eth.contract(
            address=Web3.to_checksum_address(config.HOOK_ADDRESS),
            abi=_load_abi("auction_pool_hook.json"),
        )

    def get_block_number(self) -> int:
        try:
            return self.w3.eth.block_number
        except Exception as e:
            logger.error("Failed to get block number: %s", e)
            raise ChainReadError(f"block number: {e}") from e

    def get_auction_state(self, pool_id, block_identifier="latest") -> AuctionState:
        """poolAuctions(poolId): manager, rent, deposit, lastRentBlock, fee, totalRentPaid."""
        try:
            result = self.hook.functions.poolAuctions(_pool_id_bytes(pool_id)).call(
                block_identifier=block_identifier
            )
            return AuctionState(
                current_manager=result[0],
                rent_per_block=int(result[1]),
                manager_deposit=int(result[2]),
                last_rent_block=int(result[3]),
                current_fee=int(result[4]),
                total_rent_paid=int(result[5]),
            )
        except Exception as e:
            logger.error("Failed to get auction state: %s", e)
            raise ChainReadError(f"poolAuctions: {e}") from e

    def get_pending_bid(self, pool_id, block_identifier="latest") -> PendingBid:
        """nextBid(poolId); an all-zero record means no pending bid."""
        try:
            result = self.hook.functions.nextBid(_pool_id_bytes(pool_id)).call(
                block_identifier=block_identifier
            )
            return self._decode_bid(result)
        except Exception as e:
            logger.error("Failed to get pending bid: %s", e)
            raise ChainReadError(f"nextBid: {e}") from e

    def fetch(self, pool_id) -> AuctionSnapshot:
        """Fresh snapshot of auction + pending bid, both read at the same block."""
        block_number = self.get_block_number()
        state = self.get_auction_state(pool_id, block_identifier=block_number)
        pending = self.get_pending_bid(pool_id, block_identifier=block_number)
        return AuctionSnapshot(state=state, pending=pending, block_number=block_number)

    def get_bid_history(self, pool_id) -> BidHistory:
        try:
            result = self.hook.functions.getBidHistory(_pool_id_bytes(pool_id)).call()
            history = BidHistory()
            for raw in result:
                history = history.append(self._decode_bid(raw))
            return history
        except Exception as e:
            logger.error("Failed to get bid history: %s", e)
            raise ChainReadError(f"getBidHistory: {e}") from e

    def get_rules(self) -> AuctionRules:
        """Public hook constants; the hook has no MIN_FEE so it comes from config."""
        try:
            fns = self.hook.functions
            return AuctionRules(
                min_bid_increment=int(fns.MIN_BID_INCREMENT().call()),
                min_deposit_blocks=int(fns.MIN_DEPOSIT_BLOCKS().call()),
                activation_delay=int(fns.ACTIVATION_DELAY().call()),
                min_fee=self.config.MIN_FEE,
                max_fee=int(fns.MAX_FEE().call()),
            )
        except Exception as e:
            logger.error("Failed to read hook constants: %s", e)
            raise ChainReadError(f"hook constants: {e}") from e

    def get_manager_fees(self, manager: str, pool_id) -> int:
        try:
            return int(
                self.hook.functions.managerFees(
                    Web3.to_checksum_address(manager), _pool_id_bytes(pool_id)
                ).call()
            )
        except Exception as e:
            logger.error("Failed to get manager fees: %s", e)
            raise ChainReadError(f"managerFees: {e}") from e

    def get_pending_rent(self, pool_id, lp: str) -> int:
        try:
            return int(
                self.hook.functions.getPendingRent(
                    _pool_id_bytes(pool_id), Web3.to_checksum_address(lp)
                ).call()
            )
        except Exception as e:
            logger.error("Failed to get pending rent: %s", e)
            raise ChainReadError(f"getPendingRent: {e}") from e

    @staticmethod
    def _decode_bid(raw) -> PendingBid:
        return PendingBid(
            bidder=raw[0],
            rent_per_block=int(raw[1]),
            deposit=int(raw[2]),
            activation_block=int(raw[3]),
            timestamp=int(raw[4]),
        )


class PoolPriceReader:
    """Reads pool spot price via the Uniswap V4 StateView contract."""

    def __init__(self, w3: Web3, config):
        self.w3 = w3
        self.state_view = w3.eth.contract(
            address=Web3.to_checksum_address(config.STATE_VIEW_ADDRESS),
            abi=_load_abi("state_view.json"),
        )

    def get_slot0(self, pool_id) -> dict:
        """Get pool slot0 data: sqrtPriceX96, tick, protocolFee, lpFee."""
        try:
            result = self.state_view.functions.getSlot0(_pool_id_bytes(pool_id)).call()
            return {
                "sqrtPriceX96": result[0],
                "tick": result[1],
                "protocolFee": result[2],
                "lpFee": result[3],
            }
        except Exception as e:
            logger.error("Failed to get slot0: %s", e)
            raise ChainReadError(f"getSlot0: {e}") from e

    def get_price(self, pool_id) -> float:
        """Raw currency1/currency0 price, (sqrtPriceX96 / 2^96)^2.

        Not decimal-adjusted; ratios between readings are what the estimator uses.
        """
        slot0 = self.get_slot0(pool_id)
        sqrt_price = Decimal(slot0["sqrtPriceX96"])
        q96 = Decimal(2**96)
        return float((sqrt_price / q96) ** 2)
