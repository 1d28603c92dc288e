import json
import os
import re
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

# Load auctionbot/.env into os.environ BEFORE reading any env-backed settings.
# override=False means Docker/shell env vars take precedence over .env.
load_dotenv(Path(__file__).resolve().parent / ".env", override=False)


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


def _env_optional_int(name: str) -> int | None:
    raw = os.environ.get(name, "").strip()
    return int(raw) if raw else None


# Chain connection
RPC_URL = os.environ.get("RPC_URL", "http://localhost:8545")
EXPECTED_CHAIN_ID = _env_optional_int("EXPECTED_CHAIN_ID")
OPERATOR_PRIVATE_KEY = os.environ.get("OPERATOR_PRIVATE_KEY", "")

# AuctionPool hook and Uniswap V4 StateView
HOOK_ADDRESS = os.environ.get("HOOK_ADDRESS", "")
# Empty means the fixed-profit estimator is used (Base: 0xA3c0c9b65baD0b08107Aa264b0f3dB444b867A71)
STATE_VIEW_ADDRESS = os.environ.get("STATE_VIEW_ADDRESS", "")

# Default pool key: currency0/currency1 are sorted when the key is built
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
CURRENCY0 = os.environ.get("CURRENCY0", ZERO_ADDRESS)
CURRENCY1 = os.environ.get("CURRENCY1", ZERO_ADDRESS)
POOL_FEE = int(os.environ.get("POOL_FEE", "3000"))
TICK_SPACING = int(os.environ.get("TICK_SPACING", "60"))

# Optional JSON list of {"name", "currency0", "currency1", "fee", "tick_spacing"}
POOLS = os.environ.get("POOLS", "")

# Bid strategy (amounts in wei)
BID_FRACTION = Decimal(os.environ.get("BID_FRACTION", "0.8"))
MIN_PROFIT_THRESHOLD = int(os.environ.get("MIN_PROFIT_THRESHOLD_WEI", str(10**15)))
EXPECTED_PROFIT = int(os.environ.get("EXPECTED_PROFIT_WEI", str(2 * 10**15)))

# Hook constants; overwritten from chain when SYNC_CONTRACT_CONSTANTS is on
MIN_BID_INCREMENT = int(os.environ.get("MIN_BID_INCREMENT_WEI", "100"))
MIN_DEPOSIT_BLOCKS = int(os.environ.get("MIN_DEPOSIT_BLOCKS", "100"))
ACTIVATION_DELAY = int(os.environ.get("ACTIVATION_DELAY_BLOCKS", "5"))
SYNC_CONTRACT_CONSTANTS = _env_bool("SYNC_CONTRACT_CONSTANTS", "true")

# Fee strategy, in hundredths of a basis point (3000 = 0.30%)
BASE_FEE = int(os.environ.get("BASE_FEE", "3000"))
MIN_FEE = int(os.environ.get("MIN_FEE", "100"))
MAX_FEE = int(os.environ.get("MAX_FEE", "10000"))
FEE_VOLATILITY_MULTIPLIER = Decimal(os.environ.get("FEE_VOLATILITY_MULTIPLIER", "10000"))
FEE_UPDATE_THRESHOLD = int(os.environ.get("FEE_UPDATE_THRESHOLD", "100"))

# Estimator
ESTIMATE_MAX_AGE = float(os.environ.get("ESTIMATE_MAX_AGE", "60"))
VOLATILITY_WINDOW = int(os.environ.get("VOLATILITY_WINDOW", "20"))
FIXED_VOLATILITY = Decimal(os.environ.get("FIXED_VOLATILITY", "0"))

# Loop and transactions
POLL_INTERVAL = float(os.environ.get("POLL_INTERVAL", "12"))  # ~ one L1 block
GAS_PRICE_MULTIPLIER = Decimal(os.environ.get("GAS_PRICE_MULTIPLIER", "1.2"))
GAS_LIMIT_MULTIPLIER = Decimal(os.environ.get("GAS_LIMIT_MULTIPLIER", "1.2"))
CONFIRMATION_TIMEOUT = float(os.environ.get("CONFIRMATION_TIMEOUT", "120"))
RECEIPT_POLL_INTERVAL = float(os.environ.get("RECEIPT_POLL_INTERVAL", "2"))
ABANDON_CONFIRMATION_ON_STOP = _env_bool("ABANDON_CONFIRMATION_ON_STOP", "true")
DRY_RUN = _env_bool("DRY_RUN", "false")

# Logging
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_DIR = os.environ.get("LOG_DIR", str(Path(__file__).resolve().parent))

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def build_pool_key(currency0=None, currency1=None, fee=None, tick_spacing=None):
    from eth_utils.address import to_checksum_address

    currency0 = to_checksum_address(currency0 or CURRENCY0)
    currency1 = to_checksum_address(currency1 or CURRENCY1)
    if int(currency0, 16) > int(currency1, 16):
        currency0, currency1 = currency1, currency0

    return {
        "currency0": currency0,
        "currency1": currency1,
        "fee": POOL_FEE if fee is None else int(fee),
        "tick_spacing": TICK_SPACING if tick_spacing is None else int(tick_spacing),
        "hooks": to_checksum_address(HOOK_ADDRESS),
    }


def pool_key_tuple(pool_key: dict) -> tuple:
    """PoolKey in the (currency0, currency1, fee, tickSpacing, hooks) ABI order."""
    return (
        pool_key["currency0"],
        pool_key["currency1"],
        pool_key["fee"],
        pool_key["tick_spacing"],
        pool_key["hooks"],
    )


def compute_pool_id(pool_key: dict) -> bytes:
    from eth_abi.abi import encode
    from eth_utils.crypto import keccak

    pool_key_encoded = encode(
        ["address", "address", "uint24", "int24", "address"],
        list(pool_key_tuple(pool_key)),
    )
    return keccak(pool_key_encoded)


def configured_pools() -> list[dict]:
    """Return [{"name", "pool_key", "pool_id"}] for every monitored pool."""
    if POOLS.strip():
        entries = json.loads(POOLS)
    else:
        entries = [{"name": "default"}]

    pools = []
    for i, entry in enumerate(entries):
        pool_key = build_pool_key(
            entry.get("currency0"),
            entry.get("currency1"),
            entry.get("fee"),
            entry.get("tick_spacing"),
        )
        pools.append(
            {
                "name": entry.get("name", f"pool-{i}"),
                "pool_key": pool_key,
                "pool_id": compute_pool_id(pool_key),
            }
        )
    return pools


def decision_params():
    from auctionbot.decision import DecisionParams

    return DecisionParams(
        bid_fraction=BID_FRACTION,
        min_profit_threshold=MIN_PROFIT_THRESHOLD,
        fee_volatility_multiplier=FEE_VOLATILITY_MULTIPLIER,
        fee_update_threshold=FEE_UPDATE_THRESHOLD,
        min_bid_increment=MIN_BID_INCREMENT,
        max_fee=MAX_FEE,
        min_fee=MIN_FEE,
        base_fee=BASE_FEE,
    )


def auction_rules():
    from auctionbot.models import AuctionRules

    return AuctionRules(
        min_bid_increment=MIN_BID_INCREMENT,
        min_deposit_blocks=MIN_DEPOSIT_BLOCKS,
        activation_delay=ACTIVATION_DELAY,
        min_fee=MIN_FEE,
        max_fee=MAX_FEE,
    )


def apply_contract_rules(rules) -> None:
    """Overwrite hook-derived constants with values read from the contract."""
    global MIN_BID_INCREMENT, MIN_DEPOSIT_BLOCKS, ACTIVATION_DELAY, MAX_FEE

    MIN_BID_INCREMENT = rules.min_bid_increment
    MIN_DEPOSIT_BLOCKS = rules.min_deposit_blocks
    ACTIVATION_DELAY = rules.activation_delay
    MAX_FEE = rules.max_fee


def validate() -> None:
    """Raise ValueError when the loaded settings cannot drive the agent."""
    if not _ADDRESS_RE.match(HOOK_ADDRESS):
        raise ValueError(f"HOOK_ADDRESS must be a 20-byte hex address, got {HOOK_ADDRESS!r}")
    if not (Decimal(0) < BID_FRACTION <= Decimal(1)):
        raise ValueError(f"BID_FRACTION must be in (0, 1], got {BID_FRACTION}")
    if not (MIN_FEE <= BASE_FEE <= MAX_FEE):
        raise ValueError(
            f"fees must satisfy MIN_FEE <= BASE_FEE <= MAX_FEE, got {MIN_FEE}/{BASE_FEE}/{MAX_FEE}"
        )
    for name, value in (
        ("MIN_PROFIT_THRESHOLD_WEI", MIN_PROFIT_THRESHOLD),
        ("MIN_BID_INCREMENT_WEI", MIN_BID_INCREMENT),
        ("FEE_UPDATE_THRESHOLD", FEE_UPDATE_THRESHOLD),
    ):
        if value < 0:
            raise ValueError(f"{name} must be non-negative, got {value}")
    if MIN_DEPOSIT_BLOCKS <= 0:
        raise ValueError(f"MIN_DEPOSIT_BLOCKS must be positive, got {MIN_DEPOSIT_BLOCKS}")
    if POLL_INTERVAL <= 0:
        raise ValueError(f"POLL_INTERVAL must be positive, got {POLL_INTERVAL}")
