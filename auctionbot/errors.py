"""
Error taxonomy for the auction agent.

Read failures and submission failures are transient and retried on the next
tick; build failures and reverts are reported and the next cycle re-evaluates
from fresh chain state.
"""


class AuctionBotError(Exception):
    """Base class for every error raised by the agent."""


class ChainReadError(AuctionBotError):
    """Transport or decoding failure while reading chain state."""


class EstimationError(AuctionBotError):
    """The profitability estimator could not produce an estimate."""


class StaleEstimate(EstimationError):
    """The estimate is older than the configured maximum age."""


class BuildError(AuctionBotError):
    """The transaction could not be built from the given parameters."""


class SubmissionError(AuctionBotError):
    """Signing or broadcasting failed; no chain state was mutated."""


class ExecutionReverted(AuctionBotError):
    """The transaction was mined with a failed receipt status."""

    def __init__(self, receipt):
        super().__init__(f"transaction reverted: {receipt.tx_hash}")
        self.receipt = receipt


class ConfirmationTimeout(AuctionBotError):
    """No receipt arrived within the confirmation timeout."""


class ConfirmationAbandoned(AuctionBotError):
    """A stop was requested while waiting for a receipt."""
