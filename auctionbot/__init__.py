"""AuctionPool operator: bids for pool-management rights and manages the swap fee."""

__version__ = "0.1.0"
