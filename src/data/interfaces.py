"""Abstract price feed interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class PriceFeed:
    """Price of one pool's underlying asset."""

    price: int  # USD price at 18dp
    decimals: int  # token decimals of the underlying asset


class PriceFeedUnavailable(LookupError):
    """No price feed is configured, or every source failed, for a pool."""


class PriceFeedProvider(ABC):
    """Source of per-pool price feeds consumed by the ledger."""

    @abstractmethod
    def price_feed(self, pool_id: str) -> PriceFeed:
        """Get the current price feed for *pool_id*.

        Raises:
            PriceFeedUnavailable: if no feed is configured for the pool.
        """
