"""Factory for creating the appropriate PriceFeedProvider."""

from __future__ import annotations

import logging
import os

from src.data.interfaces import PriceFeedProvider
from src.data.onchain_provider import OnChainPriceFeedProvider
from src.data.static_params import StaticPriceFeedProvider

logger = logging.getLogger(__name__)


def create_provider(
    use_onchain: bool = False,
    rpc_url: str | None = None,
    cache_ttl: float = 60.0,
) -> PriceFeedProvider:
    """Create a price feed provider, selecting static or on-chain.

    Parameters
    ----------
    use_onchain : bool
        If True, attempt to create an ``OnChainPriceFeedProvider``.
    rpc_url : str | None
        Ethereum JSON-RPC URL.  Falls back to the ``ETH_RPC_URL``
        environment variable when not supplied.
    cache_ttl : float
        TTL in seconds for the on-chain cache (default 60).

    Returns
    -------
    PriceFeedProvider
        ``OnChainPriceFeedProvider`` (with static prices as its fallback)
        when requested and configured, otherwise ``StaticPriceFeedProvider``.
    """
    if not use_onchain:
        return StaticPriceFeedProvider()

    resolved_url = rpc_url or os.environ.get("ETH_RPC_URL")
    if not resolved_url:
        logger.warning("On-chain prices requested but no RPC URL provided; using static prices")
        return StaticPriceFeedProvider()

    try:
        return OnChainPriceFeedProvider(
            rpc_url=resolved_url,
            cache_ttl=cache_ttl,
            fallback=StaticPriceFeedProvider(),
        )
    except Exception:
        logger.warning("Failed to create OnChainPriceFeedProvider; using static prices", exc_info=True)
        return StaticPriceFeedProvider()
