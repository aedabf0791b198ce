"""On-chain price feed provider reading Chainlink aggregators via web3.py."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from web3 import Web3

from src.data.contracts import CHAINLINK_FEED_ABI, CHAINLINK_USD_FEEDS, TOKEN_DECIMALS
from src.data.interfaces import PriceFeed, PriceFeedProvider, PriceFeedUnavailable

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# TTL cache
# ---------------------------------------------------------------------------

class _TTLCache:
    """Simple dict-based cache with per-entry TTL expiry."""

    def __init__(self, ttl: float) -> None:
        self._ttl = ttl
        self._store: dict[str, tuple[float, Any]] = {}

    def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        ts, value = entry
        if time.monotonic() - ts > self._ttl:
            del self._store[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._store[key] = (time.monotonic(), value)

    def clear(self) -> None:
        self._store.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _to_18_dp(answer: int, feed_decimals: int) -> int:
    """Scale a Chainlink answer with *feed_decimals* to 18dp."""
    if feed_decimals <= 18:
        return answer * 10 ** (18 - feed_decimals)
    return answer // 10 ** (feed_decimals - 18)


# ---------------------------------------------------------------------------
# OnChainPriceFeedProvider
# ---------------------------------------------------------------------------

class OnChainPriceFeedProvider(PriceFeedProvider):
    """Live USD prices from Chainlink aggregators.

    Parameters
    ----------
    rpc_url : str
        Ethereum JSON-RPC endpoint URL.
    cache_ttl : float
        Seconds before a cached price expires (default 60).
    fallback : PriceFeedProvider | None
        Optional provider used when an RPC call fails.
    feeds : dict[str, str] | None
        Pool id to aggregator address; defaults to the mainnet USD feeds.
    token_decimals : dict[str, int] | None
        Pool id to underlying token decimals.
    """

    def __init__(
        self,
        rpc_url: str,
        cache_ttl: float = 60.0,
        fallback: PriceFeedProvider | None = None,
        feeds: dict[str, str] | None = None,
        token_decimals: dict[str, int] | None = None,
    ) -> None:
        self._w3 = Web3(Web3.HTTPProvider(rpc_url))
        self._cache = _TTLCache(cache_ttl)
        self._fallback = fallback
        self._feed_addresses = dict(feeds or CHAINLINK_USD_FEEDS)
        self._token_decimals = dict(token_decimals or TOKEN_DECIMALS)

        # Lazily built per-pool aggregator contracts
        self._feed_contracts: dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get_feed_contract(self, pool_id: str) -> Any:
        if pool_id in self._feed_contracts:
            return self._feed_contracts[pool_id]
        raw = self._feed_addresses.get(pool_id)
        if raw is None:
            raise PriceFeedUnavailable(pool_id)
        contract = self._w3.eth.contract(
            address=self._w3.to_checksum_address(raw),
            abi=CHAINLINK_FEED_ABI,
        )
        self._feed_contracts[pool_id] = contract
        return contract

    def _fetch_price_feed(self, pool_id: str) -> PriceFeed:
        decimals = self._token_decimals.get(pool_id)
        if decimals is None:
            raise PriceFeedUnavailable(pool_id)
        contract = self._get_feed_contract(pool_id)
        feed_decimals = contract.functions.decimals().call()
        answer = contract.functions.latestRoundData().call()[1]
        if answer <= 0:
            raise ValueError(f"Non-positive Chainlink answer for {pool_id}: {answer}")
        return PriceFeed(price=_to_18_dp(answer, feed_decimals), decimals=decimals)

    def _call_with_fallback(
        self,
        cache_key: str,
        fetcher: Callable[[], Any],
        fallback_method: Callable[..., Any] | None,
        *fallback_args: Any,
    ) -> Any:
        """Cache → RPC → fallback pipeline."""
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            value = fetcher()
            self._cache.set(cache_key, value)
            return value
        except Exception:
            logger.warning("RPC call failed for key=%s, using fallback", cache_key, exc_info=True)

        if fallback_method is not None:
            return fallback_method(*fallback_args)

        raise PriceFeedUnavailable(cache_key)

    # ------------------------------------------------------------------
    # PriceFeedProvider interface
    # ------------------------------------------------------------------

    def price_feed(self, pool_id: str) -> PriceFeed:
        fb = self._fallback.price_feed if self._fallback else None
        return self._call_with_fallback(f"price_feed:{pool_id}", lambda: self._fetch_price_feed(pool_id), fb, pool_id)

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def refresh(self) -> None:
        """Invalidate all cached prices, forcing fresh RPC calls."""
        self._cache.clear()
        self._feed_contracts.clear()

    @property
    def is_connected(self) -> bool:
        """Check if the Web3 provider is connected."""
        try:
            return self._w3.is_connected()
        except Exception:
            logger.debug("Connection check failed", exc_info=True)
            return False
