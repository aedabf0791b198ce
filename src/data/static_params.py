"""Static price feeds and default pool / loan-pool parameters."""

from __future__ import annotations

from src.data.constants import ETH, STETH, USDC
from src.data.contracts import TOKEN_DECIMALS
from src.data.interfaces import PriceFeed, PriceFeedProvider, PriceFeedUnavailable
from src.protocol.interest_rate import InterestRateParams
from src.protocol.loan_type import LoanPoolParams
from src.protocol.pool import PoolCaps, PoolConfigFlags, PoolParams

# --- Default pool parameters ---

DEFAULT_RATE_PARAMS = InterestRateParams(
    optimal_utilisation_ratio=7_500,  # 75%
    vr0=17_500,  # 1.75%
    vr1=50_000,  # 5%
    vr2=1_000_000,  # 100%
    sr0=20_000,
    sr1=20_000,
    sr2=1_000_000,
    sr3=250_000,
    optimal_stable_to_total_debt_ratio=2_000,  # 20%
    retention_rate=100_000,  # 10%
)

DEFAULT_POOL_CAPS = PoolCaps(
    deposit=100_000_000,  # $100M
    borrow=50_000_000,  # $50M
    stable_borrow_percentage=5 * 10**16,  # 5% of available liquidity
)

DEFAULT_POOL_PARAMS = PoolParams(
    rates=DEFAULT_RATE_PARAMS,
    flash_loan_fee=1_000,  # 0.1%
    rebalance_up_utilisation_ratio=9_500,
    rebalance_up_deposit_interest_rate=4_000,
    rebalance_down_delta=2_000,
    caps=DEFAULT_POOL_CAPS,
    config=PoolConfigFlags(),
)

# --- Default loan-pool parameters ---

DEFAULT_LOAN_TARGET_HEALTH = 12_500  # 1.25

_LOAN_POOL_PARAMS: dict[str, LoanPoolParams] = {
    USDC: LoanPoolParams(
        collateral_factor=8_500,
        collateral_cap=20_000_000,
        borrow_factor=10_500,
        borrow_cap=10_000_000,
        liquidation_bonus=400,
        liquidation_fee=1_000,
    ),
    ETH: LoanPoolParams(
        collateral_factor=8_000,
        collateral_cap=20_000_000,
        borrow_factor=11_000,
        borrow_cap=10_000_000,
        liquidation_bonus=600,
        liquidation_fee=1_000,
    ),
    STETH: LoanPoolParams(
        collateral_factor=7_000,
        collateral_cap=10_000_000,
        borrow_factor=12_000,
        borrow_cap=5_000_000,
        liquidation_bonus=800,
        liquidation_fee=1_500,
    ),
}

# --- Static prices, USD at 18dp ---

_PRICES: dict[str, int] = {
    USDC: 10**18,
    ETH: 2_000 * 10**18,
    STETH: 1_995 * 10**18,
}


def default_loan_pool_params(pool_id: str) -> LoanPoolParams:
    return _LOAN_POOL_PARAMS[pool_id]


class StaticPriceFeedProvider(PriceFeedProvider):
    """In-memory price feeds, seeded with representative USD prices.

    Prices can be moved with :meth:`set_price`, which makes this provider
    the natural oracle for simulations and tests.
    """

    def __init__(self, feeds: dict[str, PriceFeed] | None = None) -> None:
        if feeds is None:
            feeds = {pool_id: PriceFeed(price, TOKEN_DECIMALS[pool_id]) for pool_id, price in _PRICES.items()}
        self._feeds = dict(feeds)

    def set_price(self, pool_id: str, price: int, decimals: int | None = None) -> None:
        if decimals is None:
            decimals = self.price_feed(pool_id).decimals
        self._feeds[pool_id] = PriceFeed(price, decimals)

    def price_feed(self, pool_id: str) -> PriceFeed:
        feed = self._feeds.get(pool_id)
        if feed is None:
            raise PriceFeedUnavailable(pool_id)
        return feed
