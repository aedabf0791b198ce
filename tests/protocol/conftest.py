"""Shared fixtures: a two-pool ledger with a funded liquidity provider."""

import pytest

from src.data.constants import ETH, USDC
from src.data.static_params import (
    DEFAULT_LOAN_TARGET_HEALTH,
    DEFAULT_POOL_PARAMS,
    StaticPriceFeedProvider,
    default_loan_pool_params,
)
from src.protocol.orchestrator import LoanOrchestrator

T0 = 1_700_000_000
LOAN_TYPE = "general"


@pytest.fixture
def oracle() -> StaticPriceFeedProvider:
    # USDC at $1 (6 decimals), ETH at $2000 (18 decimals)
    return StaticPriceFeedProvider()


@pytest.fixture
def orchestrator(oracle: StaticPriceFeedProvider) -> LoanOrchestrator:
    o = LoanOrchestrator(oracle, clock=lambda: T0)
    for pool_id in (USDC, ETH):
        o.add_pool(pool_id, DEFAULT_POOL_PARAMS)
    o.create_loan_type(LOAN_TYPE, DEFAULT_LOAN_TARGET_HEALTH)
    for pool_id in (USDC, ETH):
        o.add_pool_to_loan_type(LOAN_TYPE, pool_id, default_loan_pool_params(pool_id))
    return o


@pytest.fixture
def funded(orchestrator: LoanOrchestrator) -> LoanOrchestrator:
    """Liquidity provider holding 1M USDC and 100 ETH as collateral."""
    orchestrator.create_user_loan("lp", "lp_account", LOAN_TYPE)
    orchestrator.deposit("lp", "lp_account", USDC, 1_000_000 * 10**6)
    orchestrator.deposit("lp", "lp_account", ETH, 100 * 10**18)
    return orchestrator
