"""Loan types and their per-pool configuration."""

from __future__ import annotations

from dataclasses import dataclass, field

from src.data.constants import ONE_4_DP
from src.protocol import errors


@dataclass(frozen=True)
class LoanPoolParams:
    """Risk and cap parameters of a pool inside a loan type."""

    collateral_factor: int  # 4dp, <= 1e4
    collateral_cap: int  # whole dollars
    borrow_factor: int  # 4dp, >= 1e4
    borrow_cap: int  # whole dollars
    liquidation_bonus: int  # 4dp
    liquidation_fee: int  # 4dp, protocol share of the bonus


@dataclass(frozen=True)
class RewardParams:
    collateral_speed: int = 0  # 18dp reward per second
    borrow_speed: int = 0  # 18dp reward per second
    minimum_amount: int = 0  # used amount must exceed this to accrue


@dataclass
class LoanPoolReward:
    """Reward indexes of one loan pool, advanced by the reward engine."""

    params: RewardParams = field(default_factory=RewardParams)
    collateral_reward_index: int = 0
    borrow_reward_index: int = 0
    last_update: int = 0


@dataclass
class LoanPoolConfig:
    """A pool's membership in a loan type, with pool-scoped usage totals."""

    pool_id: str
    params: LoanPoolParams
    collateral_used: int = 0  # share units
    borrow_used: int = 0  # principal units
    reward: LoanPoolReward = field(default_factory=LoanPoolReward)
    deprecated: bool = False


@dataclass
class LoanTypeConfig:
    loan_type_id: str
    loan_target_health: int  # 4dp, >= 1e4
    deprecated: bool = False
    pools: dict[str, LoanPoolConfig] = field(default_factory=dict)

    def get_loan_pool(self, pool_id: str) -> LoanPoolConfig:
        loan_pool = self.pools.get(pool_id)
        if loan_pool is None:
            raise errors.LoanPoolUnknown(self.loan_type_id, pool_id)
        return loan_pool

    def get_active_loan_pool(self, pool_id: str) -> LoanPoolConfig:
        loan_pool = self.get_loan_pool(pool_id)
        if loan_pool.deprecated:
            raise errors.LoanPoolDeprecated(self.loan_type_id, pool_id)
        return loan_pool


def validate_loan_target_health(loan_target_health: int) -> None:
    if loan_target_health < ONE_4_DP:
        raise errors.LoanTargetHealthTooLow(loan_target_health)


def validate_loan_pool_params(params: LoanPoolParams) -> None:
    if params.collateral_factor > ONE_4_DP:
        raise errors.CollateralFactorTooHigh(params.collateral_factor)
    if params.borrow_factor < ONE_4_DP:
        raise errors.BorrowFactorTooLow(params.borrow_factor)
    if params.liquidation_bonus > ONE_4_DP:
        raise errors.LiquidationBonusTooHigh(params.liquidation_bonus)
    if params.liquidation_fee > ONE_4_DP:
        raise errors.LiquidationFeeTooHigh(params.liquidation_fee)
