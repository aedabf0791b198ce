"""Reward accrual for loan pools and the positions inside them.

Global indexes live on each ``LoanPoolConfig``; positions keep the index
they last accrued at.  Callers must refresh the global index and accrue
the position *before* changing the position amount, so the elapsed period
is credited at the amount that was actually held during it.
"""

from __future__ import annotations

import logging

from src.data.constants import ONE_18_DP
from src.protocol.fixed_point import mul_scale
from src.protocol.loan_position import UserLoan, UserPoolRewards
from src.protocol.loan_type import LoanPoolConfig, RewardParams

logger = logging.getLogger(__name__)


def calc_reward_index_increment(time_delta: int, reward_speed: int, total_amount: int) -> int:
    return mul_scale(time_delta, reward_speed, total_amount)


def calc_accrued_rewards(amount: int, index_now: int, index_then: int) -> int:
    return mul_scale(amount, index_now - index_then, ONE_18_DP)


class RewardAccrualEngine:
    """Stateless engine over loan-pool reward indexes and position rewards."""

    def update_reward_indexes(self, loan_pool: LoanPoolConfig, now: int) -> None:
        """Advance *loan_pool*'s reward indexes to *now*.

        An index only moves while its used amount exceeds the configured
        minimum; elapsed time below the minimum is skipped, not deferred.
        """
        reward = loan_pool.reward
        if now <= reward.last_update:
            return
        dt = now - reward.last_update
        minimum = reward.params.minimum_amount

        if loan_pool.collateral_used > minimum:
            reward.collateral_reward_index += calc_reward_index_increment(
                dt, reward.params.collateral_speed, loan_pool.collateral_used
            )
        if loan_pool.borrow_used > minimum:
            reward.borrow_reward_index += calc_reward_index_increment(
                dt, reward.params.borrow_speed, loan_pool.borrow_used
            )
        reward.last_update = now
        logger.debug(
            "Reward indexes for pool %s: collateral=%d borrow=%d at %d",
            loan_pool.pool_id,
            reward.collateral_reward_index,
            reward.borrow_reward_index,
            now,
        )

    def update_reward_params(self, loan_pool: LoanPoolConfig, params: RewardParams, now: int) -> None:
        """Replace reward params after accruing the indexes at the old speeds."""
        self.update_reward_indexes(loan_pool, now)
        loan_pool.reward.params = params

    def accrue_collateral_reward(self, loan: UserLoan, loan_pool: LoanPoolConfig, rewards: UserPoolRewards) -> None:
        collateral = loan.collaterals.get(loan_pool.pool_id)
        if collateral is None:
            return
        index = loan_pool.reward.collateral_reward_index
        rewards.collateral += calc_accrued_rewards(collateral.balance, index, collateral.reward_index)
        collateral.reward_index = index

    def accrue_borrow_reward(self, loan: UserLoan, loan_pool: LoanPoolConfig, rewards: UserPoolRewards) -> None:
        borrow = loan.borrows.get(loan_pool.pool_id)
        if borrow is None:
            return
        index = loan_pool.reward.borrow_reward_index
        rewards.borrow += calc_accrued_rewards(borrow.amount, index, borrow.reward_index)
        borrow.reward_index = index

    def accrue_borrow_reward_with_repay(
        self,
        loan: UserLoan,
        loan_pool: LoanPoolConfig,
        rewards: UserPoolRewards,
        interest_paid: int,
    ) -> None:
        """Accrue at the pre-repayment principal, then record the interest paid."""
        self.accrue_borrow_reward(loan, loan_pool, rewards)
        rewards.interest_paid += interest_paid
