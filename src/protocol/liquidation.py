"""Liquidation solver and cross-position transfer.

A liquidator takes over part of an under-collateralized position's debt
in one pool and receives that position's collateral from another pool,
inflated by the liquidation bonus.  Part of the bonus is minted to the
protocol fee recipient as share tokens.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Mapping

from src.data.constants import ONE_4_DP, ONE_10_DP
from src.data.interfaces import PriceFeed, PriceFeedProvider
from src.protocol import errors
from src.protocol.fixed_point import (
    calc_asset_amount,
    convert_asset_amount,
    div_scale,
    mul_scale,
)
from src.protocol.interest_rate import to_share_amount, to_underlying_amount
from src.protocol.loan_position import LoanPositionStore, UserLoan, UserPoolRewards
from src.protocol.loan_type import LoanTypeConfig
from src.protocol.pool import PoolLedger
from src.protocol.rewards import RewardAccrualEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LiquidationResult:
    repay_amount: int  # borrow asset moved from violator to liquidator
    principal_reduction: int  # violator principal removed; the rest was interest
    seized_share_amount: int  # collateral shares taken from the violator
    liquidator_share_amount: int
    reserve_share_amount: int
    clamped: bool  # seize limited by the violator's collateral


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------

def conv_to_seized_collateral_amount(
    borrow_amount: int, coll_feed: PriceFeed, borr_feed: PriceFeed, liquidation_bonus: int
) -> int:
    converted = convert_asset_amount(borrow_amount, borr_feed.price, borr_feed.decimals, coll_feed.price, coll_feed.decimals)
    return mul_scale(converted, ONE_4_DP + liquidation_bonus, ONE_4_DP)


def conv_to_collateral_share_amount(
    borrow_amount: int, coll_feed: PriceFeed, borr_feed: PriceFeed, coll_deposit_index: int
) -> int:
    converted = convert_asset_amount(borrow_amount, borr_feed.price, borr_feed.decimals, coll_feed.price, coll_feed.decimals)
    return to_share_amount(converted, coll_deposit_index)


def conv_to_repay_borrow_amount(
    coll_amount: int, coll_feed: PriceFeed, borr_feed: PriceFeed, liquidation_bonus: int
) -> int:
    """Borrow amount whose bonus-inflated collateral equivalent is *coll_amount*."""
    converted = convert_asset_amount(coll_amount, coll_feed.price, coll_feed.decimals, borr_feed.price, borr_feed.decimals)
    return div_scale(converted, ONE_4_DP + liquidation_bonus, ONE_4_DP)


def calc_reserve_collateral(seized: int, borrow_to_collateral: int, liquidation_fee: int) -> int:
    bonus_portion = max(seized - borrow_to_collateral, 0)
    return mul_scale(bonus_portion, liquidation_fee, ONE_4_DP)


def calc_max_repay_borrow_value(
    effective_collateral_value: int,
    effective_borrow_value: int,
    loan_target_health: int,
    collateral_factor: int,
    borrow_factor: int,
    liquidation_bonus: int,
) -> int | None:
    """Borrow value (8dp) whose repayment restores the target health.

    Solves ``ecv - r*cf*(1+bonus) = target * (ebv - r*bf)`` for ``r``.

    Returns:
        The value, or ``None`` when repaying cannot raise the health ratio
        (non-positive denominator) and no value bound applies.
    """
    numerator = mul_scale(effective_borrow_value, loan_target_health, ONE_4_DP) - effective_collateral_value
    denominator = mul_scale(loan_target_health, borrow_factor, ONE_4_DP) - mul_scale(
        collateral_factor, ONE_4_DP + liquidation_bonus, ONE_4_DP
    )
    if denominator <= 0:
        return None
    return div_scale(max(numerator, 0), denominator, ONE_4_DP)


class LiquidationEngine:
    """Computes and applies liquidations on staged positions and pools."""

    def __init__(self, store: LoanPositionStore, rewards: RewardAccrualEngine) -> None:
        self.store = store
        self.rewards = rewards

    def liquidate(
        self,
        violator: UserLoan,
        liquidator: UserLoan,
        loan_type: LoanTypeConfig,
        col_pool_id: str,
        bor_pool_id: str,
        max_repay_amount: int,
        min_seized_amount: int,
        pools: Mapping[str, PoolLedger],
        oracle: PriceFeedProvider,
        rewards_of: Callable[[str, str], UserPoolRewards],
        now: int,
    ) -> LiquidationResult:
        """Liquidate *violator* into *liquidator*, mutating both in place.

        *violator*, *liquidator*, *loan_type* and *pools* must be staged
        copies; on any raised error the caller discards them.
        """
        if violator.loan_id == liquidator.loan_id:
            raise errors.SameLoan(violator.loan_id)
        if violator.loan_type_id != liquidator.loan_type_id:
            raise errors.LoanTypeMismatch(violator.loan_id, liquidator.loan_id)

        violator.get_collateral(col_pool_id)
        violator_borrow = violator.get_borrow(bor_pool_id)
        col_loan_pool = loan_type.get_loan_pool(col_pool_id)
        bor_loan_pool = loan_type.get_loan_pool(bor_pool_id)

        col_pool = pools[col_pool_id]
        bor_pool = pools[bor_pool_id]
        variable_index = bor_pool.prepare_for_repay(now).variable_index
        col_pool.update_interest_indexes(now)
        coll_index = col_pool.state.deposit_index

        liquidator_borrow = liquidator.borrows.get(bor_pool_id)
        if liquidator_borrow is not None and liquidator_borrow.is_stable != violator_borrow.is_stable:
            raise errors.BorrowTypeMismatch(violator.loan_id, liquidator.loan_id, bor_pool_id)

        violator_liquidity = self.store.get_loan_liquidity(violator, loan_type, pools, oracle, now)
        if violator_liquidity.is_over_collateralized:
            raise errors.OverCollateralizedLoan(violator.loan_id)

        self.store.update_loan_borrow_interests(violator_borrow, variable_index, now)
        coll_feed = oracle.price_feed(col_pool_id)
        borr_feed = oracle.price_feed(bor_pool_id)
        bonus = bor_loan_pool.params.liquidation_bonus

        # repay amount bounded by caller, target health and outstanding balance
        repay_amount = min(max_repay_amount, violator_borrow.balance)
        max_repay_value = calc_max_repay_borrow_value(
            violator_liquidity.effective_collateral_value,
            violator_liquidity.effective_borrow_value,
            loan_type.loan_target_health,
            col_loan_pool.params.collateral_factor,
            bor_loan_pool.params.borrow_factor,
            bonus,
        )
        if max_repay_value is not None:
            max_repay = calc_asset_amount(max_repay_value * ONE_10_DP, borr_feed.price, borr_feed.decimals)
            repay_amount = min(repay_amount, max_repay)

        # seize, clamped to what the violator holds
        seized_shares = to_share_amount(
            conv_to_seized_collateral_amount(repay_amount, coll_feed, borr_feed, bonus), coll_index
        )
        violator_shares = violator.collaterals[col_pool_id].balance
        clamped = seized_shares > violator_shares
        if clamped:
            seized_shares = violator_shares
            seized_amount = to_underlying_amount(seized_shares, coll_index)
            repay_amount = min(
                conv_to_repay_borrow_amount(seized_amount, coll_feed, borr_feed, bonus),
                violator_borrow.balance,
            )
        if repay_amount == 0:
            raise errors.ZeroRepayAmount(violator.loan_id, bor_pool_id)

        repay_shares = conv_to_collateral_share_amount(repay_amount, coll_feed, borr_feed, coll_index)
        reserve_shares = calc_reserve_collateral(seized_shares, repay_shares, col_loan_pool.params.liquidation_fee)
        liquidator_shares = seized_shares - reserve_shares
        if liquidator_shares < min_seized_amount:
            raise errors.InsufficientSeized(liquidator_shares, min_seized_amount)

        # rewards accrue at the pre-transfer amounts
        self.rewards.update_reward_indexes(col_loan_pool, now)
        self.rewards.update_reward_indexes(bor_loan_pool, now)
        for loan in (violator, liquidator):
            self.rewards.accrue_collateral_reward(loan, col_loan_pool, rewards_of(loan.account_id, col_pool_id))
            self.rewards.accrue_borrow_reward(loan, bor_loan_pool, rewards_of(loan.account_id, bor_pool_id))

        # borrow
        violator_rate = violator_borrow.stable_interest_rate
        principal_reduction = self.store.transfer_borrow_from_violator(violator, bor_pool_id, repay_amount)
        self.store.transfer_borrow_to_liquidator(
            liquidator,
            bor_pool_id,
            repay_amount,
            violator_rate,
            variable_index,
            now,
            reward_index=bor_loan_pool.reward.borrow_reward_index,
        )
        capitalised_interest = repay_amount - principal_reduction
        bor_loan_pool.borrow_used += capitalised_interest
        bor_pool.update_with_liquidation(capitalised_interest, violator_rate)

        # collateral
        self.store.decrease_collateral(violator, col_pool_id, seized_shares)
        self.store.increase_collateral(
            liquidator,
            col_pool_id,
            liquidator_shares,
            reward_index=col_loan_pool.reward.collateral_reward_index,
        )
        col_loan_pool.collateral_used -= reserve_shares
        col_pool.mint_share_token_for_fee_recipient(reserve_shares)

        liquidator_liquidity = self.store.get_loan_liquidity(liquidator, loan_type, pools, oracle, now)
        if not liquidator_liquidity.is_over_collateralized:
            raise errors.UnderCollateralizedLoan(liquidator.loan_id)

        logger.info(
            "Liquidated loan %s into %s: repay=%d seized=%d reserve=%d clamped=%s",
            violator.loan_id,
            liquidator.loan_id,
            repay_amount,
            seized_shares,
            reserve_shares,
            clamped,
        )
        return LiquidationResult(
            repay_amount=repay_amount,
            principal_reduction=principal_reduction,
            seized_share_amount=seized_shares,
            liquidator_share_amount=liquidator_shares,
            reserve_share_amount=reserve_shares,
            clamped=clamped,
        )
