"""Per-position collateral and borrow entries, and loan liquidity queries."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Mapping

from src.data.constants import ONE_4_DP, ONE_10_DP, ONE_14_DP, ONE_18_DP
from src.protocol import errors
from src.protocol.fixed_point import (
    calc_asset_dollar_value,
    div_scale,
    mul_scale,
    mul_scale_round_up,
)
from src.protocol.interest_rate import (
    calc_average_stable_rate,
    calc_borrow_balance,
    calc_borrow_interest_index,
    calc_stable_interest_rate,
    to_underlying_amount,
)

if TYPE_CHECKING:
    from src.data.interfaces import PriceFeedProvider
    from src.protocol.loan_type import LoanTypeConfig
    from src.protocol.pool import PoolLedger

logger = logging.getLogger(__name__)


@dataclass
class UserLoanCollateral:
    balance: int = 0  # share units
    reward_index: int = 0


@dataclass
class UserLoanBorrow:
    """A borrow entry; ``stable_interest_rate == 0`` means variable."""

    amount: int = 0  # principal
    balance: int = 0  # principal plus interest
    last_interest_index: int = ONE_18_DP
    stable_interest_rate: int = 0
    last_stable_update_timestamp: int = 0
    reward_index: int = 0

    @property
    def is_stable(self) -> bool:
        return self.stable_interest_rate > 0


@dataclass
class UserLoan:
    loan_id: str
    account_id: str
    loan_type_id: str
    is_active: bool = True
    col_pools: list[str] = field(default_factory=list)
    bor_pools: list[str] = field(default_factory=list)
    collaterals: dict[str, UserLoanCollateral] = field(default_factory=dict)
    borrows: dict[str, UserLoanBorrow] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.col_pools and not self.bor_pools

    def get_collateral(self, pool_id: str) -> UserLoanCollateral:
        collateral = self.collaterals.get(pool_id)
        if collateral is None:
            raise errors.NoCollateralInLoanForPool(self.loan_id, pool_id)
        return collateral

    def get_borrow(self, pool_id: str) -> UserLoanBorrow:
        borrow = self.borrows.get(pool_id)
        if borrow is None:
            raise errors.NoBorrowInLoanForPool(self.loan_id, pool_id)
        return borrow


@dataclass
class UserPoolRewards:
    collateral: int = 0
    borrow: int = 0
    interest_paid: int = 0


@dataclass(frozen=True)
class LoanLiquidity:
    """Loan values at 8dp; effective values include the risk factors."""

    collateral_value: int
    borrow_value: int
    effective_collateral_value: int
    effective_borrow_value: int

    @property
    def is_over_collateralized(self) -> bool:
        return self.effective_collateral_value >= self.effective_borrow_value

    @property
    def ltv_ratio(self) -> int:
        """Borrow value over collateral value at 4dp."""
        if self.collateral_value == 0:
            return 0
        return div_scale(self.borrow_value, self.collateral_value, ONE_4_DP)

    @property
    def borrow_utilisation_ratio(self) -> int:
        if self.effective_collateral_value == 0:
            return 0
        return div_scale(self.effective_borrow_value, self.effective_collateral_value, ONE_4_DP)

    @property
    def liquidation_margin(self) -> int:
        if self.effective_collateral_value == 0:
            return 0
        margin = self.effective_collateral_value - self.effective_borrow_value
        return div_scale(margin, self.effective_collateral_value, ONE_4_DP)


def calc_collateral_asset_loan_value(amount: int, price: int, decimals: int, factor: int) -> int:
    return mul_scale(calc_asset_dollar_value(amount, price, decimals), factor, ONE_14_DP)


def calc_borrow_asset_loan_value(amount: int, price: int, decimals: int, factor: int) -> int:
    return mul_scale_round_up(calc_asset_dollar_value(amount, price, decimals), factor, ONE_14_DP)


def _remove_pool_id(pool_ids: list[str], pool_id: str) -> None:
    # swap-remove keeps the scan linear; order after removal mirrors it
    for i, existing in enumerate(pool_ids):
        if existing == pool_id:
            pool_ids[i] = pool_ids[-1]
            pool_ids.pop()
            return


class LoanPositionStore:
    """Keyed store of user loans and per-account pool rewards.

    Mutators act on the ``UserLoan`` passed in, normally a staged copy from
    :meth:`staged`, and only become visible through :meth:`commit`.
    """

    def __init__(self) -> None:
        self._loans: dict[str, UserLoan] = {}
        self._rewards: dict[tuple[str, str], UserPoolRewards] = {}

    # ------------------------------------------------------------------
    # Lifecycle and staging
    # ------------------------------------------------------------------

    def __contains__(self, loan_id: str) -> bool:
        return loan_id in self._loans

    def is_user_loan_active(self, loan_id: str) -> bool:
        loan = self._loans.get(loan_id)
        return loan is not None and loan.is_active

    def create_user_loan(self, loan_id: str, account_id: str, loan_type_id: str) -> UserLoan:
        if loan_id in self._loans:
            raise errors.UserLoanAlreadyCreated(loan_id)
        loan = UserLoan(loan_id=loan_id, account_id=account_id, loan_type_id=loan_type_id)
        self._loans[loan_id] = loan
        return loan

    def get_user_loan(self, loan_id: str) -> UserLoan:
        loan = self._loans.get(loan_id)
        if loan is None or not loan.is_active:
            raise errors.UnknownUserLoan(loan_id)
        return loan

    def staged(self, loan_id: str) -> UserLoan:
        return copy.deepcopy(self.get_user_loan(loan_id))

    def commit(self, loan: UserLoan) -> None:
        self._loans[loan.loan_id] = loan

    def get_user_pool_rewards(self, account_id: str, pool_id: str) -> UserPoolRewards:
        return copy.deepcopy(self._rewards.get((account_id, pool_id), UserPoolRewards()))

    def commit_rewards(self, account_id: str, pool_id: str, rewards: UserPoolRewards) -> None:
        self._rewards[(account_id, pool_id)] = rewards

    def loans(self) -> list[UserLoan]:
        return [loan for loan in self._loans.values() if loan.is_active]

    # ------------------------------------------------------------------
    # Collateral
    # ------------------------------------------------------------------

    def increase_collateral(self, loan: UserLoan, pool_id: str, share_amount: int, reward_index: int = 0) -> None:
        """Add shares; a new entry starts accruing rewards from *reward_index*."""
        if share_amount == 0:
            return
        collateral = loan.collaterals.get(pool_id)
        if collateral is None:
            collateral = UserLoanCollateral(reward_index=reward_index)
            loan.collaterals[pool_id] = collateral
            loan.col_pools.append(pool_id)
        collateral.balance += share_amount

    def decrease_collateral(self, loan: UserLoan, pool_id: str, share_amount: int) -> None:
        if share_amount == 0:
            return
        collateral = loan.get_collateral(pool_id)
        if share_amount > collateral.balance:
            raise errors.InsufficientCollateral(loan.loan_id, pool_id, collateral.balance, share_amount)
        collateral.balance -= share_amount
        if collateral.balance == 0:
            del loan.collaterals[pool_id]
            _remove_pool_id(loan.col_pools, pool_id)

    # ------------------------------------------------------------------
    # Borrow
    # ------------------------------------------------------------------

    @staticmethod
    def update_loan_borrow_interests(borrow: UserLoanBorrow, variable_index: int, now: int) -> None:
        """Bring *borrow*'s balance up to *now*.

        Stable entries compound on their own clock at their locked rate;
        variable entries rebase against the pool's variable index.
        """
        if borrow.is_stable:
            new_index = calc_borrow_interest_index(
                borrow.stable_interest_rate,
                borrow.last_interest_index,
                now - borrow.last_stable_update_timestamp,
            )
            borrow.balance = calc_borrow_balance(borrow.balance, new_index, borrow.last_interest_index)
            borrow.last_interest_index = new_index
            borrow.last_stable_update_timestamp = now
        else:
            borrow.balance = calc_borrow_balance(borrow.balance, variable_index, borrow.last_interest_index)
            borrow.last_interest_index = variable_index

    @staticmethod
    def projected_borrow_balance(borrow: UserLoanBorrow, variable_index: int, now: int) -> int:
        projected = copy.copy(borrow)
        LoanPositionStore.update_loan_borrow_interests(projected, variable_index, now)
        return projected.balance

    def increase_borrow(
        self,
        loan: UserLoan,
        pool_id: str,
        amount: int,
        variable_index: int,
        stable_rate: int,
        is_stable: bool,
        now: int,
        reward_index: int = 0,
    ) -> None:
        if amount == 0:
            return
        borrow = loan.borrows.get(pool_id)
        if borrow is None:
            borrow = UserLoanBorrow(amount=amount, balance=amount, reward_index=reward_index)
            if is_stable:
                borrow.stable_interest_rate = stable_rate
                borrow.last_stable_update_timestamp = now
            else:
                borrow.last_interest_index = variable_index
            loan.borrows[pool_id] = borrow
            loan.bor_pools.append(pool_id)
            return

        if borrow.is_stable != is_stable:
            raise errors.BorrowTypeMismatch(loan.loan_id, pool_id)
        self.update_loan_borrow_interests(borrow, variable_index, now)
        if is_stable:
            borrow.stable_interest_rate = calc_stable_interest_rate(
                borrow.balance, amount, borrow.stable_interest_rate, stable_rate
            )
        borrow.balance += amount
        borrow.amount += amount

    def decrease_borrow(self, loan: UserLoan, pool_id: str, principal_paid: int, balance_paid: int) -> None:
        borrow = loan.get_borrow(pool_id)
        borrow.amount -= principal_paid
        borrow.balance -= balance_paid
        if borrow.balance == 0:
            del loan.borrows[pool_id]
            _remove_pool_id(loan.bor_pools, pool_id)

    def switch_borrow_type(
        self,
        loan: UserLoan,
        pool_id: str,
        to_stable: bool,
        variable_index: int,
        stable_rate: int,
        now: int,
    ) -> UserLoanBorrow:
        """Settle *pool_id*'s borrow under its regime, then restart it under the other.

        Returns:
            A copy of the entry as it was before the switch.
        """
        borrow = loan.borrows.get(pool_id)
        if to_stable and (borrow is None or borrow.is_stable):
            raise errors.NoVariableBorrowInLoanForPool(loan.loan_id, pool_id)
        if not to_stable and (borrow is None or not borrow.is_stable):
            raise errors.NoStableBorrowInLoanForPool(loan.loan_id, pool_id)

        previous = copy.copy(borrow)
        self.update_loan_borrow_interests(borrow, variable_index, now)
        if to_stable:
            borrow.last_interest_index = ONE_18_DP
            borrow.stable_interest_rate = stable_rate
            borrow.last_stable_update_timestamp = now
        else:
            borrow.last_interest_index = variable_index
            borrow.stable_interest_rate = 0
            borrow.last_stable_update_timestamp = 0
        return previous

    def rebalance_stable_rate(self, loan: UserLoan, pool_id: str, stable_rate: int, now: int) -> UserLoanBorrow:
        """Settle a stable borrow on its own clock and re-price it at *stable_rate*."""
        borrow = loan.borrows.get(pool_id)
        if borrow is None or not borrow.is_stable:
            raise errors.NoStableBorrowInLoanForPool(loan.loan_id, pool_id)
        previous = copy.copy(borrow)
        self.update_loan_borrow_interests(borrow, 0, now)
        borrow.stable_interest_rate = stable_rate
        return previous

    # ------------------------------------------------------------------
    # Liquidation transfers
    # ------------------------------------------------------------------

    def transfer_borrow_from_violator(self, loan: UserLoan, pool_id: str, repay_amount: int) -> int:
        """Remove *repay_amount* of settled debt from the violator.

        Returns:
            The principal reduction; any remainder of *repay_amount* was interest.
        """
        borrow = loan.get_borrow(pool_id)
        principal_reduction = min(repay_amount, borrow.amount)
        self.decrease_borrow(loan, pool_id, principal_reduction, repay_amount)
        return principal_reduction

    def transfer_borrow_to_liquidator(
        self,
        loan: UserLoan,
        pool_id: str,
        repay_amount: int,
        violator_stable_rate: int,
        variable_index: int,
        now: int,
        reward_index: int = 0,
    ) -> None:
        """Add *repay_amount* of debt to the liquidator as principal.

        Stable debt is absorbed at the principal-weighted average of the
        liquidator's existing rate and the violator's rate.
        """
        if repay_amount == 0:
            return
        is_stable = violator_stable_rate > 0
        borrow = loan.borrows.get(pool_id)
        if borrow is None:
            self.increase_borrow(
                loan, pool_id, repay_amount, variable_index, violator_stable_rate, is_stable, now, reward_index
            )
            return

        if borrow.is_stable != is_stable:
            raise errors.BorrowTypeMismatch(loan.loan_id, pool_id)
        self.update_loan_borrow_interests(borrow, variable_index, now)
        if is_stable:
            borrow.stable_interest_rate = calc_average_stable_rate(
                borrow.amount, borrow.stable_interest_rate, repay_amount, violator_stable_rate
            )
        borrow.amount += repay_amount
        borrow.balance += repay_amount

    # ------------------------------------------------------------------
    # Liquidity
    # ------------------------------------------------------------------

    @staticmethod
    def get_loan_liquidity(
        loan: UserLoan,
        loan_type: LoanTypeConfig,
        pools: Mapping[str, PoolLedger],
        oracle: PriceFeedProvider,
        now: int,
    ) -> LoanLiquidity:
        """Value *loan* at *now* using fresh indexes and prices.

        Collateral values round down and borrow values round up, so the
        health test never favours the position.
        """
        collateral_value = 0
        borrow_value = 0
        effective_collateral = 0
        effective_borrow = 0

        for pool_id in loan.col_pools:
            pool = pools[pool_id]
            feed = oracle.price_feed(pool_id)
            factor = loan_type.get_loan_pool(pool_id).params.collateral_factor
            underlying = to_underlying_amount(loan.collaterals[pool_id].balance, pool.updated_deposit_index(now))
            collateral_value += calc_asset_dollar_value(underlying, feed.price, feed.decimals) // ONE_10_DP
            effective_collateral += calc_collateral_asset_loan_value(underlying, feed.price, feed.decimals, factor)

        for pool_id in loan.bor_pools:
            pool = pools[pool_id]
            feed = oracle.price_feed(pool_id)
            factor = loan_type.get_loan_pool(pool_id).params.borrow_factor
            balance = LoanPositionStore.projected_borrow_balance(
                loan.borrows[pool_id], pool.updated_variable_index(now), now
            )
            borrow_value += -(-calc_asset_dollar_value(balance, feed.price, feed.decimals) // ONE_10_DP)
            effective_borrow += calc_borrow_asset_loan_value(balance, feed.price, feed.decimals, factor)

        return LoanLiquidity(
            collateral_value=collateral_value,
            borrow_value=borrow_value,
            effective_collateral_value=effective_collateral,
            effective_borrow_value=effective_borrow,
        )
