"""Per-asset pool ledger: totals, rates, indexes, fees, caps and share tokens.

Every transition follows the same order: validate preconditions, refresh
indexes at the previous rates, mutate totals, recompute rates.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import asdict, dataclass, field, replace

import pandas as pd

from src.data.constants import (
    INITIAL_INTEREST_INDEX,
    MAX_FLASH_LOAN_FEE,
    MAX_INTEREST_RATE_PARAMS,
    MAX_RETENTION_RATE,
    MAX_STABLE_BORROW_PERCENTAGE,
    ONE_4_DP,
    ONE_6_DP,
    ONE_14_DP,
    ONE_18_DP,
)
from src.data.interfaces import PriceFeed
from src.protocol import errors
from src.protocol.fixed_point import (
    calc_asset_dollar_value_round_up,
    mul_scale,
    mul_scale_round_up,
)
from src.protocol.interest_rate import (
    InterestRateModel,
    InterestRateParams,
    calc_borrow_interest_index,
    calc_decreasing_average_stable_rate,
    calc_deposit_interest_index,
    calc_increasing_average_stable_rate,
    calc_rebalance_down_threshold,
    calc_rebalance_up_threshold,
    calc_retention,
    calc_utilisation_ratio,
    to_share_amount,
    to_underlying_amount,
)
from src.protocol.token_pool import TokenPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolCaps:
    """Dollar caps (whole dollars) and the stable borrow share cap."""

    deposit: int
    borrow: int
    stable_borrow_percentage: int  # 18dp fraction of available liquidity


@dataclass(frozen=True)
class PoolConfigFlags:
    deprecated: bool = False
    stable_borrow_supported: bool = True
    can_mint_share_token: bool = True
    flash_loan_supported: bool = True


@dataclass(frozen=True)
class PoolParams:
    """Admin-controlled pool parameters."""

    rates: InterestRateParams
    flash_loan_fee: int  # 6dp
    rebalance_up_utilisation_ratio: int  # 4dp
    rebalance_up_deposit_interest_rate: int  # 4dp
    rebalance_down_delta: int  # 4dp
    caps: PoolCaps
    config: PoolConfigFlags = field(default_factory=PoolConfigFlags)


@dataclass
class PoolState:
    """Mutable pool totals, rates and indexes."""

    deposit_total: int = 0
    deposit_rate: int = 0
    deposit_index: int = INITIAL_INTEREST_INDEX
    variable_total: int = 0
    variable_rate: int = 0
    variable_index: int = INITIAL_INTEREST_INDEX
    stable_total: int = 0
    stable_rate: int = 0
    average_stable_rate: int = 0
    total_retained: int = 0
    last_update: int = 0
    share_balances: dict[str, int] = field(default_factory=dict)

    @property
    def total_debt(self) -> int:
        return self.variable_total + self.stable_total

    @property
    def available_liquidity(self) -> int:
        return self.deposit_total - self.total_debt

    @property
    def utilisation(self) -> int:
        return calc_utilisation_ratio(self.total_debt, self.deposit_total)


@dataclass(frozen=True)
class BorrowPoolParams:
    """Indexes and rates handed to a position by a borrow-side transition."""

    variable_index: int
    stable_rate: int


@dataclass(frozen=True)
class RebalanceDownPoolParams:
    variable_index: int
    stable_rate: int
    threshold: int


def validate_pool_params(params: PoolParams) -> None:
    """Raise a ConfigurationError subclass for any out-of-range parameter."""
    r = params.rates
    if params.flash_loan_fee > MAX_FLASH_LOAN_FEE:
        raise errors.FlashLoanFeeTooHigh(params.flash_loan_fee)
    if r.retention_rate > MAX_RETENTION_RATE:
        raise errors.RetentionRateTooHigh(r.retention_rate)
    if r.optimal_utilisation_ratio < 1:
        raise errors.OptimalUtilisationRatioTooLow(r.optimal_utilisation_ratio)
    if r.optimal_utilisation_ratio >= ONE_4_DP:
        raise errors.OptimalUtilisationRatioTooHigh(r.optimal_utilisation_ratio)
    if r.vr0 + r.vr1 + r.vr2 >= MAX_INTEREST_RATE_PARAMS:
        raise errors.MaxVariableInterestRateTooHigh(r.vr0 + r.vr1 + r.vr2)
    if r.vr1 + r.sr0 + r.sr1 + r.sr2 + r.sr3 >= MAX_INTEREST_RATE_PARAMS:
        raise errors.MaxStableInterestRateTooHigh(r.vr1 + r.sr0 + r.sr1 + r.sr2 + r.sr3)
    if r.optimal_stable_to_total_debt_ratio >= ONE_4_DP:
        raise errors.OptimalStableToTotalDebtRatioTooHigh(r.optimal_stable_to_total_debt_ratio)
    if params.rebalance_up_utilisation_ratio > ONE_4_DP:
        raise errors.RebalanceUpUtilisationRatioTooHigh(params.rebalance_up_utilisation_ratio)
    if params.rebalance_up_deposit_interest_rate > ONE_4_DP:
        raise errors.RebalanceUpDepositInterestRateTooHigh(params.rebalance_up_deposit_interest_rate)
    if params.caps.stable_borrow_percentage > MAX_STABLE_BORROW_PERCENTAGE:
        raise errors.StableBorrowPercentageTooHigh(params.caps.stable_borrow_percentage)


class PoolLedger:
    """Ledger for a single asset pool.

    Parameters
    ----------
    pool_id : str
        Identifier of the pool (also the key of its price feed).
    params : PoolParams
        Validated on construction; totals, indexes and rates always start
        from a fresh state.
    token_pool : TokenPool
        Capability used to send the underlying on withdraw and borrow.
    fee_recipient : str
        Holder credited with share tokens minted from liquidation reserves.
    now : int
        Creation timestamp, the first index refresh point.
    """

    def __init__(
        self,
        pool_id: str,
        params: PoolParams,
        token_pool: TokenPool,
        fee_recipient: str = "fee_recipient",
        now: int = 0,
    ) -> None:
        validate_pool_params(params)
        self.pool_id = pool_id
        self.params = params
        self.model = InterestRateModel(params.rates)
        self.token_pool = token_pool
        self.fee_recipient = fee_recipient
        self.state = PoolState(last_update=now)
        self.update_interest_rates()

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def staged(self) -> PoolLedger:
        """Copy whose mutations stay invisible until :meth:`commit`."""
        clone = copy.copy(self)
        clone.state = copy.deepcopy(self.state)
        return clone

    def commit(self, staged: PoolLedger) -> None:
        self.params = staged.params
        self.model = staged.model
        self.state = staged.state

    # ------------------------------------------------------------------
    # Indexes and rates
    # ------------------------------------------------------------------

    def updated_deposit_index(self, now: int) -> int:
        s = self.state
        if now <= s.last_update:
            return s.deposit_index
        return calc_deposit_interest_index(s.deposit_rate, s.deposit_index, now - s.last_update)

    def updated_variable_index(self, now: int) -> int:
        s = self.state
        if now <= s.last_update:
            return s.variable_index
        return calc_borrow_interest_index(s.variable_rate, s.variable_index, now - s.last_update)

    def update_interest_indexes(self, now: int) -> None:
        """Accrue interest and retention up to *now* at the current rates.

        A second call at the same timestamp is a no-op.
        """
        s = self.state
        if now <= s.last_update:
            return
        dt = now - s.last_update
        s.total_retained = calc_retention(s.total_retained, s.total_debt, self.params.rates.retention_rate, dt)
        s.deposit_index = calc_deposit_interest_index(s.deposit_rate, s.deposit_index, dt)
        s.variable_index = calc_borrow_interest_index(s.variable_rate, s.variable_index, dt)
        s.last_update = now
        logger.debug(
            "Pool %s indexes updated: deposit=%d variable=%d at %d",
            self.pool_id,
            s.deposit_index,
            s.variable_index,
            now,
        )

    def update_interest_rates(self) -> None:
        s = self.state
        rates = self.model.rates(s.deposit_total, s.variable_total, s.stable_total, s.average_stable_rate)
        s.variable_rate = rates.variable
        s.stable_rate = rates.stable
        s.deposit_rate = rates.deposit

    def _borrow_pool_params(self) -> BorrowPoolParams:
        return BorrowPoolParams(variable_index=self.state.variable_index, stable_rate=self.state.stable_rate)

    # ------------------------------------------------------------------
    # Parameter updates
    # ------------------------------------------------------------------

    def update_params(self, params: PoolParams, now: int) -> None:
        """Replace parameters, refreshing indexes at the old rates first."""
        validate_pool_params(params)
        self.update_interest_indexes(now)
        self.params = params
        self.model = InterestRateModel(params.rates)
        self.update_interest_rates()
        logger.info("Pool %s params updated", self.pool_id)

    def update_rate_params(self, rates: InterestRateParams, now: int) -> None:
        self.update_params(replace(self.params, rates=rates), now)

    def update_caps(self, caps: PoolCaps, now: int) -> None:
        self.update_params(replace(self.params, caps=caps), now)

    def update_config(self, config: PoolConfigFlags, now: int) -> None:
        self.update_params(replace(self.params, config=config), now)

    # ------------------------------------------------------------------
    # Deposit and withdraw
    # ------------------------------------------------------------------

    def _check_not_deprecated(self) -> None:
        if self.params.config.deprecated:
            raise errors.DeprecatedPool(self.pool_id)

    def deposit(self, amount: int, price_feed: PriceFeed, now: int) -> int:
        """Add *amount* underlying and return the share amount minted (floor)."""
        self._check_not_deprecated()
        self.update_interest_indexes(now)
        s = self.state

        new_total = s.deposit_total + amount
        value = calc_asset_dollar_value_round_up(new_total, price_feed.price, price_feed.decimals)
        if value > self.params.caps.deposit * ONE_18_DP:
            raise errors.DepositCapReached(self.pool_id)

        share_amount = to_share_amount(amount, s.deposit_index)
        s.deposit_total = new_total
        self.update_interest_rates()
        return share_amount

    def withdraw(self, amount: int, is_share_amount: bool, now: int) -> tuple[int, int]:
        """Remove deposits; allowed even when deprecated.

        Args:
            amount: Share amount if *is_share_amount* else underlying amount.
            is_share_amount: Selects how *amount* is interpreted.
            now: Operation timestamp.

        Returns:
            ``(underlying_amount, share_amount)``; shares for an underlying
            request round up, underlying for a share request rounds down.
        """
        self.update_interest_indexes(now)
        s = self.state

        if is_share_amount:
            share_amount = amount
            underlying_amount = to_underlying_amount(amount, s.deposit_index)
        else:
            underlying_amount = amount
            share_amount = to_share_amount(amount, s.deposit_index, round_up=True)

        if underlying_amount > s.available_liquidity:
            raise errors.InsufficientLiquidity(self.pool_id, underlying_amount)

        s.deposit_total -= underlying_amount
        self.update_interest_rates()
        return underlying_amount, share_amount

    def prepare_for_withdraw_share_token(self) -> None:
        self._check_not_deprecated()
        if not self.params.config.can_mint_share_token:
            raise errors.CannotMintShareToken(self.pool_id)

    # ------------------------------------------------------------------
    # Borrow
    # ------------------------------------------------------------------

    def _check_stable_borrow(self, amount: int, max_stable_rate: int) -> None:
        s = self.state
        if not self.params.config.stable_borrow_supported:
            raise errors.StableBorrowNotSupported(self.pool_id)
        max_single = mul_scale(s.available_liquidity, self.params.caps.stable_borrow_percentage, ONE_18_DP)
        if amount > max_single:
            raise errors.StableBorrowPercentageCapExceeded(self.pool_id, amount, max_single)
        if s.stable_rate > max_stable_rate:
            raise errors.MaxStableRateExceeded(self.pool_id, s.stable_rate, max_stable_rate)

    def prepare_for_borrow(
        self, amount: int, max_stable_rate: int, price_feed: PriceFeed, now: int
    ) -> BorrowPoolParams:
        """Validate a borrow; ``max_stable_rate > 0`` requests a stable borrow."""
        self._check_not_deprecated()
        self.update_interest_indexes(now)
        s = self.state

        if amount > s.available_liquidity:
            raise errors.InsufficientLiquidity(self.pool_id, amount)

        value = calc_asset_dollar_value_round_up(s.total_debt + amount, price_feed.price, price_feed.decimals)
        if value > self.params.caps.borrow * ONE_18_DP:
            raise errors.BorrowCapReached(self.pool_id)

        if max_stable_rate > 0:
            self._check_stable_borrow(amount, max_stable_rate)

        return self._borrow_pool_params()

    def update_with_borrow(self, amount: int, is_stable: bool) -> None:
        s = self.state
        if is_stable:
            s.average_stable_rate = calc_increasing_average_stable_rate(
                amount, s.stable_rate, s.stable_total, s.average_stable_rate
            )
            s.stable_total += amount
        else:
            s.variable_total += amount
        self.update_interest_rates()

    # ------------------------------------------------------------------
    # Repay
    # ------------------------------------------------------------------

    def prepare_for_repay(self, now: int) -> BorrowPoolParams:
        self.update_interest_indexes(now)
        return self._borrow_pool_params()

    def _decrease_debt(self, principal: int, loan_stable_rate: int) -> None:
        s = self.state
        if loan_stable_rate > 0:
            s.average_stable_rate = calc_decreasing_average_stable_rate(
                principal, loan_stable_rate, s.stable_total, s.average_stable_rate
            )
            s.stable_total -= principal
        else:
            s.variable_total -= principal

    def update_with_repay(self, principal_paid: int, interest_paid: int, loan_stable_rate: int, excess: int) -> None:
        """Settle a repayment; interest goes to depositors, excess to retained fees."""
        self._decrease_debt(principal_paid, loan_stable_rate)
        self.state.deposit_total += interest_paid
        self.state.total_retained += excess
        self.update_interest_rates()

    def update_with_repay_with_collateral(self, principal_paid: int, interest_paid: int, loan_stable_rate: int) -> int:
        """Settle a repayment funded by this pool's collateral shares.

        Returns:
            Share amount to burn from the position's collateral, rounded up.
        """
        self._decrease_debt(principal_paid, loan_stable_rate)
        self.state.deposit_total -= principal_paid
        self.update_interest_rates()
        return to_share_amount(principal_paid + interest_paid, self.state.deposit_index, round_up=True)

    def update_with_liquidation(self, capitalised_interest: int = 0, loan_stable_rate: int = 0) -> None:
        """Refresh rates after a debt transfer between positions.

        Interest that becomes principal in the liquidator's position is
        added to both the debt and the deposit totals.
        """
        s = self.state
        if capitalised_interest > 0:
            if loan_stable_rate > 0:
                s.average_stable_rate = calc_increasing_average_stable_rate(
                    capitalised_interest, loan_stable_rate, s.stable_total, s.average_stable_rate
                )
                s.stable_total += capitalised_interest
            else:
                s.variable_total += capitalised_interest
            s.deposit_total += capitalised_interest
        self.update_interest_rates()

    # ------------------------------------------------------------------
    # Switch and rebalance
    # ------------------------------------------------------------------

    def prepare_for_switch_borrow_type(self, amount: int, max_stable_rate: int, now: int) -> BorrowPoolParams:
        self._check_not_deprecated()
        self.update_interest_indexes(now)
        if max_stable_rate > 0:
            self._check_stable_borrow(amount, max_stable_rate)
        return self._borrow_pool_params()

    def update_with_switch_borrow_type(self, amount: int, switching_to_stable: bool, old_loan_stable_rate: int) -> None:
        s = self.state
        if switching_to_stable:
            s.variable_total -= amount
            s.average_stable_rate = calc_increasing_average_stable_rate(
                amount, s.stable_rate, s.stable_total, s.average_stable_rate
            )
            s.stable_total += amount
        else:
            s.average_stable_rate = calc_decreasing_average_stable_rate(
                amount, old_loan_stable_rate, s.stable_total, s.average_stable_rate
            )
            s.stable_total -= amount
            s.variable_total += amount
        self.update_interest_rates()

    def prepare_for_rebalance_up(self, now: int) -> BorrowPoolParams:
        self.update_interest_indexes(now)
        s = self.state
        p = self.params
        if s.utilisation < p.rebalance_up_utilisation_ratio * ONE_14_DP:
            raise errors.RebalanceUpUtilisationRatioNotReached(self.pool_id)
        r = p.rates
        threshold = calc_rebalance_up_threshold(p.rebalance_up_deposit_interest_rate, r.vr0, r.vr1, r.vr2)
        if s.deposit_rate > threshold:
            raise errors.RebalanceUpThresholdNotReached(self.pool_id)
        return self._borrow_pool_params()

    def prepare_for_rebalance_down(self, now: int) -> RebalanceDownPoolParams:
        self.update_interest_indexes(now)
        s = self.state
        threshold = calc_rebalance_down_threshold(self.params.rebalance_down_delta, s.stable_rate)
        return RebalanceDownPoolParams(variable_index=s.variable_index, stable_rate=s.stable_rate, threshold=threshold)

    def update_with_rebalance(self, amount: int, old_loan_stable_rate: int) -> None:
        """Re-price *amount* of stable debt from its old rate to the pool stable rate."""
        s = self.state
        s.average_stable_rate = calc_decreasing_average_stable_rate(
            amount, old_loan_stable_rate, s.stable_total, s.average_stable_rate
        )
        s.average_stable_rate = calc_increasing_average_stable_rate(
            amount, s.stable_rate, s.stable_total - amount, s.average_stable_rate
        )
        self.update_interest_rates()

    # ------------------------------------------------------------------
    # Share tokens and fees
    # ------------------------------------------------------------------

    def share_balance(self, holder: str) -> int:
        return self.state.share_balances.get(holder, 0)

    def mint_share_token(self, holder: str, amount: int) -> None:
        if amount == 0:
            return
        balances = self.state.share_balances
        balances[holder] = balances.get(holder, 0) + amount

    def burn_share_token(self, holder: str, amount: int) -> None:
        balances = self.state.share_balances
        held = balances.get(holder, 0)
        if amount > held:
            raise errors.InsufficientShareBalance(self.pool_id, holder, held, amount)
        if amount == held:
            balances.pop(holder, None)
        else:
            balances[holder] = held - amount

    def mint_share_token_for_fee_recipient(self, amount: int) -> None:
        self.mint_share_token(self.fee_recipient, amount)

    def clear_token_fees(self) -> int:
        """Reset the retained fee amount and return what was retained."""
        retained = self.state.total_retained
        self.state.total_retained = 0
        return retained

    def max_flash_loan(self) -> int:
        if not self.params.config.flash_loan_supported or self.params.config.deprecated:
            return 0
        return max(self.state.available_liquidity, 0)

    def flash_fee(self, amount: int) -> int:
        if not self.params.config.flash_loan_supported:
            raise errors.FlashLoanNotSupported(self.pool_id)
        return mul_scale_round_up(amount, self.params.flash_loan_fee, ONE_6_DP)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def snapshot(self) -> pd.Series:
        """Current pool state as a Series (share balances excluded)."""
        data = asdict(self.state)
        data.pop("share_balances")
        data["utilisation"] = self.state.utilisation
        data["pool_id"] = self.pool_id
        return pd.Series(data)
