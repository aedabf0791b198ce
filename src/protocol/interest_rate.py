"""Kinked variable/stable interest rate model and index compounding.

All inputs and outputs are fixed-point integers: utilisation, rates and
indexes at 18dp, curve parameters at 6dp, ratios at 4dp.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd

from src.data.constants import (
    ONE_4_DP,
    ONE_6_DP,
    ONE_12_DP,
    ONE_14_DP,
    ONE_18_DP,
    SECONDS_IN_YEAR,
)
from src.protocol.fixed_point import (
    div_scale,
    div_scale_round_up,
    exp_by_squaring,
    mul_scale,
    mul_scale_round_up,
)


@dataclass(frozen=True)
class InterestRateParams:
    """Parameters for the variable and stable rate curves."""

    optimal_utilisation_ratio: int  # 4dp, e.g. 7500 = 75%
    vr0: int  # 6dp base variable rate
    vr1: int  # 6dp slope up to optimal
    vr2: int  # 6dp slope beyond optimal
    sr0: int  # 6dp stable base over vr1
    sr1: int  # 6dp stable slope up to optimal
    sr2: int  # 6dp stable slope beyond optimal
    sr3: int  # 6dp premium slope beyond optimal stable share
    optimal_stable_to_total_debt_ratio: int  # 4dp
    retention_rate: int  # 6dp fraction of interest kept by the protocol


@dataclass(frozen=True)
class InterestRates:
    """Rates at 18dp produced by one recomputation."""

    variable: int
    stable: int
    overall_borrow: int
    deposit: int


# ---------------------------------------------------------------------------
# Ratios
# ---------------------------------------------------------------------------

def calc_utilisation_ratio(total_debt: int, total_deposits: int) -> int:
    if total_deposits == 0:
        return 0
    return div_scale(total_debt, total_deposits, ONE_18_DP)


def calc_stable_debt_to_total_debt_ratio(stable_debt: int, total_debt: int) -> int:
    if total_debt == 0:
        return 0
    return div_scale(stable_debt, total_debt, ONE_18_DP)


# ---------------------------------------------------------------------------
# Rates
# ---------------------------------------------------------------------------

def calc_variable_borrow_interest_rate(vr0: int, vr1: int, vr2: int, ut: int, uopt: int) -> int:
    if ut < uopt * ONE_14_DP:
        return vr0 * ONE_12_DP + div_scale(mul_scale(ut, vr1, ONE_6_DP), uopt, ONE_4_DP)
    excess = mul_scale(ut - uopt * ONE_14_DP, vr2, ONE_6_DP)
    return (vr0 + vr1) * ONE_12_DP + div_scale(excess, ONE_4_DP - uopt, ONE_4_DP)


def calc_stable_borrow_interest_rate(
    vr1: int,
    sr0: int,
    sr1: int,
    sr2: int,
    sr3: int,
    ut: int,
    uopt: int,
    ratio: int,
    ratio_opt: int,
) -> int:
    if ut <= uopt * ONE_14_DP:
        base = (vr1 + sr0) * ONE_12_DP + div_scale(mul_scale(ut, sr1, ONE_6_DP), uopt, ONE_4_DP)
    else:
        excess = mul_scale(ut - uopt * ONE_14_DP, sr2, ONE_6_DP)
        base = (vr1 + sr0 + sr1) * ONE_12_DP + div_scale(excess, ONE_4_DP - uopt, ONE_4_DP)

    if ratio <= ratio_opt * ONE_14_DP:
        return base
    premium = mul_scale(sr3, ratio - ratio_opt * ONE_14_DP, ONE_6_DP)
    return base + div_scale(premium, ONE_4_DP - ratio_opt, ONE_4_DP)


def calc_overall_borrow_interest_rate(
    variable_debt: int,
    stable_debt: int,
    variable_rate: int,
    average_stable_rate: int,
) -> int:
    total_debt = variable_debt + stable_debt
    if total_debt == 0:
        return 0
    return (variable_debt * variable_rate + stable_debt * average_stable_rate) // total_debt


def calc_deposit_interest_rate(overall_borrow_rate: int, retention_rate: int, ut: int) -> int:
    return mul_scale(mul_scale(ut, overall_borrow_rate, ONE_18_DP), ONE_6_DP - retention_rate, ONE_6_DP)


# ---------------------------------------------------------------------------
# Indexes and balances
# ---------------------------------------------------------------------------

def calc_borrow_interest_index(rate: int, index: int, time_delta: int) -> int:
    """Compound *index* at *rate* per second for *time_delta* seconds."""
    growth = exp_by_squaring(ONE_18_DP + rate // SECONDS_IN_YEAR, time_delta, ONE_18_DP)
    return mul_scale(index, growth, ONE_18_DP)


def calc_deposit_interest_index(rate: int, index: int, time_delta: int) -> int:
    """Grow *index* linearly at *rate* for *time_delta* seconds."""
    return mul_scale(index, ONE_18_DP + mul_scale(rate, time_delta, SECONDS_IN_YEAR), ONE_18_DP)


def calc_borrow_balance(balance: int, index_now: int, index_then: int) -> int:
    """Rebase *balance* from *index_then* to *index_now*, rounding up."""
    return mul_scale_round_up(balance, div_scale_round_up(index_now, index_then, ONE_18_DP), ONE_18_DP)


def to_share_amount(amount: int, deposit_index: int, round_up: bool = False) -> int:
    if round_up:
        return div_scale_round_up(amount, deposit_index, ONE_18_DP)
    return div_scale(amount, deposit_index, ONE_18_DP)


def to_underlying_amount(share_amount: int, deposit_index: int) -> int:
    return mul_scale(share_amount, deposit_index, ONE_18_DP)


def calc_retention(retained: int, total_debt: int, retention_rate: int, time_delta: int) -> int:
    return retained + mul_scale(mul_scale(total_debt, retention_rate, ONE_6_DP), time_delta, SECONDS_IN_YEAR)


# ---------------------------------------------------------------------------
# Stable rate averaging
# ---------------------------------------------------------------------------

def calc_stable_interest_rate(balance: int, amount: int, old_rate: int, new_rate: int) -> int:
    """Balance-weighted rate after adding *amount* at *new_rate* to a stable borrow."""
    return (balance * old_rate + amount * new_rate) // (balance + amount)


def calc_increasing_average_stable_rate(
    amount: int, rate: int, total_stable_debt: int, average_rate: int
) -> int:
    weighted = mul_scale(total_stable_debt, average_rate, ONE_18_DP) + mul_scale(amount, rate, ONE_18_DP)
    return div_scale(weighted, total_stable_debt + amount, ONE_18_DP)


def calc_decreasing_average_stable_rate(
    amount: int, rate: int, total_stable_debt: int, average_rate: int
) -> int:
    remaining = total_stable_debt - amount
    if remaining <= 0:
        return 0
    weighted = mul_scale(total_stable_debt, average_rate, ONE_18_DP) - mul_scale(amount, rate, ONE_18_DP)
    # rounding in earlier averages can leave the weighted sum short
    if weighted <= 0:
        return 0
    return div_scale(weighted, remaining, ONE_18_DP)


def calc_average_stable_rate(
    liquidator_amount: int,
    liquidator_rate: int,
    violator_amount: int,
    violator_rate: int,
) -> int:
    weighted = mul_scale(liquidator_amount, liquidator_rate, ONE_18_DP) + mul_scale(
        violator_amount, violator_rate, ONE_18_DP
    )
    return div_scale(weighted, liquidator_amount + violator_amount, ONE_18_DP)


# ---------------------------------------------------------------------------
# Rebalance thresholds
# ---------------------------------------------------------------------------

def calc_rebalance_up_threshold(rebalance_up_deposit_rate: int, vr0: int, vr1: int, vr2: int) -> int:
    return mul_scale(rebalance_up_deposit_rate * ONE_14_DP, vr0 + vr1 + vr2, ONE_6_DP)


def calc_rebalance_down_threshold(rebalance_down_delta: int, stable_rate: int) -> int:
    return mul_scale(ONE_4_DP + rebalance_down_delta, stable_rate, ONE_4_DP)


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------

class InterestRateModel:
    """Kinked variable and stable rate curves for one pool."""

    def __init__(self, params: InterestRateParams) -> None:
        self.params = params

    def variable_borrow_rate(self, utilisation: int) -> int:
        """Compute the variable borrow rate for a given utilisation.

        Args:
            utilisation: Pool utilisation ratio at 18dp.

        Returns:
            Annual variable borrow rate at 18dp.
        """
        p = self.params
        return calc_variable_borrow_interest_rate(p.vr0, p.vr1, p.vr2, utilisation, p.optimal_utilisation_ratio)

    def stable_borrow_rate(self, utilisation: int, stable_ratio: int) -> int:
        """Compute the stable rate offered to new stable borrows.

        Args:
            utilisation: Pool utilisation ratio at 18dp.
            stable_ratio: Stable debt over total debt at 18dp.

        Returns:
            Annual stable borrow rate at 18dp, including the premium once
            the stable share is over its optimal.
        """
        p = self.params
        return calc_stable_borrow_interest_rate(
            p.vr1,
            p.sr0,
            p.sr1,
            p.sr2,
            p.sr3,
            utilisation,
            p.optimal_utilisation_ratio,
            stable_ratio,
            p.optimal_stable_to_total_debt_ratio,
        )

    def rates(
        self,
        deposit_total: int,
        variable_total: int,
        stable_total: int,
        average_stable_rate: int,
    ) -> InterestRates:
        """Recompute all pool rates from current totals."""
        total_debt = variable_total + stable_total
        ut = calc_utilisation_ratio(total_debt, deposit_total)
        ratio = calc_stable_debt_to_total_debt_ratio(stable_total, total_debt)

        variable = self.variable_borrow_rate(ut)
        stable = self.stable_borrow_rate(ut, ratio)
        overall = calc_overall_borrow_interest_rate(variable_total, stable_total, variable, average_stable_rate)
        deposit = calc_deposit_interest_rate(overall, self.params.retention_rate, ut)
        return InterestRates(variable=variable, stable=stable, overall_borrow=overall, deposit=deposit)

    def rate_curve(self, n_points: int = 201, stable_ratio: int = 0) -> pd.DataFrame:
        """Generate the rate curve across utilisation for inspection.

        Args:
            n_points: Number of utilisation samples in [0, 1].
            stable_ratio: Stable share of debt (18dp) used for the stable curve.

        Returns:
            DataFrame with columns: utilisation, variable_rate, stable_rate,
            deposit_rate.  Utilisation and rates are 18dp integers; the
            deposit rate assumes all debt is variable.
        """
        # sampled on a 4dp grid so every point is an exact fixed-point value
        utilisations = [int(round(float(u) * ONE_4_DP)) * ONE_14_DP for u in np.linspace(0.0, 1.0, n_points)]
        variable_rates = [self.variable_borrow_rate(u) for u in utilisations]
        stable_rates = [self.stable_borrow_rate(u, stable_ratio) for u in utilisations]
        deposit_rates = [
            calc_deposit_interest_rate(r, self.params.retention_rate, u)
            for u, r in zip(utilisations, variable_rates)
        ]

        return pd.DataFrame(
            {
                "utilisation": utilisations,
                "variable_rate": variable_rates,
                "stable_rate": stable_rates,
                "deposit_rate": deposit_rates,
            }
        )
