"""Error taxonomy for the lending ledger.

Every failure is synchronous and non-retryable: the caller must change its
inputs and resubmit.  Operations raising any of these leave no visible state
change.
"""

from __future__ import annotations


class LendingError(Exception):
    """Base class for all ledger errors.

    Positional args carry the identifying ids (loan id, pool id, amounts),
    available to handlers through ``exc.args``.
    """


class ConfigurationError(LendingError):
    """Out-of-range parameter at setup or update."""


class CapacityError(LendingError):
    """A cap was reached or the pool lacks liquidity."""


class EntitlementError(LendingError):
    """Referenced loan, pool or entry is unknown, inactive or deprecated."""


class HealthError(LendingError):
    """A position's collateralization does not allow the operation."""


class RateError(LendingError):
    """Requested rate bound or rebalance threshold not satisfied."""


class ConsistencyError(LendingError):
    """Positions or inputs disagree with each other."""


# ---------------------------------------------------------------------------
# ConfigurationError
# ---------------------------------------------------------------------------

class FlashLoanFeeTooHigh(ConfigurationError):
    pass


class RetentionRateTooHigh(ConfigurationError):
    pass


class OptimalUtilisationRatioTooLow(ConfigurationError):
    pass


class OptimalUtilisationRatioTooHigh(ConfigurationError):
    pass


class MaxVariableInterestRateTooHigh(ConfigurationError):
    pass


class MaxStableInterestRateTooHigh(ConfigurationError):
    pass


class OptimalStableToTotalDebtRatioTooHigh(ConfigurationError):
    pass


class RebalanceUpUtilisationRatioTooHigh(ConfigurationError):
    pass


class RebalanceUpDepositInterestRateTooHigh(ConfigurationError):
    pass


class StableBorrowPercentageTooHigh(ConfigurationError):
    pass


class LoanTargetHealthTooLow(ConfigurationError):
    pass


class CollateralFactorTooHigh(ConfigurationError):
    pass


class BorrowFactorTooLow(ConfigurationError):
    pass


class LiquidationBonusTooHigh(ConfigurationError):
    pass


class LiquidationFeeTooHigh(ConfigurationError):
    pass


class PoolAlreadyAdded(ConfigurationError):
    pass


class LoanTypeAlreadyCreated(ConfigurationError):
    pass


class LoanTypeAlreadyDeprecated(ConfigurationError):
    pass


class LoanPoolAlreadyAdded(ConfigurationError):
    pass


class LoanPoolAlreadyDeprecated(ConfigurationError):
    pass


class UserLoanAlreadyCreated(ConfigurationError):
    pass


# ---------------------------------------------------------------------------
# CapacityError
# ---------------------------------------------------------------------------

class DepositCapReached(CapacityError):
    pass


class BorrowCapReached(CapacityError):
    pass


class CollateralCapReached(CapacityError):
    pass


class StableBorrowPercentageCapExceeded(CapacityError):
    pass


class InsufficientLiquidity(CapacityError):
    pass


class ExcessRepaymentExceeded(CapacityError):
    """Repayment over the owed balance is larger than the caller allowed."""


class InsufficientCollateral(CapacityError):
    pass


class InsufficientShareBalance(CapacityError):
    pass


# ---------------------------------------------------------------------------
# EntitlementError
# ---------------------------------------------------------------------------

class DeprecatedPool(EntitlementError):
    pass


class StableBorrowNotSupported(EntitlementError):
    pass


class CannotMintShareToken(EntitlementError):
    pass


class FlashLoanNotSupported(EntitlementError):
    pass


class PoolUnknown(EntitlementError):
    pass


class LoanTypeUnknown(EntitlementError):
    pass


class LoanTypeDeprecated(EntitlementError):
    pass


class LoanPoolUnknown(EntitlementError):
    pass


class LoanPoolDeprecated(EntitlementError):
    pass


class UnknownUserLoan(EntitlementError):
    pass


class UserLoanInactive(EntitlementError):
    pass


class NotAccountOwner(EntitlementError):
    pass


class LoanNotEmpty(EntitlementError):
    pass


class NoCollateralInLoanForPool(EntitlementError):
    pass


class NoBorrowInLoanForPool(EntitlementError):
    pass


class NoVariableBorrowInLoanForPool(EntitlementError):
    pass


class NoStableBorrowInLoanForPool(EntitlementError):
    pass


# ---------------------------------------------------------------------------
# HealthError
# ---------------------------------------------------------------------------

class UnderCollateralizedLoan(HealthError):
    pass


class OverCollateralizedLoan(HealthError):
    pass


# ---------------------------------------------------------------------------
# RateError
# ---------------------------------------------------------------------------

class MaxStableRateExceeded(RateError):
    pass


class RebalanceUpUtilisationRatioNotReached(RateError):
    pass


class RebalanceUpThresholdNotReached(RateError):
    pass


class RebalanceDownThresholdNotReached(RateError):
    pass


# ---------------------------------------------------------------------------
# ConsistencyError
# ---------------------------------------------------------------------------

class BorrowTypeMismatch(ConsistencyError):
    pass


class LoanTypeMismatch(ConsistencyError):
    pass


class SameLoan(ConsistencyError):
    pass


class ZeroRepayAmount(ConsistencyError):
    """Liquidation would move no debt."""


class InsufficientSeized(ConsistencyError):
    """Liquidator's seized share amount is below the requested minimum."""
