"""Operation surface of the lending ledger.

Every operation runs the same way:

1. resolve the keys it touches and take their locks in sorted order;
2. sample the timestamp once;
3. stage copies of the touched pools, loans, loan types and rewards;
4. check preconditions and apply mutations to the staged copies;
5. commit the copies and publish the staged events, or on any error
   drop them so nothing becomes visible.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, replace
from typing import Any, Callable

from src.data.constants import ONE_18_DP
from src.data.interfaces import PriceFeedProvider
from src.protocol import errors
from src.protocol.events import Event, EventLog
from src.protocol.fixed_point import calc_asset_dollar_value_round_up
from src.protocol.interest_rate import InterestRateParams, to_underlying_amount
from src.protocol.liquidation import LiquidationEngine, LiquidationResult
from src.protocol.loan_position import (
    LoanLiquidity,
    LoanPositionStore,
    UserLoan,
    UserPoolRewards,
)
from src.protocol.loan_type import (
    LoanPoolConfig,
    LoanPoolParams,
    LoanPoolReward,
    LoanTypeConfig,
    RewardParams,
    validate_loan_pool_params,
    validate_loan_target_health,
)
from src.protocol.pool import PoolCaps, PoolConfigFlags, PoolLedger, PoolParams
from src.protocol.rewards import RewardAccrualEngine
from src.protocol.token_pool import DirectTokenPool, TokenPool

logger = logging.getLogger(__name__)


def _unix_time() -> int:
    return int(time.time())


@dataclass(frozen=True)
class WithdrawResult:
    underlying_amount: int
    share_amount: int
    metadata: bytes


@dataclass(frozen=True)
class RepayResult:
    principal_paid: int
    interest_paid: int
    excess: int


# ---------------------------------------------------------------------------
# Locks and staging
# ---------------------------------------------------------------------------

class _LockTable:
    """One lock per key, always acquired in sorted key order."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], threading.Lock] = {}

    @contextmanager
    def hold(self, keys: set[tuple[str, str]]) -> Iterator[None]:
        ordered = sorted(keys)
        with self._guard:
            locks = [self._locks.setdefault(key, threading.Lock()) for key in ordered]
        with ExitStack() as stack:
            for lock in locks:
                stack.enter_context(lock)
            yield


class _PoolView(Mapping):
    """Staged pools where staged, live pools otherwise (read-only use)."""

    def __init__(self, staged: dict[str, PoolLedger], live: dict[str, PoolLedger]) -> None:
        self._staged = staged
        self._live = live

    def __getitem__(self, pool_id: str) -> PoolLedger:
        if pool_id in self._staged:
            return self._staged[pool_id]
        return self._live[pool_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._live)

    def __len__(self) -> int:
        return len(self._live)


class _Transaction:
    """Staged copies of everything one operation touches."""

    def __init__(self, orchestrator: LoanOrchestrator, now: int) -> None:
        self._o = orchestrator
        self.now = now
        self.pools: dict[str, PoolLedger] = {}
        self.loans: dict[str, UserLoan] = {}
        self.loan_types: dict[str, LoanTypeConfig] = {}
        self.user_rewards: dict[tuple[str, str], UserPoolRewards] = {}
        self.events: list[Event] = []

    def pool(self, pool_id: str) -> PoolLedger:
        if pool_id not in self.pools:
            self.pools[pool_id] = self._o.get_pool(pool_id).staged()
        return self.pools[pool_id]

    def loan(self, loan_id: str, account_id: str | None = None) -> UserLoan:
        if loan_id not in self.loans:
            self.loans[loan_id] = self._o.store.staged(loan_id)
        loan = self.loans[loan_id]
        if account_id is not None and loan.account_id != account_id:
            raise errors.NotAccountOwner(loan_id, account_id)
        return loan

    def loan_type(self, loan_type_id: str) -> LoanTypeConfig:
        if loan_type_id not in self.loan_types:
            self.loan_types[loan_type_id] = copy.deepcopy(self._o.get_loan_type(loan_type_id))
        return self.loan_types[loan_type_id]

    def rewards(self, account_id: str, pool_id: str) -> UserPoolRewards:
        key = (account_id, pool_id)
        if key not in self.user_rewards:
            self.user_rewards[key] = self._o.store.get_user_pool_rewards(account_id, pool_id)
        return self.user_rewards[key]

    def pool_view(self) -> _PoolView:
        return _PoolView(self.pools, self._o.pools)

    def emit(self, kind: str, loan_id: str | None = None, pool_id: str | None = None, **data: Any) -> None:
        self.events.append(Event(kind=kind, timestamp=self.now, loan_id=loan_id, pool_id=pool_id, data=data))

    def commit(self) -> None:
        o = self._o
        for pool_id, staged in self.pools.items():
            o.pools[pool_id].commit(staged)
        for loan in self.loans.values():
            o.store.commit(loan)
        for loan_type_id, loan_type in self.loan_types.items():
            o.loan_types[loan_type_id] = loan_type
        for (account_id, pool_id), rewards in self.user_rewards.items():
            o.store.commit_rewards(account_id, pool_id, rewards)
        o.events.extend(self.events)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class LoanOrchestrator:
    """Binds pools, loan types, positions, rewards and liquidation together.

    Parameters
    ----------
    oracle : PriceFeedProvider
        Source of ``price_feed(pool_id)`` for every pool.
    clock : Callable[[], int] | None
        Returns the current unix timestamp; sampled once per operation
        unless the caller passes ``now`` explicitly.
    fee_recipient : str
        Holder of share tokens minted from liquidation reserves.
    """

    def __init__(
        self,
        oracle: PriceFeedProvider,
        clock: Callable[[], int] | None = None,
        fee_recipient: str = "fee_recipient",
    ) -> None:
        self.oracle = oracle
        self.clock = clock or _unix_time
        self.fee_recipient = fee_recipient
        self.pools: dict[str, PoolLedger] = {}
        self.loan_types: dict[str, LoanTypeConfig] = {}
        self.store = LoanPositionStore()
        self.rewards = RewardAccrualEngine()
        self.liquidation = LiquidationEngine(self.store, self.rewards)
        self.events = EventLog()
        self._locks = _LockTable()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self, operation: str, keys: set[tuple[str, str]], now: int | None) -> Iterator[_Transaction]:
        with self._locks.hold(keys):
            tx = _Transaction(self, self.clock() if now is None else now)
            try:
                yield tx
            except errors.LendingError as exc:
                logger.warning("%s rejected: %s%r", operation, type(exc).__name__, exc.args)
                raise
            tx.commit()
        logger.info("%s committed at %d", operation, tx.now)

    def _loan_keys(self, loan_id: str, *pool_ids: str) -> set[tuple[str, str]]:
        loan = self.store.get_user_loan(loan_id)
        keys = {("loan", loan_id), ("loan_type", loan.loan_type_id), ("account", loan.account_id)}
        keys.update(("pool", pool_id) for pool_id in pool_ids)
        return keys

    def _check_health(self, tx: _Transaction, loan: UserLoan) -> LoanLiquidity:
        liquidity = self.store.get_loan_liquidity(
            loan, tx.loan_type(loan.loan_type_id), tx.pool_view(), self.oracle, tx.now
        )
        if not liquidity.is_over_collateralized:
            raise errors.UnderCollateralizedLoan(loan.loan_id)
        return liquidity

    def _active_loan_pool(self, tx: _Transaction, loan: UserLoan, pool_id: str) -> LoanPoolConfig:
        loan_type = tx.loan_type(loan.loan_type_id)
        if loan_type.deprecated:
            raise errors.LoanTypeDeprecated(loan_type.loan_type_id)
        return loan_type.get_active_loan_pool(pool_id)

    def _check_collateral_cap(self, tx: _Transaction, loan_pool: LoanPoolConfig, share_amount: int) -> None:
        pool = tx.pool(loan_pool.pool_id)
        feed = self.oracle.price_feed(loan_pool.pool_id)
        underlying = to_underlying_amount(loan_pool.collateral_used + share_amount, pool.state.deposit_index)
        value = calc_asset_dollar_value_round_up(underlying, feed.price, feed.decimals)
        if value > loan_pool.params.collateral_cap * ONE_18_DP:
            raise errors.CollateralCapReached(loan_pool.pool_id)

    def _accrue_collateral(self, tx: _Transaction, loan: UserLoan, loan_pool: LoanPoolConfig) -> None:
        self.rewards.update_reward_indexes(loan_pool, tx.now)
        self.rewards.accrue_collateral_reward(loan, loan_pool, tx.rewards(loan.account_id, loan_pool.pool_id))

    def _accrue_borrow(self, tx: _Transaction, loan: UserLoan, loan_pool: LoanPoolConfig, interest_paid: int = 0) -> None:
        self.rewards.update_reward_indexes(loan_pool, tx.now)
        self.rewards.accrue_borrow_reward_with_repay(
            loan, loan_pool, tx.rewards(loan.account_id, loan_pool.pool_id), interest_paid
        )

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get_pool(self, pool_id: str) -> PoolLedger:
        pool = self.pools.get(pool_id)
        if pool is None:
            raise errors.PoolUnknown(pool_id)
        return pool

    def get_loan_type(self, loan_type_id: str) -> LoanTypeConfig:
        loan_type = self.loan_types.get(loan_type_id)
        if loan_type is None:
            raise errors.LoanTypeUnknown(loan_type_id)
        return loan_type

    def get_user_loan(self, loan_id: str) -> UserLoan:
        return copy.deepcopy(self.store.get_user_loan(loan_id))

    def get_user_pool_rewards(self, account_id: str, pool_id: str) -> UserPoolRewards:
        return self.store.get_user_pool_rewards(account_id, pool_id)

    def get_loan_liquidity(self, loan_id: str, now: int | None = None) -> LoanLiquidity:
        loan = self.store.get_user_loan(loan_id)
        now = self.clock() if now is None else now
        loan_type = self.get_loan_type(loan.loan_type_id)
        return self.store.get_loan_liquidity(loan, loan_type, self.pools, self.oracle, now)

    def is_user_loan_over_collateralized(self, loan_id: str, now: int | None = None) -> bool:
        return self.get_loan_liquidity(loan_id, now).is_over_collateralized

    # ------------------------------------------------------------------
    # Pool admin
    # ------------------------------------------------------------------

    def add_pool(
        self,
        pool_id: str,
        params: PoolParams,
        token_pool: TokenPool | None = None,
        now: int | None = None,
    ) -> PoolLedger:
        with self._locks.hold({("pool", pool_id)}):
            if pool_id in self.pools:
                raise errors.PoolAlreadyAdded(pool_id)
            now = self.clock() if now is None else now
            pool = PoolLedger(
                pool_id,
                params,
                token_pool or DirectTokenPool(pool_id),
                fee_recipient=self.fee_recipient,
                now=now,
            )
            self.pools[pool_id] = pool
            self.events.extend([Event(kind="PoolAdded", timestamp=now, pool_id=pool_id)])
        logger.info("Pool %s added", pool_id)
        return pool

    def update_pool_params(self, pool_id: str, params: PoolParams, now: int | None = None) -> None:
        self._update_pool_params("update_pool_params", pool_id, lambda _: params, now)

    def update_pool_rate_params(self, pool_id: str, rates: InterestRateParams, now: int | None = None) -> None:
        self._update_pool_params("update_pool_rate_params", pool_id, lambda p: replace(p, rates=rates), now)

    def update_pool_caps(self, pool_id: str, caps: PoolCaps, now: int | None = None) -> None:
        self._update_pool_params("update_pool_caps", pool_id, lambda p: replace(p, caps=caps), now)

    def update_pool_config(self, pool_id: str, config: PoolConfigFlags, now: int | None = None) -> None:
        self._update_pool_params("update_pool_config", pool_id, lambda p: replace(p, config=config), now)

    def _update_pool_params(
        self,
        operation: str,
        pool_id: str,
        build: Callable[[PoolParams], PoolParams],
        now: int | None,
    ) -> None:
        # params are read under the pool lock so concurrent partial updates compose
        self.get_pool(pool_id)
        with self._transaction(operation, {("pool", pool_id)}, now) as tx:
            pool = tx.pool(pool_id)
            pool.update_params(build(pool.params), tx.now)
            tx.emit("PoolParamsUpdated", pool_id=pool_id)

    def clear_pool_fees(self, pool_id: str, now: int | None = None) -> int:
        self.get_pool(pool_id)
        with self._transaction("clear_pool_fees", {("pool", pool_id)}, now) as tx:
            pool = tx.pool(pool_id)
            pool.update_interest_indexes(tx.now)
            retained = pool.clear_token_fees()
            tx.emit("ClearTokenFees", pool_id=pool_id, amount=retained)
        return retained

    # ------------------------------------------------------------------
    # Loan type admin
    # ------------------------------------------------------------------

    def create_loan_type(self, loan_type_id: str, loan_target_health: int, now: int | None = None) -> None:
        with self._transaction("create_loan_type", {("loan_type", loan_type_id)}, now) as tx:
            if loan_type_id in self.loan_types:
                raise errors.LoanTypeAlreadyCreated(loan_type_id)
            validate_loan_target_health(loan_target_health)
            tx.loan_types[loan_type_id] = LoanTypeConfig(loan_type_id, loan_target_health)
            tx.emit("LoanTypeCreated", loan_target_health=loan_target_health)

    def update_loan_type_target_health(
        self, loan_type_id: str, loan_target_health: int, now: int | None = None
    ) -> None:
        with self._transaction("update_loan_type_target_health", {("loan_type", loan_type_id)}, now) as tx:
            validate_loan_target_health(loan_target_health)
            tx.loan_type(loan_type_id).loan_target_health = loan_target_health
            tx.emit("LoanTypeTargetHealthUpdated", loan_target_health=loan_target_health)

    def deprecate_loan_type(self, loan_type_id: str, now: int | None = None) -> None:
        with self._transaction("deprecate_loan_type", {("loan_type", loan_type_id)}, now) as tx:
            loan_type = tx.loan_type(loan_type_id)
            if loan_type.deprecated:
                raise errors.LoanTypeAlreadyDeprecated(loan_type_id)
            loan_type.deprecated = True
            tx.emit("LoanTypeDeprecated")

    def add_pool_to_loan_type(
        self,
        loan_type_id: str,
        pool_id: str,
        params: LoanPoolParams,
        reward_params: RewardParams | None = None,
        now: int | None = None,
    ) -> None:
        with self._transaction("add_pool_to_loan_type", {("loan_type", loan_type_id)}, now) as tx:
            loan_type = tx.loan_type(loan_type_id)
            if loan_type.deprecated:
                raise errors.LoanTypeDeprecated(loan_type_id)
            self.get_pool(pool_id)
            if pool_id in loan_type.pools:
                raise errors.LoanPoolAlreadyAdded(loan_type_id, pool_id)
            validate_loan_pool_params(params)
            loan_type.pools[pool_id] = LoanPoolConfig(
                pool_id=pool_id,
                params=params,
                reward=LoanPoolReward(params=reward_params or RewardParams(), last_update=tx.now),
            )
            tx.emit("LoanPoolAdded", pool_id=pool_id)

    def update_loan_pool_params(
        self, loan_type_id: str, pool_id: str, params: LoanPoolParams, now: int | None = None
    ) -> None:
        with self._transaction("update_loan_pool_params", {("loan_type", loan_type_id)}, now) as tx:
            validate_loan_pool_params(params)
            tx.loan_type(loan_type_id).get_loan_pool(pool_id).params = params
            tx.emit("LoanPoolParamsUpdated", pool_id=pool_id)

    def update_loan_pool_caps(
        self,
        loan_type_id: str,
        pool_id: str,
        collateral_cap: int,
        borrow_cap: int,
        now: int | None = None,
    ) -> None:
        with self._transaction("update_loan_pool_caps", {("loan_type", loan_type_id)}, now) as tx:
            loan_pool = tx.loan_type(loan_type_id).get_loan_pool(pool_id)
            params = replace(loan_pool.params, collateral_cap=collateral_cap, borrow_cap=borrow_cap)
            validate_loan_pool_params(params)
            loan_pool.params = params
            tx.emit("LoanPoolParamsUpdated", pool_id=pool_id)

    def update_loan_pool_reward_params(
        self, loan_type_id: str, pool_id: str, reward_params: RewardParams, now: int | None = None
    ) -> None:
        with self._transaction("update_loan_pool_reward_params", {("loan_type", loan_type_id)}, now) as tx:
            loan_pool = tx.loan_type(loan_type_id).get_loan_pool(pool_id)
            self.rewards.update_reward_params(loan_pool, reward_params, tx.now)
            tx.emit("RewardParamsUpdated", pool_id=pool_id)

    def deprecate_pool_in_loan_type(self, loan_type_id: str, pool_id: str, now: int | None = None) -> None:
        with self._transaction("deprecate_pool_in_loan_type", {("loan_type", loan_type_id)}, now) as tx:
            loan_pool = tx.loan_type(loan_type_id).get_loan_pool(pool_id)
            if loan_pool.deprecated:
                raise errors.LoanPoolAlreadyDeprecated(loan_type_id, pool_id)
            loan_pool.deprecated = True
            tx.emit("LoanPoolDeprecated", pool_id=pool_id)

    def update_loan_pools_reward_indexes(
        self, loan_type_id: str, pool_ids: list[str], now: int | None = None
    ) -> None:
        with self._transaction("update_loan_pools_reward_indexes", {("loan_type", loan_type_id)}, now) as tx:
            loan_type = tx.loan_type(loan_type_id)
            for pool_id in pool_ids:
                loan_pool = loan_type.get_loan_pool(pool_id)
                self.rewards.update_reward_indexes(loan_pool, tx.now)
                tx.emit(
                    "RewardIndexesUpdated",
                    pool_id=pool_id,
                    collateral_reward_index=loan_pool.reward.collateral_reward_index,
                    borrow_reward_index=loan_pool.reward.borrow_reward_index,
                )

    # ------------------------------------------------------------------
    # User loans
    # ------------------------------------------------------------------

    def create_user_loan(self, loan_id: str, account_id: str, loan_type_id: str, now: int | None = None) -> None:
        keys = {("loan", loan_id), ("loan_type", loan_type_id)}
        with self._transaction("create_user_loan", keys, now) as tx:
            if loan_id in self.store:
                raise errors.UserLoanAlreadyCreated(loan_id)
            loan_type = tx.loan_type(loan_type_id)
            if loan_type.deprecated:
                raise errors.LoanTypeDeprecated(loan_type_id)
            tx.loans[loan_id] = UserLoan(loan_id=loan_id, account_id=account_id, loan_type_id=loan_type_id)
            tx.emit("CreateUserLoan", loan_id=loan_id, account_id=account_id, loan_type_id=loan_type_id)

    def delete_user_loan(self, loan_id: str, account_id: str, now: int | None = None) -> None:
        with self._transaction("delete_user_loan", self._loan_keys(loan_id), now) as tx:
            loan = tx.loan(loan_id, account_id)
            if not loan.is_empty:
                raise errors.LoanNotEmpty(loan_id)
            loan.is_active = False
            tx.emit("DeleteUserLoan", loan_id=loan_id, account_id=account_id)

    def update_user_loan_rewards(self, loan_id: str, now: int | None = None) -> None:
        """Accrue rewards on every collateral and borrow pool of a loan."""
        with self._transaction("update_user_loan_rewards", self._loan_keys(loan_id), now) as tx:
            loan = tx.loan(loan_id)
            loan_type = tx.loan_type(loan.loan_type_id)
            for pool_id in list(loan.col_pools):
                self._accrue_collateral(tx, loan, loan_type.get_loan_pool(pool_id))
            for pool_id in list(loan.bor_pools):
                self._accrue_borrow(tx, loan, loan_type.get_loan_pool(pool_id))
            tx.emit("UserLoanRewardsUpdated", loan_id=loan_id)

    # ------------------------------------------------------------------
    # Deposit and withdraw
    # ------------------------------------------------------------------

    def deposit(self, loan_id: str, account_id: str, pool_id: str, amount: int, now: int | None = None) -> int:
        """Deposit *amount* underlying as collateral; returns the share amount."""
        with self._transaction("deposit", self._loan_keys(loan_id, pool_id), now) as tx:
            loan = tx.loan(loan_id, account_id)
            loan_pool = self._active_loan_pool(tx, loan, pool_id)
            pool = tx.pool(pool_id)

            self._accrue_collateral(tx, loan, loan_pool)
            share_amount = pool.deposit(amount, self.oracle.price_feed(pool_id), tx.now)
            self._check_collateral_cap(tx, loan_pool, share_amount)

            self.store.increase_collateral(loan, pool_id, share_amount, loan_pool.reward.collateral_reward_index)
            loan_pool.collateral_used += share_amount
            tx.emit("Deposit", loan_id=loan_id, pool_id=pool_id, amount=amount, share_amount=share_amount)
        return share_amount

    def deposit_share_token(
        self, loan_id: str, account_id: str, pool_id: str, share_amount: int, now: int | None = None
    ) -> None:
        """Move share tokens held by *account_id* into the loan as collateral."""
        with self._transaction("deposit_share_token", self._loan_keys(loan_id, pool_id), now) as tx:
            loan = tx.loan(loan_id, account_id)
            loan_pool = self._active_loan_pool(tx, loan, pool_id)
            pool = tx.pool(pool_id)

            pool.update_interest_indexes(tx.now)
            self._accrue_collateral(tx, loan, loan_pool)
            pool.burn_share_token(account_id, share_amount)
            self._check_collateral_cap(tx, loan_pool, share_amount)

            self.store.increase_collateral(loan, pool_id, share_amount, loan_pool.reward.collateral_reward_index)
            loan_pool.collateral_used += share_amount
            tx.emit("DepositShareToken", loan_id=loan_id, pool_id=pool_id, share_amount=share_amount)

    def withdraw(
        self,
        loan_id: str,
        account_id: str,
        pool_id: str,
        amount: int,
        is_share_amount: bool = False,
        recipient: str | None = None,
        now: int | None = None,
    ) -> WithdrawResult:
        with self._transaction("withdraw", self._loan_keys(loan_id, pool_id), now) as tx:
            loan = tx.loan(loan_id, account_id)
            loan_pool = tx.loan_type(loan.loan_type_id).get_loan_pool(pool_id)
            loan.get_collateral(pool_id)
            pool = tx.pool(pool_id)

            self._accrue_collateral(tx, loan, loan_pool)
            underlying_amount, share_amount = pool.withdraw(amount, is_share_amount, tx.now)
            self.store.decrease_collateral(loan, pool_id, share_amount)
            loan_pool.collateral_used -= share_amount
            self._check_health(tx, loan)

            metadata = pool.token_pool.send_token(recipient or account_id, underlying_amount)
            tx.emit(
                "Withdraw",
                loan_id=loan_id,
                pool_id=pool_id,
                amount=underlying_amount,
                share_amount=share_amount,
            )
        return WithdrawResult(underlying_amount, share_amount, metadata)

    def withdraw_share_token(
        self, loan_id: str, account_id: str, pool_id: str, share_amount: int, now: int | None = None
    ) -> None:
        """Move collateral shares out of the loan to *account_id*'s share balance."""
        with self._transaction("withdraw_share_token", self._loan_keys(loan_id, pool_id), now) as tx:
            loan = tx.loan(loan_id, account_id)
            loan_pool = tx.loan_type(loan.loan_type_id).get_loan_pool(pool_id)
            loan.get_collateral(pool_id)
            pool = tx.pool(pool_id)

            pool.prepare_for_withdraw_share_token()
            pool.update_interest_indexes(tx.now)
            self._accrue_collateral(tx, loan, loan_pool)
            self.store.decrease_collateral(loan, pool_id, share_amount)
            loan_pool.collateral_used -= share_amount
            self._check_health(tx, loan)

            pool.mint_share_token(account_id, share_amount)
            tx.emit("WithdrawShareToken", loan_id=loan_id, pool_id=pool_id, share_amount=share_amount)

    # ------------------------------------------------------------------
    # Borrow and repay
    # ------------------------------------------------------------------

    def borrow(
        self,
        loan_id: str,
        account_id: str,
        pool_id: str,
        amount: int,
        max_stable_rate: int = 0,
        recipient: str | None = None,
        now: int | None = None,
    ) -> bytes:
        """Borrow *amount*; ``max_stable_rate > 0`` requests a stable borrow.

        Returns:
            Token-movement metadata from the pool's ``TokenPool``.
        """
        with self._transaction("borrow", self._loan_keys(loan_id, pool_id), now) as tx:
            loan = tx.loan(loan_id, account_id)
            loan_pool = self._active_loan_pool(tx, loan, pool_id)
            pool = tx.pool(pool_id)
            is_stable = max_stable_rate > 0

            existing = loan.borrows.get(pool_id)
            if existing is not None and existing.is_stable != is_stable:
                raise errors.BorrowTypeMismatch(loan_id, pool_id)

            self._accrue_borrow(tx, loan, loan_pool)
            feed = self.oracle.price_feed(pool_id)
            pool_params = pool.prepare_for_borrow(amount, max_stable_rate, feed, tx.now)

            value = calc_asset_dollar_value_round_up(loan_pool.borrow_used + amount, feed.price, feed.decimals)
            if value > loan_pool.params.borrow_cap * ONE_18_DP:
                raise errors.BorrowCapReached(loan.loan_type_id, pool_id)

            self.store.increase_borrow(
                loan,
                pool_id,
                amount,
                pool_params.variable_index,
                pool_params.stable_rate,
                is_stable,
                tx.now,
                loan_pool.reward.borrow_reward_index,
            )
            loan_pool.borrow_used += amount
            pool.update_with_borrow(amount, is_stable)
            self._check_health(tx, loan)

            metadata = pool.token_pool.send_token(recipient or account_id, amount)
            borrowed = loan.borrows.get(pool_id)
            tx.emit(
                "Borrow",
                loan_id=loan_id,
                pool_id=pool_id,
                amount=amount,
                stable_rate=borrowed.stable_interest_rate if borrowed else 0,
            )
        return metadata

    def repay(
        self,
        loan_id: str,
        account_id: str,
        pool_id: str,
        amount: int,
        max_over_repayment: int = 0,
        now: int | None = None,
    ) -> RepayResult:
        """Repay interest first, then principal.

        Any amount over the owed balance, up to *max_over_repayment*, is
        kept by the pool as retained fees.
        """
        with self._transaction("repay", self._loan_keys(loan_id, pool_id), now) as tx:
            loan = tx.loan(loan_id, account_id)
            loan_pool = tx.loan_type(loan.loan_type_id).get_loan_pool(pool_id)
            borrow = loan.get_borrow(pool_id)
            pool = tx.pool(pool_id)

            pool_params = pool.prepare_for_repay(tx.now)
            self.store.update_loan_borrow_interests(borrow, pool_params.variable_index, tx.now)

            excess = max(amount - borrow.balance, 0)
            if excess > max_over_repayment:
                raise errors.ExcessRepaymentExceeded(max_over_repayment, excess)
            repay_amount = amount - excess
            interest_paid = min(repay_amount, borrow.balance - borrow.amount)
            principal_paid = repay_amount - interest_paid
            loan_stable_rate = borrow.stable_interest_rate

            self._accrue_borrow(tx, loan, loan_pool, interest_paid)
            self.store.decrease_borrow(loan, pool_id, principal_paid, repay_amount)
            loan_pool.borrow_used -= principal_paid
            pool.update_with_repay(principal_paid, interest_paid, loan_stable_rate, excess)
            tx.emit(
                "Repay",
                loan_id=loan_id,
                pool_id=pool_id,
                principal_paid=principal_paid,
                interest_paid=interest_paid,
                excess=excess,
            )
        return RepayResult(principal_paid, interest_paid, excess)

    def repay_with_collateral(
        self, loan_id: str, account_id: str, pool_id: str, amount: int, now: int | None = None
    ) -> RepayResult:
        """Repay a borrow by burning collateral shares of the same pool."""
        with self._transaction("repay_with_collateral", self._loan_keys(loan_id, pool_id), now) as tx:
            loan = tx.loan(loan_id, account_id)
            loan_pool = tx.loan_type(loan.loan_type_id).get_loan_pool(pool_id)
            loan.get_collateral(pool_id)
            borrow = loan.get_borrow(pool_id)
            pool = tx.pool(pool_id)

            pool_params = pool.prepare_for_repay(tx.now)
            self.store.update_loan_borrow_interests(borrow, pool_params.variable_index, tx.now)

            repay_amount = min(amount, borrow.balance)
            interest_paid = min(repay_amount, borrow.balance - borrow.amount)
            principal_paid = repay_amount - interest_paid
            loan_stable_rate = borrow.stable_interest_rate

            self._accrue_collateral(tx, loan, loan_pool)
            self._accrue_borrow(tx, loan, loan_pool, interest_paid)
            share_amount = pool.update_with_repay_with_collateral(principal_paid, interest_paid, loan_stable_rate)
            self.store.decrease_collateral(loan, pool_id, share_amount)
            loan_pool.collateral_used -= share_amount
            self.store.decrease_borrow(loan, pool_id, principal_paid, repay_amount)
            loan_pool.borrow_used -= principal_paid
            tx.emit(
                "RepayWithCollateral",
                loan_id=loan_id,
                pool_id=pool_id,
                principal_paid=principal_paid,
                interest_paid=interest_paid,
                share_amount=share_amount,
            )
        return RepayResult(principal_paid, interest_paid, 0)

    # ------------------------------------------------------------------
    # Liquidation
    # ------------------------------------------------------------------

    def liquidate(
        self,
        violator_loan_id: str,
        liquidator_loan_id: str,
        liquidator_account_id: str,
        col_pool_id: str,
        bor_pool_id: str,
        max_repay_amount: int,
        min_seized_amount: int = 0,
        now: int | None = None,
    ) -> LiquidationResult:
        keys = self._loan_keys(violator_loan_id, col_pool_id, bor_pool_id)
        if liquidator_loan_id != violator_loan_id:
            keys |= self._loan_keys(liquidator_loan_id)
        with self._transaction("liquidate", keys, now) as tx:
            violator = tx.loan(violator_loan_id)
            liquidator = tx.loan(liquidator_loan_id, liquidator_account_id)
            loan_type = tx.loan_type(violator.loan_type_id)
            tx.pool(col_pool_id)
            tx.pool(bor_pool_id)

            result = self.liquidation.liquidate(
                violator,
                liquidator,
                loan_type,
                col_pool_id,
                bor_pool_id,
                max_repay_amount,
                min_seized_amount,
                tx.pool_view(),
                self.oracle,
                tx.rewards,
                tx.now,
            )
            tx.emit(
                "Liquidate",
                loan_id=violator_loan_id,
                pool_id=bor_pool_id,
                liquidator_loan_id=liquidator_loan_id,
                col_pool_id=col_pool_id,
                repay_amount=result.repay_amount,
                liquidator_share_amount=result.liquidator_share_amount,
                reserve_share_amount=result.reserve_share_amount,
            )
        return result

    # ------------------------------------------------------------------
    # Switch and rebalance
    # ------------------------------------------------------------------

    def switch_borrow_type(
        self, loan_id: str, account_id: str, pool_id: str, max_stable_rate: int, now: int | None = None
    ) -> None:
        """Switch to stable when ``max_stable_rate > 0``, otherwise to variable."""
        with self._transaction("switch_borrow_type", self._loan_keys(loan_id, pool_id), now) as tx:
            loan = tx.loan(loan_id, account_id)
            tx.loan_type(loan.loan_type_id).get_loan_pool(pool_id)
            pool = tx.pool(pool_id)
            to_stable = max_stable_rate > 0

            borrow = loan.borrows.get(pool_id)
            if to_stable and (borrow is None or borrow.is_stable):
                raise errors.NoVariableBorrowInLoanForPool(loan_id, pool_id)
            if not to_stable and (borrow is None or not borrow.is_stable):
                raise errors.NoStableBorrowInLoanForPool(loan_id, pool_id)

            pool_params = pool.prepare_for_switch_borrow_type(borrow.amount, max_stable_rate, tx.now)
            previous = self.store.switch_borrow_type(
                loan, pool_id, to_stable, pool_params.variable_index, pool_params.stable_rate, tx.now
            )
            pool.update_with_switch_borrow_type(previous.amount, to_stable, previous.stable_interest_rate)
            self._check_health(tx, loan)
            tx.emit("SwitchBorrowType", loan_id=loan_id, pool_id=pool_id, to_stable=to_stable)

    def rebalance_up(self, loan_id: str, pool_id: str, now: int | None = None) -> None:
        with self._transaction("rebalance_up", self._loan_keys(loan_id, pool_id), now) as tx:
            loan = tx.loan(loan_id)
            borrow = loan.borrows.get(pool_id)
            if borrow is None or not borrow.is_stable:
                raise errors.NoStableBorrowInLoanForPool(loan_id, pool_id)
            pool = tx.pool(pool_id)

            pool_params = pool.prepare_for_rebalance_up(tx.now)
            previous = self.store.rebalance_stable_rate(loan, pool_id, pool_params.stable_rate, tx.now)
            pool.update_with_rebalance(previous.amount, previous.stable_interest_rate)
            tx.emit("RebalanceUp", loan_id=loan_id, pool_id=pool_id, stable_rate=pool_params.stable_rate)

    def rebalance_down(self, loan_id: str, pool_id: str, now: int | None = None) -> None:
        with self._transaction("rebalance_down", self._loan_keys(loan_id, pool_id), now) as tx:
            loan = tx.loan(loan_id)
            borrow = loan.borrows.get(pool_id)
            if borrow is None or not borrow.is_stable:
                raise errors.NoStableBorrowInLoanForPool(loan_id, pool_id)
            pool = tx.pool(pool_id)

            pool_params = pool.prepare_for_rebalance_down(tx.now)
            if borrow.stable_interest_rate < pool_params.threshold:
                raise errors.RebalanceDownThresholdNotReached(loan_id, pool_id)
            previous = self.store.rebalance_stable_rate(loan, pool_id, pool_params.stable_rate, tx.now)
            pool.update_with_rebalance(previous.amount, previous.stable_interest_rate)
            tx.emit("RebalanceDown", loan_id=loan_id, pool_id=pool_id, stable_rate=pool_params.stable_rate)
