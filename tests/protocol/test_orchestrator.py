"""Tests for the LoanOrchestrator operation surface."""

import json
import threading
from dataclasses import replace

import pytest

from src.data.constants import ETH, ONE_18_DP, SECONDS_IN_YEAR, STETH, USDC
from src.data.static_params import (
    DEFAULT_POOL_PARAMS,
    DEFAULT_RATE_PARAMS,
    default_loan_pool_params,
)
from src.protocol import errors
from src.protocol.loan_type import RewardParams, validate_loan_pool_params
from src.protocol.orchestrator import LoanOrchestrator, RepayResult, WithdrawResult
from src.protocol.pool import PoolLedger
from src.protocol.token_pool import BridgedTokenPool, JsonBridgeAdapter

T0 = 1_700_000_000
LOAN_TYPE = "general"
USDC_10K = 10_000 * 10**6


@pytest.fixture
def alice(funded: LoanOrchestrator) -> LoanOrchestrator:
    """Funded ledger plus an empty loan owned by alice."""
    funded.create_user_loan("alice_loan", "alice", LOAN_TYPE)
    return funded


# ======================================================================
# Loan types and pools
# ======================================================================


class TestAdmin:
    def test_duplicate_pool(self, orchestrator: LoanOrchestrator) -> None:
        with pytest.raises(errors.PoolAlreadyAdded):
            orchestrator.add_pool(USDC, DEFAULT_POOL_PARAMS)

    def test_unknown_pool(self, orchestrator: LoanOrchestrator) -> None:
        with pytest.raises(errors.PoolUnknown):
            orchestrator.get_pool("DAI")
        with pytest.raises(errors.PoolUnknown):
            orchestrator.add_pool_to_loan_type(LOAN_TYPE, "DAI", default_loan_pool_params(USDC))

    def test_duplicate_loan_type(self, orchestrator: LoanOrchestrator) -> None:
        with pytest.raises(errors.LoanTypeAlreadyCreated):
            orchestrator.create_loan_type(LOAN_TYPE, 12_500)

    def test_unknown_loan_type(self, orchestrator: LoanOrchestrator) -> None:
        with pytest.raises(errors.LoanTypeUnknown):
            orchestrator.get_loan_type("missing")

    def test_target_health_below_one(self, orchestrator: LoanOrchestrator) -> None:
        with pytest.raises(errors.LoanTargetHealthTooLow):
            orchestrator.create_loan_type("risky", 9_999)
        with pytest.raises(errors.LoanTypeUnknown):
            orchestrator.get_loan_type("risky")

    def test_duplicate_loan_pool(self, orchestrator: LoanOrchestrator) -> None:
        with pytest.raises(errors.LoanPoolAlreadyAdded):
            orchestrator.add_pool_to_loan_type(LOAN_TYPE, USDC, default_loan_pool_params(USDC))

    def test_loan_pool_params_validated(self, orchestrator: LoanOrchestrator) -> None:
        orchestrator.create_loan_type("other", 12_500)
        params = replace(default_loan_pool_params(USDC), collateral_factor=10_001)
        with pytest.raises(errors.CollateralFactorTooHigh):
            orchestrator.add_pool_to_loan_type("other", USDC, params)
        assert orchestrator.get_loan_type("other").pools == {}

    def test_pool_param_update_refreshes_rates(self, funded: LoanOrchestrator) -> None:
        rates = replace(DEFAULT_RATE_PARAMS, vr0=0)
        funded.update_pool_rate_params(ETH, rates)
        pool = funded.get_pool(ETH)
        assert pool.params.rates.vr0 == 0
        assert pool.state.variable_rate == 0
        assert funded.events.last().kind == "PoolParamsUpdated"

    def test_deprecate_loan_type(self, funded: LoanOrchestrator) -> None:
        funded.deprecate_loan_type(LOAN_TYPE)
        with pytest.raises(errors.LoanTypeAlreadyDeprecated):
            funded.deprecate_loan_type(LOAN_TYPE)
        with pytest.raises(errors.LoanTypeDeprecated):
            funded.create_user_loan("late", "carol", LOAN_TYPE)
        with pytest.raises(errors.LoanTypeDeprecated):
            funded.deposit("lp", "lp_account", USDC, 10**6)

    def test_deprecated_loan_pool_allows_withdraw(self, funded: LoanOrchestrator) -> None:
        funded.deprecate_pool_in_loan_type(LOAN_TYPE, ETH)
        with pytest.raises(errors.LoanPoolAlreadyDeprecated):
            funded.deprecate_pool_in_loan_type(LOAN_TYPE, ETH)
        with pytest.raises(errors.LoanPoolDeprecated):
            funded.deposit("lp", "lp_account", ETH, 10**18)
        result = funded.withdraw("lp", "lp_account", ETH, 10**18)
        assert result.underlying_amount == 10**18

    def test_clear_pool_fees(self, funded: LoanOrchestrator) -> None:
        funded.create_user_loan("alice_loan", "alice", LOAN_TYPE)
        funded.deposit("alice_loan", "alice", USDC, USDC_10K)
        funded.borrow("alice_loan", "alice", ETH, ONE_18_DP)

        retained = funded.clear_pool_fees(ETH, now=T0 + SECONDS_IN_YEAR)
        # 10% of 1 ETH debt over a year
        assert retained == 10**17
        assert funded.get_pool(ETH).state.total_retained == 0
        assert funded.events.last().data["amount"] == retained


# ======================================================================
# User loans
# ======================================================================


class TestUserLoans:
    def test_create_and_delete(self, orchestrator: LoanOrchestrator) -> None:
        orchestrator.create_user_loan("loan-1", "alice", LOAN_TYPE)
        with pytest.raises(errors.UserLoanAlreadyCreated):
            orchestrator.create_user_loan("loan-1", "alice", LOAN_TYPE)

        orchestrator.delete_user_loan("loan-1", "alice")
        with pytest.raises(errors.UnknownUserLoan):
            orchestrator.get_user_loan("loan-1")

    def test_delete_requires_empty_loan(self, funded: LoanOrchestrator) -> None:
        with pytest.raises(errors.LoanNotEmpty):
            funded.delete_user_loan("lp", "lp_account")

    def test_owner_checked(self, funded: LoanOrchestrator) -> None:
        with pytest.raises(errors.NotAccountOwner):
            funded.deposit("lp", "mallory", USDC, 10**6)

    def test_returned_loan_is_a_copy(self, funded: LoanOrchestrator) -> None:
        loan = funded.get_user_loan("lp")
        loan.collaterals[USDC].balance = 0
        assert funded.get_user_loan("lp").collaterals[USDC].balance == 1_000_000 * 10**6


# ======================================================================
# Deposit and withdraw
# ======================================================================


class TestDepositWithdraw:
    def test_deposit_books_collateral(self, alice: LoanOrchestrator) -> None:
        shares = alice.deposit("alice_loan", "alice", USDC, USDC_10K)
        assert shares == USDC_10K

        loan = alice.get_user_loan("alice_loan")
        assert loan.col_pools == [USDC]
        assert loan.collaterals[USDC].balance == shares
        assert alice.get_loan_type(LOAN_TYPE).pools[USDC].collateral_used == 1_010_000 * 10**6
        assert alice.get_pool(USDC).state.deposit_total == 1_010_000 * 10**6

        event = alice.events.last("Deposit")
        assert event.loan_id == "alice_loan"
        assert event.data == {"amount": USDC_10K, "share_amount": shares}

    def test_collateral_cap_rejects_atomically(self, alice: LoanOrchestrator) -> None:
        alice.update_loan_pool_caps(LOAN_TYPE, USDC, collateral_cap=1, borrow_cap=10_000_000)
        deposit_total = alice.get_pool(USDC).state.deposit_total
        events_before = len(alice.events)

        with pytest.raises(errors.CollateralCapReached):
            alice.deposit("alice_loan", "alice", USDC, USDC_10K)

        assert alice.get_pool(USDC).state.deposit_total == deposit_total
        assert alice.get_user_loan("alice_loan").col_pools == []
        assert len(alice.events) == events_before

    def test_withdraw_sends_underlying(self, alice: LoanOrchestrator) -> None:
        alice.deposit("alice_loan", "alice", USDC, USDC_10K)
        result = alice.withdraw("alice_loan", "alice", USDC, 10**9, recipient="0xabc")

        assert result == WithdrawResult(underlying_amount=10**9, share_amount=10**9, metadata=b"")
        assert alice.get_pool(USDC).token_pool.sent == [("0xabc", 10**9)]
        assert alice.get_user_loan("alice_loan").collaterals[USDC].balance == 9 * 10**9

    def test_withdraw_by_shares_closes_entry(self, alice: LoanOrchestrator) -> None:
        alice.deposit("alice_loan", "alice", USDC, USDC_10K)
        result = alice.withdraw("alice_loan", "alice", USDC, USDC_10K, is_share_amount=True)
        assert result.underlying_amount == USDC_10K
        assert alice.get_user_loan("alice_loan").col_pools == []

    def test_withdraw_rejected_when_unhealthy(self, alice: LoanOrchestrator) -> None:
        alice.deposit("alice_loan", "alice", USDC, USDC_10K)
        alice.borrow("alice_loan", "alice", ETH, 3 * ONE_18_DP)

        with pytest.raises(errors.UnderCollateralizedLoan):
            alice.withdraw("alice_loan", "alice", USDC, 5 * 10**9)

        assert alice.get_pool(USDC).token_pool.sent == []
        assert alice.get_user_loan("alice_loan").collaterals[USDC].balance == USDC_10K

    def test_withdraw_without_collateral(self, alice: LoanOrchestrator) -> None:
        with pytest.raises(errors.NoCollateralInLoanForPool):
            alice.withdraw("alice_loan", "alice", USDC, 10**6)

    def test_share_token_round_trip(self, funded: LoanOrchestrator) -> None:
        amount = 1_000 * 10**6
        funded.withdraw_share_token("lp", "lp_account", USDC, amount)
        pool = funded.get_pool(USDC)
        assert pool.share_balance("lp_account") == amount
        assert funded.get_user_loan("lp").collaterals[USDC].balance == 999_000 * 10**6

        with pytest.raises(errors.InsufficientShareBalance):
            funded.deposit_share_token("lp", "lp_account", USDC, amount + 1)

        funded.deposit_share_token("lp", "lp_account", USDC, amount)
        assert pool.share_balance("lp_account") == 0
        assert funded.get_user_loan("lp").collaterals[USDC].balance == 1_000_000 * 10**6


# ======================================================================
# Borrow and repay
# ======================================================================


class TestBorrow:
    def test_borrow_sends_tokens(self, alice: LoanOrchestrator) -> None:
        alice.deposit("alice_loan", "alice", USDC, USDC_10K)
        metadata = alice.borrow("alice_loan", "alice", ETH, 3 * ONE_18_DP)

        assert metadata == b""
        assert alice.get_pool(ETH).token_pool.sent == [("alice", 3 * ONE_18_DP)]
        loan = alice.get_user_loan("alice_loan")
        assert loan.borrows[ETH].amount == 3 * ONE_18_DP
        assert not loan.borrows[ETH].is_stable
        assert alice.get_loan_type(LOAN_TYPE).pools[ETH].borrow_used == 3 * ONE_18_DP
        assert alice.get_pool(ETH).state.variable_total == 3 * ONE_18_DP

    def test_zero_borrow_leaves_no_entry(self, alice: LoanOrchestrator) -> None:
        alice.deposit("alice_loan", "alice", USDC, USDC_10K)
        alice.borrow("alice_loan", "alice", ETH, 0)

        loan = alice.get_user_loan("alice_loan")
        assert loan.bor_pools == []
        assert ETH not in loan.borrows
        assert alice.events.last("Borrow").data["amount"] == 0

        # nothing blocks closing the loan afterwards
        alice.withdraw("alice_loan", "alice", USDC, USDC_10K, is_share_amount=True)
        alice.delete_user_loan("alice_loan", "alice")

    def test_borrow_beyond_health(self, alice: LoanOrchestrator) -> None:
        alice.deposit("alice_loan", "alice", USDC, USDC_10K)
        # 8500 effective collateral against 4 * 2000 * 1.1
        with pytest.raises(errors.UnderCollateralizedLoan):
            alice.borrow("alice_loan", "alice", ETH, 4 * ONE_18_DP)
        assert alice.get_pool(ETH).token_pool.sent == []
        assert alice.get_pool(ETH).state.variable_total == 0

    def test_loan_pool_borrow_cap(self, alice: LoanOrchestrator) -> None:
        alice.deposit("alice_loan", "alice", USDC, USDC_10K)
        alice.update_loan_pool_caps(LOAN_TYPE, ETH, collateral_cap=20_000_000, borrow_cap=1_000)
        with pytest.raises(errors.BorrowCapReached):
            alice.borrow("alice_loan", "alice", ETH, ONE_18_DP)

    def test_borrow_regime_mismatch(self, alice: LoanOrchestrator) -> None:
        alice.deposit("alice_loan", "alice", USDC, USDC_10K)
        alice.borrow("alice_loan", "alice", ETH, ONE_18_DP)
        with pytest.raises(errors.BorrowTypeMismatch):
            alice.borrow("alice_loan", "alice", ETH, ONE_18_DP, max_stable_rate=ONE_18_DP)

    def test_stable_borrow_locks_rate(self, alice: LoanOrchestrator) -> None:
        alice.deposit("alice_loan", "alice", USDC, USDC_10K)
        alice.borrow("alice_loan", "alice", ETH, 10**17, max_stable_rate=ONE_18_DP)

        borrow = alice.get_user_loan("alice_loan").borrows[ETH]
        # vr1 + sr0 at zero utilisation
        assert borrow.stable_interest_rate == 7 * 10**16
        assert alice.get_pool(ETH).state.stable_total == 10**17
        assert alice.events.last("Borrow").data["stable_rate"] == 7 * 10**16

    def test_max_stable_rate_exceeded(self, alice: LoanOrchestrator) -> None:
        alice.deposit("alice_loan", "alice", USDC, USDC_10K)
        with pytest.raises(errors.MaxStableRateExceeded):
            alice.borrow("alice_loan", "alice", ETH, 10**17, max_stable_rate=10**16)

    def test_bridged_pool_forwards_metadata(self, alice: LoanOrchestrator) -> None:
        bridge = BridgedTokenPool(STETH, "0xsteth", JsonBridgeAdapter(chain_id=10))
        alice.add_pool(STETH, DEFAULT_POOL_PARAMS, token_pool=bridge)
        alice.add_pool_to_loan_type(LOAN_TYPE, STETH, default_loan_pool_params(STETH))
        alice.deposit("lp", "lp_account", STETH, 10 * ONE_18_DP)
        alice.deposit("alice_loan", "alice", USDC, USDC_10K)

        metadata = alice.borrow("alice_loan", "alice", STETH, ONE_18_DP, recipient="0xalice")

        assert json.loads(metadata) == {
            "amount": str(ONE_18_DP),
            "chain_id": 10,
            "recipient": "0xalice",
            "token": "0xsteth",
        }


class TestRepay:
    @pytest.fixture
    def borrowed(self, alice: LoanOrchestrator) -> LoanOrchestrator:
        alice.deposit("alice_loan", "alice", USDC, USDC_10K)
        alice.borrow("alice_loan", "alice", ETH, ONE_18_DP)
        return alice

    def test_interest_paid_first(self, borrowed: LoanOrchestrator) -> None:
        result = borrowed.repay("alice_loan", "alice", ETH, 10**15, now=T0 + SECONDS_IN_YEAR)
        assert result == RepayResult(principal_paid=0, interest_paid=10**15, excess=0)
        borrow = borrowed.get_user_loan("alice_loan").borrows[ETH]
        assert borrow.amount == ONE_18_DP
        assert borrowed.get_user_pool_rewards("alice", ETH).interest_paid == 10**15

    def test_full_repay_with_excess(self, borrowed: LoanOrchestrator) -> None:
        t1 = T0 + SECONDS_IN_YEAR
        borrowed.repay("alice_loan", "alice", ETH, 10**15, now=t1)
        balance = borrowed.get_user_loan("alice_loan").borrows[ETH].balance
        retained = borrowed.get_pool(ETH).state.total_retained

        with pytest.raises(errors.ExcessRepaymentExceeded):
            borrowed.repay("alice_loan", "alice", ETH, balance + 11, max_over_repayment=10, now=t1)

        result = borrowed.repay("alice_loan", "alice", ETH, balance + 10, max_over_repayment=10, now=t1)
        assert result == RepayResult(principal_paid=ONE_18_DP, interest_paid=balance - ONE_18_DP, excess=10)

        loan = borrowed.get_user_loan("alice_loan")
        assert loan.bor_pools == []
        assert borrowed.get_loan_type(LOAN_TYPE).pools[ETH].borrow_used == 0
        pool = borrowed.get_pool(ETH)
        assert pool.state.variable_total == 0
        assert pool.state.total_retained == retained + 10

    def test_repay_without_borrow(self, alice: LoanOrchestrator) -> None:
        with pytest.raises(errors.NoBorrowInLoanForPool):
            alice.repay("alice_loan", "alice", ETH, ONE_18_DP)

    def test_repay_with_collateral(self, alice: LoanOrchestrator) -> None:
        alice.deposit("alice_loan", "alice", USDC, USDC_10K)
        alice.borrow("alice_loan", "alice", USDC, 10**9)

        result = alice.repay_with_collateral("alice_loan", "alice", USDC, 5 * 10**8)

        assert result == RepayResult(principal_paid=5 * 10**8, interest_paid=0, excess=0)
        loan = alice.get_user_loan("alice_loan")
        assert loan.collaterals[USDC].balance == 95 * 10**8
        assert loan.borrows[USDC].balance == 5 * 10**8
        assert alice.get_pool(USDC).state.variable_total == 5 * 10**8


# ======================================================================
# Switch and rebalance
# ======================================================================


class TestSwitchRebalance:
    @pytest.fixture
    def stable(self, alice: LoanOrchestrator) -> LoanOrchestrator:
        alice.deposit("alice_loan", "alice", USDC, USDC_10K)
        alice.borrow("alice_loan", "alice", ETH, 10**17, max_stable_rate=ONE_18_DP)
        return alice

    def test_switch_requires_opposite_regime(self, stable: LoanOrchestrator) -> None:
        with pytest.raises(errors.NoVariableBorrowInLoanForPool):
            stable.switch_borrow_type("alice_loan", "alice", ETH, max_stable_rate=ONE_18_DP)

    def test_switch_to_variable(self, stable: LoanOrchestrator) -> None:
        stable.switch_borrow_type("alice_loan", "alice", ETH, max_stable_rate=0)

        borrow = stable.get_user_loan("alice_loan").borrows[ETH]
        assert borrow.stable_interest_rate == 0
        state = stable.get_pool(ETH).state
        assert state.stable_total == 0
        assert state.average_stable_rate == 0
        assert state.variable_total == 10**17

    def test_switch_to_stable_moves_pool_totals(self, alice: LoanOrchestrator) -> None:
        alice.deposit("alice_loan", "alice", USDC, USDC_10K)
        alice.borrow("alice_loan", "alice", ETH, 10**17)
        offered = alice.get_pool(ETH).state.stable_rate

        alice.switch_borrow_type("alice_loan", "alice", ETH, max_stable_rate=ONE_18_DP)

        borrow = alice.get_user_loan("alice_loan").borrows[ETH]
        assert borrow.is_stable
        assert borrow.stable_interest_rate == offered
        assert borrow.amount == 10**17
        state = alice.get_pool(ETH).state
        assert state.variable_total == 0
        assert state.stable_total == 10**17
        assert state.average_stable_rate == pytest.approx(offered, abs=10)
        assert alice.events.last().kind == "SwitchBorrowType"

    def test_switch_without_borrow(self, alice: LoanOrchestrator) -> None:
        with pytest.raises(errors.NoStableBorrowInLoanForPool):
            alice.switch_borrow_type("alice_loan", "alice", ETH, max_stable_rate=0)

    def test_rebalance_down_threshold(self, stable: LoanOrchestrator) -> None:
        # the pool stable rate now carries the stable-share premium
        with pytest.raises(errors.RebalanceDownThresholdNotReached):
            stable.rebalance_down("alice_loan", ETH)

    def test_rebalance_down_reprices(self, stable: LoanOrchestrator) -> None:
        cheap = replace(DEFAULT_RATE_PARAMS, vr1=10_000, sr0=0, sr1=0, sr3=0)
        stable.update_pool_rate_params(ETH, cheap)

        stable.rebalance_down("alice_loan", ETH)

        borrow = stable.get_user_loan("alice_loan").borrows[ETH]
        assert borrow.stable_interest_rate == 10**16
        assert borrow.stable_interest_rate == stable.get_pool(ETH).state.stable_rate

    def test_rebalance_up_utilisation(self, stable: LoanOrchestrator) -> None:
        with pytest.raises(errors.RebalanceUpUtilisationRatioNotReached):
            stable.rebalance_up("alice_loan", ETH)

    def test_rebalance_up_reprices_to_pool_rate(self, stable: LoanOrchestrator) -> None:
        params = replace(
            DEFAULT_POOL_PARAMS, rebalance_up_utilisation_ratio=0, rebalance_up_deposit_interest_rate=10_000
        )
        stable.update_pool_params(ETH, params)
        # the stable-share premium lifts the offered rate above the locked 7%
        offered = stable.get_pool(ETH).state.stable_rate
        assert offered > 7 * 10**16

        stable.rebalance_up("alice_loan", ETH)

        borrow = stable.get_user_loan("alice_loan").borrows[ETH]
        assert borrow.stable_interest_rate == offered
        assert borrow.amount == 10**17
        state = stable.get_pool(ETH).state
        assert state.stable_total == 10**17
        assert state.average_stable_rate == pytest.approx(offered, abs=10)
        assert stable.events.last("RebalanceUp").data["stable_rate"] == offered

    def test_rebalance_requires_stable_borrow(self, alice: LoanOrchestrator) -> None:
        alice.deposit("alice_loan", "alice", USDC, USDC_10K)
        alice.borrow("alice_loan", "alice", ETH, 10**17)
        with pytest.raises(errors.NoStableBorrowInLoanForPool):
            alice.rebalance_up("alice_loan", ETH)
        with pytest.raises(errors.NoStableBorrowInLoanForPool):
            alice.rebalance_down("alice_loan", ETH)


# ======================================================================
# Rewards, views and concurrency
# ======================================================================


class TestRewards:
    def test_collateral_rewards_shared_by_amount(self, alice: LoanOrchestrator) -> None:
        alice.update_loan_pool_reward_params(LOAN_TYPE, ETH, RewardParams(collateral_speed=10**36))
        alice.deposit("alice_loan", "alice", ETH, 100 * ONE_18_DP)

        alice.update_user_loan_rewards("alice_loan", now=T0 + 100)

        # half of 1e18 per second for 100 seconds
        assert alice.get_user_pool_rewards("alice", ETH).collateral == 50 * ONE_18_DP
        reward = alice.get_loan_type(LOAN_TYPE).pools[ETH].reward
        assert reward.collateral_reward_index == 5 * 10**17
        assert reward.last_update == T0 + 100

    def test_update_loan_pools_reward_indexes(self, funded: LoanOrchestrator) -> None:
        funded.update_loan_pool_reward_params(LOAN_TYPE, USDC, RewardParams(collateral_speed=10**36))
        funded.update_loan_pools_reward_indexes(LOAN_TYPE, [USDC, ETH], now=T0 + 10)

        pools = funded.get_loan_type(LOAN_TYPE).pools
        assert pools[USDC].reward.collateral_reward_index == 10 * 10**36 // (1_000_000 * 10**6)
        assert pools[ETH].reward.collateral_reward_index == 0
        assert len(funded.events.of_kind("RewardIndexesUpdated")) == 2


class TestViews:
    def test_loan_liquidity(self, funded: LoanOrchestrator) -> None:
        liquidity = funded.get_loan_liquidity("lp")
        assert liquidity.collateral_value == 1_200_000 * 10**8
        assert liquidity.effective_collateral_value == 1_010_000 * 10**8
        assert liquidity.borrow_value == 0
        assert funded.is_user_loan_over_collateralized("lp")

    def test_event_frame(self, funded: LoanOrchestrator) -> None:
        frame = funded.events.to_frame()
        assert len(frame) == len(funded.events)
        assert list(frame["kind"]).count("Deposit") == 2
        assert {"kind", "timestamp", "loan_id", "pool_id", "amount"} <= set(frame.columns)


class TestConcurrency:
    def test_parallel_deposits(self, funded: LoanOrchestrator) -> None:
        amount = 1_000 * 10**6
        n_threads = 8
        for i in range(n_threads):
            funded.create_user_loan(f"loan-{i}", f"account-{i}", LOAN_TYPE)

        def run(i: int) -> None:
            funded.deposit(f"loan-{i}", f"account-{i}", USDC, amount)

        threads = [threading.Thread(target=run, args=(i,)) for i in range(n_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        expected = 1_000_000 * 10**6 + n_threads * amount
        assert funded.get_pool(USDC).state.deposit_total == expected
        assert funded.get_loan_type(LOAN_TYPE).pools[USDC].collateral_used == expected
        assert len(funded.events.of_kind("Deposit")) == 2 + n_threads

    def test_partial_pool_updates_compose(self, funded: LoanOrchestrator, monkeypatch: pytest.MonkeyPatch) -> None:
        entered = threading.Event()
        release = threading.Event()
        update_params = PoolLedger.update_params

        def held_update(pool: PoolLedger, params, now: int) -> None:
            entered.set()
            release.wait(timeout=5)
            update_params(pool, params, now)

        monkeypatch.setattr(PoolLedger, "update_params", held_update)
        caps = replace(DEFAULT_POOL_PARAMS.caps, borrow=1)
        rates = replace(DEFAULT_RATE_PARAMS, vr0=50_000)
        first = threading.Thread(target=funded.update_pool_caps, args=(ETH, caps))
        second = threading.Thread(target=funded.update_pool_rate_params, args=(ETH, rates))

        first.start()
        assert entered.wait(timeout=5)
        second.start()
        second.join(timeout=0.2)  # waits on the pool lock
        release.set()
        first.join()
        second.join()

        params = funded.get_pool(ETH).params
        assert params.caps.borrow == 1
        assert params.rates.vr0 == 50_000

    def test_loan_pool_updates_compose(self, funded: LoanOrchestrator, monkeypatch: pytest.MonkeyPatch) -> None:
        entered = threading.Event()
        release = threading.Event()

        def held_validate(params) -> None:
            entered.set()
            release.wait(timeout=5)
            validate_loan_pool_params(params)

        monkeypatch.setattr("src.protocol.orchestrator.validate_loan_pool_params", held_validate)
        bonus = replace(default_loan_pool_params(ETH), liquidation_bonus=1_000)
        first = threading.Thread(target=funded.update_loan_pool_params, args=(LOAN_TYPE, ETH, bonus))
        second = threading.Thread(
            target=funded.update_loan_pool_caps,
            args=(LOAN_TYPE, ETH),
            kwargs={"collateral_cap": 1, "borrow_cap": 2},
        )

        first.start()
        assert entered.wait(timeout=5)
        second.start()
        second.join(timeout=0.2)
        release.set()
        first.join()
        second.join()

        params = funded.get_loan_type(LOAN_TYPE).pools[ETH].params
        assert params.liquidation_bonus == 1_000
        assert (params.collateral_cap, params.borrow_cap) == (1, 2)
