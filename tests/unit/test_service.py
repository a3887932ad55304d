"""
test_service.py - Unit tests for the LendingService query surface

Tests:
- create_loan from risk signals
- Loan analytics and payment schedules
- Payment history with and without a loan filter
- Auto-distribution of payments to fractional investors
- Rates, market overview, user loans, portfolio stats
- Configuration wiring (threshold, journal capacity, history limit)
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from nftlend import (
    EngineConfig,
    InMemorySettlementAuthority,
    InvalidLoanParameters,
    LendingService,
    LoanNotFound,
    LoanStatus,
    NotEligibleForLiquidation,
    PaymentKind,
    PortfolioHealth,
    RiskSignals,
    RiskTier,
    StaticValuationSource,
)
from tests.conftest import BORROWER, make_ref


def _open(service, valuation, value="2000", principal="1000", days=30, tier=1, borrower=BORROWER):
    ref = make_ref()
    valuation.update_value(ref, Decimal(value))
    return service.create_loan(borrower, ref, Decimal(principal), days, RiskSignals(risk_tier=tier))


class TestCreate:

    def test_rate_comes_from_signals(self, service, valuation):
        loan = _open(service, valuation, tier=4)
        assert loan.interest_rate_bps == 2500
        assert service.get_risk_assessment(loan.loan_id).risk_tier == RiskTier.VERY_HIGH

    def test_bad_signals_rejected_before_settlement(self, service, settlement):
        with pytest.raises(InvalidLoanParameters):
            service.create_loan(BORROWER, make_ref(), Decimal("1000"), 30, RiskSignals(risk_tier=9))
        assert settlement.calls == []

    def test_assess_risk_quotes_without_creating(self, service):
        assert service.assess_risk(RiskSignals(risk_tier=2)).recommended_rate_bps == 1200
        assert service.get_market_overview().total_loans_created == 0


class TestAnalytics:

    def test_fresh_loan(self, service, valued_loan):
        analytics = service.get_loan_analytics(valued_loan.loan_id)
        assert analytics.loan == valued_loan
        assert analytics.current_debt == Decimal("1000")
        assert analytics.collateral_value == Decimal("2000")
        assert analytics.ltv_percent == Decimal("50.00")
        assert not analytics.is_liquidation_eligible
        assert analytics.days_remaining == 30
        assert analytics.total_paid == Decimal("0")
        assert len(analytics.payment_schedule) == 1
        # One month left: the whole balance plus a month of interest
        assert analytics.monthly_payment == Decimal("1006.666667")

    def test_accrues_with_time(self, service, valued_loan, clock):
        clock.advance(days=73)
        # 1000 * 8% * 73 / 365 = 16
        assert service.get_loan_analytics(valued_loan.loan_id).current_debt == Decimal("1016")

    def test_eligible_flag(self, service, valuation, valued_loan):
        valuation.update_value(valued_loan.collateral_ref, Decimal("1200"))
        analytics = service.get_loan_analytics(valued_loan.loan_id)
        assert analytics.is_liquidation_eligible
        assert analytics.ltv_percent == Decimal("83.33")

    def test_repaid_loan(self, service, valued_loan):
        service.repay_full(valued_loan.loan_id)
        analytics = service.get_loan_analytics(valued_loan.loan_id)
        assert analytics.status == LoanStatus.REPAID
        assert analytics.current_debt == Decimal("0")
        assert analytics.monthly_payment == Decimal("0")
        assert analytics.payment_schedule == []
        assert analytics.total_paid == Decimal("1000")

    def test_to_dict(self, service, valued_loan):
        data = service.get_loan_analytics(valued_loan.loan_id).to_dict()
        assert data["loan_id"] == valued_loan.loan_id
        assert data["is_liquidation_eligible"] is False
        assert data["installments"] == 1

    def test_unknown_loan(self, service):
        with pytest.raises(LoanNotFound):
            service.get_loan_analytics(5)


class TestPaymentSchedule:

    def test_installments_cover_remaining_term(self, service, valuation, clock):
        loan = _open(service, valuation, days=90)
        schedule = service.get_payment_schedule(loan.loan_id)
        assert len(schedule) == 3
        assert schedule[0].due_date == clock.now() + timedelta(days=30)
        assert schedule[-1].remaining_balance == Decimal("0")
        assert sum(row.principal_payment for row in schedule) == Decimal("1000")

    def test_schedule_follows_remaining_principal(self, service, valuation):
        loan = _open(service, valuation, days=60)
        service.apply_payment(loan.loan_id, Decimal("400"))
        schedule = service.get_payment_schedule(loan.loan_id)
        assert sum(row.principal_payment for row in schedule) == Decimal("600")

    def test_partial_month_counts_as_installment(self, service, valuation):
        loan = _open(service, valuation, days=45)
        assert len(service.get_payment_schedule(loan.loan_id)) == 2

    def test_matured_loan_has_no_installments(self, service, valued_loan, clock):
        clock.advance(days=31)
        assert service.get_payment_schedule(valued_loan.loan_id) == []

    def test_loan_in_liquidation_has_no_schedule(self, service, valuation, valued_loan):
        valuation.update_value(valued_loan.collateral_ref, Decimal("1000"))
        service.initiate_liquidation(valued_loan.loan_id)
        assert service.get_payment_schedule(valued_loan.loan_id) == []


class TestLiquidationSurface:

    def test_initiate_and_finalize(self, service, valuation, valued_loan):
        valuation.update_value(valued_loan.collateral_ref, Decimal("1000"))
        assert service.initiate_liquidation(valued_loan.loan_id).status == LoanStatus.PENDING_LIQUIDATION
        assert service.finalize_liquidation(valued_loan.loan_id).status == LoanStatus.LIQUIDATED

    def test_threshold_from_config(self, settlement, valuation, clock):
        service = LendingService(
            settlement, valuation, config=EngineConfig(liquidation_threshold_bps=5000), clock=clock
        )
        loan = _open(service, valuation, value="1900")
        assert service.initiate_liquidation(loan.loan_id).status == LoanStatus.PENDING_LIQUIDATION

    def test_healthy_loan_refused(self, service, valued_loan):
        with pytest.raises(NotEligibleForLiquidation):
            service.initiate_liquidation(valued_loan.loan_id)

    def test_sweep(self, service, valuation):
        healthy = _open(service, valuation, value="5000")
        risky = _open(service, valuation, value="1000")
        report = service.sweep_liquidations()
        assert [c.loan_id for c in report.eligible] == [risky.loan_id]
        assert service.get_loan(risky.loan_id).status == LoanStatus.ACTIVE

        report = service.sweep_liquidations(initiate=True)
        assert report.initiated == [risky.loan_id]
        assert service.get_loan(healthy.loan_id).status == LoanStatus.ACTIVE


class TestPaymentHistory:

    def test_by_loan(self, service, valuation):
        a = _open(service, valuation)
        b = _open(service, valuation)
        service.apply_payment(a.loan_id, Decimal("100"))
        service.apply_payment(b.loan_id, Decimal("200"))
        service.repay_full(a.loan_id)

        history = service.get_payment_history(a.loan_id)
        assert [p.kind for p in history] == [PaymentKind.SCHEDULED, PaymentKind.FULL_REPAYMENT]
        assert [p.amount for p in history] == [Decimal("100"), Decimal("900")]

    def test_all_loans_capped_by_history_limit(self, settlement, valuation, clock):
        service = LendingService(settlement, valuation, config=EngineConfig(history_limit=3), clock=clock)
        loan = _open(service, valuation)
        for i in range(5):
            service.apply_payment(loan.loan_id, Decimal(i + 1))
        recent = service.get_payment_history()
        assert [p.amount for p in recent] == [Decimal("3"), Decimal("4"), Decimal("5")]
        assert len(service.get_payment_history(loan.loan_id)) == 5
        assert len(service.get_payment_history(limit=10)) == 5

    def test_journal_capacity_from_config(self, settlement, valuation, clock):
        service = LendingService(settlement, valuation, config=EngineConfig(journal_capacity=2), clock=clock)
        loan = _open(service, valuation)
        for _ in range(4):
            service.apply_payment(loan.loan_id, Decimal("1"))
        assert len(service.get_payment_history(loan.loan_id)) == 2

    def test_unknown_loan_has_empty_history(self, service):
        assert service.get_payment_history(77) == []


class TestAutoDistribution:

    def test_payments_flow_to_investors(self, service, valued_loan):
        service.create_fractional_position(valued_loan.loan_id, "alice", 6000)
        service.create_fractional_position(valued_loan.loan_id, "bob", 4000)

        service.apply_payment(valued_loan.loan_id, Decimal("300"))
        service.repay_full(valued_loan.loan_id)

        assert service.claim_proceeds(valued_loan.loan_id, "alice") == Decimal("600")
        assert service.claim_proceeds(valued_loan.loan_id, "bob") == Decimal("400")

    def test_only_applied_amount_is_distributed(self, service, valued_loan):
        service.create_fractional_position(valued_loan.loan_id, "alice", 10000)
        service.apply_payment(valued_loan.loan_id, Decimal("1500"))
        assert service.positions.claimable(valued_loan.loan_id, "alice") == Decimal("1000")

    def test_no_positions_no_distribution(self, service, valued_loan):
        service.apply_payment(valued_loan.loan_id, Decimal("300"))
        assert service.get_positions(valued_loan.loan_id) == []

    def test_disabled_by_config(self, settlement, valuation, clock):
        service = LendingService(settlement, valuation, config=EngineConfig(auto_distribute=False), clock=clock)
        loan = _open(service, valuation)
        service.create_fractional_position(loan.loan_id, "alice", 10000)
        service.apply_payment(loan.loan_id, Decimal("300"))
        assert service.positions.claimable(loan.loan_id, "alice") == Decimal("0")

        assert service.distribute_proceeds(loan.loan_id, Decimal("300")) == {"alice": Decimal("300")}
        assert service.claim_proceeds(loan.loan_id, "alice") == Decimal("300")


class TestReadModels:

    def test_rates(self, service):
        rates = service.get_rates()
        assert [e.rate_bps for e in rates.entries] == [500, 800, 1200, 1600, 2500]
        assert rates.platform_fee_bps == 200
        assert rates.insurance_fee_bps == 100
        assert rates.currency == "USDC"

    def test_user_loans_and_stats(self, service, valuation):
        _open(service, valuation, borrower="alice", value="5000")
        _open(service, valuation, borrower="alice", value="1000")
        _open(service, valuation, borrower="bob")

        loans = service.get_user_loans("alice")
        assert len(loans) == 2
        assert [a.is_liquidation_eligible for a in loans] == [False, True]

        stats = service.get_portfolio_stats("alice")
        assert stats.total_loans == 2
        assert stats.liquidation_risk_count == 1
        assert stats.portfolio_health == PortfolioHealth.CRITICAL
        assert service.get_user_loans("carol") == []

    def test_market_overview(self, service, valuation):
        a = _open(service, valuation)
        _open(service, valuation, tier=3)
        service.repay_full(a.loan_id)
        overview = service.get_market_overview()
        assert overview.total_loans_created == 2
        assert overview.total_loans_active == 1
        assert overview.total_loan_volume == Decimal("2000")
        assert overview.average_interest_rate == Decimal("12.00")

    def test_default_wiring(self):
        service = LendingService(InMemorySettlementAuthority(), StaticValuationSource())
        assert service.config.liquidation_threshold_bps == 8000
        assert service.monitor.threshold_bps == 8000
        assert service.journal.capacity == 1000
