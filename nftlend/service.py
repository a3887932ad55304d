"""
service.py - Lending Service

The query surface callers (API layer, UI, scripts) use. LendingService wires
the components together and adds the read models that merge several of them:

    RiskEngine -> LoanRegistry (+ PaymentJournal, SettlementAuthority)
               -> LiquidationMonitor (+ CollateralValuationSource)
               -> FractionalPositionLedger
               -> PortfolioAggregator

All mutations go through the registry or the position ledger; the service
itself holds no loan state.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .amortization import (
    ScheduledInstallment,
    amortization_schedule, current_debt, days_remaining, expected_interest,
    monthly_payment, months_remaining,
)
from .config import EngineConfig
from .core import (
    Clock, CollateralRef, FractionalPosition, Loan, LoanStatus, MoneyLike, Payment,
    RiskAssessment, SystemClock,
)
from .fractional import FractionalPositionLedger
from .journal import PaymentJournal
from .liquidation import LiquidationCheck, LiquidationMonitor, SweepResult
from .logging import get_logger
from .portfolio import MarketOverview, PortfolioAggregator, PortfolioSnapshot
from .registry import LoanRegistry, PaymentResult, RepaymentResult, StatusResult
from .risk import RateCardEntry, RiskEngine
from .settlement import SettlementAuthority
from .valuation import CollateralValuationSource


logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class LoanAnalytics:
    """A loan merged with everything derived from it at one point in time."""
    loan: Loan
    current_debt: Decimal
    collateral_value: Decimal
    ltv_percent: Decimal
    is_liquidation_eligible: bool
    liquidation_reason: str
    monthly_payment: Decimal
    expected_interest: Decimal
    days_remaining: int
    total_paid: Decimal
    payment_schedule: List[ScheduledInstallment]
    as_of: datetime

    @property
    def loan_id(self) -> int:
        return self.loan.loan_id

    @property
    def status(self) -> LoanStatus:
        return self.loan.status

    def to_dict(self) -> Dict[str, Any]:
        data = self.loan.to_dict()
        data.update({
            "current_debt": self.current_debt,
            "collateral_value": self.collateral_value,
            "ltv_percent": self.ltv_percent,
            "is_liquidation_eligible": self.is_liquidation_eligible,
            "monthly_payment": self.monthly_payment,
            "expected_interest": self.expected_interest,
            "days_remaining": self.days_remaining,
            "total_paid": self.total_paid,
            "installments": len(self.payment_schedule),
        })
        return data


@dataclass(frozen=True, slots=True)
class RateCard:
    """Published rates and fees."""
    entries: List[RateCardEntry]
    platform_fee_bps: int
    insurance_fee_bps: int
    currency: str


class LendingService:
    """
    Facade over the lending engine.

    Example:
        service = LendingService(InMemorySettlementAuthority(), StaticValuationSource())
        loan = service.create_loan("0xborrower", ref, Decimal("1000"), 30, RiskSignals(risk_tier=1))
        service.apply_payment(loan.loan_id, Decimal("300"))
        service.get_loan_analytics(loan.loan_id).current_debt
    """

    def __init__(
        self,
        settlement: SettlementAuthority,
        valuation: CollateralValuationSource,
        config: Optional[EngineConfig] = None,
        clock: Optional[Clock] = None,
        risk_engine: Optional[RiskEngine] = None,
    ):
        """
        Args:
            settlement: External settlement authority
            valuation: Collateral valuation source
            config: Engine configuration (defaults if not provided)
            clock: Time source (wall clock if not provided)
            risk_engine: Tier -> rate policy (default rate table if not provided)
        """
        self.config = (config or EngineConfig()).validate()
        self.clock = clock or SystemClock()
        self.risk_engine = risk_engine or RiskEngine()
        self.journal = PaymentJournal(capacity=self.config.journal_capacity)
        self.registry = LoanRegistry(settlement, journal=self.journal, clock=self.clock)
        self.monitor = LiquidationMonitor(
            self.registry, valuation, threshold_bps=self.config.liquidation_threshold_bps
        )
        self.positions = FractionalPositionLedger(self.registry)
        self.aggregator = PortfolioAggregator(self.registry, self.monitor)

    # ========================================================================
    # LOAN LIFECYCLE
    # ========================================================================

    def create_loan(
        self,
        borrower: str,
        collateral_ref: CollateralRef,
        principal: MoneyLike,
        duration_days: int,
        signals: Any,
    ) -> Loan:
        """
        Assess risk from signals, then create the loan at the recommended rate.

        Raises:
            InvalidLoanParameters: Bad input or signals
            SettlementFailure: Disbursement not confirmed
        """
        assessment = self.risk_engine.assess(signals)
        return self.registry.create_loan(borrower, collateral_ref, principal, duration_days, assessment)

    def apply_payment(
        self,
        loan_id: int,
        amount: MoneyLike,
        external_ref: Optional[str] = None,
    ) -> PaymentResult:
        """Apply a partial payment and pass the applied amount on to the loan's investors."""
        result = self.registry.apply_payment(loan_id, amount, external_ref)
        self._auto_distribute(loan_id, result.amount_applied)
        return result

    def repay_full(self, loan_id: int) -> RepaymentResult:
        """Close the loan and pass the repaid total on to the loan's investors."""
        result = self.registry.repay_full(loan_id)
        self._auto_distribute(loan_id, result.total_repayment)
        return result

    def initiate_liquidation(self, loan_id: int) -> StatusResult:
        """Move an eligible loan to PENDING_LIQUIDATION (eligibility re-checked at call time)."""
        return self.monitor.initiate(self.registry, loan_id)

    def finalize_liquidation(self, loan_id: int) -> StatusResult:
        return self.registry.finalize_liquidation(loan_id)

    def sweep_liquidations(self, initiate: bool = False) -> SweepResult:
        """Evaluate every ACTIVE loan; with initiate=True, start liquidation of the eligible ones."""
        return self.monitor.sweep(self.registry if initiate else None)

    def _auto_distribute(self, loan_id: int, amount: Decimal) -> None:
        if not self.config.auto_distribute or amount <= 0:
            return
        if not self.positions.positions(loan_id):
            return
        self.positions.distribute_proceeds(loan_id, amount)

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_loan(self, loan_id: int) -> Loan:
        return self.registry.get(loan_id)

    def get_loan_analytics(self, loan_id: int) -> LoanAnalytics:
        """
        Loan record merged with current debt, liquidation flag and payment schedule.

        Raises:
            LoanNotFound: If the loan id is unknown
        """
        loan = self.registry.get(loan_id)
        return self._analytics(loan, self.clock.now())

    def _analytics(self, loan: Loan, now: datetime) -> LoanAnalytics:
        check: LiquidationCheck = self.monitor.evaluate(loan, now)
        if loan.is_active:
            months = months_remaining(loan.maturity_at, now)
            payment = monthly_payment(loan.principal_remaining, loan.interest_rate_bps, months)
        else:
            # Closed loans owe nothing; a loan in liquidation owes its whole debt.
            months = 0
            payment = check.debt
        return LoanAnalytics(
            loan=loan,
            current_debt=current_debt(loan, now),
            collateral_value=check.collateral_value,
            ltv_percent=check.ltv_percent,
            is_liquidation_eligible=check.eligible,
            liquidation_reason=check.reason,
            monthly_payment=payment,
            expected_interest=expected_interest(loan.principal_remaining, loan.interest_rate_bps, months),
            days_remaining=days_remaining(loan.maturity_at, now) if loan.is_active else 0,
            total_paid=self.journal.total_paid(loan.loan_id),
            payment_schedule=self._schedule(loan, now),
            as_of=now,
        )

    def get_payment_schedule(self, loan_id: int) -> List[ScheduledInstallment]:
        """
        Monthly installments for the rest of the term, starting now.

        Closed loans and loans in liquidation have no schedule.
        """
        return self._schedule(self.registry.get(loan_id), self.clock.now())

    @staticmethod
    def _schedule(loan: Loan, now: datetime) -> List[ScheduledInstallment]:
        if not loan.is_active:
            return []
        return amortization_schedule(
            loan.principal_remaining,
            loan.interest_rate_bps,
            months_remaining(loan.maturity_at, now),
            now,
        )

    def get_risk_assessment(self, loan_id: int) -> RiskAssessment:
        return self.registry.get_assessment(loan_id)

    def assess_risk(self, signals: Any) -> RiskAssessment:
        """Quote terms without creating a loan."""
        return self.risk_engine.assess(signals)

    def get_user_loans(self, borrower: str) -> List[LoanAnalytics]:
        now = self.clock.now()
        return [self._analytics(loan, now) for loan in self.registry.list_by_borrower(borrower)]

    def get_portfolio_stats(self, borrower: str) -> PortfolioSnapshot:
        return self.aggregator.snapshot(borrower)

    def get_payment_history(self, loan_id: Optional[int] = None, limit: Optional[int] = None) -> List[Payment]:
        """
        Retained payments, oldest first.

        With a loan id, every retained payment of that loan (or the last
        `limit`). Without one, the most recent payments across all loans,
        capped at `limit` or the configured history limit.
        """
        if loan_id is None and limit is None:
            limit = self.config.history_limit
        return self.journal.history(loan_id=loan_id, limit=limit)

    def get_rates(self) -> RateCard:
        return RateCard(
            entries=self.risk_engine.rate_card(),
            platform_fee_bps=self.config.platform_fee_bps,
            insurance_fee_bps=self.config.insurance_fee_bps,
            currency=self.config.currency,
        )

    def get_market_overview(self) -> MarketOverview:
        return self.aggregator.market_overview()

    # ========================================================================
    # FRACTIONAL POSITIONS
    # ========================================================================

    def create_fractional_position(
        self,
        loan_id: int,
        investor: str,
        share_bps: int,
        invested_amount: Optional[MoneyLike] = None,
    ) -> FractionalPosition:
        return self.positions.create_position(loan_id, investor, share_bps, invested_amount)

    def get_positions(self, loan_id: int) -> List[FractionalPosition]:
        return self.positions.positions(loan_id)

    def distribute_proceeds(self, loan_id: int, proceeds: MoneyLike) -> Dict[str, Decimal]:
        return self.positions.distribute_proceeds(loan_id, proceeds)

    def claim_proceeds(self, loan_id: int, investor: str) -> Decimal:
        """Pay out an investor's accumulated proceeds and reset their balance."""
        return self.positions.claim(loan_id, investor)

    def __repr__(self):
        return f"LendingService({self.registry!r}, {self.journal!r})"
