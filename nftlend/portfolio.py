"""
portfolio.py - Portfolio Aggregator

Read-only rollups over loans. Nothing here is cached: every snapshot is
recomputed from the current loan records at the view's current time.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from .amortization import current_debt
from .core import (
    Loan, LoanStatus, LoanView, PortfolioHealth,
    PERCENT_QUANTUM, ZERO,
    bps_to_percent, money, money_context,
)
from .liquidation import LiquidationMonitor


def classify_health(eligible_count: int, loan_count: int) -> PortfolioHealth:
    """
    Health bucket from the share of loans that are liquidation-eligible.

    0% -> EXCELLENT, < 10% -> GOOD, < 30% -> FAIR, < 50% -> POOR, else CRITICAL.
    A borrower with no loans is EXCELLENT.
    """
    if loan_count == 0 or eligible_count == 0:
        return PortfolioHealth.EXCELLENT
    # Compare eligible / count against each bound without dividing.
    scaled = eligible_count * 100
    if scaled < 10 * loan_count:
        return PortfolioHealth.GOOD
    if scaled < 30 * loan_count:
        return PortfolioHealth.FAIR
    if scaled < 50 * loan_count:
        return PortfolioHealth.POOR
    return PortfolioHealth.CRITICAL


def _average_rate_percent(loans: List[Loan]) -> Decimal:
    if not loans:
        return ZERO.quantize(PERCENT_QUANTUM)
    with money_context():
        total = sum((bps_to_percent(loan.interest_rate_bps) for loan in loans), ZERO)
        return (total / len(loans)).quantize(PERCENT_QUANTUM)


@dataclass(frozen=True, slots=True)
class PortfolioSnapshot:
    """
    Rollup of one borrower's loans.

    Counts and totals cover every loan the borrower has ever taken, terminal
    ones included; total_debt is only non-zero for open loans.
    """
    borrower: str
    total_loaned: Decimal
    total_debt: Decimal
    average_apr: Decimal
    active_loan_count: int
    total_loans: int
    liquidation_risk_count: int
    portfolio_health: PortfolioHealth
    generated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "borrower": self.borrower,
            "total_loaned": self.total_loaned,
            "total_debt": self.total_debt,
            "average_apr": self.average_apr,
            "active_loan_count": self.active_loan_count,
            "total_loans": self.total_loans,
            "liquidation_risk_count": self.liquidation_risk_count,
            "portfolio_health": self.portfolio_health.value,
        }


@dataclass(frozen=True, slots=True)
class MarketOverview:
    """Totals across every loan in the registry."""
    total_loans_created: int
    total_loans_active: int
    total_loan_volume: Decimal
    total_outstanding_debt: Decimal
    average_interest_rate: Decimal
    liquidation_rate: Decimal
    generated_at: datetime


class PortfolioAggregator:
    """
    Computes PortfolioSnapshot and MarketOverview from a LoanView.

    Example:
        aggregator = PortfolioAggregator(registry, monitor)
        snapshot = aggregator.snapshot("0xborrower")
        snapshot.portfolio_health  # PortfolioHealth.EXCELLENT
    """

    def __init__(self, view: LoanView, monitor: LiquidationMonitor):
        self.view = view
        self.monitor = monitor

    def snapshot(self, borrower: str) -> PortfolioSnapshot:
        """Portfolio statistics for one borrower (all zero for an unknown borrower)."""
        now = self.view.current_time
        loans = self.view.list_by_borrower(borrower)
        eligible = sum(1 for loan in loans if self.monitor.evaluate(loan, now).eligible)
        return PortfolioSnapshot(
            borrower=borrower,
            total_loaned=money(sum((loan.principal for loan in loans), ZERO)),
            total_debt=money(sum((current_debt(loan, now) for loan in loans), ZERO)),
            average_apr=_average_rate_percent(loans),
            active_loan_count=sum(1 for loan in loans if loan.status == LoanStatus.ACTIVE),
            total_loans=len(loans),
            liquidation_risk_count=eligible,
            portfolio_health=classify_health(eligible, len(loans)),
            generated_at=now,
        )

    def market_overview(self) -> MarketOverview:
        """
        Platform-wide totals.

        liquidation_rate is the percentage of loans that have entered
        liquidation (PENDING_LIQUIDATION or LIQUIDATED).
        """
        now = self.view.current_time
        loans = self.view.all_loans()
        liquidating = sum(
            1 for loan in loans
            if loan.status in (LoanStatus.PENDING_LIQUIDATION, LoanStatus.LIQUIDATED)
        )
        if loans:
            with money_context():
                rate = (Decimal(liquidating) * 100 / len(loans)).quantize(PERCENT_QUANTUM)
        else:
            rate = ZERO.quantize(PERCENT_QUANTUM)
        return MarketOverview(
            total_loans_created=len(loans),
            total_loans_active=sum(1 for loan in loans if loan.status == LoanStatus.ACTIVE),
            total_loan_volume=money(sum((loan.principal for loan in loans), ZERO)),
            total_outstanding_debt=money(sum((current_debt(loan, now) for loan in loans), ZERO)),
            average_interest_rate=_average_rate_percent(loans),
            liquidation_rate=rate,
            generated_at=now,
        )
