"""
liquidation.py - Liquidation Monitor

Classifies loans as liquidation-eligible. A loan qualifies when it is ACTIVE
and either its LTV (current debt / collateral value) has reached the
liquidation threshold, or it is past maturity.

The monitor only reads. It never changes a loan's status itself: the
ACTIVE -> PENDING_LIQUIDATION transition is made by
LoanRegistry.initiate_liquidation, which re-runs the check under the loan's
lock so the decision cannot go stale between check and act.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional, Tuple

from .amortization import current_debt, loan_to_value, ltv_breaches
from .core import (
    Loan, LoanStatus, LoanView, ZERO,
    InvalidLoanParameters, NotEligibleForLiquidation,
    bps_to_percent, money,
)
from .logging import get_logger
from .valuation import CollateralValuationSource

if TYPE_CHECKING:
    from .registry import LoanRegistry, StatusResult


logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class LiquidationCheck:
    """
    Result of evaluating one loan.

    Attributes:
        loan_id: Loan evaluated
        eligible: True if the loan may be moved to PENDING_LIQUIDATION
        reason: Human-readable explanation of the decision
        status: Loan status at evaluation time
        debt: Current debt (principal + interest)
        collateral_value: Valuation used (0 when none was available)
        ltv_percent: Debt / collateral value * 100, 2 decimals
        threshold_percent: Liquidation threshold, 2 decimals
        undercollateralized: LTV at or above the threshold
        matured: Evaluation time is past maturity
        evaluated_at: Time the check was made at
    """
    loan_id: int
    eligible: bool
    reason: str
    status: LoanStatus
    debt: Decimal
    collateral_value: Decimal
    ltv_percent: Decimal
    threshold_percent: Decimal
    undercollateralized: bool
    matured: bool
    evaluated_at: datetime


@dataclass
class SweepResult:
    """Checks of every ACTIVE loan in a sweep, plus the loans moved to PENDING_LIQUIDATION."""
    checks: List[LiquidationCheck] = field(default_factory=list)
    initiated: List[int] = field(default_factory=list)

    @property
    def eligible(self) -> List[LiquidationCheck]:
        return [c for c in self.checks if c.eligible]


class LiquidationMonitor:
    """
    Stateless eligibility evaluator over a LoanView.

    Example:
        monitor = LiquidationMonitor(registry, valuation, threshold_bps=8000)
        if monitor.is_eligible(loan_id):
            registry.initiate_liquidation(loan_id, monitor.check)
    """

    def __init__(
        self,
        view: LoanView,
        valuation: CollateralValuationSource,
        threshold_bps: int = 8000,
    ):
        """
        Args:
            view: Read access to loans and the current time
            valuation: Source of collateral values
            threshold_bps: LTV at or above which a loan is eligible (8000 = 80%)
        """
        if isinstance(threshold_bps, bool) or not isinstance(threshold_bps, int) or threshold_bps <= 0:
            raise InvalidLoanParameters(f"threshold_bps must be a positive integer, got {threshold_bps!r}")
        self.view = view
        self.valuation = valuation
        self.threshold_bps = threshold_bps

    def collateral_value(self, loan: Loan, now: datetime) -> Decimal:
        """Valuation of the loan's collateral at `now`; 0 if none is available."""
        value = self.valuation.get_value(loan.collateral_ref, now)
        return money(value) if value is not None else money(ZERO)

    def evaluate(self, loan: Loan, now: Optional[datetime] = None) -> LiquidationCheck:
        """
        Evaluate one loan record.

        Args:
            loan: Snapshot to evaluate
            now: Evaluation time (view's current time if not provided)

        Returns:
            LiquidationCheck
        """
        now = now or self.view.current_time
        threshold_percent = bps_to_percent(self.threshold_bps)
        debt = current_debt(loan, now)
        value = self.collateral_value(loan, now)
        ltv = loan_to_value(debt, value)
        undercollateralized = ltv_breaches(debt, value, self.threshold_bps)
        matured = now > loan.maturity_at

        if loan.status != LoanStatus.ACTIVE:
            eligible = False
            reason = f"status is {loan.status.value}, not ACTIVE"
        elif undercollateralized:
            eligible = True
            reason = f"LTV {ltv}% is at or above threshold {threshold_percent}%"
        elif matured:
            eligible = True
            reason = f"past maturity ({loan.maturity_at.isoformat()})"
        else:
            eligible = False
            reason = f"LTV {ltv}% is below threshold {threshold_percent}% and loan has not matured"

        logger.debug(
            "Eligibility evaluated: id=%d eligible=%s reason=%s",
            loan.loan_id, eligible, reason,
            extra={"extra": {"loan_id": loan.loan_id, "operation": "evaluate"}},
        )
        return LiquidationCheck(
            loan_id=loan.loan_id,
            eligible=eligible,
            reason=reason,
            status=loan.status,
            debt=debt,
            collateral_value=value,
            ltv_percent=ltv,
            threshold_percent=threshold_percent,
            undercollateralized=undercollateralized,
            matured=matured,
            evaluated_at=now,
        )

    def check(self, loan: Loan) -> Tuple[bool, str]:
        """(eligible, reason) for a loan; the form LoanRegistry.initiate_liquidation expects."""
        result = self.evaluate(loan)
        return result.eligible, result.reason

    def is_eligible(self, loan_id: int) -> bool:
        """
        Evaluate the loan's current record. Never cached.

        Raises:
            LoanNotFound: If the loan id is unknown
        """
        return self.evaluate(self.view.get(loan_id)).eligible

    def initiate(self, registry: "LoanRegistry", loan_id: int) -> "StatusResult":
        """Ask the registry to liquidate a loan, re-checking eligibility under its lock."""
        return registry.initiate_liquidation(loan_id, self.check)

    def sweep(self, registry: Optional["LoanRegistry"] = None) -> SweepResult:
        """
        Evaluate every ACTIVE loan in loan-id order.

        Args:
            registry: If given, every eligible loan is moved to
                      PENDING_LIQUIDATION through it. A loan that stops
                      qualifying between evaluation and initiation (paid down,
                      repaid, liquidated by another caller) is skipped.

        Returns:
            SweepResult with all checks and the ids actually initiated
        """
        result = SweepResult()
        now = self.view.current_time
        for loan in self.view.all_loans():
            if loan.status != LoanStatus.ACTIVE:
                continue
            check = self.evaluate(loan, now)
            result.checks.append(check)
            if registry is None or not check.eligible:
                continue
            try:
                self.initiate(registry, loan.loan_id)
            except NotEligibleForLiquidation as exc:
                logger.info(
                    "Sweep skipped loan %d: %s", loan.loan_id, exc,
                    extra={"extra": {"loan_id": loan.loan_id, "operation": "sweep"}},
                )
                continue
            result.initiated.append(loan.loan_id)

        logger.info(
            "Liquidation sweep: evaluated=%d eligible=%d initiated=%d",
            len(result.checks), len(result.eligible), len(result.initiated),
        )
        return result

    def __repr__(self):
        return f"LiquidationMonitor(threshold={self.threshold_bps}bps)"
