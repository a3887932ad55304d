"""
amortization.py - Amortization Calculator

Pure numeric functions for loan terms. No state, no clock, no registry:
every input is an explicit parameter, which makes the functions trivially
testable and safe to call from any thread.

Key Formulas:
    r                = annual_rate_bps / 10000 / 12
    monthly_payment  = P * r * (1 + r)^n / ((1 + r)^n - 1)
    loan_to_value    = debt / collateral_value * 100
    expected_interest = P * annual_rate * months / 12
    accrued_interest = P * annual_rate * days / 365      (simple, fractional days)

All arithmetic is Decimal at engine precision; results are quantized to the
money quantum (or to 2 places for percentages). Floats never enter the math.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_EVEN
from typing import List, Union

from .core import (
    Loan, LoanStatus,
    BPS_DENOMINATOR, DAYS_PER_MONTH, DAYS_PER_YEAR, MONTHS_PER_YEAR,
    PERCENT_QUANTUM, ZERO,
    money, money_context,
)


_SECONDS_PER_DAY = Decimal(86400)


# ============================================================================
# CORE FORMULAS
# ============================================================================

def monthly_payment(principal: Decimal, annual_rate_bps: int, remaining_months: int) -> Decimal:
    """
    Scheduled payment of a fully amortizing loan.

    Args:
        principal: Balance to amortize
        annual_rate_bps: Annual interest rate in basis points
        remaining_months: Number of monthly payments left

    Returns:
        The level monthly payment. When remaining_months is 0 or the rate is 0
        the principal is returned unchanged (nothing to spread, or no interest
        to compound).
    """
    if remaining_months <= 0 or annual_rate_bps == 0:
        return money(principal)

    with money_context():
        r = Decimal(annual_rate_bps) / BPS_DENOMINATOR / MONTHS_PER_YEAR
        growth = (1 + r) ** remaining_months
        payment = principal * r * growth / (growth - 1)
        return money(payment)


def loan_to_value(debt: Decimal, collateral_value: Decimal) -> Decimal:
    """
    Debt as a percentage of collateral value, rounded to 2 places.

    Returns 0 when collateral_value is 0 (no valuation available).
    """
    if collateral_value == ZERO:
        return ZERO.quantize(PERCENT_QUANTUM)
    with money_context():
        return (debt / collateral_value * 100).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_EVEN)


def ltv_breaches(debt: Decimal, collateral_value: Decimal, threshold_bps: int) -> bool:
    """
    Exact test of loan_to_value(debt, collateral_value) >= threshold_bps / 100.

    Compared by cross-multiplication so rounding of the reported percentage
    never flips the decision. Zero collateral value has LTV 0 by definition.
    """
    if collateral_value == ZERO:
        return threshold_bps <= 0
    with money_context():
        return debt * BPS_DENOMINATOR >= collateral_value * threshold_bps


def expected_interest(
    principal: Decimal,
    annual_rate_bps: int,
    months_remaining: Union[int, Decimal],
) -> Decimal:
    """Simple pro-rated interest: principal * rate * months / 12. Negative months count as 0."""
    months = months_remaining if isinstance(months_remaining, Decimal) else Decimal(str(months_remaining))
    if months <= ZERO or annual_rate_bps == 0:
        return money(ZERO)
    with money_context():
        rate = Decimal(annual_rate_bps) / BPS_DENOMINATOR
        return money(principal * rate * months / MONTHS_PER_YEAR)


# ============================================================================
# ACCRUAL AND DEBT
# ============================================================================

def elapsed_days(start: datetime, end: datetime) -> Decimal:
    """Fractional days from start to end (0 if end is not after start)."""
    if end <= start:
        return ZERO
    delta = end - start
    with money_context():
        seconds = Decimal(delta.days) * _SECONDS_PER_DAY + Decimal(delta.seconds) \
            + Decimal(delta.microseconds) / Decimal(1_000_000)
        return seconds / _SECONDS_PER_DAY


def accrued_interest(
    principal: Decimal,
    annual_rate_bps: int,
    start: datetime,
    end: datetime,
) -> Decimal:
    """Simple daily interest on principal between start and end."""
    days = elapsed_days(start, end)
    if days == ZERO or annual_rate_bps == 0 or principal <= ZERO:
        return money(ZERO)
    with money_context():
        rate = Decimal(annual_rate_bps) / BPS_DENOMINATOR
        return money(principal * rate * days / DAYS_PER_YEAR)


def pending_interest(loan: Loan, now: datetime) -> Decimal:
    """Interest accrued since the loan's last accrual point, not yet rolled up."""
    if loan.status != LoanStatus.ACTIVE and loan.status != LoanStatus.PENDING_LIQUIDATION:
        return money(ZERO)
    return accrued_interest(loan.principal_remaining, loan.interest_rate_bps, loan.accrual_start, now)


def current_debt(loan: Loan, now: datetime) -> Decimal:
    """
    Total amount needed to close the loan at `now`.

    principal_remaining + accrued_interest + pending interest. Closed loans
    (REPAID, LIQUIDATED, CANCELLED) owe nothing.
    """
    if loan.status.is_terminal:
        return money(ZERO)
    return money(loan.principal_remaining + loan.accrued_interest + pending_interest(loan, now))


def days_remaining(maturity_at: datetime, now: datetime) -> int:
    """Whole days to maturity, rounded up; 0 once matured."""
    days = elapsed_days(now, maturity_at)
    return int(days.to_integral_value(rounding=ROUND_CEILING))


def months_remaining(maturity_at: datetime, now: datetime) -> int:
    """Number of 30-day installments left before maturity, rounded up."""
    days = days_remaining(maturity_at, now)
    return -(-days // DAYS_PER_MONTH)


# ============================================================================
# SCHEDULE
# ============================================================================

@dataclass(frozen=True, slots=True)
class ScheduledInstallment:
    """One row of a payment schedule."""
    payment_number: int
    due_date: datetime
    principal_payment: Decimal
    interest_payment: Decimal
    total_payment: Decimal
    remaining_balance: Decimal


def amortization_schedule(
    balance: Decimal,
    annual_rate_bps: int,
    installments: int,
    start: datetime,
) -> List[ScheduledInstallment]:
    """
    Level-payment schedule for the remaining balance.

    Each row splits the payment into interest on the opening balance at the
    monthly rate and principal. The last row takes whatever principal is left
    so the closing balance is exactly 0 regardless of rounding.

    Args:
        balance: Opening balance
        annual_rate_bps: Annual rate in basis points
        installments: Number of monthly installments (0 returns an empty schedule)
        start: Date the schedule starts from; installment k is due k * 30 days later

    Returns:
        List of ScheduledInstallment, in due-date order
    """
    if installments <= 0 or balance <= ZERO:
        return []

    if annual_rate_bps == 0:
        with money_context():
            payment = money(balance / installments)
    else:
        payment = monthly_payment(balance, annual_rate_bps, installments)
    rows: List[ScheduledInstallment] = []
    remaining = balance

    with money_context():
        r = Decimal(annual_rate_bps) / BPS_DENOMINATOR / MONTHS_PER_YEAR
        for number in range(1, installments + 1):
            interest = money(remaining * r)
            if number == installments:
                principal_part = remaining
            else:
                principal_part = min(money(payment - interest), remaining)
            remaining = remaining - principal_part
            rows.append(ScheduledInstallment(
                payment_number=number,
                due_date=start + timedelta(days=DAYS_PER_MONTH * number),
                principal_payment=principal_part,
                interest_payment=interest,
                total_payment=principal_part + interest,
                remaining_balance=remaining,
            ))

    return rows
