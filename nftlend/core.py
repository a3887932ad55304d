"""
Core types and pure helpers for the NFT lending engine.

This module provides the foundational data structures shared by every component:
1. Constants: money precision, basis-point denominator, day-count conventions
2. Enums: LoanStatus (with its transition table), RiskTier, PaymentKind, PortfolioHealth
3. Exceptions: LendingError and the per-operation error taxonomy
4. Immutable records: CollateralRef, RiskAssessment, Loan, Payment, FractionalPosition
5. Clocks: the time source the registry and monitor read "now" from
6. Money helpers: to_money, money, bps_of

Records are frozen dataclasses. Components never mutate a record in place; they
build a new one with dataclasses.replace() and swap it in atomically.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Context, Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_EVEN, localcontext
from enum import Enum
import re
import threading
from typing import Any, Dict, FrozenSet, Optional, Protocol, Union, runtime_checkable


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Decimal contexts are thread-local, so the engine never touches the global
# context. Every calculation that needs more than the default precision runs
# inside money_context().
#
#   - prec=50: enough headroom for (1 + r) ** n over multi-year terms
#   - rounding=ROUND_HALF_EVEN: banker's rounding for amounts owed
#
_MONEY_CONTEXT = Context(prec=50, rounding=ROUND_HALF_EVEN)


def money_context():
    """Return a context manager running Decimal arithmetic at engine precision."""
    return localcontext(_MONEY_CONTEXT)


# ============================================================================
# CONSTANTS
# ============================================================================

# Minor-unit places for money (stablecoin with 6 decimals).
MONEY_PLACES = 6
MONEY_QUANTUM = Decimal(10) ** -MONEY_PLACES

# Basis points: 10000 bps == 100%.
BPS_DENOMINATOR = 10000

# Percentages are reported with 2 decimals (e.g. LTV 73.25).
PERCENT_QUANTUM = Decimal("0.01")

DAYS_PER_YEAR = 365
DAYS_PER_MONTH = 30
MONTHS_PER_YEAR = 12

ZERO = Decimal("0")

MoneyLike = Union[Decimal, int, str, float]

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


# ============================================================================
# ENUMS
# ============================================================================

class LoanStatus(Enum):
    """
    Lifecycle status of a loan.

    PENDING is a reserved entry point: no current operation creates a loan in it,
    but the transition table keeps its outgoing edges so a future reservation
    step can use them. REPAID, LIQUIDATED and CANCELLED are terminal.
    """
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    PENDING_LIQUIDATION = "PENDING_LIQUIDATION"
    LIQUIDATED = "LIQUIDATED"
    REPAID = "REPAID"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    def can_transition_to(self, other: "LoanStatus") -> bool:
        """Return True if other is reachable from this status in one step."""
        return other in _ALLOWED_TRANSITIONS[self]


_TERMINAL_STATUSES: FrozenSet[LoanStatus] = frozenset({
    LoanStatus.REPAID,
    LoanStatus.LIQUIDATED,
    LoanStatus.CANCELLED,
})

_ALLOWED_TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.PENDING: frozenset({LoanStatus.ACTIVE, LoanStatus.CANCELLED}),
    # ACTIVE -> ACTIVE is a partial payment
    LoanStatus.ACTIVE: frozenset({
        LoanStatus.ACTIVE,
        LoanStatus.REPAID,
        LoanStatus.PENDING_LIQUIDATION,
    }),
    LoanStatus.PENDING_LIQUIDATION: frozenset({LoanStatus.LIQUIDATED}),
    LoanStatus.LIQUIDATED: frozenset(),
    LoanStatus.REPAID: frozenset(),
    LoanStatus.CANCELLED: frozenset(),
}


class RiskTier(Enum):
    """Ordinal risk classification, 0 (LOW) to 4 (VERY_HIGH)."""
    LOW = 0
    MODERATE = 1
    MEDIUM = 2
    HIGH = 3
    VERY_HIGH = 4


class PaymentKind(Enum):
    SCHEDULED = "SCHEDULED"
    FULL_REPAYMENT = "FULL_REPAYMENT"


class PortfolioHealth(Enum):
    """Health bucket from the fraction of a borrower's loans that are liquidation-eligible."""
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"
    CRITICAL = "CRITICAL"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LendingError(Exception):
    """
    Base exception for all lending engine errors.

    Every error names the loan and operation it was raised for so callers can
    report the failure precisely. retryable tells the caller whether repeating
    the whole operation may succeed (only true for external settlement failures).
    """
    retryable = False

    def __init__(
        self,
        message: str,
        loan_id: Optional[int] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.loan_id = loan_id
        self.operation = operation


class InvalidLoanParameters(LendingError):
    """Raised when caller input violates an operation's preconditions."""


class LoanNotFound(LendingError):
    """Raised when a loan id is not known to the registry."""


class LoanNotActive(LendingError):
    """Raised when an operation requires an ACTIVE loan."""


class AlreadyRepaid(LoanNotActive):
    """Raised when a repayment targets a loan that is already REPAID."""


class NotEligibleForLiquidation(LendingError):
    """Raised when liquidation is requested for a loan that does not qualify."""


class LiquidationStatusConflict(NotEligibleForLiquidation, LoanNotActive):
    """Raised when liquidation is requested for a loan that is no longer ACTIVE."""


class OversubscribedPosition(LendingError):
    """Raised when a new fractional position would push a loan's shares above 100%."""

    def __init__(
        self,
        message: str,
        loan_id: Optional[int] = None,
        operation: Optional[str] = None,
        investor: Optional[str] = None,
        requested_bps: int = 0,
        existing_bps: int = 0,
    ):
        super().__init__(message, loan_id=loan_id, operation=operation)
        self.investor = investor
        self.requested_bps = requested_bps
        self.existing_bps = existing_bps


class SettlementFailure(LendingError):
    """
    Raised when the external settlement authority does not confirm a call.

    No local state has been written when this is raised; the caller may retry
    the whole operation.
    """
    retryable = True

    def __init__(
        self,
        message: str,
        loan_id: Optional[int] = None,
        operation: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message, loan_id=loan_id, operation=operation)
        self.reason = reason


class ConfigurationError(LendingError):
    """Raised when engine configuration is invalid."""


# ============================================================================
# MONEY HELPERS
# ============================================================================

def to_money(value: MoneyLike, field_name: str = "amount") -> Decimal:
    """
    Normalize a monetary input to a Decimal at the money quantum.

    Floats go through str() so 0.1 becomes Decimal("0.1"), not its binary
    expansion. Inputs are never rounded: an amount finer than the quantum
    is rejected.

    Raises:
        InvalidLoanParameters: If the value is not a finite number, or has
            more than 6 decimal places.
    """
    if isinstance(value, bool):
        raise InvalidLoanParameters(f"{field_name} must be numeric, got bool")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidLoanParameters(f"{field_name} is not a number: {value!r}") from exc
    if not amount.is_finite():
        raise InvalidLoanParameters(f"{field_name} must be finite, got {value!r}")
    quantized = money(amount)
    if quantized != amount:
        raise InvalidLoanParameters(
            f"{field_name} has more than {MONEY_PLACES} decimal places: {value!r}"
        )
    return quantized


def money(value: Decimal, rounding: str = ROUND_HALF_EVEN) -> Decimal:
    """Quantize a Decimal to the money quantum."""
    with money_context():
        return value.quantize(MONEY_QUANTUM, rounding=rounding)


def bps_of(amount: Decimal, bps: int) -> Decimal:
    """Floor of amount * bps / 10000 at the money quantum."""
    with money_context():
        return (amount * bps / BPS_DENOMINATOR).quantize(MONEY_QUANTUM, rounding=ROUND_DOWN)


def bps_to_percent(bps: int) -> Decimal:
    """800 -> Decimal('8.00')."""
    return (Decimal(bps) / 100).quantize(PERCENT_QUANTUM)


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class CollateralRef:
    """
    Identifies the NFT pledged as collateral: contract address plus token id.

    Attributes:
        contract: 0x-prefixed, 40 hex digit contract address
        token_id: Token id within the contract (non-negative integer)
    """
    contract: str
    token_id: int

    def is_well_formed(self) -> bool:
        if not isinstance(self.contract, str) or not _ADDRESS_RE.match(self.contract):
            return False
        if isinstance(self.token_id, bool) or not isinstance(self.token_id, int):
            return False
        return self.token_id >= 0

    @property
    def key(self) -> str:
        """Case-insensitive identity, used to detect double pledges."""
        return f"{self.contract.lower()}:{self.token_id}"

    def __str__(self) -> str:
        return f"{self.contract}#{self.token_id}"


@dataclass(frozen=True, slots=True)
class RiskAssessment:
    """
    Tier classification attached to a loan at creation.

    Attributes:
        risk_tier: RiskTier (LOW..VERY_HIGH)
        recommended_rate_bps: Annual rate recommended for this tier, in bps
    """
    risk_tier: RiskTier
    recommended_rate_bps: int

    @property
    def risk_level(self) -> str:
        return self.risk_tier.name

    @property
    def recommended_rate_percent(self) -> Decimal:
        return bps_to_percent(self.recommended_rate_bps)


@dataclass(frozen=True, slots=True)
class Loan:
    """
    A collateralized credit position.

    principal and interest_rate_bps never change after creation.
    principal_remaining only decreases. Interest accrued on earlier balances is
    rolled into accrued_interest whenever the principal changes.
    """
    loan_id: int
    borrower: str
    collateral_ref: CollateralRef
    principal: Decimal
    principal_remaining: Decimal
    interest_rate_bps: int
    status: LoanStatus
    created_at: datetime
    maturity_at: datetime
    risk_tier: RiskTier
    accrued_interest: Decimal = ZERO
    last_accrual_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.principal_remaining < ZERO or self.principal_remaining > self.principal:
            raise ValueError(
                f"Loan {self.loan_id}: principal_remaining {self.principal_remaining} "
                f"outside [0, {self.principal}]"
            )
        if self.maturity_at <= self.created_at:
            raise ValueError(f"Loan {self.loan_id}: maturity_at must be after created_at")

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def accrual_start(self) -> datetime:
        return self.last_accrual_at or self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "borrower": self.borrower,
            "collateral_contract": self.collateral_ref.contract,
            "collateral_token_id": self.collateral_ref.token_id,
            "principal": self.principal,
            "principal_remaining": self.principal_remaining,
            "interest_rate_bps": self.interest_rate_bps,
            "status": self.status.value,
            "created_at": self.created_at,
            "maturity_at": self.maturity_at,
            "risk_tier": self.risk_tier.name,
            "accrued_interest": self.accrued_interest,
            "closed_at": self.closed_at,
        }


@dataclass(frozen=True, slots=True)
class Payment:
    """Immutable journal entry for an applied payment."""
    loan_id: int
    amount: Decimal
    kind: PaymentKind
    applied_at: datetime
    external_ref: Optional[str] = None


@dataclass(frozen=True, slots=True)
class FractionalPosition:
    """An investor's proportional claim on a loan's principal and proceeds."""
    loan_id: int
    investor: str
    share_bps: int
    invested_amount: Decimal

    @property
    def share_percent(self) -> Decimal:
        return bps_to_percent(self.share_bps)


# ============================================================================
# CLOCKS
# ============================================================================

@runtime_checkable
class Clock(Protocol):
    """Source of the current time for every time-dependent calculation."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """
    Logical clock that only moves when told to.

    Time can only move forward, never backward. Used for deterministic
    simulations and tests.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        self._current_time = initial_time or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        return self._current_time

    def advance_time(self, new_time: datetime) -> None:
        """
        Move the clock to new_time.

        Raises:
            ValueError: If new_time is before the current time
        """
        with self._lock:
            if new_time < self._current_time:
                raise ValueError(
                    f"Cannot move time backwards: {new_time} < {self._current_time}"
                )
            self._current_time = new_time

    def advance(self, **delta: float) -> datetime:
        """Advance by a timedelta built from keyword arguments (days=30, hours=1, ...)."""
        with self._lock:
            self._current_time = self._current_time + timedelta(**delta)
            return self._current_time


# ============================================================================
# READ-ONLY VIEW
# ============================================================================

@runtime_checkable
class LoanView(Protocol):
    """
    Read-only interface to loan state.

    The liquidation monitor and portfolio aggregator accept a LoanView to
    declare that they never mutate loans. LoanRegistry implements this
    protocol but also provides mutation methods; for testing, FakeLoanView
    provides a purely read-only implementation.
    """

    @property
    def current_time(self) -> datetime:
        """Return the time all debt and maturity calculations are made at."""
        ...

    def get(self, loan_id: int) -> Loan:
        """
        Return the current record of a loan.

        Raises LoanNotFound if the loan id is unknown.
        """
        ...

    def list_by_borrower(self, borrower: str) -> "list[Loan]":
        """Return all loans of a borrower in creation order (empty if none)."""
        ...

    def all_loans(self) -> "list[Loan]":
        """Return every loan, in loan-id order."""
        ...
