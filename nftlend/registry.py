"""
registry.py - Loan Registry

The LoanRegistry is the authoritative store of Loan records and the only
component that mutates them.

Key responsibilities:
    - Indexes loans by id and by borrower
    - Serializes mutations per loan: at most one of apply_payment, repay_full,
      initiate_liquidation, finalize_liquidation runs for a given loan at a time
    - Enforces the LoanStatus transition table on every commit
    - Runs external settlement before any local write (confirm, then commit),
      so a failed or timed-out settlement leaves no trace
    - Records every applied payment in the PaymentJournal

Readers never take the per-loan lock. Records are frozen and replaced whole,
so get() always returns a consistent snapshot.
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import timedelta
from decimal import Decimal
import threading
from typing import Callable, Dict, List, Optional, Tuple

from .amortization import current_debt, pending_interest
from .core import (
    # Types
    Loan, LoanStatus, CollateralRef, RiskAssessment, Payment, PaymentKind,
    Clock, SystemClock, MoneyLike,
    # Constants
    ZERO,
    # Exceptions
    LendingError, InvalidLoanParameters, LoanNotFound, LoanNotActive,
    AlreadyRepaid, NotEligibleForLiquidation, LiquidationStatusConflict,
    SettlementFailure,
    # Helpers
    money, to_money,
)
from .journal import PaymentJournal
from .logging import get_logger
from .settlement import SettlementAuthority, SettlementReceipt


logger = get_logger(__name__)


# ============================================================================
# OPERATION RESULTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class PaymentResult:
    """Outcome of apply_payment."""
    loan_id: int
    amount_applied: Decimal
    excess: Decimal
    remaining_principal: Decimal
    payment: Payment


@dataclass(frozen=True, slots=True)
class RepaymentResult:
    """Outcome of repay_full."""
    loan_id: int
    total_repayment: Decimal
    external_ref: Optional[str]
    payment: Payment


@dataclass(frozen=True, slots=True)
class StatusResult:
    """Outcome of a liquidation step."""
    loan_id: int
    status: LoanStatus
    external_ref: Optional[str] = None


# Eligibility check used by initiate_liquidation: returns (eligible, reason).
EligibilityCheck = Callable[[Loan], Tuple[bool, str]]


class LoanRegistry:
    """
    Arena of Loan records with a borrower index and per-loan write locks.

    Implements the LoanView protocol for the monitor and aggregator.

    Thread Safety:
        Safe for concurrent callers. Mutations on the same loan are serialized;
        different loans are mutated in parallel. Reads are lock-free snapshots.

    Example:
        registry = LoanRegistry(InMemorySettlementAuthority())
        loan = registry.create_loan(
            borrower="0xborrower",
            collateral_ref=CollateralRef("0x" + "ab" * 20, 7),
            principal=Decimal("1000"),
            duration_days=30,
            assessment=RiskEngine().assess(RiskSignals(risk_tier=1)),
        )
        registry.apply_payment(loan.loan_id, Decimal("300"))
    """

    def __init__(
        self,
        settlement: SettlementAuthority,
        journal: Optional[PaymentJournal] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            settlement: External settlement authority
            journal: Payment journal (a 1000-entry journal is created if not provided)
            clock: Time source (wall clock if not provided)
        """
        self.settlement = settlement
        self.journal = journal if journal is not None else PaymentJournal()
        self.clock = clock or SystemClock()

        self._loans: Dict[int, Loan] = {}
        self._by_borrower: Dict[str, List[int]] = defaultdict(list)
        self._assessments: Dict[int, RiskAssessment] = {}
        self._locks: Dict[int, threading.RLock] = {}
        # collateral key -> loan id; None while a create_loan is settling
        self._pledged: Dict[str, Optional[int]] = {}
        self._index_lock = threading.Lock()
        self._next_loan_id = 1

    # ========================================================================
    # READS
    # ========================================================================

    @property
    def current_time(self):
        return self.clock.now()

    def get(self, loan_id: int) -> Loan:
        """
        Return the current record of a loan.

        Raises:
            LoanNotFound: If the loan id is unknown
        """
        loan = self._loans.get(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found", loan_id=loan_id, operation="get")
        return loan

    def list_by_borrower(self, borrower: str) -> List[Loan]:
        """All loans of a borrower, in creation order (empty if none)."""
        with self._index_lock:
            loan_ids = list(self._by_borrower.get(borrower, ()))
        return [self._loans[loan_id] for loan_id in loan_ids]

    def all_loans(self) -> List[Loan]:
        """Every loan ever created, in id order, terminal ones included."""
        with self._index_lock:
            loan_ids = sorted(self._loans)
        return [self._loans[loan_id] for loan_id in loan_ids]

    def get_assessment(self, loan_id: int) -> RiskAssessment:
        """
        Return the risk assessment a loan was created from.

        Raises:
            LoanNotFound: If the loan id is unknown
        """
        self.get(loan_id)
        return self._assessments[loan_id]

    def current_debt(self, loan_id: int) -> Decimal:
        """Principal plus interest owed right now."""
        return current_debt(self.get(loan_id), self.clock.now())

    def __contains__(self, loan_id: object) -> bool:
        return loan_id in self._loans

    def __len__(self) -> int:
        return len(self._loans)

    # ========================================================================
    # CREATION
    # ========================================================================

    def create_loan(
        self,
        borrower: str,
        collateral_ref: CollateralRef,
        principal: MoneyLike,
        duration_days: int,
        assessment: RiskAssessment,
    ) -> Loan:
        """
        Create an ACTIVE loan once the settlement authority confirms disbursement.

        The loan's rate is the assessment's recommended rate. The loan id is
        allocated only after confirmation, so a failed disbursement consumes
        no id and leaves no record.

        Args:
            borrower: Borrower identity
            collateral_ref: NFT being pledged
            principal: Amount disbursed (> 0)
            duration_days: Term in days (> 0)
            assessment: RiskAssessment the terms are derived from

        Returns:
            The new Loan

        Raises:
            InvalidLoanParameters: Bad input, or collateral already backing a live loan
            SettlementFailure: Disbursement not confirmed (no state written)
        """
        op = "create_loan"
        if not isinstance(borrower, str) or not borrower.strip():
            raise InvalidLoanParameters("borrower cannot be empty", operation=op)
        if not isinstance(collateral_ref, CollateralRef) or not collateral_ref.is_well_formed():
            raise InvalidLoanParameters(
                f"collateral reference {collateral_ref!r} is not a valid contract address/token id pair",
                operation=op,
            )
        amount = to_money(principal, "principal")
        if amount <= ZERO:
            raise InvalidLoanParameters(f"principal must be positive, got {principal}", operation=op)
        if isinstance(duration_days, bool) or not isinstance(duration_days, int) or duration_days <= 0:
            raise InvalidLoanParameters(
                f"duration_days must be a positive integer, got {duration_days!r}", operation=op
            )
        if not isinstance(assessment, RiskAssessment):
            raise InvalidLoanParameters("a RiskAssessment is required to create a loan", operation=op)

        key = collateral_ref.key
        with self._index_lock:
            if key in self._pledged:
                holder = self._pledged[key]
                raise InvalidLoanParameters(
                    f"collateral {collateral_ref} already backs "
                    + (f"loan {holder}" if holder is not None else "a loan being created"),
                    operation=op,
                )
            self._pledged[key] = None

        try:
            self._settle(
                lambda: self.settlement.disburse(collateral_ref, amount),
                loan_id=None,
                operation=op,
            )
        except BaseException:
            with self._index_lock:
                self._pledged.pop(key, None)
            raise

        now = self.clock.now()
        with self._index_lock:
            loan_id = self._next_loan_id
            self._next_loan_id += 1
            loan = Loan(
                loan_id=loan_id,
                borrower=borrower,
                collateral_ref=collateral_ref,
                principal=amount,
                principal_remaining=amount,
                interest_rate_bps=assessment.recommended_rate_bps,
                status=LoanStatus.ACTIVE,
                created_at=now,
                maturity_at=now + timedelta(days=duration_days),
                risk_tier=assessment.risk_tier,
                last_accrual_at=now,
            )
            self._locks[loan_id] = threading.RLock()
            self._assessments[loan_id] = assessment
            self._loans[loan_id] = loan
            self._by_borrower[borrower].append(loan_id)
            self._pledged[key] = loan_id

        logger.info(
            "Loan created: id=%d borrower=%s principal=%s rate_bps=%d",
            loan_id, borrower, amount, loan.interest_rate_bps,
            extra={"extra": {"loan_id": loan_id, "operation": op}},
        )
        return loan

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def apply_payment(
        self,
        loan_id: int,
        amount: MoneyLike,
        external_ref: Optional[str] = None,
    ) -> PaymentResult:
        """
        Apply a partial payment to an ACTIVE loan's principal.

        Principal never goes below 0; any excess is reported, not applied.
        Reaching 0 does NOT mark the loan REPAID: interest keeps its own
        balance and only repay_full closes the loan.

        Args:
            loan_id: Loan to pay down
            amount: Payment amount (> 0)
            external_ref: Reference of the settled transfer, if any

        Raises:
            InvalidLoanParameters: amount is not positive
            LoanNotFound: Unknown loan
            LoanNotActive: Loan is not ACTIVE (AlreadyRepaid if REPAID)
        """
        op = "apply_payment"
        value = to_money(amount, "amount")
        if value <= ZERO:
            raise InvalidLoanParameters(
                f"payment amount must be positive, got {amount}", loan_id=loan_id, operation=op
            )

        with self._lock_for(loan_id, op):
            loan = self._loans[loan_id]
            self._require_active(loan, op)
            now = self.clock.now()

            applied = min(value, loan.principal_remaining)
            updated = replace(
                loan,
                principal_remaining=loan.principal_remaining - applied,
                accrued_interest=money(loan.accrued_interest + pending_interest(loan, now)),
                last_accrual_at=now,
            )
            self._commit(loan, updated, op)
            payment = self.journal.record(loan_id, applied, PaymentKind.SCHEDULED, now, external_ref)

        logger.info(
            "Payment applied: id=%d amount=%s remaining=%s",
            loan_id, applied, updated.principal_remaining,
            extra={"extra": {"loan_id": loan_id, "operation": op}},
        )
        return PaymentResult(
            loan_id=loan_id,
            amount_applied=applied,
            excess=value - applied,
            remaining_principal=updated.principal_remaining,
            payment=payment,
        )

    def repay_full(self, loan_id: int) -> RepaymentResult:
        """
        Close an ACTIVE loan by collecting its entire current debt.

        The debt (principal + interest) is computed at call time and collected
        from the borrower through the settlement authority. Only on
        confirmation is the loan marked REPAID and interest accrual stopped.

        Raises:
            LoanNotFound: Unknown loan
            AlreadyRepaid: Loan is already REPAID
            LoanNotActive: Loan is in any other non-ACTIVE status
            SettlementFailure: Collection not confirmed (no state written)
        """
        op = "repay_full"
        with self._lock_for(loan_id, op):
            loan = self._loans[loan_id]
            self._require_active(loan, op)
            now = self.clock.now()
            total = current_debt(loan, now)

            receipt = self._settle(
                lambda: self.settlement.collect(loan.borrower, total),
                loan_id=loan_id,
                operation=op,
            )

            updated = replace(
                loan,
                principal_remaining=ZERO,
                accrued_interest=ZERO,
                status=LoanStatus.REPAID,
                last_accrual_at=now,
                closed_at=now,
            )
            self._commit(loan, updated, op)
            payment = self.journal.record(loan_id, total, PaymentKind.FULL_REPAYMENT, now, receipt.reference)
            self._release_pledge(loan)

        logger.info(
            "Loan repaid: id=%d total=%s",
            loan_id, total,
            extra={"extra": {"loan_id": loan_id, "operation": op}},
        )
        return RepaymentResult(
            loan_id=loan_id,
            total_repayment=total,
            external_ref=receipt.reference,
            payment=payment,
        )

    def initiate_liquidation(self, loan_id: int, check: EligibilityCheck) -> StatusResult:
        """
        Move an ACTIVE loan to PENDING_LIQUIDATION.

        Eligibility is evaluated by `check` inside the loan's lock, against the
        record being transitioned, so no payment or repayment can slip in
        between the check and the transition.

        Args:
            loan_id: Loan to liquidate
            check: Callable returning (eligible, reason) for a Loan

        Raises:
            LoanNotFound: Unknown loan
            LiquidationStatusConflict: Loan is no longer ACTIVE
            NotEligibleForLiquidation: Loan is ACTIVE but does not qualify
        """
        op = "initiate_liquidation"
        with self._lock_for(loan_id, op):
            loan = self._loans[loan_id]
            if loan.status != LoanStatus.ACTIVE:
                raise LiquidationStatusConflict(
                    f"Loan {loan_id} cannot be liquidated: status is {loan.status.value}, not ACTIVE",
                    loan_id=loan_id,
                    operation=op,
                )
            eligible, reason = check(loan)
            if not eligible:
                raise NotEligibleForLiquidation(
                    f"Loan {loan_id} is not eligible for liquidation: {reason}",
                    loan_id=loan_id,
                    operation=op,
                )
            updated = replace(loan, status=LoanStatus.PENDING_LIQUIDATION)
            self._commit(loan, updated, op)

        logger.info(
            "Liquidation initiated: id=%d reason=%s",
            loan_id, reason,
            extra={"extra": {"loan_id": loan_id, "operation": op}},
        )
        return StatusResult(loan_id=loan_id, status=LoanStatus.PENDING_LIQUIDATION)

    def finalize_liquidation(self, loan_id: int) -> StatusResult:
        """
        Move a PENDING_LIQUIDATION loan to LIQUIDATED.

        The settlement authority must confirm release of the collateral to the
        liquidator first. principal_remaining keeps the unrecovered balance for
        audit.

        Raises:
            LoanNotFound: Unknown loan
            LoanNotActive: Loan is not PENDING_LIQUIDATION
            SettlementFailure: Release not confirmed (no state written)
        """
        op = "finalize_liquidation"
        with self._lock_for(loan_id, op):
            loan = self._loans[loan_id]
            if loan.status != LoanStatus.PENDING_LIQUIDATION:
                raise LoanNotActive(
                    f"Loan {loan_id} cannot be finalized: status is {loan.status.value}, "
                    f"not PENDING_LIQUIDATION",
                    loan_id=loan_id,
                    operation=op,
                )
            receipt = self._settle(
                lambda: self.settlement.release_collateral(loan.collateral_ref),
                loan_id=loan_id,
                operation=op,
            )
            now = self.clock.now()
            updated = replace(
                loan,
                accrued_interest=money(loan.accrued_interest + pending_interest(loan, now)),
                last_accrual_at=now,
                status=LoanStatus.LIQUIDATED,
                closed_at=now,
            )
            self._commit(loan, updated, op)
            self._release_pledge(loan)

        logger.info(
            "Liquidation finalized: id=%d ref=%s",
            loan_id, receipt.reference,
            extra={"extra": {"loan_id": loan_id, "operation": op}},
        )
        return StatusResult(loan_id=loan_id, status=LoanStatus.LIQUIDATED, external_ref=receipt.reference)

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _lock_for(self, loan_id: int, operation: str) -> threading.RLock:
        with self._index_lock:
            lock = self._locks.get(loan_id)
        if lock is None:
            raise LoanNotFound(f"Loan {loan_id} not found", loan_id=loan_id, operation=operation)
        return lock

    @staticmethod
    def _require_active(loan: Loan, operation: str) -> None:
        if loan.status == LoanStatus.REPAID:
            raise AlreadyRepaid(
                f"Loan {loan.loan_id} is already repaid", loan_id=loan.loan_id, operation=operation
            )
        if loan.status != LoanStatus.ACTIVE:
            raise LoanNotActive(
                f"Loan {loan.loan_id} is {loan.status.value}, {operation} requires ACTIVE",
                loan_id=loan.loan_id,
                operation=operation,
            )

    def _commit(self, old: Loan, new: Loan, operation: str) -> None:
        """Swap in the new record after checking the status edge."""
        if not old.status.can_transition_to(new.status):
            raise LendingError(
                f"Loan {old.loan_id}: transition {old.status.value} -> {new.status.value} is not allowed",
                loan_id=old.loan_id,
                operation=operation,
            )
        self._loans[old.loan_id] = new

    def _release_pledge(self, loan: Loan) -> None:
        with self._index_lock:
            if self._pledged.get(loan.collateral_ref.key) == loan.loan_id:
                del self._pledged[loan.collateral_ref.key]

    def _settle(
        self,
        call: Callable[[], SettlementReceipt],
        loan_id: Optional[int],
        operation: str,
    ) -> SettlementReceipt:
        """
        Run one settlement call, converting every non-confirmation into SettlementFailure.

        Exceptions from the authority (timeouts, transport errors) are chained
        as the failure's cause.
        """
        try:
            receipt = call()
        except Exception as exc:
            logger.warning(
                "Settlement call raised during %s (loan %s): %s", operation, loan_id, exc,
                extra={"extra": {"loan_id": loan_id, "operation": operation}},
            )
            raise SettlementFailure(
                f"{operation} failed for loan {loan_id}: settlement authority error: {exc}",
                loan_id=loan_id,
                operation=operation,
                reason=str(exc),
            ) from exc

        if receipt is None or not receipt.confirmed:
            reason = receipt.reason if receipt is not None else "no receipt"
            logger.warning(
                "Settlement not confirmed during %s (loan %s): %s", operation, loan_id, reason,
                extra={"extra": {"loan_id": loan_id, "operation": operation}},
            )
            raise SettlementFailure(
                f"{operation} failed for loan {loan_id}: settlement not confirmed ({reason})",
                loan_id=loan_id,
                operation=operation,
                reason=reason,
            )
        return receipt

    def __repr__(self):
        return f"LoanRegistry({len(self._loans)} loans)"
