"""
fractional.py - Fractional Position Ledger

Tracks co-investors' proportional claims on a loan and splits proceeds among
them.

Shares are integer basis points. For any loan the sum of shares never exceeds
10000 (100%). Distribution is exact: every allocation is floored at the money
quantum and the last investor in allocation order absorbs the remainder, so
the allocations always add up to the distributed amount.

Allocation order: share descending, ties broken by investor identifier
ascending. The last investor is therefore the one with the smallest share.
"""

from __future__ import annotations
from collections import defaultdict
from decimal import Decimal
import threading
from typing import Dict, List, Optional

from .amortization import expected_interest, months_remaining
from .core import (
    FractionalPosition, LoanStatus, LoanView, MoneyLike,
    BPS_DENOMINATOR, ZERO,
    InvalidLoanParameters, LoanNotActive, OversubscribedPosition,
    bps_of, money, to_money,
)
from .logging import get_logger


logger = get_logger(__name__)


def _allocation_key(position: FractionalPosition):
    return (-position.share_bps, position.investor)


def allocate(amount: Decimal, positions: List[FractionalPosition]) -> Dict[str, Decimal]:
    """
    Split amount across positions pro rata with remainder absorption.

    Args:
        amount: Non-negative amount at the money quantum
        positions: At least one position

    Returns:
        investor -> amount, in allocation order; values sum to exactly amount
    """
    ordered = sorted(positions, key=_allocation_key)
    allocations: Dict[str, Decimal] = {}
    running = ZERO
    for position in ordered[:-1]:
        share = bps_of(amount, position.share_bps)
        allocations[position.investor] = share
        running += share
    allocations[ordered[-1].investor] = amount - running
    return allocations


class FractionalPositionLedger:
    """
    Positions and claimable proceeds per loan.

    Reads loans through a LoanView and never mutates them. Writes for one
    loan (new positions, distributions, claims) are serialized by a per-loan
    lock, so the 100% cap check and the insert happen atomically.

    Example:
        ledger = FractionalPositionLedger(registry)
        ledger.create_position(loan_id, "alice", 4000)
        ledger.create_position(loan_id, "bob", 3500)
        ledger.create_position(loan_id, "carol", 2500)
        ledger.distribute_proceeds(loan_id, Decimal("1000"))
        # {'alice': Decimal('400.000000'), 'bob': Decimal('350.000000'), 'carol': Decimal('250.000000')}
    """

    def __init__(self, view: LoanView):
        self.view = view
        self._positions: Dict[int, Dict[str, FractionalPosition]] = defaultdict(dict)
        self._claimable: Dict[int, Dict[str, Decimal]] = defaultdict(dict)
        self._locks: Dict[int, threading.Lock] = defaultdict(threading.Lock)
        self._guard = threading.Lock()

    def _lock_for(self, loan_id: int) -> threading.Lock:
        with self._guard:
            return self._locks[loan_id]

    def _existing_lock(self, loan_id: int) -> Optional[threading.Lock]:
        """Lock of a loan that has been written to, or None. Never creates one."""
        with self._guard:
            return self._locks.get(loan_id)

    # ========================================================================
    # POSITIONS
    # ========================================================================

    def create_position(
        self,
        loan_id: int,
        investor: str,
        share_bps: int,
        invested_amount: Optional[MoneyLike] = None,
    ) -> FractionalPosition:
        """
        Give an investor a share of an ACTIVE loan.

        A second position for the same investor is merged into the first:
        shares and invested amounts are added.

        Args:
            loan_id: Loan to invest in
            investor: Investor identity
            share_bps: Share in basis points, 1..10000
            invested_amount: Amount invested (principal * share if not provided)

        Returns:
            The investor's position after the change

        Raises:
            InvalidLoanParameters: Bad investor, share or amount
            LoanNotFound: Unknown loan
            LoanNotActive: Loan is not ACTIVE
            OversubscribedPosition: Shares would exceed 10000 bps (nothing is written)
        """
        op = "create_position"
        if not isinstance(investor, str) or not investor.strip():
            raise InvalidLoanParameters("investor cannot be empty", loan_id=loan_id, operation=op)
        if isinstance(share_bps, bool) or not isinstance(share_bps, int) or not 0 < share_bps <= BPS_DENOMINATOR:
            raise InvalidLoanParameters(
                f"share for {investor} must be an integer in 1..{BPS_DENOMINATOR} bps, got {share_bps!r}",
                loan_id=loan_id,
                operation=op,
            )
        amount = None
        if invested_amount is not None:
            amount = to_money(invested_amount, "invested_amount")
            if amount < ZERO:
                raise InvalidLoanParameters(
                    f"invested_amount cannot be negative, got {invested_amount}",
                    loan_id=loan_id,
                    operation=op,
                )

        loan = self.view.get(loan_id)
        if loan.status != LoanStatus.ACTIVE:
            raise LoanNotActive(
                f"Loan {loan_id} is {loan.status.value}, positions can only be opened on ACTIVE loans",
                loan_id=loan_id,
                operation=op,
            )
        if amount is None:
            amount = bps_of(loan.principal, share_bps)

        with self._lock_for(loan_id):
            # A repayment may have closed the loan since the check above
            status = self.view.get(loan_id).status
            if status != LoanStatus.ACTIVE:
                raise LoanNotActive(
                    f"Loan {loan_id} is {status.value}, positions can only be opened on ACTIVE loans",
                    loan_id=loan_id,
                    operation=op,
                )
            positions = self._positions[loan_id]
            existing_bps = sum(p.share_bps for p in positions.values())
            if existing_bps + share_bps > BPS_DENOMINATOR:
                raise OversubscribedPosition(
                    f"Loan {loan_id}: {investor} requested {share_bps} bps but {existing_bps} bps "
                    f"are already taken; only {BPS_DENOMINATOR - existing_bps} bps remain",
                    loan_id=loan_id,
                    operation=op,
                    investor=investor,
                    requested_bps=share_bps,
                    existing_bps=existing_bps,
                )
            previous = positions.get(investor)
            if previous is not None:
                position = FractionalPosition(
                    loan_id=loan_id,
                    investor=investor,
                    share_bps=previous.share_bps + share_bps,
                    invested_amount=previous.invested_amount + amount,
                )
            else:
                position = FractionalPosition(
                    loan_id=loan_id,
                    investor=investor,
                    share_bps=share_bps,
                    invested_amount=amount,
                )
            positions[investor] = position

        logger.info(
            "Position created: loan=%d investor=%s share_bps=%d invested=%s",
            loan_id, investor, position.share_bps, position.invested_amount,
            extra={"extra": {"loan_id": loan_id, "operation": op}},
        )
        return position

    def positions(self, loan_id: int) -> List[FractionalPosition]:
        """Positions of a loan in allocation order (empty if none)."""
        lock = self._existing_lock(loan_id)
        if lock is None:
            return []
        with lock:
            return sorted(self._positions.get(loan_id, {}).values(), key=_allocation_key)

    def position(self, loan_id: int, investor: str) -> Optional[FractionalPosition]:
        lock = self._existing_lock(loan_id)
        if lock is None:
            return None
        with lock:
            return self._positions.get(loan_id, {}).get(investor)

    def total_share_bps(self, loan_id: int) -> int:
        return sum(p.share_bps for p in self.positions(loan_id))

    def positions_by_investor(self, investor: str) -> List[FractionalPosition]:
        """Every position an investor holds, in loan-id order."""
        with self._guard:
            loan_ids = sorted(self._positions)
        found = []
        for loan_id in loan_ids:
            position = self.position(loan_id, investor)
            if position is not None:
                found.append(position)
        return found

    def expected_interest(self, loan_id: int, investor: str) -> Decimal:
        """
        Interest the investor's stake is expected to earn over the loan's remaining term.

        Raises:
            InvalidLoanParameters: If the investor holds no position in the loan
        """
        position = self.position(loan_id, investor)
        if position is None:
            raise InvalidLoanParameters(
                f"{investor} holds no position in loan {loan_id}", loan_id=loan_id, operation="expected_interest"
            )
        loan = self.view.get(loan_id)
        months = months_remaining(loan.maturity_at, self.view.current_time)
        return expected_interest(position.invested_amount, loan.interest_rate_bps, months)

    # ========================================================================
    # PROCEEDS
    # ========================================================================

    def distribute_proceeds(self, loan_id: int, proceeds: MoneyLike) -> Dict[str, Decimal]:
        """
        Split proceeds among the loan's investors and credit their claimable balances.

        Each investor receives floor(proceeds * share / 10000); the last
        investor in allocation order receives whatever is left, so the sum of
        the returned amounts equals proceeds exactly.

        Args:
            loan_id: Loan whose proceeds are distributed
            proceeds: Amount to distribute (>= 0)

        Returns:
            investor -> amount, in allocation order

        Raises:
            InvalidLoanParameters: Negative proceeds, or the loan has no positions
            LoanNotFound: Unknown loan
        """
        op = "distribute_proceeds"
        amount = to_money(proceeds, "proceeds")
        if amount < ZERO:
            raise InvalidLoanParameters(
                f"proceeds cannot be negative, got {proceeds}", loan_id=loan_id, operation=op
            )
        self.view.get(loan_id)

        with self._lock_for(loan_id):
            positions = list(self._positions.get(loan_id, {}).values())
            if not positions:
                raise InvalidLoanParameters(
                    f"Loan {loan_id} has no fractional positions to distribute to",
                    loan_id=loan_id,
                    operation=op,
                )
            allocations = allocate(amount, positions)
            balances = self._claimable[loan_id]
            for investor, share in allocations.items():
                balances[investor] = balances.get(investor, ZERO) + share

        logger.info(
            "Proceeds distributed: loan=%d amount=%s investors=%d",
            loan_id, amount, len(allocations),
            extra={"extra": {"loan_id": loan_id, "operation": op}},
        )
        return allocations

    def claimable(self, loan_id: int, investor: str) -> Decimal:
        """Distributed but unclaimed proceeds for an investor (0 if none)."""
        lock = self._existing_lock(loan_id)
        if lock is None:
            return money(ZERO)
        with lock:
            return self._claimable.get(loan_id, {}).get(investor, money(ZERO))

    def claim(self, loan_id: int, investor: str) -> Decimal:
        """
        Pay out and zero an investor's claimable balance.

        Raises:
            InvalidLoanParameters: If the investor holds no position in the loan
        """
        op = "claim"
        lock = self._existing_lock(loan_id)
        if lock is None:
            raise InvalidLoanParameters(
                f"{investor} holds no position in loan {loan_id}", loan_id=loan_id, operation=op
            )
        with lock:
            if investor not in self._positions.get(loan_id, {}):
                raise InvalidLoanParameters(
                    f"{investor} holds no position in loan {loan_id}", loan_id=loan_id, operation=op
                )
            amount = self._claimable.get(loan_id, {}).pop(investor, money(ZERO))

        logger.info(
            "Proceeds claimed: loan=%d investor=%s amount=%s",
            loan_id, investor, amount,
            extra={"extra": {"loan_id": loan_id, "operation": op}},
        )
        return amount

    def __repr__(self):
        return f"FractionalPositionLedger({sum(len(p) for p in self._positions.values())} positions)"
