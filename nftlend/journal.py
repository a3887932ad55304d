"""
journal.py - Payment Journal

Append-only log of applied payments with bounded retention.

Appends are serialized by a single lock. Eviction of the oldest entries is
done by the bounded deque inside the same critical section as the append, so
an in-flight append can never race a trim. Entries are immutable Payment
records and are never edited or removed individually.
"""

from __future__ import annotations
from collections import deque
from datetime import datetime
from decimal import Decimal
import threading
from typing import Deque, List, Optional

from .core import Payment, PaymentKind, InvalidLoanParameters, ZERO


class PaymentJournal:
    """
    Bounded, thread-safe payment log.

    Example:
        journal = PaymentJournal(capacity=1000)
        journal.append(Payment(1, Decimal("300"), PaymentKind.SCHEDULED, now, "0xabc"))
        journal.history(loan_id=1)
    """

    def __init__(self, capacity: int = 1000):
        """
        Args:
            capacity: Maximum number of retained entries; older ones are evicted
        """
        if capacity <= 0:
            raise InvalidLoanParameters(f"journal capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._entries: Deque[Payment] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._total_appended = 0

    def append(self, payment: Payment) -> None:
        """Record a payment, evicting the oldest entry if the journal is full."""
        with self._lock:
            self._entries.append(payment)
            self._total_appended += 1

    def record(
        self,
        loan_id: int,
        amount: Decimal,
        kind: PaymentKind,
        applied_at: datetime,
        external_ref: Optional[str] = None,
    ) -> Payment:
        """Build and append a Payment in one step."""
        payment = Payment(
            loan_id=loan_id,
            amount=amount,
            kind=kind,
            applied_at=applied_at,
            external_ref=external_ref,
        )
        self.append(payment)
        return payment

    def history(self, loan_id: Optional[int] = None, limit: Optional[int] = None) -> List[Payment]:
        """
        Return retained payments, oldest first.

        Args:
            loan_id: If given, only that loan's payments
            limit: If given, only the most recent `limit` matching payments
        """
        with self._lock:
            snapshot = list(self._entries)
        if loan_id is not None:
            snapshot = [p for p in snapshot if p.loan_id == loan_id]
        if limit is not None:
            snapshot = snapshot[-limit:] if limit > 0 else []
        return snapshot

    def total_paid(self, loan_id: int) -> Decimal:
        """Sum of retained payments for a loan."""
        return sum((p.amount for p in self.history(loan_id)), ZERO)

    @property
    def evicted_count(self) -> int:
        with self._lock:
            return self._total_appended - len(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __repr__(self):
        return f"PaymentJournal({len(self)}/{self.capacity} entries)"
