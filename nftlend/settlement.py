"""
settlement.py - Settlement Authority Interface

The settlement authority is the external system (on-chain contract, custodian)
that actually moves funds and collateral. The engine never assumes success:
every call returns a SettlementReceipt and only a confirmed receipt lets the
caller commit local state.

Classes:
- SettlementAuthority: Protocol the registry consumes
- SettlementReceipt: Outcome of one call (confirmed + reference, or a reason)
- InMemorySettlementAuthority: Deterministic implementation with failure
  injection, for simulations and tests
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
import hashlib
import threading
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

from .core import CollateralRef


OP_DISBURSE = "disburse"
OP_COLLECT = "collect"
OP_RELEASE_COLLATERAL = "release_collateral"


@dataclass(frozen=True, slots=True)
class SettlementReceipt:
    """
    Outcome of a settlement call.

    Attributes:
        confirmed: True only when the authority confirmed the transfer
        reference: Authority transaction reference (set when confirmed)
        reason: Why the call was not confirmed (set when not confirmed)
    """
    confirmed: bool
    reference: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, reference: str) -> "SettlementReceipt":
        return cls(confirmed=True, reference=reference)

    @classmethod
    def failed(cls, reason: str) -> "SettlementReceipt":
        return cls(confirmed=False, reason=reason)


@runtime_checkable
class SettlementAuthority(Protocol):
    """
    Interface to the external settlement authority.

    Implementations may block, time out or raise; the registry treats anything
    other than a confirmed receipt as a failed call.
    """

    def disburse(self, collateral_ref: CollateralRef, principal: Decimal) -> SettlementReceipt:
        """Lock the collateral and pay the principal out to the borrower."""
        ...

    def collect(self, payer: str, amount: Decimal) -> SettlementReceipt:
        """Collect amount from payer."""
        ...

    def release_collateral(self, collateral_ref: CollateralRef) -> SettlementReceipt:
        """Release locked collateral (to the liquidator on liquidation)."""
        ...


class InMemorySettlementAuthority:
    """
    Settlement authority that confirms every call unless told otherwise.

    References are deterministic: sha256 over the operation, its arguments and
    a call sequence number, hex-encoded with a 0x prefix.

    Example:
        authority = InMemorySettlementAuthority()
        authority.fail_next("disburse", "insufficient liquidity")
        authority.disburse(ref, Decimal("1000"))   # not confirmed
        authority.disburse(ref, Decimal("1000"))   # confirmed
    """

    def __init__(self):
        self.calls: List[Tuple[str, tuple]] = []
        self.always_fail: Dict[str, str] = {}
        self._fail_queue: Dict[str, List[str]] = {}
        self._sequence = 0
        self._lock = threading.Lock()

    def fail_next(self, operation: str, reason: str = "rejected by settlement authority") -> None:
        """Make the next call of `operation` return an unconfirmed receipt."""
        with self._lock:
            self._fail_queue.setdefault(operation, []).append(reason)

    def disburse(self, collateral_ref: CollateralRef, principal: Decimal) -> SettlementReceipt:
        return self._settle(OP_DISBURSE, (str(collateral_ref), str(principal)))

    def collect(self, payer: str, amount: Decimal) -> SettlementReceipt:
        return self._settle(OP_COLLECT, (payer, str(amount)))

    def release_collateral(self, collateral_ref: CollateralRef) -> SettlementReceipt:
        return self._settle(OP_RELEASE_COLLATERAL, (str(collateral_ref),))

    def calls_for(self, operation: str) -> List[tuple]:
        """Arguments of every call made for an operation, in call order."""
        with self._lock:
            return [args for op, args in self.calls if op == operation]

    def _settle(self, operation: str, args: tuple) -> SettlementReceipt:
        with self._lock:
            self.calls.append((operation, args))
            self._sequence += 1
            if operation in self.always_fail:
                return SettlementReceipt.failed(self.always_fail[operation])
            queued = self._fail_queue.get(operation)
            if queued:
                return SettlementReceipt.failed(queued.pop(0))
            payload = "|".join((operation, str(self._sequence)) + args)
            reference = "0x" + hashlib.sha256(payload.encode()).hexdigest()
            return SettlementReceipt.ok(reference)

    def __repr__(self):
        return f"InMemorySettlementAuthority({len(self.calls)} calls)"
