"""
valuation.py - Collateral valuation sources

Provides collateral values for liquidation and LTV checks.

Classes:
- CollateralValuationSource: Protocol defining the valuation interface
- StaticValuationSource: Time-independent values
- TimeSeriesValuationSource: Time-varying values with historical data

Values are keyed by CollateralRef and denominated in the loan currency. A
missing valuation is reported as None; callers treat it as a zero value.
"""

from bisect import bisect_right
from datetime import datetime
from decimal import Decimal
import threading
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

from .core import CollateralRef


@runtime_checkable
class CollateralValuationSource(Protocol):
    """
    Protocol for collateral valuation sources.

    Implementations must provide get_value().
    """

    def get_value(self, collateral_ref: CollateralRef, timestamp: datetime) -> Optional[Decimal]:
        """Get the value of one collateral item at a specific timestamp."""
        ...


class StaticValuationSource:
    """
    Valuation source with static values (time-independent).

    Values remain constant regardless of timestamp until updated.
    """

    def __init__(self, values: Optional[Dict[CollateralRef, Decimal]] = None):
        """
        Initialize with a static value map.

        Args:
            values: Dictionary mapping collateral references to values
        """
        self._values: Dict[str, Decimal] = {}
        self._lock = threading.Lock()
        for ref, value in (values or {}).items():
            self._values[ref.key] = value

    def get_value(self, collateral_ref: CollateralRef, timestamp: datetime) -> Optional[Decimal]:
        """Get static value (timestamp is ignored)."""
        with self._lock:
            return self._values.get(collateral_ref.key)

    def update_value(self, collateral_ref: CollateralRef, value: Decimal):
        """Update the value of one collateral item."""
        with self._lock:
            self._values[collateral_ref.key] = value

    def update_values(self, values: Dict[CollateralRef, Decimal]):
        """Update multiple values at once."""
        with self._lock:
            for ref, value in values.items():
                self._values[ref.key] = value

    def __repr__(self):
        return f"StaticValuationSource({len(self._values)} values)"


class TimeSeriesValuationSource:
    """
    Valuation source with time-varying values.

    Stores historical observations and returns the most recent value at or
    before the requested timestamp.
    """

    def __init__(
        self,
        value_paths: Optional[Dict[CollateralRef, List[Tuple[datetime, Decimal]]]] = None,
    ):
        """
        Initialize valuation source.

        Args:
            value_paths: Optional dict mapping collateral references to lists of
                         (timestamp, value) tuples. If None, creates empty source.

        Examples:
            # Empty initialization
            source = TimeSeriesValuationSource()
            source.add_value(ref, datetime(2025, 1, 15), Decimal("1500"))

            # Batch initialization with value paths
            source = TimeSeriesValuationSource({
                ref: [(t0, Decimal("1500")), (t1, Decimal("1200"))],
            })
        """
        self.value_history: Dict[str, List[Tuple[datetime, Decimal]]] = {}
        self._lock = threading.Lock()

        if value_paths:
            for ref, path in value_paths.items():
                if not path:
                    continue
                # Sort by timestamp to ensure chronological order
                self.value_history[ref.key] = sorted(path, key=lambda x: x[0])

    def add_value(self, collateral_ref: CollateralRef, timestamp: datetime, value: Decimal):
        """
        Add a value observation at a specific time.

        Args:
            collateral_ref: Collateral being valued
            timestamp: Time of the observation
            value: Value in loan currency
        """
        with self._lock:
            history = self.value_history.setdefault(collateral_ref.key, [])
            history.append((timestamp, value))
            history.sort(key=lambda x: x[0])

    def get_value(self, collateral_ref: CollateralRef, timestamp: datetime) -> Optional[Decimal]:
        """
        Get value at or before the specified timestamp.

        Returns None if no observation exists at or before the timestamp.
        Uses binary search for O(log n) lookup.
        """
        with self._lock:
            history = self.value_history.get(collateral_ref.key)
            if not history:
                return None
            timestamps = [ts for ts, _ in history]
            idx = bisect_right(timestamps, timestamp)
            if idx == 0:
                return None
            return history[idx - 1][1]

    def __repr__(self):
        total_observations = sum(len(history) for history in self.value_history.values())
        return f"TimeSeriesValuationSource({len(self.value_history)} items, {total_observations} observations)"
