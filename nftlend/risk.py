"""
risk.py - Risk Engine

Maps borrower/collateral signals to a risk tier and a recommended annual rate.

The tier -> rate mapping is a policy table, not derived logic. RiskEngine takes
the table as a constructor argument so a different policy can be swapped in
without touching the registry.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from .core import (
    RiskAssessment, RiskTier, InvalidLoanParameters,
    BPS_DENOMINATOR, bps_to_percent,
)
from .logging import get_logger


logger = get_logger(__name__)


# Annual rates in basis points: 5%, 8%, 12%, 16%, 25%.
DEFAULT_RATE_TABLE: Mapping[RiskTier, int] = {
    RiskTier.LOW: 500,
    RiskTier.MODERATE: 800,
    RiskTier.MEDIUM: 1200,
    RiskTier.HIGH: 1600,
    RiskTier.VERY_HIGH: 2500,
}

TIER_DESCRIPTIONS: Mapping[RiskTier, str] = {
    RiskTier.LOW: "Blue chip collections",
    RiskTier.MODERATE: "Established collections",
    RiskTier.MEDIUM: "Active collections",
    RiskTier.HIGH: "Emerging collections",
    RiskTier.VERY_HIGH: "Speculative/New collections",
}


@dataclass(frozen=True, slots=True)
class RiskSignals:
    """
    Opaque signal bundle from the external risk signal source.

    Only risk_tier is interpreted by the engine; attributes carries whatever
    else the source computed (floor price, holder count, ...) for audit.
    """
    risk_tier: Any
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RateCardEntry:
    tier: RiskTier
    rate_bps: int
    description: str

    @property
    def rate_percent(self) -> Decimal:
        return bps_to_percent(self.rate_bps)


def coerce_tier(value: Any) -> RiskTier:
    """
    Accept a RiskTier, its ordinal (0-4) or its name ("MODERATE").

    Raises:
        InvalidLoanParameters: If the value does not name a tier
    """
    if isinstance(value, RiskTier):
        return value
    if isinstance(value, bool):
        raise InvalidLoanParameters(f"risk tier must be 0-4 or a tier name, got {value!r}")
    if isinstance(value, int):
        try:
            return RiskTier(value)
        except ValueError:
            raise InvalidLoanParameters(f"risk tier must be in 0..4, got {value}") from None
    if isinstance(value, str):
        try:
            return RiskTier[value.strip().upper()]
        except KeyError:
            raise InvalidLoanParameters(f"unknown risk tier name {value!r}") from None
    raise InvalidLoanParameters(f"risk tier must be 0-4 or a tier name, got {value!r}")


class RiskEngine:
    """
    Stateless tier -> rate policy.

    Example:
        engine = RiskEngine()
        assessment = engine.assess(RiskSignals(risk_tier=1))
        assessment.recommended_rate_bps  # 800
    """

    def __init__(self, rate_table: Optional[Mapping[RiskTier, int]] = None):
        table = dict(rate_table if rate_table is not None else DEFAULT_RATE_TABLE)
        missing = [tier.name for tier in RiskTier if tier not in table]
        if missing:
            raise InvalidLoanParameters(f"rate table missing tiers: {', '.join(missing)}")
        for tier, rate in table.items():
            if isinstance(rate, bool) or not isinstance(rate, int) or rate < 0 or rate > BPS_DENOMINATOR:
                raise InvalidLoanParameters(
                    f"rate for {tier.name} must be an integer in [0, {BPS_DENOMINATOR}] bps, got {rate!r}"
                )
        self._rate_table: Dict[RiskTier, int] = table

    def assess(self, signals: Any) -> RiskAssessment:
        """
        Classify signals into a RiskAssessment.

        Args:
            signals: RiskSignals, or anything tier-like accepted by coerce_tier

        Raises:
            InvalidLoanParameters: If the signals do not carry a valid tier
        """
        raw_tier = signals.risk_tier if isinstance(signals, RiskSignals) else signals
        tier = coerce_tier(raw_tier)
        assessment = RiskAssessment(risk_tier=tier, recommended_rate_bps=self._rate_table[tier])
        logger.debug("Risk assessed: tier=%s rate_bps=%d", tier.name, assessment.recommended_rate_bps)
        return assessment

    def rate_for(self, tier: Any) -> int:
        return self._rate_table[coerce_tier(tier)]

    def rate_card(self) -> List[RateCardEntry]:
        """Tier, rate and description for every tier, LOW first."""
        return [
            RateCardEntry(tier=tier, rate_bps=self._rate_table[tier], description=TIER_DESCRIPTIONS[tier])
            for tier in RiskTier
        ]
