"""
conftest.py - Shared pytest fixtures for lending engine tests

Provides common fixtures used across unit, conformance and functional tests:
- A manual clock pinned to 2025-01-01 UTC
- An in-memory settlement authority (with failure injection)
- A static collateral valuation source
- Registries and a fully wired LendingService
- Helpers for collateral references and funded loans
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from itertools import count

from nftlend import (
    CollateralRef,
    EngineConfig,
    FractionalPositionLedger,
    InMemorySettlementAuthority,
    LendingService,
    LiquidationMonitor,
    LoanRegistry,
    ManualClock,
    PaymentJournal,
    RiskEngine,
    RiskSignals,
    StaticValuationSource,
)


START = datetime(2025, 1, 1, tzinfo=timezone.utc)
BORROWER = "0x" + "b0" * 20

_token_ids = count(1)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def make_ref(token_id: int = None, contract: str = "0x" + "ab" * 20) -> CollateralRef:
    """Collateral reference with a fresh token id unless one is given."""
    return CollateralRef(contract, next(_token_ids) if token_id is None else token_id)


def moderate():
    """Assessment for the MODERATE tier (8%)."""
    return RiskEngine().assess(RiskSignals(risk_tier=1))


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def settlement():
    return InMemorySettlementAuthority()


@pytest.fixture
def valuation():
    return StaticValuationSource()


@pytest.fixture
def journal():
    return PaymentJournal(capacity=1000)


@pytest.fixture
def registry(settlement, journal, clock):
    return LoanRegistry(settlement, journal=journal, clock=clock)


@pytest.fixture
def monitor(registry, valuation):
    return LiquidationMonitor(registry, valuation, threshold_bps=8000)


@pytest.fixture
def positions(registry):
    return FractionalPositionLedger(registry)


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def service(settlement, valuation, clock, config):
    return LendingService(settlement, valuation, config=config, clock=clock)


@pytest.fixture
def loan(registry):
    """A 1000 principal, 30 day, 8% loan."""
    return registry.create_loan(BORROWER, make_ref(), Decimal("1000"), 30, moderate())


@pytest.fixture
def valued_loan(service, valuation):
    """A 1000 principal, 30 day, 8% loan with collateral valued at 2000 (LTV 50%)."""
    ref = make_ref()
    valuation.update_value(ref, Decimal("2000"))
    return service.create_loan(BORROWER, ref, Decimal("1000"), 30, RiskSignals(risk_tier=1))
