"""
nftlend - NFT-Collateralized Lending Engine

Tracks loans backed by NFT collateral, prices them by risk tier, applies
payments, detects liquidation conditions and splits proceeds among
fractional co-investors.

Usage:
    from nftlend import (
        LendingService, InMemorySettlementAuthority, StaticValuationSource,
        CollateralRef, RiskSignals,
    )

    ref = CollateralRef("0x" + "ab" * 20, 7)
    service = LendingService(
        InMemorySettlementAuthority(),
        StaticValuationSource({ref: Decimal("2000")}),
    )
    loan = service.create_loan("0xborrower", ref, Decimal("1000"), 30, RiskSignals(risk_tier=1))
    service.apply_payment(loan.loan_id, Decimal("300"))
    service.repay_full(loan.loan_id)
"""

# Core types
from .core import (
    LoanStatus,
    RiskTier,
    PaymentKind,
    PortfolioHealth,
    CollateralRef,
    RiskAssessment,
    Loan,
    Payment,
    FractionalPosition,
    LoanView,
    Clock,
    SystemClock,
    ManualClock,
    LendingError,
    InvalidLoanParameters,
    LoanNotFound,
    LoanNotActive,
    AlreadyRepaid,
    NotEligibleForLiquidation,
    LiquidationStatusConflict,
    OversubscribedPosition,
    SettlementFailure,
    ConfigurationError,
    to_money,
    money,
    bps_of,
    bps_to_percent,
    money_context,
    MONEY_PLACES,
    MONEY_QUANTUM,
    BPS_DENOMINATOR,
)

# Amortization (pure functions)
from .amortization import (
    ScheduledInstallment,
    monthly_payment,
    loan_to_value,
    ltv_breaches,
    expected_interest,
    accrued_interest,
    pending_interest,
    current_debt,
    days_remaining,
    months_remaining,
    amortization_schedule,
)

# Risk
from .risk import (
    RiskEngine,
    RiskSignals,
    RateCardEntry,
    DEFAULT_RATE_TABLE,
    TIER_DESCRIPTIONS,
    coerce_tier,
)

# Journal, settlement, valuation
from .journal import PaymentJournal
from .settlement import (
    SettlementAuthority,
    SettlementReceipt,
    InMemorySettlementAuthority,
)
from .valuation import (
    CollateralValuationSource,
    StaticValuationSource,
    TimeSeriesValuationSource,
)

# Registry
from .registry import (
    LoanRegistry,
    PaymentResult,
    RepaymentResult,
    StatusResult,
)

# Liquidation
from .liquidation import (
    LiquidationMonitor,
    LiquidationCheck,
    SweepResult,
)

# Fractional positions
from .fractional import FractionalPositionLedger, allocate

# Portfolio
from .portfolio import (
    PortfolioAggregator,
    PortfolioSnapshot,
    MarketOverview,
    classify_health,
)

# Service facade
from .service import LendingService, LoanAnalytics, RateCard

# Configuration and logging
from .config import EngineConfig
from .logging import setup_logging, get_logger

__all__ = [
    # Core
    'LoanStatus', 'RiskTier', 'PaymentKind', 'PortfolioHealth',
    'CollateralRef', 'RiskAssessment', 'Loan', 'Payment', 'FractionalPosition',
    'LoanView', 'Clock', 'SystemClock', 'ManualClock',
    'LendingError', 'InvalidLoanParameters', 'LoanNotFound', 'LoanNotActive',
    'AlreadyRepaid', 'NotEligibleForLiquidation', 'LiquidationStatusConflict',
    'OversubscribedPosition', 'SettlementFailure', 'ConfigurationError',
    'to_money', 'money', 'bps_of', 'bps_to_percent', 'money_context',
    'MONEY_PLACES', 'MONEY_QUANTUM', 'BPS_DENOMINATOR',
    # Amortization
    'ScheduledInstallment', 'monthly_payment', 'loan_to_value', 'ltv_breaches',
    'expected_interest', 'accrued_interest', 'pending_interest', 'current_debt',
    'days_remaining', 'months_remaining', 'amortization_schedule',
    # Risk
    'RiskEngine', 'RiskSignals', 'RateCardEntry', 'DEFAULT_RATE_TABLE',
    'TIER_DESCRIPTIONS', 'coerce_tier',
    # Journal, settlement, valuation
    'PaymentJournal', 'SettlementAuthority', 'SettlementReceipt',
    'InMemorySettlementAuthority', 'CollateralValuationSource',
    'StaticValuationSource', 'TimeSeriesValuationSource',
    # Registry
    'LoanRegistry', 'PaymentResult', 'RepaymentResult', 'StatusResult',
    # Liquidation
    'LiquidationMonitor', 'LiquidationCheck', 'SweepResult',
    # Fractional positions
    'FractionalPositionLedger', 'allocate',
    # Portfolio
    'PortfolioAggregator', 'PortfolioSnapshot', 'MarketOverview', 'classify_health',
    # Service
    'LendingService', 'LoanAnalytics', 'RateCard',
    # Configuration and logging
    'EngineConfig', 'setup_logging', 'get_logger',
]
