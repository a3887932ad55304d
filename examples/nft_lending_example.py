"""
Example: An NFT-backed loan from origination to liquidation.

Walks one borrower through the engine with an in-memory settlement authority
and a scripted floor price:

1. Quote and originate a loan against an NFT
2. Sell fractional shares of the loan to three investors
3. Make a payment that flows through to the investors
4. Watch the collateral value fall until a sweep liquidates the loan
5. Print the borrower's portfolio and the market overview
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from nftlend import (
    CollateralRef,
    EngineConfig,
    InMemorySettlementAuthority,
    LendingService,
    ManualClock,
    RiskSignals,
    TimeSeriesValuationSource,
    setup_logging,
)


def main():
    config = EngineConfig.from_env()
    setup_logging(config.log_level, config.log_format)

    print("=" * 80)
    print("NFT LENDING - Loan Lifecycle Example")
    print("=" * 80)
    print()

    start = datetime(2025, 1, 1, tzinfo=timezone.utc)
    clock = ManualClock(start)
    punk = CollateralRef("0xb47e3cd837ddf8e4c57f05d70ab865de6e193bbb", 7804)
    floor = TimeSeriesValuationSource({
        punk: [
            (start, Decimal("25000")),
            (start + timedelta(days=20), Decimal("19000")),
            (start + timedelta(days=40), Decimal("9000")),
        ],
    })
    service = LendingService(InMemorySettlementAuthority(), floor, config=config, clock=clock)
    borrower = "0x" + "b0" * 20

    print("Step 1: Origination")
    print("-" * 80)
    for entry in service.get_rates().entries:
        print(f"  {entry.tier.name:<10} {entry.rate_percent}%  {entry.description}")
    loan = service.create_loan(borrower, punk, Decimal("12000"), 90, RiskSignals(risk_tier=2))
    print(f"Loan {loan.loan_id}: {loan.principal} at {loan.interest_rate_bps} bps against {punk}")
    for row in service.get_payment_schedule(loan.loan_id):
        print(f"  #{row.payment_number} due {row.due_date:%Y-%m-%d}: {row.total_payment} "
              f"(principal {row.principal_payment}, interest {row.interest_payment})")
    print()

    print("Step 2: Fractional investors")
    print("-" * 80)
    for investor, share in (("fund_a", 5000), ("fund_b", 3000), ("angel", 1500)):
        position = service.create_fractional_position(loan.loan_id, investor, share)
        print(f"  {investor}: {position.share_percent}% for {position.invested_amount}")
    print()

    print("Step 3: First payment")
    print("-" * 80)
    clock.advance(days=30)
    result = service.apply_payment(loan.loan_id, Decimal("4000"))
    print(f"Applied {result.amount_applied}, principal now {result.remaining_principal}")
    for position in service.get_positions(loan.loan_id):
        print(f"  {position.investor} can claim {service.positions.claimable(loan.loan_id, position.investor)}")
    print()

    print("Step 4: Falling floor price")
    print("-" * 80)
    for _ in range(3):
        clock.advance(days=5)
        analytics = service.get_loan_analytics(loan.loan_id)
        print(f"  {clock.now():%Y-%m-%d}: debt {analytics.current_debt}, "
              f"collateral {analytics.collateral_value}, LTV {analytics.ltv_percent}%")
        report = service.sweep_liquidations(initiate=True)
        if report.initiated:
            print(f"  Sweep initiated liquidation of {report.initiated}: {report.eligible[0].reason}")
            service.finalize_liquidation(loan.loan_id)
            break
    print(f"Loan {loan.loan_id} is {service.get_loan(loan.loan_id).status.value}")
    print()

    print("Step 5: Portfolio and market")
    print("-" * 80)
    stats = service.get_portfolio_stats(borrower)
    print(f"  Borrower health: {stats.portfolio_health.value}, loans: {stats.total_loans}")
    overview = service.get_market_overview()
    print(f"  Market: {overview.total_loans_created} loans, volume {overview.total_loan_volume}, "
          f"liquidation rate {overview.liquidation_rate}%")
    print()


if __name__ == "__main__":
    main()
