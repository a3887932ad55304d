"""
test_fractional.py - Unit tests for fractional positions

Tests:
- create_position: validation, default invested amount, merging, loan status
- Oversubscription guard and its error details
- distribute_proceeds: pro-rata floors, remainder absorption, ordering, ties
- Claimable balances and claim()
- Expected interest of a position
- Concurrent position creation never exceeds 100%
- Reads of unknown loans leave no state behind
"""

import pytest
import threading
from decimal import Decimal

from nftlend import (
    FractionalPosition,
    FractionalPositionLedger,
    InvalidLoanParameters,
    LoanNotActive,
    LoanNotFound,
    LoanStatus,
    OversubscribedPosition,
    allocate,
)
from tests.conftest import BORROWER, make_ref, moderate


class RepaidAfterFirstRead:
    """Registry view that repays the loan right after the first lookup."""

    def __init__(self, registry):
        self.registry = registry
        self.reads = 0

    def __getattr__(self, name):
        return getattr(self.registry, name)

    def get(self, loan_id):
        loan = self.registry.get(loan_id)
        self.reads += 1
        if self.reads == 1:
            self.registry.repay_full(loan_id)
        return loan


# ============================================================================
# POSITIONS
# ============================================================================

class TestCreatePosition:

    def test_default_invested_amount_is_pro_rata_principal(self, positions, loan):
        position = positions.create_position(loan.loan_id, "alice", 4000)
        assert position == FractionalPosition(loan.loan_id, "alice", 4000, Decimal("400"))
        assert position.share_percent == Decimal("40.00")

    def test_explicit_invested_amount(self, positions, loan):
        position = positions.create_position(loan.loan_id, "alice", 2500, Decimal("260"))
        assert position.invested_amount == Decimal("260")

    def test_same_investor_is_merged(self, positions, loan):
        positions.create_position(loan.loan_id, "alice", 1000)
        merged = positions.create_position(loan.loan_id, "alice", 1500)
        assert merged.share_bps == 2500
        assert merged.invested_amount == Decimal("250")
        assert len(positions.positions(loan.loan_id)) == 1

    def test_full_subscription_allowed(self, positions, loan):
        positions.create_position(loan.loan_id, "alice", 6000)
        positions.create_position(loan.loan_id, "bob", 4000)
        assert positions.total_share_bps(loan.loan_id) == 10000

    @pytest.mark.parametrize("share", [0, -1, 10001, 50.5, True, "100"])
    def test_invalid_share(self, positions, loan, share):
        with pytest.raises(InvalidLoanParameters):
            positions.create_position(loan.loan_id, "alice", share)
        assert positions.positions(loan.loan_id) == []

    def test_invalid_investor(self, positions, loan):
        with pytest.raises(InvalidLoanParameters):
            positions.create_position(loan.loan_id, "", 100)

    def test_negative_invested_amount(self, positions, loan):
        with pytest.raises(InvalidLoanParameters):
            positions.create_position(loan.loan_id, "alice", 100, Decimal("-1"))

    def test_unknown_loan(self, positions):
        with pytest.raises(LoanNotFound):
            positions.create_position(7, "alice", 100)

    def test_loan_must_be_active(self, registry, positions, loan):
        registry.repay_full(loan.loan_id)
        with pytest.raises(LoanNotActive):
            positions.create_position(loan.loan_id, "alice", 100)

    def test_loan_closed_while_waiting_for_lock(self, registry, loan):
        ledger = FractionalPositionLedger(RepaidAfterFirstRead(registry))
        with pytest.raises(LoanNotActive, match="REPAID"):
            ledger.create_position(loan.loan_id, "alice", 100)
        assert registry.get(loan.loan_id).status == LoanStatus.REPAID
        assert ledger.positions(loan.loan_id) == []

    def test_positions_by_investor(self, registry, positions, loan):
        other = registry.create_loan(BORROWER, make_ref(), Decimal("500"), 30, moderate())
        positions.create_position(other.loan_id, "alice", 100)
        positions.create_position(loan.loan_id, "alice", 200)
        positions.create_position(loan.loan_id, "bob", 300)
        assert [p.loan_id for p in positions.positions_by_investor("alice")] == [loan.loan_id, other.loan_id]


class TestOversubscription:

    def test_rejected_with_details(self, positions, loan):
        positions.create_position(loan.loan_id, "alice", 6000)
        positions.create_position(loan.loan_id, "bob", 3000)

        with pytest.raises(OversubscribedPosition) as exc_info:
            positions.create_position(loan.loan_id, "carol", 1500)

        error = exc_info.value
        assert error.investor == "carol"
        assert error.requested_bps == 1500
        assert error.existing_bps == 9000
        assert error.loan_id == loan.loan_id
        assert "carol" in str(error)
        assert "1000 bps remain" in str(error)

    def test_rejection_leaves_positions_unchanged(self, positions, loan):
        positions.create_position(loan.loan_id, "alice", 9000)
        before = positions.positions(loan.loan_id)
        with pytest.raises(OversubscribedPosition):
            positions.create_position(loan.loan_id, "alice", 1001)
        assert positions.positions(loan.loan_id) == before

    def test_concurrent_creation_never_exceeds_cap(self, positions, loan):
        accepted = []
        lock = threading.Lock()

        def worker(n):
            try:
                positions.create_position(loan.loan_id, f"investor-{n}", 700)
            except OversubscribedPosition:
                return
            with lock:
                accepted.append(n)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(30)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(accepted) == 14
        assert positions.total_share_bps(loan.loan_id) == 9800


# ============================================================================
# DISTRIBUTION
# ============================================================================

class TestDistributeProceeds:

    def test_exact_split(self, positions, loan):
        positions.create_position(loan.loan_id, "alice", 4000)
        positions.create_position(loan.loan_id, "bob", 3500)
        positions.create_position(loan.loan_id, "carol", 2500)

        allocations = positions.distribute_proceeds(loan.loan_id, Decimal("1000"))

        assert allocations == {"alice": Decimal("400"), "bob": Decimal("350"), "carol": Decimal("250")}
        assert list(allocations) == ["alice", "bob", "carol"]
        assert sum(allocations.values()) == Decimal("1000")

    def test_last_investor_absorbs_rounding(self, positions, loan):
        for investor in ("a", "b", "c"):
            positions.create_position(loan.loan_id, investor, 3333)
        allocations = positions.distribute_proceeds(loan.loan_id, Decimal("0.000010"))
        # floor(0.00001 * 0.3333) = 0.000003 for the first two; c takes the rest
        assert allocations == {"a": Decimal("0.000003"), "b": Decimal("0.000003"), "c": Decimal("0.000004")}

    def test_smallest_share_is_last(self, positions, loan):
        positions.create_position(loan.loan_id, "small", 1000)
        positions.create_position(loan.loan_id, "large", 5000)
        positions.create_position(loan.loan_id, "medium", 3000)
        allocations = positions.distribute_proceeds(loan.loan_id, Decimal("100"))
        assert list(allocations) == ["large", "medium", "small"]

    def test_ties_broken_by_investor(self, positions, loan):
        positions.create_position(loan.loan_id, "zed", 5000)
        positions.create_position(loan.loan_id, "amy", 5000)
        allocations = positions.distribute_proceeds(loan.loan_id, Decimal("0.000001"))
        assert list(allocations) == ["amy", "zed"]
        assert allocations == {"amy": Decimal("0"), "zed": Decimal("0.000001")}

    def test_unsubscribed_portion_goes_to_last_investor(self, positions, loan):
        positions.create_position(loan.loan_id, "alice", 5000)
        positions.create_position(loan.loan_id, "bob", 2000)
        allocations = positions.distribute_proceeds(loan.loan_id, Decimal("100"))
        assert allocations == {"alice": Decimal("50"), "bob": Decimal("50")}

    def test_zero_proceeds(self, positions, loan):
        positions.create_position(loan.loan_id, "alice", 5000)
        assert positions.distribute_proceeds(loan.loan_id, Decimal("0")) == {"alice": Decimal("0")}

    def test_negative_proceeds(self, positions, loan):
        positions.create_position(loan.loan_id, "alice", 5000)
        with pytest.raises(InvalidLoanParameters):
            positions.distribute_proceeds(loan.loan_id, Decimal("-1"))

    def test_no_positions(self, positions, loan):
        with pytest.raises(InvalidLoanParameters, match="no fractional positions"):
            positions.distribute_proceeds(loan.loan_id, Decimal("10"))

    def test_unknown_loan(self, positions):
        with pytest.raises(LoanNotFound):
            positions.distribute_proceeds(3, Decimal("10"))

    def test_allowed_after_repayment(self, registry, positions, loan):
        positions.create_position(loan.loan_id, "alice", 10000)
        registry.repay_full(loan.loan_id)
        assert positions.distribute_proceeds(loan.loan_id, Decimal("1000")) == {"alice": Decimal("1000")}

    def test_allocate_function(self):
        shares = [FractionalPosition(1, "x", 2000, Decimal("0")), FractionalPosition(1, "y", 8000, Decimal("0"))]
        assert allocate(Decimal("10"), shares) == {"y": Decimal("8"), "x": Decimal("2")}


class TestClaims:

    def test_distributions_accumulate_until_claimed(self, positions, loan):
        positions.create_position(loan.loan_id, "alice", 6000)
        positions.create_position(loan.loan_id, "bob", 4000)
        positions.distribute_proceeds(loan.loan_id, Decimal("100"))
        positions.distribute_proceeds(loan.loan_id, Decimal("50"))

        assert positions.claimable(loan.loan_id, "alice") == Decimal("90")
        assert positions.claim(loan.loan_id, "alice") == Decimal("90")
        assert positions.claimable(loan.loan_id, "alice") == Decimal("0")
        assert positions.claim(loan.loan_id, "alice") == Decimal("0")
        assert positions.claimable(loan.loan_id, "bob") == Decimal("60")

    def test_claim_without_position(self, positions, loan):
        with pytest.raises(InvalidLoanParameters, match="holds no position"):
            positions.claim(loan.loan_id, "mallory")


class TestReadsOfUnknownLoans:

    def test_reads_leave_no_state_behind(self, positions):
        assert positions.positions(99) == []
        assert positions.position(99, "alice") is None
        assert positions.claimable(99, "alice") == Decimal("0")
        assert positions.total_share_bps(99) == 0
        assert positions._locks == {}
        assert positions._claimable == {}
        assert positions._positions == {}

    def test_claim_on_unknown_loan(self, positions):
        with pytest.raises(InvalidLoanParameters, match="holds no position"):
            positions.claim(99, "alice")
        assert positions._locks == {}


class TestExpectedInterest:

    def test_position_interest_over_remaining_term(self, positions, loan):
        # 30-day loan at 8%: one month remaining
        positions.create_position(loan.loan_id, "alice", 5000)
        assert positions.expected_interest(loan.loan_id, "alice") == Decimal("3.333333")

    def test_requires_position(self, positions, loan):
        with pytest.raises(InvalidLoanParameters):
            positions.expected_interest(loan.loan_id, "nobody")
