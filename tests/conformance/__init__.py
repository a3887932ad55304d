"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the lending engine.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. principal_monotonicity.py - Payments never increase principal or push it below zero
2. proceeds_conservation.py - Distributions add up to the distributed amount exactly
3. oversubscription_guard.py - Shares of a loan never exceed 100%
4. state_closure.py - Closed loans stay closed
5. repayment_idempotence.py - A loan is repaid in full at most once
6. settlement_atomicity.py - Nothing is committed without settlement confirmation

These tests use hypothesis for property-based testing.
"""
