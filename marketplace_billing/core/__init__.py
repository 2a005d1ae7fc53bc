"""
Core modules for Marketplace Billing.

This package contains the billing run orchestration, invoice
computation, credit ledger, proration and pricing logic.
"""
