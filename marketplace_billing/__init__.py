"""
Marketplace Billing.

Billing execution core for a marketplace: idempotent billing runs,
invoice computation, the credit ledger, proration and pricing.
"""

__version__ = "0.1.0"
