"""
Storage layer.

SQLite persistence for billing jobs, contracts, usage, invoices and credits.
"""

from .db import get_connection
from .repository import BillingRepository, initialize_schema

__all__ = ["BillingRepository", "get_connection", "initialize_schema"]
