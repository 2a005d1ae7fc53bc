"""
Shared fixtures for billing tests.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from marketplace_billing.core.events import InMemoryEventSink
from marketplace_billing.storage.models import Contract
from marketplace_billing.storage.repository import BillingRepository


class FixedClock:
    """Clock returning a settable time."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def repository():
    """In-memory repository with the schema created."""
    repo = BillingRepository(":memory:")
    repo.initialize_schema()
    yield repo
    repo.close()


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 15, 9, 30))


@pytest.fixture
def sink():
    return InMemoryEventSink()


def make_contract(
    contract_id: str = "contract-1",
    customer_id: str = "customer-1",
    base_fee: str = "100.00",
    overage_fee: str = "0.10",
    min_commit: int = 1000,
    discount_rate: str = "0",
    billing_cycle: int = 1,
    next_billing: date = date(2024, 3, 1),
    **kwargs,
) -> Contract:
    return Contract(
        id=contract_id,
        customer_id=customer_id,
        base_fee=Decimal(base_fee),
        call_overage_fee=Decimal(overage_fee),
        min_commit_calls=min_commit,
        discount_rate=Decimal(discount_rate),
        billing_cycle=billing_cycle,
        next_billing_date=next_billing,
        **kwargs,
    )
