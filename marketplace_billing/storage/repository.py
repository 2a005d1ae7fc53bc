"""
Repository pattern for data access.

Handles database operations and data persistence logic for billing jobs,
contracts, usage, invoices, credits and marketplace records.

Money is stored as TEXT with four fraction digits so no binary floating
point ever touches a ledger value. Dates and timestamps are ISO-8601 text.
"""

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from ..core.money import from_decimal_string, to_decimal_string
from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    BillingFrequency,
    BillingJob,
    BillingMethod,
    Contract,
    ContractStatus,
    Credit,
    CreditType,
    EntityCreditBalance,
    EntityMember,
    EntitySubscription,
    Invoice,
    InvoiceLine,
    InvoiceStatus,
    JobStatus,
    LineType,
    MarketplaceEvent,
    SubscriptionStatus,
    UsageEvent,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS billing_job (
    id TEXT PRIMARY KEY,
    as_of_date TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    total_customers INTEGER NOT NULL DEFAULT 0,
    processed_customers INTEGER NOT NULL DEFAULT 0,
    invoices_created INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    metadata TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS contract (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    base_fee TEXT NOT NULL,
    call_overage_fee TEXT NOT NULL,
    min_commit_calls INTEGER NOT NULL DEFAULT 0,
    discount_rate TEXT NOT NULL DEFAULT '0.0000',
    billing_cycle INTEGER NOT NULL DEFAULT 1,
    next_billing_date TEXT,
    billing_anchor_day INTEGER,
    status TEXT NOT NULL,
    last_billed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_contract_due ON contract (status, next_billing_date);

CREATE TABLE IF NOT EXISTS usage_event (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    contract_id TEXT NOT NULL REFERENCES contract (id),
    quantity INTEGER NOT NULL CHECK (quantity >= 0),
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_contract_ts ON usage_event (contract_id, timestamp);

CREATE TABLE IF NOT EXISTS invoice (
    id TEXT PRIMARY KEY,
    number TEXT NOT NULL UNIQUE,
    customer_id TEXT NOT NULL,
    contract_id TEXT NOT NULL REFERENCES contract (id),
    status TEXT NOT NULL,
    subtotal TEXT NOT NULL,
    discount_amount TEXT NOT NULL,
    credit_amount TEXT NOT NULL,
    total TEXT NOT NULL,
    currency TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    billing_cycle INTEGER NOT NULL,
    due_date TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (contract_id, period_start, period_end)
);

CREATE TABLE IF NOT EXISTS invoice_line (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    invoice_id TEXT NOT NULL REFERENCES invoice (id),
    position INTEGER NOT NULL,
    line_type TEXT NOT NULL,
    description TEXT NOT NULL,
    quantity INTEGER NOT NULL,
    unit_amount TEXT NOT NULL,
    amount TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS invoice_sequence (
    year INTEGER PRIMARY KEY,
    last_value INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS credit (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    credit_type TEXT NOT NULL,
    description TEXT NOT NULL,
    created_at TEXT NOT NULL,
    applied_at TEXT,
    expires_at TEXT,
    applied_to_invoice TEXT,
    metadata TEXT NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_credit_customer ON credit (customer_id, applied_at);

CREATE TABLE IF NOT EXISTS entity_credit_balance (
    entity_id TEXT PRIMARY KEY,
    total_credits TEXT NOT NULL,
    used_credits TEXT NOT NULL,
    expires_at TEXT
);

CREATE TABLE IF NOT EXISTS entity_member (
    entity_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    credit_limit TEXT NOT NULL DEFAULT '0.0000',
    PRIMARY KEY (entity_id, user_id)
);

CREATE TABLE IF NOT EXISTS entity_subscription (
    id TEXT PRIMARY KEY,
    entity_id TEXT NOT NULL,
    frequency TEXT NOT NULL,
    seat_count INTEGER NOT NULL,
    price_per_seat TEXT NOT NULL,
    next_billing_date TEXT NOT NULL,
    status TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS marketplace_event (
    id TEXT PRIMARY KEY,
    entity_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    quantity INTEGER NOT NULL,
    unit_price TEXT NOT NULL,
    amount TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    billing_method TEXT,
    metadata TEXT NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_marketplace_entity_ts ON marketplace_event (entity_id, timestamp);
"""

_JOB_COLUMNS = (
    "id, as_of_date, status, started_at, completed_at, total_customers, "
    "processed_customers, invoices_created, error_message, metadata"
)
_CONTRACT_COLUMNS = (
    "id, customer_id, base_fee, call_overage_fee, min_commit_calls, discount_rate, "
    "billing_cycle, next_billing_date, billing_anchor_day, status, last_billed_at"
)
_INVOICE_COLUMNS = (
    "id, number, customer_id, contract_id, status, subtotal, discount_amount, "
    "credit_amount, total, currency, period_start, period_end, billing_cycle, "
    "due_date, created_at"
)
_CREDIT_COLUMNS = (
    "id, customer_id, amount, credit_type, description, created_at, "
    "applied_at, expires_at, metadata"
)
_EVENT_COLUMNS = (
    "id, entity_id, user_id, event_type, quantity, unit_price, amount, timestamp, "
    "billing_method, metadata"
)


def new_id() -> str:
    """Generate a record identifier."""
    return str(uuid.uuid4())


def _date_text(value: Optional[Union[date, datetime]]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def _timestamp_text(value: Optional[Union[date, datetime]]) -> Optional[str]:
    # Fixed-width text so lexical order matches chronological order.
    if value is None:
        return None
    if not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    return value.isoformat(timespec="microseconds")


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_job(row: sqlite3.Row) -> BillingJob:
    return BillingJob(
        id=row["id"],
        as_of_date=_parse_date(row["as_of_date"]),
        status=JobStatus(row["status"]),
        started_at=_parse_timestamp(row["started_at"]),
        completed_at=_parse_timestamp(row["completed_at"]),
        total_customers=row["total_customers"],
        processed_customers=row["processed_customers"],
        invoices_created=row["invoices_created"],
        error_message=row["error_message"],
        metadata=json.loads(row["metadata"]),
    )


def _row_to_contract(row: sqlite3.Row) -> Contract:
    return Contract(
        id=row["id"],
        customer_id=row["customer_id"],
        base_fee=from_decimal_string(row["base_fee"]),
        call_overage_fee=from_decimal_string(row["call_overage_fee"]),
        min_commit_calls=row["min_commit_calls"],
        discount_rate=from_decimal_string(row["discount_rate"]),
        billing_cycle=row["billing_cycle"],
        next_billing_date=_parse_date(row["next_billing_date"]),
        billing_anchor_day=row["billing_anchor_day"],
        status=ContractStatus(row["status"]),
        last_billed_at=_parse_date(row["last_billed_at"]),
    )


def _row_to_invoice(row: sqlite3.Row) -> Invoice:
    return Invoice(
        id=row["id"],
        number=row["number"],
        customer_id=row["customer_id"],
        contract_id=row["contract_id"],
        status=InvoiceStatus(row["status"]),
        subtotal=from_decimal_string(row["subtotal"]),
        discount_amount=from_decimal_string(row["discount_amount"]),
        credit_amount=from_decimal_string(row["credit_amount"]),
        total=from_decimal_string(row["total"]),
        currency=row["currency"],
        period_start=_parse_date(row["period_start"]),
        period_end=_parse_date(row["period_end"]),
        billing_cycle=row["billing_cycle"],
        due_date=_parse_date(row["due_date"]),
        created_at=_parse_timestamp(row["created_at"]),
    )


def _row_to_credit(row: sqlite3.Row) -> Credit:
    return Credit(
        id=row["id"],
        customer_id=row["customer_id"],
        amount=from_decimal_string(row["amount"]),
        credit_type=CreditType(row["credit_type"]),
        description=row["description"],
        created_at=_parse_timestamp(row["created_at"]),
        applied_at=_parse_timestamp(row["applied_at"]),
        expires_at=_parse_timestamp(row["expires_at"]),
        metadata=json.loads(row["metadata"]),
    )


def _row_to_event(row: sqlite3.Row) -> MarketplaceEvent:
    return MarketplaceEvent(
        id=row["id"],
        entity_id=row["entity_id"],
        user_id=row["user_id"],
        event_type=row["event_type"],
        quantity=row["quantity"],
        unit_price=from_decimal_string(row["unit_price"]),
        amount=from_decimal_string(row["amount"]),
        timestamp=_parse_timestamp(row["timestamp"]),
        billing_method=BillingMethod(row["billing_method"]) if row["billing_method"] else None,
        metadata=json.loads(row["metadata"]),
    )


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all billing tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


class BillingRepository:
    """Repository for billing records.

    Holds one connection for its lifetime so a ":memory:" database and
    multi-statement transactions both work. Writes outside an explicit
    transaction() block are committed immediately.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self.connection = get_connection(db_path)
        self._depth = 0

    def initialize_schema(self) -> None:
        self.connection.executescript(SCHEMA)

    def close(self) -> None:
        self.connection.close()

    def __enter__(self) -> "BillingRepository":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group writes into one atomic unit.

        BEGIN IMMEDIATE takes the write lock up front, so read-check-write
        sequences inside the block cannot interleave with another writer.
        Nested blocks join the outermost transaction; only the outermost
        block commits or rolls back.
        """
        outermost = self._depth == 0
        if outermost:
            self.connection.execute("BEGIN IMMEDIATE")
        self._depth += 1
        try:
            yield self.connection
        except BaseException:
            self._depth -= 1
            if outermost:
                self.connection.execute("ROLLBACK")
            raise
        self._depth -= 1
        if outermost:
            self.connection.execute("COMMIT")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # Billing jobs

    def create_job(
        self,
        as_of_date: date,
        started_at: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BillingJob:
        """Insert a PENDING job.

        Raises:
            sqlite3.IntegrityError: If a job for as_of_date already exists
        """
        job = BillingJob(
            id=new_id(),
            as_of_date=as_of_date,
            status=JobStatus.PENDING,
            started_at=started_at,
            metadata=dict(metadata or {}),
        )
        self.connection.execute(
            f"INSERT INTO billing_job ({_JOB_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                job.id,
                _date_text(job.as_of_date),
                job.status.value,
                _timestamp_text(job.started_at),
                None,
                0,
                0,
                0,
                None,
                json.dumps(job.metadata),
            ),
        )
        return job

    def get_job(self, job_id: str) -> Optional[BillingJob]:
        row = self.connection.execute(
            f"SELECT {_JOB_COLUMNS} FROM billing_job WHERE id = ?", (job_id,)
        ).fetchone()
        return _row_to_job(row) if row else None

    def get_job_by_date(self, as_of_date: date) -> Optional[BillingJob]:
        row = self.connection.execute(
            f"SELECT {_JOB_COLUMNS} FROM billing_job WHERE as_of_date = ?",
            (_date_text(as_of_date),),
        ).fetchone()
        return _row_to_job(row) if row else None

    def delete_job(self, job_id: str) -> None:
        self.connection.execute("DELETE FROM billing_job WHERE id = ?", (job_id,))

    def try_mark_running(self, job_id: str) -> bool:
        """Conditionally move a job from PENDING to RUNNING.

        Returns:
            True if this caller won the lease, False if the job was not PENDING
        """
        cursor = self.connection.execute(
            "UPDATE billing_job SET status = ? WHERE id = ? AND status = ?",
            (JobStatus.RUNNING.value, job_id, JobStatus.PENDING.value),
        )
        return cursor.rowcount == 1

    def update_job(
        self,
        job_id: str,
        status: Optional[JobStatus] = None,
        total_customers: Optional[int] = None,
        processed_customers: Optional[int] = None,
        invoices_created: Optional[int] = None,
        error_message: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[BillingJob]:
        """Update the given job fields; None leaves a field unchanged."""
        assignments = []
        params: List[Any] = []
        if status is not None:
            assignments.append("status = ?")
            params.append(status.value)
        if total_customers is not None:
            assignments.append("total_customers = ?")
            params.append(total_customers)
        if processed_customers is not None:
            assignments.append("processed_customers = ?")
            params.append(processed_customers)
        if invoices_created is not None:
            assignments.append("invoices_created = ?")
            params.append(invoices_created)
        if error_message is not None:
            assignments.append("error_message = ?")
            params.append(error_message)
        if completed_at is not None:
            assignments.append("completed_at = ?")
            params.append(_timestamp_text(completed_at))
        if metadata is not None:
            assignments.append("metadata = ?")
            params.append(json.dumps(metadata))

        if assignments:
            params.append(job_id)
            self.connection.execute(
                f"UPDATE billing_job SET {', '.join(assignments)} WHERE id = ?", params
            )
        return self.get_job(job_id)

    def list_recent_jobs(self, limit: int = 20) -> List[BillingJob]:
        rows = self.connection.execute(
            f"SELECT {_JOB_COLUMNS} FROM billing_job ORDER BY as_of_date DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [_row_to_job(row) for row in rows]

    # Contracts

    def insert_contract(self, contract: Contract) -> Contract:
        self.connection.execute(
            f"INSERT INTO contract ({_CONTRACT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                contract.id,
                contract.customer_id,
                to_decimal_string(contract.base_fee),
                to_decimal_string(contract.call_overage_fee),
                contract.min_commit_calls,
                to_decimal_string(contract.discount_rate),
                contract.billing_cycle,
                _date_text(contract.next_billing_date),
                contract.billing_anchor_day,
                contract.status.value,
                _date_text(contract.last_billed_at),
            ),
        )
        return contract

    def get_contract(self, contract_id: str) -> Optional[Contract]:
        row = self.connection.execute(
            f"SELECT {_CONTRACT_COLUMNS} FROM contract WHERE id = ?", (contract_id,)
        ).fetchone()
        return _row_to_contract(row) if row else None

    def find_contracts_due(
        self,
        effective_date: date,
        customer_id: Optional[str] = None,
    ) -> List[Contract]:
        """ACTIVE contracts with next_billing_date <= effective_date, oldest first."""
        query = (
            f"SELECT {_CONTRACT_COLUMNS} FROM contract "
            "WHERE status = ? AND next_billing_date IS NOT NULL AND next_billing_date <= ?"
        )
        params: List[Any] = [ContractStatus.ACTIVE.value, _date_text(effective_date)]
        if customer_id:
            query += " AND customer_id = ?"
            params.append(customer_id)
        query += " ORDER BY next_billing_date ASC, id ASC"
        rows = self.connection.execute(query, params).fetchall()
        return [_row_to_contract(row) for row in rows]

    def find_active_contracts_for_customer(self, customer_id: str) -> List[Contract]:
        rows = self.connection.execute(
            f"SELECT {_CONTRACT_COLUMNS} FROM contract WHERE customer_id = ? AND status = ? "
            "ORDER BY next_billing_date ASC, id ASC",
            (customer_id, ContractStatus.ACTIVE.value),
        ).fetchall()
        return [_row_to_contract(row) for row in rows]

    def advance_contract(
        self,
        contract_id: str,
        next_billing_date: date,
        last_billed_at: date,
        anchor_day: Optional[int] = None,
    ) -> None:
        """Move a contract to its next cycle after a successful invoice.

        The anchor day is recorded the first time a contract advances and
        kept afterwards.
        """
        self.connection.execute(
            "UPDATE contract SET billing_cycle = billing_cycle + 1, next_billing_date = ?, "
            "last_billed_at = ?, billing_anchor_day = COALESCE(billing_anchor_day, ?) WHERE id = ?",
            (_date_text(next_billing_date), _date_text(last_billed_at), anchor_day, contract_id),
        )

    # Usage

    def insert_usage_event(self, event: UsageEvent) -> None:
        """Append a usage event. Usage events are never updated or deleted."""
        self.connection.execute(
            "INSERT INTO usage_event (contract_id, quantity, timestamp) VALUES (?, ?, ?)",
            (event.contract_id, event.quantity, _timestamp_text(event.timestamp)),
        )

    def insert_usage_events(self, events: Sequence[UsageEvent]) -> None:
        """Append multiple usage events atomically."""
        if not events:
            return
        with self.transaction():
            for event in events:
                self.insert_usage_event(event)

    def sum_usage(self, contract_id: str, period_start: date, period_end: date) -> int:
        """Total quantity with period_start <= timestamp < period_end."""
        row = self.connection.execute(
            "SELECT COALESCE(SUM(quantity), 0) FROM usage_event "
            "WHERE contract_id = ? AND timestamp >= ? AND timestamp < ?",
            (contract_id, _timestamp_text(period_start), _timestamp_text(period_end)),
        ).fetchone()
        return int(row[0])

    # Invoices

    def find_invoice(
        self,
        contract_id: str,
        period_start: date,
        period_end: date,
    ) -> Optional[Invoice]:
        row = self.connection.execute(
            f"SELECT {_INVOICE_COLUMNS} FROM invoice "
            "WHERE contract_id = ? AND period_start = ? AND period_end = ?",
            (contract_id, _date_text(period_start), _date_text(period_end)),
        ).fetchone()
        return _row_to_invoice(row) if row else None

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        row = self.connection.execute(
            f"SELECT {_INVOICE_COLUMNS} FROM invoice WHERE id = ?", (invoice_id,)
        ).fetchone()
        return _row_to_invoice(row) if row else None

    def list_invoices(self, customer_id: Optional[str] = None) -> List[Invoice]:
        query = f"SELECT {_INVOICE_COLUMNS} FROM invoice"
        params: List[Any] = []
        if customer_id:
            query += " WHERE customer_id = ?"
            params.append(customer_id)
        query += " ORDER BY created_at ASC, number ASC"
        return [_row_to_invoice(row) for row in self.connection.execute(query, params).fetchall()]

    def next_invoice_sequence(self, year: int) -> int:
        """Atomically increment and return the invoice counter for a year.

        Call inside transaction() so the number is only consumed when the
        invoice is written.
        """
        self.connection.execute(
            "INSERT INTO invoice_sequence (year, last_value) VALUES (?, 1) "
            "ON CONFLICT (year) DO UPDATE SET last_value = last_value + 1",
            (year,),
        )
        row = self.connection.execute(
            "SELECT last_value FROM invoice_sequence WHERE year = ?", (year,)
        ).fetchone()
        return int(row[0])

    def insert_invoice(self, invoice: Invoice, lines: Sequence[InvoiceLine]) -> Invoice:
        """Insert an invoice and its lines atomically.

        Raises:
            sqlite3.IntegrityError: If an invoice already exists for the
                contract and period
        """
        with self.transaction():
            self.connection.execute(
                f"INSERT INTO invoice ({_INVOICE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    invoice.id,
                    invoice.number,
                    invoice.customer_id,
                    invoice.contract_id,
                    invoice.status.value,
                    to_decimal_string(invoice.subtotal),
                    to_decimal_string(invoice.discount_amount),
                    to_decimal_string(invoice.credit_amount),
                    to_decimal_string(invoice.total),
                    invoice.currency,
                    _date_text(invoice.period_start),
                    _date_text(invoice.period_end),
                    invoice.billing_cycle,
                    _date_text(invoice.due_date),
                    _timestamp_text(invoice.created_at),
                ),
            )
            for position, line in enumerate(lines):
                self.connection.execute(
                    "INSERT INTO invoice_line (invoice_id, position, line_type, description, "
                    "quantity, unit_amount, amount) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        invoice.id,
                        position,
                        line.line_type.value,
                        line.description,
                        line.quantity,
                        to_decimal_string(line.unit_amount),
                        to_decimal_string(line.amount),
                    ),
                )
        return invoice

    def get_invoice_lines(self, invoice_id: str) -> List[InvoiceLine]:
        rows = self.connection.execute(
            "SELECT invoice_id, position, line_type, description, quantity, unit_amount, amount "
            "FROM invoice_line WHERE invoice_id = ? ORDER BY position ASC",
            (invoice_id,),
        ).fetchall()
        return [
            InvoiceLine(
                line_type=LineType(row["line_type"]),
                description=row["description"],
                quantity=row["quantity"],
                unit_amount=from_decimal_string(row["unit_amount"]),
                amount=from_decimal_string(row["amount"]),
                invoice_id=row["invoice_id"],
                position=row["position"],
            )
            for row in rows
        ]

    # Credits

    def insert_credit(self, credit: Credit) -> Credit:
        self.connection.execute(
            f"INSERT INTO credit ({_CREDIT_COLUMNS}, applied_to_invoice) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                credit.id,
                credit.customer_id,
                to_decimal_string(credit.amount),
                credit.credit_type.value,
                credit.description,
                _timestamp_text(credit.created_at),
                _timestamp_text(credit.applied_at),
                _timestamp_text(credit.expires_at),
                json.dumps(credit.metadata),
                credit.metadata.get("applied_to_invoice"),
            ),
        )
        return credit

    def get_credit(self, credit_id: str) -> Optional[Credit]:
        row = self.connection.execute(
            f"SELECT {_CREDIT_COLUMNS} FROM credit WHERE id = ?", (credit_id,)
        ).fetchone()
        return _row_to_credit(row) if row else None

    def list_unapplied_credits(self, customer_id: str) -> List[Credit]:
        """Credits not yet applied or expired, in insertion order."""
        rows = self.connection.execute(
            f"SELECT {_CREDIT_COLUMNS} FROM credit "
            "WHERE customer_id = ? AND applied_at IS NULL ORDER BY created_at ASC, rowid ASC",
            (customer_id,),
        ).fetchall()
        return [_row_to_credit(row) for row in rows]

    def list_credits(
        self,
        customer_id: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> List[Credit]:
        query = f"SELECT {_CREDIT_COLUMNS} FROM credit"
        conditions = []
        params: List[Any] = []
        if customer_id:
            conditions.append("customer_id = ?")
            params.append(customer_id)
        if created_from is not None:
            conditions.append("created_at >= ?")
            params.append(_timestamp_text(created_from))
        if created_to is not None:
            conditions.append("created_at <= ?")
            params.append(_timestamp_text(created_to))
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at ASC, rowid ASC"
        return [_row_to_credit(row) for row in self.connection.execute(query, params).fetchall()]

    def mark_credit_applied(
        self,
        credit_id: str,
        applied_at: datetime,
        metadata: Dict[str, Any],
    ) -> None:
        self.connection.execute(
            "UPDATE credit SET applied_at = ?, metadata = ?, applied_to_invoice = ? WHERE id = ?",
            (
                _timestamp_text(applied_at),
                json.dumps(metadata),
                metadata.get("applied_to_invoice"),
                credit_id,
            ),
        )

    def find_credits_applied_to_invoice(self, invoice_id: str) -> List[Credit]:
        rows = self.connection.execute(
            f"SELECT {_CREDIT_COLUMNS} FROM credit WHERE applied_to_invoice = ? "
            "ORDER BY applied_at ASC, rowid ASC",
            (invoice_id,),
        ).fetchall()
        return [_row_to_credit(row) for row in rows]

    # Entity credit balances

    def get_entity_balance(self, entity_id: str) -> Optional[EntityCreditBalance]:
        row = self.connection.execute(
            "SELECT entity_id, total_credits, used_credits, expires_at "
            "FROM entity_credit_balance WHERE entity_id = ?",
            (entity_id,),
        ).fetchone()
        if row is None:
            return None
        return EntityCreditBalance(
            entity_id=row["entity_id"],
            total_credits=from_decimal_string(row["total_credits"]),
            used_credits=from_decimal_string(row["used_credits"]),
            expires_at=_parse_timestamp(row["expires_at"]),
        )

    def save_entity_balance(self, balance: EntityCreditBalance) -> None:
        self.connection.execute(
            "INSERT INTO entity_credit_balance (entity_id, total_credits, used_credits, expires_at) "
            "VALUES (?, ?, ?, ?) ON CONFLICT (entity_id) DO UPDATE SET "
            "total_credits = excluded.total_credits, used_credits = excluded.used_credits, "
            "expires_at = excluded.expires_at",
            (
                balance.entity_id,
                to_decimal_string(balance.total_credits),
                to_decimal_string(balance.used_credits),
                _timestamp_text(balance.expires_at),
            ),
        )

    # Entity members

    def save_entity_member(self, member: EntityMember) -> None:
        self.connection.execute(
            "INSERT INTO entity_member (entity_id, user_id, active, credit_limit) "
            "VALUES (?, ?, ?, ?) ON CONFLICT (entity_id, user_id) DO UPDATE SET "
            "active = excluded.active, credit_limit = excluded.credit_limit",
            (
                member.entity_id,
                member.user_id,
                1 if member.active else 0,
                to_decimal_string(member.credit_limit),
            ),
        )

    def get_entity_member(self, entity_id: str, user_id: str) -> Optional[EntityMember]:
        row = self.connection.execute(
            "SELECT entity_id, user_id, active, credit_limit FROM entity_member "
            "WHERE entity_id = ? AND user_id = ?",
            (entity_id, user_id),
        ).fetchone()
        if row is None:
            return None
        return EntityMember(
            entity_id=row["entity_id"],
            user_id=row["user_id"],
            active=bool(row["active"]),
            credit_limit=from_decimal_string(row["credit_limit"]),
        )

    def count_active_members(self, entity_id: str) -> int:
        row = self.connection.execute(
            "SELECT COUNT(*) FROM entity_member WHERE entity_id = ? AND active = 1",
            (entity_id,),
        ).fetchone()
        return int(row[0])

    # Seat subscriptions

    def insert_subscription(self, subscription: EntitySubscription) -> EntitySubscription:
        self.connection.execute(
            "INSERT INTO entity_subscription (id, entity_id, frequency, seat_count, "
            "price_per_seat, next_billing_date, status) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                subscription.id,
                subscription.entity_id,
                subscription.frequency.value,
                subscription.seat_count,
                to_decimal_string(subscription.price_per_seat),
                _date_text(subscription.next_billing_date),
                subscription.status.value,
            ),
        )
        return subscription

    def get_active_subscription(self, entity_id: str) -> Optional[EntitySubscription]:
        row = self.connection.execute(
            "SELECT id, entity_id, frequency, seat_count, price_per_seat, next_billing_date, status "
            "FROM entity_subscription WHERE entity_id = ? AND status = ? "
            "ORDER BY next_billing_date DESC LIMIT 1",
            (entity_id, SubscriptionStatus.ACTIVE.value),
        ).fetchone()
        if row is None:
            return None
        return EntitySubscription(
            id=row["id"],
            entity_id=row["entity_id"],
            frequency=BillingFrequency(row["frequency"]),
            seat_count=row["seat_count"],
            price_per_seat=from_decimal_string(row["price_per_seat"]),
            next_billing_date=_parse_date(row["next_billing_date"]),
            status=SubscriptionStatus(row["status"]),
        )

    def update_subscription_seats(self, subscription_id: str, seat_count: int) -> None:
        self.connection.execute(
            "UPDATE entity_subscription SET seat_count = ? WHERE id = ?",
            (seat_count, subscription_id),
        )

    # Marketplace events

    def insert_marketplace_event(self, event: MarketplaceEvent) -> MarketplaceEvent:
        self.connection.execute(
            f"INSERT INTO marketplace_event ({_EVENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                event.id,
                event.entity_id,
                event.user_id,
                event.event_type,
                event.quantity,
                to_decimal_string(event.unit_price),
                to_decimal_string(event.amount),
                _timestamp_text(event.timestamp),
                event.billing_method.value if event.billing_method else None,
                json.dumps(event.metadata),
            ),
        )
        return event

    def list_marketplace_events(
        self,
        entity_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_type: Optional[str] = None,
    ) -> List[MarketplaceEvent]:
        """Events for an entity, newest first, with start <= timestamp <= end."""
        query = f"SELECT {_EVENT_COLUMNS} FROM marketplace_event WHERE entity_id = ?"
        params: List[Any] = [entity_id]
        if start is not None:
            query += " AND timestamp >= ?"
            params.append(_timestamp_text(start))
        if end is not None:
            query += " AND timestamp <= ?"
            params.append(_timestamp_text(end))
        if event_type:
            query += " AND event_type = ?"
            params.append(event_type)
        query += " ORDER BY timestamp DESC"
        return [_row_to_event(row) for row in self.connection.execute(query, params).fetchall()]
