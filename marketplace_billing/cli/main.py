"""
CLI interface for Marketplace Billing.

Provides command-line access to billing runs, job control, credit
balances, invoice previews and pay-as-you-go marketplace events.
"""

import sys
from datetime import date
from typing import Optional, Tuple

import typer
from rich.console import Console
from rich.table import Table

from marketplace_billing.config.loader import BillingConfig, default_config, load_billing_config
from marketplace_billing.core.engine import BillingEngine, BillingRunResult
from marketplace_billing.core.errors import BillingError
from marketplace_billing.core.events import LoggingEventSink
from marketplace_billing.core.invoice import InvoiceGenerator
from marketplace_billing.core.ledger import CreditLedger
from marketplace_billing.core.marketplace import MarketplaceEventProcessor, MarketplaceEventRequest
from marketplace_billing.core.money import format_currency, to_decimal_string
from marketplace_billing.observability import configure_logging
from marketplace_billing.storage.repository import BillingRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to billing YAML configuration"
    ),
    db_path: Optional[str] = typer.Option(
        None,
        "--db",
        help="SQLite database path (overrides the configuration)"
    ),
):
    """Marketplace Billing CLI."""
    try:
        config = load_billing_config(config_path) if config_path else default_config()
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    configure_logging(config.logging.level, config.logging.json)
    ctx.obj = (config, db_path or config.database_path)

    if ctx.invoked_subcommand is None:
        console.print("Marketplace Billing - Use --help to see available commands")


def _settings(ctx: typer.Context) -> Tuple[BillingConfig, str]:
    return ctx.obj


def _build_engine(config: BillingConfig, repository: BillingRepository) -> BillingEngine:
    events = LoggingEventSink()
    ledger = CreditLedger(
        repository,
        events=events,
        refund_expiration_days=config.credits.refund_expiration_days,
        promotional_expiration_days=config.credits.promotional_expiration_days,
    )
    invoices = InvoiceGenerator(
        repository,
        ledger,
        events=events,
        number_prefix=config.invoicing.number_prefix,
        due_days=config.invoicing.due_days,
        currency=config.invoicing.currency,
        max_discounted_cycles=config.max_discounted_cycles,
    )
    return BillingEngine(repository, ledger=ledger, invoices=invoices, events=events)


def _build_processor(config: BillingConfig, repository: BillingRepository) -> MarketplaceEventProcessor:
    engine = _build_engine(config, repository)
    return MarketplaceEventProcessor(repository, engine.ledger, pricing=config.pricing, events=engine.events)


def _parse_date(value: Optional[str]) -> date:
    if value is None:
        return date.today()
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Invalid date '{value}', expected YYYY-MM-DD")


@app.command()
def init(ctx: typer.Context):
    """Initialize the billing database."""
    _, db_path = _settings(ctx)
    try:
        initialize_schema(db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def run(
    ctx: typer.Context,
    as_of: Optional[str] = typer.Option(
        None,
        "--as-of",
        "-d",
        help="Billing date (YYYY-MM-DD), defaults to today"
    ),
    customer: Optional[str] = typer.Option(
        None,
        "--customer",
        help="Bill only this customer's active contracts"
    ),
):
    """Run billing for a date."""
    config, db_path = _settings(ctx)
    effective_date = _parse_date(as_of)
    try:
        with BillingRepository(db_path) as repository:
            engine = _build_engine(config, repository)
            if customer:
                result = engine.bill_customer(customer, effective_date)
            else:
                result = engine.execute_billing_run(effective_date, trigger="manual")
    except Exception as e:
        console.print(f"[red]Billing run failed:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_run_result(result, config.invoicing.currency)
    sys.exit(EXIT_CODE_PASS if result.success else EXIT_CODE_FAIL)


@app.command()
def jobs(
    ctx: typer.Context,
    limit: int = typer.Option(10, "--limit", "-n", help="Number of jobs to show"),
):
    """Show recent billing jobs."""
    config, db_path = _settings(ctx)
    try:
        with BillingRepository(db_path) as repository:
            recent = _build_engine(config, repository).recent_jobs(limit)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not recent:
        console.print("[dim]No billing jobs found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Billing Jobs")
    table.add_column("As of")
    table.add_column("Status")
    table.add_column("Customers", justify="right")
    table.add_column("Invoices", justify="right")
    table.add_column("Error")
    for job in recent:
        table.add_row(
            job.as_of_date.isoformat(),
            job.status.value,
            f"{job.processed_customers}/{job.total_customers}",
            str(job.invoices_created),
            job.error_message or "",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def cancel(
    ctx: typer.Context,
    as_of: str = typer.Option(..., "--as-of", "-d", help="Date of the job to cancel (YYYY-MM-DD)"),
):
    """Cancel the billing job for a date."""
    config, db_path = _settings(ctx)
    effective_date = _parse_date(as_of)
    try:
        with BillingRepository(db_path) as repository:
            job = _build_engine(config, repository).jobs.cancel_job(effective_date)
    except BillingError as e:
        console.print(f"[red]Cannot cancel:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Job {job.id} for {effective_date.isoformat()} cancelled")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def balance(ctx: typer.Context, customer_id: str = typer.Argument(..., help="Customer identifier")):
    """Show a customer's credit balance."""
    config, db_path = _settings(ctx)
    currency = config.invoicing.currency
    try:
        with BillingRepository(db_path) as repository:
            credit_balance = _build_engine(config, repository).ledger.get_credit_balance(customer_id)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]Credit balance for {customer_id}[/bold]")
    console.print(f"Available: {format_currency(credit_balance.total_available, currency)}")
    console.print(f"Applied:   {format_currency(credit_balance.total_applied, currency)}")
    console.print(f"Expired:   {format_currency(credit_balance.total_expired, currency)}")

    if credit_balance.breakdown:
        table = Table()
        table.add_column("Credit")
        table.add_column("Type")
        table.add_column("Amount", justify="right")
        table.add_column("Remaining", justify="right")
        for entry in credit_balance.breakdown:
            table.add_row(
                entry.credit_id[:8],
                entry.credit_type.value,
                to_decimal_string(entry.amount),
                to_decimal_string(entry.remaining_amount),
            )
        console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def preview(
    ctx: typer.Context,
    contract_id: str = typer.Argument(..., help="Contract identifier"),
    usage: int = typer.Option(0, "--usage", "-u", help="Calls used in the period"),
):
    """Preview an invoice for a contract without writing anything."""
    config, db_path = _settings(ctx)
    try:
        with BillingRepository(db_path) as repository:
            contract = repository.get_contract(contract_id)
            if contract is None:
                console.print(f"[red]Contract not found:[/] {contract_id}")
                sys.exit(EXIT_CODE_FAIL)
            amounts = _build_engine(config, repository).invoices.calculate_invoice_amounts(
                contract, usage, contract.billing_cycle
            )
    except BillingError as e:
        console.print(f"[red]Error:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Invoice preview for {contract_id} (cycle {contract.billing_cycle})")
    table.add_column("Line")
    table.add_column("Qty", justify="right")
    table.add_column("Amount", justify="right")
    for line in amounts.line_items:
        table.add_row(line.description, str(line.quantity), to_decimal_string(line.amount))
    console.print(table)
    console.print(f"Subtotal: {to_decimal_string(amounts.subtotal)}")
    console.print(f"Discount: {to_decimal_string(amounts.discount_amount)}")
    console.print(f"Credits:  {to_decimal_string(amounts.credit_amount)}")
    console.print(f"[bold]Total:    {to_decimal_string(amounts.total)}[/bold]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def event(
    ctx: typer.Context,
    entity_id: str = typer.Argument(..., help="Entity identifier"),
    user_id: str = typer.Argument(..., help="Member who triggered the event"),
    event_type: str = typer.Argument(..., help="Priced event type, e.g. project_posted"),
    quantity: int = typer.Option(1, "--quantity", "-q", help="Number of events"),
    invoice: bool = typer.Option(False, "--invoice", help="Bill on the next invoice instead of credits"),
):
    """Record a marketplace event and bill it from credits or invoice."""
    config, db_path = _settings(ctx)
    currency = config.invoicing.currency
    request = MarketplaceEventRequest(entity_id=entity_id, user_id=user_id, event_type=event_type, quantity=quantity)
    try:
        with BillingRepository(db_path) as repository:
            result = _build_processor(config, repository).process_event(request, force_invoicing=invoice)
    except BillingError as e:
        console.print(f"[red]Event rejected:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    pricing = result.pricing
    console.print(f"\n[bold]Event {result.event_id[:8]}[/bold] {event_type} x{quantity}")
    console.print(f"Base:     {format_currency(pricing.base_amount, currency)}")
    console.print(f"Discount: {format_currency(pricing.discount_applied, currency)}")
    console.print(f"Charged:  {format_currency(pricing.final_amount, currency)}")
    console.print(f"Billed via: {result.billing_method.value}")
    if result.reason:
        console.print(f"[yellow]{result.reason}[/]")
    elif result.remaining_balance is not None:
        console.print(f"Credits remaining: {format_currency(result.remaining_balance, currency)}")
    sys.exit(EXIT_CODE_PASS)


def _display_run_result(result: BillingRunResult, currency: str) -> None:
    """Display billing run results."""
    console.print(f"\n[bold]Billing Run {result.as_of_date.isoformat()}[/bold]")
    console.print("-" * 40)
    console.print(f"Status: {result.status.value}")
    if result.already_processed:
        console.print("[yellow]Billing for this date was already completed; nothing new was invoiced.[/]")
    console.print(f"Contracts: {result.processed_customers} processed, {result.skipped_customers} skipped, "
                  f"{result.total_customers} due")
    console.print(f"Invoices created: {result.invoices_created}")
    console.print(f"Total billed: {format_currency(result.total_billed, currency)}")
    for error in result.errors:
        console.print(f"[red]✗[/] {error}")


if __name__ == "__main__":
    app()
