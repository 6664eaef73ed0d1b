"""
CLI interface for usage-meter.

Provides command-line access to ledger administration and the HTTP server.
"""

import logging
import sys
from datetime import timedelta
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from usage_meter.config.loader import default_config, load_billing_config
from usage_meter.storage.db import DEFAULT_DB_PATH
from usage_meter.storage.models import PhoneNumber, ResourceKind, utc_now
from usage_meter.storage.repository import AccountNotFound, get_repository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", envvar="USAGE_METER_DB", help="Ledger database path")


def _format_money(amount: int) -> str:
    """Format minor units as a decimal amount without float conversion."""
    sign = "-" if amount < 0 else ""
    amount = abs(amount)
    return f"{sign}{amount // 100:,}.{amount % 100:02d}"


def _parse_kind(value: str) -> ResourceKind:
    try:
        return ResourceKind(value)
    except ValueError:
        valid = ", ".join(k.value for k in ResourceKind)
        console.print(f"[red]Unknown resource:[/] {value} (expected one of: {valid})")
        sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """usage-meter CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print("usage-meter - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the ledger database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(config: Optional[str] = typer.Option(None, "--config", "-c", help="Billing config YAML")):
    """Validate configuration and show the active price table."""
    try:
        settings = load_billing_config(config) if config else default_config()
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Price table")
    table.add_column("Resource")
    table.add_column("Granularity", justify="right")
    table.add_column("Price per unit", justify="right")
    for kind, pricing in settings.pricing.prices.items():
        table.add_row(kind.value, str(pricing.unit_granularity), _format_money(pricing.price_per_unit))
    console.print(table)
    provider = settings.provider.base_url if settings.provider else "[yellow]not configured[/]"
    console.print(f"Provider: {provider}")
    console.print(f"Database: {settings.database_path}")


@app.command("create-account")
def create_account(
    name: str = typer.Argument(..., help="Account name"),
    balance: int = typer.Option(0, "--balance", "-b", help="Opening balance in minor units"),
    token: Optional[str] = typer.Option(None, "--token", "-t", help="API bearer token"),
    db: str = DB_OPTION,
):
    """Create a billable account."""
    repository = get_repository(db)
    repository.initialize_schema()
    account = repository.create_account(name, balance=balance, api_token=token)
    console.print(f"[green]✓[/] Created account {account.id} ({account.name})")


def _credit(account_id: int, amount: int, db: str, refund: bool) -> None:
    repository = get_repository(db)
    try:
        if refund:
            new_balance = repository.refund(account_id, amount)
        else:
            new_balance = repository.top_up(account_id, amount)
    except (ValueError, AccountNotFound) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Balance of account {account_id}: {_format_money(new_balance)}")


@app.command("top-up")
def top_up(
    account_id: int = typer.Argument(...),
    amount: int = typer.Argument(..., help="Amount in minor units"),
    db: str = DB_OPTION,
):
    """Credit an account's wallet."""
    _credit(account_id, amount, db, refund=False)


@app.command()
def refund(
    account_id: int = typer.Argument(...),
    amount: int = typer.Argument(..., help="Amount in minor units"),
    db: str = DB_OPTION,
):
    """Refund a previous charge to an account's wallet."""
    _credit(account_id, amount, db, refund=True)


@app.command("register-number")
def register_number(
    account_id: int = typer.Argument(...),
    number: str = typer.Argument(..., help="Phone number in provider format"),
    sms: bool = typer.Option(False, "--sms", help="Number supports and has enabled SMS"),
    db: str = DB_OPTION,
):
    """Provision a phone number for an account."""
    repository = get_repository(db)
    if repository.get_account(account_id) is None:
        console.print(f"[red]Error:[/] account {account_id} not found")
        sys.exit(EXIT_CODE_FAIL)
    repository.register_number(PhoneNumber(
        number=number, account_id=account_id, sms_supported=sms, sms_enabled=sms,
    ))
    console.print(f"[green]✓[/] Registered {number} for account {account_id}")


@app.command("activate-plan")
def activate_plan(
    account_id: int = typer.Argument(...),
    resource: str = typer.Argument(..., help="call_minutes or sms_segments"),
    quota: int = typer.Argument(..., help="Units granted for the period"),
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Period length in days"),
    db: str = DB_OPTION,
):
    """Start a new quota period for an account."""
    kind = _parse_kind(resource)
    repository = get_repository(db)
    if repository.get_account(account_id) is None:
        console.print(f"[red]Error:[/] account {account_id} not found")
        sys.exit(EXIT_CODE_FAIL)
    start = utc_now()
    end = start + timedelta(days=days) if days else None
    try:
        usage = repository.activate_plan(account_id, kind, quota, period_start=start, period_end=end)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Plan {usage.id}: {quota} {kind.value} for account {account_id}")


@app.command()
def balance(account_id: int = typer.Argument(...), db: str = DB_OPTION):
    """Show wallet balance and remaining quota."""
    repository = get_repository(db)
    account = repository.get_account(account_id)
    if account is None:
        console.print(f"[red]Error:[/] account {account_id} not found")
        sys.exit(EXIT_CODE_FAIL)

    color = "red" if account.balance <= 0 else "green"
    console.print(f"\n[bold]{account.name}[/bold] (account {account.id})")
    console.print(f"Balance: [{color}]{_format_money(account.balance)}[/]")
    console.print(f"Total spent: {_format_money(account.total_spent)}")
    for kind in ResourceKind:
        usage = repository.get_current_usage(account.id, kind)
        if usage is None:
            console.print(f"{kind.value}: [dim]no plan[/]")
        else:
            console.print(f"{kind.value}: {usage.quota_used}/{usage.quota_limit} used")


@app.command()
def events(
    account_id: Optional[int] = typer.Option(None, "--account", "-a", help="Filter by account"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of events"),
    db: str = DB_OPTION,
):
    """List recent usage events."""
    repository = get_repository(db)
    recent = repository.get_recent_events(account_id=account_id, limit=limit)
    if not recent:
        console.print("\n[bold yellow]No usage events recorded[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Usage events")
    for column in ("Time", "Account", "Resource", "From", "To", "Units", "Quota", "Cost", "Status"):
        table.add_column(column)
    for event in recent:
        table.add_row(
            event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            str(event.account_id),
            event.resource_kind.value,
            event.source_number or "",
            event.counterpart,
            str(event.billed_units),
            str(event.units_from_quota),
            _format_money(event.cost),
            event.status.value,
        )
    console.print(table)


@app.command()
def serve(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Billing config YAML"),
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port", "-p"),
):
    """Run the ingestion HTTP server."""
    from usage_meter.api.app import create_app

    load_dotenv()
    try:
        settings = load_billing_config(config) if config else default_config()
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    logging.getLogger(__name__).info("Starting server on %s:%d", host, port)
    server = create_app(settings)
    try:
        server.run(host=host, port=port, threaded=True)
    finally:
        guard = server.config.get("CAMPAIGN_GUARD")
        if guard is not None:
            guard.shutdown(wait=False)


if __name__ == "__main__":
    app()
