"""
CLI interface for Loyalty Guard.

Operator access to the local data store: accounts, redemptions, credit and
reconciliation of top-ups that never settled.
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from loyalty_guard.config.loader import GuardConfig, default_config, load_config
from loyalty_guard.storage.db import DEFAULT_DB_PATH
from loyalty_guard.storage.models import TransactionStatus
from loyalty_guard.storage.repository import LedgerStore, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database")
USER_OPTION = typer.Option(..., "--user", "-u", help="Owner user id")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to YAML configuration")


def _get_store(db: str, config_path: Optional[str]) -> LedgerStore:
    config: GuardConfig = load_config(config_path) if config_path else default_config()
    return LedgerStore(
        db,
        default_redemption_threshold=config.ledger.default_redemption_threshold,
        unit_charge=config.ledger.unit_charge,
    )


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount) -> str:
    return f"R{amount:,.2f}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Loyalty Guard CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Loyalty Guard - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the Loyalty Guard database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(user: str = USER_OPTION, db: str = DB_OPTION, config: Optional[str] = CONFIG_OPTION):
    """Show credit balance and program settings for a user."""
    try:
        store = _get_store(db, config)
        settings = asyncio.run(store.get_settings(user))
        payment = asyncio.run(store.get_payment_status(user))
        paid = asyncio.run(store.total_paid(user))
    except Exception as e:
        _fail(str(e))

    console.print(f"\n[bold]Owner:[/bold] {user}")
    console.print(f"Credit balance: {_format_currency(payment.credit_balance)}")
    console.print(f"Has paid: {'yes' if payment.has_paid else 'no'}")
    console.print(f"Total paid: {_format_currency(paid)}")
    console.print(f"Redemption threshold: {settings.redemption_threshold}")
    console.print(f"Units this month: {settings.total_units_purchased}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def accounts(user: str = USER_OPTION, db: str = DB_OPTION, config: Optional[str] = CONFIG_OPTION):
    """List loyalty accounts and their counters."""
    try:
        store = _get_store(db, config)
        rows = asyncio.run(store.list_accounts(user))
        threshold = asyncio.run(store.get_settings(user)).redemption_threshold
    except Exception as e:
        _fail(str(e))

    if not rows:
        console.print("[dim]No loyalty accounts found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Loyalty Accounts")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Phone")
    table.add_column("Units", justify="right")
    table.add_column("Ready")
    for account in rows:
        ready = "[green]redeem[/]" if account.units_purchased >= threshold else ""
        table.add_row(account.id, account.name, account.phone, f"{account.units_purchased}/{threshold}", ready)
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def redemptions(
    user: str = USER_OPTION,
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Filter to one account"),
    db: str = DB_OPTION,
):
    """List redemptions, newest first."""
    try:
        records = asyncio.run(LedgerStore(db).list_redemptions(user, account))
    except Exception as e:
        _fail(str(e))

    if not records:
        console.print("[dim]No redemptions found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Redemptions")
    table.add_column("ID")
    table.add_column("Account")
    table.add_column("Redeemed at")
    for record in records:
        table.add_row(record.id, record.account_id, record.redeemed_at.strftime("%Y-%m-%d %H:%M"))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def transactions(
    user: str = USER_OPTION,
    status: Optional[str] = typer.Option(
        None, "--status", "-s", help="Filter by status: pending, completed or failed"
    ),
    older_than_hours: Optional[float] = typer.Option(
        None, "--older-than-hours", help="Only transactions created before this many hours ago"
    ),
    db: str = DB_OPTION,
):
    """List top-up transactions, e.g. pending ones awaiting reconciliation."""
    try:
        status_filter = TransactionStatus(status) if status else None
    except ValueError:
        _fail(f"Unknown status '{status}'")

    try:
        store = LedgerStore(db)
        created_before = None
        if older_than_hours is not None:
            created_before = datetime.now(timezone.utc) - timedelta(hours=older_than_hours)
        rows = asyncio.run(store.list_transactions(user, status_filter, created_before))
    except Exception as e:
        _fail(str(e))

    if not rows:
        console.print("[dim]No transactions found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Transactions")
    table.add_column("Reference")
    table.add_column("Amount", justify="right")
    table.add_column("Status")
    table.add_column("Provider")
    table.add_column("Created")
    for tx in rows:
        table.add_row(
            tx.reference,
            _format_currency(tx.amount),
            tx.status.value,
            tx.provider,
            tx.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("mark-failed")
def mark_failed(reference: str, user: str = USER_OPTION, db: str = DB_OPTION):
    """Mark an abandoned pending top-up as failed."""
    try:
        tx = asyncio.run(LedgerStore(db).fail_transaction(user, reference))
    except Exception as e:
        _fail(str(e))

    console.print(f"[green]✓[/] Transaction {tx.reference} is {tx.status.value}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def threshold(
    value: int = typer.Argument(..., help="Units required for a reward"),
    user: str = USER_OPTION,
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
):
    """Set the redemption threshold for a user."""
    try:
        settings = asyncio.run(_get_store(db, config).update_redemption_threshold(user, value))
    except Exception as e:
        _fail(str(e))

    console.print(f"[green]✓[/] Redemption threshold set to {settings.redemption_threshold}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
