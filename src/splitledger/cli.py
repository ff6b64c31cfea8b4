"""CLI for SplitLedger using Typer."""

import logging
import sys
from collections.abc import Callable
from decimal import Decimal

import typer
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .db import Database
from .models import Money, SplitSpec
from .service import LedgerService

app = typer.Typer(
    name="splitledger",
    help="Track shared expenses and settle group debts",
)

console = Console()

# Currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW"}


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def to_major(money: Money) -> Decimal:
    """Convert minor units to a Decimal amount in major units."""
    if money.currency in ZERO_DECIMAL_CURRENCIES:
        return Decimal(money.amount)
    return Decimal(money.amount) / 100


def format_money(money: Money, use_color: bool = True) -> str:
    """
    Format money in accounting style with alignment.

    Negative amounts use parentheses: (85.02 USD)
    Positive amounts have spaces:      85.02 USD
    """
    major = to_major(money)
    digits = 0 if money.currency in ZERO_DECIMAL_CURRENCIES else 2
    text = f"{abs(major):,.{digits}f} {money.currency}"
    if money.amount < 0:
        return f"([red]{text}[/red])" if use_color else f"({text})"
    return f" [green]{text}[/green] " if use_color else f" {text} "


def parse_pairs(values: list[str], cast: Callable[[str], object]) -> dict[int, object]:
    """Parse repeated ID=VALUE options."""
    out: dict[int, object] = {}
    for value in values:
        user_id, sep, raw = value.partition("=")
        if not sep:
            raise typer.BadParameter(f"Expected ID=VALUE, got {value!r}")
        out[int(user_id)] = cast(raw)
    return out


def run(verbose: bool, action: Callable[[LedgerService], None]):
    """Open the database, run a CLI action and report errors."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        db = Database(settings.database_path, busy_timeout=settings.busy_timeout_seconds)
        action(LedgerService(settings, db))
    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if db is not None:
            db.close()


@app.command("group-create")
def group_create(
    name: str = typer.Argument(..., help="Group name"),
    currency: str | None = typer.Option(None, "--currency", help="ISO currency code"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Create a group."""

    def action(service: LedgerService):
        group = service.create_group(name, currency)
        console.print(
            f"[green]✓ Created group {group.id}[/green] ({group.name}, {group.currency})"
        )

    run(verbose, action)


@app.command("member-add")
def member_add(
    group_id: int = typer.Argument(..., help="Group id"),
    user_id: int = typer.Argument(..., help="User id"),
    name: str | None = typer.Option(None, "--name", help="Display name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Add a user to a group."""

    def action(service: LedgerService):
        service.add_participant(group_id, user_id, name)
        console.print(f"[green]✓ Added user {user_id} to group {group_id}[/green]")

    run(verbose, action)


@app.command("member-remove")
def member_remove(
    group_id: int = typer.Argument(..., help="Group id"),
    user_id: int = typer.Argument(..., help="User id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Remove a user with no open balances from a group."""

    def action(service: LedgerService):
        service.remove_participant(group_id, user_id)
        console.print(f"[green]✓ Removed user {user_id} from group {group_id}[/green]")

    run(verbose, action)


@app.command("expense-add")
def expense_add(
    group_id: int = typer.Argument(..., help="Group id"),
    payer_id: int = typer.Argument(..., help="User who paid"),
    amount: int = typer.Argument(..., help="Amount in minor units (e.g. cents)"),
    split: list[int] = typer.Option(
        [], "--split", "-s", help="Split equally with this user (repeatable)"
    ),
    share: list[str] = typer.Option(
        [], "--share", help="Exact share as ID=MINOR_UNITS (repeatable)"
    ),
    percent: list[str] = typer.Option(
        [], "--percent", help="Percentage share as ID=PCT (repeatable)"
    ),
    description: str | None = typer.Option(None, "--description", "-d"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Record an expense.

    Use exactly one of --split, --share or --percent to describe the split.
    """
    if sum(1 for opt in (split, share, percent) if opt) != 1:
        console.print("[red]Use exactly one of --split, --share or --percent[/red]")
        raise typer.Exit(1)

    if split:
        spec = SplitSpec.equal(split)
    elif share:
        spec = SplitSpec.exact(parse_pairs(share, int))
    else:
        spec = SplitSpec.percentage(parse_pairs(percent, Decimal))

    def action(service: LedgerService):
        group = service.get_group(group_id)
        money = Money(amount=amount, currency=group.currency)
        expense_id = service.record_expense(group_id, payer_id, money, spec, description)
        console.print(f"[green]✓ Recorded expense {expense_id}[/green]")
        display_splits(service, expense_id)

    run(verbose, action)


@app.command("expense-delete")
def expense_delete(
    expense_id: int = typer.Argument(..., help="Expense id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Delete an expense and reverse its effect on balances."""
    if not yes and not typer.confirm(f"Delete expense {expense_id}?"):
        console.print("[yellow]Cancelled.[/yellow]")
        return

    def action(service: LedgerService):
        service.delete_expense(expense_id)
        console.print(f"[green]✓ Deleted expense {expense_id}[/green]")

    run(verbose, action)


@app.command()
def balances(
    group_id: int = typer.Argument(..., help="Group id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show who owes whom."""

    def action(service: LedgerService):
        rows = service.get_group_balances(group_id)
        if not rows:
            console.print("[green]✓ Everyone is settled up.[/green]")
            return

        table = Table(title="Balances", show_header=True, header_style="bold magenta")
        table.add_column("Debtor", style="cyan")
        table.add_column("Creditor", style="cyan")
        table.add_column("Amount", justify="right")
        for row in rows:
            table.add_row(str(row.debtor_id), str(row.creditor_id), format_money(row.amount))
        console.print(table)

    run(verbose, action)


@app.command()
def net(
    group_id: int = typer.Argument(..., help="Group id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show each member's net position (positive = is owed money)."""

    def action(service: LedgerService):
        table = Table(title="Net positions", show_header=True, header_style="bold magenta")
        table.add_column("User", style="cyan")
        table.add_column("Net", justify="right")
        for position in service.get_net_positions(group_id):
            table.add_row(str(position.user_id), format_money(position.amount))
        console.print(table)

    run(verbose, action)


@app.command()
def suggest(
    group_id: int = typer.Argument(..., help="Group id"),
    propose: bool = typer.Option(
        False, "--propose", help="Save suggestions as pending settlements"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Suggest payments that settle every debt in the group."""

    def action(service: LedgerService):
        if propose:
            settlements = service.propose_suggested_settlements(group_id)
            instructions = [(s.from_id, s.to_id, s.amount, str(s.id)) for s in settlements]
        else:
            instructions = [
                (i.from_id, i.to_id, i.amount, "-")
                for i in service.suggest_settlements(group_id)
            ]

        if not instructions:
            console.print("[green]✓ Nothing to settle.[/green]")
            return

        table = Table(title="Suggested payments", show_header=True, header_style="bold magenta")
        table.add_column("From", style="cyan")
        table.add_column("To", style="cyan")
        table.add_column("Amount", justify="right")
        table.add_column("Settlement", style="dim")
        for from_id, to_id, amount, settlement_id in instructions:
            table.add_row(str(from_id), str(to_id), format_money(amount), settlement_id)
        console.print(table)

    run(verbose, action)


@app.command()
def settle(
    group_id: int = typer.Argument(..., help="Group id"),
    from_id: int = typer.Argument(..., help="User paying"),
    to_id: int = typer.Argument(..., help="User being paid"),
    amount: int = typer.Argument(..., help="Amount in minor units (e.g. cents)"),
    allow_overpayment: bool = typer.Option(
        False, "--allow-overpayment", help="Allow paying more than is owed"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Record a completed payment between two members."""

    def action(service: LedgerService):
        group = service.get_group(group_id)
        money = Money(amount=amount, currency=group.currency)
        settlement_id = service.complete_settlement(
            group_id,
            from_id,
            to_id,
            money,
            allow_overpayment=True if allow_overpayment else None,
        )
        console.print(
            f"[green]✓ Settlement {settlement_id}:[/green] {from_id} paid {to_id} "
            f"{format_money(money)}"
        )

    run(verbose, action)


@app.command()
def reconcile(
    group_id: int = typer.Argument(..., help="Group id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Check stored balances against expense and settlement history."""

    def action(service: LedgerService):
        discrepancies = service.reconcile(group_id)
        if not discrepancies:
            console.print("[green]✓ Balances match history[/green]")
            return

        table = Table(title="Discrepancies", show_header=True, header_style="bold red")
        table.add_column("Pair", style="cyan")
        table.add_column("Stored", justify="right")
        table.add_column("Expected", justify="right")
        table.add_column("Delta", justify="right")
        for d in discrepancies:
            table.add_row(
                f"{d.user_a} → {d.user_b}",
                format_money(d.stored),
                format_money(d.expected),
                format_money(d.delta),
            )
        console.print(table)
        sys.exit(2)

    run(verbose, action)


def display_splits(service: LedgerService, expense_id: int):
    """Display the splits of an expense."""
    table = Table(title=f"Expense {expense_id}", show_header=True, header_style="bold magenta")
    table.add_column("Participant", style="cyan")
    table.add_column("Share", justify="right")
    for split in service.get_expense_splits(expense_id):
        table.add_row(str(split.participant_id), format_money(split.share))
    console.print(table)


if __name__ == "__main__":
    app()
