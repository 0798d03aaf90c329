"""CLI for SplitLedger using Typer."""

import logging
import sys
from decimal import Decimal, InvalidOperation

import typer
from rich.console import Console
from rich.table import Table

from .config import Settings, load_settings
from .db import Database
from .exceptions import SplitLedgerError, ValidationError
from .ledger import ObligationLedger
from .mcp_server import run_server
from .models import (
    AcceptPlanRequest,
    Expense,
    ExpenseInput,
    ExpenseUpdate,
    NetBalance,
    OptimizeRequest,
    PercentageAllocation,
    SettlementOutcome,
    SettlementRequest,
    SplitPolicy,
    TransferPlan,
    parse_member_ref,
)
from .splitting import from_minor_units
from .ui import review_plan_interactive, select_member_interactive

app = typer.Typer(
    name="splitledger",
    help="Record shared expenses, split them, and settle up with few transfers",
)

console = Console()

_options = {"verbose": False}


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Shared-expense ledger."""
    _options["verbose"] = verbose
    setup_logging(verbose)


def _open() -> tuple[Settings, Database, ObligationLedger]:
    settings = load_settings()
    db = Database(settings.database_path)
    return settings, db, ObligationLedger(settings, db)


def _fail(e: Exception):
    if isinstance(e, SplitLedgerError):
        console.print(f"\n[bold yellow]⚠️  {e}[/bold yellow]\n")
    else:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
    if _options["verbose"]:
        raise e
    sys.exit(1)


def _parse_amount(text: str) -> Decimal:
    try:
        return Decimal(text)
    except InvalidOperation as e:
        raise ValidationError(f"Not an amount: {text}") from e


def _parse_percentages(values: list[str] | None) -> list[PercentageAllocation] | None:
    """Parse repeated MEMBER=PCT options."""
    if not values:
        return None
    allocations = []
    for value in values:
        member, sep, pct = value.rpartition("=")
        if not sep or not member:
            raise ValidationError(f"Expected MEMBER=PERCENT, got '{value}'")
        allocations.append(
            PercentageAllocation(
                member=parse_member_ref(member), percentage=_parse_amount(pct)
            )
        )
    return allocations


def format_money(amount: Decimal, use_color: bool = True) -> str:
    """
    Format money in accounting style with alignment.

    Negative amounts use parentheses: (85.02)
    Positive amounts have spaces:      85.02
    The spaces ensure decimal points align in tables.
    """
    abs_amount = abs(amount)
    if amount < 0:
        if use_color:
            return f"([red]{abs_amount:,.2f}[/red])"
        return f"({abs_amount:,.2f})"
    if use_color:
        return f" [green]{abs_amount:,.2f}[/green] "
    return f" {abs_amount:,.2f} "


def display_expense(expense: Expense, exponent: int):
    """Display one expense with its shares."""
    amount = from_minor_units(expense.amount_minor, exponent)

    console.print(f"\n[bold]Expense #{expense.id}:[/bold] {expense.description}")
    console.print(f"  Group: {expense.group_id}")
    console.print(f"  Date: {expense.occurred_at.date()}")
    console.print(f"  Amount: {format_money(amount)}")
    console.print(f"  Paid by: {expense.payer}  (recorded by {expense.creator})")
    console.print(f"  Policy: {expense.policy.value}")
    if expense.category:
        console.print(f"  Category: {expense.category}")
    if expense.creator_share_minor:
        console.print(
            f"  Creator's own part: "
            f"{format_money(from_minor_units(expense.creator_share_minor, exponent))}"
        )
    console.print()

    if not expense.shares:
        console.print("[dim]No shares (payer covers only themselves).[/dim]")
        return

    table = Table(title="Shares", show_header=True, header_style="bold magenta")
    table.add_column("Debtor", style="cyan")
    table.add_column("Owes", justify="right", width=14)
    table.add_column("%", justify="right", style="dim", width=8)
    table.add_column("Status", no_wrap=True)

    for share in expense.shares:
        if share.settled:
            status = f"[green]✓ settled[/green] [dim]by {share.settled_by}[/dim]"
        else:
            status = "[yellow]open[/yellow]"
        table.add_row(
            str(share.debtor),
            format_money(from_minor_units(share.owed_minor, exponent)),
            f"{share.percentage}" if share.percentage is not None else "—",
            status,
        )

    console.print(table)


def display_balances(balances: list[NetBalance]):
    """Display net balances, creditors positive."""
    table = Table(title="Net Balances", show_header=True, header_style="bold magenta")
    table.add_column("Member", style="cyan")
    table.add_column("Balance", justify="right", width=14)

    for balance in balances:
        table.add_row(str(balance.member), format_money(balance.balance))

    console.print(table)


def display_plan(plan: TransferPlan):
    """Display a transfer plan."""
    table = Table(
        title=f"Transfer Plan ({plan.group_id})",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("#", style="dim", width=4)
    table.add_column("From", style="red")
    table.add_column("To", style="green")
    table.add_column("Amount", justify="right", width=14)

    for i, entry in enumerate(plan.entries, 1):
        table.add_row(
            str(i),
            str(entry.debtor),
            str(entry.creditor),
            format_money(entry.amount, use_color=False),
        )

    console.print(table)


# ============================================================================
# Commands
# ============================================================================


@app.command()
def register(
    identity: str = typer.Argument(..., help="Stable member key, e.g. alice"),
    address: str | None = typer.Option(None, "--address", "-a", help="Contact address"),
    name: str | None = typer.Option(None, "--name", "-n", help="Display name"),
):
    """Register a member and link a contact address to them."""
    try:
        _, db, ledger = _open()
        member = ledger.register_member(identity, address, name)
        console.print(
            f"[green]✓ Registered {member.identity_key}"
            f"{f' <{member.address}>' if member.address else ''}[/green]"
        )
    except Exception as e:
        _fail(e)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def add(
    amount: str = typer.Argument(..., help="Expense amount, e.g. 42.50"),
    payer: str = typer.Option(..., "--payer", help="Who paid"),
    creator: str | None = typer.Option(
        None, "--creator", help="Who records the expense (defaults to payer)"
    ),
    policy: SplitPolicy = typer.Option(
        SplitPolicy.EQUAL_SPLIT, "--policy", help="How to split the amount"
    ),
    participants: list[str] | None = typer.Option(
        None, "--participant", "-p", help="A debtor (repeatable)"
    ),
    percentages: list[str] | None = typer.Option(
        None, "--percent", help="MEMBER=PERCENT for percentage split (repeatable)"
    ),
    description: str = typer.Option("", "--description", "-d"),
    category: str | None = typer.Option(None, "--category"),
    group: str | None = typer.Option(None, "--group", "-g", help="Group id"),
):
    """Record an expense and split it between participants."""
    try:
        settings, db, ledger = _open()
        payload = ExpenseInput(
            amount=_parse_amount(amount),
            payer=payer,
            creator=creator,
            policy=policy,
            participants=participants or [],
            percentages=_parse_percentages(percentages),
            description=description,
            category=category,
        )
        expense = ledger.create_expense(group or settings.default_group, payload)

        display_expense(expense, settings.currency_exponent)
        console.print(f"\n[bold green]✓ Expense #{expense.id} recorded[/bold green]")
    except Exception as e:
        _fail(e)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def edit(
    expense_id: int = typer.Argument(..., help="Expense to edit"),
    actor: str = typer.Option(..., "--actor", help="Who is editing (must be creator)"),
    amount: str | None = typer.Option(None, "--amount"),
    policy: SplitPolicy | None = typer.Option(None, "--policy"),
    participants: list[str] | None = typer.Option(
        None, "--participant", "-p", help="Replace debtors (repeatable)"
    ),
    percentages: list[str] | None = typer.Option(
        None, "--percent", help="MEMBER=PERCENT (repeatable)"
    ),
    description: str | None = typer.Option(None, "--description", "-d"),
    category: str | None = typer.Option(None, "--category"),
):
    """Edit an expense; all of its shares are recomputed."""
    try:
        settings, db, ledger = _open()
        changes = ExpenseUpdate(
            amount=_parse_amount(amount) if amount is not None else None,
            policy=policy,
            participants=participants or None,
            percentages=_parse_percentages(percentages),
            description=description,
            category=category,
        )
        expense = ledger.edit_expense(expense_id, changes, parse_member_ref(actor))

        display_expense(expense, settings.currency_exponent)
        console.print(f"\n[bold green]✓ Expense #{expense_id} updated[/bold green]")
    except Exception as e:
        _fail(e)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def delete(
    expense_id: int = typer.Argument(..., help="Expense to delete"),
    actor: str = typer.Option(..., "--actor", help="Who is deleting (must be creator)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
):
    """Delete an expense and its shares."""
    try:
        settings, db, ledger = _open()
        expense = ledger.get_expense(expense_id)
        display_expense(expense, settings.currency_exponent)

        if not yes:
            console.print("\n[bold yellow]⚠️  This expense will be deleted[/bold yellow]")
            confirm = input("Continue? [y/N] ").strip().lower()
            if confirm not in ("y", "yes"):
                console.print("[yellow]Cancelled.[/yellow]")
                return

        ledger.delete_expense(expense_id, parse_member_ref(actor))
        console.print(f"\n[bold green]✓ Expense #{expense_id} deleted[/bold green]")
    except Exception as e:
        _fail(e)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def settle(
    expense_id: int = typer.Argument(..., help="Expense the share belongs to"),
    actor: str = typer.Option(..., "--actor", help="Debtor or payer"),
    debtor: str | None = typer.Option(
        None, "--debtor", help="Whose share to settle (prompted if omitted)"
    ),
):
    """Mark a debtor's share of an expense as settled."""
    try:
        _, db, ledger = _open()

        if debtor is None:
            expense = ledger.get_expense(expense_id)
            console.print(f"\n📝 Settle a share of: {expense.description}")
            debtor_ref = select_member_interactive(
                db.list_members(), prompt="Debtor: "
            )
            if debtor_ref is None:
                console.print("[yellow]No debtor selected.[/yellow]")
                return
        else:
            debtor_ref = parse_member_ref(debtor)

        outcome = ledger.settle_request(
            SettlementRequest(expense_id=expense_id, debtor=debtor_ref, actor=actor)
        )
        if outcome == SettlementOutcome.ALREADY_SETTLED:
            console.print(f"[dim]{debtor_ref}'s share was already settled.[/dim]")
        else:
            console.print(f"[bold green]✓ Settled {debtor_ref}'s share[/bold green]")
    except Exception as e:
        _fail(e)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def show(expense_id: int = typer.Argument(..., help="Expense to show")):
    """Show one expense with its shares."""
    try:
        settings, db, ledger = _open()
        display_expense(ledger.get_expense(expense_id), settings.currency_exponent)
    except Exception as e:
        _fail(e)
    finally:
        if "db" in locals():
            db.close()


@app.command("list")
def list_(
    group: str | None = typer.Option(None, "--group", "-g", help="Group id"),
    unsettled: bool = typer.Option(
        False, "--unsettled", "-u", help="List open shares instead of expenses"
    ),
):
    """List expenses (or unsettled shares) in a group."""
    try:
        settings, db, ledger = _open()
        group_id = group or settings.default_group
        exponent = settings.currency_exponent

        if unsettled:
            obligations = ledger.list_unsettled(group_id)
            if not obligations:
                console.print("[green]Everything is settled.[/green]")
                return
            table = Table(
                title=f"Unsettled Shares ({group_id})",
                show_header=True,
                header_style="bold magenta",
            )
            table.add_column("Expense", style="dim", width=8)
            table.add_column("Date", width=12)
            table.add_column("Debtor", style="red")
            table.add_column("Creditor", style="green")
            table.add_column("Amount", justify="right", width=14)
            for ob in obligations:
                table.add_row(
                    str(ob.expense_id),
                    str(ob.occurred_at.date()),
                    str(ob.debtor),
                    str(ob.creditor),
                    format_money(from_minor_units(ob.amount_minor, exponent)),
                )
            console.print(table)
            return

        expenses = ledger.list_expenses(group_id)
        if not expenses:
            console.print(f"[yellow]No expenses in group {group_id}.[/yellow]")
            return

        table = Table(
            title=f"Expenses ({group_id})", show_header=True, header_style="bold magenta"
        )
        table.add_column("ID", style="dim")
        table.add_column("Date")
        table.add_column("Description", style="cyan")
        table.add_column("Payer")
        table.add_column("Policy", style="dim")
        table.add_column("Amount", justify="right")
        table.add_column("Open", justify="right")

        for expense in expenses:
            desc = expense.description
            open_count = sum(1 for s in expense.shares if not s.settled)
            table.add_row(
                str(expense.id),
                str(expense.occurred_at.date()),
                desc[:30] + "..." if len(desc) > 30 else desc,
                str(expense.payer),
                expense.policy.value,
                format_money(from_minor_units(expense.amount_minor, exponent)),
                str(open_count),
            )

        console.print(table)
    except Exception as e:
        _fail(e)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def balances(group: str | None = typer.Option(None, "--group", "-g", help="Group id")):
    """Show each member's net balance in a group."""
    try:
        settings, db, ledger = _open()
        display_balances(ledger.net_balances(group or settings.default_group))
    except Exception as e:
        _fail(e)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def plan(group: str | None = typer.Option(None, "--group", "-g", help="Group id")):
    """Propose a set of transfers that settles the whole group."""
    try:
        settings, db, ledger = _open()
        transfer_plan = ledger.optimize_request(
            OptimizeRequest(group_id=group or settings.default_group)
        )

        if transfer_plan.is_empty:
            console.print("[green]Nothing to settle.[/green]")
            return

        display_balances(transfer_plan.balances)
        console.print()
        display_plan(transfer_plan)
        console.print(
            f"\n[bold]To record these transfers, run:[/bold]\n"
            f"  [cyan]splitledger accept --group {transfer_plan.group_id}[/cyan]\n"
        )
    except Exception as e:
        _fail(e)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def accept(
    group: str | None = typer.Option(None, "--group", "-g", help="Group id"),
    actor: str | None = typer.Option(
        None, "--actor", help="Who accepts the plan (defaults to each debtor)"
    ),
    interactive: bool = typer.Option(
        False, "--interactive", "-i", help="Confirm each transfer individually"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
):
    """Compute the transfer plan and record it as settled."""
    try:
        settings, db, ledger = _open()
        transfer_plan = ledger.optimize_request(
            OptimizeRequest(group_id=group or settings.default_group)
        )

        if transfer_plan.is_empty:
            console.print("[green]Nothing to settle.[/green]")
            return

        display_plan(transfer_plan)
        entries = transfer_plan.entries

        if interactive:
            entries = review_plan_interactive(entries)
            if not entries:
                console.print("[yellow]No transfers accepted.[/yellow]")
                return
        elif not yes:
            console.print(
                "\n[bold yellow]⚠️  Ready to mark these transfers as paid[/bold yellow]"
            )
            confirm = input("Continue? [y/N] ").strip().lower()
            if confirm not in ("y", "yes"):
                console.print("[yellow]Cancelled.[/yellow]")
                return

        applied = ledger.accept_request(
            AcceptPlanRequest(
                group_id=transfer_plan.group_id, entries=entries, actor=actor
            )
        )
        settled = sum(a.shares_settled for a in applied)
        console.print(
            f"\n[bold green]✓ Recorded {len(applied)} transfers "
            f"({settled} shares settled)[/bold green]"
        )
        netted = sum((a.netted_amount for a in applied), Decimal(0))
        if netted:
            console.print(
                f"   [dim]{format_money(netted, use_color=False).strip()} "
                f"paid on behalf of others[/dim]"
            )
    except Exception as e:
        _fail(e)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def mcp():
    """Start the MCP server for assistant integration."""
    run_server()


if __name__ == "__main__":
    app()
