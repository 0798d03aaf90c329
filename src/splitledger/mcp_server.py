"""MCP server for SplitLedger: exposes the settle-up workflow as assistant tools."""

import logging
from dataclasses import dataclass
from decimal import Decimal

from mcp.server.fastmcp import FastMCP

from .config import Settings, load_settings
from .db import Database
from .exceptions import SplitLedgerError
from .ledger import ObligationLedger
from .models import (
    AcceptPlanRequest,
    OptimizeRequest,
    SettlementOutcome,
    SettlementRequest,
    TransferPlan,
)
from .splitting import from_minor_units

logger = logging.getLogger(__name__)

mcp_app = FastMCP("splitledger")

# ---------------------------------------------------------------------------
# Session state: one MCP server process is one conversation
# ---------------------------------------------------------------------------

WORKFLOW_INSTRUCTIONS = """\
You are helping a group settle shared expenses. Follow this workflow:

1. REVIEW: Call list_expenses to see what has been recorded in the group.
   Summarize the open shares for the user.

2. BALANCES: Call show_balances. Positive = is owed money, \
negative = owes money.

3. PLAN: Call propose_plan to compute a short list of transfers that clears
   every balance. Show the transfers to the user.

4. ACCEPT: Ask the user which transfers have actually been paid.
   Only when they confirm, call accept_plan. Use settle_share instead for a
   single expense that was paid back directly.

Never accept a plan the user has not confirmed.\
"""


@dataclass
class SessionState:
    """Holds state between MCP tool calls within a single conversation."""

    ledger: ObligationLedger | None = None
    db: Database | None = None
    settings: Settings | None = None
    plan: TransferPlan | None = None


_state = SessionState()


def _ensure_ledger() -> ObligationLedger:
    """Lazily initialize the ledger (loads .env config)."""
    if _state.ledger is None:
        _state.settings = load_settings()
        _state.db = Database(_state.settings.database_path)
        _state.ledger = ObligationLedger(_state.settings, _state.db)
    return _state.ledger


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _format_amount(minor: int, exponent: int) -> str:
    """Format minor units as an accounting-style string."""
    amount = from_minor_units(minor, exponent)
    if amount < 0:
        return f"({abs(amount):,.2f})"
    return f"{amount:,.2f}"


def _group(ledger: ObligationLedger, group_id: str | None) -> str:
    return group_id or ledger.settings.default_group


# ---------------------------------------------------------------------------
# MCP Tools
# ---------------------------------------------------------------------------


@mcp_app.tool()
def list_expenses(group_id: str | None = None) -> str:
    """List expenses in a group with each debtor's share and status.

    Args:
        group_id: The group to list (defaults to the configured group).
    """
    try:
        ledger = _ensure_ledger()
        group = _group(ledger, group_id)
        exponent = ledger.settings.currency_exponent
        expenses = ledger.list_expenses(group)

        if not expenses:
            return f"No expenses recorded in group {group}."

        lines = [f"Expenses in {group} ({len(expenses)} total):"]
        for exp in expenses:
            lines.append(
                f"  #{exp.id} {exp.occurred_at.date()} | {exp.description or '-'} | "
                f"{_format_amount(exp.amount_minor, exponent)} paid by {exp.payer} | "
                f"{exp.policy.value}"
            )
            for share in exp.shares:
                status = "settled" if share.settled else "OPEN"
                lines.append(
                    f"      {share.debtor} owes "
                    f"{_format_amount(share.owed_minor, exponent)} ({status})"
                )

        return "\n".join(lines)
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to list expenses: {e}"


@mcp_app.tool()
def show_balances(group_id: str | None = None) -> str:
    """Show each member's net balance in a group.

    Args:
        group_id: The group (defaults to the configured group).
    """
    try:
        ledger = _ensure_ledger()
        group = _group(ledger, group_id)
        exponent = ledger.settings.currency_exponent
        balances = ledger.net_balances(group)

        if not any(b.balance_minor for b in balances):
            return f"Everyone in {group} is settled up."

        lines = [f"Net balances in {group}:"]
        for balance in balances:
            lines.append(
                f"  {balance.member}: {_format_amount(balance.balance_minor, exponent)}"
            )
        return "\n".join(lines)
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to compute balances: {e}"


@mcp_app.tool()
def propose_plan(group_id: str | None = None) -> str:
    """Compute transfers that settle every balance in a group.

    The plan is kept for a following accept_plan call.

    Args:
        group_id: The group (defaults to the configured group).
    """
    try:
        ledger = _ensure_ledger()
        plan = ledger.optimize_request(
            OptimizeRequest(group_id=_group(ledger, group_id))
        )

        if plan.is_empty:
            _state.plan = None
            return f"Nothing to settle in {plan.group_id}."

        _state.plan = plan
        lines = [f"Proposed transfers for {plan.group_id}:"]
        for i, entry in enumerate(plan.entries):
            lines.append(f"  [{i}] {entry.debtor} -> {entry.creditor}: {entry.amount}")
        lines.append("")
        lines.append(f"{len(plan.entries)} transfers clear every balance.")
        return "\n".join(lines)
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to compute plan: {e}"


@mcp_app.tool()
def accept_plan(
    entry_indexes: list[int] | None = None, actor: str | None = None
) -> str:
    """Record transfers from the proposed plan as paid.

    Uses the plan stored by the previous propose_plan call.

    Args:
        entry_indexes: Which transfers to record (defaults to all of them).
        actor: Who is recording the payments (defaults to each payer of a transfer).
    """
    try:
        ledger = _ensure_ledger()

        if _state.plan is None:
            return "Error: No plan loaded. Call propose_plan first."

        entries = _state.plan.entries
        if entry_indexes is not None:
            invalid = [i for i in entry_indexes if i < 0 or i >= len(entries)]
            if invalid:
                return (
                    f"Error: Invalid index {invalid[0]}. "
                    f"Valid range: 0–{len(entries) - 1}"
                )
            entries = [entries[i] for i in entry_indexes]

        applied = ledger.accept_request(
            AcceptPlanRequest(
                group_id=_state.plan.group_id, entries=entries, actor=actor
            )
        )
        _state.plan = None

        settled = sum(a.shares_settled for a in applied)
        partial = sum(len(a.remainder_share_ids) for a in applied)
        netted = sum((a.netted_amount for a in applied), Decimal(0))
        lines = [
            f"Recorded {len(applied)} transfers.",
            f"Shares settled: {settled} ({partial} partially)",
        ]
        if netted:
            lines.append(f"Paid on behalf of others: {netted:,.2f}")
        return "\n".join(lines)
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to accept plan: {e}"


@mcp_app.tool()
def settle_share(expense_id: int, debtor: str, actor: str) -> str:
    """Mark one debtor's share of an expense as settled.

    Args:
        expense_id: The expense the share belongs to.
        debtor: Whose share, e.g. "alice" or "bob@example.com".
        actor: Who is settling; must be the debtor or the payer.
    """
    try:
        ledger = _ensure_ledger()
        outcome = ledger.settle_request(
            SettlementRequest(expense_id=expense_id, debtor=debtor, actor=actor)
        )
        if outcome == SettlementOutcome.ALREADY_SETTLED:
            return f"{debtor}'s share of expense #{expense_id} was already settled."
        return f"Settled {debtor}'s share of expense #{expense_id}."
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to settle share: {e}"


# ---------------------------------------------------------------------------
# MCP Prompt
# ---------------------------------------------------------------------------


@mcp_app.prompt()
def settle_up_workflow() -> str:
    """Orchestration instructions for settling up a group."""
    return WORKFLOW_INSTRUCTIONS


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def run_server():
    """Start the MCP server (stdio transport)."""
    logger.info("Starting splitledger MCP server")
    mcp_app.run(transport="stdio")
