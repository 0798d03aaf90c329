"""Tests for the MCP tool surface."""

from decimal import Decimal

import pytest

from splitledger import mcp_server
from splitledger.mcp_server import (
    SessionState,
    accept_plan,
    list_expenses,
    propose_plan,
    settle_share,
    settle_up_workflow,
    show_balances,
)
from splitledger.models import ExpenseInput


@pytest.fixture(autouse=True)
def session(monkeypatch, settings, db, ledger):
    """Give the tools a ledger backed by the test database."""
    state = SessionState(ledger=ledger, db=db, settings=settings)
    monkeypatch.setattr(mcp_server, "_state", state)
    return state


@pytest.fixture
def dinner(ledger):
    """Alice pays 90 in the default group, split with Bob and Carol."""
    return ledger.create_expense(
        "default",
        ExpenseInput(
            amount=Decimal("90"),
            payer="alice",
            participants=["bob", "carol"],
            description="Dinner",
        ),
    )


class TestReadTools:
    """Test listing and balances."""

    def test_list_expenses_empty(self):
        assert list_expenses() == "No expenses recorded in group default."

    def test_list_expenses(self, dinner):
        output = list_expenses()

        assert f"#{dinner.id}" in output
        assert "Dinner" in output
        assert "bob owes 30.00 (OPEN)" in output

    def test_show_balances(self, dinner):
        output = show_balances()

        assert "alice: 60.00" in output
        assert "bob: (30.00)" in output

    def test_show_balances_settled_up(self):
        assert "settled up" in show_balances("default")


class TestPlanTools:
    """Test proposing and accepting plans."""

    def test_accept_without_plan(self):
        assert accept_plan().startswith("Error: No plan loaded")

    def test_propose_and_accept(self, session, ledger, dinner):
        proposed = propose_plan()

        assert "[0] bob -> alice: 30.00" in proposed
        assert "[1] carol -> alice: 30.00" in proposed
        assert session.plan is not None

        accepted = accept_plan()

        assert "Recorded 2 transfers" in accepted
        assert session.plan is None
        assert ledger.list_unsettled("default") == []

    def test_accept_selected_entries(self, ledger, dinner):
        propose_plan()

        accept_plan(entry_indexes=[1], actor="alice")

        open_debtors = [str(o.debtor) for o in ledger.list_unsettled("default")]
        assert open_debtors == ["bob"]

    def test_accept_invalid_index(self, dinner):
        propose_plan()

        assert accept_plan(entry_indexes=[5]).startswith("Error: Invalid index 5")

    def test_nothing_to_settle(self, session):
        assert propose_plan() == "Nothing to settle in default."
        assert session.plan is None


class TestSettleTool:
    """Test settling one share."""

    def test_settle_and_retry(self, dinner):
        assert settle_share(dinner.id, "bob", "bob") == (
            f"Settled bob's share of expense #{dinner.id}."
        )
        assert "already settled" in settle_share(dinner.id, "bob", "alice")

    def test_errors_are_reported(self, dinner):
        assert settle_share(dinner.id, "bob", "carol").startswith("Error:")
        assert settle_share(999, "bob", "bob").startswith("Error:")


def test_workflow_prompt_mentions_every_step():
    text = settle_up_workflow()

    for tool in ("list_expenses", "show_balances", "propose_plan", "accept_plan"):
        assert tool in text


def test_netted_plan_summary(ledger):
    """Alice owes Bob and Bob owes Carol; one transfer settles both shares."""
    ledger.create_expense(
        "default", {"amount": "60", "payer": "bob", "participants": ["alice"]}
    )
    ledger.create_expense(
        "default", {"amount": "60", "payer": "carol", "participants": ["bob"]}
    )

    assert "[0] alice -> carol: 30.00" in propose_plan()

    summary = accept_plan()

    assert "Shares settled: 2 (0 partially)" in summary
    assert "Paid on behalf of others: 30.00" in summary
