"""Shared fixtures: a fresh SQLite ledger per test."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from splitledger.config import Settings
from splitledger.db import Database
from splitledger.ledger import ObligationLedger
from splitledger.models import ExpenseInput, SplitPolicy


@pytest.fixture
def settings(tmp_path):
    """Create settings pointing at a temporary database."""
    return Settings(database_path=tmp_path / "ledger.db")


@pytest.fixture
def db(settings):
    """Create a temporary database."""
    database = Database(settings.database_path)
    yield database
    database.close()


@pytest.fixture
def ledger(settings, db):
    """Create an ObligationLedger instance."""
    return ObligationLedger(settings, db)


@pytest.fixture
def add_expense(ledger):
    """Record an expense with sensible defaults."""

    def _add(
        amount,
        payer="alice",
        participants=("bob",),
        policy=SplitPolicy.EQUAL_SPLIT,
        group="trip",
        day=1,
        **kwargs,
    ):
        payload = ExpenseInput(
            amount=Decimal(str(amount)),
            payer=payer,
            policy=policy,
            participants=list(participants),
            occurred_at=datetime(2024, 3, day, 12, 0, tzinfo=UTC),
            **kwargs,
        )
        return ledger.create_expense(group, payload)

    return _add
