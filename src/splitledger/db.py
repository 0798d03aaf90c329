"""SQLite database operations for SplitLedger."""

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path

from .models import (
    Address,
    Expense,
    Identity,
    Member,
    Obligation,
    Share,
    SplitPolicy,
)


def _ref_columns(ref: Identity | Address | None) -> tuple[str | None, str | None]:
    if ref is None:
        return None, None
    if isinstance(ref, Identity):
        return "identity", ref.key
    return "address", ref.value


def _ref_from_columns(kind: str | None, value: str | None) -> Identity | Address | None:
    if kind is None or value is None:
        return None
    if kind == "identity":
        return Identity(key=value)
    return Address(value=value)


def _decimal_or_none(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _datetime_or_none(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Database:
    """SQLite database manager.

    A single connection is shared between threads; every access goes through
    an RLock. Mutations run inside transaction(), which commits on success and
    rolls back on any exception. snapshot() holds the lock across several
    reads so they see one consistent state.
    """

    def __init__(self, db_path: Path | str):
        """Initialize database connection."""
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        cursor = self.conn.cursor()

        # Member registry (address -> identity resolution)
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS members (
                identity_key TEXT PRIMARY KEY,
                address TEXT UNIQUE,
                display_name TEXT
            )
        """
        )

        # Expenses table
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS expenses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                group_id TEXT NOT NULL,
                amount_minor INTEGER NOT NULL CHECK (amount_minor > 0),
                payer_kind TEXT NOT NULL,
                payer_value TEXT NOT NULL,
                creator_kind TEXT NOT NULL,
                creator_value TEXT NOT NULL,
                policy TEXT NOT NULL,
                creator_share_minor INTEGER NOT NULL DEFAULT 0,
                creator_percentage TEXT,
                description TEXT NOT NULL DEFAULT '',
                category TEXT,
                occurred_at TIMESTAMP NOT NULL,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """
        )

        # Shares table
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS shares (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                expense_id INTEGER NOT NULL
                    REFERENCES expenses(id) ON DELETE CASCADE,
                position INTEGER NOT NULL,
                debtor_kind TEXT NOT NULL,
                debtor_value TEXT NOT NULL,
                owed_minor INTEGER NOT NULL CHECK (owed_minor >= 0),
                percentage TEXT,
                settled INTEGER NOT NULL DEFAULT 0,
                settled_at TIMESTAMP,
                settled_by_kind TEXT,
                settled_by_value TEXT
            )
        """
        )

        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_expenses_group ON expenses(group_id)"
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_shares_expense ON shares(expense_id)"
        )

        self.conn.commit()

    def close(self):
        """Close database connection."""
        self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run a block of writes as one all-or-nothing unit."""
        with self._lock:
            try:
                yield
            except BaseException:
                self.conn.rollback()
                raise
            else:
                self.conn.commit()

    @contextmanager
    def snapshot(self) -> Iterator[None]:
        """Hold the connection for a group of consistent reads."""
        with self._lock:
            yield

    # ========================================================================
    # Member operations
    # ========================================================================

    def save_member(self, member: Member):
        """Insert or update a member registry entry."""
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO members (identity_key, address, display_name)
                VALUES (?, ?, ?)
                ON CONFLICT(identity_key) DO UPDATE SET
                    address = excluded.address,
                    display_name = COALESCE(excluded.display_name, display_name)
                """,
                (member.identity_key, member.address, member.display_name),
            )

    def get_member_by_address(self, address: str) -> Member | None:
        """Get a member by contact address."""
        with self._lock:
            row = self.conn.execute(
                "SELECT identity_key, address, display_name FROM members "
                "WHERE address = ?",
                (address,),
            ).fetchone()
        if not row:
            return None
        return Member(
            identity_key=row["identity_key"],
            address=row["address"],
            display_name=row["display_name"],
        )

    def list_members(self) -> list[Member]:
        """Get all registered members."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT identity_key, address, display_name FROM members "
                "ORDER BY identity_key"
            ).fetchall()
        return [
            Member(
                identity_key=row["identity_key"],
                address=row["address"],
                display_name=row["display_name"],
            )
            for row in rows
        ]

    # ========================================================================
    # Expense operations
    # ========================================================================

    def insert_expense(self, expense: Expense) -> int:
        """Insert an expense and its shares. Returns the new expense id."""
        payer_kind, payer_value = _ref_columns(expense.payer)
        creator_kind, creator_value = _ref_columns(expense.creator)
        with self._lock:
            cursor = self.conn.execute(
                """
                INSERT INTO expenses (
                    group_id, amount_minor, payer_kind, payer_value,
                    creator_kind, creator_value, policy, creator_share_minor,
                    creator_percentage, description, category, occurred_at,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    expense.group_id,
                    expense.amount_minor,
                    payer_kind,
                    payer_value,
                    creator_kind,
                    creator_value,
                    expense.policy.value,
                    expense.creator_share_minor,
                    str(expense.creator_percentage)
                    if expense.creator_percentage is not None
                    else None,
                    expense.description,
                    expense.category,
                    expense.occurred_at.isoformat(),
                    expense.created_at.isoformat(),
                    expense.updated_at.isoformat(),
                ),
            )
            expense_id = cursor.lastrowid
            if expense_id is None:
                raise RuntimeError("Failed to insert expense")
            self._insert_shares(expense_id, expense.shares)
        return expense_id

    def update_expense(self, expense: Expense):
        """Rewrite an expense row and replace all of its shares."""
        if expense.id is None:
            raise ValueError("Cannot update an expense without an id")
        with self._lock:
            self.conn.execute(
                """
                UPDATE expenses SET
                    amount_minor = ?, policy = ?, creator_share_minor = ?,
                    creator_percentage = ?, description = ?, category = ?,
                    occurred_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    expense.amount_minor,
                    expense.policy.value,
                    expense.creator_share_minor,
                    str(expense.creator_percentage)
                    if expense.creator_percentage is not None
                    else None,
                    expense.description,
                    expense.category,
                    expense.occurred_at.isoformat(),
                    expense.updated_at.isoformat(),
                    expense.id,
                ),
            )
            self.conn.execute("DELETE FROM shares WHERE expense_id = ?", (expense.id,))
            self._insert_shares(expense.id, expense.shares)

    def delete_expense(self, expense_id: int):
        """Delete an expense; its shares cascade."""
        with self._lock:
            self.conn.execute("DELETE FROM expenses WHERE id = ?", (expense_id,))

    def get_expense(self, expense_id: int) -> Expense | None:
        """Get an expense with its shares."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM expenses WHERE id = ?", (expense_id,)
            ).fetchone()
            if not row:
                return None
            return self._expense_from_row(row)

    def list_expenses(self, group_id: str) -> list[Expense]:
        """Get all expenses in a group, oldest first."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM expenses WHERE group_id = ? "
                "ORDER BY occurred_at, id",
                (group_id,),
            ).fetchall()
            return [self._expense_from_row(row) for row in rows]

    def list_expenses_mentioning(
        self, refs: list[Identity | Address]
    ) -> list[Expense]:
        """Get expenses in any group whose payer, creator or a debtor is one of refs."""
        clauses = []
        params: list[str] = []
        for ref in refs:
            kind, value = _ref_columns(ref)
            clauses.append(
                "(e.payer_kind = ? AND e.payer_value = ?)"
                " OR (e.creator_kind = ? AND e.creator_value = ?)"
                " OR EXISTS (SELECT 1 FROM shares s WHERE s.expense_id = e.id"
                " AND s.debtor_kind = ? AND s.debtor_value = ?)"
            )
            params.extend([kind, value] * 3)
        if not clauses:
            return []
        with self._lock:
            rows = self.conn.execute(
                f"SELECT e.* FROM expenses e WHERE {' OR '.join(clauses)} "
                "ORDER BY e.group_id, e.occurred_at, e.id",
                params,
            ).fetchall()
            return [self._expense_from_row(row) for row in rows]

    def _expense_from_row(self, row: sqlite3.Row) -> Expense:
        share_rows = self.conn.execute(
            "SELECT * FROM shares WHERE expense_id = ? ORDER BY position, id",
            (row["id"],),
        ).fetchall()
        return Expense(
            id=row["id"],
            group_id=row["group_id"],
            amount_minor=row["amount_minor"],
            payer=_ref_from_columns(row["payer_kind"], row["payer_value"]),
            creator=_ref_from_columns(row["creator_kind"], row["creator_value"]),
            policy=SplitPolicy(row["policy"]),
            creator_share_minor=row["creator_share_minor"],
            creator_percentage=_decimal_or_none(row["creator_percentage"]),
            description=row["description"],
            category=row["category"],
            occurred_at=datetime.fromisoformat(row["occurred_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            shares=[self._share_from_row(share_row) for share_row in share_rows],
        )

    # ========================================================================
    # Share operations
    # ========================================================================

    def _insert_shares(self, expense_id: int, shares: list[Share]):
        for position, share in enumerate(shares):
            share.id = self._insert_share(expense_id, position, share)
            share.expense_id = expense_id

    def _insert_share(self, expense_id: int, position: int, share: Share) -> int:
        debtor_kind, debtor_value = _ref_columns(share.debtor)
        settled_by_kind, settled_by_value = _ref_columns(share.settled_by)
        cursor = self.conn.execute(
            """
            INSERT INTO shares (
                expense_id, position, debtor_kind, debtor_value, owed_minor,
                percentage, settled, settled_at, settled_by_kind,
                settled_by_value
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                expense_id,
                position,
                debtor_kind,
                debtor_value,
                share.owed_minor,
                str(share.percentage) if share.percentage is not None else None,
                int(share.settled),
                share.settled_at.isoformat() if share.settled_at else None,
                settled_by_kind,
                settled_by_value,
            ),
        )
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Failed to insert share")
        return row_id

    def _share_from_row(self, row: sqlite3.Row) -> Share:
        return Share(
            id=row["id"],
            expense_id=row["expense_id"],
            debtor=_ref_from_columns(row["debtor_kind"], row["debtor_value"]),
            owed_minor=row["owed_minor"],
            percentage=_decimal_or_none(row["percentage"]),
            settled=bool(row["settled"]),
            settled_at=_datetime_or_none(row["settled_at"]),
            settled_by=_ref_from_columns(
                row["settled_by_kind"], row["settled_by_value"]
            ),
        )

    def mark_share_settled(
        self, share_id: int, settled_at: datetime, settled_by: Identity | Address
    ):
        """Mark a share as settled."""
        kind, value = _ref_columns(settled_by)
        with self._lock:
            self.conn.execute(
                """
                UPDATE shares SET
                    settled = 1, settled_at = ?, settled_by_kind = ?,
                    settled_by_value = ?
                WHERE id = ? AND settled = 0
                """,
                (settled_at.isoformat(), kind, value, share_id),
            )

    def split_share(
        self,
        share_id: int,
        settled_minor: int,
        settled_at: datetime,
        settled_by: Identity | Address,
    ) -> int:
        """
        Settle part of a share.

        The share keeps settled_minor and is marked settled; a new unsettled
        share on the same expense holds the remainder.

        Returns:
            The id of the new remainder share
        """
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM shares WHERE id = ?", (share_id,)
            ).fetchone()
            if not row:
                raise ValueError(f"Share {share_id} does not exist")
            share = self._share_from_row(row)
            remainder = share.owed_minor - settled_minor
            if settled_minor <= 0 or remainder <= 0:
                raise ValueError(
                    f"Cannot split share {share_id} of {share.owed_minor} "
                    f"at {settled_minor}"
                )

            self.conn.execute(
                "UPDATE shares SET owed_minor = ? WHERE id = ?",
                (settled_minor, share_id),
            )
            self.mark_share_settled(share_id, settled_at, settled_by)

            return self._insert_share(
                row["expense_id"],
                row["position"],
                Share(
                    debtor=share.debtor,
                    owed_minor=remainder,
                    percentage=share.percentage,
                ),
            )

    def list_unsettled_obligations(self, group_id: str) -> list[Obligation]:
        """Get every unsettled share in a group with its creditor, oldest first."""
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT s.id AS share_id, s.expense_id, e.group_id,
                       e.payer_kind, e.payer_value, s.debtor_kind,
                       s.debtor_value, s.owed_minor, e.occurred_at
                FROM shares s
                JOIN expenses e ON e.id = s.expense_id
                WHERE e.group_id = ? AND s.settled = 0
                ORDER BY e.occurred_at, e.id, s.position, s.id
                """,
                (group_id,),
            ).fetchall()
        return [
            Obligation(
                share_id=row["share_id"],
                expense_id=row["expense_id"],
                group_id=row["group_id"],
                creditor=_ref_from_columns(row["payer_kind"], row["payer_value"]),
                debtor=_ref_from_columns(row["debtor_kind"], row["debtor_value"]),
                amount_minor=row["owed_minor"],
                occurred_at=datetime.fromisoformat(row["occurred_at"]),
            )
            for row in rows
        ]
