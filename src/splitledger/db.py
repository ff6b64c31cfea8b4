"""SQLite persistence for SplitLedger.

Connections are opened per thread in autocommit mode. Writes are grouped
explicitly with :meth:`Database.transaction` (``BEGIN IMMEDIATE``, so only one
writer holds the database at a time) and consistent multi-table reads with
:meth:`Database.snapshot`. Individual methods never commit on their own.
"""

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from .exceptions import TransactionConflictError
from .models import (
    Balance,
    DebtNetting,
    Expense,
    ExpenseSplit,
    Group,
    Money,
    Participant,
    Settlement,
    SettlementStatus,
    utcnow,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS groups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    currency TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS participants (
    group_id INTEGER NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL,
    name TEXT,
    created_at TIMESTAMP NOT NULL,
    removed_at TIMESTAMP,
    PRIMARY KEY (group_id, user_id)
);

CREATE TABLE IF NOT EXISTS expenses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id INTEGER NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
    payer_id INTEGER NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    description TEXT,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS expense_splits (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    expense_id INTEGER NOT NULL REFERENCES expenses(id) ON DELETE CASCADE,
    participant_id INTEGER NOT NULL,
    share INTEGER NOT NULL CHECK (share >= 0),
    UNIQUE (expense_id, participant_id)
);

CREATE TABLE IF NOT EXISTS balances (
    group_id INTEGER NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
    debtor_id INTEGER NOT NULL,
    creditor_id INTEGER NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    updated_at TIMESTAMP NOT NULL,
    PRIMARY KEY (group_id, debtor_id, creditor_id),
    CHECK (debtor_id <> creditor_id)
);

-- One row per unordered pair, whatever its direction
CREATE UNIQUE INDEX IF NOT EXISTS uq_balances_pair
    ON balances (group_id, min(debtor_id, creditor_id), max(debtor_id, creditor_id));

CREATE TABLE IF NOT EXISTS settlements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id INTEGER NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
    from_id INTEGER NOT NULL,
    to_id INTEGER NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    status TEXT NOT NULL CHECK (status IN ('pending', 'completed', 'cancelled')),
    created_at TIMESTAMP NOT NULL,
    completed_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS debt_nettings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id INTEGER NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
    settlement_id INTEGER NOT NULL REFERENCES settlements(id),
    debtor_id INTEGER NOT NULL,
    creditor_id INTEGER NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    created_at TIMESTAMP NOT NULL,
    CHECK (debtor_id <> creditor_id)
);

CREATE INDEX IF NOT EXISTS ix_expenses_group_id ON expenses (group_id);
CREATE INDEX IF NOT EXISTS ix_expense_splits_expense_id ON expense_splits (expense_id);
CREATE INDEX IF NOT EXISTS ix_settlements_group_status ON settlements (group_id, status);
CREATE INDEX IF NOT EXISTS ix_debt_nettings_group_id ON debt_nettings (group_id);
"""


def _ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Database:
    """SQLite database manager."""

    def __init__(self, db_path: Path, busy_timeout: float = 5.0):
        """Initialize the database and create the schema if needed."""
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._init_schema()

    @property
    def conn(self) -> sqlite3.Connection:
        """The calling thread's connection, opened on first use."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _init_schema(self):
        """Initialize database schema."""
        self.conn.executescript(SCHEMA)

    def close(self):
        """Close every connection opened by this database."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block as a single serializable write transaction.

        Commits on success and rolls back on any exception.

        Raises:
            TransactionConflictError: If another writer holds the database
                past the busy timeout
        """
        conn = self.conn
        if conn.in_transaction:
            raise RuntimeError("Nested write transactions are not supported")

        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            raise TransactionConflictError(
                f"Could not start write transaction: {e}"
            ) from e

        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise

        try:
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            raise TransactionConflictError(f"Commit failed: {e}") from e

    @contextmanager
    def snapshot(self) -> Iterator[sqlite3.Connection]:
        """Run a block of reads against one consistent view of the database."""
        conn = self.conn
        if conn.in_transaction:
            # Already inside a transaction, which is its own snapshot
            yield conn
            return

        conn.execute("BEGIN")
        try:
            yield conn
        finally:
            conn.commit()

    # ========================================================================
    # Group operations
    # ========================================================================

    def insert_group(self, name: str, currency: str) -> Group:
        """Insert a group."""
        created_at = utcnow()
        cursor = self.conn.execute(
            "INSERT INTO groups (name, currency, created_at) VALUES (?, ?, ?)",
            (name, currency, created_at.isoformat()),
        )
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Failed to insert group")
        return Group(id=row_id, name=name, currency=currency, created_at=created_at)

    def get_group(self, group_id: int) -> Group | None:
        """Get a group by id."""
        row = self.conn.execute(
            "SELECT id, name, currency, created_at FROM groups WHERE id = ?",
            (group_id,),
        ).fetchone()
        if not row:
            return None
        return Group(
            id=row["id"],
            name=row["name"],
            currency=row["currency"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # ========================================================================
    # Participant operations
    # ========================================================================

    def upsert_participant(
        self, group_id: int, user_id: int, name: str | None = None
    ) -> Participant:
        """Add a participant, re-activating a removed membership."""
        self.conn.execute(
            """
            INSERT INTO participants (group_id, user_id, name, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(group_id, user_id) DO UPDATE SET
                name = COALESCE(excluded.name, participants.name),
                removed_at = NULL
            """,
            (group_id, user_id, name, utcnow().isoformat()),
        )
        participant = self.get_participant(group_id, user_id)
        if participant is None:
            raise RuntimeError("Failed to insert participant")
        return participant

    def get_participant(self, group_id: int, user_id: int) -> Participant | None:
        """Get a participant, including removed ones."""
        row = self.conn.execute(
            """
            SELECT group_id, user_id, name, created_at, removed_at
            FROM participants
            WHERE group_id = ? AND user_id = ?
            """,
            (group_id, user_id),
        ).fetchone()
        return self._row_to_participant(row) if row else None

    def list_participants(
        self, group_id: int, include_removed: bool = False
    ) -> list[Participant]:
        """List participants of a group ordered by user id."""
        query = """
            SELECT group_id, user_id, name, created_at, removed_at
            FROM participants
            WHERE group_id = ?
        """
        if not include_removed:
            query += " AND removed_at IS NULL"
        query += " ORDER BY user_id"
        rows = self.conn.execute(query, (group_id,)).fetchall()
        return [self._row_to_participant(row) for row in rows]

    def active_participant_ids(self, group_id: int) -> set[int]:
        """Ids of participants currently in the group."""
        rows = self.conn.execute(
            "SELECT user_id FROM participants WHERE group_id = ? AND removed_at IS NULL",
            (group_id,),
        ).fetchall()
        return {row["user_id"] for row in rows}

    def mark_participant_removed(self, group_id: int, user_id: int):
        """Soft-remove a participant."""
        self.conn.execute(
            "UPDATE participants SET removed_at = ? WHERE group_id = ? AND user_id = ?",
            (utcnow().isoformat(), group_id, user_id),
        )

    @staticmethod
    def _row_to_participant(row: sqlite3.Row) -> Participant:
        return Participant(
            group_id=row["group_id"],
            user_id=row["user_id"],
            name=row["name"],
            created_at=datetime.fromisoformat(row["created_at"]),
            removed_at=_ts(row["removed_at"]),
        )

    # ========================================================================
    # Expense operations
    # ========================================================================

    def insert_expense(
        self,
        group_id: int,
        payer_id: int,
        amount: Money,
        description: str | None = None,
    ) -> Expense:
        """Insert an expense row."""
        created_at = utcnow()
        cursor = self.conn.execute(
            """
            INSERT INTO expenses (group_id, payer_id, amount, description, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (group_id, payer_id, amount.amount, description, created_at.isoformat()),
        )
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Failed to insert expense")
        return Expense(
            id=row_id,
            group_id=group_id,
            payer_id=payer_id,
            amount=amount,
            description=description,
            created_at=created_at,
        )

    def get_expense(self, expense_id: int) -> Expense | None:
        """Get an expense by id."""
        row = self.conn.execute(
            """
            SELECT e.id, e.group_id, e.payer_id, e.amount, e.description,
                   e.created_at, e.updated_at, g.currency
            FROM expenses e
            JOIN groups g ON g.id = e.group_id
            WHERE e.id = ?
            """,
            (expense_id,),
        ).fetchone()
        return self._row_to_expense(row) if row else None

    def list_expenses(self, group_id: int) -> list[Expense]:
        """List the expenses of a group, newest first."""
        rows = self.conn.execute(
            """
            SELECT e.id, e.group_id, e.payer_id, e.amount, e.description,
                   e.created_at, e.updated_at, g.currency
            FROM expenses e
            JOIN groups g ON g.id = e.group_id
            WHERE e.group_id = ?
            ORDER BY e.created_at DESC, e.id DESC
            """,
            (group_id,),
        ).fetchall()
        return [self._row_to_expense(row) for row in rows]

    def update_expense(
        self, expense_id: int, amount: Money, description: str | None
    ) -> Expense:
        """Update an expense's amount and description."""
        self.conn.execute(
            """
            UPDATE expenses
            SET amount = ?, description = COALESCE(?, description), updated_at = ?
            WHERE id = ?
            """,
            (amount.amount, description, utcnow().isoformat(), expense_id),
        )
        expense = self.get_expense(expense_id)
        if expense is None:
            raise RuntimeError(f"Expense {expense_id} vanished during update")
        return expense

    def delete_expense(self, expense_id: int):
        """Delete an expense and, by cascade, its splits."""
        self.conn.execute("DELETE FROM expenses WHERE id = ?", (expense_id,))

    @staticmethod
    def _row_to_expense(row: sqlite3.Row) -> Expense:
        return Expense(
            id=row["id"],
            group_id=row["group_id"],
            payer_id=row["payer_id"],
            amount=Money(amount=row["amount"], currency=row["currency"]),
            description=row["description"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=_ts(row["updated_at"]),
        )

    # ========================================================================
    # Expense split operations
    # ========================================================================

    def insert_splits(self, expense_id: int, splits: list[ExpenseSplit]):
        """Insert the splits of an expense."""
        self.conn.executemany(
            """
            INSERT INTO expense_splits (expense_id, participant_id, share)
            VALUES (?, ?, ?)
            """,
            [(expense_id, s.participant_id, s.share.amount) for s in splits],
        )

    def get_splits(self, expense_id: int) -> list[ExpenseSplit]:
        """Get the splits of an expense."""
        rows = self.conn.execute(
            """
            SELECT s.expense_id, s.participant_id, s.share, g.currency
            FROM expense_splits s
            JOIN expenses e ON e.id = s.expense_id
            JOIN groups g ON g.id = e.group_id
            WHERE s.expense_id = ?
            ORDER BY s.id
            """,
            (expense_id,),
        ).fetchall()
        return [self._row_to_split(row) for row in rows]

    def list_group_splits(self, group_id: int) -> dict[int, list[ExpenseSplit]]:
        """All splits of a group keyed by expense id."""
        rows = self.conn.execute(
            """
            SELECT s.expense_id, s.participant_id, s.share, g.currency
            FROM expense_splits s
            JOIN expenses e ON e.id = s.expense_id
            JOIN groups g ON g.id = e.group_id
            WHERE e.group_id = ?
            ORDER BY s.expense_id, s.id
            """,
            (group_id,),
        ).fetchall()
        by_expense: dict[int, list[ExpenseSplit]] = {}
        for row in rows:
            by_expense.setdefault(row["expense_id"], []).append(self._row_to_split(row))
        return by_expense

    def delete_splits(self, expense_id: int):
        """Delete the splits of an expense."""
        self.conn.execute(
            "DELETE FROM expense_splits WHERE expense_id = ?", (expense_id,)
        )

    @staticmethod
    def _row_to_split(row: sqlite3.Row) -> ExpenseSplit:
        return ExpenseSplit(
            expense_id=row["expense_id"],
            participant_id=row["participant_id"],
            share=Money(amount=row["share"], currency=row["currency"]),
        )

    # ========================================================================
    # Balance operations
    # ========================================================================

    def get_balance_for_pair(self, group_id: int, a: int, b: int) -> Balance | None:
        """Get the balance row for an unordered pair, in whichever direction it is stored."""
        row = self.conn.execute(
            """
            SELECT b.group_id, b.debtor_id, b.creditor_id, b.amount, b.updated_at,
                   g.currency
            FROM balances b
            JOIN groups g ON g.id = b.group_id
            WHERE b.group_id = ?
              AND ((b.debtor_id = ? AND b.creditor_id = ?)
                OR (b.debtor_id = ? AND b.creditor_id = ?))
            """,
            (group_id, a, b, b, a),
        ).fetchone()
        return self._row_to_balance(row) if row else None

    def upsert_balance(self, group_id: int, debtor_id: int, creditor_id: int, amount: int):
        """Write the directed balance row debtor -> creditor."""
        updated_at = utcnow().isoformat()
        cursor = self.conn.execute(
            """
            UPDATE balances SET amount = ?, updated_at = ?
            WHERE group_id = ? AND debtor_id = ? AND creditor_id = ?
            """,
            (amount, updated_at, group_id, debtor_id, creditor_id),
        )
        if cursor.rowcount == 0:
            self.conn.execute(
                """
                INSERT INTO balances (group_id, debtor_id, creditor_id, amount, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (group_id, debtor_id, creditor_id, amount, updated_at),
            )

    def delete_balance_pair(self, group_id: int, a: int, b: int):
        """Delete the balance row for an unordered pair, in either direction."""
        self.conn.execute(
            """
            DELETE FROM balances
            WHERE group_id = ?
              AND ((debtor_id = ? AND creditor_id = ?)
                OR (debtor_id = ? AND creditor_id = ?))
            """,
            (group_id, a, b, b, a),
        )

    def list_balances(self, group_id: int) -> list[Balance]:
        """List every balance row of a group."""
        rows = self.conn.execute(
            """
            SELECT b.group_id, b.debtor_id, b.creditor_id, b.amount, b.updated_at,
                   g.currency
            FROM balances b
            JOIN groups g ON g.id = b.group_id
            WHERE b.group_id = ?
            ORDER BY b.debtor_id, b.creditor_id
            """,
            (group_id,),
        ).fetchall()
        return [self._row_to_balance(row) for row in rows]

    def list_user_balances(self, group_id: int, user_id: int) -> list[Balance]:
        """List the balance rows a user appears in, on either side."""
        rows = self.conn.execute(
            """
            SELECT b.group_id, b.debtor_id, b.creditor_id, b.amount, b.updated_at,
                   g.currency
            FROM balances b
            JOIN groups g ON g.id = b.group_id
            WHERE b.group_id = ? AND (b.debtor_id = ? OR b.creditor_id = ?)
            ORDER BY b.debtor_id, b.creditor_id
            """,
            (group_id, user_id, user_id),
        ).fetchall()
        return [self._row_to_balance(row) for row in rows]

    @staticmethod
    def _row_to_balance(row: sqlite3.Row) -> Balance:
        return Balance(
            group_id=row["group_id"],
            debtor_id=row["debtor_id"],
            creditor_id=row["creditor_id"],
            amount=Money(amount=row["amount"], currency=row["currency"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # ========================================================================
    # Settlement operations
    # ========================================================================

    def insert_settlement(
        self,
        group_id: int,
        from_id: int,
        to_id: int,
        amount: Money,
        status: SettlementStatus,
    ) -> Settlement:
        """Insert a settlement."""
        created_at = utcnow()
        completed_at = created_at if status is SettlementStatus.COMPLETED else None
        cursor = self.conn.execute(
            """
            INSERT INTO settlements (
                group_id, from_id, to_id, amount, status, created_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                group_id,
                from_id,
                to_id,
                amount.amount,
                status.value,
                created_at.isoformat(),
                completed_at.isoformat() if completed_at else None,
            ),
        )
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Failed to insert settlement")
        return Settlement(
            id=row_id,
            group_id=group_id,
            from_id=from_id,
            to_id=to_id,
            amount=amount,
            status=status,
            created_at=created_at,
            completed_at=completed_at,
        )

    def get_settlement(self, settlement_id: int) -> Settlement | None:
        """Get a settlement by id."""
        row = self.conn.execute(
            """
            SELECT s.id, s.group_id, s.from_id, s.to_id, s.amount, s.status,
                   s.created_at, s.completed_at, g.currency
            FROM settlements s
            JOIN groups g ON g.id = s.group_id
            WHERE s.id = ?
            """,
            (settlement_id,),
        ).fetchone()
        return self._row_to_settlement(row) if row else None

    def list_settlements(
        self, group_id: int, status: SettlementStatus | None = None
    ) -> list[Settlement]:
        """List the settlements of a group, newest first."""
        query = """
            SELECT s.id, s.group_id, s.from_id, s.to_id, s.amount, s.status,
                   s.created_at, s.completed_at, g.currency
            FROM settlements s
            JOIN groups g ON g.id = s.group_id
            WHERE s.group_id = ?
        """
        params: tuple = (group_id,)
        if status is not None:
            query += " AND s.status = ?"
            params = (group_id, status.value)
        query += " ORDER BY s.created_at DESC, s.id DESC"
        rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_settlement(row) for row in rows]

    def set_settlement_status(self, settlement_id: int, status: SettlementStatus) -> Settlement:
        """Move a settlement to a new status, stamping completed_at on completion."""
        completed_at = utcnow() if status is SettlementStatus.COMPLETED else None
        self.conn.execute(
            """
            UPDATE settlements
            SET status = ?, completed_at = COALESCE(?, completed_at)
            WHERE id = ?
            """,
            (
                status.value,
                completed_at.isoformat() if completed_at else None,
                settlement_id,
            ),
        )
        settlement = self.get_settlement(settlement_id)
        if settlement is None:
            raise RuntimeError(f"Settlement {settlement_id} vanished during update")
        return settlement

    @staticmethod
    def _row_to_settlement(row: sqlite3.Row) -> Settlement:
        return Settlement(
            id=row["id"],
            group_id=row["group_id"],
            from_id=row["from_id"],
            to_id=row["to_id"],
            amount=Money(amount=row["amount"], currency=row["currency"]),
            status=SettlementStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            completed_at=_ts(row["completed_at"]),
        )

    # ========================================================================
    # Debt netting operations
    # ========================================================================

    def insert_netting(
        self,
        group_id: int,
        settlement_id: int,
        debtor_id: int,
        creditor_id: int,
        amount: Money,
    ) -> DebtNetting:
        """Record debt cancelled around a cycle by a settlement."""
        cursor = self.conn.execute(
            """
            INSERT INTO debt_nettings (
                group_id, settlement_id, debtor_id, creditor_id, amount, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                group_id,
                settlement_id,
                debtor_id,
                creditor_id,
                amount.amount,
                utcnow().isoformat(),
            ),
        )
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Failed to insert debt netting")
        return DebtNetting(
            id=row_id,
            group_id=group_id,
            settlement_id=settlement_id,
            debtor_id=debtor_id,
            creditor_id=creditor_id,
            amount=amount,
        )

    def list_nettings(self, group_id: int) -> list[DebtNetting]:
        """List the debt nettings of a group in the order they were applied."""
        rows = self.conn.execute(
            """
            SELECT n.id, n.group_id, n.settlement_id, n.debtor_id, n.creditor_id,
                   n.amount, g.currency
            FROM debt_nettings n
            JOIN groups g ON g.id = n.group_id
            WHERE n.group_id = ?
            ORDER BY n.id
            """,
            (group_id,),
        ).fetchall()
        return [
            DebtNetting(
                id=row["id"],
                group_id=row["group_id"],
                settlement_id=row["settlement_id"],
                debtor_id=row["debtor_id"],
                creditor_id=row["creditor_id"],
                amount=Money(amount=row["amount"], currency=row["currency"]),
            )
            for row in rows
        ]
