"""SQLite transaction store for txbot."""

import logging
import sqlite3
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Any

from txbot.config import settings
from txbot.errors import InvalidField, StorageFailure
from txbot.models import Transaction, TransactionSource, TransactionType, utc_now_iso

logger = logging.getLogger(__name__)

MERCHANT_DATE_INDEX = "idx_transactions_merchant_date"

# Fields an update may touch; identity, provenance and stamps are fixed
UPDATABLE_COLUMNS = ("amount", "date", "merchant", "category", "type", "description", "status")

# SQL schema
SCHEMA = """
CREATE TABLE IF NOT EXISTS transactions (
    user_id TEXT NOT NULL,
    transaction_id TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    amount REAL NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USD',
    date TEXT NOT NULL,
    merchant TEXT NOT NULL,
    category TEXT NOT NULL,
    type TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    source TEXT NOT NULL,
    raw_text TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, transaction_id)
);

CREATE INDEX IF NOT EXISTS idx_transactions_user_timestamp ON transactions(user_id, timestamp DESC);
"""

MERCHANT_DATE_INDEX_SQL = f"CREATE INDEX IF NOT EXISTS {MERCHANT_DATE_INDEX} ON transactions(merchant, date)"

COLUMNS = """
    user_id, transaction_id, timestamp, amount, currency, date, merchant,
    category, type, description, source, raw_text, status, created_at, updated_at
"""


def _to_column(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    return value


class TransactionStore:
    """Keyed transaction storage on SQLite, keyed by (user_id, transaction_id)."""

    def __init__(
        self,
        db_path: Path | str | None = None,
        create_merchant_date_index: bool = True,
        timeout: float | None = None,
    ):
        self.db_path = db_path or settings.db_path
        self.timeout = timeout if timeout is not None else settings.db_timeout_seconds
        if db_path is None:
            settings.ensure_directories()
        self._init_db(create_merchant_date_index)

    def _init_db(self, create_merchant_date_index: bool) -> None:
        """Initialize the database schema."""
        with self._operation("initialize the transaction store") as conn:
            conn.executescript(SCHEMA)
            if create_merchant_date_index:
                conn.execute(MERCHANT_DATE_INDEX_SQL)
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _operation(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Open a connection and wrap backend errors as StorageFailure."""
        try:
            with self._get_connection() as conn:
                yield conn
        except sqlite3.Error as e:
            logger.error(f"Storage error during '{operation}': {e}")
            raise StorageFailure(operation, cause=e) from e

    @property
    def has_merchant_date_index(self) -> bool:
        """Whether the (merchant, date) index exists in the database."""
        with self._operation("inspect indexes") as conn:
            cursor = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ?",
                (MERCHANT_DATE_INDEX,),
            )
            return cursor.fetchone() is not None

    def put(self, transaction: Transaction) -> Transaction:
        """Insert a new transaction. The key must not already exist."""
        with self._operation("create transaction") as conn:
            conn.execute(
                f"""
                INSERT INTO transactions ({COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    transaction.user_id,
                    transaction.transaction_id,
                    transaction.timestamp,
                    transaction.amount,
                    transaction.currency,
                    transaction.date.isoformat(),
                    transaction.merchant,
                    transaction.category,
                    transaction.type.value,
                    transaction.description,
                    transaction.source.value,
                    transaction.raw_text,
                    transaction.status,
                    transaction.created_at,
                    transaction.updated_at,
                ),
            )
            conn.commit()
        logger.info(f"Transaction created: {transaction.transaction_id}")
        return transaction

    def get(self, user_id: str, transaction_id: str) -> Transaction | None:
        """Get a single transaction by key."""
        with self._operation("get transaction") as conn:
            cursor = conn.execute(
                f"SELECT {COLUMNS} FROM transactions WHERE user_id = ? AND transaction_id = ?",
                (user_id, transaction_id),
            )
            row = cursor.fetchone()
            return self._row_to_transaction(row) if row else None

    def list_by_user(self, user_id: str, limit: int = 100) -> list[Transaction]:
        """Get a user's transactions, newest first."""
        with self._operation("get user transactions") as conn:
            cursor = conn.execute(
                f"""
                SELECT {COLUMNS} FROM transactions
                WHERE user_id = ?
                ORDER BY timestamp DESC, rowid DESC
                LIMIT ?
                """,
                (user_id, limit),
            )
            return [self._row_to_transaction(row) for row in cursor.fetchall()]

    def list_by_date_range(self, user_id: str, start_date: date, end_date: date) -> list[Transaction]:
        """Get a user's transactions dated within [start_date, end_date], latest date first."""
        with self._operation("get transactions by date range") as conn:
            cursor = conn.execute(
                f"""
                SELECT {COLUMNS} FROM transactions
                WHERE user_id = ? AND date BETWEEN ? AND ?
                ORDER BY date DESC, timestamp DESC
                """,
                (user_id, start_date.isoformat(), end_date.isoformat()),
            )
            return [self._row_to_transaction(row) for row in cursor.fetchall()]

    def find_by_merchant_and_date(self, merchant: str, txn_date: date) -> list[Transaction]:
        """Look up transactions of any user through the (merchant, date) index."""
        with self._operation("check for duplicates") as conn:
            cursor = conn.execute(
                f"""
                SELECT {COLUMNS} FROM transactions INDEXED BY {MERCHANT_DATE_INDEX}
                WHERE merchant = ? AND date = ?
                """,
                (merchant, txn_date.isoformat()),
            )
            return [self._row_to_transaction(row) for row in cursor.fetchall()]

    def scan_by_merchant_and_date(
        self, merchant: str, txn_date: date, user_id: str | None = None
    ) -> list[Transaction]:
        """Full-table scan for (merchant, date), optionally restricted to one user."""
        query = f"SELECT {COLUMNS} FROM transactions NOT INDEXED WHERE merchant = ? AND date = ?"
        params: list = [merchant, txn_date.isoformat()]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)

        with self._operation("check for duplicates (scan)") as conn:
            cursor = conn.execute(query, params)
            return [self._row_to_transaction(row) for row in cursor.fetchall()]

    def update(self, user_id: str, transaction_id: str, updates: dict[str, Any]) -> Transaction | None:
        """
        Update mutable fields of a transaction.

        Only allow-listed fields are written and updated_at is always
        refreshed. Returns None if the transaction does not exist.

        Raises:
            InvalidField: If no allowed field is present in updates
        """
        fields = {key: _to_column(value) for key, value in updates.items() if key in UPDATABLE_COLUMNS}
        if not fields:
            raise InvalidField("updates", "No valid fields to update")

        fields["updated_at"] = utc_now_iso()
        assignments = ", ".join(f"{column} = ?" for column in fields)

        with self._operation("update transaction") as conn:
            cursor = conn.execute(
                f"UPDATE transactions SET {assignments} WHERE user_id = ? AND transaction_id = ?",
                [*fields.values(), user_id, transaction_id],
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None

        logger.info(f"Transaction updated: {transaction_id}")
        return self.get(user_id, transaction_id)

    def delete(self, user_id: str, transaction_id: str) -> bool:
        """Delete a transaction. Returns True if a row was removed."""
        with self._operation("delete transaction") as conn:
            cursor = conn.execute(
                "DELETE FROM transactions WHERE user_id = ? AND transaction_id = ?",
                (user_id, transaction_id),
            )
            conn.commit()
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Transaction deleted: {transaction_id}")
        return deleted

    def count_transactions(self) -> int:
        """Get total number of transactions."""
        with self._operation("count transactions") as conn:
            cursor = conn.execute("SELECT COUNT(*) as count FROM transactions")
            return cursor.fetchone()["count"]

    def _row_to_transaction(self, row: sqlite3.Row) -> Transaction:
        """Convert a database row to a Transaction model."""
        return Transaction(
            user_id=row["user_id"],
            transaction_id=row["transaction_id"],
            timestamp=row["timestamp"],
            amount=row["amount"],
            currency=row["currency"],
            date=date.fromisoformat(row["date"]),
            merchant=row["merchant"],
            category=row["category"],
            type=TransactionType(row["type"]),
            description=row["description"],
            source=TransactionSource(row["source"]),
            raw_text=row["raw_text"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
