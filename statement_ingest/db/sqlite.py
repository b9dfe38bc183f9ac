"""SQLite account/credit store for statement-ingest."""

import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path

from statement_ingest.config import settings

logger = logging.getLogger(__name__)

# SQL schema
SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    credit_balance INTEGER NOT NULL DEFAULT 0 CHECK (credit_balance >= 0),
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""

# Seconds a writer waits for the lock before giving up
BUSY_TIMEOUT = 30.0


class Database:
    """SQLite database manager for account credit balances."""

    def __init__(self, db_path: Path | str | None = None, default_balance: int | None = None):
        if db_path is None:
            settings.ensure_directories()
        self.db_path = db_path or settings.db_path
        self.default_balance = settings.default_credit_balance if default_balance is None else default_balance
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection. One per call, so threads never share one."""
        conn = sqlite3.connect(self.db_path, timeout=BUSY_TIMEOUT)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def ensure_account(self, account_id: str) -> None:
        """Create the account with the default balance if it doesn't exist."""
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO accounts (id, credit_balance) VALUES (?, ?)",
                (account_id, self.default_balance),
            )
            conn.commit()

    def get_credit_balance(self, account_id: str) -> int:
        """Current balance; unknown accounts are created with the default."""
        self.ensure_account(account_id)
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT credit_balance FROM accounts WHERE id = ?", (account_id,))
            return cursor.fetchone()["credit_balance"]

    def set_credit_balance(self, account_id: str, balance: int) -> None:
        """Overwrite an account's balance."""
        if balance < 0:
            raise ValueError("Credit balance cannot be negative")
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO accounts (id, credit_balance) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    credit_balance = excluded.credit_balance,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (account_id, balance),
            )
            conn.commit()

    def add_credits(self, account_id: str, amount: int) -> int:
        """Top up an account. Returns the new balance."""
        if amount <= 0:
            raise ValueError("Credit top-up must be positive")
        self.ensure_account(account_id)
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE accounts
                SET credit_balance = credit_balance + ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                RETURNING credit_balance
                """,
                (amount, account_id),
            )
            rows = cursor.fetchall()
            conn.commit()
            return rows[0]["credit_balance"]

    def try_debit_credit(self, account_id: str) -> int | None:
        """
        Atomically take one credit.

        The balance check and the decrement are a single conditional UPDATE,
        so concurrent callers can never drive the balance below zero.

        Returns:
            The new balance, or None if the account had no credit left
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE accounts
                SET credit_balance = credit_balance - 1, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND credit_balance >= 1
                RETURNING credit_balance
                """,
                (account_id,),
            )
            rows = cursor.fetchall()
            conn.commit()

        if not rows:
            return None
        return rows[0]["credit_balance"]


@lru_cache(maxsize=1)
def get_db() -> Database:
    """Shared database instance at the configured path."""
    return Database()
