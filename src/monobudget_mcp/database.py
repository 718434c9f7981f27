"""SQLite schema and per-user CRUD operations for the transaction store."""

import functools
import json
import logging
import sqlite3
from collections.abc import Iterable
from datetime import date, datetime
from pathlib import Path
from typing import Any

from .errors import StoreUnavailable, ValidationError
from .models import CustomCategory, StoredDailyBudget, Transaction, UserSettings

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 10000
MAX_SETTING_LENGTH = 10000

SETTING_KEYS = frozenset({
    "account_ids",
    "account_currencies",
    "financial_month_start",
    "use_ai_budget",
    "last_sync_time",
    "historical_data_loaded",
    "historical_from_time",
    "historical_to_time",
    "account_balance",
    "account_currency",
    "mono_token",
})

SCHEMA = """
CREATE TABLE IF NOT EXISTS settings (
    user_id TEXT NOT NULL,
    key     TEXT NOT NULL,
    value   TEXT,
    PRIMARY KEY (user_id, key)
);

CREATE TABLE IF NOT EXISTS transactions (
    user_id          TEXT NOT NULL,
    id               TEXT NOT NULL,
    account_id       TEXT,
    time             INTEGER NOT NULL,   -- unix seconds
    description      TEXT,
    mcc              INTEGER,
    amount           INTEGER NOT NULL,   -- minor units, negative = expense
    balance          INTEGER,
    cashback_amount  INTEGER DEFAULT 0,
    currency_code    INTEGER DEFAULT 980,
    comment          TEXT,               -- comment from the bank
    PRIMARY KEY (user_id, id)
);

-- User-entered comments survive re-syncs of the same transaction
CREATE TABLE IF NOT EXISTS transaction_comments (
    user_id         TEXT NOT NULL,
    transaction_id  TEXT NOT NULL,
    comment         TEXT NOT NULL,
    PRIMARY KEY (user_id, transaction_id)
);

CREATE TABLE IF NOT EXISTS excluded_transactions (
    user_id  TEXT NOT NULL,
    id       TEXT NOT NULL,
    PRIMARY KEY (user_id, id)
);

CREATE TABLE IF NOT EXISTS included_transactions (
    user_id  TEXT NOT NULL,
    id       TEXT NOT NULL,
    PRIMARY KEY (user_id, id)
);

CREATE TABLE IF NOT EXISTS daily_budgets (
    user_id       TEXT NOT NULL,
    date          TEXT NOT NULL,     -- 'YYYY-MM-DD'
    limit_amount  INTEGER NOT NULL,
    spent         INTEGER NOT NULL,
    balance       INTEGER NOT NULL,
    created_at    TEXT,
    updated_at    TEXT,
    PRIMARY KEY (user_id, date)
);

CREATE TABLE IF NOT EXISTS custom_categories (
    user_id  TEXT NOT NULL,
    id       TEXT NOT NULL,
    name     TEXT NOT NULL,
    icon     TEXT,
    color    TEXT,
    PRIMARY KEY (user_id, id)
);

CREATE TABLE IF NOT EXISTS category_assignments (
    user_id         TEXT NOT NULL,
    transaction_id  TEXT NOT NULL,
    category_key    TEXT NOT NULL,
    PRIMARY KEY (user_id, transaction_id)
);
"""

INDEXES = """
CREATE INDEX IF NOT EXISTS idx_tx_user_time ON transactions(user_id, time);
CREATE INDEX IF NOT EXISTS idx_tx_user_account ON transactions(user_id, account_id);
CREATE INDEX IF NOT EXISTS idx_daily_budgets_date ON daily_budgets(user_id, date);
"""


def _is_missing_table(error: sqlite3.Error) -> bool:
    return isinstance(error, sqlite3.OperationalError) and "no such table" in str(error)


def _store_operation(method):
    """Report sqlite failures as StoreUnavailable."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"{method.__name__} failed: {e}") from e

    return wrapper


class Database:
    """SQLite database wrapper for per-user transaction storage."""

    def __init__(self, db_path: str | Path | None = None):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite file, or None/":memory:" for in-memory DB.
        """
        if db_path is None:
            db_path = ":memory:"
        self.db_path = str(db_path)
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            try:
                self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            except sqlite3.Error as e:
                raise StoreUnavailable(f"Cannot open database {self.db_path}: {e}") from e
            self._conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency (only for file-based DBs)
            if self.db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    def close(self) -> None:
        """Close database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @_store_operation
    def init_schema(self) -> None:
        """Create all tables and indexes."""
        conn = self.connect()
        conn.executescript(SCHEMA)
        conn.executescript(INDEXES)
        conn.commit()

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    @_store_operation
    def get_setting(self, user_id: str, key: str) -> str | None:
        """Get a raw setting value."""
        conn = self.connect()
        row = conn.execute(
            "SELECT value FROM settings WHERE user_id = ? AND key = ?", (user_id, key)
        ).fetchone()
        return row["value"] if row else None

    @_store_operation
    def set_setting(self, user_id: str, key: str, value: Any) -> None:
        """Set a setting; non-string values are stored as JSON."""
        if key not in SETTING_KEYS:
            raise ValidationError(f"Unknown setting: {key}")
        if value is not None and not isinstance(value, str):
            value = json.dumps(value)
        if value is not None and len(value) > MAX_SETTING_LENGTH:
            raise ValidationError(f"Setting {key} is too long")

        conn = self.connect()
        conn.execute(
            "INSERT OR REPLACE INTO settings (user_id, key, value) VALUES (?, ?, ?)",
            (user_id, key, value),
        )
        conn.commit()

    @_store_operation
    def delete_setting(self, user_id: str, key: str) -> None:
        """Remove a setting."""
        conn = self.connect()
        conn.execute("DELETE FROM settings WHERE user_id = ? AND key = ?", (user_id, key))
        conn.commit()

    @_store_operation
    def get_all_settings(self, user_id: str) -> dict[str, str]:
        """All raw settings of a user."""
        conn = self.connect()
        rows = conn.execute("SELECT key, value FROM settings WHERE user_id = ?", (user_id,)).fetchall()
        return {row["key"]: row["value"] for row in rows}

    def get_user_settings(self, user_id: str) -> UserSettings:
        """Typed view of the user's settings."""
        raw = self.get_all_settings(user_id)

        def _json(key: str, default: Any) -> Any:
            value = raw.get(key)
            if value is None:
                return default
            try:
                return json.loads(value)
            except ValueError:
                return default

        def _int(key: str) -> int | None:
            value = raw.get(key)
            return int(value) if value not in (None, "", "null") else None

        return UserSettings(
            account_ids=_json("account_ids", []),
            account_currencies=_json("account_currencies", {}),
            financial_month_start=_int("financial_month_start") or 1,
            use_ai_budget=_json("use_ai_budget", False),
            last_sync_time=_int("last_sync_time"),
            historical_data_loaded=_json("historical_data_loaded", False),
            historical_from_time=_int("historical_from_time"),
            historical_to_time=_int("historical_to_time"),
            encrypted_token=raw.get("mono_token"),
        )

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @_store_operation
    def save_transactions(self, user_id: str, transactions: Iterable[Transaction]) -> int:
        """Upsert transactions by id."""
        transactions = list(transactions)
        if len(transactions) > MAX_BATCH_SIZE:
            raise ValidationError(f"Too many transactions in one batch: {len(transactions)}")

        conn = self.connect()
        with conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO transactions
                (user_id, id, account_id, time, description, mcc, amount, balance,
                 cashback_amount, currency_code, comment)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        user_id,
                        tx.id,
                        tx.account_id,
                        tx.time,
                        tx.description,
                        tx.mcc,
                        tx.amount,
                        tx.balance,
                        tx.cashback_amount,
                        tx.currency_code,
                        tx.comment,
                    )
                    for tx in transactions
                ],
            )
        return len(transactions)

    @_store_operation
    def get_all_transactions(
        self,
        user_id: str,
        account_id: str | None = None,
        from_time: int | None = None,
        to_time: int | None = None,
    ) -> list[Transaction]:
        """Transactions of a user, newest first."""
        query = """
            SELECT t.*, c.comment AS user_comment
            FROM transactions t
            LEFT JOIN transaction_comments c
              ON c.user_id = t.user_id AND c.transaction_id = t.id
            WHERE t.user_id = ?
        """
        params: list[Any] = [user_id]
        if account_id is not None:
            query += " AND t.account_id = ?"
            params.append(account_id)
        if from_time is not None:
            query += " AND t.time >= ?"
            params.append(from_time)
        if to_time is not None:
            query += " AND t.time <= ?"
            params.append(to_time)
        query += " ORDER BY t.time DESC"

        conn = self.connect()
        rows = conn.execute(query, params).fetchall()
        return [
            Transaction(
                id=row["id"],
                account_id=row["account_id"],
                time=row["time"],
                description=row["description"] or "",
                mcc=row["mcc"] or 0,
                amount=row["amount"],
                balance=row["balance"] or 0,
                cashback_amount=row["cashback_amount"] or 0,
                currency_code=row["currency_code"] or 980,
                comment=row["user_comment"] if row["user_comment"] is not None else row["comment"],
            )
            for row in rows
        ]

    @_store_operation
    def delete_transactions_after(self, user_id: str, timestamp: int, account_id: str | None = None) -> int:
        """Delete transactions with time >= timestamp."""
        return self.delete_transactions_between(user_id, timestamp, None, account_id)

    @_store_operation
    def delete_transactions_between(
        self,
        user_id: str,
        from_time: int,
        to_time: int | None = None,
        account_id: str | None = None,
    ) -> int:
        """Delete transactions inside [from_time, to_time], optionally for one account."""
        query = "DELETE FROM transactions WHERE user_id = ? AND time >= ?"
        params: list[Any] = [user_id, from_time]
        if to_time is not None:
            query += " AND time <= ?"
            params.append(to_time)
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)

        conn = self.connect()
        cursor = conn.execute(query, params)
        conn.commit()
        return cursor.rowcount

    @_store_operation
    def replace_transactions(
        self,
        user_id: str,
        from_time: int,
        to_time: int,
        transactions: Iterable[Transaction],
        account_id: str | None = None,
    ) -> int:
        """Delete a window and insert its fresh contents in one commit."""
        transactions = list(transactions)
        if len(transactions) > MAX_BATCH_SIZE:
            raise ValidationError(f"Too many transactions in one batch: {len(transactions)}")

        query = "DELETE FROM transactions WHERE user_id = ? AND time >= ? AND time <= ?"
        params: list[Any] = [user_id, from_time, to_time]
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)

        conn = self.connect()
        with conn:
            conn.execute(query, params)
            conn.executemany(
                """
                INSERT OR REPLACE INTO transactions
                (user_id, id, account_id, time, description, mcc, amount, balance,
                 cashback_amount, currency_code, comment)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        user_id, tx.id, tx.account_id, tx.time, tx.description, tx.mcc,
                        tx.amount, tx.balance, tx.cashback_amount, tx.currency_code, tx.comment,
                    )
                    for tx in transactions
                ],
            )
        return len(transactions)

    @_store_operation
    def count_transactions(self, user_id: str) -> int:
        """Count stored transactions of a user."""
        conn = self.connect()
        row = conn.execute(
            "SELECT COUNT(*) AS cnt FROM transactions WHERE user_id = ?", (user_id,)
        ).fetchone()
        return row["cnt"]

    @_store_operation
    def update_transaction_comment(self, user_id: str, transaction_id: str, comment: str | None) -> None:
        """Set or clear the user comment of a transaction."""
        if comment is not None and len(comment) > 1000:
            raise ValidationError("Comment is too long")

        conn = self.connect()
        if comment:
            conn.execute(
                """
                INSERT OR REPLACE INTO transaction_comments (user_id, transaction_id, comment)
                VALUES (?, ?, ?)
                """,
                (user_id, transaction_id, comment),
            )
        else:
            conn.execute(
                "DELETE FROM transaction_comments WHERE user_id = ? AND transaction_id = ?",
                (user_id, transaction_id),
            )
        conn.commit()

    # -------------------------------------------------------------------------
    # Excluded / included overrides
    # -------------------------------------------------------------------------

    def _get_id_set(self, table: str, user_id: str) -> set[str]:
        conn = self.connect()
        try:
            rows = conn.execute(
                f"SELECT id FROM {table} WHERE user_id = ?", (user_id,)  # noqa: S608
            ).fetchall()
        except sqlite3.Error as e:
            if _is_missing_table(e):
                # Not provisioned yet: an empty override list
                logger.warning("Table %s does not exist yet", table)
                return set()
            raise StoreUnavailable(f"Reading {table} failed: {e}") from e
        return {row["id"] for row in rows}

    @_store_operation
    def _add_id(self, table: str, user_id: str, transaction_id: str) -> None:
        if not transaction_id or len(transaction_id) > 100:
            raise ValidationError("Invalid transaction id")
        conn = self.connect()
        conn.execute(
            f"INSERT OR IGNORE INTO {table} (user_id, id) VALUES (?, ?)",  # noqa: S608
            (user_id, transaction_id),
        )
        conn.commit()

    @_store_operation
    def _remove_id(self, table: str, user_id: str, transaction_id: str | None = None) -> None:
        conn = self.connect()
        if transaction_id is None:
            conn.execute(f"DELETE FROM {table} WHERE user_id = ?", (user_id,))  # noqa: S608
        else:
            conn.execute(
                f"DELETE FROM {table} WHERE user_id = ? AND id = ?",  # noqa: S608
                (user_id, transaction_id),
            )
        conn.commit()

    def get_excluded_ids(self, user_id: str) -> set[str]:
        """Transaction ids manually excluded from spending."""
        return self._get_id_set("excluded_transactions", user_id)

    def add_excluded(self, user_id: str, transaction_id: str) -> None:
        self._add_id("excluded_transactions", user_id, transaction_id)

    def remove_excluded(self, user_id: str, transaction_id: str) -> None:
        self._remove_id("excluded_transactions", user_id, transaction_id)

    def clear_excluded(self, user_id: str) -> None:
        self._remove_id("excluded_transactions", user_id)

    def get_included_ids(self, user_id: str) -> set[str]:
        """Transaction ids manually included despite auto-exclusion."""
        return self._get_id_set("included_transactions", user_id)

    def add_included(self, user_id: str, transaction_id: str) -> None:
        self._add_id("included_transactions", user_id, transaction_id)

    def remove_included(self, user_id: str, transaction_id: str) -> None:
        self._remove_id("included_transactions", user_id, transaction_id)

    def clear_included(self, user_id: str) -> None:
        self._remove_id("included_transactions", user_id)

    # -------------------------------------------------------------------------
    # Daily budget snapshots
    # -------------------------------------------------------------------------

    def get_daily_budgets(self, user_id: str, from_date: date, to_date: date) -> list[StoredDailyBudget]:
        """Stored daily budgets within [from_date, to_date], oldest first."""
        conn = self.connect()
        try:
            rows = conn.execute(
                """
                SELECT date, limit_amount, spent, balance FROM daily_budgets
                WHERE user_id = ? AND date >= ? AND date <= ?
                ORDER BY date
                """,
                (user_id, from_date.isoformat(), to_date.isoformat()),
            ).fetchall()
        except sqlite3.Error as e:
            if _is_missing_table(e):
                logger.warning("Table daily_budgets does not exist yet")
                return []
            raise StoreUnavailable(f"Reading daily budgets failed: {e}") from e

        return [
            StoredDailyBudget(
                date=date.fromisoformat(row["date"]),
                limit=row["limit_amount"],
                spent=row["spent"],
                balance=row["balance"],
            )
            for row in rows
        ]

    @_store_operation
    def save_daily_budget(
        self,
        user_id: str,
        day: date,
        limit: int,
        spent: int,
        balance: int,
        overwrite: bool = True,
    ) -> bool:
        """Save a day's snapshot.

        With overwrite=False an existing snapshot for the day is kept.

        Returns:
            True if the row was written.
        """
        now = datetime.now().isoformat(timespec="seconds")
        conn = self.connect()
        if overwrite:
            cursor = conn.execute(
                """
                INSERT INTO daily_budgets
                (user_id, date, limit_amount, spent, balance, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, date) DO UPDATE SET
                    limit_amount = excluded.limit_amount,
                    spent = excluded.spent,
                    balance = excluded.balance,
                    updated_at = excluded.updated_at
                """,
                (user_id, day.isoformat(), limit, spent, balance, now, now),
            )
        else:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO daily_budgets
                (user_id, date, limit_amount, spent, balance, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (user_id, day.isoformat(), limit, spent, balance, now, now),
            )
        conn.commit()
        return cursor.rowcount > 0

    @_store_operation
    def delete_daily_budgets_after(self, user_id: str, day: date) -> int:
        """Delete snapshots on or after day."""
        conn = self.connect()
        cursor = conn.execute(
            "DELETE FROM daily_budgets WHERE user_id = ? AND date >= ?", (user_id, day.isoformat())
        )
        conn.commit()
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    def get_custom_categories(self, user_id: str) -> list[CustomCategory]:
        """User-defined categories."""
        conn = self.connect()
        try:
            rows = conn.execute(
                "SELECT id, name, icon, color FROM custom_categories WHERE user_id = ? ORDER BY name",
                (user_id,),
            ).fetchall()
        except sqlite3.Error as e:
            if _is_missing_table(e):
                logger.warning("Table custom_categories does not exist yet")
                return []
            raise StoreUnavailable(f"Reading custom categories failed: {e}") from e
        return [
            CustomCategory(id=row["id"], name=row["name"], icon=row["icon"], color=row["color"])
            for row in rows
        ]

    @_store_operation
    def save_custom_category(self, user_id: str, category: CustomCategory) -> None:
        """Create or update a custom category."""
        conn = self.connect()
        conn.execute(
            "INSERT OR REPLACE INTO custom_categories (user_id, id, name, icon, color) VALUES (?, ?, ?, ?, ?)",
            (user_id, category.id, category.name, category.icon, category.color),
        )
        conn.commit()

    @_store_operation
    def delete_custom_category(self, user_id: str, category_id: str) -> int:
        """Delete a custom category and assignments pointing at it."""
        conn = self.connect()
        with conn:
            conn.execute(
                "DELETE FROM category_assignments WHERE user_id = ? AND category_key = ?",
                (user_id, category_id),
            )
            cursor = conn.execute(
                "DELETE FROM custom_categories WHERE user_id = ? AND id = ?", (user_id, category_id)
            )
        return cursor.rowcount

    def get_category_assignments(self, user_id: str) -> dict[str, str]:
        """Manual transaction id -> category key overrides."""
        conn = self.connect()
        try:
            rows = conn.execute(
                "SELECT transaction_id, category_key FROM category_assignments WHERE user_id = ?",
                (user_id,),
            ).fetchall()
        except sqlite3.Error as e:
            if _is_missing_table(e):
                logger.warning("Table category_assignments does not exist yet")
                return {}
            raise StoreUnavailable(f"Reading category assignments failed: {e}") from e
        return {row["transaction_id"]: row["category_key"] for row in rows}

    @_store_operation
    def set_category_assignment(self, user_id: str, transaction_id: str, category_key: str | None) -> None:
        """Assign a category to a transaction; None removes the override."""
        conn = self.connect()
        if category_key:
            conn.execute(
                """
                INSERT OR REPLACE INTO category_assignments (user_id, transaction_id, category_key)
                VALUES (?, ?, ?)
                """,
                (user_id, transaction_id, category_key),
            )
        else:
            conn.execute(
                "DELETE FROM category_assignments WHERE user_id = ? AND transaction_id = ?",
                (user_id, transaction_id),
            )
        conn.commit()
