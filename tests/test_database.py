"""Tests for database operations."""

import sqlite3
from datetime import date

import pytest

from conftest import ts, tx
from monobudget_mcp.database import MAX_BATCH_SIZE, Database
from monobudget_mcp.errors import StoreUnavailable, ValidationError
from monobudget_mcp.models import CustomCategory


class TestSchema:
    """Test schema creation."""

    def test_init_schema_creates_tables(self, db: Database):
        """All tables are created."""
        conn = db.connect()
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        }
        assert {
            "settings",
            "transactions",
            "transaction_comments",
            "excluded_transactions",
            "included_transactions",
            "daily_budgets",
            "custom_categories",
            "category_assignments",
        } <= tables

    def test_init_schema_idempotent(self, db: Database):
        """Creating the schema twice is harmless."""
        db.init_schema()
        db.init_schema()


class TestSettings:
    def test_roundtrip_raw(self, db: Database):
        """Settings are stored per user as text."""
        db.set_setting("u1", "financial_month_start", 5)
        assert db.get_setting("u1", "financial_month_start") == "5"
        assert db.get_setting("u2", "financial_month_start") is None

    def test_unknown_key_rejected(self, db: Database):
        """Only known setting keys are accepted."""
        with pytest.raises(ValidationError):
            db.set_setting("u1", "favourite_colour", "red")

    def test_typed_settings(self, db: Database):
        """Typed settings are decoded and the token is hidden."""
        db.set_setting("u1", "account_ids", ["a", "b"])
        db.set_setting("u1", "account_currencies", {"a": 980, "b": 840})
        db.set_setting("u1", "use_ai_budget", True)
        db.set_setting("u1", "last_sync_time", 1700000000)
        db.set_setting("u1", "mono_token", "secret")

        settings = db.get_user_settings("u1")
        assert settings.account_ids == ["a", "b"]
        assert settings.account_currencies == {"a": 980, "b": 840}
        assert settings.use_ai_budget is True
        assert settings.last_sync_time == 1700000000
        assert settings.financial_month_start == 1
        assert "secret" not in repr(settings)
        assert "encrypted_token" not in settings.model_dump()

    def test_defaults_for_new_user(self, db: Database):
        """A new user gets default settings."""
        settings = db.get_user_settings("nobody")
        assert settings.account_ids == []
        assert not settings.historical_data_loaded
        assert settings.last_sync_time is None


class TestTransactions:
    """Test transaction storage."""

    def test_save_and_read_newest_first(self, db: Database):
        """Transactions come back newest first."""
        db.save_transactions("u1", [tx("1", -100, ts(2024, 1, 1)), tx("2", -200, ts(2024, 1, 2))])
        stored = db.get_all_transactions("u1")
        assert [t.id for t in stored] == ["2", "1"]

    def test_upsert_by_id(self, db: Database):
        """Saving the same id replaces the row."""
        db.save_transactions("u1", [tx("1", -100, ts(2024, 1, 1))])
        db.save_transactions("u1", [tx("1", -150, ts(2024, 1, 1))])
        stored = db.get_all_transactions("u1")
        assert len(stored) == 1
        assert stored[0].amount == -150

    def test_users_are_isolated(self, db: Database):
        """Users do not see each other's transactions."""
        db.save_transactions("u1", [tx("1", -100, ts(2024, 1, 1))])
        db.save_transactions("u2", [tx("1", -999, ts(2024, 1, 1))])
        assert db.get_all_transactions("u1")[0].amount == -100
        assert db.count_transactions("u2") == 1

    def test_filters(self, db: Database):
        """Account and time filters narrow the result."""
        db.save_transactions("u1", [
            tx("1", -100, ts(2024, 1, 1), account_id="a"),
            tx("2", -100, ts(2024, 1, 5), account_id="b"),
            tx("3", -100, ts(2024, 1, 9), account_id="a"),
        ])
        assert [t.id for t in db.get_all_transactions("u1", account_id="a")] == ["3", "1"]
        assert [t.id for t in db.get_all_transactions("u1", from_time=ts(2024, 1, 2), to_time=ts(2024, 1, 8))] == ["2"]

    def test_batch_limit(self, db: Database):
        """Oversized batches are rejected."""
        batch = [tx(str(i), -1, ts(2024, 1, 1)) for i in range(MAX_BATCH_SIZE + 1)]
        with pytest.raises(ValidationError):
            db.save_transactions("u1", batch)

    def test_delete_after(self, db: Database):
        """Deleting after a time only touches the given account."""
        db.save_transactions("u1", [
            tx("1", -100, ts(2024, 1, 1), account_id="a"),
            tx("2", -100, ts(2024, 1, 5), account_id="a"),
            tx("3", -100, ts(2024, 1, 5), account_id="b"),
        ])
        assert db.delete_transactions_after("u1", ts(2024, 1, 3), account_id="a") == 1
        assert {t.id for t in db.get_all_transactions("u1")} == {"1", "3"}

    def test_replace_window(self, db: Database):
        """Replacing a window drops rows the bank no longer returns."""
        db.save_transactions("u1", [tx("1", -100, ts(2024, 1, 1)), tx("2", -100, ts(2024, 1, 5))])
        db.replace_transactions("u1", ts(2024, 1, 4), ts(2024, 1, 6), [tx("3", -300, ts(2024, 1, 5))])
        assert {t.id for t in db.get_all_transactions("u1")} == {"1", "3"}

    def test_comment_survives_resync(self, db: Database):
        """User comments survive a resync and can be cleared."""
        db.save_transactions("u1", [tx("1", -100, ts(2024, 1, 1))])
        db.update_transaction_comment("u1", "1", "Подарунок мамі")
        db.save_transactions("u1", [tx("1", -100, ts(2024, 1, 1))])
        assert db.get_all_transactions("u1")[0].comment == "Подарунок мамі"

        db.update_transaction_comment("u1", "1", None)
        assert db.get_all_transactions("u1")[0].comment is None


class TestOverrides:
    def test_excluded(self, db: Database):
        """Excluded ids can be added, removed and cleared."""
        db.add_excluded("u1", "1")
        db.add_excluded("u1", "1")
        db.add_excluded("u1", "2")
        assert db.get_excluded_ids("u1") == {"1", "2"}
        db.remove_excluded("u1", "1")
        assert db.get_excluded_ids("u1") == {"2"}
        db.clear_excluded("u1")
        assert db.get_excluded_ids("u1") == set()

    def test_included(self, db: Database):
        """Included ids are kept per user."""
        db.add_included("u1", "9")
        assert db.get_included_ids("u1") == {"9"}
        assert db.get_included_ids("u2") == set()

    def test_invalid_id(self, db: Database):
        """Over-long transaction ids are rejected."""
        with pytest.raises(ValidationError):
            db.add_excluded("u1", "x" * 101)

    def test_missing_table_reads_as_empty(self, db: Database):
        """A missing override or snapshot table reads as empty."""
        db.connect().execute("DROP TABLE excluded_transactions")
        db.connect().execute("DROP TABLE daily_budgets")
        assert db.get_excluded_ids("u1") == set()
        assert db.get_daily_budgets("u1", date(2024, 1, 1), date(2024, 1, 31)) == []

    def test_other_failures_raise(self, db: Database):
        """Other store errors are raised as StoreUnavailable."""
        db.close()
        db._conn = sqlite3.connect(":memory:")
        db._conn.close()
        with pytest.raises(StoreUnavailable):
            db.get_all_transactions("u1")


class TestDailyBudgets:
    def test_save_and_read(self, db: Database):
        """Snapshots come back ordered by date."""
        db.save_daily_budget("u1", date(2024, 1, 2), 1000, 500, 90000)
        db.save_daily_budget("u1", date(2024, 1, 1), 1200, 0, 91000)
        budgets = db.get_daily_budgets("u1", date(2024, 1, 1), date(2024, 1, 31))
        assert [b.date for b in budgets] == [date(2024, 1, 1), date(2024, 1, 2)]
        assert budgets[1].limit == 1000

    def test_preserve_existing(self, db: Database):
        """Without overwrite an existing snapshot is kept."""
        db.save_daily_budget("u1", date(2024, 1, 1), 1000, 0, 0)
        assert db.save_daily_budget("u1", date(2024, 1, 1), 5000, 0, 0, overwrite=False) is False
        assert db.get_daily_budgets("u1", date(2024, 1, 1), date(2024, 1, 1))[0].limit == 1000

    def test_overwrite(self, db: Database):
        """Overwrite replaces an existing snapshot."""
        db.save_daily_budget("u1", date(2024, 1, 1), 1000, 0, 0)
        assert db.save_daily_budget("u1", date(2024, 1, 1), 5000, 100, 0) is True
        assert db.get_daily_budgets("u1", date(2024, 1, 1), date(2024, 1, 1))[0].limit == 5000


class TestCategories:
    def test_custom_category_crud(self, db: Database):
        """Deleting a custom category removes its assignments."""
        db.save_custom_category("u1", CustomCategory(id="cat_1", name="Хобі", icon="🎨"))
        db.set_category_assignment("u1", "tx1", "cat_1")
        assert [c.id for c in db.get_custom_categories("u1")] == ["cat_1"]
        assert db.get_category_assignments("u1") == {"tx1": "cat_1"}

        assert db.delete_custom_category("u1", "cat_1") == 1
        assert db.get_custom_categories("u1") == []
        assert db.get_category_assignments("u1") == {}

    def test_remove_assignment(self, db: Database):
        """Assigning None removes the assignment."""
        db.set_category_assignment("u1", "tx1", "groceries")
        db.set_category_assignment("u1", "tx1", None)
        assert db.get_category_assignments("u1") == {}
