"""Tests for reporting functions."""

from datetime import date

import pytest

from conftest import FakeMonobankClient, ts, tx
from monobudget_mcp.analytics import (
    analyze_day_of_week,
    calculate_burn_rate,
    calculate_category_budgets,
    calculate_kpis,
    compare_periods,
    get_spending_by_category,
    get_sync_status,
    predict_balance,
)
from monobudget_mcp.models import CustomCategory


class TestSpendingByCategory:
    def test_groups_and_sorts(self):
        """Expenses are grouped by category and sorted by amount."""
        transactions = [
            tx("1", -3000, ts(2024, 3, 1), "ФОП", mcc=5411),
            tx("2", -1000, ts(2024, 3, 2), "ФОП", mcc=5411),
            tx("3", -6000, ts(2024, 3, 3), "ФОП", mcc=5812),
            tx("4", 50000, ts(2024, 3, 3), "Зарплата"),
            tx("5", -9999, ts(2024, 3, 4), "Банкомат"),
        ]
        result = get_spending_by_category(transactions)

        assert result["total"] == 10000
        assert [c["key"] for c in result["categories"]] == ["restaurants", "groceries"]
        assert result["categories"][1]["count"] == 2
        assert result["categories"][0]["percentage"] == 60.0

    def test_custom_and_top_n(self):
        """Custom categories are reported and top_n limits the list."""
        transactions = [
            tx("1", -3000, ts(2024, 3, 1), "ФОП", mcc=5411),
            tx("2", -1000, ts(2024, 3, 2), "ФОП", mcc=5812),
        ]
        custom = [CustomCategory(id="cat_1", name="Хобі")]
        result = get_spending_by_category(transactions, {"2": "cat_1"}, custom, top_n=1)

        assert len(result["categories"]) == 1
        assert result["total"] == 4000

        result = get_spending_by_category(transactions, {"2": "cat_1"}, custom)
        assert result["categories"][1]["name"] == "Хобі"
        assert result["categories"][1]["is_custom"]

    def test_dangling_assignment_goes_to_other(self):
        """An assignment to a deleted category counts as other."""
        transactions = [tx("1", -3000, ts(2024, 3, 1), "ФОП", mcc=5411)]
        result = get_spending_by_category(transactions, {"1": "cat_gone"})
        assert result["categories"][0]["key"] == "other"

    def test_empty(self):
        """No transactions give an empty breakdown."""
        assert get_spending_by_category([]) == {"total": 0, "categories": []}


class TestBurnRate:
    def test_healthy(self):
        """Spending under the daily limit is healthy."""
        result = calculate_burn_rate(50000, 30, 10, 300000, [5000, 5000])
        assert result["daily_limit"] == 10000
        assert result["actual_daily_spent"] == 5000
        assert result["burn_rate"] == 50.0
        assert result["days_remaining"] == 20
        assert result["status"] == "healthy"
        assert result["trend"] == "stable"

    def test_critical_and_accelerating(self):
        """Spending far over the limit with a rising trend is critical."""
        result = calculate_burn_rate(150000, 30, 10, 300000, [10000, 20000])
        assert result["burn_rate"] == 150.0
        assert result["status"] == "critical"
        assert result["trend"] == "accelerating"

    def test_zero_budget_does_not_divide_by_zero(self):
        """A zero budget does not divide by zero."""
        result = calculate_burn_rate(0, 30, 0, 0)
        assert result["burn_rate"] == 0.0


class TestPredictBalance:
    def test_projection(self):
        """The net monthly burn drives the yearly projection."""
        transactions = [
            tx("1", -30000, ts(2024, 3, 1)),
            tx("2", -30000, ts(2024, 3, 11)),
        ]
        result = predict_balance(transactions, 180000, today=date(2024, 3, 15))

        # 60000 over 10 days = 180000 per 30-day month
        assert result["monthly_burn_rate"] == 180000
        assert result["months_until_zero"] == 1.0
        assert result["yearly_projection"][0] == {"month": "2024-03", "balance": 180000}
        assert result["yearly_projection"][1]["balance"] == 0
        assert len(result["yearly_projection"]) == 12

    def test_net_saver_never_runs_out(self):
        """Income above expenses never runs the balance out."""
        transactions = [tx("1", -1000, ts(2024, 3, 1)), tx("2", 100000, ts(2024, 3, 5), "Зарплата")]
        result = predict_balance(transactions, 50000, today=date(2024, 3, 15))
        assert result["months_until_zero"] is None
        assert result["predicted_balance"] > 50000


class TestComparePeriods:
    def test_increase(self):
        """Spending above the previous period is an upward change."""
        assert compare_periods(110, 100) == {"change": 10.0, "direction": "up", "is_increase": True}

    def test_decrease(self):
        """Spending below the previous period is a downward change."""
        assert compare_periods(80, 100) == {"change": -20.0, "direction": "down", "is_increase": False}

    def test_small_change_is_stable(self):
        """Changes under one percent keep the direction stable."""
        result = compare_periods(1005, 1000)
        assert result["direction"] == "stable"
        assert result["change"] == 0.5

    def test_no_previous_spending(self):
        """Nothing to compare against without previous spending."""
        assert compare_periods(5000, 0) == {"change": 0.0, "direction": "stable", "is_increase": False}


class TestKPIs:
    def test_month_kpis(self):
        """Savings rate, average over spending days and best/worst days."""
        daily = [(date(2024, 3, 4), 3000), (date(2024, 3, 5), 0), (date(2024, 3, 6), 1000)]
        result = calculate_kpis(4000, 10000, daily)

        assert result["savings_rate"] == 60.0
        assert result["average_daily_spend"] == 2000
        assert result["best_day"] == {"date": "2024-03-05", "weekday": "Tuesday", "amount": 0}
        assert result["worst_day"] == {"date": "2024-03-04", "weekday": "Monday", "amount": 3000}
        assert len(result["weekly_pattern"]) == 7
        assert result["weekly_pattern"][0]["average_amount"] == 3000
        assert result["weekly_pattern"][2]["average_amount"] == 1000
        assert result["weekly_pattern"][6]["average_amount"] == 0

    def test_no_days(self):
        """An empty period has no best or worst day."""
        result = calculate_kpis(0, 0, [])
        assert result["savings_rate"] == 0.0
        assert result["average_daily_spend"] == 0
        assert result["best_day"] is None
        assert result["worst_day"] is None

    def test_overspent_budget(self):
        """Spending past the budget gives a negative savings rate."""
        assert calculate_kpis(15000, 10000, [(date(2024, 3, 4), 15000)])["savings_rate"] == -50.0


class TestDayOfWeek:
    def test_breakdown(self):
        """Totals per weekday, with the highest weekday flagged."""
        daily = [(date(2024, 3, 4), 3000), (date(2024, 3, 11), 1000), (date(2024, 3, 9), 6000)]
        result = analyze_day_of_week(daily, 10000)

        assert [r["name"] for r in result][:2] == ["Monday", "Tuesday"]
        monday, saturday = result[0], result[5]
        assert monday["total_amount"] == 4000
        assert monday["day_count"] == 2
        assert monday["average_amount"] == 2000
        assert monday["percentage_of_total"] == 40.0
        assert saturday["is_highest"]
        assert not monday["is_highest"]
        # Weekdays without spending are never the lowest
        assert not any(r["is_lowest"] for r in result)

    def test_lowest_flagged_when_every_day_spent(self):
        """With spending on every weekday the smallest total is the lowest."""
        daily = [(date(2024, 3, 4 + i), (i + 1) * 100) for i in range(7)]
        result = analyze_day_of_week(daily, 2800)

        assert result[0]["is_lowest"]
        assert result[6]["is_highest"]


def spending_entry(key: str, amount: int) -> dict:
    return {"key": key, "name": key.title(), "icon": "", "color": "#000000", "amount": amount}


class TestCategoryBudgets:
    def test_budget_split_by_share(self):
        """Without fixed budgets each category gets its share of the total."""
        result = calculate_category_budgets([spending_entry("groceries", 6000), spending_entry("restaurants", 2000)], 10000)

        assert [c["budget"] for c in result] == [7500, 2500]
        assert [c["percentage"] for c in result] == [80.0, 80.0]
        assert all(c["status"] == "warning" for c in result)

    def test_custom_budgets(self):
        """Fixed budgets take precedence and drive the status."""
        categories = [spending_entry("groceries", 6000), spending_entry("restaurants", 2000)]
        result = calculate_category_budgets(categories, 10000, {"groceries": 10000, "restaurants": 1000})

        assert result[0]["status"] == "under"
        assert result[0]["percentage"] == 60.0
        assert result[1]["status"] == "over"
        assert result[1]["percentage"] == 200.0

    def test_warning_threshold(self):
        """The warning status starts at the configured threshold."""
        categories = [spending_entry("groceries", 500)]
        assert calculate_category_budgets(categories, 0, {"groceries": 1000}, warning_threshold=50)[0]["status"] == "warning"
        assert calculate_category_budgets(categories, 0, {"groceries": 1000})[0]["status"] == "under"

    def test_zero_budget(self):
        """A category without any budget is under."""
        result = calculate_category_budgets([spending_entry("groceries", 500)], 0)
        assert result[0]["budget"] == 0
        assert result[0]["status"] == "under"


class TestSyncStatus:
    def test_never_synced(self, db):
        """A user without a sync is reported as never synced."""
        status = get_sync_status(db, "u1")
        assert status["staleness"] == "never_synced"
        assert status["cache_stats"]["transactions"] == 0

    @pytest.mark.parametrize("age, expected", [(60, "fresh"), (1000, "slightly_stale"), (7200, "stale")])
    def test_staleness(self, db, age, expected):
        """Staleness follows the age of the last sync."""
        db.set_setting("u1", "last_sync_time", 1700000000)
        assert get_sync_status(db, "u1", now=1700000000 + age)["staleness"] == expected

    def test_with_engine(self, db, make_engine):
        """The engine's state and progress are included."""
        engine = make_engine(FakeMonobankClient(), 1700000000)
        status = get_sync_status(db, "u1", engine)
        assert status["state"] == "not_synced"
        assert status["progress"] is None
