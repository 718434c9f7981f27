"""Reporting on top of the budget engine: categories, burn rate, projections, statistics."""

import statistics
from collections import defaultdict
from collections.abc import Collection, Iterable, Mapping
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from .categories import category_key_for, get_all_categories
from .database import Database
from .models import BudgetStatus, CategoryInfo, CurrencyRate, CustomCategory, Transaction
from .periods import day_of, shift_months
from .utils import convert_to_uah, find_paired_ids, is_expense, is_income

if TYPE_CHECKING:
    from .sync_engine import SyncEngine

# Minor units per day; smaller day-to-day swings count as stable
TREND_THRESHOLD = 50

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def get_spending_by_category(
    transactions: Iterable[Transaction],
    manual_overrides: Mapping[str, str | None] | None = None,
    custom_categories: Iterable[CustomCategory] = (),
    included_ids: Collection[str] = (),
    excluded_ids: Collection[str] = (),
    rates: Iterable[CurrencyRate] = (),
    top_n: int | None = None,
) -> dict[str, Any]:
    """Group expenses by resolved category.

    Returns:
        Dictionary with total and categories sorted by amount, each with
        key, name, icon, color, amount, count and percentage.
    """
    transactions = list(transactions)
    rates = list(rates)
    overrides = manual_overrides or {}
    paired = find_paired_ids(transactions)
    known = {c.key: c for c in get_all_categories(custom_categories)}

    amounts: dict[str, int] = defaultdict(int)
    counts: dict[str, int] = defaultdict(int)
    for tx in transactions:
        if not is_expense(tx, included_ids=included_ids, excluded_ids=excluded_ids, paired_ids=paired):
            continue
        key = category_key_for(tx, overrides)
        if key not in known:
            # Assignment to a deleted custom category
            key = "other"
        amounts[key] += abs(convert_to_uah(tx.amount, tx.currency_code, rates))
        counts[key] += 1

    total = sum(amounts.values())
    categories = []
    for key, amount in sorted(amounts.items(), key=lambda item: item[1], reverse=True):
        info: CategoryInfo = known[key]
        categories.append({
            "key": key,
            "name": info.name,
            "icon": info.icon,
            "color": info.color,
            "is_custom": info.is_custom,
            "amount": amount,
            "count": counts[key],
            "percentage": round(amount * 100 / total, 1) if total else 0.0,
        })

    if top_n is not None:
        categories = categories[:top_n]

    return {"total": total, "categories": categories}


def calculate_burn_rate(
    total_spent: int,
    days_in_month: int,
    current_day: int,
    total_budget: int,
    recent_daily_spend: list[int] | None = None,
) -> dict[str, Any]:
    """Compare actual daily spend with the allocated daily limit.

    Args:
        total_spent: Spent so far this month.
        days_in_month: Length of the financial month.
        current_day: 1-based index of today within the month.
        total_budget: Month's total budget.
        recent_daily_spend: Spend of the last days, oldest first.

    Returns:
        Dictionary with daily_limit, actual_daily_spent, burn_rate (% of the
        daily limit), projected_month_end, days_remaining, trend and status.
    """
    recent = recent_daily_spend or []
    current_day = max(current_day, 1)
    days_remaining = max(days_in_month - current_day, 0)
    daily_limit = total_budget / days_in_month if days_in_month else 0.0
    actual_daily = total_spent / current_day
    burn_rate = actual_daily * 100 / daily_limit if daily_limit else 0.0

    recent_average = sum(recent) / len(recent) if recent else actual_daily
    projected = recent_average * days_in_month

    trend = "stable"
    if len(recent) >= 2:
        delta = recent[-1] - recent[0]
        if delta > TREND_THRESHOLD:
            trend = "accelerating"
        elif delta < -TREND_THRESHOLD:
            trend = "decelerating"

    if burn_rate > 120 or projected > total_budget * 1.2:
        status = "critical"
    elif burn_rate > 100 or projected > total_budget:
        status = "warning"
    else:
        status = "healthy"

    return {
        "daily_limit": round(daily_limit),
        "actual_daily_spent": round(actual_daily),
        "burn_rate": round(burn_rate, 1),
        "projected_month_end": round(projected),
        "days_remaining": days_remaining,
        "trend": trend,
        "status": status,
    }


def predict_balance(
    transactions: Iterable[Transaction],
    current_balance: int,
    included_ids: Collection[str] = (),
    rates: Iterable[CurrencyRate] = (),
    today: date | None = None,
) -> dict[str, Any]:
    """Project the balance over the next 12 months from the net burn.

    The net daily burn is (expenses - income) over the span covered by
    transactions; a 30-day month is assumed.
    """
    transactions = list(transactions)
    rates = list(rates)
    today = today or date.today()
    paired = find_paired_ids(transactions)

    expenses = [
        abs(convert_to_uah(tx.amount, tx.currency_code, rates))
        for tx in transactions
        if is_expense(tx, included_ids=included_ids, paired_ids=paired)
    ]
    total_income = sum(
        convert_to_uah(tx.amount, tx.currency_code, rates)
        for tx in transactions
        if is_income(tx, included_ids=included_ids, paired_ids=paired)
    )
    total_expenses = sum(expenses)

    if transactions:
        times = [tx.time for tx in transactions]
        days_in_period = (day_of(max(times)) - day_of(min(times))).days or 1
    else:
        days_in_period = 30

    monthly_burn = (total_expenses - total_income) / days_in_period * 30
    months_until_zero = round(current_balance / monthly_burn, 1) if monthly_burn > 0 else None

    projection = []
    balance = float(current_balance)
    for offset in range(12):
        month = shift_months(today, offset)
        projection.append({"month": month.strftime("%Y-%m"), "balance": max(0, round(balance))})
        balance -= monthly_burn

    if len(expenses) > 1:
        spread = statistics.pstdev(expenses) / statistics.mean(expenses)
        confidence = max(0.3, min(0.95, 1 - spread))
    else:
        confidence = 0.3

    return {
        "current_balance": current_balance,
        "predicted_balance": max(0, round(current_balance - monthly_burn * 12)),
        "monthly_burn_rate": round(monthly_burn),
        "months_until_zero": months_until_zero,
        "yearly_projection": projection,
        "confidence": round(confidence, 2),
    }


def compare_periods(current: int, previous: int) -> dict[str, Any]:
    """Relative change of a spending total against the previous period.

    Changes below 1% are stable. Without previous spending there is nothing
    to compare against and the result is a stable zero change.
    """
    if previous == 0:
        return {"change": 0.0, "direction": "stable", "is_increase": False}

    change = (current - previous) * 100 / previous
    if abs(change) < 1:
        direction = "stable"
    else:
        direction = "up" if change > 0 else "down"

    return {"change": round(change, 1), "direction": direction, "is_increase": change > 0}


def _day_json(day: date, amount: int) -> dict[str, Any]:
    return {"date": day.isoformat(), "weekday": WEEKDAY_NAMES[day.weekday()], "amount": amount}


def _weekday_totals(daily_spend: list[tuple[date, int]]) -> list[tuple[int, int]]:
    """(total, day count) per weekday, Monday first."""
    totals = [[0, 0] for _ in WEEKDAY_NAMES]
    for day, amount in daily_spend:
        totals[day.weekday()][0] += amount
        totals[day.weekday()][1] += 1
    return [(total, count) for total, count in totals]


def calculate_kpis(
    total_spent: int,
    total_budget: int,
    daily_spend: Iterable[tuple[date, int]],
) -> dict[str, Any]:
    """Headline numbers of a month: savings rate, average day, best and worst day.

    Args:
        total_spent: Spent in the period.
        total_budget: Budget of the period.
        daily_spend: (day, spent) pairs of the days considered.

    Returns:
        Dictionary with savings_rate (% of the budget left), average_daily_spend
        (over days with spending), best_day and worst_day (None without days)
        and weekly_pattern with the average spend per weekday.
    """
    days = list(daily_spend)
    savings_rate = (total_budget - total_spent) * 100 / total_budget if total_budget > 0 else 0.0
    spending_days = [amount for _, amount in days if amount > 0]
    average = total_spent / len(spending_days) if spending_days else 0

    best = min(days, key=lambda d: d[1]) if days else None
    worst = max(days, key=lambda d: d[1]) if days else None

    weekly_pattern = [
        {
            "weekday": index,
            "name": WEEKDAY_NAMES[index],
            "average_amount": round(total / count) if count else 0,
        }
        for index, (total, count) in enumerate(_weekday_totals(days))
    ]

    return {
        "savings_rate": round(savings_rate, 1),
        "average_daily_spend": round(average),
        "best_day": _day_json(*best) if best else None,
        "worst_day": _day_json(*worst) if worst else None,
        "weekly_pattern": weekly_pattern,
    }


def analyze_day_of_week(daily_spend: Iterable[tuple[date, int]], total_spent: int) -> list[dict[str, Any]]:
    """Spending per weekday, Monday first, with the highest and lowest flagged.

    A weekday is only flagged when its total is above zero.
    """
    weekdays = _weekday_totals(list(daily_spend))
    highest = max(total for total, _ in weekdays)
    lowest = min(total for total, _ in weekdays)

    return [
        {
            "weekday": index,
            "name": WEEKDAY_NAMES[index],
            "total_amount": total,
            "day_count": count,
            "average_amount": round(total / count) if count else 0,
            "percentage_of_total": round(total * 100 / total_spent, 1) if total_spent > 0 else 0.0,
            "is_highest": total == highest and highest > 0,
            "is_lowest": total == lowest and lowest > 0,
        }
        for index, (total, count) in enumerate(weekdays)
    ]


def calculate_category_budgets(
    categories: Iterable[Mapping[str, Any]],
    total_budget: int,
    custom_budgets: Mapping[str, int] | None = None,
    warning_threshold: float = 80,
) -> list[dict[str, Any]]:
    """Budget and progress per category.

    Without a custom budget a category gets the share of total_budget equal
    to its share of spending. Status is over from 100% of the budget, warning
    from warning_threshold and under below; a category without a budget is
    under.

    Args:
        categories: Entries of get_spending_by_category (key, name, icon,
            color, amount).
        total_budget: Budget of the period to split.
        custom_budgets: Fixed budgets by category key.
        warning_threshold: Percentage of the budget that starts the warning.
    """
    categories = list(categories)
    custom = custom_budgets or {}
    total = sum(c["amount"] for c in categories)

    result = []
    for category in categories:
        key = category["key"]
        spent = category["amount"]
        if key in custom:
            budget = custom[key]
        else:
            budget = total_budget * spent / total if total else 0
        percentage = spent * 100 / budget if budget > 0 else 0.0

        if percentage >= 100:
            status = BudgetStatus.OVER
        elif percentage >= warning_threshold:
            status = BudgetStatus.WARNING
        else:
            status = BudgetStatus.UNDER

        result.append({
            "key": key,
            "name": category["name"],
            "icon": category["icon"],
            "color": category["color"],
            "spent": spent,
            "budget": round(budget),
            "percentage": round(percentage, 1),
            "status": status.value,
        })
    return result


def get_sync_status(
    db: Database,
    user_id: str,
    engine: "SyncEngine | None" = None,
    now: float | None = None,
) -> dict[str, Any]:
    """Sync markers, cache statistics and staleness of a user's data."""
    settings = db.get_user_settings(user_id)
    now = now if now is not None else datetime.now().timestamp()

    last_sync = settings.last_sync_time
    if last_sync:
        age_seconds = now - last_sync
        if age_seconds < 300:  # 5 minutes
            staleness = "fresh"
        elif age_seconds < 3600:  # 1 hour
            staleness = "slightly_stale"
        else:
            staleness = "stale"
        last_sync_formatted = datetime.fromtimestamp(last_sync).isoformat()
    else:
        staleness = "never_synced"
        last_sync_formatted = None

    def _iso(ts: int | None) -> str | None:
        return datetime.fromtimestamp(ts).isoformat() if ts else None

    result: dict[str, Any] = {
        "last_sync_time": last_sync_formatted,
        "staleness": staleness,
        "historical_data_loaded": settings.historical_data_loaded,
        "historical_period": {
            "from": _iso(settings.historical_from_time),
            "to": _iso(settings.historical_to_time),
        },
        "accounts": settings.account_ids,
        "cache_stats": {
            "transactions": db.count_transactions(user_id),
            "excluded": len(db.get_excluded_ids(user_id)),
            "included": len(db.get_included_ids(user_id)),
        },
    }

    if engine is not None:
        result["state"] = engine.get_state(user_id).value
        progress = engine.get_progress(user_id)
        result["progress"] = progress.model_dump() if progress else None

    return result
