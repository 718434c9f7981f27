"""Daily budget distribution over a financial month.

One entry point, distribute_budget(), serves both the live current month and
closed historical months. All amounts are integer minor units (UAH kopecks).
"""

from collections import defaultdict
from collections.abc import Collection, Iterable
from datetime import date
from typing import Any

from .models import BudgetStatus, CurrencyRate, DayBudget, MonthBudget, StoredDailyBudget, Transaction
from .periods import day_of, each_day, financial_month_bounds, financial_month_timestamps, start_of_day_timestamp
from .utils import convert_to_uah, find_paired_ids, is_expense

WARNING_THRESHOLD_PCT = 80
WEEKEND_UPLIFT = 1.2


def day_status(spent: int, limit: int) -> BudgetStatus:
    """Status of a day from its spent/limit ratio.

    Below 80% is under, 80% up to 100% is warning, 100% and above is over.
    A day without a limit is over as soon as anything is spent.
    """
    if limit <= 0:
        return BudgetStatus.OVER if spent > 0 else BudgetStatus.UNDER
    if spent >= limit:
        return BudgetStatus.OVER
    if spent * 100 >= limit * WARNING_THRESHOLD_PCT:
        return BudgetStatus.WARNING
    return BudgetStatus.UNDER


def analyze_spending_pattern(
    transactions: Iterable[Transaction],
    included_ids: Collection[str] = (),
    excluded_ids: Collection[str] = (),
    rates: Iterable[CurrencyRate] = (),
) -> dict[str, Any]:
    """Learn weekday/weekend averages and day-of-month multipliers.

    Returns:
        Dictionary with weekday_avg, weekend_avg (minor units per spending day)
        and day_of_month_multipliers (31 floats, 1.0 where there is no data).
    """
    transactions = list(transactions)
    rates = list(rates)
    paired = find_paired_ids(transactions)

    by_day: dict[date, int] = defaultdict(int)
    for tx in transactions:
        if is_expense(tx, included_ids=included_ids, excluded_ids=excluded_ids, paired_ids=paired):
            by_day[day_of(tx.time)] += abs(convert_to_uah(tx.amount, tx.currency_code, rates))

    weekday_total = weekday_count = weekend_total = weekend_count = 0
    dom_totals = [0] * 31
    dom_counts = [0] * 31

    for day, total in by_day.items():
        dom_totals[day.day - 1] += total
        dom_counts[day.day - 1] += 1
        if day.weekday() >= 5:
            weekend_total += total
            weekend_count += 1
        else:
            weekday_total += total
            weekday_count += 1

    weekday_avg = weekday_total / weekday_count if weekday_count else 0.0
    weekend_avg = weekend_total / weekend_count if weekend_count else 0.0
    overall_avg = (weekday_total + weekend_total) / (weekday_count + weekend_count) if by_day else 0.0

    multipliers = [
        (dom_totals[i] / dom_counts[i]) / overall_avg if dom_counts[i] and overall_avg else 1.0
        for i in range(31)
    ]

    return {
        "weekday_avg": weekday_avg,
        "weekend_avg": weekend_avg,
        "day_of_month_multipliers": multipliers,
    }


def allocate_weighted(amount: int, weights: list[float]) -> list[int]:
    """Split amount into integer shares proportional to weights.

    Uses largest-remainder rounding so the shares always sum to amount.
    Non-positive total weight falls back to an even split.
    """
    if not weights:
        return []
    total_weight = sum(w for w in weights if w > 0)
    if total_weight <= 0:
        weights = [1.0] * len(weights)
        total_weight = float(len(weights))

    raw = [amount * max(w, 0.0) / total_weight for w in weights]
    shares = [int(r) for r in raw]
    leftover = amount - sum(shares)
    by_remainder = sorted(range(len(raw)), key=lambda i: raw[i] - shares[i], reverse=True)
    for i in by_remainder[:leftover]:
        shares[i] += 1
    return shares


def _pattern_weights(days: list[date], pattern: dict[str, Any]) -> list[float]:
    weights = []
    for day in days:
        weight = pattern["day_of_month_multipliers"][day.day - 1] or 1.0
        if day.weekday() >= 5 and pattern["weekend_avg"] > pattern["weekday_avg"]:
            weight *= WEEKEND_UPLIFT
        weights.append(weight)
    return weights


def generate_recommendation(
    total_budget: int,
    total_spent: int,
    days_remaining: int,
    pattern: dict[str, Any] | None = None,
) -> str:
    """Short advice line for the current month."""
    if total_budget <= 0:
        return "No budget available for this month. Top up the card or set a budget."

    percent_spent = total_spent * 100 / total_budget
    remaining = total_budget - total_spent
    daily_budget = remaining / days_remaining if days_remaining else 0

    if percent_spent > 80 and days_remaining > 7:
        return (
            f"You have spent {percent_spent:.0f}% of the budget. "
            f"Recommended daily limit: {daily_budget / 100:.0f} UAH"
        )

    if pattern and pattern["weekday_avg"] and pattern["weekend_avg"] > pattern["weekday_avg"] * 1.5:
        uplift = (pattern["weekend_avg"] / pattern["weekday_avg"] - 1) * 100
        return f"Weekend spending runs {uplift:.0f}% higher. Plan the budget accordingly."

    if days_remaining <= 3 and total_spent < total_budget * 0.7:
        return f"Well done! {remaining / 100:.0f} UAH left for {days_remaining} days."

    return f"Daily limit: {daily_budget / 100:.0f} UAH. Stick to the plan!"


def distribute_budget(
    available_balance: int,
    anchor_date: date,
    transactions: Iterable[Transaction],
    rates: Iterable[CurrencyRate] = (),
    excluded_ids: Collection[str] = (),
    total_budget: int | None = None,
    *,
    stored_budgets: Iterable[StoredDailyBudget] | None = None,
    use_ai_mode: bool = False,
    financial_month_start_day: int = 1,
    skip_historical_limits: bool = False,
    included_ids: Collection[str] = (),
    historical: bool | None = None,
    today: date | None = None,
) -> MonthBudget:
    """Compute the day-by-day spending plan of a financial month.

    Current month: days before today are elapsed and keep their stored limit
    when a snapshot exists (otherwise an even share of the total budget);
    today and later days split max(0, available_balance) evenly, or by the
    learned spending pattern when use_ai_mode is set.

    Historical month (month end before today, unless forced via historical):
    each day uses its stored limit or the month's daily average, the total
    budget is the sum of stored limits (or total spent without snapshots),
    and days_remaining is 0.

    Args:
        available_balance: Current discretionary balance in UAH minor units.
        anchor_date: Any day inside the target financial month.
        transactions: All known transactions; used for the month's spend and
            for transfer pairing and the spending pattern.
        rates: Exchange rates for non-UAH transactions.
        excluded_ids: Transaction ids never counted as spending.
        total_budget: Explicit total budget seed for the current month.
        stored_budgets: Persisted daily snapshots for the month.
        use_ai_mode: Weight future days by historical spending pattern.
        financial_month_start_day: Day of month the financial month starts on.
        skip_historical_limits: Ignore stored snapshots and recompute all days.
        included_ids: Transaction ids counted even when auto-excluded.
        historical: Force historical (True) or live (False) mode.
        today: Reference day, defaults to date.today().

    Returns:
        MonthBudget covering every day of the financial month.
    """
    today = today or date.today()
    transactions = list(transactions)
    rates = list(rates)
    excluded = set(excluded_ids)
    included = set(included_ids)

    month_start, month_end = financial_month_bounds(anchor_date, financial_month_start_day)
    start_ts, end_ts = financial_month_timestamps(anchor_date, financial_month_start_day)
    days = each_day(month_start, month_end)
    days_in_month = len(days)
    if historical is None:
        historical = month_end < today

    paired = find_paired_ids(transactions)
    spent_by_day: dict[date, int] = defaultdict(int)
    tx_by_day: dict[date, list[Transaction]] = defaultdict(list)

    for tx in transactions:
        if not start_ts <= tx.time <= end_ts:
            continue
        day = day_of(tx.time)
        tx_by_day[day].append(tx)
        if is_expense(tx, included_ids=included, excluded_ids=excluded, paired_ids=paired):
            spent_by_day[day] += abs(convert_to_uah(tx.amount, tx.currency_code, rates))

    stored: dict[date, StoredDailyBudget] = {}
    if stored_budgets and not skip_historical_limits:
        stored = {b.date: b for b in stored_budgets if month_start <= b.date <= month_end}

    total_spent = sum(spent_by_day[day] for day in days)
    daily_average = round(total_spent / days_in_month)

    limits: dict[date, int] = {}
    recommendation = None
    current_balance: int | None = None

    if historical:
        days_remaining = 0
        if stored:
            month_total = sum(b.limit for b in stored.values())
        else:
            month_total = total_spent
        for day in days:
            limits[day] = stored[day].limit if day in stored else daily_average
    else:
        balance = max(0, available_balance)
        current_balance = available_balance
        elapsed = [day for day in days if day < today]
        future = [day for day in days if day >= today]
        days_remaining = len(future)

        elapsed_stored = [day for day in elapsed if day in stored]
        if total_budget is not None:
            month_total = total_budget
        elif elapsed_stored:
            month_total = sum(stored[day].limit for day in elapsed_stored) + balance
        else:
            month_total = balance

        base_daily_limit = round(month_total / days_in_month)
        for day in elapsed:
            limits[day] = stored[day].limit if day in stored else base_daily_limit

        pattern = None
        if future:
            if use_ai_mode:
                history_end = start_of_day_timestamp(month_start)
                pattern = analyze_spending_pattern(
                    (tx for tx in transactions if tx.time < history_end),
                    included_ids=included,
                    excluded_ids=excluded,
                    rates=rates,
                )
                shares = allocate_weighted(balance, _pattern_weights(future, pattern))
                limits.update(zip(future, shares))
            else:
                per_day = round(balance / days_remaining)
                limits.update((day, per_day) for day in future)

        recommendation = generate_recommendation(month_total, total_spent, days_remaining, pattern)

    daily_limits = [
        DayBudget(
            date=day,
            limit=limits[day],
            spent=spent_by_day[day],
            remaining=limits[day] - spent_by_day[day],
            status=day_status(spent_by_day[day], limits[day]),
            transactions=sorted(tx_by_day[day], key=lambda t: t.time),
        )
        for day in days
    ]

    return MonthBudget(
        month_start=month_start,
        month_end=month_end,
        total_budget=month_total,
        total_spent=total_spent,
        total_remaining=month_total - total_spent,
        days_remaining=days_remaining,
        daily_limits=daily_limits,
        current_balance=current_balance,
        daily_average=daily_average,
        is_historical=historical,
        recommendation=recommendation,
    )


def build_daily_snapshots(month_budget: MonthBudget, today: date | None = None) -> list[StoredDailyBudget]:
    """Snapshots for the days of the month up to and including today.

    Today's entry carries its live limit; once the day is over that stored
    value is what later runs keep for it. The balance is the account balance
    after the day's last transaction, or the day's limit when nothing
    happened that day.
    """
    today = today or date.today()
    snapshots = []
    for day_budget in month_budget.daily_limits:
        if day_budget.date > today:
            continue
        if day_budget.transactions:
            balance = max(day_budget.transactions, key=lambda t: t.time).balance
        else:
            balance = day_budget.limit
        snapshots.append(
            StoredDailyBudget(
                date=day_budget.date,
                limit=day_budget.limit,
                spent=day_budget.spent,
                balance=balance,
            )
        )
    return snapshots
