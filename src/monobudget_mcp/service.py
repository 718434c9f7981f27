"""Per-user budget operations backed by the store and the Monobank client."""

import logging
import time
import uuid
from collections.abc import Callable
from datetime import date, timedelta
from typing import Any

import pydantic

from .analytics import (
    analyze_day_of_week,
    calculate_burn_rate,
    calculate_category_budgets,
    calculate_kpis,
    compare_periods,
    get_spending_by_category,
    predict_balance,
)
from .budget import build_daily_snapshots, distribute_budget
from .categories import get_all_categories, is_known_category, resolve_category
from .database import Database
from .errors import StoreUnavailable, SyncError, Unauthorized, ValidationError
from .models import UAH, CategoryInfo, CurrencyRate, CustomCategory, MonthBudget, Transaction, UserSettings
from .monobank import MonobankClient
from .periods import financial_month_bounds, financial_month_timestamps, start_of_day_timestamp
from .utils import convert_to_uah

logger = logging.getLogger(__name__)

# Monobank refreshes /bank/currency at most every 5 minutes
RATES_TTL_SECONDS = 300


def require_user(user_id: str | None) -> str:
    """Return the authenticated user id or raise Unauthorized."""
    if not user_id or not str(user_id).strip():
        raise Unauthorized("Authentication required")
    return str(user_id)


def _check_transaction_id(transaction_id: str) -> None:
    if not isinstance(transaction_id, str) or not 1 <= len(transaction_id) <= 100:
        raise ValidationError("Transaction id must be 1-100 characters")


class BudgetService:
    """Loads a user's inputs, runs the budget engine and keeps overrides.

    Exclusion and inclusion lists are held in memory per user and updated
    optimistically: the in-memory view changes first, then the store is
    written, and on a store failure the view is reloaded from the store.
    """

    def __init__(
        self,
        db: Database,
        client: MonobankClient | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.client = client
        self.clock = clock

        self._overrides: dict[str, dict[str, set[str]]] = {}
        self._rates: list[CurrencyRate] = []
        self._rates_fetched_at: float | None = None

    # -------------------------------------------------------------------------
    # Inputs
    # -------------------------------------------------------------------------

    async def get_rates(self) -> list[CurrencyRate]:
        """Current exchange rates, cached; empty when unavailable."""
        if self.client is None:
            return self._rates
        fresh = self._rates_fetched_at is not None and self.clock() - self._rates_fetched_at < RATES_TTL_SECONDS
        if fresh:
            return self._rates
        try:
            self._rates = await self.client.get_currency_rates()
            self._rates_fetched_at = self.clock()
        except SyncError as e:
            # Conversion falls back to unconverted amounts
            logger.warning("Could not fetch exchange rates: %s", e)
        return self._rates

    def set_rates(self, rates: list[CurrencyRate]) -> None:
        """Replace the cached rate table."""
        self._rates = list(rates)
        self._rates_fetched_at = self.clock()

    @staticmethod
    def available_balance(
        transactions: list[Transaction],
        settings: UserSettings,
        rates: list[CurrencyRate],
    ) -> int:
        """Sum of each configured account's latest known balance, in UAH."""
        latest: dict[str, Transaction] = {}
        for tx in transactions:
            if tx.account_id is None:
                continue
            if settings.account_ids and tx.account_id not in settings.account_ids:
                continue
            current = latest.get(tx.account_id)
            if current is None or tx.time > current.time:
                latest[tx.account_id] = tx

        total = 0
        for account_id, tx in latest.items():
            currency = settings.account_currencies.get(account_id, tx.currency_code or UAH)
            total += convert_to_uah(tx.balance, currency, rates)
        return total

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    def get_settings(self, user_id: str) -> UserSettings:
        return self.db.get_user_settings(require_user(user_id))

    def update_settings(
        self,
        user_id: str,
        financial_month_start: int | None = None,
        use_ai_budget: bool | None = None,
        account_ids: list[str] | None = None,
    ) -> UserSettings:
        """Update user settings; unspecified values are kept."""
        user_id = require_user(user_id)
        if financial_month_start is not None:
            if not isinstance(financial_month_start, int) or not 1 <= financial_month_start <= 31:
                raise ValidationError("financial_month_start must be in 1..31")
            self.db.set_setting(user_id, "financial_month_start", financial_month_start)
        if use_ai_budget is not None:
            self.db.set_setting(user_id, "use_ai_budget", bool(use_ai_budget))
        if account_ids is not None:
            self.db.set_setting(user_id, "account_ids", [str(a) for a in account_ids])
        return self.db.get_user_settings(user_id)

    # -------------------------------------------------------------------------
    # Budget
    # -------------------------------------------------------------------------

    async def get_month_budget(
        self,
        user_id: str,
        anchor: date | None = None,
        balance: int | None = None,
        total_budget: int | None = None,
        skip_historical_limits: bool = False,
        persist: bool = True,
        today: date | None = None,
    ) -> MonthBudget:
        """Budget of the financial month containing anchor (default today).

        For the current month the elapsed days are persisted as snapshots,
        never overwriting existing ones, and today is saved with its live
        limit so the value is kept once the day is over.

        Raises:
            Unauthorized: Without a user id.
            StoreUnavailable: If the store cannot be read.
        """
        user_id = require_user(user_id)
        today = today or date.today()
        anchor = anchor or today
        settings = self.db.get_user_settings(user_id)

        month_start, month_end = financial_month_bounds(anchor, settings.financial_month_start)
        transactions = self.db.get_all_transactions(user_id)
        excluded, included = self.get_overrides(user_id)
        stored = self.db.get_daily_budgets(user_id, month_start, month_end)
        rates = await self.get_rates()

        if balance is None:
            balance = self.available_balance(transactions, settings, rates)

        month_budget = distribute_budget(
            balance,
            anchor,
            transactions,
            rates=rates,
            excluded_ids=excluded,
            total_budget=total_budget,
            stored_budgets=stored,
            use_ai_mode=settings.use_ai_budget,
            financial_month_start_day=settings.financial_month_start,
            skip_historical_limits=skip_historical_limits,
            included_ids=included,
            today=today,
        )

        if persist and not month_budget.is_historical:
            self.save_snapshots(user_id, month_budget, today=today)
        return month_budget

    def save_snapshots(
        self,
        user_id: str,
        month_budget: MonthBudget,
        today: date | None = None,
        overwrite: bool = False,
    ) -> int:
        """Persist a computed month up to today; returns rows written.

        Today's row always follows the latest computation. Elapsed days are
        only replaced when overwrite is set.
        """
        user_id = require_user(user_id)
        today = today or date.today()
        written = 0
        for snapshot in build_daily_snapshots(month_budget, today=today):
            if self.db.save_daily_budget(
                user_id,
                snapshot.date,
                snapshot.limit,
                snapshot.spent,
                snapshot.balance,
                overwrite=overwrite or snapshot.date == today,
            ):
                written += 1
        if written:
            logger.debug("Saved %d daily budget snapshot(s)", written)
        return written

    async def get_burn_rate(self, user_id: str, today: date | None = None, recent_days: int = 7) -> dict[str, Any]:
        """Burn rate of the current financial month."""
        today = today or date.today()
        month_budget = await self.get_month_budget(user_id, today=today, persist=False)
        elapsed = [d for d in month_budget.daily_limits if d.date <= today]
        return calculate_burn_rate(
            month_budget.total_spent,
            len(month_budget.daily_limits),
            len(elapsed),
            month_budget.total_budget,
            [d.spent for d in elapsed[-recent_days:]],
        )

    async def get_balance_forecast(
        self,
        user_id: str,
        months_back: int = 3,
        today: date | None = None,
    ) -> dict[str, Any]:
        """Twelve-month balance projection from recent net spending."""
        user_id = require_user(user_id)
        today = today or date.today()
        settings = self.db.get_user_settings(user_id)
        rates = await self.get_rates()
        all_transactions = self.db.get_all_transactions(user_id)
        _, included = self.get_overrides(user_id)

        since = start_of_day_timestamp(today - timedelta(days=30 * months_back))
        recent = [tx for tx in all_transactions if tx.time >= since]
        balance = self.available_balance(all_transactions, settings, rates)
        return predict_balance(recent, balance, included_ids=included, rates=rates, today=today)

    async def get_statistics(
        self,
        user_id: str,
        anchor: date | None = None,
        today: date | None = None,
    ) -> dict[str, Any]:
        """KPIs and weekday breakdown of a financial month, up to today."""
        today = today or date.today()
        month_budget = await self.get_month_budget(user_id, anchor=anchor, persist=False, today=today)
        daily_spend = [(d.date, d.spent) for d in month_budget.daily_limits if d.date <= today]
        return {
            "month_start": month_budget.month_start.isoformat(),
            "month_end": month_budget.month_end.isoformat(),
            "total_spent": month_budget.total_spent,
            "total_budget": month_budget.total_budget,
            "kpis": calculate_kpis(month_budget.total_spent, month_budget.total_budget, daily_spend),
            "day_of_week": analyze_day_of_week(daily_spend, month_budget.total_spent),
        }

    async def compare_months(self, user_id: str, anchor: date | None = None) -> dict[str, Any]:
        """Spending of a financial month against the month before, overall and per category."""
        user_id = require_user(user_id)
        current = await self.get_category_spending(user_id, anchor=anchor)
        previous_anchor = date.fromisoformat(current["month_start"]) - timedelta(days=1)
        previous = await self.get_category_spending(user_id, anchor=previous_anchor)

        current_amounts = {c["key"]: c for c in current["categories"]}
        previous_amounts = {c["key"]: c for c in previous["categories"]}
        categories = []
        for key in sorted(current_amounts.keys() | previous_amounts.keys()):
            info = current_amounts.get(key) or previous_amounts[key]
            now_amount = current_amounts[key]["amount"] if key in current_amounts else 0
            before_amount = previous_amounts[key]["amount"] if key in previous_amounts else 0
            categories.append({
                "key": key,
                "name": info["name"],
                "current": now_amount,
                "previous": before_amount,
                **compare_periods(now_amount, before_amount),
            })
        categories.sort(key=lambda c: c["current"], reverse=True)

        return {
            "current": {k: current[k] for k in ("month_start", "month_end", "total")},
            "previous": {k: previous[k] for k in ("month_start", "month_end", "total")},
            **compare_periods(current["total"], previous["total"]),
            "categories": categories,
        }

    async def get_category_budgets(
        self,
        user_id: str,
        anchor: date | None = None,
        budgets: dict[str, int] | None = None,
        today: date | None = None,
    ) -> dict[str, Any]:
        """Split the month's budget over categories and report progress.

        Raises:
            ValidationError: If a custom budget is not a non-negative integer.
        """
        user_id = require_user(user_id)
        today = today or date.today()
        anchor = anchor or today
        budgets = budgets or {}
        for key, value in budgets.items():
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValidationError(f"Budget for {key!r} must be a non-negative integer")

        month_budget = await self.get_month_budget(user_id, anchor=anchor, persist=False, today=today)
        spending = await self.get_category_spending(user_id, anchor=anchor)
        return {
            "month_start": spending["month_start"],
            "month_end": spending["month_end"],
            "total_budget": month_budget.total_budget,
            "categories": calculate_category_budgets(spending["categories"], month_budget.total_budget, budgets),
        }

    # -------------------------------------------------------------------------
    # Exclusions (optimistic)
    # -------------------------------------------------------------------------

    def reload_overrides(self, user_id: str) -> None:
        """Replace the in-memory override view with the store's."""
        self._overrides[user_id] = {
            "excluded": self.db.get_excluded_ids(user_id),
            "included": self.db.get_included_ids(user_id),
        }

    def get_overrides(self, user_id: str) -> tuple[set[str], set[str]]:
        """(excluded_ids, included_ids) of a user."""
        user_id = require_user(user_id)
        if user_id not in self._overrides:
            self.reload_overrides(user_id)
        view = self._overrides[user_id]
        return set(view["excluded"]), set(view["included"])

    def _apply_override(self, user_id: str, kind: str, transaction_id: str, enabled: bool) -> set[str]:
        user_id = require_user(user_id)
        _check_transaction_id(transaction_id)
        self.get_overrides(user_id)
        view = self._overrides[user_id][kind]

        if enabled:
            view.add(transaction_id)
        else:
            view.discard(transaction_id)

        try:
            if kind == "excluded":
                commit = self.db.add_excluded if enabled else self.db.remove_excluded
            else:
                commit = self.db.add_included if enabled else self.db.remove_included
            commit(user_id, transaction_id)
        except StoreUnavailable:
            logger.warning("Saving %s override failed, reloading from store", kind)
            try:
                self.reload_overrides(user_id)
            except StoreUnavailable:
                self._overrides.pop(user_id, None)
            raise

        return set(self._overrides[user_id][kind])

    def set_excluded(self, user_id: str, transaction_id: str, excluded: bool = True) -> set[str]:
        """Exclude a transaction from spending, or undo it.

        Returns:
            The resulting set of excluded ids.
        """
        return self._apply_override(user_id, "excluded", transaction_id, excluded)

    def set_included(self, user_id: str, transaction_id: str, included: bool = True) -> set[str]:
        """Count an auto-excluded transaction as spending, or undo it."""
        return self._apply_override(user_id, "included", transaction_id, included)

    # -------------------------------------------------------------------------
    # Categories and comments
    # -------------------------------------------------------------------------

    def get_categories(self, user_id: str) -> list[CategoryInfo]:
        user_id = require_user(user_id)
        return get_all_categories(self.db.get_custom_categories(user_id))

    def create_category(
        self,
        user_id: str,
        name: str,
        icon: str | None = None,
        color: str | None = None,
    ) -> CustomCategory:
        """Create a custom category."""
        user_id = require_user(user_id)
        data: dict[str, Any] = {"id": f"cat_{uuid.uuid4().hex[:12]}", "name": name}
        if icon:
            data["icon"] = icon
        if color:
            data["color"] = color
        try:
            category = CustomCategory(**data)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid category: {e}") from e
        self.db.save_custom_category(user_id, category)
        return category

    def delete_category(self, user_id: str, category_id: str) -> bool:
        user_id = require_user(user_id)
        return self.db.delete_custom_category(user_id, category_id) > 0

    def assign_category(self, user_id: str, transaction_id: str, category_key: str | None) -> None:
        """Override a transaction's category; None restores automatic resolution."""
        user_id = require_user(user_id)
        _check_transaction_id(transaction_id)
        if category_key and not is_known_category(category_key, self.db.get_custom_categories(user_id)):
            raise ValidationError(f"Unknown category: {category_key}")
        self.db.set_category_assignment(user_id, transaction_id, category_key)

    def set_comment(self, user_id: str, transaction_id: str, comment: str | None) -> None:
        user_id = require_user(user_id)
        _check_transaction_id(transaction_id)
        self.db.update_transaction_comment(user_id, transaction_id, comment)

    async def get_category_spending(
        self,
        user_id: str,
        anchor: date | None = None,
        top_n: int | None = None,
    ) -> dict[str, Any]:
        """Spending per category within a financial month."""
        user_id = require_user(user_id)
        anchor = anchor or date.today()
        settings = self.db.get_user_settings(user_id)
        from_ts, to_ts = financial_month_timestamps(anchor, settings.financial_month_start)
        month_start, month_end = financial_month_bounds(anchor, settings.financial_month_start)
        excluded, included = self.get_overrides(user_id)

        result = get_spending_by_category(
            self.db.get_all_transactions(user_id, from_time=from_ts, to_time=to_ts),
            manual_overrides=self.db.get_category_assignments(user_id),
            custom_categories=self.db.get_custom_categories(user_id),
            included_ids=included,
            excluded_ids=excluded,
            rates=await self.get_rates(),
            top_n=top_n,
        )
        result["month_start"] = month_start.isoformat()
        result["month_end"] = month_end.isoformat()
        return result

    def list_transactions(
        self,
        user_id: str,
        anchor: date | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Transactions of a financial month with category and override flags."""
        user_id = require_user(user_id)
        anchor = anchor or date.today()
        settings = self.db.get_user_settings(user_id)
        from_ts, to_ts = financial_month_timestamps(anchor, settings.financial_month_start)
        excluded, included = self.get_overrides(user_id)
        overrides = self.db.get_category_assignments(user_id)
        custom = self.db.get_custom_categories(user_id)

        result = []
        for tx in self.db.get_all_transactions(user_id, from_time=from_ts, to_time=to_ts)[:limit]:
            item = tx.model_dump()
            item["category"] = resolve_category(tx, overrides, custom).model_dump()
            item["excluded"] = tx.id in excluded
            item["included"] = tx.id in included
            result.append(item)
        return result
