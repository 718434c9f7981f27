"""Core data models for monobudget-mcp.

All monetary values are integers in minor currency units (kopecks for UAH).
"""

from datetime import date
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

UAH = 980


class BudgetStatus(str, Enum):
    """Spending status of a single day."""

    UNDER = "under"
    WARNING = "warning"
    OVER = "over"


class SyncMode(str, Enum):
    """Kind of synchronization run."""

    BACKFILL = "backfill"
    INCREMENTAL = "incremental"
    SAME_DAY = "same_day"


class SyncState(str, Enum):
    """Per-user synchronization state."""

    NOT_SYNCED = "not_synced"
    BACKFILLING = "backfilling"
    SYNCED = "synced"
    REFRESHING = "refreshing"


class Transaction(BaseModel):
    """A single bank movement, as stored per user."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, max_length=100)
    account_id: str | None = None
    time: int = Field(..., gt=0)
    description: str = Field("", max_length=1000)
    mcc: int = Field(0, ge=0, le=9999)
    amount: int
    balance: int = 0
    cashback_amount: int = Field(0, ge=0)
    currency_code: int = Field(UAH, ge=0, le=999)
    comment: str | None = Field(None, max_length=1000)

    @classmethod
    def from_monobank(
        cls,
        item: dict[str, Any],
        account_id: str | None = None,
        currency_code: int = UAH,
    ) -> "Transaction":
        """Build from a raw /personal/statement item.

        Statement amounts are in the account currency, so the account's
        currency code is used rather than the operation currency.
        """
        return cls(
            id=str(item["id"]),
            account_id=account_id,
            time=item["time"],
            description=item.get("description") or "",
            mcc=item.get("mcc") or 0,
            amount=item["amount"],
            balance=item.get("balance") or 0,
            cashback_amount=abs(item.get("cashbackAmount") or 0),
            currency_code=currency_code,
            comment=item.get("comment"),
        )


class CurrencyRate(BaseModel):
    """Exchange rate entry from /bank/currency."""

    model_config = ConfigDict(populate_by_name=True)

    currency_code_a: int = Field(alias="currencyCodeA")
    currency_code_b: int = Field(alias="currencyCodeB")
    date: int = 0
    rate_buy: float | None = Field(None, alias="rateBuy")
    rate_sell: float | None = Field(None, alias="rateSell")
    rate_cross: float | None = Field(None, alias="rateCross")


class DayBudget(BaseModel):
    """Allocation and actual spending for one calendar day."""

    date: date
    limit: int
    spent: int
    remaining: int
    status: BudgetStatus
    transactions: list[Transaction] = Field(default_factory=list)


class MonthBudget(BaseModel):
    """Budget plan for one financial month."""

    month_start: date
    month_end: date
    total_budget: int
    total_spent: int
    total_remaining: int
    days_remaining: int = Field(ge=0)
    daily_limits: list[DayBudget]
    current_balance: int | None = None
    daily_average: int = 0
    is_historical: bool = False
    recommendation: str | None = None


class StoredDailyBudget(BaseModel):
    """Persisted snapshot of a day's limit."""

    date: date
    limit: int
    spent: int
    balance: int


class UserSettings(BaseModel):
    """Per-user configuration."""

    account_ids: list[str] = Field(default_factory=list)
    account_currencies: dict[str, int] = Field(default_factory=dict)
    financial_month_start: int = Field(1, ge=1, le=31)
    use_ai_budget: bool = False
    last_sync_time: int | None = None
    historical_data_loaded: bool = False
    historical_from_time: int | None = None
    historical_to_time: int | None = None
    # Owned by the sync collaborator; never serialized or shown
    encrypted_token: str | None = Field(None, exclude=True, repr=False)


class CustomCategory(BaseModel):
    """User-defined category."""

    id: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=50)
    icon: str = "🏷️"
    color: str = "#94a3b8"

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Normalize category name."""
        return v.strip()


class CategoryInfo(BaseModel):
    """Resolved display category of a transaction."""

    key: str
    name: str
    icon: str
    color: str
    is_custom: bool = False


class SyncProgress(BaseModel):
    """Progress report emitted while syncing."""

    completed: int
    total: int
    message: str
