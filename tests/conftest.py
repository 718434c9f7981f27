"""Test fixtures for monobudget MCP server tests."""

from datetime import datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest

from monobudget_mcp.config import SyncConfig
from monobudget_mcp.database import Database
from monobudget_mcp.errors import RateLimitedError
from monobudget_mcp.models import CurrencyRate, Transaction
from monobudget_mcp.sync_engine import SyncEngine


def ts(year: int, month: int, day: int, hour: int = 12, minute: int = 0) -> int:
    """Local-time epoch seconds."""
    return int(datetime(year, month, day, hour, minute).timestamp())


def tx(
    tx_id: str,
    amount: int,
    when: int,
    description: str = "Test transaction",
    mcc: int = 5411,
    balance: int = 0,
    account_id: str | None = "acc-uah",
    currency_code: int = 980,
) -> Transaction:
    return Transaction(
        id=tx_id,
        account_id=account_id,
        time=when,
        description=description,
        mcc=mcc,
        amount=amount,
        balance=balance,
        currency_code=currency_code,
    )


def raw_item(tx_id: str, amount: int, when: int, description: str = "Сільпо", balance: int = 100000) -> dict:
    """Statement item as returned by /personal/statement."""
    return {
        "id": tx_id,
        "time": when,
        "description": description,
        "mcc": 5411,
        "originalMcc": 5411,
        "hold": False,
        "amount": amount,
        "operationAmount": amount,
        "currencyCode": 980,
        "commissionRate": 0,
        "cashbackAmount": 0,
        "balance": balance,
    }


class FakeMonobankClient:
    """In-memory stand-in for MonobankClient.

    statements maps account id to raw items; get_statement returns the items
    inside the requested window. failures is a queue of exceptions raised by
    the next get_statement calls (None means succeed).
    """

    def __init__(self, statements: dict[str, list[dict]] | None = None, accounts: list[dict] | None = None):
        self.statements = statements or {}
        self.accounts = accounts if accounts is not None else [
            {"id": account_id, "currencyCode": 980} for account_id in self.statements
        ]
        self.failures: list[Exception | None] = []
        self.calls: list[tuple[str, int, int]] = []
        self.rates: list[CurrencyRate] = []

    async def get_client_info(self) -> dict[str, Any]:
        return {"clientId": "test", "name": "Test User", "accounts": self.accounts}

    async def get_statement(self, account_id: str, from_time: int, to_time: int) -> list[dict]:
        self.calls.append((account_id, from_time, to_time))
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        return [
            item for item in self.statements.get(account_id, [])
            if from_time <= item["time"] <= to_time
        ]

    async def get_currency_rates(self) -> list[CurrencyRate]:
        return self.rates


@pytest.fixture
def db() -> Database:
    """Create in-memory database with schema."""
    database = Database(":memory:")
    database.init_schema()
    return database


@pytest.fixture
def usd_rates() -> list[CurrencyRate]:
    return [
        CurrencyRate(currencyCodeA=840, currencyCodeB=980, date=1700000000, rateBuy=41.0, rateSell=41.5),
        CurrencyRate(currencyCodeA=978, currencyCodeB=980, date=1700000000, rateCross=45.0),
        CurrencyRate(currencyCodeA=985, currencyCodeB=980, date=1700000000, rateBuy=10.0),
    ]


@pytest.fixture
def sleep() -> AsyncMock:
    """Sleep replacement that returns immediately."""
    return AsyncMock(return_value=None)


@pytest.fixture
def fake_client() -> FakeMonobankClient:
    return FakeMonobankClient(statements={"acc-uah": []})


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(
        api_url="https://api.example.test",
        lookback_months=3,
        rate_limit_delay=61,
        rate_limit_cooldown=61,
    )


@pytest.fixture
def make_engine(db: Database, sleep: AsyncMock, sync_config: SyncConfig):
    """Factory for a sync engine with a fixed clock."""

    def _make(client: FakeMonobankClient, now: int) -> SyncEngine:
        return SyncEngine(db, client, sync_config, sleep=sleep, clock=lambda: now)

    return _make


@pytest.fixture
def rate_limited() -> RateLimitedError:
    return RateLimitedError("Rate limited on /personal/statement")
