"""MCP Server for Monobank daily budgeting."""

import json
import logging
import os
import sys
from datetime import date
from typing import Any

from mcp.server import Server
from mcp.types import Resource, TextContent, Tool

from .analytics import get_sync_status
from .config import AppConfig
from .database import Database
from .errors import ConversionUnavailable, MonoBudgetError, ValidationError
from .models import UAH, MonthBudget
from .monobank import MonobankClient
from .revalidation import RevalidationTask
from .service import BudgetService, require_user
from .sync_engine import SyncEngine
from .utils import convert_to_uah, find_rate

logger = logging.getLogger(__name__)

# Initialize MCP server
server = Server("monobudget-mcp")

# Global state
_config: AppConfig | None = None
_db: Database | None = None
_client: MonobankClient | None = None
_sync_engine: SyncEngine | None = None
_service: BudgetService | None = None
_user_id: str | None = None


def get_config() -> AppConfig:
    global _config
    if _config is None:
        _config = AppConfig()
    return _config


def get_db() -> Database:
    """Get or create database instance."""
    global _db
    if _db is None:
        config = get_config()
        config.ensure_dirs()
        _db = Database(config.db_path)
        _db.init_schema()
    return _db


def _env_token() -> str | None:
    return os.environ.get("MONOBANK_TOKEN")


def get_client() -> MonobankClient:
    global _client
    if _client is None:
        sync_config = get_config().sync
        _client = MonobankClient(_env_token, base_url=sync_config.api_url, timeout=sync_config.request_timeout)
    return _client


def get_sync_engine() -> SyncEngine:
    """Get or create sync engine instance."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = SyncEngine(get_db(), get_client(), get_config().sync)
    return _sync_engine


def get_service() -> BudgetService:
    global _service
    if _service is None:
        _service = BudgetService(get_db(), get_client())
    return _service


def get_user_id() -> str:
    """Id of the user this server acts for.

    Raises:
        Unauthorized: If MONOBUDGET_USER_ID is not set.
    """
    return require_user(_user_id or os.environ.get("MONOBUDGET_USER_ID"))


def init_for_testing(
    db: Database,
    client: MonobankClient | None = None,
    user_id: str | None = "test_user",
    engine: SyncEngine | None = None,
) -> None:
    """Initialize server with test database, client and user.

    Args:
        db: Database instance to use.
        client: Monobank client (may use a mock transport), or None.
        user_id: Authenticated user; None simulates a missing login.
        engine: Optional preconfigured sync engine.
    """
    global _config, _db, _client, _sync_engine, _service, _user_id
    _config = AppConfig()
    _db = db
    _client = client or MonobankClient(lambda: "test_token")
    _sync_engine = engine or SyncEngine(db, _client, _config.sync)
    _service = BudgetService(db, client)
    _user_id = user_id


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid date '{value}', expected YYYY-MM-DD") from e


def _month_budget_json(month_budget: MonthBudget, include_transactions: bool = False) -> dict[str, Any]:
    exclude = None if include_transactions else {"daily_limits": {"__all__": {"transactions"}}}
    return month_budget.model_dump(mode="json", exclude=exclude)


def _text(result: Any) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(result, ensure_ascii=False, indent=2))]


# ============================================================================
# Tools
# ============================================================================

_DATE_PROPERTY = {
    "type": "string",
    "description": "Any date inside the financial month (YYYY-MM-DD), default today",
}

_TRANSACTION_ID = {"type": "string", "description": "Transaction id"}


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List available tools."""
    return [
        Tool(
            name="sync_data",
            description="Sync transactions with Monobank. The first sync loads 12 months and can take several minutes.",
            inputSchema={
                "type": "object",
                "properties": {
                    "force_full": {
                        "type": "boolean",
                        "description": "Re-run the full historical backfill",
                        "default": False,
                    }
                },
            },
        ),
        Tool(
            name="cancel_sync",
            description="Stop a running sync after the current request.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="get_sync_status",
            description="Sync state, progress and cache statistics.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="get_month_budget",
            description="Daily spending limits for a financial month. Answers: 'How much can I spend today?'",
            inputSchema={
                "type": "object",
                "properties": {
                    "date": _DATE_PROPERTY,
                    "balance": {
                        "type": "integer",
                        "description": "Available balance in kopecks (default: latest account balances)",
                    },
                    "total_budget": {
                        "type": "integer",
                        "description": "Explicit month budget in kopecks",
                    },
                    "skip_historical_limits": {
                        "type": "boolean",
                        "description": "Recompute elapsed days instead of using saved limits",
                        "default": False,
                    },
                    "include_transactions": {
                        "type": "boolean",
                        "description": "Include transactions of every day",
                        "default": False,
                    },
                },
            },
        ),
        Tool(
            name="get_burn_rate",
            description="Actual daily spending versus the daily limit, with month-end projection.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="predict_balance",
            description="Project the balance for the next 12 months from recent net spending.",
            inputSchema={
                "type": "object",
                "properties": {
                    "months_back": {
                        "type": "integer",
                        "description": "Months of history to learn from",
                        "default": 3,
                    },
                },
            },
        ),
        Tool(
            name="list_transactions",
            description="Transactions of a financial month with categories and exclusion flags.",
            inputSchema={
                "type": "object",
                "properties": {
                    "date": _DATE_PROPERTY,
                    "limit": {"type": "integer", "description": "Maximum results", "default": 50},
                },
            },
        ),
        Tool(
            name="exclude_transaction",
            description="Exclude a transaction from spending (or undo with excluded=false).",
            inputSchema={
                "type": "object",
                "properties": {
                    "transaction_id": _TRANSACTION_ID,
                    "excluded": {"type": "boolean", "default": True},
                },
                "required": ["transaction_id"],
            },
        ),
        Tool(
            name="include_transaction",
            description="Count a transfer/ATM/savings transaction as spending (or undo with included=false).",
            inputSchema={
                "type": "object",
                "properties": {
                    "transaction_id": _TRANSACTION_ID,
                    "included": {"type": "boolean", "default": True},
                },
                "required": ["transaction_id"],
            },
        ),
        Tool(
            name="get_categories",
            description="Built-in and custom categories.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="create_category",
            description="Create a custom category.",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "icon": {"type": "string"},
                    "color": {"type": "string", "description": "Hex color like #ff0000"},
                },
                "required": ["name"],
            },
        ),
        Tool(
            name="delete_category",
            description="Delete a custom category.",
            inputSchema={
                "type": "object",
                "properties": {"category_id": {"type": "string"}},
                "required": ["category_id"],
            },
        ),
        Tool(
            name="set_transaction_category",
            description="Assign a category to a transaction; omit category_key to reset.",
            inputSchema={
                "type": "object",
                "properties": {
                    "transaction_id": _TRANSACTION_ID,
                    "category_key": {"type": "string"},
                },
                "required": ["transaction_id"],
            },
        ),
        Tool(
            name="set_transaction_comment",
            description="Set or clear a personal comment on a transaction.",
            inputSchema={
                "type": "object",
                "properties": {
                    "transaction_id": _TRANSACTION_ID,
                    "comment": {"type": "string"},
                },
                "required": ["transaction_id"],
            },
        ),
        Tool(
            name="get_spending_by_category",
            description="Spending per category in a financial month. Answers: 'Where does my money go?'",
            inputSchema={
                "type": "object",
                "properties": {
                    "date": _DATE_PROPERTY,
                    "top_n": {"type": "integer", "description": "Number of top categories to return"},
                },
            },
        ),
        Tool(
            name="get_spending_statistics",
            description="Savings rate, average and best/worst day, and spending per weekday for a financial month.",
            inputSchema={"type": "object", "properties": {"date": _DATE_PROPERTY}},
        ),
        Tool(
            name="compare_months",
            description="Spending of a financial month against the previous one, overall and per category.",
            inputSchema={"type": "object", "properties": {"date": _DATE_PROPERTY}},
        ),
        Tool(
            name="get_category_budgets",
            description="Split the month's budget across categories and show progress (under/warning/over).",
            inputSchema={
                "type": "object",
                "properties": {
                    "date": _DATE_PROPERTY,
                    "budgets": {
                        "type": "object",
                        "description": "Fixed budgets in kopecks by category key",
                        "additionalProperties": {"type": "integer", "minimum": 0},
                    },
                },
            },
        ),
        Tool(
            name="convert_currency",
            description="Convert an amount in minor units to UAH kopecks using Monobank rates.",
            inputSchema={
                "type": "object",
                "properties": {
                    "amount": {"type": "integer", "description": "Amount in minor units"},
                    "currency_code": {"type": "integer", "description": "ISO 4217 numeric code, e.g. 840"},
                },
                "required": ["amount", "currency_code"],
            },
        ),
        Tool(
            name="update_settings",
            description="Change the financial month start day, AI budget mode or synced accounts.",
            inputSchema={
                "type": "object",
                "properties": {
                    "financial_month_start": {"type": "integer", "minimum": 1, "maximum": 31},
                    "use_ai_budget": {"type": "boolean"},
                    "account_ids": {"type": "array", "items": {"type": "string"}},
                },
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Handle tool calls."""
    try:
        result = await _dispatch(name, arguments or {})
    except MonoBudgetError as e:
        logger.warning("Tool %s failed: %s", name, e)
        result = {"error": str(e), "kind": type(e).__name__}
    return _text(result)


async def _dispatch(name: str, arguments: dict[str, Any]) -> Any:
    user_id = get_user_id()
    service = get_service()

    if name == "sync_data":
        engine = get_sync_engine()
        return await engine.sync(user_id, force_full=arguments.get("force_full", False))

    elif name == "cancel_sync":
        return {"cancelled": get_sync_engine().cancel(user_id)}

    elif name == "get_sync_status":
        return get_sync_status(get_db(), user_id, get_sync_engine())

    elif name == "get_month_budget":
        month_budget = await service.get_month_budget(
            user_id,
            anchor=_parse_date(arguments.get("date")),
            balance=arguments.get("balance"),
            total_budget=arguments.get("total_budget"),
            skip_historical_limits=arguments.get("skip_historical_limits", False),
        )
        return _month_budget_json(month_budget, arguments.get("include_transactions", False))

    elif name == "get_burn_rate":
        return await service.get_burn_rate(user_id)

    elif name == "predict_balance":
        return await service.get_balance_forecast(user_id, months_back=arguments.get("months_back", 3))

    elif name == "list_transactions":
        return service.list_transactions(
            user_id,
            anchor=_parse_date(arguments.get("date")),
            limit=arguments.get("limit", 50),
        )

    elif name == "exclude_transaction":
        excluded = service.set_excluded(user_id, arguments.get("transaction_id"), arguments.get("excluded", True))
        return {"excluded_ids": sorted(excluded)}

    elif name == "include_transaction":
        included = service.set_included(user_id, arguments.get("transaction_id"), arguments.get("included", True))
        return {"included_ids": sorted(included)}

    elif name == "get_categories":
        return [c.model_dump() for c in service.get_categories(user_id)]

    elif name == "create_category":
        category = service.create_category(
            user_id,
            name=arguments.get("name") or "",
            icon=arguments.get("icon"),
            color=arguments.get("color"),
        )
        return category.model_dump()

    elif name == "delete_category":
        return {"deleted": service.delete_category(user_id, arguments.get("category_id"))}

    elif name == "set_transaction_category":
        service.assign_category(user_id, arguments.get("transaction_id"), arguments.get("category_key"))
        return {"status": "ok"}

    elif name == "set_transaction_comment":
        service.set_comment(user_id, arguments.get("transaction_id"), arguments.get("comment"))
        return {"status": "ok"}

    elif name == "get_spending_by_category":
        return await service.get_category_spending(
            user_id,
            anchor=_parse_date(arguments.get("date")),
            top_n=arguments.get("top_n"),
        )

    elif name == "get_spending_statistics":
        return await service.get_statistics(user_id, anchor=_parse_date(arguments.get("date")))

    elif name == "compare_months":
        return await service.compare_months(user_id, anchor=_parse_date(arguments.get("date")))

    elif name == "get_category_budgets":
        budgets = arguments.get("budgets") or {}
        if not isinstance(budgets, dict):
            raise ValidationError("budgets must be an object of category key to amount")
        return await service.get_category_budgets(
            user_id,
            anchor=_parse_date(arguments.get("date")),
            budgets=budgets,
        )

    elif name == "convert_currency":
        amount = arguments.get("amount")
        currency_code = arguments.get("currency_code")
        if not isinstance(amount, int) or not isinstance(currency_code, int):
            raise ValidationError("amount and currency_code must be integers")
        rates = await service.get_rates()
        approximate = False
        if currency_code != UAH:
            try:
                find_rate(currency_code, rates)
            except ConversionUnavailable:
                approximate = True
        return {
            "amount": amount,
            "currency_code": currency_code,
            "uah_amount": convert_to_uah(amount, currency_code, rates),
            "approximate": approximate,
        }

    elif name == "update_settings":
        settings = service.update_settings(
            user_id,
            financial_month_start=arguments.get("financial_month_start"),
            use_ai_budget=arguments.get("use_ai_budget"),
            account_ids=arguments.get("account_ids"),
        )
        return settings.model_dump()

    else:
        raise ValueError(f"Unknown tool: {name}")


# ============================================================================
# Resources
# ============================================================================

@server.list_resources()
async def list_resources() -> list[Resource]:
    """List available resources."""
    return [
        Resource(
            uri="monobudget://budget/current",
            name="Current budget",
            description="Daily limits of the current financial month",
            mimeType="application/json",
        ),
        Resource(
            uri="monobudget://categories",
            name="Categories",
            description="Built-in and custom categories",
            mimeType="application/json",
        ),
        Resource(
            uri="monobudget://settings",
            name="Settings",
            description="Financial month start, accounts and budget mode",
            mimeType="application/json",
        ),
        Resource(
            uri="monobudget://sync-status",
            name="Sync Status",
            description="Sync state and cache statistics",
            mimeType="application/json",
        ),
    ]


@server.read_resource()
async def read_resource(uri: str) -> str:
    """Read resource content."""
    user_id = get_user_id()
    service = get_service()
    uri = str(uri)

    if uri == "monobudget://budget/current":
        result = _month_budget_json(await service.get_month_budget(user_id))
    elif uri == "monobudget://categories":
        result = [c.model_dump() for c in service.get_categories(user_id)]
    elif uri == "monobudget://settings":
        result = service.get_settings(user_id).model_dump()
    elif uri == "monobudget://sync-status":
        result = get_sync_status(get_db(), user_id, get_sync_engine())
    else:
        raise ValueError(f"Unknown resource: {uri}")

    return json.dumps(result, ensure_ascii=False, indent=2)


# ============================================================================
# Main
# ============================================================================

def main() -> None:
    """Run the MCP server."""
    import asyncio

    from mcp.server.stdio import stdio_server

    config = get_config()
    # stdout carries the MCP protocol
    logging.basicConfig(
        level=config.log_level.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    async def run():
        refresher = None
        if _env_token() and os.environ.get("MONOBUDGET_USER_ID"):
            refresher = RevalidationTask(get_sync_engine(), get_user_id(), config.refresh)
            refresher.start()
        try:
            async with stdio_server() as (read_stream, write_stream):
                await server.run(read_stream, write_stream, server.create_initialization_options())
        finally:
            if refresher is not None:
                await refresher.stop()

    asyncio.run(run())


if __name__ == "__main__":
    main()
