"""Sync engine pulling Monobank statements into the local store."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import date
from typing import Any

import pydantic

from .config import SyncConfig
from .database import MAX_BATCH_SIZE, Database
from .errors import MonobankAuthError, RateLimitedError, SyncError
from .models import UAH, SyncMode, SyncProgress, SyncState, Transaction, UserSettings
from .monobank import MonobankClient
from .periods import calendar_month_timestamps, end_of_day_timestamp, shift_months, start_of_day_timestamp

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[SyncProgress], Any]

# (account_id, from_time, to_time)
WorkUnit = tuple[str, int, int]


class SyncEngine:
    """Per-user synchronization with the Monobank API.

    Picks backfill, incremental or same-day mode from the persisted sync
    markers, paces requests against the API rate limit and coalesces
    concurrent runs for the same user into one.
    """

    def __init__(
        self,
        db: Database,
        client: MonobankClient,
        config: SyncConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize sync engine.

        Args:
            db: Database instance for storing synced data.
            client: Monobank API client.
            config: Timing and lookback settings.
            sleep: Awaitable sleep, replaceable in tests.
            clock: Current epoch time source.
        """
        self.db = db
        self.client = client
        self.config = config or SyncConfig()
        self.sleep = sleep
        self.clock = clock

        self._in_flight: dict[str, asyncio.Task] = {}
        self._progress: dict[str, SyncProgress] = {}
        self._states: dict[str, SyncState] = {}
        self._cancelled: set[str] = set()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def decide_mode(self, settings: UserSettings, now: float | None = None) -> SyncMode:
        """Choose the sync mode from the persisted markers."""
        now = self.clock() if now is None else now
        last_sync = settings.last_sync_time
        if not settings.historical_data_loaded or not last_sync:
            return SyncMode.BACKFILL
        if now - last_sync > self.config.stale_after_days * 86400:
            return SyncMode.BACKFILL
        if date.fromtimestamp(last_sync) == date.fromtimestamp(now):
            return SyncMode.SAME_DAY
        return SyncMode.INCREMENTAL

    def get_state(self, user_id: str) -> SyncState:
        """Current sync state of a user."""
        if user_id in self._states:
            return self._states[user_id]
        settings = self.db.get_user_settings(user_id)
        return SyncState.SYNCED if settings.historical_data_loaded else SyncState.NOT_SYNCED

    def get_progress(self, user_id: str) -> SyncProgress | None:
        """Last progress report of a user's sync, if any."""
        return self._progress.get(user_id)

    def is_running(self, user_id: str) -> bool:
        task = self._in_flight.get(user_id)
        return task is not None and not task.done()

    def cancel(self, user_id: str) -> bool:
        """Ask a running sync to stop after the current work unit.

        Returns:
            True if a sync was running.
        """
        if not self.is_running(user_id):
            return False
        self._cancelled.add(user_id)
        return True

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def sync(
        self,
        user_id: str,
        force_full: bool = False,
        on_progress: ProgressCallback | None = None,
        mode: SyncMode | None = None,
    ) -> dict[str, Any]:
        """Synchronize a user's transactions.

        A call made while a sync for the same user is running waits for that
        run and returns its result.

        Args:
            user_id: Owner of the data.
            force_full: Re-run the full backfill regardless of markers.
            on_progress: Called with SyncProgress after every work unit.
            mode: Force a specific mode.

        Returns:
            Dictionary with status, mode, saved count and failed units.

        Raises:
            SyncError: If the token is rejected or accounts cannot be listed.
        """
        task = self._in_flight.get(user_id)
        if task is not None and not task.done():
            logger.info("Sync already in progress, joining it")
            return await asyncio.shield(task)

        if force_full:
            mode = SyncMode.BACKFILL
        task = asyncio.create_task(self._run(user_id, mode, on_progress))
        self._in_flight[user_id] = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._in_flight.get(user_id) is task:
                del self._in_flight[user_id]

    async def _run(
        self,
        user_id: str,
        mode: SyncMode | None,
        on_progress: ProgressCallback | None,
    ) -> dict[str, Any]:
        start_time = self.clock()
        self._cancelled.discard(user_id)
        try:
            settings = await self._ensure_accounts(user_id)
            mode = mode or self.decide_mode(settings, start_time)
            self._states[user_id] = SyncState.BACKFILLING if mode == SyncMode.BACKFILL else SyncState.REFRESHING
            logger.info("Starting %s sync for %d account(s)", mode.value, len(settings.account_ids))

            if mode == SyncMode.BACKFILL:
                result = await self._backfill(user_id, settings, int(start_time), on_progress)
            else:
                result = await self._refresh(user_id, settings, mode, int(start_time), on_progress)
        finally:
            self._states.pop(user_id, None)
            self._cancelled.discard(user_id)

        result["mode"] = mode.value
        result["sync_duration_ms"] = int((self.clock() - start_time) * 1000)
        logger.info(
            "Sync finished: status=%s saved=%d failed_units=%d",
            result["status"], result["saved"], len(result["failed_units"]),
        )
        return result

    async def _ensure_accounts(self, user_id: str) -> UserSettings:
        """Discover accounts from client info when none are configured."""
        settings = self.db.get_user_settings(user_id)
        if settings.account_ids:
            return settings

        info = await self.client.get_client_info()
        accounts = info.get("accounts") or []
        if not accounts:
            raise SyncError("No accounts available for synchronization")

        account_ids = [str(a["id"]) for a in accounts]
        currencies = {str(a["id"]): a.get("currencyCode", UAH) for a in accounts}
        self.db.set_setting(user_id, "account_ids", account_ids)
        self.db.set_setting(user_id, "account_currencies", currencies)
        return self.db.get_user_settings(user_id)

    # -------------------------------------------------------------------------
    # Modes
    # -------------------------------------------------------------------------

    async def _backfill(
        self,
        user_id: str,
        settings: UserSettings,
        now: int,
        on_progress: ProgressCallback | None,
    ) -> dict[str, Any]:
        """Fetch lookback_months calendar months, newest first."""
        today = date.fromtimestamp(now)
        units: list[WorkUnit] = []
        for offset in range(self.config.lookback_months):
            from_ts, to_ts = calendar_month_timestamps(shift_months(today.replace(day=1), -offset))
            for account_id in settings.account_ids:
                units.append((account_id, from_ts, min(to_ts, now)))

        saved = 0
        failed: list[dict[str, Any]] = []
        cancelled = False

        for index, (account_id, from_ts, to_ts) in enumerate(units):
            if index > 0:
                # One statement request per account per minute
                await self.sleep(self.config.rate_limit_delay)
            if user_id in self._cancelled:
                cancelled = True
                break

            label = f"{date.fromtimestamp(from_ts):%Y-%m} account {account_id}"
            transactions = await self._fetch_unit(user_id, settings, account_id, from_ts, to_ts, failed, on_progress)
            if transactions is not None:
                saved += self._save(user_id, transactions)
            self._report(user_id, on_progress, index + 1, len(units), f"Loaded {label}")

        if not cancelled:
            self.db.set_setting(user_id, "historical_data_loaded", True)
            self.db.set_setting(user_id, "last_sync_time", now)
            self.db.set_setting(user_id, "historical_from_time", min(u[1] for u in units) if units else now)
            self.db.set_setting(user_id, "historical_to_time", now)

        return {
            "status": self._status(cancelled, failed),
            "saved": saved,
            "failed_units": failed,
            "units": len(units),
        }

    async def _refresh(
        self,
        user_id: str,
        settings: UserSettings,
        mode: SyncMode,
        now: int,
        on_progress: ProgressCallback | None,
    ) -> dict[str, Any]:
        """Re-fetch today's (same-day) or the since-last-sync (incremental) window."""
        today = date.fromtimestamp(now)
        if mode == SyncMode.SAME_DAY:
            from_ts = start_of_day_timestamp(today)
            delete_to = end_of_day_timestamp(today)
        else:
            from_ts = settings.last_sync_time or start_of_day_timestamp(today)
            delete_to = now

        saved = 0
        failed: list[dict[str, Any]] = []
        cancelled = False
        accounts = settings.account_ids

        for index, account_id in enumerate(accounts):
            if index > 0:
                await self.sleep(self.config.account_delay)
            if user_id in self._cancelled:
                cancelled = True
                break

            transactions = await self._fetch_unit(user_id, settings, account_id, from_ts, now, failed, on_progress)
            if transactions is not None:
                # Replace the window only once the fresh data is in hand
                saved += self.db.replace_transactions(user_id, from_ts, delete_to, transactions, account_id)
            self._report(user_id, on_progress, index + 1, len(accounts), f"Refreshed account {account_id}")

        if not cancelled and not failed:
            self.db.set_setting(user_id, "last_sync_time", now)

        return {
            "status": self._status(cancelled, failed),
            "saved": saved,
            "failed_units": failed,
            "units": len(accounts),
        }

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _fetch_unit(
        self,
        user_id: str,
        settings: UserSettings,
        account_id: str,
        from_ts: int,
        to_ts: int,
        failed: list[dict[str, Any]],
        on_progress: ProgressCallback | None,
    ) -> list[Transaction] | None:
        """Fetch one account window, retrying once after a rate limit.

        Returns None and records the unit in failed when it is skipped.
        """
        currency = settings.account_currencies.get(account_id, UAH)
        try:
            try:
                items = await self.client.get_statement(account_id, from_ts, to_ts)
            except RateLimitedError:
                logger.warning("Rate limited on account %s, retrying in %ss", account_id, self.config.rate_limit_cooldown)
                progress = self._progress.get(user_id)
                self._report(
                    user_id,
                    on_progress,
                    progress.completed if progress else 0,
                    progress.total if progress else 0,
                    "Rate limited, waiting before retry",
                )
                await self.sleep(self.config.rate_limit_cooldown)
                items = await self.client.get_statement(account_id, from_ts, to_ts)
            return [Transaction.from_monobank(item, account_id, currency) for item in items]
        except MonobankAuthError:
            raise
        except (SyncError, pydantic.ValidationError) as e:
            logger.error("Skipping account %s window %s-%s: %s", account_id, from_ts, to_ts, e)
            failed.append({"account_id": account_id, "from": from_ts, "to": to_ts, "error": str(e)})
            return None

    def _save(self, user_id: str, transactions: list[Transaction]) -> int:
        saved = 0
        for offset in range(0, len(transactions), MAX_BATCH_SIZE):
            saved += self.db.save_transactions(user_id, transactions[offset:offset + MAX_BATCH_SIZE])
        return saved

    def _report(
        self,
        user_id: str,
        on_progress: ProgressCallback | None,
        completed: int,
        total: int,
        message: str,
    ) -> None:
        progress = SyncProgress(completed=completed, total=total, message=message)
        self._progress[user_id] = progress
        if on_progress is not None:
            on_progress(progress)

    @staticmethod
    def _status(cancelled: bool, failed: list[dict[str, Any]]) -> str:
        if cancelled:
            return "cancelled"
        if failed:
            return "partial"
        return "synced"
