"""Periodic background sync for one user."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

from .config import RefreshConfig
from .errors import MonoBudgetError
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class RevalidationTask:
    """Runs sync, then waits interval + uniform(0, jitter) seconds, until stopped."""

    def __init__(
        self,
        engine: SyncEngine,
        user_id: str,
        config: RefreshConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.engine = engine
        self.user_id = user_id
        self.config = config or RefreshConfig()
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.runs = 0
        self.last_result: dict[str, Any] | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_delay(self) -> float:
        """Seconds to wait before the next sync."""
        return self.config.interval + self.rng.uniform(0, self.config.jitter)

    def start(self) -> None:
        """Start the loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run_once(self) -> dict[str, Any] | None:
        """Run a single sync; errors are logged, not raised."""
        try:
            self.last_result = await self.engine.sync(self.user_id)
        except MonoBudgetError as e:
            logger.error("Background sync failed: %s", e)
            return None
        finally:
            self.runs += 1
        return self.last_result

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Unexpected error in background sync")
            await self.sleep(self.next_delay())
