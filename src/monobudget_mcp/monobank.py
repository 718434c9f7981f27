"""HTTP client for the Monobank personal API."""

import logging
from collections.abc import Callable
from typing import Any

import httpx

from .errors import MonobankAuthError, RateLimitedError, SyncError
from .models import CurrencyRate

logger = logging.getLogger(__name__)

MONOBANK_API_URL = "https://api.monobank.ua"


class MonobankClient:
    """Monobank API client.

    The token is requested from token_provider for every request and only
    ever placed in the X-Token header.
    """

    def __init__(
        self,
        token_provider: Callable[[], str | None],
        base_url: str = MONOBANK_API_URL,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize client.

        Args:
            token_provider: Returns the user's personal API token.
            base_url: API root URL.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.token_provider = token_provider
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _get(self, path: str, authorized: bool = True) -> Any:
        headers = {}
        if authorized:
            token = self.token_provider()
            if not token:
                raise MonobankAuthError("Monobank token is not configured")
            headers["X-Token"] = token

        async with httpx.AsyncClient(base_url=self.base_url, transport=self.transport) as client:
            try:
                response = await client.get(path, headers=headers, timeout=self.timeout)
            except httpx.HTTPError as e:
                raise SyncError(f"HTTP error calling {path}: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError(f"Rate limited on {path}")
        if response.status_code in (401, 403):
            raise MonobankAuthError(f"Monobank rejected the token (status {response.status_code})")
        if response.status_code != 200:
            raise SyncError(f"API returned status {response.status_code}: {response.text}")

        try:
            return response.json()
        except ValueError as e:
            raise SyncError(f"Invalid JSON response: {e}") from e

    async def get_client_info(self) -> dict[str, Any]:
        """Client profile with accounts and jars."""
        return await self._get("/personal/client-info")

    async def get_statement(self, account_id: str, from_time: int, to_time: int) -> list[dict[str, Any]]:
        """Raw statement items of one account for [from_time, to_time].

        Monobank serves at most 31 days + 1 hour per request.
        """
        data = await self._get(f"/personal/statement/{account_id}/{from_time}/{to_time}")
        if not isinstance(data, list):
            raise SyncError(f"Unexpected statement payload for account {account_id}")
        logger.debug("Fetched %d statement items for account %s", len(data), account_id)
        return data

    async def get_currency_rates(self) -> list[CurrencyRate]:
        """Current exchange rates (public endpoint)."""
        data = await self._get("/bank/currency", authorized=False)
        if not isinstance(data, list):
            raise SyncError("Unexpected currency payload")
        return [CurrencyRate.model_validate(item) for item in data]
