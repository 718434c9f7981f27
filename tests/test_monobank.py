"""Tests for the Monobank HTTP client."""

import httpx
import pytest

from monobudget_mcp.errors import MonobankAuthError, RateLimitedError, SyncError
from monobudget_mcp.monobank import MonobankClient


def make_client(handler, token: str | None = "test_token") -> MonobankClient:
    return MonobankClient(lambda: token, base_url="https://api.example.test", transport=httpx.MockTransport(handler))


class TestMonobankClient:
    """Test request construction and error mapping."""

    @pytest.mark.asyncio
    async def test_statement_request(self):
        """Statements are requested with the token header."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["token"] = request.headers.get("X-Token")
            return httpx.Response(200, json=[{"id": "a", "time": 1700000000, "amount": -100}])

        items = await make_client(handler).get_statement("acc1", 1700000000, 1700086400)

        assert seen["path"] == "/personal/statement/acc1/1700000000/1700086400"
        assert seen["token"] == "test_token"
        assert items[0]["id"] == "a"

    @pytest.mark.asyncio
    async def test_client_info(self):
        """Client info is read from the personal endpoint."""
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/personal/client-info"
            return httpx.Response(200, json={"name": "Test", "accounts": [{"id": "acc1", "currencyCode": 980}]})

        info = await make_client(handler).get_client_info()
        assert info["accounts"][0]["id"] == "acc1"

    @pytest.mark.asyncio
    async def test_currency_is_public(self):
        """Currency rates are fetched without a token."""
        def handler(request: httpx.Request) -> httpx.Response:
            assert "X-Token" not in request.headers
            return httpx.Response(200, json=[
                {"currencyCodeA": 840, "currencyCodeB": 980, "date": 1700000000, "rateBuy": 41.0, "rateSell": 41.5},
            ])

        rates = await make_client(handler, token=None).get_currency_rates()
        assert rates[0].currency_code_a == 840
        assert rates[0].rate_sell == 41.5

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        """HTTP 429 raises RateLimitedError."""
        client = make_client(lambda request: httpx.Response(429, json={"errorDescription": "Too many requests"}))
        with pytest.raises(RateLimitedError):
            await client.get_statement("acc1", 1, 2)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_errors(self, status):
        """Rejected tokens raise MonobankAuthError."""
        client = make_client(lambda request: httpx.Response(status))
        with pytest.raises(MonobankAuthError):
            await client.get_client_info()

    @pytest.mark.asyncio
    async def test_missing_token(self):
        """A missing token fails before any request."""
        client = make_client(lambda request: httpx.Response(200, json=[]), token=None)
        with pytest.raises(MonobankAuthError):
            await client.get_statement("acc1", 1, 2)

    @pytest.mark.asyncio
    async def test_server_error(self):
        """Server errors raise SyncError with the status."""
        client = make_client(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(SyncError, match="500"):
            await client.get_statement("acc1", 1, 2)

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        """Invalid JSON raises SyncError."""
        client = make_client(lambda request: httpx.Response(200, text="not json"))
        with pytest.raises(SyncError):
            await client.get_statement("acc1", 1, 2)

    @pytest.mark.asyncio
    async def test_transport_error(self):
        """Transport failures raise SyncError."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(SyncError):
            await make_client(handler).get_statement("acc1", 1, 2)

    @pytest.mark.asyncio
    async def test_token_not_in_errors(self):
        """The token never appears in error messages."""
        client = make_client(lambda request: httpx.Response(500, text="boom"), token="super-secret")
        with pytest.raises(SyncError) as excinfo:
            await client.get_statement("acc1", 1, 2)
        assert "super-secret" not in str(excinfo.value)
