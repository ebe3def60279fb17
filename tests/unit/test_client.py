"""
Tests for storesync.client module.
"""
import json
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from storesync.client import StorefrontClient, parse_retry_after
from storesync.config import StorefrontConfig
from storesync.exceptions import (
    ConfigurationError,
    StorefrontAPIError,
    StorefrontConnectionError,
    StorefrontDataError,
)


def _client(storefront_config, handler):
    return StorefrontClient(storefront_config, transport=httpx.MockTransport(handler))


class TestStorefrontClientInit:
    """Tests for client construction."""

    def test_missing_credentials(self):
        """Client refuses to start without credentials."""
        with pytest.raises(ConfigurationError):
            StorefrontClient(StorefrontConfig(store_url="", access_token=""))

    def test_urls_and_headers(self, storefront_config):
        client = StorefrontClient(storefront_config)
        assert client.graphql_url == "https://test-shop.myshopify.com/admin/api/2024-01/graphql.json"
        assert client.headers["X-Shopify-Access-Token"] == "shpat_test_token"

    def test_scheme_stripped(self):
        config = StorefrontConfig(store_url="https://shop.example.com/", access_token="t")
        assert StorefrontClient(config).base_url == "https://shop.example.com/admin/api/2024-01"


class TestGraphQL:
    """Tests for GraphQL requests."""

    @pytest.mark.asyncio
    async def test_returns_data(self, storefront_config):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            seen["token"] = request.headers["X-Shopify-Access-Token"]
            return httpx.Response(200, json={"data": {"orders": {"nodes": []}}})

        async with _client(storefront_config, handler) as client:
            data = await client.graphql("query { orders { nodes { id } } }", {"first": 10})

        assert data == {"orders": {"nodes": []}}
        assert seen["url"].endswith("/admin/api/2024-01/graphql.json")
        assert seen["body"]["variables"] == {"first": 10}
        assert seen["token"] == "shpat_test_token"

    @pytest.mark.asyncio
    async def test_graphql_errors(self, storefront_config):
        """A payload with `errors` raises StorefrontAPIError carrying the code."""
        def handler(request):
            return httpx.Response(200, json={
                "errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]
            })

        async with _client(storefront_config, handler) as client:
            with pytest.raises(StorefrontAPIError) as exc_info:
                await client.graphql("query { shop { name } }")

        assert exc_info.value.error_code == "THROTTLED"
        assert "Throttled" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_http_error(self, storefront_config):
        async with _client(storefront_config, lambda request: httpx.Response(500, text="boom")) as client:
            with pytest.raises(StorefrontAPIError) as exc_info:
                await client.graphql("query { shop { name } }")

        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_rate_limited(self, storefront_config):
        """429 is a transient page error with retry_after."""
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "2.0"}, text="Exceeded 2 calls per second")

        async with _client(storefront_config, handler) as client:
            with pytest.raises(StorefrontConnectionError) as exc_info:
                await client.graphql("query { shop { name } }")

        assert exc_info.value.retry_after == 2

    @pytest.mark.asyncio
    async def test_rate_limited_with_http_date(self, storefront_config):
        """Retry-After may be an HTTP-date instead of seconds."""
        retry_at = datetime.now(timezone.utc) + timedelta(seconds=30)

        def handler(request):
            return httpx.Response(429, headers={"Retry-After": format_datetime(retry_at, usegmt=True)})

        async with _client(storefront_config, handler) as client:
            with pytest.raises(StorefrontConnectionError) as exc_info:
                await client.graphql("query { shop { name } }")

        assert 25 <= exc_info.value.retry_after <= 30

    @pytest.mark.asyncio
    async def test_invalid_json(self, storefront_config):
        async with _client(storefront_config, lambda request: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(StorefrontDataError):
                await client.graphql("query { shop { name } }")

    @pytest.mark.asyncio
    async def test_missing_data(self, storefront_config):
        async with _client(storefront_config, lambda request: httpx.Response(200, json={"data": None})) as client:
            with pytest.raises(StorefrontDataError):
                await client.graphql("query { shop { name } }")

    @pytest.mark.asyncio
    async def test_timeout(self, storefront_config):
        """Timeouts surface as StorefrontConnectionError."""
        client = StorefrontClient(storefront_config)
        client._client = MagicMock()
        client._client.request = AsyncMock(side_effect=httpx.ReadTimeout("timed out"))

        with pytest.raises(StorefrontConnectionError) as exc_info:
            await client.graphql("query { shop { name } }")

        assert "timeout" in str(exc_info.value).lower()

    @pytest.mark.asyncio
    async def test_connection_refused(self, storefront_config):
        client = StorefrontClient(storefront_config)
        client._client = MagicMock()
        client._client.request = AsyncMock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(StorefrontConnectionError):
            await client.graphql("query { shop { name } }")


class TestRestGet:
    """Tests for REST requests."""

    @pytest.mark.asyncio
    async def test_next_url_from_link_header(self, storefront_config):
        next_url = "https://test-shop.myshopify.com/admin/api/2024-01/products.json?page_info=xyz&limit=250"

        def handler(request):
            return httpx.Response(
                200,
                json={"products": [{"id": 1}]},
                headers={"Link": f'<{next_url}>; rel="next"'},
            )

        async with _client(storefront_config, handler) as client:
            page = await client.rest_get("/products.json?limit=250")

        assert page.data == {"products": [{"id": 1}]}
        assert page.next_url == next_url

    @pytest.mark.asyncio
    async def test_last_page(self, storefront_config):
        async with _client(storefront_config, lambda r: httpx.Response(200, json={"products": []})) as client:
            page = await client.rest_get("/products.json")

        assert page.next_url is None


class TestParseRetryAfter:
    """Tests for Retry-After parsing."""

    @pytest.mark.parametrize("value, expected", [
        ("2", 2),
        ("2.7", 2),
        ("-5", 0),
        ("", None),
        (None, None),
        ("soon", None),
        ("inf", None),
    ])
    def test_seconds_and_garbage(self, value, expected):
        assert parse_retry_after(value) == expected

    def test_past_date_is_zero(self):
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0
