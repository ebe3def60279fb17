"""
Async HTTP transport for the storefront Admin API.

GraphQL (POST graphql.json) carries orders, customers and discount codes;
REST (GET, Link-header continuation) carries the product catalog.

Features:
- Connection pooling with httpx
- Per-request timeouts (GraphQL and REST differ)
- Request correlation IDs for tracing
- No retries: a failed request surfaces as a page error to the paginator
"""
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

import httpx

from storesync.config import StorefrontConfig, config
from storesync.exceptions import (
    ConfigurationError,
    StorefrontAPIError,
    StorefrontConnectionError,
    StorefrontDataError,
)
from storesync.observability import get_logger, get_correlation_id, Timer
from storesync.pagination import RestPage, parse_link_header

logger = get_logger(__name__)


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """
    Seconds to wait from a Retry-After header.

    Accepts delta-seconds or an HTTP-date; anything unparseable is None.
    """
    if not value:
        return None
    try:
        return max(0, int(float(value)))
    except (ValueError, OverflowError):
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, int((when - datetime.now(timezone.utc)).total_seconds()))


class StorefrontClient:
    """
    Storefront Admin API client.

    Usage:
        async with StorefrontClient() as client:
            data = await client.graphql(ORDERS_QUERY, {"first": 250})

        # Or with manual lifecycle:
        client = StorefrontClient()
        await client.connect()
        try:
            page = await client.rest_get("/products.json", {"limit": 250})
        finally:
            await client.close()
    """

    def __init__(
        self,
        storefront_config: Optional[StorefrontConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize client.

        Args:
            storefront_config: Credentials and timeouts (defaults to global config)
            transport: Optional httpx transport (e.g. httpx.MockTransport in tests)

        Raises:
            ConfigurationError: store URL or access token missing
        """
        self.config = storefront_config or config.storefront
        if not self.config.is_configured:
            raise ConfigurationError(
                "Storefront credentials not configured: set SHOPIFY_STORE_URL and SHOPIFY_ACCESS_TOKEN"
            )
        self.base_url = self.config.admin_base_url
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def graphql_url(self) -> str:
        return f"{self.base_url}/graphql.json"

    @property
    def headers(self) -> Dict[str, str]:
        """Request headers with auth."""
        return {
            "X-Shopify-Access-Token": self.config.access_token,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def connect(self) -> None:
        """Create HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                timeout=self.config.graphql_timeout,
                transport=self._transport,
                limits=httpx.Limits(
                    max_keepalive_connections=5,
                    max_connections=10,
                ),
            )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "StorefrontClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _send(
        self,
        method: str,
        url: str,
        timeout: float,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """
        Execute a single HTTP request.

        Raises:
            StorefrontConnectionError: Network/timeout errors
            StorefrontAPIError: HTTP status >= 400
        """
        if not self._client:
            await self.connect()

        request_headers = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            request_headers["X-Request-ID"] = correlation_id

        endpoint = url.replace(self.base_url, "") or url

        try:
            with Timer(f"storefront {method} {endpoint}", logger, warn_threshold_ms=10_000):
                response = await self._client.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json,
                    headers=request_headers if request_headers else None,
                    timeout=timeout,
                )
        except httpx.TimeoutException as e:
            logger.error(
                f"Request timeout: {method} {endpoint}",
                extra={"endpoint": endpoint, "timeout": timeout},
            )
            raise StorefrontConnectionError(f"Request timeout after {timeout}s", endpoint) from e
        except httpx.RequestError as e:
            logger.error(
                f"Request failed: {method} {endpoint} - {e}",
                extra={"endpoint": endpoint, "error": str(e)},
            )
            raise StorefrontConnectionError(str(e), endpoint) from e

        if response.status_code >= 400:
            error_text = response.text[:500]
            logger.error(
                f"API error {response.status_code}: {error_text}",
                extra={"endpoint": endpoint, "status_code": response.status_code},
            )
            retry_after = response.headers.get("Retry-After")
            if response.status_code == 429:
                raise StorefrontConnectionError(
                    "Rate limited by storefront API",
                    error_text,
                    retry_after=parse_retry_after(retry_after),
                )
            raise StorefrontAPIError(
                f"API returned {response.status_code}",
                details=error_text,
                status_code=response.status_code,
            )

        return response

    @staticmethod
    def _decode(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise StorefrontDataError("Response is not valid JSON", expected="JSON object", got=response.text[:100]) from e
        if not isinstance(body, dict):
            raise StorefrontDataError("Invalid response type", expected="dict", got=type(body).__name__)
        return body

    async def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Execute a GraphQL query.

        Returns:
            The `data` payload

        Raises:
            StorefrontAPIError: HTTP error or a payload carrying `errors`
        """
        response = await self._send(
            "POST",
            self.graphql_url,
            timeout=self.config.graphql_timeout,
            json={"query": query, "variables": variables or {}},
        )
        body = self._decode(response)

        errors = body.get("errors")
        if errors:
            first = errors[0] if isinstance(errors, list) and errors else errors
            message = first.get("message") if isinstance(first, dict) else str(first)
            code = (first.get("extensions") or {}).get("code") if isinstance(first, dict) else None
            logger.error(f"GraphQL errors: {errors}")
            raise StorefrontAPIError("GraphQL error", details=message or "GraphQL error", error_code=code)

        data = body.get("data")
        if not isinstance(data, dict):
            raise StorefrontDataError("GraphQL response missing 'data'", expected="object", got=type(data).__name__)
        return data

    async def rest_get(self, path_or_url: str, params: Optional[Dict[str, Any]] = None) -> RestPage:
        """
        GET a REST resource.

        Args:
            path_or_url: Path relative to the versioned Admin API base
                (e.g. "/products.json") or an absolute continuation URL

        Returns:
            RestPage with decoded body and the `rel="next"` URL (if any)
        """
        if path_or_url.startswith("http"):
            url = path_or_url
        else:
            url = f"{self.base_url}/{path_or_url.lstrip('/')}"

        response = await self._send("GET", url, timeout=self.config.rest_timeout, params=params)
        return RestPage(
            data=self._decode(response),
            next_url=parse_link_header(response.headers.get("link")),
        )
