"""
Pytest configuration and shared fixtures.
"""
from datetime import date
from typing import Any, Dict, List, Optional, Sequence
from unittest.mock import AsyncMock

import pytest

from storesync.cache import ExpiringCache
from storesync.config import CacheConfig, StorefrontConfig
from storesync.fetcher import StorefrontFetcher
from storesync.models import Order


TODAY = date(2024, 1, 15)


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _money(amount: Any, currency: Optional[str] = None) -> Dict[str, Any]:
    money = {"amount": str(amount)}
    if currency:
        money["currencyCode"] = currency
    return {"shopMoney": money}


def make_order_node(
    order_id: str,
    created_at: str,
    total: Any,
    discount: Any = "0.00",
    subtotal: Any = None,
    tax: Any = "0.00",
    codes: Sequence[str] = (),
    items: Sequence[Dict[str, Any]] = (),
    customer_id: Optional[str] = None,
) -> Dict[str, Any]:
    """GraphQL `orders` node shaped like the Admin API response."""
    if subtotal is None:
        subtotal = total
    return {
        "id": order_id,
        "name": f"#{order_id.rsplit('/', 1)[-1]}",
        "createdAt": created_at,
        "totalPriceSet": _money(total, "ILS"),
        "subtotalPriceSet": _money(subtotal),
        "totalDiscountsSet": _money(discount),
        "totalTaxSet": _money(tax),
        "displayFinancialStatus": "PAID",
        "customer": {"id": customer_id, "email": f"{customer_id}@example.com", "ordersCount": "1"}
        if customer_id else None,
        "discountCodes": list(codes),
        "lineItems": {"nodes": list(items)},
    }


def make_line_item(product_id: Optional[str], quantity: int, revenue: Any, title: str = "Product") -> Dict[str, Any]:
    return {
        "title": title,
        "quantity": quantity,
        "originalTotalSet": _money(revenue),
        "product": {"id": product_id} if product_id else None,
    }


def make_customer_node(
    customer_id: str,
    total_spent: Any = "100.00",
    orders_count: int = 1,
    last_order_at: Optional[str] = "2024-01-10T10:00:00Z",
    email: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": customer_id,
        "firstName": "Dana",
        "lastName": "Levi",
        "email": email or f"{customer_id.rsplit('/', 1)[-1]}@example.com",
        "createdAt": "2023-06-01T08:00:00Z",
        "ordersCount": str(orders_count),
        "totalSpentV2": {"amount": str(total_spent), "currencyCode": "ILS"},
        "lastOrder": {"id": "gid://shopify/Order/1", "createdAt": last_order_at} if last_order_at else None,
    }


def make_discount_node(
    node_id: str,
    codes: Sequence[str],
    percentage: Optional[float] = None,
    amount: Optional[str] = None,
    status: str = "ACTIVE",
    title: str = "Promo",
    usage_count: int = 0,
) -> Dict[str, Any]:
    value: Dict[str, Any] = {}
    if percentage is not None:
        value = {"percentage": percentage}
    elif amount is not None:
        value = {"amount": {"amount": amount}}
    return {
        "id": node_id,
        "codeDiscount": {
            "title": title,
            "status": status,
            "startsAt": "2024-01-01T00:00:00Z",
            "endsAt": None,
            "usageLimit": None,
            "codes": {"nodes": [{"code": code, "usageCount": usage_count} for code in codes]},
            "customerGets": {"value": value},
        },
    }


def connection_page(connection: str, nodes: List[Dict[str, Any]], end_cursor: Optional[str] = None) -> Dict[str, Any]:
    """GraphQL `data` payload for one page of a connection."""
    return {
        connection: {
            "nodes": nodes,
            "pageInfo": {"hasNextPage": end_cursor is not None, "endCursor": end_cursor},
        }
    }


class FakeStorefront:
    """
    In-memory stand-in for StorefrontClient.

    Pages are registered per GraphQL connection; an Exception instance in
    place of a page is raised when that page is requested.
    """

    CONNECTIONS = ("orders", "customers", "codeDiscountNodes")

    def __init__(self):
        self.pages: Dict[str, List[Any]] = {name: [[]] for name in self.CONNECTIONS}
        self.calls: List[Dict[str, Any]] = []
        self.rest_get = AsyncMock()

    def set_pages(self, connection: str, *pages: Any) -> None:
        self.pages[connection] = list(pages)

    def _connection(self, query: str) -> str:
        for name in self.CONNECTIONS:
            if f"{name}(" in query:
                return name
        raise AssertionError(f"Unexpected query: {query[:60]}")

    async def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        connection = self._connection(query)
        variables = variables or {}
        self.calls.append({"connection": connection, **variables})

        cursor = variables.get("after")
        index = int(cursor.split("-")[1]) if cursor else 0
        page = self.pages[connection][index]
        if isinstance(page, Exception):
            raise page

        has_next = index + 1 < len(self.pages[connection])
        return connection_page(connection, page, f"cursor-{index + 1}" if has_next else None)

    def call_count(self, connection: str) -> int:
        return sum(1 for call in self.calls if call["connection"] == connection)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> ExpiringCache:
    return ExpiringCache(clock=clock)


@pytest.fixture
def storefront_config() -> StorefrontConfig:
    return StorefrontConfig(
        store_url="test-shop.myshopify.com",
        access_token="shpat_test_token",
        api_version="2024-01",
        graphql_page_delay=0,
        rest_page_delay=0,
    )


@pytest.fixture
def fake_storefront() -> FakeStorefront:
    return FakeStorefront()


@pytest.fixture
def fetcher(fake_storefront, cache, storefront_config) -> StorefrontFetcher:
    return StorefrontFetcher(
        fake_storefront,
        cache,
        cache_config=CacheConfig(),
        storefront_config=storefront_config,
        today=lambda: TODAY,
        sleep=AsyncMock(),
    )


@pytest.fixture
def sample_order_node() -> Dict[str, Any]:
    """Order with two products and one discount code."""
    return make_order_node(
        "gid://shopify/Order/1001",
        "2024-01-10T14:30:00Z",
        total="180.00",
        discount="20.00",
        subtotal="180.00",
        tax="12.50",
        codes=["WELCOME10"],
        customer_id="gid://shopify/Customer/501",
        items=[
            make_line_item("gid://shopify/Product/11", 2, "120.00", "Rose Oil"),
            make_line_item("gid://shopify/Product/12", 1, "80.00", "Amber Mist"),
        ],
    )


@pytest.fixture
def sample_orders() -> List[Order]:
    """Orders across two days of January 2024."""
    nodes = [
        make_order_node("gid://shopify/Order/1", "2024-01-01T09:00:00Z", "100.00",
                        customer_id="gid://shopify/Customer/1",
                        items=[make_line_item("gid://shopify/Product/1", 2, "20.00", "Candle")]),
        make_order_node("gid://shopify/Order/2", "2024-01-01T18:00:00Z", "50.00", discount="10.00",
                        codes=["SAVE10"], customer_id="gid://shopify/Customer/2",
                        items=[make_line_item("gid://shopify/Product/1", 3, "45.00", "Candle")]),
        make_order_node("gid://shopify/Order/3", "2024-01-03T12:00:00Z", "30.00",
                        customer_id="gid://shopify/Customer/1",
                        items=[make_line_item("gid://shopify/Product/2", 1, "30.00", "Soap")]),
    ]
    return [Order.from_api(node) for node in nodes]
