"""
Integration tests for storesync/fetcher.py

Runs the fetcher against an in-memory storefront with a real cache and
real paginators.
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from email.utils import format_datetime
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import connection_page, make_customer_node, make_discount_node, make_line_item, make_order_node
from storesync.client import StorefrontClient
from storesync.config import CacheConfig
from storesync.fetcher import StorefrontFetcher
from storesync.exceptions import StorefrontAPIError, StorefrontConnectionError
from storesync.models import PeriodWindow
from storesync.pagination import RestPage

JANUARY = PeriodWindow.parse("2024-01-01", "2024-01-31")


def _orders_page():
    return [
        make_order_node("gid://shopify/Order/1", "2024-01-05T10:00:00Z", "100.00",
                        customer_id="gid://shopify/Customer/1",
                        items=[make_line_item("gid://shopify/Product/1", 1, "100.00", "Candle")]),
        make_order_node("gid://shopify/Order/2", "2024-01-15T08:00:00Z", "60.00", discount="15.00",
                        codes=["SAVE15"], customer_id="gid://shopify/Customer/1",
                        items=[make_line_item("gid://shopify/Product/2", 3, "75.00", "Soap")]),
    ]


class TestGetOrders:
    """Tests for order fetching and caching."""

    @pytest.mark.asyncio
    async def test_fetches_and_totals(self, fetcher, fake_storefront):
        fake_storefront.set_pages("orders", _orders_page())

        result = await fetcher.get_orders(JANUARY)

        assert len(result.orders) == 2
        assert result.complete
        assert result.totals.net_sales == Decimal("160.00")
        assert result.totals.discounts == Decimal("15.00")
        assert fake_storefront.calls[0]["query"] == JANUARY.to_search_query()
        assert fake_storefront.calls[0]["first"] == 250

    @pytest.mark.asyncio
    async def test_second_call_served_from_cache(self, fetcher, fake_storefront):
        """A cache hit makes no remote request."""
        fake_storefront.set_pages("orders", _orders_page())

        first = await fetcher.get_orders(JANUARY)
        second = await fetcher.get_orders(JANUARY)

        assert second is first
        assert fake_storefront.call_count("orders") == 1

        log = fetcher.get_request_log()
        assert log[0]["from_cache"] is True
        assert log[1]["from_cache"] is False
        assert log[0]["period"] == {"start": "2024-01-01", "end": "2024-01-31"}

    @pytest.mark.asyncio
    async def test_expired_entry_refetched(self, fetcher, fake_storefront, clock):
        await fetcher.get_orders(JANUARY)
        clock.advance(301)
        await fetcher.get_orders(JANUARY)

        assert fake_storefront.call_count("orders") == 2

    @pytest.mark.asyncio
    async def test_empty_window_makes_no_request(self, fetcher, fake_storefront):
        result = await fetcher.get_orders(PeriodWindow.parse("2024-02-01", "2024-01-01"))

        assert result.orders == []
        assert result.totals.order_count == 0
        assert fake_storefront.calls == []

    @pytest.mark.asyncio
    async def test_later_page_failure_is_partial_and_not_cached(self, fetcher, fake_storefront, cache):
        """Page 2 of 3 failing returns page 1 only, marked incomplete."""
        page_one, page_three = _orders_page()
        fake_storefront.set_pages(
            "orders",
            [page_one],
            StorefrontConnectionError("Request timeout after 60.0s"),
            [page_three],
        )

        result = await fetcher.get_orders(JANUARY)

        assert [o.id for o in result.orders] == ["gid://shopify/Order/1"]
        assert not result.complete
        assert cache.get(cache.generate_key("orders", JANUARY.start, JANUARY.end)) is None

        await fetcher.get_orders(JANUARY)
        assert fake_storefront.call_count("orders") == 4

    @pytest.mark.asyncio
    async def test_first_page_failure_raises(self, fetcher, fake_storefront):
        fake_storefront.set_pages("orders", StorefrontAPIError("API returned 500", status_code=500))

        with pytest.raises(StorefrontAPIError):
            await fetcher.get_orders(JANUARY)

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_request(self, fetcher, fake_storefront):
        fake_storefront.set_pages("orders", _orders_page())

        first, second, third = await asyncio.gather(
            fetcher.get_orders(JANUARY),
            fetcher.get_orders(JANUARY),
            fetcher.get_orders(JANUARY),
        )

        assert first is second is third
        assert fake_storefront.call_count("orders") == 1

    @pytest.mark.asyncio
    async def test_malformed_order_skipped(self, fetcher, fake_storefront):
        broken = make_order_node("gid://shopify/Order/9", "2024-01-02T00:00:00Z", "10.00")
        broken["createdAt"] = None
        fake_storefront.set_pages("orders", _orders_page() + [broken])

        result = await fetcher.get_orders(JANUARY)

        assert len(result.orders) == 2
        assert result.skipped == 1

    @pytest.mark.asyncio
    async def test_malformed_line_item_keeps_order(self, fetcher, fake_storefront):
        """A bad line item drops only that line; the order still counts toward sales."""
        bad_line = make_line_item("gid://shopify/Product/2", 1, "abc", "Soap")
        fake_storefront.set_pages("orders", [
            make_order_node("gid://shopify/Order/1", "2024-01-01T09:00:00Z", "100.00",
                            items=[make_line_item("gid://shopify/Product/1", 1, "100.00", "Candle")]),
            make_order_node("gid://shopify/Order/2", "2024-01-01T12:00:00Z", "50.00", items=[bad_line]),
        ])

        result = await fetcher.get_orders(JANUARY)
        daily = await fetcher.get_daily_sales(JANUARY)

        assert len(result.orders) == 2
        assert result.skipped == 0
        assert result.orders[1].line_items == ()
        assert daily.data[0].sales == Decimal("150.00")
        assert daily.data[0].orders == 2

    @pytest.mark.asyncio
    async def test_rate_limit_with_http_date_is_partial(self, cache, storefront_config):
        """A 429 on page 2 carrying an HTTP-date Retry-After keeps page 1."""
        retry_at = format_datetime(datetime.now(timezone.utc) + timedelta(seconds=60), usegmt=True)
        page_one = [make_order_node("gid://shopify/Order/1", "2024-01-05T10:00:00Z", "100.00")]

        def handler(request: httpx.Request) -> httpx.Response:
            variables = json.loads(request.content).get("variables") or {}
            if variables.get("after"):
                return httpx.Response(429, headers={"Retry-After": retry_at}, text="Throttled")
            return httpx.Response(200, json={"data": connection_page("orders", page_one, "cursor-1")})

        client = StorefrontClient(storefront_config, transport=httpx.MockTransport(handler))
        fetcher = StorefrontFetcher(client, cache, cache_config=CacheConfig(),
                                    storefront_config=storefront_config, sleep=AsyncMock())
        async with client:
            result = await fetcher.get_orders(JANUARY)

        assert [o.id for o in result.orders] == ["gid://shopify/Order/1"]
        assert not result.complete


class TestDerivedViews:
    """Stats, daily sales and top products reuse the cached order window."""

    @pytest.mark.asyncio
    async def test_views_share_order_fetch(self, fetcher, fake_storefront):
        fake_storefront.set_pages("orders", _orders_page())

        stats = await fetcher.get_stats(JANUARY)
        daily = await fetcher.get_daily_sales(JANUARY)
        top = await fetcher.get_top_products(JANUARY, limit=1)

        assert fake_storefront.call_count("orders") == 1

        assert stats.stats.total_sales == Decimal("160.00")
        assert stats.stats.total_sales_gross == Decimal("175.00")
        assert stats.stats.unique_customers == 1
        assert stats.stats.returning_customers == 1
        assert stats.stats.today_orders == 1
        assert stats.stats.today_sales == Decimal("60.00")

        assert len(daily.data) == 31
        assert daily.data[4].sales == Decimal("100.00")
        assert daily.data[14].orders == 1

        assert [p.title for p in top.products] == ["Candle"]
        assert top.top.by_quantity[0].title == "Soap"
        assert top.top.total == 2

    @pytest.mark.asyncio
    async def test_partial_orders_propagate(self, fetcher, fake_storefront):
        page_one, _ = _orders_page()
        fake_storefront.set_pages("orders", [page_one], StorefrontConnectionError("reset"))

        stats = await fetcher.get_stats(JANUARY)

        assert not stats.complete
        assert stats.to_dict()["complete"] is False


class TestGetCustomers:
    """Tests for customer fetching."""

    @pytest.mark.asyncio
    async def test_all_customers_summary(self, fetcher, fake_storefront):
        fake_storefront.set_pages("customers", [
            make_customer_node("gid://shopify/Customer/1", "500.00", orders_count=4),
            make_customer_node("gid://shopify/Customer/2", "100.00", orders_count=1),
        ])

        result = await fetcher.get_customers()

        assert result.summary.total_customers == 2
        assert result.summary.total_spent == Decimal("600.00")
        assert result.summary.returning_customers == 1
        assert result.window is None

    @pytest.mark.asyncio
    async def test_window_filters_by_last_order(self, fetcher, fake_storefront):
        """Windowed views filter the cached full collection."""
        fake_storefront.set_pages("customers", [
            make_customer_node("gid://shopify/Customer/1", last_order_at="2024-01-10T10:00:00Z"),
            make_customer_node("gid://shopify/Customer/2", last_order_at="2023-11-02T10:00:00Z"),
            make_customer_node("gid://shopify/Customer/3", last_order_at=None),
        ])

        january = await fetcher.get_customers(JANUARY)
        everyone = await fetcher.get_customers()

        assert [c.id for c in january.customers] == ["gid://shopify/Customer/1"]
        assert len(everyone.customers) == 3
        assert fake_storefront.call_count("customers") == 1


class TestGetDiscountCodes:
    """Tests for discount code fetching."""

    @pytest.mark.asyncio
    async def test_expands_codes_and_matches(self, fetcher, fake_storefront):
        fake_storefront.set_pages("codeDiscountNodes", [
            make_discount_node("gid://shopify/DiscountCodeNode/1", ["SAVE10", "SAVE10-VIP"], percentage=0.1),
            make_discount_node("gid://shopify/DiscountCodeNode/2", ["FLAT50"], amount="50.00", status="EXPIRED"),
        ])

        result = await fetcher.get_discount_codes("save10")

        assert result.total == 3
        assert result.match.code == "SAVE10"
        assert result.match.value == Decimal("10.0")
        assert fake_storefront.calls[0]["query"] == "title:*save10* OR code:*save10*"
        assert fake_storefront.calls[0]["first"] == 100

        flat = [d for d in result.discounts if d.code == "FLAT50"][0]
        assert flat.value_type == "fixed_amount"
        assert not flat.is_active

    @pytest.mark.asyncio
    async def test_no_search(self, fetcher, fake_storefront):
        fake_storefront.set_pages("codeDiscountNodes", [
            make_discount_node("gid://shopify/DiscountCodeNode/1", ["SAVE10"], percentage=0.1),
        ])

        result = await fetcher.get_discount_codes()

        assert result.match is None
        assert fake_storefront.calls[0]["query"] is None


class TestGetProducts:
    """Tests for the REST product catalog."""

    @pytest.mark.asyncio
    async def test_follows_link_pages(self, fetcher, fake_storefront):
        next_url = "https://test-shop.myshopify.com/admin/api/2024-01/products.json?page_info=p2&limit=250"
        fake_storefront.rest_get.side_effect = [
            RestPage({"products": [{
                "id": 1,
                "title": "Candle",
                "variants": [{"inventory_quantity": 3}, {"inventory_quantity": 2}],
            }]}, next_url),
            RestPage({"products": [{"id": 2, "title": "Soap", "variants": []}]}, None),
        ]

        result = await fetcher.get_products()

        assert result.total == 2
        assert result.complete
        assert result.products[0].id == "1"
        assert result.products[0].total_inventory == 5
        assert fake_storefront.rest_get.await_args_list[0].args == ("/products.json?limit=250",)
        assert fake_storefront.rest_get.await_args_list[1].args == (next_url,)
