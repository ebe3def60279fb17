"""
Cache-checked, paginated fetching of storefront collections.

Every public method:
- consults the cache before any network activity
- shares one in-flight request between identical concurrent calls
- caches complete results under `ExpiringCache.generate_key(...)` with the
  entity TTL; truncated (incomplete) results are returned but not cached
- records the call in a bounded request log

Usage:
    fetcher = StorefrontFetcher(client, cache)
    result = await fetcher.get_orders(PeriodWindow.parse("2024-01-01", "2024-01-31"))
    print(result.totals.net_sales, result.complete)
"""
import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from itertools import islice
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence

from storesync.aggregator import (
    CustomerSummary,
    OrderTotals,
    PeriodStats,
    TopProducts,
    bucket_daily_sales,
    customer_summary,
    order_totals,
    period_stats,
    top_products,
)
from storesync.cache import ExpiringCache
from storesync.client import StorefrontClient
from storesync.config import CacheConfig, StorefrontConfig, config
from storesync.exceptions import StorefrontDataError
from storesync.models import Customer, DailyBucket, DiscountCode, Order, PeriodWindow, Product, utc_today
from storesync.observability import get_logger
from storesync.pagination import CursorPaginator, LinkPaginator, PageResult
from storesync.queries import CUSTOMERS_QUERY, DISCOUNTS_QUERY, ORDERS_QUERY, discount_search_query

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class OrdersResult:
    orders: List[Order]
    totals: OrderTotals
    window: PeriodWindow
    complete: bool = True
    fetched_at: datetime = field(default_factory=_utcnow)
    skipped: int = 0


@dataclass(frozen=True)
class CustomersResult:
    customers: List[Customer]
    summary: CustomerSummary
    window: Optional[PeriodWindow] = None
    complete: bool = True
    fetched_at: datetime = field(default_factory=_utcnow)
    skipped: int = 0

    def to_dict(self) -> dict:
        return {
            "customers": [c.to_dict() for c in self.customers],
            "summary": self.summary.to_dict(),
            "period": self.window.to_dict() if self.window else None,
            "complete": self.complete,
            "fetched_at": self.fetched_at.isoformat(),
        }


@dataclass(frozen=True)
class DiscountsResult:
    discounts: List[DiscountCode]
    match: Optional[DiscountCode] = None
    total: int = 0
    complete: bool = True
    fetched_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ProductsResult:
    products: List[Product]
    total: int = 0
    complete: bool = True
    fetched_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class StatsResult:
    stats: PeriodStats
    complete: bool = True
    fetched_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {**self.stats.to_dict(), "complete": self.complete, "fetched_at": self.fetched_at.isoformat()}


@dataclass(frozen=True)
class DailySalesResult:
    window: PeriodWindow
    data: List[DailyBucket]
    totals: OrderTotals
    complete: bool = True
    fetched_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "period": self.window.to_dict(),
            "data": [bucket.to_dict() for bucket in self.data],
            "totals": self.totals.to_dict(),
            "complete": self.complete,
            "fetched_at": self.fetched_at.isoformat(),
        }


@dataclass(frozen=True)
class TopProductsResult:
    window: PeriodWindow
    top: TopProducts
    limit: int
    complete: bool = True
    fetched_at: datetime = field(default_factory=_utcnow)

    @property
    def products(self):
        return self.top.by_revenue

    def to_dict(self) -> dict:
        return {
            "period": self.window.to_dict(),
            **self.top.to_dict(),
            "limit": self.limit,
            "complete": self.complete,
            "fetched_at": self.fetched_at.isoformat(),
        }


def _result_count(result: Any) -> int:
    for attr in ("orders", "customers", "discounts", "products", "data"):
        value = getattr(result, attr, None)
        if isinstance(value, list):
            return len(value)
    return 1


def _parse_records(raw: Sequence[Dict[str, Any]], factory: Callable[[Dict[str, Any]], Any], label: str) -> tuple:
    """Build typed records, skipping (and logging) malformed ones."""
    records = []
    skipped = 0
    for item in raw:
        try:
            records.append(factory(item))
        except (StorefrontDataError, ValueError, TypeError) as e:
            skipped += 1
            logger.warning(
                f"Skipping malformed {label} record: {e}",
                extra={"record_id": item.get("id") if isinstance(item, dict) else None},
            )
    return records, skipped


# ═══════════════════════════════════════════════════════════════════════════════
# FETCHER
# ═══════════════════════════════════════════════════════════════════════════════

class StorefrontFetcher:
    """
    Paginated remote fetcher sitting in front of the expiring cache.

    Args:
        client: Storefront API transport
        cache: Shared expiring cache
        cache_config: Entity TTLs (defaults to global config)
        storefront_config: Page sizes, delays, max_pages (defaults to global config)
        today: Callable returning the current UTC day for period stats
        sleep: Inter-page sleep (injectable for tests)
    """

    def __init__(
        self,
        client: StorefrontClient,
        cache: ExpiringCache,
        cache_config: Optional[CacheConfig] = None,
        storefront_config: Optional[StorefrontConfig] = None,
        today: Optional[Callable[[], date]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_log_entries: int = 100,
    ):
        self.client = client
        self.cache = cache
        self.cache_config = cache_config or config.cache
        self.storefront_config = storefront_config or config.storefront
        self._today = today or utc_today
        self._sleep = sleep
        self._inflight: Dict[str, asyncio.Task] = {}
        self._request_log: Deque[Dict[str, Any]] = deque(maxlen=max_log_entries)

    # ─── plumbing ────────────────────────────────────────────────────────────

    def _log_request(
        self,
        endpoint: str,
        window: Optional[PeriodWindow],
        result_count: int,
        duration_ms: float,
        from_cache: bool = False,
    ) -> None:
        entry = {
            "timestamp": _utcnow().isoformat(),
            "endpoint": endpoint,
            "period": window.to_dict() if window else None,
            "result_count": result_count,
            "duration_ms": round(duration_ms, 1),
            "from_cache": from_cache,
        }
        self._request_log.appendleft(entry)
        logger.info(
            f"{endpoint}{' [CACHED]' if from_cache else ''}",
            extra={k: v for k, v in entry.items() if k != "timestamp"},
        )

    def get_request_log(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent requests first."""
        return list(islice(self._request_log, limit))

    async def _cached(
        self,
        key: str,
        endpoint: str,
        window: Optional[PeriodWindow],
        ttl: int,
        loader: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Serve from cache, join an identical in-flight load, or start one.

        The load itself stores complete results in the cache, so callers that
        joined it never write twice.
        """
        started = time.perf_counter()

        cached = self.cache.get(key)
        if cached is not None:
            self._log_request(endpoint, window, _result_count(cached), (time.perf_counter() - started) * 1000, True)
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load(key, endpoint, ttl, loader))
            self._inflight[key] = task
            task.add_done_callback(lambda done, k=key: self._forget(k, done))
            owner = True
        else:
            logger.debug(f"Joining in-flight {endpoint}", extra={"cache_key": key})
            owner = False

        result = await asyncio.shield(task)
        if owner:
            self._log_request(endpoint, window, _result_count(result), (time.perf_counter() - started) * 1000)
        return result

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _load(self, key: str, endpoint: str, ttl: int, loader: Callable[[], Awaitable[Any]]) -> Any:
        result = await loader()
        if getattr(result, "complete", True):
            self.cache.set(key, result, ttl)
        else:
            logger.warning(f"{endpoint} returned partial data, not caching", extra={"cache_key": key})
        return result

    def _cursor(self, document: str, connection: str, page_size: int, **variables) -> CursorPaginator:
        async def fetch_page(cursor: Optional[str]) -> Dict[str, Any]:
            return await self.client.graphql(document, {"first": page_size, "after": cursor, **variables})

        return CursorPaginator(
            fetch_page,
            connection=connection,
            page_delay=self.storefront_config.graphql_page_delay,
            max_pages=self.storefront_config.max_pages,
            sleep=self._sleep,
        )

    # ─── collections ─────────────────────────────────────────────────────────

    async def get_orders(self, window: PeriodWindow) -> OrdersResult:
        """All orders created inside the window."""
        if window.is_empty:
            return OrdersResult(orders=[], totals=order_totals([]), window=window)

        async def load() -> OrdersResult:
            page: PageResult = await self._cursor(
                ORDERS_QUERY,
                "orders",
                self.storefront_config.graphql_page_size,
                query=window.to_search_query(),
            ).fetch_all()
            orders, skipped = _parse_records(page.items, Order.from_api, "order")
            return OrdersResult(
                orders=orders,
                totals=order_totals(orders),
                window=window,
                complete=page.complete,
                skipped=skipped,
            )

        key = self.cache.generate_key("orders", window.start, window.end)
        return await self._cached(key, "get_orders", window, self.cache_config.orders_ttl, load)

    async def get_customers(self, window: Optional[PeriodWindow] = None) -> CustomersResult:
        """
        Customer collection with a summary.

        With a window, only customers whose last order falls inside it.
        """
        if window is not None and window.is_empty:
            return CustomersResult(customers=[], summary=customer_summary([]), window=window)

        async def load_all() -> CustomersResult:
            page = await self._cursor(
                CUSTOMERS_QUERY,
                "customers",
                self.storefront_config.graphql_page_size,
            ).fetch_all()
            customers, skipped = _parse_records(page.items, Customer.from_api, "customer")
            return CustomersResult(
                customers=customers,
                summary=customer_summary(customers),
                complete=page.complete,
                skipped=skipped,
            )

        async def load_window() -> CustomersResult:
            everyone = await self.get_customers()
            customers = [c for c in everyone.customers if window.contains(c.last_order_at)]
            return CustomersResult(
                customers=customers,
                summary=customer_summary(customers),
                window=window,
                complete=everyone.complete,
            )

        if window is None:
            key = self.cache.generate_key("customers")
            return await self._cached(key, "get_customers", None, self.cache_config.customers_ttl, load_all)

        key = self.cache.generate_key("customers", window.start, window.end)
        return await self._cached(key, "get_customers", window, self.cache_config.customers_ttl, load_window)

    async def get_discount_codes(self, search: str = "") -> DiscountsResult:
        """
        Discount codes, optionally filtered by a search term.

        `match` is the exact (case-insensitive) code match, else the first
        code or title containing the term.
        """
        async def load() -> DiscountsResult:
            page = await self._cursor(
                DISCOUNTS_QUERY,
                "codeDiscountNodes",
                self.storefront_config.discount_page_size,
                query=discount_search_query(search) or None,
            ).fetch_all()

            expanded, _ = _parse_records(page.items, DiscountCode.list_from_api, "discount")
            discounts = [code for codes in expanded for code in codes]

            return DiscountsResult(
                discounts=discounts,
                match=self._find_match(discounts, search),
                total=len(discounts),
                complete=page.complete,
            )

        key = self.cache.generate_key("discounts", options={"search": search or "all"})
        return await self._cached(key, "get_discount_codes", None, self.cache_config.discounts_ttl, load)

    @staticmethod
    def _find_match(discounts: Sequence[DiscountCode], search: str) -> Optional[DiscountCode]:
        if not search:
            return None
        term = search.upper()
        for discount in discounts:
            if discount.code.upper() == term:
                return discount
        for discount in discounts:
            if term in discount.code.upper() or term in discount.title.upper():
                return discount
        return None

    async def get_products(self) -> ProductsResult:
        """Full product catalog through REST Link-header pagination."""
        async def load() -> ProductsResult:
            paginator = LinkPaginator(
                self.client.rest_get,
                first_path=f"/products.json?limit={self.storefront_config.rest_page_size}",
                items_key="products",
                page_delay=self.storefront_config.rest_page_delay,
                max_pages=self.storefront_config.max_pages,
                sleep=self._sleep,
            )
            page = await paginator.fetch_all()
            products, _ = _parse_records(page.items, Product.from_api, "product")
            return ProductsResult(products=products, total=len(products), complete=page.complete)

        key = self.cache.generate_key("products")
        return await self._cached(key, "get_products", None, self.cache_config.products_ttl, load)

    # ─── derived views ───────────────────────────────────────────────────────

    async def get_stats(self, window: PeriodWindow) -> StatsResult:
        """Headline period stats computed from the window's orders."""
        async def load() -> StatsResult:
            orders = await self.get_orders(window)
            return StatsResult(
                stats=period_stats(orders.orders, window, self._today()),
                complete=orders.complete,
            )

        key = self.cache.generate_key("stats", window.start, window.end)
        return await self._cached(key, "get_stats", window, self.cache_config.stats_ttl, load)

    async def get_daily_sales(self, window: PeriodWindow) -> DailySalesResult:
        """Gap-free daily sales series for charting."""
        async def load() -> DailySalesResult:
            orders = await self.get_orders(window)
            return DailySalesResult(
                window=window,
                data=bucket_daily_sales(orders.orders, window),
                totals=orders.totals,
                complete=orders.complete,
            )

        key = self.cache.generate_key("daily_sales", window.start, window.end)
        return await self._cached(key, "get_daily_sales", window, self.cache_config.stats_ttl, load)

    async def get_top_products(self, window: PeriodWindow, limit: int = 10) -> TopProductsResult:
        """Top-N products by revenue and by quantity."""
        async def load() -> TopProductsResult:
            orders = await self.get_orders(window)
            return TopProductsResult(
                window=window,
                top=top_products(orders.orders, limit),
                limit=limit,
                complete=orders.complete,
            )

        key = self.cache.generate_key("top_products", window.start, window.end, {"limit": limit})
        return await self._cached(key, "get_top_products", window, self.cache_config.aggregated_ttl, load)
