"""
Stats preloader: keeps dashboard stats for common periods warm.

Periods are resolved on UTC calendar days, the same day boundary the
fetcher queries and buckets by. Readers never trigger remote calls; `None`
means the piece has not been loaded yet, which is distinct from a loaded
period with zero orders.
"""
import asyncio
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from storesync.cache import ExpiringCache
from storesync.config import PreloaderConfig, StorefrontConfig, config
from storesync.events import EventBus, PipelineEvent
from storesync.exceptions import ConfigurationError, ValidationError
from storesync.fetcher import CustomersResult, DailySalesResult, StatsResult, StorefrontFetcher, TopProductsResult
from storesync.models import PeriodWindow, utc_today
from storesync.observability import correlation_context, get_logger

logger = get_logger(__name__)

PERIODS = ("today", "week", "month", "lastMonth", "year", "lastYear")

# Namespaces dropped by refresh(); discount codes and products stay cached
REFRESH_NAMESPACES = ("stats", "orders", "daily_sales", "top_products", "customers")


class StatsPreloader:
    """
    Pre-computes period stats, the month chart series and leaderboards.

    Usage:
        preloader = StatsPreloader(fetcher, cache, bus)
        await preloader.initialize()
        month = preloader.get_stats("month")
    """

    def __init__(
        self,
        fetcher: StorefrontFetcher,
        cache: ExpiringCache,
        events: Optional[EventBus] = None,
        preloader_config: Optional[PreloaderConfig] = None,
        storefront_config: Optional[StorefrontConfig] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.fetcher = fetcher
        self.cache = cache
        self.events = events or EventBus()
        self.config = preloader_config or config.preloader
        self.storefront_config = storefront_config or config.storefront
        self._today = today or utc_today

        self.is_loading = False
        self.last_load_time: Optional[datetime] = None
        self._stats: Dict[str, Optional[StatsResult]] = {period: None for period in PERIODS}
        self._daily_sales: Dict[str, DailySalesResult] = {}
        self._top_products: Optional[TopProductsResult] = None
        self._top_customers: Optional[CustomersResult] = None

    def get_date_range(self, period: str) -> PeriodWindow:
        """
        Inclusive date window for a named period.

        Weeks start on Sunday. Running periods (week, month, year) end today.

        Raises:
            ValidationError: Unknown period name
        """
        today = self._today()

        if period == "today":
            return PeriodWindow(today, today)
        elif period == "week":
            # date.weekday(): Monday=0 .. Sunday=6
            days_since_sunday = (today.weekday() + 1) % 7
            return PeriodWindow(today - timedelta(days=days_since_sunday), today)
        elif period == "month":
            return PeriodWindow(today.replace(day=1), today)
        elif period == "lastMonth":
            last_of_last_month = today.replace(day=1) - timedelta(days=1)
            return PeriodWindow(last_of_last_month.replace(day=1), last_of_last_month)
        elif period == "year":
            return PeriodWindow(date(today.year, 1, 1), today)
        elif period == "lastYear":
            return PeriodWindow(date(today.year - 1, 1, 1), date(today.year - 1, 12, 31))

        raise ValidationError("period", f"must be one of {', '.join(PERIODS)}", period)

    # ═══════════════════════════════════════════════════════════════════════
    # LOADING
    # ═══════════════════════════════════════════════════════════════════════

    async def preload_all(self) -> Dict[str, Any]:
        """
        Load every preloaded piece once.

        Pieces fail independently; a failure is logged and counted and the
        previous value for that piece is kept.

        Returns:
            Dict with loaded/errors counts and duration, or {"skipped": True}
            if a preload is already running

        Raises:
            ConfigurationError: Storefront credentials are missing
        """
        if self.is_loading:
            logger.info("Preload already running, skipping")
            return {"skipped": True}

        if not self.storefront_config.is_configured:
            raise ConfigurationError(
                "Storefront credentials not configured: set SHOPIFY_STORE_URL and SHOPIFY_ACCESS_TOKEN"
            )

        self.is_loading = True
        start = time.perf_counter()
        loaded = 0
        errors = 0

        try:
            with correlation_context():
                logger.info("Starting stats preload", extra={"store": self.storefront_config.store_url})

                outcomes = await asyncio.gather(
                    *(self._load_period(period) for period in self.config.periods),
                    self._load_piece("daily_sales", self._load_daily_sales),
                    self._load_piece("top_products", self._load_top_products),
                    self._load_piece("top_customers", self._load_top_customers),
                )
                loaded = sum(1 for ok in outcomes if ok)
                errors = len(outcomes) - loaded

                self.last_load_time = datetime.now(timezone.utc)
                duration_ms = int((time.perf_counter() - start) * 1000)

                month = self._stats.get("month")
                logger.info(
                    f"Preload complete in {duration_ms}ms",
                    extra={
                        "loaded": loaded,
                        "errors": errors,
                        "month_sales": str(month.stats.total_sales) if month else None,
                        "month_orders": month.stats.order_count if month else None,
                    },
                )
                await self.events.emit(
                    PipelineEvent.STATS_PRELOADED,
                    {"loaded": loaded, "errors": errors, "duration_ms": duration_ms},
                    source="stats_preloader",
                )
        finally:
            self.is_loading = False

        return {"loaded": loaded, "errors": errors, "duration_ms": duration_ms}

    async def _load_piece(self, name: str, load: Callable[[], Any]) -> bool:
        try:
            await load()
            return True
        except Exception as e:
            logger.error(f"Error loading {name}: {e}", extra={"piece": name})
            return False

    async def _load_period(self, period: str) -> bool:
        async def load() -> None:
            result = await self.fetcher.get_stats(self.get_date_range(period))
            self._stats[period] = result
            logger.info(
                f"{period}: {result.stats.total_sales}, {result.stats.order_count} orders",
                extra={"period": period, "complete": result.complete},
            )

        return await self._load_piece(period, load)

    async def _load_daily_sales(self) -> None:
        result = await self.fetcher.get_daily_sales(self.get_date_range("month"))
        self._daily_sales["month"] = result
        logger.info(f"Daily sales: {len(result.data)} days loaded")

    async def _load_top_products(self) -> None:
        result = await self.fetcher.get_top_products(
            self.get_date_range("year"), self.config.top_products_limit
        )
        self._top_products = result
        logger.info(f"Top products: {len(result.products)} products")

    async def _load_top_customers(self) -> None:
        result = await self.fetcher.get_customers(self.get_date_range("year"))
        self._top_customers = result
        logger.info(f"Customers: {len(result.customers)} customers")

    async def initialize(self) -> Dict[str, Any]:
        """Drop every cached storefront entry, then preload."""
        removed = self.cache.clear_namespace()
        logger.info(f"Initializing stats preloader, cleared {removed} cache entries")
        await self.events.emit(
            PipelineEvent.CACHE_INVALIDATED, {"namespace": "all", "removed": removed}, source="stats_preloader"
        )
        await self.preload_all()
        return self.get_status()

    async def refresh(self) -> Dict[str, Any]:
        """Drop cached stats, orders, daily series, leaderboards and customers, then preload."""
        removed = sum(self.cache.clear_namespace(namespace) for namespace in REFRESH_NAMESPACES)
        await self.events.emit(
            PipelineEvent.CACHE_INVALIDATED,
            {"namespace": list(REFRESH_NAMESPACES), "removed": removed},
            source="stats_preloader",
        )
        await self.preload_all()
        return self.get_status()

    # ═══════════════════════════════════════════════════════════════════════
    # READERS
    # ═══════════════════════════════════════════════════════════════════════

    def get_stats(self, period: str) -> Optional[StatsResult]:
        return self._stats.get(period)

    def get_daily_sales(self, period: str = "month") -> Optional[DailySalesResult]:
        return self._daily_sales.get(period)

    def get_top_products(self) -> Optional[TopProductsResult]:
        return self._top_products

    def get_top_customers(self) -> Optional[CustomersResult]:
        return self._top_customers

    def is_ready(self) -> bool:
        return self._stats["month"] is not None

    def get_status(self) -> Dict[str, Any]:
        pieces = [*self._stats.values(), self._top_products, self._top_customers]
        loaded = sum(1 for piece in pieces if piece is not None) + len(self._daily_sales)
        return {
            "is_loading": self.is_loading,
            "is_ready": self.is_ready(),
            "last_load_time": self.last_load_time.isoformat() if self.last_load_time else None,
            "periods_loaded": loaded,
            "cache_stats": self.cache.get_stats(),
        }
