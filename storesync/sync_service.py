"""
Sync orchestrator: reconciles fetched storefront data into durable aggregates.

A full sync runs four phases in a fixed order:
    daily stats (90 days) -> product stats (30 days of orders)
    -> customer stats (whole collection) -> coupon stats (all codes + 90 days of orders)

Features:
- Single-flight: a call while a sync is running returns {"skipped": True}
- Fail-fast: the first failing phase aborts the rest of the run
- The orchestrator never raises; every run leaves exactly one sync log row
- Lifecycle and coupon alerts published on the event bus
"""
import time
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from storesync import aggregator
from storesync.config import SyncConfig, config
from storesync.events import EventBus, PipelineEvent
from storesync.fetcher import StorefrontFetcher
from storesync.models import CustomerStat, PeriodWindow, ProductStat, SyncLog, SyncStatus, utc_today
from storesync.observability import add_log_context, clear_log_context, correlation_context, get_logger
from storesync.repository import StatsRepository

logger = get_logger(__name__)

PHASES = ("daily_stats", "product_stats", "customer_stats", "coupon_stats")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """
    Runs full syncs from the fetcher into the stats repository.

    Usage:
        orchestrator = SyncOrchestrator(fetcher, repository, bus)
        results = await orchestrator.run_full_sync()
    """

    def __init__(
        self,
        fetcher: StorefrontFetcher,
        repository: StatsRepository,
        events: Optional[EventBus] = None,
        sync_config: Optional[SyncConfig] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.fetcher = fetcher
        self.repository = repository
        self.events = events or EventBus()
        self.config = sync_config or config.sync
        self._today = today or utc_today
        self._running = False
        self.last_sync_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def _phases(self) -> List[Tuple[str, Callable[[], Awaitable[Dict[str, Any]]]]]:
        return [
            ("daily_stats", self.sync_daily_stats),
            ("product_stats", self.sync_product_stats),
            ("customer_stats", self.sync_customer_stats),
            ("coupon_stats", self.sync_coupon_stats),
        ]

    async def run_full_sync(self) -> Dict[str, Any]:
        """
        Run every phase once.

        Returns:
            Dict with one summary per phase (None if it did not run), the
            list of errors and the total duration, or {"skipped": True}
            when a sync is already running
        """
        if self._running:
            logger.info("Sync already in progress, skipping")
            await self.events.emit(PipelineEvent.SYNC_SKIPPED, {"sync_type": "full"})
            return {"skipped": True}

        self._running = True
        started_at = _utcnow()
        start = time.perf_counter()
        results: Dict[str, Any] = {phase: None for phase in PHASES}
        results["errors"] = []
        failed_phase: Optional[str] = None
        error_message: Optional[str] = None

        try:
            with correlation_context() as correlation_id:
                logger.info("Starting full sync")
                await self.events.emit(PipelineEvent.SYNC_STARTED, {"sync_type": "full"})

                for name, phase in self._phases():
                    add_log_context(sync_type="full", phase=name)
                    try:
                        results[name] = await phase()
                    except Exception as e:
                        failed_phase = name
                        error_message = str(e)
                        results["errors"].append(f"{name}: {e}")
                        logger.error(f"Sync phase {name} failed: {e}", exc_info=True, extra={"phase": name})
                        break
                    await self.events.emit(PipelineEvent.PHASE_COMPLETED, {"phase": name, **results[name]})
                clear_log_context()

                duration_ms = int((time.perf_counter() - start) * 1000)
                results["duration_ms"] = duration_ms

                await self._write_log(results, started_at, duration_ms, failed_phase, error_message)

                if failed_phase:
                    await self.events.emit(PipelineEvent.SYNC_FAILED, {
                        "sync_type": "full",
                        "phase": failed_phase,
                        "error": error_message,
                        "duration_ms": duration_ms,
                    })
                else:
                    self.last_sync_at = _utcnow()
                    await self.events.emit(PipelineEvent.SYNC_COMPLETED, {
                        "sync_type": "full",
                        "duration_ms": duration_ms,
                        "records": self._records_processed(results),
                    })

                logger.info(
                    f"Full sync {'failed' if failed_phase else 'completed'} in {duration_ms}ms",
                    extra={"correlation": correlation_id, "errors": results["errors"]},
                )
        finally:
            clear_log_context()
            self._running = False

        return results

    @staticmethod
    def _records_processed(results: Dict[str, Any]) -> int:
        total = 0
        for phase in PHASES:
            summary = results.get(phase)
            if summary:
                total += summary.get("created", 0) + summary.get("updated", 0)
        return total

    async def _write_log(
        self,
        results: Dict[str, Any],
        started_at: datetime,
        duration_ms: int,
        failed_phase: Optional[str],
        error_message: Optional[str],
    ) -> None:
        details = {phase: results[phase] for phase in PHASES if results[phase] is not None}
        if failed_phase:
            details["failed_phase"] = failed_phase

        log = SyncLog(
            sync_type="full",
            status=SyncStatus.ERROR if failed_phase else SyncStatus.SUCCESS,
            started_at=started_at,
            records_processed=self._records_processed(results),
            error_message=error_message,
            details=details,
            duration_ms=duration_ms,
        )
        try:
            await self.repository.insert_sync_log(log)
        except Exception as e:
            logger.error(f"Failed to write sync log: {e}", exc_info=True)

    # ═══════════════════════════════════════════════════════════════════════
    # PHASES
    # ═══════════════════════════════════════════════════════════════════════

    def _window(self, days: int) -> PeriodWindow:
        return PeriodWindow.last_days(days, self._today())

    @staticmethod
    def _warn_if_partial(phase: str, complete: bool) -> None:
        if not complete:
            logger.warning(f"{phase}: remote data was truncated, upserting partial results")

    async def sync_daily_stats(self) -> Dict[str, Any]:
        """Daily totals for the lookback window (one row per day, zero days included)."""
        daily = await self.fetcher.get_daily_sales(self._window(self.config.daily_stats_days))
        self._warn_if_partial("daily_stats", daily.complete)

        stats = aggregator.daily_stats(daily.data)
        result = await self.repository.upsert_daily_stats(stats)
        return {**result.to_dict(), "days": len(stats), "complete": daily.complete}

    async def sync_product_stats(self) -> Dict[str, Any]:
        """Per-product line-item totals over recent orders."""
        orders = await self.fetcher.get_orders(self._window(self.config.product_stats_days))
        self._warn_if_partial("product_stats", orders.complete)

        stats = [
            ProductStat(
                product_id=p.product_id,
                title=p.title,
                total_quantity_sold=p.quantity,
                total_revenue=p.revenue,
                order_count=p.order_count,
            )
            for p in aggregator.product_sales(orders.orders)
        ]
        result = await self.repository.upsert_product_stats(stats)
        return {**result.to_dict(), "products": len(stats), "complete": orders.complete}

    async def sync_customer_stats(self) -> Dict[str, Any]:
        """Lifetime totals for the whole customer collection."""
        customers = await self.fetcher.get_customers()
        self._warn_if_partial("customer_stats", customers.complete)

        unique = {c.id: CustomerStat.from_customer(c) for c in customers.customers}
        stats = list(unique.values())
        result = await self.repository.upsert_customer_stats(stats)
        return {**result.to_dict(), "customers": len(stats), "complete": customers.complete}

    async def sync_coupon_stats(self) -> Dict[str, Any]:
        """Usage and bleeding flag for every discount code."""
        discounts = await self.fetcher.get_discount_codes("")
        orders = await self.fetcher.get_orders(self._window(self.config.coupon_stats_days))
        complete = discounts.complete and orders.complete
        self._warn_if_partial("coupon_stats", complete)

        usage = aggregator.coupon_usage(orders.orders)
        stats = aggregator.coupon_stats(discounts.discounts, usage)
        result = await self.repository.upsert_coupon_stats(stats)

        if result.newly_bleeding:
            flagged = {s.coupon_code: s for s in stats}
            logger.warning(
                f"{len(result.newly_bleeding)} coupon(s) started bleeding money",
                extra={"codes": result.newly_bleeding},
            )
            await self.events.emit(PipelineEvent.COUPON_BLEEDING, {
                "codes": result.newly_bleeding,
                "coupons": [flagged[code].to_dict() for code in result.newly_bleeding],
            })

        return {
            **result.to_dict(),
            "coupons": len(stats),
            "bleeding": sum(1 for s in stats if s.is_bleeding_money),
            "newly_bleeding": result.newly_bleeding,
            "complete": complete,
        }

    # ═══════════════════════════════════════════════════════════════════════
    # STATUS
    # ═══════════════════════════════════════════════════════════════════════

    async def get_status(self) -> Dict[str, Any]:
        """Running flag, last success / error from the sync log and row counts."""
        last_success = await self.repository.get_last_sync_log(SyncStatus.SUCCESS)
        last_error = await self.repository.get_last_sync_log(SyncStatus.ERROR)
        counts = await self.repository.get_record_counts()

        last_sync_at = self.last_sync_at or (last_success.started_at if last_success else None)
        return {
            "is_running": self._running,
            "last_sync_at": last_sync_at.isoformat() if last_sync_at else None,
            "last_sync_status": last_success.status.value if last_success else "never",
            "last_error": last_error.error_message if last_error else None,
            "last_error_at": last_error.started_at.isoformat() if last_error else None,
            "record_counts": counts,
        }
