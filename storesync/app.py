"""
Composition root: builds the pipeline components and wires them together.

Every component is constructed once here and passed by reference; nothing
in the package keeps module-level singletons besides the configuration.

Usage:
    pipeline = Pipeline()
    await pipeline.start()      # connect, preload, start background jobs
    ...
    await pipeline.stop()
"""
from datetime import date
from typing import Any, Callable, Dict, Optional

import httpx

from storesync.cache import ExpiringCache
from storesync.client import StorefrontClient
from storesync.config import AppConfig, config, validate_config
from storesync.events import EventBus, PipelineEvent
from storesync.fetcher import StorefrontFetcher
from storesync.models import utc_today
from storesync.observability import get_logger
from storesync.preloader import StatsPreloader
from storesync.repository import StatsRepository
from storesync.scheduler import BackgroundScheduler
from storesync.sync_service import SyncOrchestrator

logger = get_logger(__name__)


class Pipeline:
    """
    Storefront sync pipeline with explicit start/stop.

    Args:
        app_config: Configuration (defaults to the global config)
        transport: Optional httpx transport for the storefront client
        today: Current-day provider shared by the fetcher, orchestrator and preloader
    """

    def __init__(
        self,
        app_config: Optional[AppConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        today: Callable[[], date] = utc_today,
    ):
        self.config = app_config or config
        validate_config(self.config)

        self.events = EventBus()
        self.cache = ExpiringCache()
        self.client = StorefrontClient(self.config.storefront, transport=transport)
        self.fetcher = StorefrontFetcher(
            self.client,
            self.cache,
            cache_config=self.config.cache,
            storefront_config=self.config.storefront,
            today=today,
        )
        self.repository = StatsRepository(self.config.store.db_path)
        self.orchestrator = SyncOrchestrator(
            self.fetcher,
            self.repository,
            self.events,
            sync_config=self.config.sync,
            today=today,
        )
        self.preloader = StatsPreloader(
            self.fetcher,
            self.cache,
            self.events,
            preloader_config=self.config.preloader,
            storefront_config=self.config.storefront,
            today=today,
        )
        self.scheduler = BackgroundScheduler(
            self.cache,
            self.preloader,
            self.orchestrator,
            app_config=self.config,
        )
        self._register_event_handlers()

    def _register_event_handlers(self) -> None:
        """Log lifecycle events that need operator attention."""

        @self.events.on(PipelineEvent.COUPON_BLEEDING)
        async def on_coupon_bleeding(data: dict):
            for coupon in data.get("coupons", []):
                logger.warning(
                    f"Coupon {coupon['coupon_code']} is bleeding money",
                    extra={
                        "discount_given": coupon["total_discount_given"],
                        "revenue": coupon["total_revenue_generated"],
                    },
                )

        @self.events.on(PipelineEvent.SYNC_FAILED)
        async def on_sync_failed(data: dict):
            logger.warning(f"Sync failed in {data.get('phase')}: {data.get('error')}")

    async def connect(self) -> None:
        """Open the HTTP client and the durable store."""
        await self.client.connect()
        await self.repository.connect()

    async def start(self, run_initial_sync: bool = False) -> None:
        """Connect, warm the preloader and start background jobs."""
        logger.info("Storefront sync pipeline starting...")
        await self.connect()

        status = await self.preloader.initialize()
        logger.info("Stats preloader ready", extra={"is_ready": status["is_ready"]})

        if run_initial_sync:
            await self.orchestrator.run_full_sync()

        await self.scheduler.start()
        logger.info("Pipeline ready")

    async def stop(self) -> None:
        """Stop background jobs and release connections."""
        try:
            self.scheduler.shutdown(wait=False)
        except Exception as e:
            logger.warning(f"Error stopping scheduler: {e}")

        try:
            await self.client.close()
        except Exception as e:
            logger.warning(f"Error closing storefront client: {e}")

        try:
            await self.repository.close()
        except Exception as e:
            logger.warning(f"Error closing DuckDB: {e}")

        logger.info("Pipeline stopped")

    async def get_status(self) -> Dict[str, Any]:
        return {
            "sync": await self.orchestrator.get_status(),
            "preloader": self.preloader.get_status(),
            "jobs": self.scheduler.get_jobs(),
        }
