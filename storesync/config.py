"""
Centralized configuration for the storefront sync pipeline.

Configuration is loaded from environment variables with sensible defaults.

Usage:
    from storesync.config import config

    store_url = config.storefront.store_url
    orders_ttl = config.cache.orders_ttl
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from storesync.exceptions import ConfigurationError

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class StorefrontConfig:
    """Remote storefront (Shopify Admin API) configuration."""

    store_url: str = field(default_factory=lambda: os.getenv("SHOPIFY_STORE_URL", ""))
    access_token: str = field(default_factory=lambda: os.getenv("SHOPIFY_ACCESS_TOKEN", ""))
    api_version: str = field(default_factory=lambda: os.getenv("SHOPIFY_API_VERSION", "2024-01"))

    # GraphQL collections (orders, customers, discount codes)
    graphql_page_size: int = 250
    discount_page_size: int = 100
    graphql_timeout: float = 60.0
    graphql_page_delay: float = 0.3

    # REST collections (product catalog, Link-header pagination)
    rest_page_size: int = 250
    rest_timeout: float = 30.0
    rest_page_delay: float = 0.25

    max_pages: int = 200

    @property
    def is_configured(self) -> bool:
        """Both store URL and access token are present."""
        return bool(self.store_url and self.access_token)

    @property
    def admin_base_url(self) -> str:
        """Base URL of the versioned Admin API."""
        host = self.store_url.replace("https://", "").replace("http://", "").rstrip("/")
        return f"https://{host}/admin/api/{self.api_version}"


@dataclass(frozen=True)
class CacheConfig:
    """Expiring cache configuration (all durations in seconds)."""

    sweep_interval_seconds: int = 60
    orders_ttl: int = 5 * 60
    customers_ttl: int = 5 * 60
    products_ttl: int = 10 * 60
    discounts_ttl: int = 30 * 60
    stats_ttl: int = 5 * 60
    aggregated_ttl: int = 10 * 60


@dataclass(frozen=True)
class SyncConfig:
    """Sync orchestrator configuration."""

    interval_minutes: int = field(
        default_factory=lambda: int(os.getenv("SYNC_INTERVAL_MINUTES", "60"))
    )
    daily_stats_days: int = 90
    product_stats_days: int = 30
    coupon_stats_days: int = 90


@dataclass(frozen=True)
class PreloaderConfig:
    """Stats preloader configuration."""

    refresh_interval_minutes: int = 10
    periods: tuple = ("today", "week", "month", "lastMonth", "year")
    top_products_limit: int = 20


@dataclass(frozen=True)
class StoreConfig:
    """Durable DuckDB store configuration."""

    db_path: Path = field(
        default_factory=lambda: Path(
            os.getenv(
                "STORESYNC_DB_PATH",
                str(Path(__file__).parent.parent / "data" / "storesync.duckdb"),
            )
        )
    )
    query_timeout: float = 30.0


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""

    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    json_format: bool = field(default_factory=lambda: _env_bool("LOG_JSON"))


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "1.0.0"
    display_timezone: str = field(
        default_factory=lambda: os.getenv("DISPLAY_TIMEZONE", "Asia/Jerusalem")
    )
    storefront: StorefrontConfig = field(default_factory=StorefrontConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    preloader: PreloaderConfig = field(default_factory=PreloaderConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# Global config instance
config = AppConfig()


def validate_config(app_config: AppConfig = None, require_storefront: bool = True) -> None:
    """
    Validate that all required configuration is present.

    Call this on application startup to fail fast with clear error messages.

    Args:
        app_config: Configuration to validate (defaults to the global config)
        require_storefront: If True, validate storefront credentials

    Raises:
        ConfigurationError: If required configuration is missing
    """
    cfg = app_config or config
    errors = []

    if require_storefront:
        if not cfg.storefront.store_url:
            errors.append("SHOPIFY_STORE_URL is required but not set")
        if not cfg.storefront.access_token:
            errors.append("SHOPIFY_ACCESS_TOKEN is required but not set")

    if cfg.storefront.graphql_page_size < 1 or cfg.storefront.graphql_page_size > 250:
        errors.append("graphql_page_size must be between 1 and 250")

    if cfg.sync.interval_minutes < 1:
        errors.append("SYNC_INTERVAL_MINUTES must be at least 1")

    if cfg.cache.sweep_interval_seconds < 1:
        errors.append("sweep_interval_seconds must be at least 1")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
