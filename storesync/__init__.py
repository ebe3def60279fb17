"""
Storefront sync and stats pipeline.

This package contains:
- exceptions: Custom exception hierarchy
- models: Typed storefront records and aggregate rows
- cache: Expiring in-memory cache
- fetcher: Cache-checked paginated fetching
- aggregator: Pure metric aggregation
- repository: DuckDB aggregate store
- sync_service / preloader / scheduler: Background orchestration
"""

# Import in dependency order
from storesync.exceptions import (
    StorefrontError,
    StorefrontConnectionError,
    StorefrontAPIError,
    StorefrontDataError,
    ConfigurationError,
    PersistenceError,
    ValidationError,
)

from storesync.config import config

from storesync.models import PeriodWindow

from storesync.cache import ExpiringCache

from storesync.events import EventBus, PipelineEvent

__version__ = "1.0.0"

__all__ = [
    # Exceptions
    "StorefrontError",
    "StorefrontConnectionError",
    "StorefrontAPIError",
    "StorefrontDataError",
    "ConfigurationError",
    "PersistenceError",
    "ValidationError",
    # Config
    "config",
    # Core types
    "PeriodWindow",
    "ExpiringCache",
    "EventBus",
    "PipelineEvent",
]
