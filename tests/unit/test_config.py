"""
Tests for storesync.config module.
"""
import pytest

from storesync.config import AppConfig, StorefrontConfig, SyncConfig, validate_config
from storesync.exceptions import ConfigurationError


class TestValidateConfig:
    """Tests for validate_config."""

    def test_valid(self, storefront_config):
        validate_config(AppConfig(storefront=storefront_config))

    def test_missing_credentials_listed(self):
        """Every missing variable is reported at once."""
        cfg = AppConfig(storefront=StorefrontConfig(store_url="", access_token=""))

        with pytest.raises(ConfigurationError) as exc_info:
            validate_config(cfg)

        message = str(exc_info.value)
        assert "SHOPIFY_STORE_URL" in message
        assert "SHOPIFY_ACCESS_TOKEN" in message

    def test_credentials_optional(self):
        cfg = AppConfig(storefront=StorefrontConfig(store_url="", access_token=""))
        validate_config(cfg, require_storefront=False)

    def test_bad_interval(self, storefront_config):
        cfg = AppConfig(storefront=storefront_config, sync=SyncConfig(interval_minutes=0))
        with pytest.raises(ConfigurationError) as exc_info:
            validate_config(cfg)
        assert "SYNC_INTERVAL_MINUTES" in str(exc_info.value)


class TestStorefrontConfig:
    """Tests for StorefrontConfig."""

    def test_is_configured(self, storefront_config):
        assert storefront_config.is_configured
        assert not StorefrontConfig(store_url="shop.myshopify.com", access_token="").is_configured

    def test_admin_base_url(self):
        cfg = StorefrontConfig(store_url="http://shop.myshopify.com/", access_token="x", api_version="2024-04")
        assert cfg.admin_base_url == "https://shop.myshopify.com/admin/api/2024-04"
