"""Tests for the engine configuration value."""

from datetime import timedelta

import pytest

from billing.config import BillingConfig, current_config, use_config


class TestBillingConfig:
    def test_defaults(self):
        config = BillingConfig()
        assert config.retry_offsets == (timedelta(days=1), timedelta(days=3), timedelta(days=7))
        assert config.grace_period == timedelta(days=7)

    def test_is_immutable(self):
        with pytest.raises(AttributeError):
            BillingConfig().worker_count = 2

    def test_backoff_doubles_up_to_cap(self):
        config = BillingConfig(backoff_base=timedelta(seconds=10), backoff_cap=timedelta(seconds=60))
        assert [config.backoff(n).total_seconds() for n in range(1, 6)] == [10, 20, 40, 60, 60]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"retry_offsets": ()},
            {"retry_offsets": (timedelta(days=3), timedelta(days=1))},
            {"worker_count": 0},
            {"publish_max_attempts": 0},
        ],
    )
    def test_rejects_invalid_values(self, overrides):
        with pytest.raises(ValueError):
            BillingConfig(**overrides)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("BILLING_WEBHOOK_SECRET", "whsec_env")
        monkeypatch.setenv("BILLING_RETRY_OFFSET_DAYS", "2,4")
        monkeypatch.setenv("BILLING_WORKERS", "3")
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")

        config = BillingConfig.from_env()

        assert config.webhook_secret == "whsec_env"
        assert config.retry_offsets == (timedelta(days=2), timedelta(days=4))
        assert config.worker_count == 3
        assert config.redis_url == "redis://localhost:6379/0"


class TestConfigBinding:
    def test_bound_config_is_visible_inside_block(self):
        config = BillingConfig(worker_count=2)
        with use_config(config):
            assert current_config() is config

    def test_binding_is_restored(self):
        outer = current_config()
        with use_config(BillingConfig(worker_count=2)):
            pass
        assert current_config() is outer
