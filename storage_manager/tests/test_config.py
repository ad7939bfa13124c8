"""Configuration loading and validation."""
import logging
from decimal import Decimal
from types import SimpleNamespace

import pytest

from storage_manager.core.config import Settings, StorageConfig, validate_config


def make_settings(**overrides):
    defaults = dict(
        DATABASE_URL="sqlite:///storage.db",
        STORAGE_BILLING_ENABLED=False,
        STRIPE_SECRET_KEY=None,
        VIOLATION_GRACE_PERIOD_HOURS=48,
        CONFIG_STRICT=False,
    )
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


def test_settings_defaults(monkeypatch):
    monkeypatch.delenv("STORAGE_BILLING_ENABLED", raising=False)
    monkeypatch.delenv("VIOLATION_GRACE_PERIOD_HOURS", raising=False)
    cfg = Settings(_env_file=None)
    assert cfg.STORAGE_BILLING_ENABLED is False
    assert cfg.VIOLATION_GRACE_PERIOD_HOURS == 48


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("STORAGE_BILLING_ENABLED", "true")
    monkeypatch.setenv("VIOLATION_DEFAULT_DAILY_RATE", "3.5")
    cfg = Settings(_env_file=None)
    assert cfg.STORAGE_BILLING_ENABLED is True
    assert cfg.VIOLATION_DEFAULT_DAILY_RATE == Decimal("3.5")


def test_storage_config_from_settings():
    cfg = Settings(
        _env_file=None,
        STORAGE_BILLING_ENABLED=True,
        STORAGE_DEFAULT_PRICE_ID=" price_default ",
        VIOLATION_DEFAULT_DAILY_RATE=Decimal("2.50"),
        VIOLATION_GRACE_PERIOD_HOURS=24,
        NOTIFICATION_RECIPIENTS="ops@example.org, , desk@example.org",
        NOTIFICATION_ENABLED_EVENTS="release,violation_fine",
        PUBLIC_BASE_URL="https://storage.example.org/",
    )

    config = StorageConfig.from_settings(cfg)

    assert config.billing_enabled is True
    assert config.default_price_id == "price_default"
    assert config.default_daily_rate == Decimal("2.50")
    assert config.grace_period_hours == 24
    assert config.notification_recipients == ("ops@example.org", "desk@example.org")
    assert config.enabled_events == ("release", "violation_fine")
    assert config.base_url == "https://storage.example.org"


def test_validate_config_strict_raises_on_missing_database():
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        validate_config(strict=True, settings_obj=make_settings(DATABASE_URL=None))


def test_validate_config_requires_stripe_key_when_billing_enabled():
    with pytest.raises(RuntimeError, match="STRIPE_SECRET_KEY"):
        validate_config(strict=True, settings_obj=make_settings(STORAGE_BILLING_ENABLED=True))

    assert validate_config(
        strict=True,
        settings_obj=make_settings(STORAGE_BILLING_ENABLED=True, STRIPE_SECRET_KEY="sk_test"),
    )


def test_validate_config_rejects_negative_grace_period():
    with pytest.raises(RuntimeError, match="GRACE_PERIOD"):
        validate_config(strict=True, settings_obj=make_settings(VIOLATION_GRACE_PERIOD_HOURS=-1))


def test_validate_config_warns_when_not_strict(caplog):
    logger = logging.getLogger("storage_manager.tests.config")
    with caplog.at_level(logging.WARNING, logger="storage_manager.tests.config"):
        assert validate_config(strict=False, settings_obj=make_settings(DATABASE_URL=None), logger=logger)
    assert "Missing required configuration: DATABASE_URL" in caplog.text
