import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple

from pydantic_settings import BaseSettings
from pydantic import ConfigDict


DEFAULT_ENABLED_EVENTS = "assignment,release,violation_warning,violation_fine,violation_resolved"


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Storage billing
    STORAGE_BILLING_ENABLED: bool = False
    STORAGE_DEFAULT_PRICE_ID: str = ""

    # Violations
    VIOLATION_DEFAULT_DAILY_RATE: Decimal = Decimal("0.00")
    VIOLATION_GRACE_PERIOD_HOURS: int = 48

    # Notifications
    NOTIFICATION_RECIPIENTS: str = ""  # comma-separated staff addresses
    NOTIFICATION_ENABLED_EVENTS: str = DEFAULT_ENABLED_EVENTS
    SITE_NAME: str = "Storage Manager"

    # App URLs
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class StorageConfig:
    """Explicit configuration handed to the billing and violation engines."""
    billing_enabled: bool = False
    default_price_id: str = ""
    default_daily_rate: Decimal = Decimal("0.00")
    grace_period_hours: int = 48
    notification_recipients: Tuple[str, ...] = ()
    enabled_events: Tuple[str, ...] = _split_csv(DEFAULT_ENABLED_EVENTS)
    site_name: str = "Storage Manager"
    base_url: str = "http://localhost:8000"

    @classmethod
    def from_settings(cls, settings_obj: Optional[Settings] = None) -> "StorageConfig":
        cfg = settings_obj or settings
        return cls(
            billing_enabled=bool(cfg.STORAGE_BILLING_ENABLED),
            default_price_id=(cfg.STORAGE_DEFAULT_PRICE_ID or "").strip(),
            default_daily_rate=Decimal(cfg.VIOLATION_DEFAULT_DAILY_RATE or 0),
            grace_period_hours=int(cfg.VIOLATION_GRACE_PERIOD_HOURS or 0),
            notification_recipients=_split_csv(cfg.NOTIFICATION_RECIPIENTS),
            enabled_events=_split_csv(cfg.NOTIFICATION_ENABLED_EVENTS),
            site_name=cfg.SITE_NAME,
            base_url=cfg.PUBLIC_BASE_URL.rstrip("/"),
        )


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("storage_manager")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = ["DATABASE_URL"]
    if getattr(cfg, "STORAGE_BILLING_ENABLED", False):
        required_keys.append("STRIPE_SECRET_KEY")

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if getattr(cfg, "VIOLATION_GRACE_PERIOD_HOURS", 0) < 0:
        message = "VIOLATION_GRACE_PERIOD_HOURS must not be negative"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
