# File: src/parkbook/config.py
"""
Configuration for the reservation engine

Business constants (grace period, lead-in buffer, extension limits, fallback
rate) and infrastructure endpoints are read from PARKBOOK_* environment
variables, optionally through a .env file. Settings are loaded once by the
composition root and injected into services.
"""

import logging
import os
import sys
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from dotenv import load_dotenv

from .application.availability import OverlapPolicy

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _safe_int(env_var: str, default: str) -> int:
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid integer for {env_var}: {raw!r}") from None


def _safe_decimal(env_var: str, default: str) -> Decimal:
    raw = os.getenv(env_var, default)
    try:
        return Decimal(raw)
    except (InvalidOperation, TypeError):
        raise ValueError(f"Invalid decimal for {env_var}: {raw!r}") from None


def _overlap_policy(env_var: str, default: str) -> OverlapPolicy:
    raw = os.getenv(env_var, default)
    try:
        return OverlapPolicy(raw.strip().lower())
    except ValueError:
        choices = ", ".join(p.value for p in OverlapPolicy)
        raise ValueError(f"Invalid {env_var}: {raw!r} (expected one of {choices})") from None


@dataclass(frozen=True)
class ReservationSettings:
    """Settings consumed by the booking, overstay and payment services"""

    grace_period_minutes: int = 15
    lead_in_hours: int = 1
    default_hourly_rate: Decimal = Decimal('10')
    currency: str = "ETB"
    min_extension_hours: int = 1
    max_extension_hours: int = 24
    overlap_policy: OverlapPolicy = OverlapPolicy.STRICT
    database_url: str = "memory://"
    redis_url: Optional[str] = None
    payment_base_url: str = "https://payments.parkbook.local"
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'ReservationSettings':
        return cls(
            grace_period_minutes=_safe_int("PARKBOOK_GRACE_PERIOD_MINUTES", "15"),
            lead_in_hours=_safe_int("PARKBOOK_LEAD_IN_HOURS", "1"),
            default_hourly_rate=_safe_decimal("PARKBOOK_DEFAULT_HOURLY_RATE", "10"),
            currency=os.getenv("PARKBOOK_CURRENCY", "ETB").upper(),
            min_extension_hours=_safe_int("PARKBOOK_MIN_EXTENSION_HOURS", "1"),
            max_extension_hours=_safe_int("PARKBOOK_MAX_EXTENSION_HOURS", "24"),
            overlap_policy=_overlap_policy("PARKBOOK_OVERLAP_POLICY", "strict"),
            database_url=os.getenv("PARKBOOK_DATABASE_URL", "memory://"),
            redis_url=os.getenv("PARKBOOK_REDIS_URL") or None,
            payment_base_url=os.getenv("PARKBOOK_PAYMENT_BASE_URL", "https://payments.parkbook.local"),
            log_level=os.getenv("PARKBOOK_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("PARKBOOK_LOG_FILE") or None,
        )


def _validate_settings(settings: ReservationSettings) -> None:
    """Validate configuration values are within acceptable ranges."""
    if settings.grace_period_minutes < 0:
        raise ValueError(
            f"PARKBOOK_GRACE_PERIOD_MINUTES must be >= 0, got {settings.grace_period_minutes}"
        )
    if settings.lead_in_hours < 0:
        raise ValueError(f"PARKBOOK_LEAD_IN_HOURS must be >= 0, got {settings.lead_in_hours}")
    if settings.default_hourly_rate <= 0:
        raise ValueError(
            f"PARKBOOK_DEFAULT_HOURLY_RATE must be > 0, got {settings.default_hourly_rate}"
        )
    if len(settings.currency) != 3:
        raise ValueError(f"PARKBOOK_CURRENCY must be a 3-letter code, got {settings.currency!r}")
    if settings.min_extension_hours < 1:
        raise ValueError(
            f"PARKBOOK_MIN_EXTENSION_HOURS must be >= 1, got {settings.min_extension_hours}"
        )
    if settings.max_extension_hours < settings.min_extension_hours:
        raise ValueError(
            "PARKBOOK_MAX_EXTENSION_HOURS must be >= PARKBOOK_MIN_EXTENSION_HOURS, "
            f"got {settings.max_extension_hours}"
        )
    if settings.log_level not in logging.getLevelNamesMapping():
        raise ValueError(f"PARKBOOK_LOG_LEVEL is not a logging level: {settings.log_level!r}")


def load_settings(dotenv_path: Optional[str] = None) -> ReservationSettings:
    """Load and validate settings from the environment (and .env if present)"""
    load_dotenv(dotenv_path)
    settings = ReservationSettings.from_env()
    _validate_settings(settings)
    logger.debug(f"Settings loaded (overlap policy: {settings.overlap_policy.value})")
    return settings


def setup_logging(settings: Optional[ReservationSettings] = None) -> logging.Logger:
    """Setup application logging configuration"""
    settings = settings or ReservationSettings()
    handlers = [logging.StreamHandler(sys.stdout)]

    if settings.log_file:
        log_dir = os.path.dirname(settings.log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir)
        handlers.append(logging.FileHandler(settings.log_file))

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers
    )
    return logging.getLogger("parkbook")
