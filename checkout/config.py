"""Service configuration loaded from the environment.

All tunables of the payment flow live here: gateway credentials, the fixed
USD -> MNT settlement rate, sweep intervals and batch sizes, per-session check
cooldowns and retention windows.
"""

import os
from decimal import Decimal
from functools import cache
from typing import Dict, Optional, Tuple

from pydantic import BaseModel

from checkout.errors import ConfigurationError
from checkout.logging import get_logger

logger = get_logger(__name__)


# Required variables, grouped by the concern that needs them.
# "A|B" means either variable satisfies the requirement.
REQUIRED_ENV: Dict[str, Tuple[str, ...]] = {
    "gateway": (
        "QPAY_USERNAME|QPAY_CLIENT_ID",
        "QPAY_PASSWORD|QPAY_CLIENT_SECRET",
        "QPAY_INVOICE_CODE",
        "QPAY_CALLBACK_PUBLIC_BASE_URL",
    ),
    "storage": (
        "SUPABASE_URL",
        "SUPABASE_SERVICE_ROLE_KEY",
        "UPSTASH_REDIS_REST_URL",
        "UPSTASH_REDIS_REST_TOKEN",
    ),
    "auth": (
        "INTERNAL_API_SECRET",
        "AUTH_TOKEN_SECRET",
    ),
}


def _env(*names: str, default: str = "") -> str:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value.strip()
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class PaymentSettings(BaseModel):
    """Snapshot of the payment configuration."""

    # Gateway
    qpay_base_url: str = "https://merchant.qpay.mn"
    qpay_username: str = ""
    qpay_password: str = ""
    qpay_invoice_code: str = ""
    callback_base_url: str = "http://localhost:8000"
    http_timeout_seconds: float = 10.0
    usd_to_mnt_rate: Decimal = Decimal("3400")

    # Receipts (ebarimt)
    receipt_enabled: bool = False
    receipt_default_receiver_type: str = "CITIZEN"
    receipt_default_district_code: str = "3505"
    receipt_default_classification_code: str = "0000010"

    # Session cache projection
    session_cache_ttl_seconds: int = 600

    # Reconciliation sweep
    reconcile_interval_seconds: int = 60
    reconcile_batch_size: int = 25
    reconcile_min_age_seconds: int = 30
    check_cooldown_seconds: int = 30
    status_check_cooldown_seconds: int = 10

    # Cleanup sweep
    cleanup_interval_seconds: int = 6 * 60 * 60
    cleanup_batch_size: int = 500
    session_expiry_minutes: int = 30
    webhook_event_retention_days: int = 90
    session_terminal_retention_days: int = 30
    session_processed_retention_days: int = 30
    processed_invoice_retention_days: int = 365  # 0 keeps ledger rows forever

    sweeps_enabled: bool = True

    @property
    def reconcile_lock_ttl_seconds(self) -> int:
        """Lock TTL slightly shorter than the sweep interval."""
        return max(1, self.reconcile_interval_seconds - 5)

    @property
    def cleanup_lock_ttl_seconds(self) -> int:
        return 300

    @classmethod
    def from_env(cls) -> "PaymentSettings":
        rate_raw = _env("QPAY_USD_TO_MNT_RATE", default="3400")
        try:
            rate = Decimal(rate_raw)
        except ArithmeticError:
            raise ConfigurationError(f"QPAY_USD_TO_MNT_RATE must be numeric, got {rate_raw!r}")
        if rate <= 0:
            raise ConfigurationError("QPAY_USD_TO_MNT_RATE must be positive")

        return cls(
            qpay_base_url=_env("QPAY_BASE_URL", default="https://merchant.qpay.mn").rstrip("/"),
            qpay_username=_env("QPAY_USERNAME", "QPAY_CLIENT_ID"),
            qpay_password=_env("QPAY_PASSWORD", "QPAY_CLIENT_SECRET"),
            qpay_invoice_code=_env("QPAY_INVOICE_CODE"),
            callback_base_url=_env(
                "QPAY_CALLBACK_PUBLIC_BASE_URL", default="http://localhost:8000"
            ).rstrip("/"),
            http_timeout_seconds=float(_env("QPAY_HTTP_TIMEOUT_SECONDS", default="10")),
            usd_to_mnt_rate=rate,
            receipt_enabled=_env_bool("QPAY_RECEIPT_ENABLED", False),
            receipt_default_receiver_type=_env(
                "QPAY_RECEIPT_DEFAULT_RECEIVER_TYPE", default="CITIZEN"
            ),
            receipt_default_district_code=_env("QPAY_RECEIPT_DEFAULT_DISTRICT_CODE", default="3505"),
            receipt_default_classification_code=_env(
                "QPAY_RECEIPT_DEFAULT_CLASSIFICATION_CODE", default="0000010"
            ),
            session_cache_ttl_seconds=_env_int("QPAY_SESSION_CACHE_TTL_SECONDS", 600),
            reconcile_interval_seconds=_env_int("QPAY_RECONCILE_INTERVAL_SECONDS", 60),
            reconcile_batch_size=_env_int("QPAY_RECONCILE_BATCH_SIZE", 25),
            reconcile_min_age_seconds=_env_int("QPAY_RECONCILE_MIN_AGE_SECONDS", 30),
            check_cooldown_seconds=_env_int("QPAY_CHECK_COOLDOWN_SECONDS", 30),
            status_check_cooldown_seconds=_env_int("QPAY_STATUS_CHECK_COOLDOWN_SECONDS", 10),
            cleanup_interval_seconds=_env_int("QPAY_CLEANUP_INTERVAL_SECONDS", 6 * 60 * 60),
            cleanup_batch_size=_env_int("QPAY_CLEANUP_BATCH_SIZE", 500),
            session_expiry_minutes=_env_int("QPAY_SESSION_EXPIRY_MINUTES", 30),
            webhook_event_retention_days=_env_int("QPAY_WEBHOOK_EVENT_RETENTION_DAYS", 90),
            session_terminal_retention_days=_env_int("QPAY_SESSION_TERMINAL_RETENTION_DAYS", 30),
            session_processed_retention_days=_env_int("QPAY_SESSION_PROCESSED_RETENTION_DAYS", 30),
            processed_invoice_retention_days=_env_int(
                "QPAY_PROCESSED_INVOICE_RETENTION_DAYS", 365
            ),
            sweeps_enabled=_env_bool("PAYMENT_SWEEPS_ENABLED", True),
        )


@cache
def get_settings() -> PaymentSettings:
    """Get settings (read from the environment once per process)."""
    return PaymentSettings.from_env()


def missing_required_env() -> list[str]:
    """Return the required variables that are not set."""
    missing = []
    for names in REQUIRED_ENV.values():
        for entry in names:
            alternatives = entry.split("|")
            if not any(os.environ.get(name) for name in alternatives):
                missing.append(entry)
    return missing


def validate_required_config() -> PaymentSettings:
    """
    Validate configuration at startup.

    Raises:
        ConfigurationError: listing every missing variable. The service must
            not start without gateway credentials or storage.
    """
    missing = missing_required_env()
    if missing:
        logger.critical("Checkout service misconfigured. Missing: %s", ", ".join(missing))
        raise ConfigurationError(
            "Missing required configuration: " + ", ".join(missing)
        )
    return get_settings()


def get_secret(name: str) -> Optional[str]:
    """Read a secret lazily so tests can set it per case."""
    value = os.environ.get(name, "")
    return value or None
