"""
============================================================================
Budget Request Service - Configuration
============================================================================

Decimal Integrity: Synthetic allocation parsed as decimal.Decimal

This module provides configuration management for the budget request service:
- Environment variable parsing with type safety (python-dotenv aware)
- Default values for optional configuration
- Validation of configuration ranges
- Fail-closed behavior on invalid config (BRQ-070)

ENVIRONMENT VARIABLES:
    - BUDGET_DATABASE_URL: SQLAlchemy async URL (default: sqlite+aiosqlite)
    - REDIS_URL: Response cache backend; in-process cache when unset
    - FINANCE_API_URL / FINANCE_API_KEY / FINANCE_TIMEOUT_SECONDS (default 5)
    - AUDIT_LOGS_API_URL / AUDIT_API_KEY
    - SMTP_HOST / SMTP_PORT (587) / SMTP_USER / SMTP_PASSWORD / SMTP_FROM
    - FRONTEND_URL: link target in notification emails
    - WEBHOOK_TIMEOUT_SECONDS (default 5)
    - BUDGET_LIST_CACHE_TTL (180) / BUDGET_DETAIL_CACHE_TTL (600)
    - BUDGET_DEPARTMENT_CACHE_TTL (900) / BUDGET_ANALYTICS_CACHE_TTL (300)
    - BUDGET_SYNTHETIC_ALLOCATION (default 10000000)
    - BUDGET_RESERVATION_EXPIRY_DAYS (default 30)
    - BUDGET_SIDE_EFFECT_MAX_ATTEMPTS (3) / BUDGET_SIDE_EFFECT_RETRY_BASE_SECONDS (0.5)
    - BUDGET_EMAIL_MAX_ATTEMPTS (3)
    - BUDGET_ADMIN_RECIPIENTS: comma-separated "email" or "Name <email>" entries

ERROR CODES:
    - BRQ-070: Required configuration missing or invalid

============================================================================
"""

from decimal import Decimal, InvalidOperation
from typing import Optional, List, Tuple
from dataclasses import dataclass, field
import logging
import os

from dotenv import load_dotenv

from services.budget_request_errors import BudgetConfigurationError, BudgetRequestErrorCode

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Default Values
# =============================================================================

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./budget_requests.db"
DEFAULT_FINANCE_TIMEOUT_SECONDS = 5.0
DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 5.0
DEFAULT_SMTP_PORT = 587
DEFAULT_FRONTEND_URL = "http://localhost:3000"

# Response cache TTLs (seconds)
DEFAULT_LIST_CACHE_TTL = 180
DEFAULT_DETAIL_CACHE_TTL = 600
DEFAULT_DEPARTMENT_CACHE_TTL = 900
DEFAULT_ANALYTICS_CACHE_TTL = 300

DEFAULT_SYNTHETIC_ALLOCATION = Decimal("10000000")
DEFAULT_RESERVATION_EXPIRY_DAYS = 30

DEFAULT_SIDE_EFFECT_MAX_ATTEMPTS = 3
DEFAULT_SIDE_EFFECT_RETRY_BASE_SECONDS = 0.5
DEFAULT_EMAIL_MAX_ATTEMPTS = 3


# =============================================================================
# Environment Parsing Helpers
# =============================================================================

def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(
            f"[BR-CONFIG] Invalid {name} value: {raw}, using default: {default}"
        )
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning(
            f"[BR-CONFIG] Invalid {name} value: {raw}, using default: {default}"
        )
        return default


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return Decimal(raw.strip())
    except InvalidOperation:
        logger.warning(
            f"[BR-CONFIG] Invalid {name} value: {raw}, using default: {default}"
        )
        return default


def parse_recipients(raw: Optional[str]) -> List[Tuple[Optional[str], str]]:
    """
    Parse "Alice <alice@x.io>, bob@x.io" into [(name, email), ...].
    """
    recipients: List[Tuple[Optional[str], str]] = []
    if not raw:
        return recipients
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if "<" in entry and entry.endswith(">"):
            name, _, email = entry[:-1].partition("<")
            recipients.append((name.strip() or None, email.strip()))
        else:
            recipients.append((None, entry))
    return recipients


# =============================================================================
# BudgetServiceConfig Class
# =============================================================================

@dataclass
class BudgetServiceConfig:
    """
    Budget request service configuration.

    External URLs are optional: a missing Finance URL sends every sync
    straight to the stale/synthetic fallback, a missing audit URL skips
    audit delivery, missing SMTP leaves notifications pending.
    """

    database_url: str = DEFAULT_DATABASE_URL
    redis_url: Optional[str] = None

    finance_api_url: Optional[str] = None
    finance_api_key: Optional[str] = None
    finance_timeout_seconds: float = DEFAULT_FINANCE_TIMEOUT_SECONDS

    audit_logs_api_url: Optional[str] = None
    audit_api_key: Optional[str] = None

    smtp_host: Optional[str] = None
    smtp_port: int = DEFAULT_SMTP_PORT
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from: Optional[str] = None
    frontend_url: str = DEFAULT_FRONTEND_URL

    webhook_timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS

    list_cache_ttl: int = DEFAULT_LIST_CACHE_TTL
    detail_cache_ttl: int = DEFAULT_DETAIL_CACHE_TTL
    department_cache_ttl: int = DEFAULT_DEPARTMENT_CACHE_TTL
    analytics_cache_ttl: int = DEFAULT_ANALYTICS_CACHE_TTL

    synthetic_allocation: Decimal = field(default_factory=lambda: DEFAULT_SYNTHETIC_ALLOCATION)
    reservation_expiry_days: int = DEFAULT_RESERVATION_EXPIRY_DAYS

    side_effect_max_attempts: int = DEFAULT_SIDE_EFFECT_MAX_ATTEMPTS
    side_effect_retry_base_seconds: float = DEFAULT_SIDE_EFFECT_RETRY_BASE_SECONDS
    email_max_attempts: int = DEFAULT_EMAIL_MAX_ATTEMPTS

    admin_recipients: List[Tuple[Optional[str], str]] = field(default_factory=list)

    def validate(self) -> None:
        """
        Validate configuration ranges.

        Raises:
            BudgetConfigurationError: BRQ-070 listing every problem found
        """
        errors: List[str] = []

        if not self.database_url:
            errors.append("BUDGET_DATABASE_URL must be set")

        for name, value in (
            ("FINANCE_TIMEOUT_SECONDS", self.finance_timeout_seconds),
            ("WEBHOOK_TIMEOUT_SECONDS", self.webhook_timeout_seconds),
        ):
            if value <= 0:
                errors.append(f"{name} must be positive, got: {value}")

        for name, value in (
            ("BUDGET_LIST_CACHE_TTL", self.list_cache_ttl),
            ("BUDGET_DETAIL_CACHE_TTL", self.detail_cache_ttl),
            ("BUDGET_DEPARTMENT_CACHE_TTL", self.department_cache_ttl),
            ("BUDGET_ANALYTICS_CACHE_TTL", self.analytics_cache_ttl),
            ("BUDGET_RESERVATION_EXPIRY_DAYS", self.reservation_expiry_days),
            ("BUDGET_SIDE_EFFECT_MAX_ATTEMPTS", self.side_effect_max_attempts),
            ("BUDGET_EMAIL_MAX_ATTEMPTS", self.email_max_attempts),
        ):
            if value <= 0:
                errors.append(f"{name} must be positive, got: {value}")

        if self.side_effect_retry_base_seconds < 0:
            errors.append(
                f"BUDGET_SIDE_EFFECT_RETRY_BASE_SECONDS must be non-negative, "
                f"got: {self.side_effect_retry_base_seconds}"
            )

        if self.synthetic_allocation <= 0:
            errors.append(
                f"BUDGET_SYNTHETIC_ALLOCATION must be positive, got: {self.synthetic_allocation}"
            )

        if self.smtp_host and not (self.smtp_from or self.smtp_user):
            errors.append("SMTP_FROM or SMTP_USER must be set when SMTP_HOST is set")

        if errors:
            error_msg = "Budget service configuration validation failed: " + "; ".join(errors)
            logger.error(f"[{BudgetRequestErrorCode.CONFIG_MISSING}] {error_msg}")
            raise BudgetConfigurationError(error_msg)

        logger.info(
            f"[BR-CONFIG] Configuration validated | "
            f"finance_configured={bool(self.finance_api_url)} | "
            f"audit_configured={bool(self.audit_logs_api_url)} | "
            f"smtp_configured={bool(self.smtp_host)} | "
            f"redis_configured={bool(self.redis_url)} | "
            f"admin_recipients_count={len(self.admin_recipients)}"
        )

    @property
    def sender_address(self) -> Optional[str]:
        return self.smtp_from or self.smtp_user

    @classmethod
    def from_environment(cls, validate: bool = True) -> "BudgetServiceConfig":
        """
        Load configuration from environment variables (and a .env file if present).

        Raises:
            BudgetConfigurationError: If validation fails (BRQ-070)
        """
        load_dotenv()

        config = cls(
            database_url=_env_str("BUDGET_DATABASE_URL", DEFAULT_DATABASE_URL),
            redis_url=_env_str("REDIS_URL"),
            finance_api_url=_env_str("FINANCE_API_URL"),
            finance_api_key=_env_str("FINANCE_API_KEY"),
            finance_timeout_seconds=_env_float(
                "FINANCE_TIMEOUT_SECONDS", DEFAULT_FINANCE_TIMEOUT_SECONDS
            ),
            audit_logs_api_url=_env_str("AUDIT_LOGS_API_URL"),
            audit_api_key=_env_str("AUDIT_API_KEY"),
            smtp_host=_env_str("SMTP_HOST"),
            smtp_port=_env_int("SMTP_PORT", DEFAULT_SMTP_PORT),
            smtp_user=_env_str("SMTP_USER"),
            smtp_password=_env_str("SMTP_PASSWORD"),
            smtp_from=_env_str("SMTP_FROM"),
            frontend_url=_env_str("FRONTEND_URL", DEFAULT_FRONTEND_URL),
            webhook_timeout_seconds=_env_float(
                "WEBHOOK_TIMEOUT_SECONDS", DEFAULT_WEBHOOK_TIMEOUT_SECONDS
            ),
            list_cache_ttl=_env_int("BUDGET_LIST_CACHE_TTL", DEFAULT_LIST_CACHE_TTL),
            detail_cache_ttl=_env_int("BUDGET_DETAIL_CACHE_TTL", DEFAULT_DETAIL_CACHE_TTL),
            department_cache_ttl=_env_int(
                "BUDGET_DEPARTMENT_CACHE_TTL", DEFAULT_DEPARTMENT_CACHE_TTL
            ),
            analytics_cache_ttl=_env_int(
                "BUDGET_ANALYTICS_CACHE_TTL", DEFAULT_ANALYTICS_CACHE_TTL
            ),
            synthetic_allocation=_env_decimal(
                "BUDGET_SYNTHETIC_ALLOCATION", DEFAULT_SYNTHETIC_ALLOCATION
            ),
            reservation_expiry_days=_env_int(
                "BUDGET_RESERVATION_EXPIRY_DAYS", DEFAULT_RESERVATION_EXPIRY_DAYS
            ),
            side_effect_max_attempts=_env_int(
                "BUDGET_SIDE_EFFECT_MAX_ATTEMPTS", DEFAULT_SIDE_EFFECT_MAX_ATTEMPTS
            ),
            side_effect_retry_base_seconds=_env_float(
                "BUDGET_SIDE_EFFECT_RETRY_BASE_SECONDS",
                DEFAULT_SIDE_EFFECT_RETRY_BASE_SECONDS,
            ),
            email_max_attempts=_env_int(
                "BUDGET_EMAIL_MAX_ATTEMPTS", DEFAULT_EMAIL_MAX_ATTEMPTS
            ),
            admin_recipients=parse_recipients(_env_str("BUDGET_ADMIN_RECIPIENTS")),
        )

        logger.info(
            f"[BR-CONFIG] Loading configuration from environment | "
            f"FINANCE_API_URL={config.finance_api_url} | "
            f"AUDIT_LOGS_API_URL={config.audit_logs_api_url} | "
            f"SMTP_HOST={config.smtp_host} | "
            f"BUDGET_SYNTHETIC_ALLOCATION={config.synthetic_allocation}"
        )

        if validate:
            config.validate()

        return config

    def to_dict(self) -> dict:
        """Configuration for logging. Secrets are masked."""
        return {
            "database_url": self.database_url.split("@")[-1],
            "redis_configured": bool(self.redis_url),
            "finance_api_url": self.finance_api_url,
            "finance_api_key": "***" if self.finance_api_key else None,
            "finance_timeout_seconds": self.finance_timeout_seconds,
            "audit_logs_api_url": self.audit_logs_api_url,
            "smtp_host": self.smtp_host,
            "smtp_port": self.smtp_port,
            "webhook_timeout_seconds": self.webhook_timeout_seconds,
            "list_cache_ttl": self.list_cache_ttl,
            "detail_cache_ttl": self.detail_cache_ttl,
            "department_cache_ttl": self.department_cache_ttl,
            "analytics_cache_ttl": self.analytics_cache_ttl,
            "synthetic_allocation": str(self.synthetic_allocation),
            "reservation_expiry_days": self.reservation_expiry_days,
            "side_effect_max_attempts": self.side_effect_max_attempts,
            "email_max_attempts": self.email_max_attempts,
            "admin_recipients_count": len(self.admin_recipients),
        }


# =============================================================================
# Module-Level Configuration Instance
# =============================================================================

_config_instance: Optional[BudgetServiceConfig] = None


def get_budget_config(validate: bool = True) -> BudgetServiceConfig:
    """
    Get the global configuration instance, loading from the environment
    on first access.
    """
    global _config_instance

    if _config_instance is None:
        _config_instance = BudgetServiceConfig.from_environment(validate=validate)

    return _config_instance


def reset_budget_config() -> None:
    """Reset the global configuration instance (used by tests)."""
    global _config_instance
    _config_instance = None
    logger.debug("[BR-CONFIG] Configuration instance reset")


__all__ = [
    "BudgetServiceConfig",
    "DEFAULT_DATABASE_URL",
    "DEFAULT_LIST_CACHE_TTL",
    "DEFAULT_DETAIL_CACHE_TTL",
    "DEFAULT_DEPARTMENT_CACHE_TTL",
    "DEFAULT_ANALYTICS_CACHE_TTL",
    "DEFAULT_SYNTHETIC_ALLOCATION",
    "DEFAULT_RESERVATION_EXPIRY_DAYS",
    "parse_recipients",
    "get_budget_config",
    "reset_budget_config",
]
