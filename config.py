"""
Configuration Module
====================
FoodieDrops settings read from the environment (and `.env` when present).

Everything is validated when Config is built, so a bad deploy fails at
startup instead of on the first checkout. Stripe and Supabase secrets
never appear in get_safe_summary().
"""

import os
import logging
from typing import Optional, Dict, Any, List
from pathlib import Path
from dotenv import load_dotenv


# ============================================================================
# LOGGING
# ============================================================================

logger = logging.getLogger(__name__)


# ============================================================================
# ENVIRONMENT LOADING
# ============================================================================

def load_environment():
    """Load .env from the working directory; existing variables win."""
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from .env file")
    else:
        logger.info("No .env file found, using system environment variables")


# Load on module import
load_environment()


# ============================================================================
# CONFIGURATION EXCEPTION
# ============================================================================

class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# ============================================================================
# VALIDATION HELPERS
# ============================================================================

def _get_required_env(key: str, description: str = None) -> str:
    """Non-empty value of `key`, else ConfigurationError naming it."""
    value = os.getenv(key)

    if not value or value.strip() == "":
        desc = f" ({description})" if description else ""
        raise ConfigurationError(
            f"Missing required environment variable: {key}{desc}"
        )

    return value.strip()


def _get_optional_env(key: str, default: str = None) -> Optional[str]:
    value = os.getenv(key, default)
    return value.strip() if value else default


def _get_bool_env(key: str, default: bool = False) -> bool:
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on", "enabled")


def _get_int_env(key: str, default: int = None) -> Optional[int]:
    """
    Get integer environment variable.

    Raises:
        ConfigurationError: If value is not a valid integer
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid integer value for {key}: {value}"
        )


def _get_float_env(key: str, default: float = None) -> Optional[float]:
    """
    Get float environment variable.

    Raises:
        ConfigurationError: If value is not a valid number
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid numeric value for {key}: {value}"
        )


# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

DATABASE_BACKENDS = ("supabase", "memory")


class SupabaseConfig:
    """Supabase database configuration."""

    def __init__(self):
        self.url = _get_required_env(
            "SUPABASE_URL",
            "Supabase project URL"
        )

        self.key = _get_required_env(
            "SUPABASE_SERVICE_ROLE_KEY",
            "Supabase service role key (bypasses RLS for order writes)"
        )

        # Validate URL format
        if not self.url.startswith("https://"):
            raise ConfigurationError(
                f"SUPABASE_URL must start with https://: {self.url}"
            )

        self.connection_timeout = _get_int_env("SUPABASE_TIMEOUT", 10)


# ============================================================================
# STRIPE CONFIGURATION
# ============================================================================

class StripeConfig:
    """Stripe Checkout and webhook configuration."""

    def __init__(self):
        self.secret_key = _get_required_env(
            "STRIPE_SECRET_KEY",
            "Stripe secret API key"
        )

        self.webhook_secret = _get_required_env(
            "STRIPE_WEBHOOK_SECRET",
            "Stripe webhook signing secret (whsec_...)"
        )

        self.currency = _get_optional_env("STRIPE_CURRENCY", "usd").lower()

        if len(self.currency) != 3:
            raise ConfigurationError(
                f"STRIPE_CURRENCY must be an ISO 4217 code: {self.currency}"
            )

        # Seconds a signed webhook timestamp stays acceptable
        self.webhook_tolerance = _get_int_env("STRIPE_WEBHOOK_TOLERANCE", 300)

        # Stripe only accepts expires_at between 30 minutes and 24 hours out
        self.session_ttl_minutes = _get_int_env(
            "CHECKOUT_SESSION_TTL_MINUTES", 30
        )

        if not 30 <= self.session_ttl_minutes <= 1440:
            raise ConfigurationError(
                f"CHECKOUT_SESSION_TTL_MINUTES must be between 30 and 1440: "
                f"{self.session_ttl_minutes}"
            )


# ============================================================================
# PRICING CONFIGURATION
# ============================================================================

class PricingConfig:
    """Platform-wide pricing and order-size limits."""

    def __init__(self):
        # Flat platform fee charged per package, independent of the drop
        self.booking_fee_per_package = _get_float_env(
            "BOOKING_FEE_PER_PACKAGE", 1.00
        )

        if self.booking_fee_per_package < 0:
            raise ConfigurationError(
                f"BOOKING_FEE_PER_PACKAGE cannot be negative: "
                f"{self.booking_fee_per_package}"
            )

        self.max_standard_quantity = _get_int_env("MAX_STANDARD_QUANTITY", 20)
        self.max_bulk_quantity = _get_int_env("MAX_BULK_QUANTITY", 500)

        if self.max_standard_quantity < 1:
            raise ConfigurationError(
                f"MAX_STANDARD_QUANTITY must be at least 1: "
                f"{self.max_standard_quantity}"
            )

        if self.max_bulk_quantity < self.max_standard_quantity:
            raise ConfigurationError(
                f"MAX_BULK_QUANTITY ({self.max_bulk_quantity}) must not be "
                f"below MAX_STANDARD_QUANTITY ({self.max_standard_quantity})"
            )


# ============================================================================
# RESERVATION CONFIGURATION
# ============================================================================

class ReservationConfig:
    """Inventory hold policy for pending orders."""

    def __init__(self):
        # Pending orders without a checkout session are released after this
        self.pending_order_ttl_minutes = _get_int_env(
            "PENDING_ORDER_TTL_MINUTES", 60
        )
        self.sweep_interval_seconds = _get_int_env(
            "ABANDONED_ORDER_SWEEP_SECONDS", 300
        )

        if self.pending_order_ttl_minutes < 1:
            raise ConfigurationError(
                f"PENDING_ORDER_TTL_MINUTES must be at least 1: "
                f"{self.pending_order_ttl_minutes}"
            )

        if self.sweep_interval_seconds < 1:
            raise ConfigurationError(
                f"ABANDONED_ORDER_SWEEP_SECONDS must be at least 1: "
                f"{self.sweep_interval_seconds}"
            )


# ============================================================================
# FEATURE FLAGS
# ============================================================================

class FeatureFlags:
    """Feature flags for optional functionality."""

    def __init__(self):
        self.enable_abandoned_order_sweep = _get_bool_env(
            "ENABLE_ABANDONED_ORDER_SWEEP", True
        )

        # Development/debug features
        self.debug_mode = _get_bool_env("DEBUG_MODE", False)


# ============================================================================
# SERVER CONFIGURATION
# ============================================================================

class ServerConfig:
    """Web server configuration."""

    def __init__(self):
        self.host = _get_optional_env("HOST", "0.0.0.0")
        self.port = _get_int_env("PORT", 8000)

        # Storefront origin used for checkout return URLs
        self.site_url = _get_optional_env(
            "SITE_URL",
            "http://localhost:5173"
        ).rstrip("/")

        if not self.site_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"SITE_URL must start with http:// or https://: {self.site_url}"
            )

        # CORS settings
        self.cors_origins = _get_optional_env("CORS_ORIGINS", "*").split(",")

        # Logging
        self.log_level = _get_optional_env("LOG_LEVEL", "INFO").upper()

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL: {self.log_level}"
            )


# ============================================================================
# MAIN CONFIGURATION CLASS
# ============================================================================

class Config:
    """
    Main configuration container.
    Loads and validates all configuration on initialization.
    """

    def __init__(self):
        """
        Initialize and validate all configuration.

        Raises:
            ConfigurationError: If any required configuration is missing or invalid
        """
        try:
            self.database_backend = _get_optional_env(
                "DATABASE_BACKEND", "supabase"
            ).lower()

            if self.database_backend not in DATABASE_BACKENDS:
                raise ConfigurationError(
                    f"Invalid DATABASE_BACKEND: {self.database_backend}. "
                    f"Must be one of {', '.join(DATABASE_BACKENDS)}"
                )

            # Supabase credentials are only needed when it is the backend
            self.supabase = (
                SupabaseConfig()
                if self.database_backend == "supabase"
                else None
            )
            self.stripe = StripeConfig()
            self.pricing = PricingConfig()
            self.reservation = ReservationConfig()
            self.features = FeatureFlags()
            self.server = ServerConfig()

            logger.info("Configuration loaded and validated successfully")

        except ConfigurationError as e:
            logger.error(f"Configuration error: {str(e)}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error loading configuration: {str(e)}")
            raise ConfigurationError(f"Configuration initialization failed: {str(e)}")

    def get_safe_summary(self) -> Dict[str, Any]:
        """
        Get safe configuration summary (no secrets).

        Returns:
            Dictionary with non-sensitive configuration
        """
        return {
            "database_backend": self.database_backend,
            "supabase_url": self.supabase.url if self.supabase else None,
            "currency": self.stripe.currency,
            "checkout_session_ttl_minutes": self.stripe.session_ttl_minutes,
            "pricing": {
                "booking_fee_per_package": self.pricing.booking_fee_per_package,
                "max_standard_quantity": self.pricing.max_standard_quantity,
                "max_bulk_quantity": self.pricing.max_bulk_quantity,
            },
            "reservation": {
                "pending_order_ttl_minutes": self.reservation.pending_order_ttl_minutes,
                "sweep_interval_seconds": self.reservation.sweep_interval_seconds,
            },
            "features": {
                "abandoned_order_sweep": self.features.enable_abandoned_order_sweep,
                "debug_mode": self.features.debug_mode,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "site_url": self.server.site_url,
                "log_level": self.server.log_level,
            },
        }

    def validate_runtime_dependencies(self) -> List[str]:
        """
        Validate that runtime settings are sensible for production.

        Returns:
            List of warnings (empty if all OK)
        """
        warnings = []

        if self.database_backend == "memory":
            warnings.append(
                "DATABASE_BACKEND=memory: orders are lost on restart"
            )

        if self.stripe.secret_key.startswith("sk_test_"):
            warnings.append("Stripe is running with a test-mode secret key")

        if not self.stripe.webhook_secret.startswith("whsec_"):
            warnings.append(
                "STRIPE_WEBHOOK_SECRET does not look like a signing secret"
            )

        return warnings


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get global configuration instance.
    Initializes on first call.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config

    if _config is None:
        _config = Config()

    return _config


def reload_config() -> Config:
    """
    Reload configuration from environment.
    Useful for testing or dynamic reconfiguration.
    """
    global _config
    load_environment()
    _config = Config()
    logger.info("Configuration reloaded")
    return _config


# ============================================================================
# VALIDATION FUNCTION
# ============================================================================

def validate_configuration():
    """
    Validate configuration and log summary.
    Useful for startup checks.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config = get_config()

    summary = config.get_safe_summary()

    logger.info("Configuration Summary:")
    logger.info(f"  Database: {summary['database_backend']}")
    logger.info(f"  Currency: {summary['currency']}")
    logger.info(
        f"  Booking fee: {summary['pricing']['booking_fee_per_package']:.2f}"
    )
    logger.info(f"  Server: {summary['server']['host']}:{summary['server']['port']}")
    logger.info(f"  Log Level: {summary['server']['log_level']}")

    logger.info("Feature Flags:")
    for feature, enabled in summary['features'].items():
        status = "enabled" if enabled else "disabled"
        logger.info(f"  {feature}: {status}")

    warnings = config.validate_runtime_dependencies()
    if warnings:
        logger.warning("Configuration warnings:")
        for warning in warnings:
            logger.warning(f"  - {warning}")

    logger.info("Configuration validation complete")
