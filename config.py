"""
Configuration Module
====================
Centralized environment variable loading, validation, and access.
Validates required configuration when first requested to fail fast.

NO BUSINESS LOGIC - Pure configuration management only.
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
    """
    Load environment variables from .env file if present.
    Safe to call multiple times.
    """
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from .env file")
    else:
        logger.debug("No .env file found, using system environment variables")


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
    """
    Get required environment variable.

    Args:
        key: Environment variable name
        description: Optional description for error message

    Returns:
        Environment variable value

    Raises:
        ConfigurationError: If variable is missing or empty
    """
    value = os.getenv(key)

    if not value or value.strip() == "":
        desc = f" ({description})" if description else ""
        raise ConfigurationError(
            f"Missing required environment variable: {key}{desc}"
        )

    return value.strip()


def _get_optional_env(key: str, default: str = None) -> Optional[str]:
    """Stripped value of an optional variable, or default when unset or blank."""
    value = os.getenv(key, default)
    return value.strip() if value else default


def _get_bool_env(key: str, default: bool = False) -> bool:
    """true/1/yes/on/enabled are truthy, anything else set is False."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on", "enabled")


def _get_int_env(key: str, default: int = None) -> Optional[int]:
    """
    Integer variable, or default when unset.

    Raises:
        ConfigurationError: Not an integer
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


# ============================================================================
# SUPABASE CONFIGURATION
# ============================================================================

class SupabaseConfig:
    """Supabase data tier configuration."""

    def __init__(self):
        self.url = _get_required_env(
            "SUPABASE_URL",
            "Supabase project URL"
        )

        self.key = _get_required_env(
            "SUPABASE_KEY",
            "Supabase anon key (row level security scopes orders to the customer)"
        )

        # Validate URL format
        if not self.url.startswith(("https://", "http://localhost", "http://127.0.0.1")):
            raise ConfigurationError(
                f"SUPABASE_URL must start with https://: {self.url}"
            )

        self.schema = _get_optional_env("SUPABASE_SCHEMA", "public")

        # Read timeout (seconds) applied to restaurant/order fetches
        self.read_timeout = _get_int_env("SUPABASE_TIMEOUT", 10)

        if self.read_timeout <= 0:
            raise ConfigurationError(
                f"SUPABASE_TIMEOUT must be positive: {self.read_timeout}"
            )


# ============================================================================
# ORDERING CONFIGURATION
# ============================================================================

class OrderingConfig:
    """Checkout and tracking behaviour."""

    def __init__(self):
        # Estimated delivery = order time + this window
        self.delivery_window_minutes = _get_int_env("DELIVERY_WINDOW_MINUTES", 45)

        if self.delivery_window_minutes <= 0:
            raise ConfigurationError(
                f"DELIVERY_WINDOW_MINUTES must be positive: "
                f"{self.delivery_window_minutes}"
            )

        # Locally seeded order numbers look like ORD-<millis>-<hex>
        self.order_number_prefix = _get_optional_env("ORDER_NUMBER_PREFIX", "ORD")

        self.default_payment_method = _get_optional_env(
            "DEFAULT_PAYMENT_METHOD",
            "card"
        )


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

class LoggingConfig:
    """Log level and rendering."""

    def __init__(self):
        self.environment = _get_optional_env("ENVIRONMENT", "development").lower()
        self.log_level = _get_optional_env("LOG_LEVEL", "INFO").upper()

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL: {self.log_level}"
            )

        # JSON lines in production, console rendering elsewhere
        self.json_logs = _get_bool_env(
            "JSON_LOGS",
            self.environment in ("production", "staging")
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
            self.supabase = SupabaseConfig()
            self.ordering = OrderingConfig()
            self.logging = LoggingConfig()

            logger.info("Configuration loaded and validated successfully")

        except ConfigurationError as e:
            logger.error(f"Configuration error: {str(e)}")
            raise

    def get_safe_summary(self) -> Dict[str, Any]:
        """
        Get safe configuration summary (no secrets).

        Returns:
            Dictionary with non-sensitive configuration
        """
        return {
            "supabase_url": self.supabase.url,
            "supabase_schema": self.supabase.schema,
            "read_timeout": self.supabase.read_timeout,
            "delivery_window_minutes": self.ordering.delivery_window_minutes,
            "order_number_prefix": self.ordering.order_number_prefix,
            "environment": self.logging.environment,
            "log_level": self.logging.log_level,
        }

    def validate_runtime_dependencies(self) -> List[str]:
        """
        Check for settings that are valid but probably unintended.

        Returns:
            List of warning messages
        """
        warnings = []

        if self.supabase.url.startswith("http://"):
            warnings.append("SUPABASE_URL is not using TLS (local development only)")

        if self.ordering.delivery_window_minutes > 180:
            warnings.append(
                f"Delivery window is unusually long: "
                f"{self.ordering.delivery_window_minutes} minutes"
            )

        return warnings


# ============================================================================
# GLOBAL CONFIGURATION INSTANCE
# ============================================================================

_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get global configuration instance (loaded on first use).

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config

    if _config is None:
        _config = Config()

    return _config


def reload_config():
    """Reload configuration from the environment (tests, hot reload)."""
    global _config

    load_environment()
    _config = None

    return get_config()


# ============================================================================
# VALIDATION FUNCTION
# ============================================================================

def validate_configuration(config: Optional[Config] = None) -> Config:
    """
    Validate configuration and log summary.
    Useful for startup checks.

    Returns:
        The validated configuration

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config = config or get_config()

    summary = config.get_safe_summary()

    logger.info("Configuration Summary:")
    for key, value in summary.items():
        logger.info(f"  {key}: {value}")

    warnings = config.validate_runtime_dependencies()
    if warnings:
        logger.warning("Configuration warnings:")
        for warning in warnings:
            logger.warning(f"  - {warning}")

    logger.info("Configuration validation complete")

    return config
