"""
Configuration Module
====================
Centralized environment variable loading, validation, and access.
Validates all required configuration at startup to fail fast.

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

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


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
    """Get optional environment variable, or default if not set."""
    value = os.getenv(key, default)
    return value.strip() if value else default


def _get_bool_env(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
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
# STORE CONFIGURATION
# ============================================================================

class StoreConfig:
    """Which order store backs the board."""

    BACKENDS = ("supabase", "memory")

    def __init__(self):
        self.backend = _get_optional_env("ORDER_STORE_BACKEND", "supabase").lower()

        if self.backend not in self.BACKENDS:
            raise ConfigurationError(
                f"Invalid ORDER_STORE_BACKEND: {self.backend}. "
                f"Must be one of: {', '.join(self.BACKENDS)}"
            )

        self.call_timeout = _get_float_env("STORE_CALL_TIMEOUT_SECONDS", 10.0)


# ============================================================================
# SUPABASE CONFIGURATION
# ============================================================================

class SupabaseConfig:
    """Supabase database configuration."""

    def __init__(self):
        self.url = _get_required_env(
            "SUPABASE_URL",
            "Supabase project URL"
        )

        self.key = _get_required_env(
            "SUPABASE_KEY",
            "Supabase service role key"
        )

        # Validate URL format
        if not self.url.startswith("https://"):
            raise ConfigurationError(
                f"SUPABASE_URL must start with https://: {self.url}"
            )


# ============================================================================
# SYNCHRONIZATION CONFIGURATION
# ============================================================================

class SyncConfig:
    """Refresh loop and confirmation timing."""

    def __init__(self):
        self.refresh_interval = _get_float_env("REFRESH_INTERVAL_SECONDS", 15.0)
        self.fetch_timeout = _get_float_env("FETCH_TIMEOUT_SECONDS", 10.0)
        self.confirm_timeout = _get_float_env("CONFIRM_TIMEOUT_SECONDS", 10.0)
        self.max_refresh_backoff = _get_float_env("MAX_REFRESH_BACKOFF_SECONDS", 120.0)
        self.stuck_refresh_limit = _get_int_env("STUCK_REFRESH_LIMIT", 2)

        for name in ("refresh_interval", "fetch_timeout", "confirm_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(
                    f"{name.upper()} must be positive: {getattr(self, name)}"
                )

        if self.max_refresh_backoff < self.refresh_interval:
            raise ConfigurationError(
                "MAX_REFRESH_BACKOFF_SECONDS must be >= REFRESH_INTERVAL_SECONDS"
            )

        if self.stuck_refresh_limit < 1:
            raise ConfigurationError(
                f"STUCK_REFRESH_LIMIT must be at least 1: {self.stuck_refresh_limit}"
            )


# ============================================================================
# SERVER CONFIGURATION
# ============================================================================

class ServerConfig:
    """Web server configuration."""

    def __init__(self):
        self.host = _get_optional_env("HOST", "0.0.0.0")
        self.port = _get_int_env("PORT", 8000)

        # CORS settings
        self.cors_origins = _get_optional_env("CORS_ORIGINS", "*").split(",")

        # Logging
        self.log_level = _get_optional_env("LOG_LEVEL", "INFO").upper()

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL: {self.log_level}"
            )

        self.debug_mode = _get_bool_env("DEBUG_MODE", False)

    @property
    def effective_log_level(self) -> str:
        """DEBUG_MODE forces debug logging whatever LOG_LEVEL says."""
        return "DEBUG" if self.debug_mode else self.log_level


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
            self.store = StoreConfig()
            # Supabase credentials only required when it backs the board
            self.supabase = SupabaseConfig() if self.store.backend == "supabase" else None
            self.sync = SyncConfig()
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
            "store_backend": self.store.backend,
            "supabase_url": self.supabase.url if self.supabase else None,
            "sync": {
                "refresh_interval": self.sync.refresh_interval,
                "fetch_timeout": self.sync.fetch_timeout,
                "confirm_timeout": self.sync.confirm_timeout,
                "max_refresh_backoff": self.sync.max_refresh_backoff,
                "stuck_refresh_limit": self.sync.stuck_refresh_limit,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "log_level": self.server.log_level,
                "debug_mode": self.server.debug_mode,
            },
        }

    def validate_runtime_dependencies(self) -> List[str]:
        """
        Validate runtime settings that are legal but suspicious.

        Returns:
            List of warnings (empty if all OK)
        """
        warnings = []

        if self.store.backend == "memory":
            warnings.append("In-memory order store: orders are lost on restart")

        if self.sync.confirm_timeout >= self.sync.refresh_interval:
            warnings.append(
                "CONFIRM_TIMEOUT_SECONDS >= REFRESH_INTERVAL_SECONDS: "
                "refreshes may count a slow confirmation as stuck"
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
    logger.info(f"  Order store: {summary['store_backend']}")
    logger.info(f"  Refresh interval: {summary['sync']['refresh_interval']}s")
    logger.info(f"  Confirm timeout: {summary['sync']['confirm_timeout']}s")
    logger.info(f"  Server: {summary['server']['host']}:{summary['server']['port']}")
    logger.info(f"  Log Level: {summary['server']['log_level']}")

    warnings = config.validate_runtime_dependencies()
    if warnings:
        logger.warning("Configuration warnings:")
        for warning in warnings:
            logger.warning(f"  - {warning}")

    logger.info("Configuration validation complete")
