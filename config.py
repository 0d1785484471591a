"""
Order Service Configuration
===========================
Settings for token verification, order storage, notification delivery
and the web server, read from the environment (and .env when present).

A missing JWT secret or unusable storage settings stop the process at
startup instead of surfacing on the first request.
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
    """Get optional environment variable, stripped, or the default."""
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
# AUTH CONFIGURATION
# ============================================================================

MIN_JWT_SECRET_LENGTH = 32
SUPPORTED_JWT_ALGORITHMS = ["HS256", "HS384", "HS512"]


class AuthConfig:
    """Bearer token verification settings shared by HTTP and WebSocket."""

    def __init__(self):
        self.jwt_secret = _get_required_env(
            "JWT_SECRET",
            "HMAC secret used to sign and verify bearer tokens"
        )

        if len(self.jwt_secret) < MIN_JWT_SECRET_LENGTH:
            raise ConfigurationError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} "
                f"characters long"
            )

        self.jwt_issuer = _get_optional_env("JWT_ISSUER", "storefront-orders")
        self.jwt_algorithm = _get_optional_env("JWT_ALGORITHM", "HS256").upper()

        if self.jwt_algorithm not in SUPPORTED_JWT_ALGORITHMS:
            raise ConfigurationError(
                f"Invalid JWT_ALGORITHM: {self.jwt_algorithm}. "
                f"Must be one of {', '.join(SUPPORTED_JWT_ALGORITHMS)}"
            )

        self.jwt_expires_in = _get_int_env("JWT_EXPIRES_IN", 86400)

        if self.jwt_expires_in <= 0:
            raise ConfigurationError(
                f"JWT_EXPIRES_IN must be positive: {self.jwt_expires_in}"
            )


# ============================================================================
# STORAGE CONFIGURATION
# ============================================================================

class StorageConfig:
    """Order store backend configuration."""

    def __init__(self):
        self.backend = _get_optional_env("STORAGE_BACKEND", "memory").lower()

        if self.backend not in ["memory", "supabase"]:
            raise ConfigurationError(
                f"Invalid STORAGE_BACKEND: {self.backend}. "
                f"Must be 'memory' or 'supabase'"
            )

        self.supabase_url: Optional[str] = None
        self.supabase_key: Optional[str] = None

        if self.backend == "supabase":
            self.supabase_url = _get_required_env(
                "SUPABASE_URL",
                "Supabase project URL"
            )
            self.supabase_key = _get_required_env(
                "SUPABASE_KEY",
                "Supabase anon or service role key"
            )

            if not self.supabase_url.startswith("https://"):
                raise ConfigurationError(
                    f"SUPABASE_URL must start with https://: {self.supabase_url}"
                )

        self.orders_table = _get_optional_env("SUPABASE_ORDERS_TABLE", "orders")

        # Bounded wait on every store call
        self.store_timeout = _get_float_env("STORE_TIMEOUT", 5.0)
        self.order_number_max_attempts = _get_int_env(
            "ORDER_NUMBER_MAX_ATTEMPTS", 5
        )

        if self.store_timeout <= 0:
            raise ConfigurationError(
                f"STORE_TIMEOUT must be positive: {self.store_timeout}"
            )

        if self.order_number_max_attempts < 1:
            raise ConfigurationError(
                f"ORDER_NUMBER_MAX_ATTEMPTS must be at least 1: "
                f"{self.order_number_max_attempts}"
            )


# ============================================================================
# NOTIFICATION CONFIGURATION
# ============================================================================

class NotificationConfig:
    """Live connection and push delivery settings."""

    def __init__(self):
        self.handshake_timeout = _get_float_env("HANDSHAKE_TIMEOUT", 10.0)
        self.send_timeout = _get_float_env("NOTIFICATION_SEND_TIMEOUT", 5.0)

        if self.handshake_timeout <= 0:
            raise ConfigurationError(
                f"HANDSHAKE_TIMEOUT must be positive: {self.handshake_timeout}"
            )

        if self.send_timeout <= 0:
            raise ConfigurationError(
                f"NOTIFICATION_SEND_TIMEOUT must be positive: {self.send_timeout}"
            )


# ============================================================================
# FEATURE FLAGS
# ============================================================================

class FeatureFlags:
    """Feature flags for optional functionality."""

    def __init__(self):
        self.enable_notifications = _get_bool_env("ENABLE_NOTIFICATIONS", True)
        self.enable_metrics = _get_bool_env("ENABLE_METRICS", True)


# ============================================================================
# SERVER CONFIGURATION
# ============================================================================

VALID_ENVIRONMENTS = ["development", "production", "test"]


class ServerConfig:
    """Web server configuration."""

    def __init__(self):
        self.host = _get_optional_env("HOST", "0.0.0.0")
        self.port = _get_int_env("PORT", 8000)

        self.environment = _get_optional_env("ENVIRONMENT", "development").lower()

        if self.environment not in VALID_ENVIRONMENTS:
            raise ConfigurationError(
                f"Invalid ENVIRONMENT: {self.environment}. "
                f"Must be one of {', '.join(VALID_ENVIRONMENTS)}"
            )

        # CORS settings
        self.cors_origins = _get_optional_env("CORS_ORIGINS", "*").split(",")

        # Pagination
        self.default_page_size = _get_int_env("DEFAULT_PAGE_SIZE", 10)
        self.max_page_size = _get_int_env("MAX_PAGE_SIZE", 100)

        if self.default_page_size < 1 or self.max_page_size < self.default_page_size:
            raise ConfigurationError(
                f"Invalid pagination bounds: DEFAULT_PAGE_SIZE="
                f"{self.default_page_size}, MAX_PAGE_SIZE={self.max_page_size}"
            )

        # Logging
        self.log_level = _get_optional_env("LOG_LEVEL", "INFO").upper()

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL: {self.log_level}"
            )

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


# ============================================================================
# MAIN CONFIGURATION CLASS
# ============================================================================

class Config:
    """
    All order service settings, grouped by concern.
    Each group validates itself when constructed.
    """

    def __init__(self):
        """
        Build every settings group from the environment.

        Raises:
            ConfigurationError: If any required configuration is missing or invalid
        """
        try:
            self.auth = AuthConfig()
            self.storage = StorageConfig()
            self.notifications = NotificationConfig()
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
        Settings that are safe to log or expose (the JWT secret is omitted).

        Returns:
            Nested dictionary keyed by concern
        """
        return {
            "environment": self.server.environment,
            "storage_backend": self.storage.backend,
            "jwt": {
                "issuer": self.auth.jwt_issuer,
                "algorithm": self.auth.jwt_algorithm,
                "expires_in": self.auth.jwt_expires_in,
            },
            "features": {
                "notifications": self.features.enable_notifications,
                "metrics": self.features.enable_metrics,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "log_level": self.server.log_level,
            },
            "timeouts": {
                "store": self.storage.store_timeout,
                "handshake": self.notifications.handshake_timeout,
                "notification_send": self.notifications.send_timeout,
            },
        }

    def validate_runtime_dependencies(self) -> List[str]:
        """
        Validate settings that are legal but risky at runtime.

        Returns:
            List of warnings (empty if all OK)
        """
        warnings = []

        if len(self.auth.jwt_secret) < 64:
            warnings.append(
                "JWT_SECRET is shorter than 64 characters; "
                "consider a longer secret"
            )

        if self.storage.backend == "memory" and self.server.environment == "production":
            warnings.append(
                "STORAGE_BACKEND=memory in production: orders are lost on restart"
            )

        if "*" in self.server.cors_origins and self.server.environment == "production":
            warnings.append("CORS_ORIGINS allows any origin in production")

        return warnings


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """
    Return the process-wide configuration.
    Built from the environment on first use.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config

    if _config is None:
        _config = Config()

    return _config


def reload_config() -> Config:
    """
    Re-read .env and the environment and replace the process-wide configuration.
    """
    global _config
    load_environment()
    _config = Config()
    logger.info("Configuration reloaded")
    return _config


def is_feature_enabled(feature_name: str) -> bool:
    """Check if a feature flag is enabled."""
    features = get_config().features
    return getattr(features, f"enable_{feature_name}", False)


# ============================================================================
# VALIDATION FUNCTION
# ============================================================================

def validate_configuration(config: Optional[Config] = None):
    """
    Validate configuration and log summary.
    Called once by the entry point before serving.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config = config or get_config()

    summary = config.get_safe_summary()

    logger.info("Configuration Summary:")
    logger.info(f"  Environment: {summary['environment']}")
    logger.info(f"  Storage Backend: {summary['storage_backend']}")
    logger.info(f"  JWT Issuer: {summary['jwt']['issuer']}")
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
