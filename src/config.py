"""
Configuration module for the mapping operator.

All settings come from environment variables; each concern has its own
dataclass with a ``from_env`` constructor.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

DEFAULT_CLUSTER_CONFIGMAP_NAMESPACE = "kyma-system"
DEFAULT_CLUSTER_CONFIGMAP_NAME = "sap-btp-operator-config"


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "mapping_operator"
    user: str = "operator"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "mapping_operator"),
            user=os.getenv("DB_USER", "operator"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Scheduler configuration."""

    reconcile_interval: int = 10  # seconds between polls for due resources
    resync_interval: int = 600  # seconds until a converged resource is rechecked
    max_concurrent_reconciles: int = 5

    # Exponential backoff configuration
    backoff_base_delay: int = 5  # base delay in seconds
    backoff_max_delay: int = 1000  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            reconcile_interval=int(os.getenv("RECONCILE_INTERVAL", "10")),
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "600")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            backoff_base_delay=int(os.getenv("BACKOFF_BASE_DELAY", "5")),
            backoff_max_delay=int(os.getenv("BACKOFF_MAX_DELAY", "1000")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class InventoryConfig:
    """Inventory client and cluster identity settings."""

    request_timeout: Optional[float] = None  # seconds; None keeps aiohttp's default
    cluster_configmap_namespace: str = DEFAULT_CLUSTER_CONFIGMAP_NAMESPACE
    cluster_configmap_name: str = DEFAULT_CLUSTER_CONFIGMAP_NAME

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        timeout = os.getenv("INVENTORY_REQUEST_TIMEOUT", "")
        return cls(
            request_timeout=float(timeout) if timeout else None,
            cluster_configmap_namespace=os.getenv(
                "CLUSTER_CONFIGMAP_NAMESPACE", DEFAULT_CLUSTER_CONFIGMAP_NAMESPACE
            ),
            cluster_configmap_name=os.getenv(
                "CLUSTER_CONFIGMAP_NAME", DEFAULT_CLUSTER_CONFIGMAP_NAME
            ),
        )


@dataclass
class APIConfig:
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_enabled: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        cors_origins = (
            os.getenv("CORS_ORIGINS", "").split(",")
            if os.getenv("CORS_ORIGINS")
            else ["*"]
        )
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            cors_enabled=os.getenv("CORS_ENABLED", "false").lower() == "true",
            cors_origins=cors_origins,
        )


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    api: APIConfig
    inventory: InventoryConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
            inventory=InventoryConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
            inventory=InventoryConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
