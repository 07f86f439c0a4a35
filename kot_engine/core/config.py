"""
Engine Configuration Module

Centralizes all configuration using environment variables with Pydantic Settings.
Supports two modes:
    - DEVELOPMENT: Uses the in-memory mock backend and a logging alert sink
    - PRODUCTION: Talks to the real REST backend and rings the terminal bell

The ENV_MODE variable controls which services are instantiated throughout
the engine, so the same reconciliation code runs against a simulated kitchen
locally and against the restaurant backend in production.

Usage:
    from kot_engine.core.config import get_settings

    settings = get_settings()
    if settings.is_development:
        # Mock backend, no network
    else:
        # HttpBackendClient against BACKEND_BASE_URL

Version: 1.0.0
"""

import logging
import sys
from enum import Enum
from typing import Optional
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvironmentMode(str, Enum):
    """
    Engine environment modes.

    Attributes:
        DEVELOPMENT: Local testing against the mock backend
        PRODUCTION: Live restaurant backend
        STAGING: Real backend, test tenant
    """
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    STAGING = "staging"


class Settings(BaseSettings):
    """
    Engine settings loaded from environment variables.

    All settings can be overridden via environment variables or .env file.
    The backend token should NEVER be committed to version control.

    Attributes:
        env_mode: Current environment (development/production/staging)
        debug: Enable verbose logging

        # Backend
        backend_base_url: Root of the remote REST API (ends with /api)
        backend_token: Bearer token sent with every request
        request_timeout: Per-request timeout in seconds

        # Reconciliation
        *_poll_seconds: Interval of each polling view

        # Billing defaults
        tax_rate: GST rate as a decimal (0.18 = 18%)
        service_charge_rate: Service charge as a decimal

        # Offline queue
        data_directory: Directory holding the durable queue file
        queue_namespace: Storage key of the queue
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # ENVIRONMENT
    # ==========================================================================

    env_mode: EnvironmentMode = Field(
        default=EnvironmentMode.DEVELOPMENT,
        description="Engine environment mode"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode with verbose logging"
    )

    # ==========================================================================
    # APPLICATION
    # ==========================================================================

    app_name: str = Field(
        default="KOT Reconciliation Engine",
        description="Application display name"
    )
    app_version: str = Field(
        default="1.0.0",
        description="Application version"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="Local API host"
    )
    api_port: int = Field(
        default=8002,
        description="Local API port"
    )

    # ==========================================================================
    # REMOTE BACKEND
    # ==========================================================================

    backend_base_url: str = Field(
        default="http://localhost:3000/api",
        description="Base URL of the restaurant REST backend"
    )
    backend_token: Optional[str] = Field(
        default=None,
        description="Bearer token for the backend"
    )
    request_timeout: float = Field(
        default=10.0,
        description="Backend request timeout in seconds"
    )

    # ==========================================================================
    # RECONCILIATION
    # ==========================================================================

    badge_poll_seconds: float = Field(
        default=3.0,
        description="Ready-count badge refresh interval"
    )
    table_poll_seconds: float = Field(
        default=3.0,
        description="Table board refresh interval"
    )
    kitchen_poll_seconds: float = Field(
        default=5.0,
        description="Kitchen display refresh interval"
    )
    dashboard_poll_seconds: float = Field(
        default=10.0,
        description="Billing dashboard refresh interval"
    )
    event_buffer_size: int = Field(
        default=200,
        description="Reconciliation events retained for the UI feed"
    )

    # ==========================================================================
    # BILLING DEFAULTS
    # ==========================================================================

    tax_rate: float = Field(
        default=0.18,
        description="GST rate as decimal (18%)"
    )
    service_charge_rate: float = Field(
        default=0.10,
        description="Service charge rate as decimal"
    )
    service_charge_enabled: bool = Field(
        default=False,
        description="Apply service charge by default"
    )
    currency_symbol: str = Field(
        default="₹",
        description="Currency symbol used when formatting amounts"
    )

    # ==========================================================================
    # OFFLINE QUEUE
    # ==========================================================================

    data_directory: str = Field(
        default="data",
        description="Directory for the durable queue"
    )
    queue_namespace: str = Field(
        default="kot-pending-queue",
        description="Storage key of the offline mutation queue"
    )
    queue_lock_timeout: int = Field(
        default=10,
        description="Seconds to wait for the queue file lock"
    )
    auto_sync_on_reconnect: bool = Field(
        default=True,
        description="Run one retry pass when connectivity comes back"
    )

    # ==========================================================================
    # NOTIFICATIONS
    # ==========================================================================

    sound_enabled: bool = Field(
        default=False,
        description="Audible alerts start opted-in"
    )

    # ==========================================================================
    # MOCK BACKEND
    # ==========================================================================

    mock_failure_rate: float = Field(
        default=0.0,
        description="Probability of a simulated network failure"
    )
    mock_min_latency: float = Field(
        default=0.0,
        description="Minimum simulated latency in seconds"
    )
    mock_max_latency: float = Field(
        default=0.0,
        description="Maximum simulated latency in seconds"
    )

    # ==========================================================================
    # VALIDATORS
    # ==========================================================================

    @field_validator("env_mode", mode="before")
    @classmethod
    def validate_env_mode(cls, v: str) -> EnvironmentMode:
        """Convert string to EnvironmentMode enum."""
        if isinstance(v, EnvironmentMode):
            return v
        try:
            return EnvironmentMode(v.lower())
        except ValueError:
            valid = [e.value for e in EnvironmentMode]
            raise ValueError(f"Invalid env_mode. Must be one of: {valid}")

    @field_validator("tax_rate", "service_charge_rate", "mock_failure_rate")
    @classmethod
    def validate_rate(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Rates cannot be negative")
        return v

    @field_validator(
        "badge_poll_seconds",
        "table_poll_seconds",
        "kitchen_poll_seconds",
        "dashboard_poll_seconds",
    )
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Poll intervals must be greater than 0")
        return v

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.env_mode == EnvironmentMode.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.env_mode == EnvironmentMode.PRODUCTION

    @property
    def use_real_services(self) -> bool:
        """Check if the real backend should be used."""
        return self.env_mode in (EnvironmentMode.PRODUCTION, EnvironmentMode.STAGING)

    @property
    def queue_path(self) -> Path:
        """File holding the offline queue."""
        return Path(self.data_directory) / f"{self.queue_namespace}.json"

    @property
    def queue_lock_path(self) -> Path:
        return Path(self.data_directory) / f"{self.queue_namespace}.json.lock"

    # ==========================================================================
    # VALIDATION METHODS
    # ==========================================================================

    def validate_production_config(self) -> list[str]:
        """
        Validate that all required production settings are configured.

        Returns:
            List of missing configuration keys (empty if all present)
        """
        missing = []

        if self.use_real_services:
            if not self.backend_base_url:
                missing.append("BACKEND_BASE_URL")
            if not self.backend_token:
                missing.append("BACKEND_TOKEN")

        return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached engine settings.

    Uses LRU cache so settings are loaded only once and every
    component sees the same configuration.

    Returns:
        Settings: Configured engine settings

    Example:
        >>> settings = get_settings()
        >>> print(settings.kitchen_poll_seconds)
        5.0
    """
    return Settings()


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Configure engine-wide logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)

    Returns:
        Configured package logger
    """
    settings = get_settings()

    if settings.debug:
        level = logging.DEBUG

    log_format = "%(asctime)s │ %(levelname)-8s │ %(name)-25s │ %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    logging.basicConfig(
        level=level,
        format=log_format,
        datefmt=date_format,
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("filelock").setLevel(logging.WARNING)

    return logging.getLogger("kot_engine")
