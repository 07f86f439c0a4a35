"""
Backend Client Factory

Returns the Mock or HTTP backend client based on ENV_MODE.

Usage:
    from kot_engine.services.backend import get_backend_client

    backend = get_backend_client()
    orders = await backend.list_orders()

Version: 1.0.0
"""

import logging
from functools import lru_cache

from kot_engine.core.config import get_settings
from kot_engine.services.backend.base import BaseBackendClient, BillDetail
from kot_engine.services.backend.http import HttpBackendClient, normalize_base_url
from kot_engine.services.backend.mock import MockBackendClient

logger = logging.getLogger(__name__)


@lru_cache()
def get_backend_client() -> BaseBackendClient:
    """
    Get the configured backend client.

    Returns:
        BaseBackendClient: MockBackendClient in development,
        HttpBackendClient otherwise
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Backend: Using MockBackendClient (development mode)")
        return MockBackendClient(
            failure_rate=settings.mock_failure_rate,
            min_latency=settings.mock_min_latency,
            max_latency=settings.mock_max_latency,
        )

    missing = settings.validate_production_config()
    if missing:
        logger.warning(f"Backend: missing configuration {', '.join(missing)}")

    logger.info(f"Backend: Using HttpBackendClient ({settings.env_mode.value} mode)")
    return HttpBackendClient()


def reset_backend_client() -> None:
    """Clear the cached client instance."""
    get_backend_client.cache_clear()
    logger.debug("Backend client cache cleared")


__all__ = [
    "get_backend_client",
    "reset_backend_client",
    "normalize_base_url",
    "BaseBackendClient",
    "BillDetail",
    "MockBackendClient",
    "HttpBackendClient",
]
