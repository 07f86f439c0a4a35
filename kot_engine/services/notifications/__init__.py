"""
Alert Sink Factory

Returns the logging or terminal-bell alert sink based on ENV_MODE.

Version: 1.0.0
"""

import logging
from functools import lru_cache

from kot_engine.core.config import get_settings
from kot_engine.services.notifications.base import (
    Alert,
    AlertPriority,
    AlertType,
    BaseAlertSink,
)
from kot_engine.services.notifications.emitter import NotificationEmitter
from kot_engine.services.notifications.mock import LoggingAlertSink
from kot_engine.services.notifications.real import TerminalBellSink

logger = logging.getLogger(__name__)


@lru_cache()
def get_alert_sink() -> BaseAlertSink:
    """Get the configured alert sink."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Alert Sink: Using LoggingAlertSink (development mode)")
        return LoggingAlertSink()
    else:
        logger.info(f"Alert Sink: Using TerminalBellSink ({settings.env_mode.value} mode)")
        return TerminalBellSink()


def reset_alert_sink() -> None:
    """Clear the cached sink instance."""
    get_alert_sink.cache_clear()


__all__ = [
    "get_alert_sink",
    "reset_alert_sink",
    "Alert",
    "AlertPriority",
    "AlertType",
    "BaseAlertSink",
    "LoggingAlertSink",
    "TerminalBellSink",
    "NotificationEmitter",
]
