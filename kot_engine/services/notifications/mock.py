"""
Logging Alert Sink

Development sink: alerts are logged and recorded instead of played.

Version: 1.0.0
"""

import logging

from kot_engine.services.notifications.base import Alert, BaseAlertSink

logger = logging.getLogger(__name__)


class LoggingAlertSink(BaseAlertSink):
    """Records every played alert in `played`."""

    def __init__(self):
        self.played: list[Alert] = []
        logger.info("LoggingAlertSink initialized")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def play(self, alert: Alert) -> bool:
        self.played.append(alert)
        logger.info(f"🔔 {alert.type.value}: {alert.message}")
        return True
