"""
Terminal Bell Sink

Production sink for counter terminals: rings the terminal bell (BEL)
on the attached console. High priority alerts ring twice.

Version: 1.0.0
"""

import logging
import sys
from typing import Optional, TextIO

from kot_engine.services.notifications.base import Alert, AlertPriority, BaseAlertSink

logger = logging.getLogger(__name__)

BELL = "\a"


class TerminalBellSink(BaseAlertSink):
    """Writes BEL characters to a text stream (stdout by default)."""

    def __init__(self, stream: Optional[TextIO] = None):
        self._stream = stream
        logger.info("TerminalBellSink initialized")

    @property
    def provider_name(self) -> str:
        return "terminal"

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    async def play(self, alert: Alert) -> bool:
        rings = 2 if alert.priority is AlertPriority.HIGH else 1
        try:
            self.stream.write(BELL * rings)
            self.stream.flush()
        except (OSError, ValueError) as e:
            logger.error(f"Could not ring terminal bell: {e}")
            return False
        return True

    async def health_check(self) -> bool:
        return not self.stream.closed
