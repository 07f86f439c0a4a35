"""
Alert Sink Abstract Base Class

Defines the interface for playing audible staff alerts. The
NotificationEmitter decides *whether* an alert is played (user opt-in);
a sink only decides *how*.

Version: 1.0.0
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class AlertType(str, Enum):
    ORDER_READY = "Order Ready"
    NEW_ORDER = "New Order"
    SYNC_FAILED = "Sync Failed"


class AlertPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class Alert:
    """A single entry of the notification feed."""
    type: AlertType
    title: str
    message: str
    priority: AlertPriority = AlertPriority.MEDIUM
    entity_id: Optional[str] = None
    id: str = field(default_factory=lambda: f"alert-{uuid.uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    read: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "priority": self.priority.value,
            "entity_id": self.entity_id,
            "created_at": self.created_at.isoformat(),
            "read": self.read,
        }


class BaseAlertSink(ABC):
    """Abstract base class for alert sinks."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def play(self, alert: Alert) -> bool:
        """
        Play the audible signal for an alert.

        Returns:
            bool: True if the signal was played
        """
        pass

    async def health_check(self) -> bool:
        """Check the sink can play sounds."""
        return True
