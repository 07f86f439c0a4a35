"""
Notification Emitter

Turns reconciliation events into staff-facing signals:
    - a bounded feed of alerts with read/unread state
    - badge counters (new orders, ready orders) reset by acknowledge()
    - an audible alert, only once the user has opted in

Browsers and kiosks block autoplay until the user interacts, so sound
starts disabled and enable_sound() plays a test chime to prove it works.
Alerts raised while sound is off are still added to the feed and counted
as suppressed.

Version: 1.0.0
"""

import logging
from collections import deque
from typing import Any, Iterable, Optional

from kot_engine.models import OrderStatus
from kot_engine.reconciliation import EventType, ReconciliationEvent
from kot_engine.services.notifications.base import (
    Alert,
    AlertPriority,
    AlertType,
    BaseAlertSink,
)

logger = logging.getLogger(__name__)

BADGES = ("new_orders", "ready_orders")


class NotificationEmitter:
    """
    Alert feed, badges and sound gate.

    Example:
        >>> emitter = NotificationEmitter(get_alert_sink())
        >>> await emitter.enable_sound(True)
        >>> await emitter.handle(events)
        >>> emitter.badges
        {'new_orders': 1, 'ready_orders': 0}
    """

    def __init__(
        self,
        sink: BaseAlertSink,
        sound_enabled: bool = False,
        feed_size: int = 50,
    ):
        self.sink = sink
        self.sound_enabled = sound_enabled
        self._feed: deque[Alert] = deque(maxlen=feed_size)
        self._badges = {name: 0 for name in BADGES}
        self.played = 0
        self.suppressed = 0

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def badges(self) -> dict[str, int]:
        return dict(self._badges)

    @property
    def feed(self) -> list[Alert]:
        """Newest first."""
        return list(reversed(self._feed))

    @property
    def unread_count(self) -> int:
        return sum(1 for alert in self._feed if not alert.read)

    def mark_read(self, alert_id: str) -> bool:
        for alert in self._feed:
            if alert.id == alert_id:
                alert.read = True
                return True
        return False

    def mark_all_read(self) -> int:
        count = 0
        for alert in self._feed:
            if not alert.read:
                alert.read = True
                count += 1
        return count

    def acknowledge(self, badge: Optional[str] = None) -> dict[str, int]:
        """Reset one badge counter, or all of them."""
        if badge is not None and badge not in self._badges:
            raise ValueError(f"Unknown badge '{badge}'. Must be one of: {list(BADGES)}")
        for name in ([badge] if badge else BADGES):
            self._badges[name] = 0
        return self.badges

    # =========================================================================
    # SOUND
    # =========================================================================

    async def enable_sound(self, enabled: bool = True) -> bool:
        """
        Opt in (or out of) audible alerts.

        Enabling plays a test chime; if the sink cannot play it, sound
        stays disabled.

        Returns:
            bool: Whether sound is now enabled
        """
        if not enabled:
            self.sound_enabled = False
            logger.info("Audible alerts disabled")
            return False

        chime = Alert(
            type=AlertType.NEW_ORDER,
            title="Sound enabled",
            message="Test chime",
            priority=AlertPriority.LOW,
        )
        self.sound_enabled = await self.sink.play(chime)
        logger.info(f"Audible alerts {'enabled' if self.sound_enabled else 'unavailable'} ({self.sink.provider_name})")
        return self.sound_enabled

    # =========================================================================
    # EMISSION
    # =========================================================================

    async def emit(self, alert: Alert) -> Alert:
        self._feed.append(alert)
        if self.sound_enabled:
            if await self.sink.play(alert):
                self.played += 1
        else:
            self.suppressed += 1
        return alert

    async def handle(
        self,
        events: Iterable[ReconciliationEvent],
        baseline: bool = False,
    ) -> list[Alert]:
        """
        React to a batch of reconciliation events.

        A baseline batch (the first load of the order collection) describes
        orders that already existed, so it raises no alerts.

        Returns:
            Alerts raised for this batch
        """
        if baseline:
            return []

        alerts = []
        for event in events:
            order = event.order
            if order is None or event.type is EventType.REMOVED:
                continue

            label = order.kot_number
            if event.type is EventType.ADDED and order.status is OrderStatus.PENDING:
                self._badges["new_orders"] += 1
                alerts.append(await self.emit(Alert(
                    type=AlertType.NEW_ORDER,
                    title="New Order",
                    message=f"{label} received",
                    priority=AlertPriority.MEDIUM,
                    entity_id=event.order_id,
                )))
            elif event.to_status is OrderStatus.READY:
                self._badges["ready_orders"] += 1
                alerts.append(await self.emit(Alert(
                    type=AlertType.ORDER_READY,
                    title="Order Ready",
                    message=f"{label} is ready to serve",
                    priority=AlertPriority.HIGH,
                    entity_id=event.order_id,
                )))
        return alerts

    async def sync_failed(self, mutation_id: str, error: str) -> Alert:
        """Raise an alert for a queued mutation that could not be synced."""
        return await self.emit(Alert(
            type=AlertType.SYNC_FAILED,
            title="Sync Failed",
            message=error,
            priority=AlertPriority.LOW,
            entity_id=mutation_id,
        ))

    def to_dict(self) -> dict[str, Any]:
        return {
            "sound_enabled": self.sound_enabled,
            "badges": self.badges,
            "unread": self.unread_count,
            "played": self.played,
            "suppressed": self.suppressed,
            "feed": [alert.to_dict() for alert in self.feed],
        }
