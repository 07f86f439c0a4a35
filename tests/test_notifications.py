import asyncio
import io

import pytest

from kot_engine.models import OrderStatus
from kot_engine.reconciliation import ReconciliationEvent
from kot_engine.services.notifications import (
    Alert,
    AlertPriority,
    AlertType,
    LoggingAlertSink,
    NotificationEmitter,
    TerminalBellSink,
    get_alert_sink,
    reset_alert_sink,
)


class BrokenSink(LoggingAlertSink):
    async def play(self, alert):
        return False


def test_baseline_batch_raises_nothing(emitter, make_order):
    events = [ReconciliationEvent.added(make_order(1)), ReconciliationEvent.added(make_order(2))]

    assert asyncio.run(emitter.handle(events, baseline=True)) == []
    assert emitter.feed == []
    assert emitter.badges == {"new_orders": 0, "ready_orders": 0}


def test_new_and_ready_orders_raise_alerts(emitter, make_order):
    pending = make_order(1)
    preparing = make_order(2, status=OrderStatus.PREPARING)
    events = [
        ReconciliationEvent.added(pending),
        ReconciliationEvent.status_changed(
            preparing.with_status(OrderStatus.READY), OrderStatus.PREPARING, OrderStatus.READY
        ),
        ReconciliationEvent.status_changed(
            pending.with_status(OrderStatus.PREPARING), OrderStatus.PENDING, OrderStatus.PREPARING
        ),
        ReconciliationEvent.removed(3, OrderStatus.READY),
    ]

    alerts = asyncio.run(emitter.handle(events))

    assert [a.type for a in alerts] == [AlertType.NEW_ORDER, AlertType.ORDER_READY]
    assert alerts[1].priority is AlertPriority.HIGH
    assert alerts[1].entity_id == "2"
    assert emitter.badges == {"new_orders": 1, "ready_orders": 1}
    assert emitter.feed[0] is alerts[1]


def test_order_added_already_ready_counts_as_ready(emitter, make_order):
    alerts = asyncio.run(emitter.handle([ReconciliationEvent.added(make_order(5, status=OrderStatus.READY))]))

    assert [a.type for a in alerts] == [AlertType.ORDER_READY]


def test_sound_is_opt_in(sink, emitter, make_order):
    async def scenario():
        await emitter.handle([ReconciliationEvent.added(make_order(1))])
        enabled = await emitter.enable_sound()
        await emitter.handle([ReconciliationEvent.added(make_order(2))])
        return enabled

    assert asyncio.run(scenario()) is True
    assert emitter.suppressed == 1
    assert emitter.played == 1
    # test chime plus the second alert
    assert [a.message for a in sink.played] == ["Test chime", "KOT-TEST-2 received"]

    assert asyncio.run(emitter.enable_sound(False)) is False
    assert emitter.sound_enabled is False


def test_sound_stays_off_when_sink_cannot_play():
    emitter = NotificationEmitter(BrokenSink())

    assert asyncio.run(emitter.enable_sound()) is False
    assert emitter.sound_enabled is False


def test_acknowledge_and_read_state(emitter, make_order):
    asyncio.run(emitter.handle([
        ReconciliationEvent.added(make_order(1)),
        ReconciliationEvent.added(make_order(2)),
    ]))
    first = emitter.feed[-1]

    assert emitter.unread_count == 2
    assert emitter.mark_read(first.id) is True
    assert emitter.mark_read("alert-missing") is False
    assert emitter.unread_count == 1
    assert emitter.mark_all_read() == 1

    assert emitter.acknowledge("new_orders") == {"new_orders": 0, "ready_orders": 0}
    with pytest.raises(ValueError):
        emitter.acknowledge("tables")


def test_feed_is_bounded(sink):
    emitter = NotificationEmitter(sink, feed_size=3)

    async def scenario():
        for n in range(5):
            await emitter.sync_failed(f"queue-{n}", "Still offline")

    asyncio.run(scenario())

    assert [a.entity_id for a in emitter.feed] == ["queue-4", "queue-3", "queue-2"]
    assert emitter.to_dict()["unread"] == 3


def test_terminal_bell_rings_twice_for_high_priority():
    stream = io.StringIO()
    sink = TerminalBellSink(stream=stream)

    async def scenario():
        await sink.play(Alert(AlertType.NEW_ORDER, "New Order", "KOT-1 received"))
        await sink.play(Alert(AlertType.ORDER_READY, "Order Ready", "KOT-1", priority=AlertPriority.HIGH))
        return await sink.health_check()

    assert asyncio.run(scenario()) is True
    assert stream.getvalue() == "\a\a\a"


def test_terminal_bell_on_closed_stream_reports_failure():
    stream = io.StringIO()
    stream.close()
    sink = TerminalBellSink(stream=stream)

    assert asyncio.run(sink.play(Alert(AlertType.NEW_ORDER, "New Order", "x"))) is False
    assert asyncio.run(sink.health_check()) is False


def test_factory_picks_sink_by_environment(monkeypatch):
    from kot_engine.core.config import get_settings

    assert isinstance(get_alert_sink(), LoggingAlertSink)
    assert get_alert_sink() is get_alert_sink()

    monkeypatch.setenv("ENV_MODE", "production")
    get_settings.cache_clear()
    reset_alert_sink()

    assert isinstance(get_alert_sink(), TerminalBellSink)
