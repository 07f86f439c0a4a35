import asyncio
from decimal import Decimal

import pytest

from kot_engine.engine import OrderEngine, SubmissionStatus, default_views
from kot_engine.exceptions import (
    Conflict,
    InvalidTransition,
    NetworkError,
    RoleNotPermitted,
    ValidationError,
)
from kot_engine.models import (
    MutationKind,
    OrderDraft,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    QueuedMutation,
    TableStatus,
)
from kot_engine.offline_queue import RetryStatus
from kot_engine.reconciliation import ViewSpec
from kot_engine.services.backend import MockBackendClient
from kot_engine.services.notifications import AlertType


def _draft(table_id=None):
    return OrderDraft(
        table_id=table_id,
        station="Tandoor",
        items=[OrderItem(name="Paneer Tikka", unit_price=Decimal("220"), quantity=1)],
    )


# =============================================================================
# ORDER CREATION
# =============================================================================

def test_create_order_confirmed_and_cached(engine, backend):
    table = backend.add_table(number=5)
    draft = _draft(table.id)

    submission = asyncio.run(engine.create_order(draft))

    assert submission.status is SubmissionStatus.CONFIRMED
    order = submission.result
    assert order.kot_number == draft.kot_number
    assert order.status is OrderStatus.PENDING
    assert engine.cache.get_order(order.id) == order
    assert submission.to_dict()["status"] == "confirmed"


def test_create_order_offline_is_queued_then_replayed(engine, backend, queue):
    draft = _draft()

    async def scenario():
        backend.offline = True
        queued = await engine.create_order(draft)
        assert engine.connectivity.online is False

        backend.offline = False
        retried = await engine.retry_queued_mutation(queued.mutation.id)
        await engine.drain()
        return queued, retried

    queued, retried = asyncio.run(scenario())

    assert queued.status is SubmissionStatus.QUEUED
    assert queued.mutation.kind is MutationKind.CREATE_ORDER
    assert queued.mutation.entity_id == draft.kot_number
    assert queued.mutation.retry_count == 1

    assert retried.status is RetryStatus.SUCCEEDED
    assert retried.result.kot_number == draft.kot_number
    assert queue.pending_count() == 0
    assert backend.calls["create_order"] == 2
    assert engine.connectivity.online is True


# =============================================================================
# STATUS CHANGES
# =============================================================================

def test_status_flow_with_roles(engine, backend, make_order):
    backend.seed_order(make_order(100))

    async def scenario():
        await engine.request_reconciliation()
        await engine.submit_status_change(100, "preparing", role="kitchen")
        await engine.submit_status_change(100, "ready", role="kitchen")
        return await engine.submit_status_change(100, OrderStatus.COMPLETED, role="waiter")

    submission = asyncio.run(scenario())

    assert submission.status is SubmissionStatus.CONFIRMED
    assert engine.cache.get_order(100).status is OrderStatus.COMPLETED
    assert backend.bill_for_order(100) is not None


def test_invalid_transition_rejected_locally(engine, backend, make_order):
    backend.seed_order(make_order(100))
    asyncio.run(engine.request_reconciliation())

    with pytest.raises(InvalidTransition):
        asyncio.run(engine.submit_status_change(100, "ready"))
    with pytest.raises(RoleNotPermitted):
        asyncio.run(engine.submit_status_change(100, "voided", role="kitchen", reason="burnt"))

    assert backend.calls["update_order_status"] == 0
    assert engine.cache.get_order(100).status is OrderStatus.PENDING


def test_bad_status_or_role_is_a_validation_error(engine):
    with pytest.raises(ValidationError):
        asyncio.run(engine.submit_status_change(1, "plated"))
    with pytest.raises(ValidationError):
        asyncio.run(engine.submit_status_change(1, "ready", role="chef"))


def test_void_of_unknown_order_still_needs_reason(engine, backend):
    with pytest.raises(InvalidTransition):
        asyncio.run(engine.submit_status_change(55, "voided", reason="   "))

    assert backend.calls["update_order_status"] == 0


def test_double_click_sends_one_request(engine, backend, make_order):
    backend.seed_order(make_order(100))

    async def scenario():
        await engine.request_reconciliation()
        backend.gate = asyncio.Event()
        first = asyncio.create_task(engine.submit_status_change(100, "preparing", role="kitchen"))
        while backend.calls["update_order_status"] < 1:
            await asyncio.sleep(0)
        second = await engine.submit_status_change(100, "preparing", role="kitchen")
        backend.gate.set()
        return await first, second

    first, second = asyncio.run(scenario())

    assert first.status is SubmissionStatus.CONFIRMED
    assert second.status is SubmissionStatus.SKIPPED
    assert backend.calls["update_order_status"] == 1
    assert engine.guard.in_flight == frozenset()


def test_offline_status_change_retries_until_connected(engine, backend, queue, make_order):
    backend.seed_order(make_order(41, status=OrderStatus.PREPARING))

    async def scenario():
        await engine.request_reconciliation()
        backend.offline = True
        queued = await engine.submit_status_change(41, "ready", role="kitchen")
        stored = queue.get(queued.mutation.id)
        assert stored.retry_count == 1
        assert engine.cache.get_order(41).status is OrderStatus.PREPARING

        failed = await engine.retry_queued_mutation(queued.mutation.id)
        assert failed.status is RetryStatus.FAILED
        assert queue.get(queued.mutation.id).retry_count == 2

        backend.offline = False
        synced = await engine.retry_queued_mutation(queued.mutation.id)
        await engine.drain()
        return synced

    synced = asyncio.run(scenario())

    assert synced.status is RetryStatus.SUCCEEDED
    assert queue.pending_count() == 0
    assert engine.cache.get_order(41).status is OrderStatus.READY
    assert backend._orders["41"].status is OrderStatus.READY


def test_conflict_triggers_reconciliation(engine, backend, queue, make_order):
    backend.seed_order(make_order(100))
    backend.seed_order(make_order(101))

    async def scenario():
        await engine.request_reconciliation()
        backend.remove_order(100)
        with pytest.raises(Conflict):
            await engine.submit_status_change(100, "preparing", role="kitchen")
        await engine.drain()

    asyncio.run(scenario())

    assert engine.cache.get_order(100) is None
    assert engine.cache.get_order(101) is not None
    assert queue.pending_count() == 0


def test_local_confirmation_does_not_raise_a_second_event(engine, backend, make_order):
    backend.seed_order(make_order(100, status=OrderStatus.PREPARING))

    async def scenario():
        await engine.request_reconciliation()
        await engine.submit_status_change(100, "ready", role="kitchen")
        return await engine.request_reconciliation()

    assert asyncio.run(scenario()) == []
    assert engine.emitter.badges["ready_orders"] == 0


# =============================================================================
# BILLING
# =============================================================================

def _served_order(engine, backend, make_order):
    """Table with a completed order and its draft bill, loaded into the cache."""
    table = backend.add_table(number=7)
    backend.seed_order(make_order(100, status=OrderStatus.READY, table_id=table.id))

    async def scenario():
        await engine.request_reconciliation()
        await engine.submit_status_change(100, "completed", role="waiter")
        await engine.request_reconciliation()

    asyncio.run(scenario())
    return table, backend.bill_for_order(100)


def test_payment_settles_bill_and_frees_table(engine, backend, make_order):
    table, bill = _served_order(engine, backend, make_order)

    assert engine.cache.table_statuses()[str(table.id)] is TableStatus.SERVED

    totals = asyncio.run(engine.bill_totals(bill.id))
    assert totals.subtotal == Decimal("90")
    assert totals.rounded().grand_total == Decimal("106.20")

    submission = asyncio.run(engine.submit_payment(bill.id, "upi"))

    assert submission.status is SubmissionStatus.CONFIRMED
    paid = submission.result
    assert paid.payment_status is PaymentStatus.PAID
    assert paid.payment_method is PaymentMethod.UPI
    assert paid.grand_total == Decimal("106.20")
    assert engine.cache.table_statuses()[str(table.id)] is TableStatus.AVAILABLE


def test_configured_service_charge_applies_to_bills_without_a_flag(backend, queue, emitter, settings, make_order):
    engine = OrderEngine(
        backend,
        queue,
        emitter,
        settings=settings.model_copy(update={"service_charge_enabled": True}),
    )
    _, bill = _served_order(engine, backend, make_order)

    totals = asyncio.run(engine.bill_totals(bill.id))

    assert bill.service_charge_enabled is None
    assert totals.service_charge == Decimal("9")
    assert totals.rounded().grand_total == Decimal("115.20")


def test_paying_a_settled_bill_is_rejected(engine, backend, make_order):
    _, bill = _served_order(engine, backend, make_order)
    asyncio.run(engine.submit_payment(bill.id, "CASH"))

    with pytest.raises(InvalidTransition):
        asyncio.run(engine.submit_payment(bill.id, "CARD"))

    assert backend.calls["pay_bill"] == 1


def test_unknown_payment_method_recorded_as_cash(engine, backend, make_order):
    _, bill = _served_order(engine, backend, make_order)

    submission = asyncio.run(engine.submit_payment(bill.id, "BITCOIN", amount="100"))

    assert submission.result.payment_method is PaymentMethod.CASH
    assert submission.result.grand_total == Decimal("100.00")


def test_bad_payment_amounts_rejected(engine, backend, make_order):
    _, bill = _served_order(engine, backend, make_order)

    with pytest.raises(ValidationError):
        asyncio.run(engine.submit_payment(bill.id, amount=-5))
    with pytest.raises(ValidationError):
        asyncio.run(engine.submit_payment(bill.id, amount="lots"))

    assert backend.calls["pay_bill"] == 0


# =============================================================================
# OFFLINE SYNC
# =============================================================================

def _queue_offline_change(engine, backend, make_order):
    backend.seed_order(make_order(41, status=OrderStatus.PREPARING))

    async def scenario():
        await engine.request_reconciliation()
        backend.offline = True
        return await engine.submit_status_change(41, "ready", role="kitchen")

    return asyncio.run(scenario())


def test_reconnect_runs_one_sync_pass(engine, backend, queue, make_order):
    queued = _queue_offline_change(engine, backend, make_order)
    assert queued.status is SubmissionStatus.QUEUED

    async def scenario():
        backend.offline = False
        await engine.request_reconciliation()
        await engine.drain()

    asyncio.run(scenario())

    assert queue.pending_count() == 0
    assert backend._orders["41"].status is OrderStatus.READY


def test_reconnect_without_auto_sync_leaves_queue(backend, queue, emitter, settings, make_order):
    engine = OrderEngine(
        backend,
        queue,
        emitter,
        settings=settings.model_copy(update={"auto_sync_on_reconnect": False}),
    )
    _queue_offline_change(engine, backend, make_order)

    async def scenario():
        backend.offline = False
        await engine.request_reconciliation()
        await engine.drain()

    asyncio.run(scenario())

    assert engine.connectivity.online is True
    assert queue.pending_count() == 1


def test_retry_all_raises_sync_failed_alerts(engine, backend, queue, make_order):
    _queue_offline_change(engine, backend, make_order)

    report = asyncio.run(engine.retry_all())

    assert len(report.failed) == 1
    assert queue.entries()[0].retry_count == 2
    alert = engine.emitter.feed[0]
    assert alert.type is AlertType.SYNC_FAILED
    assert alert.entity_id == report.failed[0]


class PartlyReachableBackend(MockBackendClient):
    """Mock backend where status changes for some orders never get through."""

    def __init__(self):
        super().__init__()
        self.unreachable: set[str] = set()

    async def update_order_status(self, order_id, status, reason=None):
        if str(order_id) in self.unreachable:
            self.calls["update_order_status"] += 1
            raise NetworkError(f"Order {order_id} unreachable")
        return await super().update_order_status(order_id, status, reason)


def test_one_retry_all_pass_counts_one_attempt_per_entry(queue, emitter, settings, make_order):
    backend = PartlyReachableBackend()
    engine = OrderEngine(backend, queue, emitter, settings=settings)
    backend.seed_order(make_order(1))
    backend.seed_order(make_order(2))

    async def scenario():
        await engine.request_reconciliation()
        backend.offline = True
        first = await engine.submit_status_change(1, "preparing", role="kitchen")
        second = await engine.submit_status_change(2, "preparing", role="kitchen")
        backend.offline = False
        backend.unreachable.add("2")
        report = await engine.retry_all()
        await engine.drain()
        return first.mutation, second.mutation, report

    first, second, report = asyncio.run(scenario())

    assert report.succeeded == [first.id]
    assert report.failed == [second.id]
    assert queue.get(second.id).retry_count == 2
    assert queue.pending_count() == 1
    # two offline attempts, then one attempt each in the sync pass
    assert backend.calls["update_order_status"] == 4


def test_stale_queued_change_is_rejected_on_replay(backend, queue, emitter, settings, make_order):
    engine = OrderEngine(
        backend,
        queue,
        emitter,
        settings=settings.model_copy(update={"auto_sync_on_reconnect": False}),
    )
    backend.seed_order(make_order(41))

    async def scenario():
        await engine.request_reconciliation()
        backend.offline = True
        queued = await engine.submit_status_change(41, "preparing", role="kitchen")
        backend.offline = False
        backend.force_status(41, OrderStatus.COMPLETED)
        await engine.request_reconciliation()
        sent = backend.calls["update_order_status"]
        with pytest.raises(InvalidTransition):
            await engine.retry_queued_mutation(queued.mutation.id)
        await engine.drain()
        return queued.mutation, sent

    mutation, sent = asyncio.run(scenario())

    assert mutation.payload["role"] == "kitchen"
    assert backend.calls["update_order_status"] == sent
    assert queue.pending_count() == 0
    assert backend._orders["41"].status is OrderStatus.COMPLETED


def test_replay_enforces_the_queued_role(engine, backend, queue, make_order):
    backend.seed_order(make_order(41, status=OrderStatus.READY))
    entry = queue.enqueue(QueuedMutation(
        kind=MutationKind.UPDATE_STATUS,
        entity_id="41",
        payload={"order_id": "41", "status": "completed", "role": "kitchen", "reason": None},
    ))

    async def scenario():
        await engine.request_reconciliation()
        return await engine.retry_all()

    report = asyncio.run(scenario())

    assert entry.id in report.rejected
    assert backend.calls["update_order_status"] == 0
    assert backend._orders["41"].status is OrderStatus.READY


def test_malformed_queue_entry_is_dropped(engine, queue):
    entry = queue.enqueue(QueuedMutation(kind=MutationKind.UPDATE_STATUS, payload={"status": "ready"}))

    report = asyncio.run(engine.retry_all())

    assert entry.id in report.rejected
    assert queue.pending_count() == 0
    assert engine.emitter.feed[0].type is AlertType.SYNC_FAILED


# =============================================================================
# NOTIFICATIONS & LIFECYCLE
# =============================================================================

def test_polls_raise_new_order_and_ready_alerts(engine, backend, sink, make_order):
    backend.seed_order(make_order(100, status=OrderStatus.PREPARING))

    async def scenario():
        await engine.request_reconciliation()
        assert engine.emitter.feed == []
        backend.force_status(100, OrderStatus.READY)
        backend.seed_order(make_order(101))
        await engine.request_reconciliation()

    asyncio.run(scenario())

    assert engine.emitter.badges == {"new_orders": 1, "ready_orders": 1}
    assert {alert.type for alert in engine.emitter.feed} == {AlertType.NEW_ORDER, AlertType.ORDER_READY}
    assert engine.emitter.suppressed == 2
    assert sink.played == []


def test_views_start_and_stop(engine, backend, make_order):
    backend.seed_order(make_order(100))

    async def scenario():
        await engine.start(views=[ViewSpec("badges", 0.01), ViewSpec("kitchen", 0.01)])
        await asyncio.sleep(0.05)
        running = sorted(engine.views)
        status = engine.status()
        await engine.stop()
        return running, status

    running, status = asyncio.run(scenario())

    assert running == ["badges", "kitchen"]
    assert status["online"] is True
    assert status["queue_depth"] == 0
    assert engine.views == {}
    assert engine.cache.get_order(100) is not None


def test_default_views_follow_settings(settings):
    views = {spec.name: spec for spec in default_views(settings)}

    assert set(views) == {"badges", "tables", "kitchen", "billing"}
    assert views["kitchen"].interval == settings.kitchen_poll_seconds
    assert "bills" in views["tables"].resources
