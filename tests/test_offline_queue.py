import asyncio
import json

import pytest
from filelock import Timeout

from kot_engine import offline_queue
from kot_engine.exceptions import (
    Conflict,
    InvalidTransition,
    MutationNotFound,
    NetworkError,
    QueueLockTimeout,
)
from kot_engine.models import MutationKind, QueuedMutation
from kot_engine.offline_queue import OfflineMutationQueue, RetryStatus


def _status_change(order_id="41", status="ready", **extra):
    return QueuedMutation(
        kind=MutationKind.UPDATE_STATUS,
        entity_id=order_id,
        payload={"order_id": order_id, "status": status, "reason": None},
        **extra,
    )


def _sender(outcomes):
    """Replay stub: pops one outcome per call, raising it when it is an exception."""
    sent = []

    async def send(entry):
        sent.append(entry.id)
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    send.sent = sent
    return send


def test_enqueue_persists_in_order(queue):
    first = queue.enqueue(_status_change("1"))
    second = queue.enqueue(_status_change("2"))

    assert [entry.id for entry in queue.entries()] == [first.id, second.id]
    assert len(queue) == 2

    reopened = OfflineMutationQueue(queue.path, lock_timeout=1)
    assert [entry.id for entry in reopened.entries()] == [first.id, second.id]
    assert reopened.get(first.id).payload["order_id"] == "1"


def test_enqueue_same_id_twice_keeps_one_entry(queue):
    entry = _status_change()
    queue.enqueue(entry)
    queue.enqueue(entry.model_copy(update={"retry_count": 5}))

    assert queue.pending_count() == 1
    assert queue.get(entry.id).retry_count == 0


def test_corrupt_queue_file_reads_as_empty(queue):
    queue.path.write_text("{not json", encoding="utf-8")
    assert queue.entries() == []

    queue.path.write_text(json.dumps({"id": "queue-1"}), encoding="utf-8")
    assert queue.entries() == []

    queue.enqueue(_status_change())
    assert queue.pending_count() == 1


def test_dequeue_and_clear(queue):
    a = queue.enqueue(_status_change("1"))
    queue.enqueue(_status_change("2"))
    queue.enqueue(_status_change("3"))

    assert queue.dequeue(a.id) is True
    assert queue.dequeue(a.id) is False
    assert queue.clear() == 2
    assert queue.entries() == []


def test_failed_retry_increments_count_and_keeps_entry(queue):
    entry = queue.enqueue(_status_change(retry_count=1, last_error="Network timeout"))
    send = _sender([NetworkError("Backend unreachable")])

    result = asyncio.run(queue.retry(entry.id, send))

    assert result.status is RetryStatus.FAILED
    assert result.retry_count == 2
    stored = queue.get(entry.id)
    assert stored.retry_count == 2
    assert stored.last_error == "Backend unreachable"
    assert stored.updated_at is not None


def test_successful_retry_removes_entry(queue):
    entry = queue.enqueue(_status_change(retry_count=2))

    result = asyncio.run(queue.retry(entry.id, _sender([{"id": "41", "status": "ready"}])))

    assert result.status is RetryStatus.SUCCEEDED
    assert result.retry_count == 2
    assert queue.get(entry.id) is None


def test_terminal_rejection_removes_entry_and_reraises(queue):
    entry = queue.enqueue(_status_change())

    with pytest.raises(InvalidTransition):
        asyncio.run(queue.retry(entry.id, _sender([InvalidTransition("Cannot move order")])))

    assert queue.pending_count() == 0


def test_guard_skip_leaves_entry_untouched(queue):
    entry = queue.enqueue(_status_change(retry_count=1))

    result = asyncio.run(queue.retry(entry.id, _sender([None])))

    assert result.status is RetryStatus.SKIPPED
    assert queue.get(entry.id).retry_count == 1


def test_retry_unknown_id_raises(queue):
    with pytest.raises(MutationNotFound):
        asyncio.run(queue.retry("queue-missing", _sender([])))


def test_concurrent_retry_of_same_entry_is_skipped(queue):
    entry = queue.enqueue(_status_change())
    release = None

    async def slow_send(mutation):
        await release.wait()
        return {"ok": True}

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        first = asyncio.create_task(queue.retry(entry.id, slow_send))
        await asyncio.sleep(0)
        assert queue.is_retrying(entry.id)
        second = await queue.retry(entry.id, slow_send)
        release.set()
        return await first, second

    first, second = asyncio.run(scenario())

    assert first.status is RetryStatus.SUCCEEDED
    assert second.status is RetryStatus.SKIPPED
    assert queue.pending_count() == 0


def test_retry_all_reports_each_entry(queue):
    ok = queue.enqueue(_status_change("1"))
    offline = queue.enqueue(_status_change("2"))
    rejected = queue.enqueue(_status_change("3"))
    skipped = queue.enqueue(_status_change("4"))
    send = _sender([
        {"id": "1"},
        NetworkError("timeout"),
        Conflict("Order 3 not found"),
        None,
    ])

    report = asyncio.run(queue.retry_all(send))

    assert send.sent == [ok.id, offline.id, rejected.id, skipped.id]
    assert report.succeeded == [ok.id]
    assert report.failed == [offline.id]
    assert report.rejected == {rejected.id: "Order 3 not found"}
    assert report.skipped == [skipped.id]
    assert report.attempted == 3
    assert [entry.id for entry in queue.entries()] == [offline.id, skipped.id]


def test_lock_timeout_surfaces_as_queue_error(queue, monkeypatch):
    class BusyLock:
        def __init__(self, path, timeout):
            self.path = path

        def __enter__(self):
            raise Timeout(self.path)

        def __exit__(self, *exc):
            return False

    monkeypatch.setattr(offline_queue, "FileLock", BusyLock)

    with pytest.raises(QueueLockTimeout) as exc_info:
        queue.enqueue(_status_change())
    assert exc_info.value.retryable is True


def test_default_location_comes_from_settings(settings):
    queue = OfflineMutationQueue()

    assert queue.path == settings.queue_path
    assert queue.path.parent.exists()
