import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest

os.environ.setdefault("ENV_MODE", "development")

from kot_engine.core.config import get_settings
from kot_engine.engine import OrderEngine
from kot_engine.models import Order, OrderItem, OrderStatus
from kot_engine.offline_queue import OfflineMutationQueue
from kot_engine.reconciliation import ReconciledCache
from kot_engine.services.backend import MockBackendClient, reset_backend_client
from kot_engine.services.notifications import LoggingAlertSink, NotificationEmitter, reset_alert_sink


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """
    Every test gets development mode, its own data directory and fresh
    cached singletons.
    """
    monkeypatch.setenv("ENV_MODE", "development")
    monkeypatch.setenv("DATA_DIRECTORY", str(tmp_path / "data"))
    monkeypatch.delenv("BACKEND_TOKEN", raising=False)
    monkeypatch.delenv("DEBUG", raising=False)

    get_settings.cache_clear()
    reset_backend_client()
    reset_alert_sink()

    yield get_settings()

    get_settings.cache_clear()
    reset_backend_client()
    reset_alert_sink()


@pytest.fixture()
def settings(isolated_settings):
    return isolated_settings


@pytest.fixture()
def backend() -> MockBackendClient:
    """Zero-latency, never-failing in-memory backend."""
    return MockBackendClient()


@pytest.fixture()
def queue(tmp_path) -> OfflineMutationQueue:
    return OfflineMutationQueue(tmp_path / "queue" / "kot-pending-queue.json", lock_timeout=1)


@pytest.fixture()
def cache() -> ReconciledCache:
    return ReconciledCache(event_buffer_size=50)


@pytest.fixture()
def sink() -> LoggingAlertSink:
    return LoggingAlertSink()


@pytest.fixture()
def emitter(sink) -> NotificationEmitter:
    return NotificationEmitter(sink)


@pytest.fixture()
def engine(backend, queue, emitter, settings) -> OrderEngine:
    return OrderEngine(backend, queue, emitter, settings=settings)


@pytest.fixture()
def make_order():
    """
    Build an Order with sensible defaults.

    minutes_ago controls created_at so "latest order" and overdue
    checks are deterministic.
    """
    def _make(
        order_id,
        status: OrderStatus = OrderStatus.PENDING,
        table_id=None,
        station: Optional[str] = None,
        minutes_ago: float = 0,
        items=None,
        **extra,
    ) -> Order:
        return Order(
            id=order_id,
            kot_number=f"KOT-TEST-{order_id}",
            table_id=table_id,
            status=status,
            station=station,
            created_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
            items=items if items is not None else [
                OrderItem(name="Butter Naan", unit_price=Decimal("45"), quantity=2),
            ],
            **extra,
        )

    return _make
