"""
Reconciliation Poller

Each consuming view (badges, table board, kitchen display, billing
dashboard) runs its own periodic timer task that re-fetches the
authoritative collections from the backend and applies them to one
shared ReconciledCache.

    view timer ──tick──> poll_once() ──fetch──> backend
                              │
                              └──apply(seq)──> ReconciledCache ──events──> listeners

Rules:
    - A tick is skipped while the previous poll of the same view is
      still in flight (coalescing); a slow response never piles up.
    - A failed poll applies nothing, so the next successful poll diffs
      against the last successful snapshot.
    - Every poll takes a sequence number before fetching. The cache only
      applies a collection newer than the one it holds, so an old response
      that arrives late is dropped ("most recent poll wins").
    - Stopping a view cancels its timer. A poll already issued may finish
      but its result is discarded.

Version: 1.0.0
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from kot_engine.exceptions import EngineError
from kot_engine.models import Bill, EntityId, Order, OrderStatus, Table, TableStatus
from kot_engine.services.backend.base import BaseBackendClient, BillDetail
from kot_engine.state_machine import project_table_statuses

logger = logging.getLogger(__name__)

RESOURCES = ("orders", "tables", "bills")
KITCHEN_STATUSES = (OrderStatus.PENDING, OrderStatus.PREPARING)
OVERDUE_AFTER = timedelta(minutes=15)
UNASSIGNED_STATION = "Unassigned"
STOP_GRACE_SECONDS = 2.0


# =============================================================================
# EVENTS
# =============================================================================

class EventType(str, Enum):
    ADDED = "added"
    STATUS_CHANGED = "status_changed"
    REMOVED = "removed"


@dataclass(frozen=True)
class ReconciliationEvent:
    """
    A change observed between two successful order snapshots.

    Attributes:
        type: added / status_changed / removed
        order_id: Primary key of the order
        order: Current order (None for removed)
        from_status: Previous status (status_changed, removed)
        to_status: New status (added, status_changed)
        sequence: Position in the cache's event feed (0 until recorded)
        view: Name of the view whose poll produced the event
    """
    type: EventType
    order_id: str
    order: Optional[Order] = None
    from_status: Optional[OrderStatus] = None
    to_status: Optional[OrderStatus] = None
    sequence: int = 0
    view: str = ""

    @classmethod
    def added(cls, order: Order) -> "ReconciliationEvent":
        return cls(EventType.ADDED, str(order.id), order=order, to_status=order.status)

    @classmethod
    def status_changed(
        cls,
        order: Order,
        from_status: OrderStatus,
        to_status: OrderStatus,
    ) -> "ReconciliationEvent":
        return cls(
            EventType.STATUS_CHANGED,
            str(order.id),
            order=order,
            from_status=from_status,
            to_status=to_status,
        )

    @classmethod
    def removed(cls, order_id: EntityId, last_status: Optional[OrderStatus] = None) -> "ReconciliationEvent":
        return cls(EventType.REMOVED, str(order_id), from_status=last_status)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "sequence": self.sequence,
            "type": self.type.value,
            "order_id": self.order_id,
            "kot_number": self.order.kot_number if self.order else None,
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value if self.to_status else None,
            "view": self.view,
        }


def diff_snapshots(
    previous: Mapping[str, Order],
    current: Mapping[str, Order],
) -> list[ReconciliationEvent]:
    """
    Diff two order snapshots keyed by primary key.

    Emits Added for keys only in `current`, StatusChanged for keys in
    both whose status differs, and Removed for keys only in `previous`.
    Changes other than status produce no event.

    Example:
        >>> diff_snapshots({"1": a_pending}, {"1": a_ready, "2": b_pending})
        [StatusChanged(1, pending, ready), Added(2)]
    """
    events: list[ReconciliationEvent] = []
    for key, order in current.items():
        before = previous.get(key)
        if before is None:
            events.append(ReconciliationEvent.added(order))
        elif before.status is not order.status:
            events.append(ReconciliationEvent.status_changed(order, before.status, order.status))
    for key, order in previous.items():
        if key not in current:
            events.append(ReconciliationEvent.removed(key, order.status))
    return events


# =============================================================================
# DERIVED VIEWS
# =============================================================================

@dataclass(frozen=True)
class KitchenTicket:
    """An order as shown on the kitchen display."""
    order: Order
    age: timedelta
    overdue: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": str(self.order.id),
            "kot_number": self.order.kot_number,
            "table_id": self.order.table_id,
            "status": self.order.status.value,
            "station": self.order.station or UNASSIGNED_STATION,
            "age_minutes": int(self.age.total_seconds() // 60),
            "overdue": self.overdue,
            "items": [
                {"name": item.name, "quantity": item.quantity, "notes": item.notes}
                for item in self.order.items
            ],
        }


@dataclass
class ApplyOutcome:
    """Result of offering a fetched collection set to the cache."""
    applied: bool
    events: list[ReconciliationEvent] = field(default_factory=list)
    baseline: bool = False


# =============================================================================
# RECONCILED CACHE
# =============================================================================

class ReconciledCache:
    """
    Single source of truth for orders, tables and bills.

    Consumers get read-only mappings. Only reconciliation passes and
    confirmed local mutations write to it, and both go through the same
    sequence check, so a response older than the data already held is
    never applied.

    Derived state (table statuses, station counts, kitchen queue, ready
    badge, draft bills) is computed from the current collections on every
    read and never stored.
    """

    def __init__(self, event_buffer_size: int = 200):
        self._orders: dict[str, Order] = {}
        self._tables: dict[str, Table] = {}
        self._bills: dict[str, BillDetail] = {}
        self._applied: dict[str, int] = {name: 0 for name in RESOURCES}
        self._issued = 0
        self._orders_loaded = False
        self._events: deque[ReconciliationEvent] = deque(maxlen=event_buffer_size)
        self._event_sequence = 0

    # -------------------------------------------------------------------------
    # Read-only access
    # -------------------------------------------------------------------------

    @property
    def orders(self) -> Mapping[str, Order]:
        return MappingProxyType(self._orders)

    @property
    def tables(self) -> Mapping[str, Table]:
        return MappingProxyType(self._tables)

    @property
    def bills(self) -> Mapping[str, BillDetail]:
        return MappingProxyType(self._bills)

    @property
    def last_event_sequence(self) -> int:
        return self._event_sequence

    def applied_sequence(self, resource: str) -> int:
        return self._applied[resource]

    def get_order(self, order_id: EntityId) -> Optional[Order]:
        return self._orders.get(str(order_id))

    def get_bill(self, bill_id: EntityId) -> Optional[BillDetail]:
        return self._bills.get(str(bill_id))

    def events_after(self, sequence: int = 0) -> list[ReconciliationEvent]:
        return [event for event in self._events if event.sequence > sequence]

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def issue_sequence(self) -> int:
        """Reserve the next sequence number. Take it *before* fetching."""
        self._issued += 1
        return self._issued

    def _claim(self, resource: str, sequence: int) -> bool:
        if sequence <= self._applied[resource]:
            return False
        self._applied[resource] = sequence
        return True

    def apply(
        self,
        sequence: int,
        orders: Optional[Iterable[Order]] = None,
        tables: Optional[Iterable[Table]] = None,
        bills: Optional[Iterable[BillDetail]] = None,
        view: str = "",
    ) -> ApplyOutcome:
        """
        Apply freshly fetched collections taken at `sequence`.

        Collections passed as None are left alone. A collection older than
        the one already held is dropped without events.

        Returns:
            ApplyOutcome with the order events, if the order collection
            was applied. `baseline` is True for the very first order load.
        """
        outcome = ApplyOutcome(applied=False)

        if tables is not None and self._claim("tables", sequence):
            self._tables = {str(table.id): table for table in tables}
            outcome.applied = True

        if bills is not None and self._claim("bills", sequence):
            self._bills = {str(detail.bill.id): detail for detail in bills}
            outcome.applied = True

        if orders is not None:
            if self._claim("orders", sequence):
                current = {str(order.id): order for order in orders}
                outcome.events = self._record(diff_snapshots(self._orders, current), view)
                outcome.baseline = not self._orders_loaded
                self._orders = current
                self._orders_loaded = True
                outcome.applied = True
            else:
                logger.debug(f"Cache: dropped stale order collection (seq={sequence}, view={view})")

        return outcome

    def merge_order(self, order: Order) -> None:
        """Merge a backend-confirmed order into the cache."""
        cached = self._orders.get(str(order.id))
        if cached is not None and not order.items and cached.items:
            order = order.model_copy(update={"items": cached.items})
        orders = dict(self._orders)
        orders[str(order.id)] = order
        self._orders = orders
        self._applied["orders"] = self.issue_sequence()

    def merge_bill(self, bill: Bill) -> None:
        """Merge a backend-confirmed bill into the cache."""
        existing = self._bills.get(str(bill.id))
        order = existing.order if existing else self._orders.get(str(bill.order_id))
        bills = dict(self._bills)
        bills[str(bill.id)] = BillDetail(bill=bill, order=order)
        self._bills = bills
        self._applied["bills"] = self.issue_sequence()

    def _record(self, events: list[ReconciliationEvent], view: str) -> list[ReconciliationEvent]:
        recorded = []
        for event in events:
            self._event_sequence += 1
            stamped = ReconciliationEvent(
                type=event.type,
                order_id=event.order_id,
                order=event.order,
                from_status=event.from_status,
                to_status=event.to_status,
                sequence=self._event_sequence,
                view=view,
            )
            self._events.append(stamped)
            recorded.append(stamped)
        return recorded

    # -------------------------------------------------------------------------
    # Derived state
    # -------------------------------------------------------------------------

    def table_statuses(self) -> dict[str, TableStatus]:
        """Current table board, projected from the cached order set."""
        bills = [detail.bill for detail in self._bills.values()]
        return project_table_statuses(
            self._tables.values(),
            self._orders.values(),
            bills if self._applied["bills"] else None,
        )

    def station_counts(self) -> dict[str, int]:
        """Active orders per kitchen station."""
        counts: dict[str, int] = {}
        for order in self._orders.values():
            if order.is_active:
                station = order.station or UNASSIGNED_STATION
                counts[station] = counts.get(station, 0) + 1
        return counts

    def kitchen_queue(
        self,
        station: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[KitchenTicket]:
        """
        Pending and preparing orders, oldest first.

        Filtering by station keeps orders without a station, since nobody
        else would pick them up.
        """
        now = now or datetime.now(timezone.utc)
        tickets = []
        for order in sorted(self._orders.values(), key=lambda o: o.created_at):
            if order.status not in KITCHEN_STATUSES:
                continue
            if station and order.station and order.station != station:
                continue
            age = max(now - order.created_at, timedelta(0))
            tickets.append(KitchenTicket(order=order, age=age, overdue=age > OVERDUE_AFTER))
        return tickets

    def ready_count(self) -> int:
        return sum(1 for order in self._orders.values() if order.status is OrderStatus.READY)

    def draft_bills(self) -> list[BillDetail]:
        return [detail for detail in self._bills.values() if not detail.bill.is_settled]

    def snapshot(self) -> dict[str, Any]:
        """Everything a UI needs to render, as JSON-ready data."""
        return {
            "orders": [order.model_dump(mode="json") for order in self._orders.values()],
            "tables": [table.model_dump(mode="json") for table in self._tables.values()],
            "bills": [
                {
                    "bill": detail.bill.model_dump(mode="json"),
                    "order": detail.order.model_dump(mode="json") if detail.order else None,
                }
                for detail in self._bills.values()
            ],
            "table_statuses": {key: value.value for key, value in self.table_statuses().items()},
            "ready_count": self.ready_count(),
            "last_event_sequence": self._event_sequence,
        }


# =============================================================================
# POLLER
# =============================================================================

EventListener = Callable[[list[ReconciliationEvent], bool], Awaitable[None]]
ResultListener = Callable[[Optional[EngineError]], None]


@dataclass(frozen=True)
class ViewSpec:
    """
    A polling view.

    Attributes:
        name: View name, e.g. "kitchen"
        interval: Seconds between ticks
        resources: Collections the view needs (subset of RESOURCES)
    """
    name: str
    interval: float
    resources: tuple[str, ...] = ("orders",)

    def __post_init__(self):
        if self.interval <= 0:
            raise ValueError("interval must be greater than 0")
        unknown = set(self.resources) - set(RESOURCES)
        if unknown:
            raise ValueError(f"Unknown resources: {sorted(unknown)}")


class ReconciliationPoller:
    """
    Periodic reconciliation for one view.

    Example:
        >>> poller = ReconciliationPoller(ViewSpec("kitchen", 5.0), backend, cache)
        >>> poller.start()
        >>> ...
        >>> await poller.stop()
    """

    def __init__(
        self,
        spec: ViewSpec,
        backend: BaseBackendClient,
        cache: ReconciledCache,
        on_events: Optional[EventListener] = None,
        on_result: Optional[ResultListener] = None,
    ):
        self.spec = spec
        self.backend = backend
        self.cache = cache
        self.on_events = on_events
        self.on_result = on_result

        self._timer: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Task] = None
        self._closed = False

        self.polls = 0
        self.failures = 0
        self.skipped_ticks = 0
        self.last_error: Optional[str] = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def start(self) -> None:
        """Start the timer. Must be called from a running event loop."""
        if self.running:
            return
        self._closed = False
        self._timer = asyncio.create_task(self._run(), name=f"poll-{self.name}")
        logger.info(f"View '{self.name}' polling every {self.spec.interval}s")

    async def stop(self, grace: float = STOP_GRACE_SECONDS) -> None:
        """
        Cancel the timer.

        A poll already issued gets `grace` seconds to complete and its
        result is discarded; after that it is cancelled.
        """
        self._closed = True
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        pending, self._in_flight = self._in_flight, None
        if pending is not None and not pending.done():
            done, _ = await asyncio.wait({pending}, timeout=grace)
            if not done:
                pending.cancel()
                await asyncio.gather(pending, return_exceptions=True)
                logger.debug(f"View '{self.name}': in-flight poll cancelled after {grace}s")
        logger.info(f"View '{self.name}' stopped")

    async def _run(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self.spec.interval)

    def tick(self) -> None:
        """Start a poll unless the previous one is still running."""
        if self.in_flight:
            self.skipped_ticks += 1
            logger.debug(f"View '{self.name}': previous poll still in flight, tick skipped")
            return
        self._in_flight = asyncio.create_task(self._guarded_poll(), name=f"poll-{self.name}-tick")

    async def _guarded_poll(self) -> None:
        try:
            await self.poll_once()
        except Exception as e:
            logger.exception(f"View '{self.name}': poll listener failed: {e}")

    async def _fetch(self) -> dict[str, list]:
        calls: dict[str, Awaitable[list]] = {}
        if "orders" in self.spec.resources:
            calls["orders"] = self.backend.list_orders()
        if "tables" in self.spec.resources:
            calls["tables"] = self.backend.list_tables()
        if "bills" in self.spec.resources:
            calls["bills"] = self.backend.list_bills()
        results = await asyncio.gather(*calls.values())
        return dict(zip(calls.keys(), results))

    async def poll_now(self) -> Optional[list[ReconciliationEvent]]:
        """Poll immediately, outside the timer (used after a Conflict)."""
        return await self.poll_once()

    async def poll_once(self) -> Optional[list[ReconciliationEvent]]:
        """
        Fetch, diff and apply one time.

        Returns:
            The events applied, or None when the poll failed, was stale,
            or the view was stopped while it was in flight.
        """
        sequence = self.cache.issue_sequence()
        self.polls += 1
        try:
            collections = await self._fetch()
        except EngineError as e:
            self.failures += 1
            self.last_error = e.message
            logger.warning(f"View '{self.name}': poll failed ({type(e).__name__}: {e.message})")
            if self.on_result:
                self.on_result(e)
            return None

        if self.on_result:
            self.on_result(None)

        if self._closed:
            logger.debug(f"View '{self.name}': discarded poll result after stop")
            return None

        self.last_error = None
        outcome = self.cache.apply(sequence, view=self.name, **collections)
        if not outcome.applied:
            return None

        if outcome.events:
            logger.debug(f"View '{self.name}': {len(outcome.events)} event(s)")
            if self.on_events:
                await self.on_events(outcome.events, outcome.baseline)
        return outcome.events

    def stats(self) -> dict[str, Any]:
        return {
            "view": self.name,
            "interval": self.spec.interval,
            "running": self.running,
            "polls": self.polls,
            "failures": self.failures,
            "skipped_ticks": self.skipped_ticks,
            "last_error": self.last_error,
        }
