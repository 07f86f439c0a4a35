"""
Order Engine

The single entry point UI code talks to:

    UI action ──> validate (state machine) ──> MutationGuard ──> backend
                                                   │               │
                                   rejected: no-op ┘     success: merge into cache
                                                         NetworkError: offline queue
                                                         Conflict: reconcile now

    view timers ──> ReconciliationPoller ──> ReconciledCache ──> NotificationEmitter

Queued mutations are replayed through the same _execute() path as live
actions, so a replay is guarded, sent, and merged exactly like the
original attempt.

Version: 1.0.0
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from kot_engine.billing import BillTotals, compute_bill_for, round_money
from kot_engine.core.config import Settings, get_settings
from kot_engine.exceptions import (
    Conflict,
    EngineError,
    InvalidTransition,
    NetworkError,
    ValidationError,
)
from kot_engine.guard import EntityKey, MutationGuard, entity_key
from kot_engine.models import (
    Bill,
    EntityId,
    MutationKind,
    Order,
    OrderDraft,
    OrderStatus,
    PaymentMethod,
    QueuedMutation,
    Role,
)
from kot_engine.offline_queue import OfflineMutationQueue, RetryReport, RetryResult
from kot_engine.reconciliation import (
    RESOURCES,
    ReconciledCache,
    ReconciliationEvent,
    ReconciliationPoller,
    ViewSpec,
)
from kot_engine.services.backend import BaseBackendClient, BillDetail, get_backend_client
from kot_engine.services.notifications import NotificationEmitter, get_alert_sink
from kot_engine.state_machine import validate_transition

logger = logging.getLogger(__name__)


def default_views(settings: Settings) -> list[ViewSpec]:
    """The four standard views and the collections each one reads."""
    return [
        ViewSpec("badges", settings.badge_poll_seconds, ("orders",)),
        ViewSpec("tables", settings.table_poll_seconds, ("orders", "tables", "bills")),
        ViewSpec("kitchen", settings.kitchen_poll_seconds, ("orders",)),
        ViewSpec("billing", settings.dashboard_poll_seconds, ("orders", "bills")),
    ]


# =============================================================================
# RESULT TYPES
# =============================================================================

class SubmissionStatus(str, Enum):
    CONFIRMED = "confirmed"
    QUEUED = "queued"
    SKIPPED = "skipped"


@dataclass
class Submission:
    """
    Outcome of a UI mutation.

    Attributes:
        status: confirmed by the backend, queued for retry, or skipped
            because the same entity already has a request in flight
        result: Order or Bill returned by the backend (confirmed only)
        mutation: Queue entry (queued only)
    """
    status: SubmissionStatus
    result: Optional[Union[Order, Bill]] = None
    mutation: Optional[QueuedMutation] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "result": self.result.model_dump(mode="json") if self.result is not None else None,
            "queued": self.mutation.model_dump(mode="json") if self.mutation is not None else None,
        }


# =============================================================================
# CONNECTIVITY
# =============================================================================

class ConnectivityTracker:
    """
    Online/offline state derived from call outcomes.

    Any answer from the backend, even an error response, counts as online;
    only NetworkError counts as offline. Going from offline to online
    fires `on_reconnect` once.
    """

    def __init__(self, on_reconnect: Optional[Callable[[], None]] = None):
        self.on_reconnect = on_reconnect
        self.online = True
        self.was_offline = False
        self.changed_at = datetime.now(timezone.utc)

    def report(self, error: Optional[EngineError]) -> None:
        if isinstance(error, NetworkError):
            self.mark_offline()
        else:
            self.mark_online()

    def mark_offline(self) -> None:
        if self.online:
            self.online = False
            self.changed_at = datetime.now(timezone.utc)
            logger.warning("Backend unreachable, working offline")

    def mark_online(self) -> None:
        if self.online:
            return
        self.online = True
        self.was_offline = True
        self.changed_at = datetime.now(timezone.utc)
        logger.info("Backend reachable again")
        if self.on_reconnect:
            self.on_reconnect()


# =============================================================================
# ENGINE
# =============================================================================

class OrderEngine:
    """
    Order lifecycle and billing reconciliation engine.

    Example:
        >>> engine = OrderEngine.from_settings()
        >>> await engine.start()
        >>> result = await engine.submit_status_change(42, "preparing", role="kitchen")
        >>> result.status
        <SubmissionStatus.CONFIRMED: 'confirmed'>
        >>> await engine.stop()
    """

    def __init__(
        self,
        backend: BaseBackendClient,
        queue: OfflineMutationQueue,
        emitter: NotificationEmitter,
        settings: Optional[Settings] = None,
        cache: Optional[ReconciledCache] = None,
        guard: Optional[MutationGuard] = None,
    ):
        self.settings = settings or get_settings()
        self.backend = backend
        self.queue = queue
        self.emitter = emitter
        self.cache = cache or ReconciledCache(event_buffer_size=self.settings.event_buffer_size)
        self.guard = guard or MutationGuard()
        self.connectivity = ConnectivityTracker(on_reconnect=self._on_reconnect)

        self._views: dict[str, ReconciliationPoller] = {}
        self._reconciler = self._poller(
            ViewSpec("reconcile", self.settings.dashboard_poll_seconds, RESOURCES)
        )
        self._background: set[asyncio.Task] = set()
        self._sync_task: Optional[asyncio.Task] = None
        self._sync_passes = 0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "OrderEngine":
        """Build an engine from the configured backend, queue and alert sink."""
        settings = settings or get_settings()
        return cls(
            backend=get_backend_client(),
            queue=OfflineMutationQueue(settings.queue_path, settings.queue_lock_timeout),
            emitter=NotificationEmitter(get_alert_sink(), sound_enabled=settings.sound_enabled),
            settings=settings,
        )

    # =========================================================================
    # VIEWS
    # =========================================================================

    def _poller(self, spec: ViewSpec) -> ReconciliationPoller:
        return ReconciliationPoller(
            spec,
            self.backend,
            self.cache,
            on_events=self._on_events,
            on_result=self.connectivity.report,
        )

    @property
    def views(self) -> dict[str, ReconciliationPoller]:
        return dict(self._views)

    def start_view(self, spec: ViewSpec) -> ReconciliationPoller:
        """Start polling for a view. A view already running is returned as is."""
        poller = self._views.get(spec.name)
        if poller is None:
            poller = self._poller(spec)
            self._views[spec.name] = poller
        poller.start()
        return poller

    async def stop_view(self, name: str) -> bool:
        poller = self._views.pop(name, None)
        if poller is None:
            return False
        await poller.stop()
        return True

    async def start(self, views: Optional[list[ViewSpec]] = None) -> None:
        for spec in views if views is not None else default_views(self.settings):
            self.start_view(spec)
        logger.info(f"Engine started ({self.backend.provider_name} backend, {len(self._views)} views)")

    async def stop(self) -> None:
        for name in list(self._views):
            await self.stop_view(name)
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Engine stopped")

    async def request_reconciliation(self) -> Optional[list[ReconciliationEvent]]:
        """Re-fetch every collection now, outside the view timers."""
        return await self._reconciler.poll_now()

    async def _on_events(self, events: list[ReconciliationEvent], baseline: bool) -> None:
        await self.emitter.handle(events, baseline=baseline)

    # =========================================================================
    # BACKGROUND TASKS
    # =========================================================================

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(self._logged(coro, name), name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    @staticmethod
    async def _logged(coro: Awaitable[Any], name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Background task '{name}' failed: {e}")

    async def drain(self) -> None:
        """Wait for scheduled reconciliation and sync tasks to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _on_reconnect(self) -> None:
        if not self.settings.auto_sync_on_reconnect:
            return
        if self._sync_passes or (self._sync_task is not None and not self._sync_task.done()):
            return
        self._sync_task = self._spawn(self.retry_all(), "queue-sync")

    # =========================================================================
    # SEND PATH (live and replay)
    # =========================================================================

    def _prepare(
        self,
        kind: MutationKind,
        payload: dict[str, Any],
    ) -> tuple[EntityKey, Callable[[], Awaitable[Any]]]:
        """Parse a mutation payload into its guard key and backend call."""
        try:
            if kind is MutationKind.CREATE_ORDER:
                draft = OrderDraft.model_validate(payload["draft"])
                return entity_key("kot", draft.kot_number), lambda: self.backend.create_order(draft)

            if kind is MutationKind.UPDATE_STATUS:
                order_id = payload["order_id"]
                status = OrderStatus(payload["status"])
                role = Role(payload["role"]) if payload.get("role") else None
                reason = payload.get("reason")
                self._check_transition(order_id, status, role, reason)
                return (
                    entity_key("order", order_id),
                    lambda: self.backend.update_order_status(order_id, status, reason),
                )

            if kind is MutationKind.RECORD_PAYMENT:
                bill_id = payload["bill_id"]
                method = PaymentMethod(payload.get("payment_method") or PaymentMethod.CASH)
                amount = Decimal(str(payload["amount"]))
                self._check_payable(bill_id)
                return (
                    entity_key("bill", bill_id),
                    lambda: self.backend.pay_bill(bill_id, method, amount),
                )
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise ValidationError(f"Malformed {kind.value} payload: {e}") from e

        raise ValidationError(f"Unsupported mutation kind: {kind}")

    def _check_transition(
        self,
        order_id: EntityId,
        target: OrderStatus,
        role: Optional[Role],
        reason: Optional[str],
    ) -> None:
        cached = self.cache.get_order(order_id)
        if cached is not None:
            validate_transition(cached.status, target, role=role, reason=reason, entity_id=order_id)
        elif target is OrderStatus.VOIDED and not reason:
            raise InvalidTransition("Voiding an order requires a reason", entity_id=order_id)

    def _check_payable(self, bill_id: EntityId) -> None:
        detail = self.cache.get_bill(bill_id)
        if detail is not None and detail.bill.is_settled:
            raise InvalidTransition(
                f"Bill {bill_id} is already {detail.bill.payment_status.value}",
                entity_id=bill_id,
            )

    async def _execute(self, kind: MutationKind, payload: dict[str, Any]) -> Optional[Any]:
        """
        Guard, send and merge one mutation.

        Returns:
            The backend result, or None when the guard rejected the call
        """
        key, call = self._prepare(kind, payload)

        async with self.guard.hold(key) as admitted:
            if not admitted:
                return None
            try:
                result = await call()
            except NetworkError:
                self.connectivity.mark_offline()
                raise
            except Conflict as e:
                logger.warning(f"Conflict on {key[0]} {key[1]}: {e.message}, reconciling")
                self.connectivity.mark_online()
                self._spawn(self.request_reconciliation(), "reconcile")
                raise
            except EngineError:
                self.connectivity.mark_online()
                raise

        self._merge(kind, result)
        self.connectivity.mark_online()
        return result

    def _merge(self, kind: MutationKind, result: Any) -> None:
        if kind is MutationKind.RECORD_PAYMENT:
            self.cache.merge_bill(result)
            order = self.cache.get_order(result.order_id)
            if order is not None and order.status is not OrderStatus.COMPLETED:
                self.cache.merge_order(order.with_status(OrderStatus.COMPLETED))
        else:
            self.cache.merge_order(result)

    async def replay(self, mutation: QueuedMutation) -> Optional[Any]:
        """Sender used by the offline queue."""
        return await self._execute(mutation.kind, mutation.payload)

    async def _submit(
        self,
        kind: MutationKind,
        entity_id: EntityId,
        payload: dict[str, Any],
    ) -> Submission:
        try:
            result = await self._execute(kind, payload)
        except NetworkError as e:
            mutation = self.queue.enqueue(QueuedMutation(
                kind=kind,
                entity_id=str(entity_id),
                payload=payload,
                retry_count=1,
                last_error=e.message,
            ))
            logger.warning(f"{kind.value} for {entity_id} queued offline ({e.message})")
            return Submission(SubmissionStatus.QUEUED, mutation=mutation)

        if result is None:
            return Submission(SubmissionStatus.SKIPPED)
        return Submission(SubmissionStatus.CONFIRMED, result=result)

    # =========================================================================
    # UI ENTRY POINTS
    # =========================================================================

    async def create_order(self, draft: OrderDraft) -> Submission:
        """Send a new order to the kitchen, or queue it when offline."""
        payload = {"draft": draft.model_dump(mode="json")}
        submission = await self._submit(MutationKind.CREATE_ORDER, draft.kot_number, payload)
        if submission.status is SubmissionStatus.CONFIRMED:
            logger.info(f"Order {draft.kot_number} sent to kitchen")
        return submission

    async def submit_status_change(
        self,
        order_id: EntityId,
        status: Union[OrderStatus, str],
        role: Optional[Union[Role, str]] = None,
        reason: Optional[str] = None,
    ) -> Submission:
        """
        Move an order along the state machine.

        Validated locally against the cached order first, so an invalid
        transition never reaches the backend.

        Raises:
            InvalidTransition: Not an edge, missing void reason, or role not permitted
            ValidationError: Unknown status or role
            Conflict: Backend no longer knows the order (reconciliation scheduled)
        """
        try:
            target = OrderStatus(status)
            actor = Role(role) if role is not None else None
        except ValueError as e:
            raise ValidationError(str(e), entity_id=order_id) from e

        payload = {
            "order_id": str(order_id),
            "status": target.value,
            "role": actor.value if actor is not None else None,
            "reason": reason.strip() if reason else None,
        }
        return await self._submit(MutationKind.UPDATE_STATUS, order_id, payload)

    async def get_bill_detail(self, bill_id: EntityId) -> BillDetail:
        detail = self.cache.get_bill(bill_id)
        if detail is None or detail.order is None:
            detail = await self.backend.get_bill(bill_id)
        return detail

    async def bill_totals(self, bill_id: EntityId) -> BillTotals:
        """Money engine breakdown for a bill, with configured default rates."""
        detail = await self.get_bill_detail(bill_id)
        if detail.order is None:
            raise ValidationError(f"Bill {bill_id} has no order", entity_id=bill_id)
        return compute_bill_for(
            detail.bill,
            detail.order,
            default_tax_rate=self.settings.tax_rate,
            default_service_charge_rate=self.settings.service_charge_rate,
            default_service_charge_enabled=self.settings.service_charge_enabled,
        )

    async def submit_payment(
        self,
        bill_id: EntityId,
        payment_method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        amount: Optional[Any] = None,
    ) -> Submission:
        """
        Record a payment against a bill.

        Without an explicit amount the bill's rounded grand total is used.

        Raises:
            InvalidTransition: The bill is already paid or cancelled
            ValidationError: Negative or unparseable amount
        """
        method = PaymentMethod(payment_method)

        self._check_payable(bill_id)

        if amount is None:
            amount = (await self.bill_totals(bill_id)).rounded().grand_total
        try:
            value = round_money(Decimal(str(amount)))
        except InvalidOperation as e:
            raise ValidationError(f"Invalid amount: {amount!r}", entity_id=bill_id) from e
        if value < 0:
            raise ValidationError("Amount cannot be negative", entity_id=bill_id)

        payload = {
            "bill_id": str(bill_id),
            "payment_method": method.value,
            "amount": str(value),
        }
        return await self._submit(MutationKind.RECORD_PAYMENT, bill_id, payload)

    # =========================================================================
    # OFFLINE QUEUE
    # =========================================================================

    async def retry_queued_mutation(self, mutation_id: str) -> RetryResult:
        """Retry one queued mutation once."""
        return await self.queue.retry(mutation_id, self.replay)

    async def retry_all(self) -> RetryReport:
        """One pass over the offline queue; failures raise Sync Failed alerts."""
        # Successes inside this pass must not start a reconnect sync
        self._sync_passes += 1
        try:
            report = await self.queue.retry_all(self.replay)
        finally:
            self._sync_passes -= 1
        for mutation_id in report.failed:
            await self.emitter.sync_failed(mutation_id, "Still offline, will retry")
        for mutation_id, error in report.rejected.items():
            await self.emitter.sync_failed(mutation_id, f"Rejected by server: {error}")
        return report

    # =========================================================================
    # STATUS
    # =========================================================================

    def status(self) -> dict[str, Any]:
        return {
            "backend": self.backend.provider_name,
            "online": self.connectivity.online,
            "queue_depth": self.queue.pending_count(),
            "in_flight": [f"{kind}:{ident}" for kind, ident in sorted(self.guard.in_flight)],
            "views": [poller.stats() for poller in self._views.values()],
        }
