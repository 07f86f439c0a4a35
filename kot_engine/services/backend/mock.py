"""
Mock Backend Client Implementation

In-memory stand-in for the restaurant backend. Used in development mode
(ENV_MODE=development) and throughout the test suite to:
    - Exercise the full order lifecycle without a server
    - Simulate flaky connectivity and full outages
    - Count outbound requests per endpoint

Behaves like the real backend where it matters:
    - Validates status transitions (same-status resubmission is a no-op)
    - Creates a DRAFT bill when an order is completed
    - Marks the order completed when its bill is paid
    - Recognises a replayed creation by its KOT number

Version: 1.0.0
"""

import asyncio
import logging
import random
import time
from collections import Counter
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from kot_engine.exceptions import Conflict, InvalidTransition, NetworkError, ValidationError
from kot_engine.models import (
    Bill,
    EntityId,
    Order,
    OrderDraft,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Table,
)
from kot_engine.services.backend.base import BaseBackendClient, BillDetail
from kot_engine.state_machine import validate_transition

logger = logging.getLogger(__name__)


class MockBackendClient(BaseBackendClient):
    """
    Mock implementation of the backend.

    Attributes:
        failure_rate: Probability of a simulated network failure (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds
        offline: When True every call raises NetworkError
        gate: Optional event every call waits on (lets tests hold a request open)
        calls: Counter of calls per method name

    Example:
        >>> backend = MockBackendClient()
        >>> table = backend.add_table(number=5, seats=4)
        >>> order = await backend.create_order(OrderDraft(table_id=table.id, items=[...]))
        >>> backend.offline = True   # simulate an outage
    """

    def __init__(
        self,
        failure_rate: float = 0.0,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.offline = False
        self.gate: Optional[asyncio.Event] = None
        self.calls: Counter = Counter()

        self._orders: dict[str, Order] = {}
        self._bills: dict[str, Bill] = {}
        self._tables: dict[str, Table] = {}
        self._next_id = 1

        logger.info(
            f"MockBackendClient initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        return "mock"

    # =========================================================================
    # SIMULATION
    # =========================================================================

    def _new_id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    async def _simulate(self, method: str) -> None:
        """Count the call, wait out latency, and maybe fail."""
        self.calls[method] += 1

        if self.gate is not None:
            await self.gate.wait()
        if self.max_latency > 0:
            await asyncio.sleep(random.uniform(self.min_latency, self.max_latency))

        if self.offline:
            raise NetworkError("Backend unreachable (simulated outage)")
        if self.failure_rate and random.random() < self.failure_rate:
            logger.debug(f"Mock: {method} failed (simulated)")
            raise NetworkError("Network timeout (simulated)")

    def _require_order(self, order_id: EntityId) -> Order:
        order = self._orders.get(str(order_id))
        if order is None:
            raise Conflict(f"Order {order_id} not found", entity_id=order_id)
        return order

    def _require_bill(self, bill_id: EntityId) -> Bill:
        bill = self._bills.get(str(bill_id))
        if bill is None:
            raise Conflict(f"Bill {bill_id} not found", entity_id=bill_id)
        return bill

    # =========================================================================
    # SEEDING (tests / development)
    # =========================================================================

    def add_table(self, number: EntityId, seats: int = 4) -> Table:
        table = Table(id=self._new_id(), number=number, seats=seats)
        self._tables[str(table.id)] = table
        return table

    def seed_order(self, order: Order) -> Order:
        self._orders[str(order.id)] = order
        return order

    def seed_bill(self, bill: Bill) -> Bill:
        self._bills[str(bill.id)] = bill
        return bill

    def force_status(self, order_id: EntityId, status: OrderStatus) -> Order:
        """Change an order behind the engine's back, as another client would."""
        order = self._require_order(order_id).with_status(status)
        self._orders[str(order.id)] = order
        return order

    def remove_order(self, order_id: EntityId) -> None:
        self._orders.pop(str(order_id), None)

    def bill_for_order(self, order_id: EntityId) -> Optional[Bill]:
        for bill in self._bills.values():
            if str(bill.order_id) == str(order_id):
                return bill
        return None

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def list_orders(self, status: Optional[OrderStatus] = None) -> list[Order]:
        await self._simulate("list_orders")
        orders = [o for o in self._orders.values() if status is None or o.status is status]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def get_order(self, order_id: EntityId) -> Order:
        await self._simulate("get_order")
        return self._require_order(order_id)

    async def create_order(self, draft: OrderDraft) -> Order:
        await self._simulate("create_order")

        for existing in self._orders.values():
            if existing.kot_number == draft.kot_number:
                logger.debug(f"Mock: replayed creation of {draft.kot_number}")
                return existing

        order = Order(
            id=self._new_id(),
            table_id=draft.table_id,
            kot_number=draft.kot_number,
            items=draft.items,
            status=OrderStatus.PENDING,
            created_at=datetime.now(timezone.utc),
            station=draft.station,
        )
        self._orders[str(order.id)] = order
        logger.info(f"Mock: order {order.kot_number} created (id={order.id})")
        return order

    async def update_order_status(
        self,
        order_id: EntityId,
        status: OrderStatus,
        reason: Optional[str] = None,
    ) -> Order:
        await self._simulate("update_order_status")

        order = self._require_order(order_id)
        if order.status is status:
            return order

        validate_transition(order.status, status, reason=reason, entity_id=order_id)
        order = order.with_status(status, reason=reason)
        self._orders[str(order.id)] = order

        if status is OrderStatus.COMPLETED and self.bill_for_order(order.id) is None:
            bill = Bill(
                id=self._new_id(),
                order_id=order.id,
                bill_number=f"BIL-{str(int(time.time() * 1000))[-6:]}",
            )
            self._bills[str(bill.id)] = bill
            logger.info(f"Mock: draft bill {bill.bill_number} created for order {order.id}")

        return order

    # =========================================================================
    # BILLS & TABLES
    # =========================================================================

    async def list_bills(self) -> list[BillDetail]:
        await self._simulate("list_bills")
        return [
            BillDetail(bill=bill, order=self._orders.get(str(bill.order_id)))
            for bill in self._bills.values()
            if bill.payment_status is PaymentStatus.DRAFT
        ]

    async def get_bill(self, bill_id: EntityId) -> BillDetail:
        await self._simulate("get_bill")
        bill = self._require_bill(bill_id)
        return BillDetail(bill=bill, order=self._orders.get(str(bill.order_id)))

    async def pay_bill(
        self,
        bill_id: EntityId,
        payment_method: PaymentMethod,
        amount: Decimal,
    ) -> Bill:
        await self._simulate("pay_bill")

        bill = self._require_bill(bill_id)
        if bill.payment_status is PaymentStatus.PAID:
            return bill
        if bill.payment_status is PaymentStatus.CANCELLED:
            raise InvalidTransition(f"Bill {bill_id} is cancelled", entity_id=bill_id)
        if amount < 0:
            raise ValidationError("Amount cannot be negative", entity_id=bill_id)

        bill = bill.model_copy(update={
            "payment_status": PaymentStatus.PAID,
            "payment_method": payment_method,
            "grand_total": amount,
        })
        self._bills[str(bill.id)] = bill

        order = self._orders.get(str(bill.order_id))
        if order is not None and order.status is not OrderStatus.COMPLETED:
            self._orders[str(order.id)] = order.with_status(OrderStatus.COMPLETED)

        logger.info(f"Mock: bill {bill.id} paid ({payment_method.value} {amount})")
        return bill

    async def list_tables(self) -> list[Table]:
        await self._simulate("list_tables")
        return list(self._tables.values())

    async def health_check(self) -> bool:
        return not self.offline
