"""
Backend Client Abstract Base Class

Defines the interface contract for talking to the restaurant backend.
Both MockBackendClient and HttpBackendClient implement these methods,
so the engine behaves identically against the simulated kitchen and the
real REST API.

Design Pattern: Strategy Pattern
    - Runtime switching between the mock and the HTTP backend
    - Tests and local development run without a server

Error contract:
    Every method raises one of kot_engine.exceptions:
    NetworkError, InvalidTransition, ValidationError, Conflict,
    AuthorizationError. Nothing else escapes.

Version: 1.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from kot_engine.models import (
    Bill,
    EntityId,
    Order,
    OrderDraft,
    OrderStatus,
    PaymentMethod,
    Table,
)


@dataclass
class BillDetail:
    """
    A bill together with the order it belongs to.

    Attributes:
        bill: The bill record
        order: The order, when the backend could resolve it
    """
    bill: Bill
    order: Optional[Order] = None


class BaseBackendClient(ABC):
    """
    Abstract base class for backend clients.

    Endpoints consumed:
        GET  /orders[?status=]      GET  /orders/:id
        POST /orders                PUT  /orders/:id/status
        GET  /bills                 GET  /bills/:id
        POST /bills/:id/pay         GET  /tables
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """
        Return the name of the backend provider.

        Returns:
            str: Provider name (e.g., "mock", "http")
        """
        pass

    @abstractmethod
    async def list_orders(self, status: Optional[OrderStatus] = None) -> list[Order]:
        """
        Fetch the order collection, optionally filtered by status.

        Returns:
            list[Order]: Newest first, as the backend orders them
        """
        pass

    @abstractmethod
    async def get_order(self, order_id: EntityId) -> Order:
        """Fetch a single order."""
        pass

    @abstractmethod
    async def create_order(self, draft: OrderDraft) -> Order:
        """
        Create an order from a POS draft.

        The draft's kot_number travels with the request so a replayed
        creation can be recognised by the backend.
        """
        pass

    @abstractmethod
    async def update_order_status(
        self,
        order_id: EntityId,
        status: OrderStatus,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Request a status transition.

        Args:
            order_id: Order to move
            status: Target status
            reason: Void reason (required when status is voided)

        Returns:
            Order: The order as stored after the update
        """
        pass

    @abstractmethod
    async def list_bills(self) -> list[BillDetail]:
        """Fetch open (draft) bills with their orders."""
        pass

    @abstractmethod
    async def get_bill(self, bill_id: EntityId) -> BillDetail:
        """Fetch one bill with its order."""
        pass

    @abstractmethod
    async def pay_bill(
        self,
        bill_id: EntityId,
        payment_method: PaymentMethod,
        amount: Decimal,
    ) -> Bill:
        """
        Record a payment against a bill.

        Returns:
            Bill: The bill after payment (payment_status PAID)
        """
        pass

    @abstractmethod
    async def list_tables(self) -> list[Table]:
        """Fetch the table collection."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Verify connectivity to the backend.

        Returns:
            bool: True if the backend is reachable
        """
        pass

    async def aclose(self) -> None:
        """Release network resources. No-op by default."""
        return None
