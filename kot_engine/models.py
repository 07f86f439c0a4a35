"""
Domain Models

Pydantic models for the entities the engine caches and mutates:
orders and their line items, bills, tables, and queued mutations.

The backend speaks snake_case and still emits a few legacy field names
(qty, price, menu_id, order_items, kitchen_station); every model accepts
both so a raw JSON response can be validated directly.

Monetary values are Decimal throughout. Rounding happens at presentation
time only (see kot_engine.billing).
"""

import random
import string
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


EntityId = Union[int, str]


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    """Order lifecycle states."""
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    VOIDED = "voided"

    @classmethod
    def _missing_(cls, value: object):
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized in ("cancelled", "canceled", "void"):
                return cls.VOIDED
            for member in cls:
                if member.value == normalized:
                    return member
        return None

    @property
    def wire_value(self) -> str:
        """Value the backend expects in PUT /orders/:id/status."""
        if self is OrderStatus.VOIDED:
            return "cancelled"
        return self.value


ACTIVE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PREPARING, OrderStatus.READY})


class TableStatus(str, Enum):
    """Derived table board states."""
    AVAILABLE = "Available"
    OCCUPIED = "Occupied"
    READY = "Ready"
    SERVED = "Served"


class DiscountMode(str, Enum):
    PERCENT = "PERCENT"
    FLAT = "FLAT"

    @classmethod
    def _missing_(cls, value: object):
        if isinstance(value, str):
            normalized = value.strip().upper()
            if normalized in ("PERCENTAGE", "%"):
                return cls.PERCENT
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class PaymentStatus(str, Enum):
    DRAFT = "DRAFT"
    PAID = "PAID"
    CANCELLED = "CANCELLED"

    @classmethod
    def _missing_(cls, value: object):
        if isinstance(value, str):
            normalized = value.strip().upper()
            if normalized == "CANCELED":
                return cls.CANCELLED
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CARD = "CARD"
    UPI = "UPI"

    @classmethod
    def _missing_(cls, value: object):
        # Unknown payment modes are recorded as cash, matching the backend.
        if isinstance(value, str):
            normalized = value.strip().upper()
            for member in cls:
                if member.value == normalized:
                    return member
            return cls.CASH
        return None


class MutationKind(str, Enum):
    CREATE_ORDER = "create_order"
    UPDATE_STATUS = "update_status"
    RECORD_PAYMENT = "record_payment"


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    WAITER = "waiter"
    KITCHEN = "kitchen"

    @classmethod
    def _missing_(cls, value: object):
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value == normalized:
                    return member
        return None


# =============================================================================
# KOT NUMBERS
# =============================================================================

def _base36(number: int) -> str:
    alphabet = string.digits + string.ascii_uppercase
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(alphabet[rem])
    return "".join(reversed(digits))


def generate_kot_number() -> str:
    """
    Generate a Kitchen Order Ticket number.

    Format matches the backend generator: KOT-<base36 epoch ms>-<4 digits>.

    Example:
        >>> generate_kot_number()
        'KOT-LZ3K9Q1A-4821'
    """
    stamp = _base36(int(time.time() * 1000))
    return f"KOT-{stamp}-{random.randint(1000, 9999)}"


# =============================================================================
# LINE ITEMS & ORDERS
# =============================================================================

class Discount(BaseModel):
    """A percent or flat discount. Value is never negative."""
    model_config = ConfigDict(frozen=True)

    mode: DiscountMode = DiscountMode.FLAT
    value: Decimal = Field(default=Decimal("0"), ge=0)


class OrderItem(BaseModel):
    """Single menu item entry within an order."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: Optional[EntityId] = None
    menu_item_id: Optional[EntityId] = Field(
        default=None,
        validation_alias=AliasChoices("menu_item_id", "menu_id", "menuItemId"),
    )
    name: str = "Item"
    unit_price: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        validation_alias=AliasChoices("unit_price", "price", "unitPrice"),
    )
    quantity: int = Field(
        default=1,
        ge=1,
        validation_alias=AliasChoices("quantity", "qty"),
    )
    notes: str = ""
    line_discount: Discount = Field(
        default_factory=Discount,
        validation_alias=AliasChoices("line_discount", "lineDiscount"),
    )

    @model_validator(mode="before")
    @classmethod
    def flatten_menu(cls, data: Any) -> Any:
        # Bill detail responses nest the menu row: {"menus": {"name", "price"}}
        if isinstance(data, dict) and isinstance(data.get("menus"), dict):
            menu = data["menus"]
            data = dict(data)
            data.setdefault("name", menu.get("name") or "Item")
            if data.get("price") in (None, "") and menu.get("price") is not None:
                data["price"] = menu["price"]
        return data

    @field_validator("notes", mode="before")
    @classmethod
    def none_notes(cls, v: Any) -> str:
        return v or ""

    @field_validator("unit_price", mode="before")
    @classmethod
    def none_price(cls, v: Any) -> Any:
        return Decimal("0") if v in (None, "") else v

    @property
    def line_subtotal(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_payload(self) -> dict[str, Any]:
        """Shape expected by POST /orders."""
        return {
            "menu_id": self.menu_item_id,
            "name": self.name,
            "qty": self.quantity,
            "price": str(self.unit_price),
            "notes": self.notes or None,
        }


class Order(BaseModel):
    """
    An order as known to the backend.

    kot_number is assigned once at creation; the engine never rewrites it.
    Status changes produce a new Order via with_status().
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: EntityId
    table_id: Optional[EntityId] = None
    table_number: Optional[EntityId] = None
    kot_number: str = Field(validation_alias=AliasChoices("kot_number", "kotNumber"))
    items: list[OrderItem] = Field(
        default_factory=list,
        validation_alias=AliasChoices("items", "order_items"),
    )
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        validation_alias=AliasChoices("created_at", "createdAt"),
    )
    station: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("station", "kitchen_station"),
    )
    void_reason: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def fill_kot(cls, data: Any) -> Any:
        if isinstance(data, dict):
            if not (data.get("kot_number") or data.get("kotNumber")) and data.get("id") is not None:
                data = dict(data)
                data["kot_number"] = f"KOT-{data['id']}"
            tables = data.get("tables")
            if isinstance(tables, dict) and data.get("table_number") is None:
                data = dict(data)
                data["table_number"] = tables.get("table_number")
        return data

    @field_validator("status", mode="before")
    @classmethod
    def parse_status(cls, v: Any) -> OrderStatus:
        if v is None:
            return OrderStatus.PENDING
        return OrderStatus(v)

    @field_validator("created_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)

    @field_validator("station", mode="before")
    @classmethod
    def blank_station(cls, v: Any) -> Optional[str]:
        return v or None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def with_status(self, status: OrderStatus, reason: Optional[str] = None) -> "Order":
        update: dict[str, Any] = {"status": status}
        if reason is not None:
            update["void_reason"] = reason
        return self.model_copy(update=update)


class OrderDraft(BaseModel):
    """A new order built on the POS screen, before the backend has seen it."""

    table_id: Optional[EntityId] = None
    items: list[OrderItem] = Field(..., min_length=1)
    station: Optional[str] = None
    waiter_id: Optional[EntityId] = None
    kot_number: str = Field(default_factory=generate_kot_number)

    def to_payload(self) -> dict[str, Any]:
        return {
            "table_id": self.table_id,
            "kot_number": self.kot_number,
            "station": self.station,
            "waiter_id": self.waiter_id,
            "items": [item.to_payload() for item in self.items],
        }


# =============================================================================
# BILLS & TABLES
# =============================================================================

class Bill(BaseModel):
    """
    A bill for exactly one order.

    payment_status only moves forward: DRAFT -> PAID or DRAFT -> CANCELLED.
    Rates and service_charge_enabled left as None fall back to the
    configured defaults.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: EntityId
    order_id: EntityId
    bill_number: Optional[str] = None
    bill_discount: Discount = Field(default_factory=Discount)
    tax_rate: Optional[Decimal] = Field(default=None, ge=0)
    service_charge_rate: Optional[Decimal] = Field(default=None, ge=0)
    service_charge_enabled: Optional[bool] = None
    payment_status: PaymentStatus = Field(
        default=PaymentStatus.DRAFT,
        validation_alias=AliasChoices("payment_status", "status"),
    )
    payment_method: PaymentMethod = PaymentMethod.CASH
    grand_total: Optional[Decimal] = None

    @model_validator(mode="before")
    @classmethod
    def map_stored_discount(cls, data: Any) -> Any:
        # Stored bills carry discount_mode + total_discount columns.
        if isinstance(data, dict) and "bill_discount" not in data and "total_discount" in data:
            data = dict(data)
            data["bill_discount"] = {
                "mode": data.get("discount_mode") or DiscountMode.FLAT,
                "value": data.get("total_discount") or 0,
            }
        return data

    @field_validator("payment_method", mode="before")
    @classmethod
    def default_method(cls, v: Any) -> Any:
        return v or PaymentMethod.CASH

    @property
    def is_settled(self) -> bool:
        return self.payment_status is not PaymentStatus.DRAFT


class Table(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: EntityId
    number: EntityId = Field(validation_alias=AliasChoices("number", "table_number"))
    seats: int = Field(default=0, ge=0)

    @property
    def label(self) -> str:
        """Display label, T-05 style."""
        digits = "".join(ch for ch in str(self.number) if ch.isdigit())
        return f"T-{digits.zfill(2)}" if digits else f"T-{self.number}"


# =============================================================================
# OFFLINE QUEUE
# =============================================================================

class QueuedMutation(BaseModel):
    """A mutation the backend has not confirmed yet."""

    id: str = Field(default_factory=lambda: f"queue-{uuid.uuid4().hex[:12]}")
    kind: MutationKind
    entity_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None
    retry_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
