"""
Order State Machine

    pending -> preparing -> ready -> completed
        \\          \\          \\
         `----------`----------`--> voided   (reason required)

Kitchen staff drive pending -> preparing -> ready, waiters drive
ready -> completed, admins and managers may drive any edge. Anything
else raises InvalidTransition and leaves the order untouched.

Table status is never stored. project_table_statuses() derives it from
the current order set on every reconciliation pass.
"""

import logging
from typing import Iterable, Optional

from kot_engine.exceptions import InvalidTransition, RoleNotPermitted
from kot_engine.models import (
    ACTIVE_STATUSES,
    Bill,
    EntityId,
    Order,
    OrderStatus,
    Role,
    Table,
    TableStatus,
)

logger = logging.getLogger(__name__)


FORWARD_TRANSITIONS: dict[OrderStatus, OrderStatus] = {
    OrderStatus.PENDING: OrderStatus.PREPARING,
    OrderStatus.PREPARING: OrderStatus.READY,
    OrderStatus.READY: OrderStatus.COMPLETED,
}

ROLE_EDGES: dict[Role, frozenset[tuple[OrderStatus, OrderStatus]]] = {
    Role.KITCHEN: frozenset({
        (OrderStatus.PENDING, OrderStatus.PREPARING),
        (OrderStatus.PREPARING, OrderStatus.READY),
    }),
    Role.WAITER: frozenset({
        (OrderStatus.READY, OrderStatus.COMPLETED),
    }),
}

SUPERVISOR_ROLES = frozenset({Role.ADMIN, Role.MANAGER})
VOID_ROLES = frozenset({Role.ADMIN, Role.MANAGER, Role.WAITER})

TABLE_STATUS_BY_ORDER: dict[OrderStatus, TableStatus] = {
    OrderStatus.PENDING: TableStatus.OCCUPIED,
    OrderStatus.PREPARING: TableStatus.OCCUPIED,
    OrderStatus.READY: TableStatus.READY,
    OrderStatus.COMPLETED: TableStatus.SERVED,
}


def next_status(current: OrderStatus) -> Optional[OrderStatus]:
    """The single forward step from `current`, or None when terminal."""
    return FORWARD_TRANSITIONS.get(current)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Whether target is reachable from current in one step, ignoring roles."""
    if target is OrderStatus.VOIDED:
        return current in ACTIVE_STATUSES
    return FORWARD_TRANSITIONS.get(current) is target


def role_may_drive(role: Role, current: OrderStatus, target: OrderStatus) -> bool:
    if role in SUPERVISOR_ROLES:
        return True
    if target is OrderStatus.VOIDED:
        return role in VOID_ROLES
    return (current, target) in ROLE_EDGES.get(role, frozenset())


def allowed_targets(current: OrderStatus, role: Optional[Role] = None) -> frozenset[OrderStatus]:
    """All statuses an actor with `role` may move the order to next."""
    targets = {
        target for target in OrderStatus
        if can_transition(current, target)
    }
    if role is not None:
        targets = {t for t in targets if role_may_drive(role, current, t)}
    return frozenset(targets)


def validate_transition(
    current: OrderStatus,
    target: OrderStatus,
    role: Optional[Role] = None,
    reason: Optional[str] = None,
    entity_id: Optional[EntityId] = None,
) -> None:
    """
    Check a requested status change.

    Args:
        current: Status the order is in now
        target: Requested status
        role: Actor role; None skips the role check (backend-side validation)
        reason: Required and non-blank when target is voided
        entity_id: Order id, attached to the raised error

    Raises:
        InvalidTransition: Edge not in the machine, or void without reason
        RoleNotPermitted: Edge exists but the role may not drive it
    """
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Cannot move order from {current.value} to {target.value}",
            entity_id=entity_id,
        )
    if target is OrderStatus.VOIDED and not (reason and reason.strip()):
        raise InvalidTransition("Voiding an order requires a reason", entity_id=entity_id)
    if role is not None and not role_may_drive(role, current, target):
        raise RoleNotPermitted(
            f"Role {role.value} may not move order from {current.value} to {target.value}",
            entity_id=entity_id,
        )


def transition(
    order: Order,
    target: OrderStatus,
    role: Optional[Role] = None,
    reason: Optional[str] = None,
) -> Order:
    """Return a copy of `order` in `target` status, or raise without changing anything."""
    validate_transition(order.status, target, role=role, reason=reason, entity_id=order.id)
    logger.debug(f"Order {order.kot_number}: {order.status.value} -> {target.value}")
    return order.with_status(target, reason=reason.strip() if reason else None)


# =============================================================================
# TABLE PROJECTION
# =============================================================================

def _occupies_table(order: Order, open_bill_order_ids: Optional[set[str]]) -> bool:
    if order.status is OrderStatus.VOIDED:
        return False
    if order.status is OrderStatus.COMPLETED:
        if open_bill_order_ids is None:
            return True
        return str(order.id) in open_bill_order_ids
    return True


def project_table_statuses(
    tables: Iterable[Table],
    orders: Iterable[Order],
    bills: Optional[Iterable[Bill]] = None,
) -> dict[str, TableStatus]:
    """
    Derive every table's board status from the order set.

    A table with an active order (pending, preparing, ready) takes the
    status of its most recent active order. A completed order keeps its
    table Served while a draft bill for it is open; once the bill is paid
    or cancelled (or no longer listed) the order stops touching the table.
    Voided orders never occupy a table.

    Args:
        tables: Known tables
        orders: Authoritative order set from the latest poll
        bills: Known bills; None means bills are not tracked and
            completed orders stay Served

    Returns:
        Mapping of str(table.id) -> TableStatus
    """
    open_bills = (
        {str(bill.order_id) for bill in bills if not bill.is_settled}
        if bills is not None
        else None
    )

    tables = list(tables)
    id_by_number = {str(table.number): str(table.id) for table in tables}
    known_ids = {str(table.id) for table in tables}

    touching: dict[str, list[Order]] = {}
    for order in orders:
        if not _occupies_table(order, open_bills):
            continue
        key = None
        if order.table_id is not None and str(order.table_id) in known_ids:
            key = str(order.table_id)
        elif order.table_number is not None:
            key = id_by_number.get(str(order.table_number))
        if key is not None:
            touching.setdefault(key, []).append(order)

    statuses: dict[str, TableStatus] = {}
    for table in tables:
        key = str(table.id)
        candidates = touching.get(key, [])
        active = [o for o in candidates if o.is_active]
        if active:
            latest = max(active, key=lambda o: o.created_at)
            statuses[key] = TABLE_STATUS_BY_ORDER[latest.status]
        elif candidates:
            statuses[key] = TableStatus.SERVED
        else:
            statuses[key] = TableStatus.AVAILABLE
    return statuses
