import pytest

from kot_engine.exceptions import InvalidTransition, RoleNotPermitted
from kot_engine.models import Bill, Order, OrderStatus, PaymentStatus, Role, Table, TableStatus
from kot_engine.state_machine import (
    allowed_targets,
    can_transition,
    next_status,
    project_table_statuses,
    transition,
    validate_transition,
)

LEGAL = {
    (OrderStatus.PENDING, OrderStatus.PREPARING),
    (OrderStatus.PREPARING, OrderStatus.READY),
    (OrderStatus.READY, OrderStatus.COMPLETED),
    (OrderStatus.PENDING, OrderStatus.VOIDED),
    (OrderStatus.PREPARING, OrderStatus.VOIDED),
    (OrderStatus.READY, OrderStatus.VOIDED),
}


def test_transition_matrix():
    for current in OrderStatus:
        for target in OrderStatus:
            assert can_transition(current, target) is ((current, target) in LEGAL), (current, target)


def test_illegal_transition_raises_and_leaves_order_untouched(make_order):
    order = make_order(1, status=OrderStatus.PENDING)

    with pytest.raises(InvalidTransition):
        transition(order, OrderStatus.COMPLETED)

    assert order.status is OrderStatus.PENDING


def test_forward_walk():
    assert next_status(OrderStatus.PENDING) is OrderStatus.PREPARING
    assert next_status(OrderStatus.READY) is OrderStatus.COMPLETED
    assert next_status(OrderStatus.COMPLETED) is None
    assert next_status(OrderStatus.VOIDED) is None


def test_terminal_states_have_no_exits():
    for current in (OrderStatus.COMPLETED, OrderStatus.VOIDED):
        assert allowed_targets(current) == frozenset()


def test_void_requires_non_blank_reason(make_order):
    order = make_order(2, status=OrderStatus.PREPARING)

    for reason in (None, "", "   "):
        with pytest.raises(InvalidTransition):
            transition(order, OrderStatus.VOIDED, reason=reason)

    voided = transition(order, OrderStatus.VOIDED, reason="  customer left  ")
    assert voided.status is OrderStatus.VOIDED
    assert voided.void_reason == "customer left"


def test_completed_order_cannot_be_voided():
    with pytest.raises(InvalidTransition):
        validate_transition(OrderStatus.COMPLETED, OrderStatus.VOIDED, reason="refund")


def test_kitchen_role_drives_kitchen_edges_only():
    validate_transition(OrderStatus.PENDING, OrderStatus.PREPARING, role=Role.KITCHEN)
    validate_transition(OrderStatus.PREPARING, OrderStatus.READY, role=Role.KITCHEN)

    with pytest.raises(RoleNotPermitted):
        validate_transition(OrderStatus.READY, OrderStatus.COMPLETED, role=Role.KITCHEN)
    with pytest.raises(RoleNotPermitted):
        validate_transition(OrderStatus.PENDING, OrderStatus.VOIDED, role=Role.KITCHEN, reason="burnt")


def test_waiter_completes_and_voids_but_does_not_cook():
    validate_transition(OrderStatus.READY, OrderStatus.COMPLETED, role=Role.WAITER)
    validate_transition(OrderStatus.PENDING, OrderStatus.VOIDED, role=Role.WAITER, reason="wrong table")

    with pytest.raises(RoleNotPermitted) as exc_info:
        validate_transition(OrderStatus.PENDING, OrderStatus.PREPARING, role=Role.WAITER, entity_id=9)
    assert exc_info.value.entity_id == 9


def test_supervisors_drive_every_edge():
    for role in (Role.ADMIN, Role.MANAGER):
        for current, target in LEGAL:
            validate_transition(current, target, role=role, reason="supervisor")


def test_role_not_permitted_is_an_invalid_transition():
    with pytest.raises(InvalidTransition):
        validate_transition(OrderStatus.READY, OrderStatus.COMPLETED, role=Role.KITCHEN)


def test_allowed_targets_by_role():
    assert allowed_targets(OrderStatus.PENDING, Role.KITCHEN) == {OrderStatus.PREPARING}
    assert allowed_targets(OrderStatus.READY, Role.WAITER) == {OrderStatus.COMPLETED, OrderStatus.VOIDED}
    assert allowed_targets(OrderStatus.READY) == {OrderStatus.COMPLETED, OrderStatus.VOIDED}


def test_cancelled_wire_value_maps_to_voided():
    assert OrderStatus("cancelled") is OrderStatus.VOIDED
    assert OrderStatus("CANCELED") is OrderStatus.VOIDED
    assert OrderStatus.VOIDED.wire_value == "cancelled"
    assert OrderStatus.READY.wire_value == "ready"


# =============================================================================
# TABLE PROJECTION
# =============================================================================

def _tables():
    return [Table(id="t1", number=1, seats=4), Table(id="t2", number=2, seats=2), Table(id="t3", number=3)]


def test_projection_follows_order_lifecycle(make_order):
    tables = _tables()
    order = make_order("A", status=OrderStatus.PENDING, table_id="t1")

    statuses = project_table_statuses(tables, [order])
    assert statuses == {"t1": TableStatus.OCCUPIED, "t2": TableStatus.AVAILABLE, "t3": TableStatus.AVAILABLE}

    statuses = project_table_statuses(tables, [order.with_status(OrderStatus.PREPARING)])
    assert statuses["t1"] is TableStatus.OCCUPIED

    statuses = project_table_statuses(tables, [order.with_status(OrderStatus.READY)])
    assert statuses["t1"] is TableStatus.READY


def test_completed_order_without_bill_tracking_stays_served(make_order):
    order = make_order("A", status=OrderStatus.COMPLETED, table_id="t1")

    assert project_table_statuses(_tables(), [order])["t1"] is TableStatus.SERVED


def test_completed_order_frees_table_once_bill_settles(make_order):
    order = make_order("A", status=OrderStatus.COMPLETED, table_id="t1")
    draft = Bill(id="b1", order_id="A")

    assert project_table_statuses(_tables(), [order], [draft])["t1"] is TableStatus.SERVED

    paid = draft.model_copy(update={"payment_status": PaymentStatus.PAID})
    assert project_table_statuses(_tables(), [order], [paid])["t1"] is TableStatus.AVAILABLE

    # Bill gone from the draft listing.
    assert project_table_statuses(_tables(), [order], [])["t1"] is TableStatus.AVAILABLE


def test_voided_order_never_occupies(make_order):
    order = make_order("A", status=OrderStatus.VOIDED, table_id="t2", void_reason="dup")

    assert project_table_statuses(_tables(), [order])["t2"] is TableStatus.AVAILABLE


def test_latest_active_order_wins(make_order):
    older = make_order("A", status=OrderStatus.READY, table_id="t1", minutes_ago=30)
    newer = make_order("B", status=OrderStatus.PENDING, table_id="t1", minutes_ago=2)
    served = make_order("C", status=OrderStatus.COMPLETED, table_id="t1", minutes_ago=1)

    assert project_table_statuses(_tables(), [older, newer, served])["t1"] is TableStatus.OCCUPIED


def test_orders_match_tables_by_number_when_id_unknown(make_order):
    order = Order(id=5, kot_number="KOT-5", table_number=3, status=OrderStatus.READY)
    takeaway = make_order(6, status=OrderStatus.PENDING)

    statuses = project_table_statuses(_tables(), [order, takeaway])

    assert statuses["t3"] is TableStatus.READY
    assert set(statuses.values()) == {TableStatus.READY, TableStatus.AVAILABLE}
