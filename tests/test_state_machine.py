import pytest

from orderpay import events, state_machine
from orderpay.errors import InvalidTransition
from orderpay.models import OrderStatus, OrderTracking


def advance(db, order_id, *statuses):
    for status in statuses:
        state_machine.transition(db, order_id, status)


def statuses(db, order_id):
    return [t.status for t in db.query(OrderTracking).filter_by(order_id=order_id).order_by(OrderTracking.id)]


def test_happy_path_writes_tracking(db, example_order):
    advance(
        db,
        example_order.id,
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
    )
    assert example_order.status == OrderStatus.DELIVERED
    assert statuses(db, example_order.id) == [
        OrderStatus.PENDING,
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
    ]


@pytest.mark.parametrize("target", [s for s in OrderStatus if s != OrderStatus.DELIVERED])
def test_delivered_is_terminal(db, example_order, target):
    advance(
        db,
        example_order.id,
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
    )
    with pytest.raises(InvalidTransition):
        state_machine.transition(db, example_order.id, target)
    db.expire_all()
    assert example_order.status == OrderStatus.DELIVERED
    assert len(statuses(db, example_order.id)) == 5


def test_pending_cannot_jump_to_delivered(db, example_order):
    with pytest.raises(InvalidTransition, match="Cannot change status from PENDING to DELIVERED"):
        state_machine.transition(db, example_order.id, OrderStatus.DELIVERED)


@pytest.mark.parametrize("path", [[], [OrderStatus.CONFIRMED], [OrderStatus.CONFIRMED, OrderStatus.PROCESSING]])
def test_refunded_is_never_a_transition_target(db, example_order, path):
    advance(db, example_order.id, *path)

    with pytest.raises(InvalidTransition):
        state_machine.transition(db, example_order.id, OrderStatus.REFUNDED)
    assert not any(OrderStatus.REFUNDED in targets for targets in state_machine.VALID_TRANSITIONS.values())


def test_shipped_order_cannot_be_cancelled(db, example_order):
    advance(db, example_order.id, OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED)
    with pytest.raises(InvalidTransition):
        state_machine.cancel(db, example_order.id)


def test_delivered_order_cannot_be_cancelled(db, example_order):
    advance(
        db,
        example_order.id,
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
    )
    with pytest.raises(InvalidTransition, match="Cannot cancel delivered order"):
        state_machine.cancel(db, example_order.id, reason="changed my mind")


def test_cancel_appends_reason_to_notes(db, make_order):
    order = make_order(notes="Leave at the door")
    state_machine.cancel(db, order.id, reason="Ordered twice")

    assert order.status == OrderStatus.CANCELLED
    assert order.notes == "Leave at the door\nCancellation reason: Ordered twice"
    assert order.tracking[-1].description == "Ordered twice"

    with pytest.raises(InvalidTransition, match="already cancelled"):
        state_machine.cancel(db, order.id, reason="again")
    db.expire_all()
    assert order.notes == "Leave at the door\nCancellation reason: Ordered twice"


def test_transition_reason_is_appended_never_overwritten(db, example_order):
    state_machine.transition(db, example_order.id, OrderStatus.CONFIRMED, reason="Manual review")
    state_machine.transition(db, example_order.id, OrderStatus.PROCESSING, reason="Picked")

    lines = example_order.notes.splitlines()
    assert len(lines) == 2
    assert lines[0].endswith("Status changed to CONFIRMED: Manual review")
    assert lines[1].endswith("Status changed to PROCESSING: Picked")


def test_add_tracking_same_status_is_informational(db, example_order, published):
    advance(db, example_order.id, OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED)
    published.clear()

    entry = state_machine.add_tracking(
        db, example_order.id, OrderStatus.SHIPPED, description="Arrived at hub", location="Tashkent"
    )

    assert entry.location == "Tashkent"
    assert example_order.status == OrderStatus.SHIPPED
    assert published == []


def test_add_tracking_new_status_transitions(db, example_order, published):
    state_machine.add_tracking(db, example_order.id, OrderStatus.CONFIRMED, description="Checked")

    assert example_order.status == OrderStatus.CONFIRMED
    topic, value = published[0]
    assert topic == events.ORDER_TOPIC
    assert value["previous_status"] == "PENDING"
    assert value["status"] == "CONFIRMED"

    with pytest.raises(InvalidTransition):
        state_machine.add_tracking(db, example_order.id, OrderStatus.DELIVERED)
