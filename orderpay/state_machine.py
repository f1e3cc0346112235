from datetime import datetime, timezone

import structlog
from sqlalchemy.orm import Session

from orderpay import events
from orderpay.database import unit_of_work
from orderpay.errors import InvalidTransition
from orderpay.ledger import lock_order
from orderpay.models import Order, OrderStatus, OrderTracking

logger = structlog.get_logger(__name__)

VALID_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


def append_note(order: Order, line: str) -> None:
    order.notes = f"{order.notes}\n{line}" if order.notes else line


def _record(
    db: Session,
    order: Order,
    target: OrderStatus,
    description: str | None,
    location: str | None,
) -> OrderTracking:
    previous = order.status
    order.status = target
    entry = OrderTracking(
        order_id=order.id,
        status=target,
        description=description,
        location=location,
    )
    db.add(entry)
    events.enqueue(
        db,
        events.ORDER_TOPIC,
        str(order.id),
        {
            "type": "order.status_changed",
            "order_id": order.id,
            "order_number": order.order_number,
            "user_id": order.user_id,
            "previous_status": previous.value,
            "status": target.value,
        },
    )
    logger.info(
        "order.status_changed",
        order_id=order.id,
        previous=previous.value,
        status=target.value,
    )
    return entry


def _transition(
    db: Session,
    order: Order,
    target: OrderStatus,
    reason: str | None,
    description: str | None,
    location: str | None,
) -> OrderTracking:
    current = order.status
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Cannot change status from {current.value} to {target.value}"
        )
    if reason:
        stamp = datetime.now(timezone.utc).isoformat()
        append_note(order, f"[{stamp}] Status changed to {target.value}: {reason}")
    return _record(db, order, target, description or reason, location)


def transition(
    db: Session,
    order_id: int,
    target: OrderStatus,
    reason: str | None = None,
    description: str | None = None,
    location: str | None = None,
) -> Order:
    target = OrderStatus(target)
    with unit_of_work(db):
        order = lock_order(db, order_id)
        _transition(db, order, target, reason, description, location)
    return order


def cancel(db: Session, order_id: int, reason: str | None = None) -> Order:
    with unit_of_work(db):
        order = lock_order(db, order_id)
        if order.status == OrderStatus.DELIVERED:
            raise InvalidTransition("Cannot cancel delivered order")
        if order.status == OrderStatus.CANCELLED:
            raise InvalidTransition("Order is already cancelled")
        if not can_transition(order.status, OrderStatus.CANCELLED):
            raise InvalidTransition(
                f"Cannot change status from {order.status.value} to {OrderStatus.CANCELLED.value}"
            )
        if reason:
            append_note(order, f"Cancellation reason: {reason}")
        _record(db, order, OrderStatus.CANCELLED, reason or "Order cancelled", None)
    return order


def add_tracking(
    db: Session,
    order_id: int,
    status: OrderStatus,
    description: str | None = None,
    location: str | None = None,
) -> OrderTracking:
    """Append a tracking entry, moving the order when ``status`` is new."""
    status = OrderStatus(status)
    with unit_of_work(db):
        order = lock_order(db, order_id)
        if status != order.status:
            entry = _transition(db, order, status, None, description, location)
        else:
            entry = OrderTracking(
                order_id=order.id,
                status=status,
                description=description,
                location=location,
            )
            db.add(entry)
    return entry
