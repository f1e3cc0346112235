"""Payment ledger: one row per attempted charge, at most one captured per order.

All mutations expect to run inside ``database.unit_of_work``. They lock the
owning order row and bump its version so that concurrent writers on the same
order (callbacks racing refunds, duplicate provider retries) are serialized.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from orderpay import events
from orderpay.errors import Conflict, InvalidArgument, InvalidState, NotFound
from orderpay.models import (
    CAPTURED_STATUSES,
    Order,
    OrderPayment,
    PaymentMethod,
    PaymentStatus,
    utcnow,
)

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = (
    PaymentStatus.PAID,
    PaymentStatus.FAILED,
    PaymentStatus.REFUNDED,
    PaymentStatus.PARTIALLY_REFUNDED,
)
REFUND_STATUSES = (PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED)


@dataclass(frozen=True)
class RefundResult:
    payment_id: int
    amount: Decimal
    status: PaymentStatus
    provider_refund_id: str | None = None


def lock_order(db: Session, order_id: int) -> Order:
    # Pending changes must reach the row before it is re-read over them.
    db.flush()
    stmt = (
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    order = db.execute(stmt).scalar_one_or_none()
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    return order


def get_payment(db: Session, payment_id: int) -> OrderPayment:
    payment = db.get(OrderPayment, payment_id)
    if payment is None:
        raise NotFound(f"Payment {payment_id} not found")
    return payment


def lock_payment(db: Session, payment_id: int) -> OrderPayment:
    """Lock the order first, then the payment, always in that order."""
    payment = get_payment(db, payment_id)
    lock_order(db, payment.order_id)
    stmt = (
        select(OrderPayment)
        .where(OrderPayment.id == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalar_one()


def payments_for_order(db: Session, order_id: int) -> list[OrderPayment]:
    stmt = select(OrderPayment).where(OrderPayment.order_id == order_id).order_by(OrderPayment.id)
    return list(db.execute(stmt).scalars())


def captured_payment_for_order(db: Session, order_id: int) -> OrderPayment | None:
    stmt = select(OrderPayment).where(
        OrderPayment.order_id == order_id,
        OrderPayment.status.in_(CAPTURED_STATUSES),
    )
    return db.execute(stmt).scalars().first()


def find_by_external_id(
    db: Session, method: PaymentMethod, external_tx_id: str
) -> OrderPayment | None:
    stmt = select(OrderPayment).where(
        OrderPayment.payment_method == method,
        OrderPayment.external_transaction_id == external_tx_id,
    )
    return db.execute(stmt).scalar_one_or_none()


def _touch(order):
    # bumps the version counter
    order.updated_at = utcnow()


def _payment_event(db: Session, payment: OrderPayment, previous: PaymentStatus | None) -> None:
    events.enqueue(
        db,
        events.PAYMENT_TOPIC,
        str(payment.order_id),
        {
            "type": "payment.status_changed",
            "order_id": payment.order_id,
            "payment_id": payment.id,
            "payment_method": payment.payment_method.value,
            "previous_status": previous.value if previous else None,
            "status": payment.status.value,
            "amount": str(payment.amount),
        },
    )


def open_attempt(
    db: Session, order_id: int, method: PaymentMethod, amount: Decimal
) -> OrderPayment:
    amount = Decimal(amount)
    if amount <= 0:
        raise InvalidArgument("Amount must be greater than 0")

    order = lock_order(db, order_id)
    if order.payment_status == PaymentStatus.PAID:
        raise Conflict(f"Order {order_id} is already paid")
    captured = captured_payment_for_order(db, order_id)
    if captured is not None:
        raise Conflict(
            f"Order {order_id} already has a captured payment {captured.id} ({captured.status.value})"
        )

    payment = OrderPayment(
        order_id=order_id,
        amount=amount,
        payment_method=method,
        status=PaymentStatus.PENDING,
    )
    db.add(payment)
    if order.payment_status == PaymentStatus.FAILED:
        order.payment_status = PaymentStatus.PENDING
    _touch(order)
    db.flush()

    logger.info(
        "payment.attempt_opened",
        payment_id=payment.id,
        order_id=order_id,
        method=method.value,
        amount=str(amount),
    )
    return payment


def attach_external_id(db: Session, payment: OrderPayment, external_tx_id: str) -> None:
    if payment.external_transaction_id == external_tx_id:
        return
    if payment.external_transaction_id is not None:
        raise Conflict(
            f"Payment {payment.id} is already bound to transaction {payment.external_transaction_id}"
        )
    other = find_by_external_id(db, payment.payment_method, external_tx_id)
    if other is not None and other.id != payment.id:
        raise Conflict(
            f"Transaction {external_tx_id} already belongs to payment {other.id}"
        )
    payment.external_transaction_id = external_tx_id


def record_result(
    db: Session,
    payment_id: int,
    status: PaymentStatus,
    external_tx_id: str | None = None,
    raw_response: dict | None = None,
) -> bool:
    """Apply a provider result to a ledger attempt.

    Returns True when the attempt changed state. Re-applying the status the
    attempt already holds is a no-op.
    """
    payment = lock_payment(db, payment_id)
    return _apply_status(db, payment, status, external_tx_id, raw_response)


def _apply_status(
    db: Session,
    payment: OrderPayment,
    status: PaymentStatus,
    external_tx_id: str | None = None,
    raw_response: dict | None = None,
) -> bool:
    payment_id = payment.id
    order = payment.order
    current = payment.status

    if status == current:
        if external_tx_id and payment.external_transaction_id not in (None, external_tx_id):
            raise Conflict(
                f"Payment {payment_id} already {current.value} under transaction "
                f"{payment.external_transaction_id}"
            )
        if status == PaymentStatus.PENDING:
            if external_tx_id:
                attach_external_id(db, payment, external_tx_id)
            if raw_response is not None:
                payment.gateway_response = raw_response
            _touch(order)
        logger.info("payment.result_replayed", payment_id=payment_id, status=status.value)
        return False

    if status == PaymentStatus.PENDING:
        raise InvalidState(f"Payment {payment_id} is already {current.value}")
    if current in TERMINAL_STATUSES:
        if not (current == PaymentStatus.PAID and status in REFUND_STATUSES):
            raise InvalidState(
                f"Payment {payment_id} is {current.value}, cannot become {status.value}"
            )

    if status == PaymentStatus.PAID:
        captured = captured_payment_for_order(db, payment.order_id)
        if captured is not None and captured.id != payment.id:
            raise Conflict(
                f"Order {payment.order_id} already captured by payment {captured.id}"
            )

    if external_tx_id:
        attach_external_id(db, payment, external_tx_id)
    if raw_response is not None:
        payment.gateway_response = raw_response

    payment.status = status
    now = utcnow()
    if status in REFUND_STATUSES:
        payment.refunded_at = now
        if payment.refunded_amount is None:
            payment.refunded_amount = payment.amount
    else:
        payment.completed_at = now
    _sync_order_payment_status(order, status)
    _touch(order)
    _payment_event(db, payment, current)

    logger.info(
        "payment.recorded",
        payment_id=payment_id,
        order_id=payment.order_id,
        previous=current.value,
        status=status.value,
    )
    return True


def _sync_order_payment_status(order: Order, status: PaymentStatus) -> None:
    if status == PaymentStatus.FAILED:
        # A failed retry never downgrades an order that holds a capture.
        if order.payment_status in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            order.payment_status = PaymentStatus.FAILED
        return
    order.payment_status = status


def refund(
    db: Session,
    payment_id: int,
    amount: Decimal | None = None,
    raw_response: dict | None = None,
) -> RefundResult:
    payment = lock_payment(db, payment_id)
    if payment.status != PaymentStatus.PAID:
        raise InvalidState(
            f"Payment {payment_id} is {payment.status.value}, only PAID payments can be refunded"
        )

    captured = Decimal(payment.amount)
    refund_amount = captured if amount is None else Decimal(amount)
    if refund_amount <= 0:
        raise InvalidArgument("Refund amount must be greater than 0")
    if refund_amount > captured:
        raise InvalidArgument(
            f"Refund amount {refund_amount} exceeds captured amount {captured}"
        )

    status = PaymentStatus.REFUNDED if refund_amount == captured else PaymentStatus.PARTIALLY_REFUNDED
    payment.refunded_amount = refund_amount
    _apply_status(db, payment, status, raw_response=raw_response)
    return RefundResult(payment_id=payment_id, amount=refund_amount, status=status)


def revert_refund(db: Session, payment_id: int) -> None:
    """Undo ``refund`` after the provider rejected it."""
    payment = lock_payment(db, payment_id)
    if payment.status not in REFUND_STATUSES:
        raise InvalidState(f"Payment {payment_id} has no refund to revert")

    previous = payment.status
    payment.status = PaymentStatus.PAID
    payment.refunded_amount = None
    payment.refunded_at = None
    payment.order.payment_status = PaymentStatus.PAID
    _touch(payment.order)
    _payment_event(db, payment, previous)
    logger.warning("payment.refund_reverted", payment_id=payment_id, previous=previous.value)


def payment_statistics(
    db: Session, date_from: datetime | None = None, date_to: datetime | None = None
) -> dict:
    filters = []
    if date_from is not None:
        filters.append(OrderPayment.created_at >= date_from)
    if date_to is not None:
        filters.append(OrderPayment.created_at <= date_to)

    def grouped(column):
        stmt = (
            select(column, func.count(OrderPayment.id), func.sum(OrderPayment.amount))
            .where(*filters)
            .group_by(column)
        )
        return {
            key.value: {"count": count, "total_amount": Decimal(total or 0)}
            for key, count, total in db.execute(stmt)
        }

    by_method = grouped(OrderPayment.payment_method)
    return {
        "total_count": sum(row["count"] for row in by_method.values()),
        "total_amount": sum((row["total_amount"] for row in by_method.values()), Decimal(0)),
        "by_method": by_method,
        "by_status": grouped(OrderPayment.status),
    }


def payment_history(db: Session, user_id: int, page: int = 1, limit: int = 10) -> dict:
    """Payments across all orders of one user, newest first."""
    owned = select(OrderPayment).join(Order, OrderPayment.order_id == Order.id).where(
        Order.user_id == user_id
    )
    total = db.execute(select(func.count()).select_from(owned.subquery())).scalar_one()
    payments = list(
        db.execute(
            owned.order_by(OrderPayment.created_at.desc(), OrderPayment.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars()
    )
    return {
        "payments": payments,
        "total": total,
        "page": page,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }
