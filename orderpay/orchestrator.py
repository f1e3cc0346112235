"""Payment orchestrator: the entry point the API layer calls for payments.

Picks the gateway adapter for a payment method, and is the only place a
payment outcome moves the order itself (PENDING -> CONFIRMED once a
capture is recorded).
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping

import structlog
from sqlalchemy.orm import Session

from orderpay import ledger, state_machine
from orderpay.database import run_in_transaction
from orderpay.errors import InvalidState, NotFound
from orderpay.gateways import get_gateway, resolve_method
from orderpay.gateways.port import CallbackOutcome, CallbackRequest
from orderpay.models import Order, OrderStatus, PaymentMethod, PaymentStatus

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PaymentResult:
    order_id: int
    payment_id: int
    method: PaymentMethod
    status: PaymentStatus
    amount: Decimal
    payment_url: str | None = None
    client_secret: str | None = None


class _Rejected(Exception):
    """Carries a provider reject ack out of the transaction so it rolls back."""

    def __init__(self, outcome: CallbackOutcome):
        super().__init__(outcome.ack)
        self.outcome = outcome


def _get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found")
    return order


def process_payment(
    db: Session,
    order_id: int,
    method: PaymentMethod | str,
    extra: Mapping[str, Any] | None = None,
) -> PaymentResult:
    method = resolve_method(method)
    order = _get_order(db, order_id)
    if order.payment_status == PaymentStatus.PAID:
        raise InvalidState("Order is already paid")
    if order.status == OrderStatus.CANCELLED:
        raise InvalidState("Cannot pay for a cancelled order")

    extra = dict(extra or {})
    amount = Decimal(order.final_amount)
    session = get_gateway(method).create_payment(
        db,
        order_id,
        amount,
        return_url=extra.get("return_url"),
        cancel_url=extra.get("cancel_url"),
        description=extra.get("description"),
        extra=extra,
    )
    # CARD settles synchronously; the ledger already moved
    # order.payment_status. Redirect methods stay PENDING until the callback.
    logger.info(
        "payment.processed",
        order_id=order_id,
        payment_id=session.payment_id,
        method=method.value,
        status=session.status.value,
    )
    return PaymentResult(
        order_id=order_id,
        payment_id=session.payment_id,
        method=method,
        status=session.status,
        amount=amount,
        payment_url=session.payment_url,
        client_secret=session.client_secret,
    )


def _confirm_order(db: Session, payment_id: int, method: PaymentMethod) -> None:
    payment = ledger.get_payment(db, payment_id)
    order = ledger.lock_order(db, payment.order_id)
    if order.status != OrderStatus.PENDING:
        if order.status == OrderStatus.CANCELLED:
            logger.warning("payment.captured_on_cancelled_order", order_id=order.id, payment_id=payment_id)
        return
    state_machine.transition(
        db,
        order.id,
        OrderStatus.CONFIRMED,
        reason="Payment confirmed",
        description=f"Payment confirmed via {method.value}",
    )


def handle_callback(db: Session, method: PaymentMethod | str, request: CallbackRequest) -> dict:
    """Apply a provider notification and return the ack the provider expects.

    Rejected callbacks roll back whatever the adapter touched. Stale writes
    from a concurrent duplicate are retried, and the retry sees the
    committed state, so a replay ends as a no-op.
    """
    method = resolve_method(method)
    adapter = get_gateway(method)

    def _apply() -> CallbackOutcome:
        outcome = adapter.handle_callback(db, request)
        if outcome.rejected:
            raise _Rejected(outcome)
        if outcome.status == PaymentStatus.PAID and outcome.payment_id is not None:
            _confirm_order(db, outcome.payment_id, method)
        return outcome

    try:
        outcome = run_in_transaction(db, _apply)
    except _Rejected as exc:
        return exc.outcome.ack

    logger.info(
        "payment.callback_applied",
        method=method.value,
        payment_id=outcome.payment_id,
        status=outcome.status.value if outcome.status else None,
        changed=outcome.changed,
    )
    return outcome.ack


def check_payment_status(db: Session, payment_id: int):
    """Ask the provider about a pending attempt whose callback never arrived.

    Settled attempts are returned as they are without a provider call.
    """
    payment = ledger.get_payment(db, payment_id)
    if payment.status != PaymentStatus.PENDING:
        return payment
    method = payment.payment_method
    check = get_gateway(method).check_status(db, payment_id)
    if check.status == PaymentStatus.PENDING:
        return payment

    def _apply() -> bool:
        changed = ledger.record_result(
            db,
            payment_id,
            check.status,
            external_tx_id=check.external_transaction_id,
            raw_response=check.raw_response,
        )
        if check.status == PaymentStatus.PAID:
            _confirm_order(db, payment_id, method)
        return changed

    changed = run_in_transaction(db, _apply)
    logger.info("payment.status_checked", payment_id=payment_id, status=check.status.value, changed=changed)
    return ledger.get_payment(db, payment_id)


def refund_payment(db: Session, payment_id: int, amount: Decimal | None = None) -> ledger.RefundResult:
    payment = ledger.get_payment(db, payment_id)
    result = get_gateway(payment.payment_method).refund(db, payment_id, amount)
    logger.info(
        "payment.refunded",
        payment_id=payment_id,
        amount=str(result.amount),
        status=result.status.value,
    )
    return result


def refund_order(db: Session, order_id: int, amount: Decimal | None = None) -> ledger.RefundResult:
    """Refund the captured payment of an order. The order status is left as is."""
    _get_order(db, order_id)
    payments = ledger.payments_for_order(db, order_id)
    if not payments:
        raise NotFound("No payments found for this order")
    paid = next((p for p in payments if p.status == PaymentStatus.PAID), None)
    if paid is None:
        raise InvalidState("Order has no captured payment to refund")
    return refund_payment(db, paid.id, amount)


def payment_status(db: Session, order_id: int) -> dict:
    order = _get_order(db, order_id)
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "payment_status": order.payment_status,
        "final_amount": order.final_amount,
        "payments": ledger.payments_for_order(db, order_id),
    }
