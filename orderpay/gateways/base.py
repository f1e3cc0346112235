"""Steps every gateway adapter shares: session validation, unit conversion,
outbound HTTP and the two-phase refund."""

from dataclasses import replace
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable

import httpx
import structlog
from sqlalchemy.orm import Session

from orderpay import ledger
from orderpay.database import run_in_transaction
from orderpay.errors import (
    InvalidArgument,
    InvalidState,
    NotFound,
    OrderPayError,
    UpstreamFailure,
)
from orderpay.models import Order, OrderPayment, OrderStatus, PaymentMethod, PaymentStatus

logger = structlog.get_logger(__name__)

MINOR_UNITS_PER_MAJOR = 100
CENT = Decimal("0.01")


def to_minor_units(amount: Decimal) -> int:
    """Ledger amount (e.g. 145000.00 UZS) to minor units (14500000 tiyin)."""
    minor = (Decimal(amount) * MINOR_UNITS_PER_MAJOR).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(minor)


def from_minor_units(value: Any) -> Decimal:
    """Provider minor units back to a ledger amount; fractions are rejected."""
    try:
        minor = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidArgument(f"Invalid amount: {value!r}")
    if not minor.is_finite() or minor != minor.to_integral_value():
        raise InvalidArgument(f"Amount {value!r} is not a whole number of minor units")
    return (minor / MINOR_UNITS_PER_MAJOR).quantize(CENT)


def to_millis(moment: datetime | None) -> int:
    if moment is None:
        return 0
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def open_session_attempt(
    db: Session, order_id: int, method: PaymentMethod, amount: Decimal
) -> OrderPayment:
    """Validate a CreatePayment request and open its ledger attempt."""
    amount = Decimal(amount)
    if amount <= 0:
        raise InvalidArgument("Amount must be greater than 0")

    def _open():
        order = db.get(Order, order_id)
        if order is None:
            raise NotFound("Order not found")
        if order.payment_status == PaymentStatus.PAID:
            raise InvalidState(f"Order {order_id} is already paid")
        if order.status == OrderStatus.CANCELLED:
            raise InvalidState(f"Order {order_id} is cancelled")
        return ledger.open_attempt(db, order_id, method, amount)

    return run_in_transaction(db, _open)


def mark_failed(db: Session, payment_id: int, raw_response: dict | None) -> None:
    run_in_transaction(
        db,
        lambda: ledger.record_result(db, payment_id, PaymentStatus.FAILED, raw_response=raw_response),
    )


def request(client: httpx.Client, verb: str, url: str, **kwargs) -> dict:
    """Call a provider endpoint, mapping transport and 5xx errors to UpstreamFailure."""
    try:
        response = client.request(verb, url, **kwargs)
    except httpx.RequestError as exc:
        logger.error("gateway.unreachable", url=url, error=str(exc))
        raise UpstreamFailure(f"Payment provider unavailable: {exc}") from exc

    if response.status_code >= 400:
        logger.error("gateway.http_error", url=url, status=response.status_code, body=response.text)
        raise UpstreamFailure(f"Payment provider answered HTTP {response.status_code}")
    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamFailure("Payment provider returned an invalid response") from exc


def two_phase_refund(
    db: Session,
    method: PaymentMethod,
    payment_id: int,
    amount: Decimal | None,
    call_provider: Callable[[OrderPayment, Decimal], str | None],
    allow_partial: bool = True,
) -> ledger.RefundResult:
    """Mark the ledger refunded, then ask the provider; revert on failure.

    The provider call runs outside any transaction so no row lock is held
    while the network request is in flight.
    """

    def _reserve():
        payment = ledger.get_payment(db, payment_id)
        if payment.payment_method != method:
            raise InvalidArgument(
                f"Payment {payment_id} was made with {payment.payment_method.value}, not {method.value}"
            )
        if not allow_partial and amount is not None and Decimal(amount) != Decimal(payment.amount):
            raise InvalidArgument(f"{method.value} supports full refunds only")
        return ledger.refund(db, payment_id, amount)

    result = run_in_transaction(db, _reserve)
    payment = ledger.get_payment(db, payment_id)

    try:
        provider_refund_id = call_provider(payment, result.amount)
    except Exception as exc:
        run_in_transaction(db, lambda: ledger.revert_refund(db, payment_id))
        logger.error(
            "refund.provider_failed",
            payment_id=payment_id,
            method=method.value,
            error=str(exc),
        )
        if isinstance(exc, OrderPayError):
            raise
        raise UpstreamFailure(f"{method.value} refund failed: {exc}") from exc

    logger.info(
        "refund.completed",
        payment_id=payment_id,
        method=method.value,
        amount=str(result.amount),
        provider_refund_id=provider_refund_id,
    )
    return replace(result, provider_refund_id=provider_refund_id)
