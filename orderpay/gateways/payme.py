"""Payme gateway adapter (Merchant API, JSON-RPC 2.0).

Payme drives the whole payment through a single merchant endpoint; the
``method`` field selects the operation. Requests authenticate with HTTP
Basic credentials ``Paycom:<merchant key>``. Amounts are in tiyin.
"""

import base64
import hmac
from decimal import Decimal
from typing import Any, Mapping

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from orderpay import ledger
from orderpay.config import settings
from orderpay.errors import Conflict, InvalidArgument, InvalidState, UpstreamFailure
from orderpay.gateways import base
from orderpay.gateways.port import (
    CallbackOutcome,
    CallbackRequest,
    GatewayAdapter,
    PaymentSession,
)
from orderpay.models import (
    CAPTURED_STATUSES,
    Order,
    OrderPayment,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)

logger = structlog.get_logger(__name__)

STATE_CREATED = 1
STATE_COMPLETED = 2
STATE_CANCELLED = -1
STATE_CANCELLED_AFTER_COMPLETE = -2

STATES = {
    PaymentStatus.PENDING: STATE_CREATED,
    PaymentStatus.PAID: STATE_COMPLETED,
    PaymentStatus.FAILED: STATE_CANCELLED,
    PaymentStatus.REFUNDED: STATE_CANCELLED_AFTER_COMPLETE,
    PaymentStatus.PARTIALLY_REFUNDED: STATE_CANCELLED_AFTER_COMPLETE,
}


def _message(en: str, ru: str, uz: str) -> dict[str, str]:
    return {"ru": ru, "uz": uz, "en": en}


PARSE_ERROR = (-32700, _message("Parse error", "Ошибка разбора JSON", "JSON tahlil xatosi"))
INVALID_REQUEST = (-32600, _message("Invalid request", "Неверный запрос", "Noto'g'ri so'rov"))
METHOD_NOT_FOUND = (-32601, _message("Method not found", "Метод не найден", "Metod topilmadi"))
INSUFFICIENT_PRIVILEGES = (
    -32504,
    _message(
        "Insufficient privileges to perform this method",
        "Недостаточно привилегий для выполнения метода",
        "Metodni bajarish uchun imtiyozlar yetarli emas",
    ),
)
INVALID_AMOUNT = (-31001, _message("Incorrect amount", "Неверная сумма", "Noto'g'ri summa"))
TRANSACTION_NOT_FOUND = (
    -31003,
    _message("Transaction not found", "Транзакция не найдена", "Tranzaksiya topilmadi"),
)
UNABLE_TO_CANCEL = (
    -31007,
    _message(
        "Unable to cancel transaction. Order is fulfilled",
        "Невозможно отменить транзакцию. Заказ выполнен",
        "Tranzaksiyani bekor qilib bo'lmaydi. Buyurtma bajarilgan",
    ),
)
UNABLE_TO_PERFORM = (
    -31008,
    _message("Unable to perform operation", "Невозможно выполнить операцию", "Amalni bajarib bo'lmaydi"),
)
ORDER_NOT_FOUND = (-31050, _message("Order not found", "Заказ не найден", "Buyurtma topilmadi"))
ORDER_BUSY = (
    -31099,
    _message(
        "Order has another pending transaction",
        "Заказ ожидает оплаты по другой транзакции",
        "Buyurtma boshqa tranzaksiya orqali to'lanmoqda",
    ),
)


class PaymeError(Exception):
    def __init__(self, error: tuple[int, dict], data: str | None = None):
        super().__init__(error[1]["en"])
        self.code, self.message = error
        self.data = data


class PaymeGateway(GatewayAdapter):
    method = PaymentMethod.PAYME
    supports_partial_refund = False

    def __init__(
        self,
        merchant_id: str,
        secret_key: str,
        checkout_url: str,
        api_url: str,
        http_client: httpx.Client | None = None,
    ):
        self.merchant_id = merchant_id
        self.secret_key = secret_key
        self.checkout_url = checkout_url.rstrip("/")
        self.api_url = api_url
        self.http = http_client or httpx.Client(timeout=settings.HTTP_TIMEOUT)
        self._handlers = {
            "CheckPerformTransaction": self._check_perform,
            "CreateTransaction": self._create_transaction,
            "PerformTransaction": self._perform_transaction,
            "CancelTransaction": self._cancel_transaction,
            "CheckTransaction": self._check_transaction,
            "GetStatement": self._get_statement,
        }

    @classmethod
    def from_settings(cls) -> "PaymeGateway":
        return cls(
            merchant_id=settings.PAYME_MERCHANT_ID,
            secret_key=settings.PAYME_SECRET_KEY,
            checkout_url=settings.PAYME_CHECKOUT_URL,
            api_url=settings.PAYME_API_URL,
        )

    def amount_to_wire(self, amount: Decimal) -> int:
        return base.to_minor_units(amount)

    def amount_from_wire(self, value: Any) -> Decimal:
        return base.from_minor_units(value)

    def is_authorized(self, headers: Mapping[str, str]) -> bool:
        header = headers.get("authorization") or headers.get("Authorization") or ""
        scheme, _, encoded = header.partition(" ")
        if scheme.lower() != "basic" or not encoded:
            return False
        try:
            decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return False
        login, _, password = decoded.partition(":")
        return login == "Paycom" and hmac.compare_digest(password, self.secret_key)

    def create_payment(
        self,
        db: Session,
        order_id: int,
        amount: Decimal,
        return_url: str | None = None,
        cancel_url: str | None = None,
        description: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> PaymentSession:
        payment = base.open_session_attempt(db, order_id, self.method, amount)
        params = ";".join(
            [
                f"m={self.merchant_id}",
                f"ac.order_id={order_id}",
                f"a={self.amount_to_wire(payment.amount)}",
                f"c={return_url or settings.FRONTEND_URL + '/payment/success'}",
            ]
        )
        encoded = base64.b64encode(params.encode("utf-8")).decode("ascii")
        logger.info("payme.payment_created", payment_id=payment.id, order_id=order_id)
        return PaymentSession(
            payment_id=payment.id,
            status=PaymentStatus.PENDING,
            payment_url=f"{self.checkout_url}/{encoded}",
        )

    def handle_callback(self, db: Session, request: CallbackRequest) -> CallbackOutcome:
        """Dispatch one JSON-RPC call from Payme.

        Errors are answered as JSON-RPC error objects, never raised, and the
        outcome is marked rejected so whatever the handler touched is rolled
        back. CancelTransaction on a captured payment refunds it in the ledger
        only; Payme has already reversed the charge on its side.
        """
        payload = request.payload
        if not isinstance(payload, dict):
            return self._error(None, PaymeError(PARSE_ERROR))
        request_id = payload.get("id")

        if not self.is_authorized(request.headers):
            return self._error(request_id, PaymeError(INSUFFICIENT_PRIVILEGES))

        method = payload.get("method")
        params = payload.get("params")
        if not isinstance(method, str) or not isinstance(params, dict):
            return self._error(request_id, PaymeError(INVALID_REQUEST))

        handler = self._handlers.get(method)
        if handler is None:
            return self._error(request_id, PaymeError(METHOD_NOT_FOUND, data=method))

        try:
            result, payment, changed = handler(db, params)
        except PaymeError as exc:
            return self._error(request_id, exc)
        except (Conflict, InvalidState):
            return self._error(request_id, PaymeError(UNABLE_TO_PERFORM))
        except InvalidArgument:
            return self._error(request_id, PaymeError(INVALID_AMOUNT, data="amount"))

        return CallbackOutcome(
            ack={"jsonrpc": "2.0", "id": request_id, "result": result},
            payment_id=payment.id if payment else None,
            status=payment.status if payment else None,
            changed=changed,
        )

    def _error(self, request_id, exc: PaymeError) -> CallbackOutcome:
        logger.warning("payme.callback_rejected", code=exc.code, data=exc.data)
        error = {"code": exc.code, "message": exc.message}
        if exc.data is not None:
            error["data"] = exc.data
        return CallbackOutcome(
            ack={"jsonrpc": "2.0", "id": request_id, "error": error},
            rejected=True,
        )

    def _order_from_account(self, db: Session, params: dict) -> Order:
        account = params.get("account")
        if not isinstance(account, dict):
            raise PaymeError(ORDER_NOT_FOUND, data="order_id")
        try:
            order_id = int(account.get("order_id"))
        except (TypeError, ValueError):
            raise PaymeError(ORDER_NOT_FOUND, data="order_id")
        order = db.get(Order, order_id)
        if order is None:
            raise PaymeError(ORDER_NOT_FOUND, data="order_id")
        return order

    def _pending_attempts(self, db: Session, order_id: int) -> list[OrderPayment]:
        stmt = select(OrderPayment).where(
            OrderPayment.order_id == order_id,
            OrderPayment.payment_method == self.method,
            OrderPayment.status == PaymentStatus.PENDING,
        )
        return list(db.execute(stmt).scalars())

    def _expected_amount(self, db: Session, order: Order) -> Decimal:
        for attempt in self._pending_attempts(db, order.id):
            if attempt.external_transaction_id is None:
                return Decimal(attempt.amount)
        return Decimal(order.final_amount)

    def _wire_amount(self, params: dict) -> Decimal:
        if isinstance(params.get("amount"), (bool, dict, list)):
            raise PaymeError(INVALID_AMOUNT, data="amount")
        try:
            return self.amount_from_wire(params.get("amount"))
        except InvalidArgument:
            raise PaymeError(INVALID_AMOUNT, data="amount")

    def _check_perform(self, db: Session, params: dict):
        order = self._order_from_account(db, params)
        amount = self._wire_amount(params)
        if order.payment_status == PaymentStatus.PAID or ledger.captured_payment_for_order(db, order.id):
            raise PaymeError(UNABLE_TO_PERFORM)
        if order.status == OrderStatus.CANCELLED:
            raise PaymeError(UNABLE_TO_PERFORM)
        if amount != self._expected_amount(db, order):
            raise PaymeError(INVALID_AMOUNT, data="amount")
        return {"allow": True}, None, False

    def _transaction(self, db: Session, params: dict) -> OrderPayment:
        transaction_id = params.get("id")
        if not transaction_id:
            raise PaymeError(TRANSACTION_NOT_FOUND)
        payment = ledger.find_by_external_id(db, self.method, str(transaction_id))
        if payment is None:
            raise PaymeError(TRANSACTION_NOT_FOUND)
        return ledger.lock_payment(db, payment.id)

    def _created(self, payment: OrderPayment) -> dict:
        return {
            "create_time": base.to_millis(payment.created_at),
            "transaction": str(payment.id),
            "state": STATES[payment.status],
        }

    def _create_transaction(self, db: Session, params: dict):
        transaction_id = str(params.get("id") or "")
        if not transaction_id:
            raise PaymeError(INVALID_REQUEST)

        existing = ledger.find_by_external_id(db, self.method, transaction_id)
        if existing is not None:
            # Repeated CreateTransaction for the same Payme id returns the same row.
            if existing.status != PaymentStatus.PENDING:
                raise PaymeError(UNABLE_TO_PERFORM)
            return self._created(existing), existing, False

        self._check_perform(db, params)
        order = self._order_from_account(db, params)
        amount = self._wire_amount(params)

        pending = self._pending_attempts(db, order.id)
        if any(p.external_transaction_id for p in pending):
            raise PaymeError(ORDER_BUSY, data="order_id")
        unbound = [p for p in pending if p.external_transaction_id is None]
        payment = unbound[0] if unbound else ledger.open_attempt(db, order.id, self.method, amount)

        ledger.record_result(
            db,
            payment.id,
            PaymentStatus.PENDING,
            external_tx_id=transaction_id,
            raw_response=dict(params),
        )
        return self._created(payment), payment, False

    def _perform_transaction(self, db: Session, params: dict):
        payment = self._transaction(db, params)
        if payment.status == PaymentStatus.PENDING:
            if ledger.lock_order(db, payment.order_id).status == OrderStatus.CANCELLED:
                raise PaymeError(UNABLE_TO_PERFORM)
            changed = ledger.record_result(
                db, payment.id, PaymentStatus.PAID, raw_response=dict(params)
            )
        elif payment.status == PaymentStatus.PAID:
            changed = False
        else:
            raise PaymeError(UNABLE_TO_PERFORM)
        return (
            {
                "transaction": str(payment.id),
                "perform_time": base.to_millis(payment.completed_at),
                "state": STATE_COMPLETED,
            },
            payment,
            changed,
        )

    def _cancel_transaction(self, db: Session, params: dict):
        payment = self._transaction(db, params)
        raw = dict(params)
        changed = False

        if payment.status == PaymentStatus.PENDING:
            changed = ledger.record_result(db, payment.id, PaymentStatus.FAILED, raw_response=raw)
        elif payment.status == PaymentStatus.PAID:
            if payment.order.status in (OrderStatus.SHIPPED, OrderStatus.DELIVERED):
                raise PaymeError(UNABLE_TO_CANCEL)
            # Payme initiated the reversal, so no outbound refund call is made.
            ledger.refund(db, payment.id, raw_response=raw)
            changed = True

        cancelled_at = payment.refunded_at or payment.completed_at
        return (
            {
                "transaction": str(payment.id),
                "cancel_time": base.to_millis(cancelled_at),
                "state": STATES[payment.status],
            },
            payment,
            changed,
        )

    def _reason(self, payment: OrderPayment):
        if payment.status in (PaymentStatus.PENDING, PaymentStatus.PAID):
            return None
        return (payment.gateway_response or {}).get("reason")

    def _check_transaction(self, db: Session, params: dict):
        payment = self._transaction(db, params)
        return self._statement_entry(payment), payment, False

    def _statement_entry(self, payment):
        paid = payment.status in CAPTURED_STATUSES
        cancelled = payment.status in (
            PaymentStatus.FAILED,
            PaymentStatus.REFUNDED,
            PaymentStatus.PARTIALLY_REFUNDED,
        )
        return {
            "create_time": base.to_millis(payment.created_at),
            "perform_time": base.to_millis(payment.completed_at) if paid else 0,
            "cancel_time": (
                base.to_millis(payment.refunded_at or payment.completed_at) if cancelled else 0
            ),
            "transaction": str(payment.id),
            "state": STATES[payment.status],
            "reason": self._reason(payment),
        }

    def _get_statement(self, db: Session, params: dict):
        try:
            start, end = int(params["from"]), int(params["to"])
        except (KeyError, TypeError, ValueError):
            raise PaymeError(INVALID_REQUEST)
        stmt = (
            select(OrderPayment)
            .where(
                OrderPayment.payment_method == self.method,
                OrderPayment.external_transaction_id.is_not(None),
            )
            .order_by(OrderPayment.id)
        )
        transactions = []
        for payment in db.execute(stmt).scalars():
            created = base.to_millis(payment.created_at)
            if not start <= created <= end:
                continue
            entry = self._statement_entry(payment)
            entry.update(
                {
                    "id": payment.external_transaction_id,
                    "time": (payment.gateway_response or {}).get("time", created),
                    "amount": self.amount_to_wire(payment.amount),
                    "account": {"order_id": str(payment.order_id)},
                }
            )
            transactions.append(entry)
        return {"transactions": transactions}, None, False

    def _cancel_receipt(self, payment: OrderPayment, amount: Decimal) -> str | None:
        body = base.request(
            self.http,
            "POST",
            self.api_url,
            json={
                "id": payment.id,
                "method": "receipts.cancel",
                "params": {"id": payment.external_transaction_id},
            },
            headers={"X-Auth": f"{self.merchant_id}:{self.secret_key}"},
        )
        if "error" in body:
            error = body["error"] or {}
            raise UpstreamFailure(f"Payme refund failed: {error.get('message', error)}")
        receipt = (body.get("result") or {}).get("receipt") or {}
        return receipt.get("_id", payment.external_transaction_id)

    def refund(self, db: Session, payment_id: int, amount: Decimal | None = None):
        return base.two_phase_refund(
            db,
            self.method,
            payment_id,
            amount,
            self._cancel_receipt,
            allow_partial=self.supports_partial_refund,
        )
