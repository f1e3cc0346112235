"""Click gateway adapter.

Click calls the merchant twice per payment: ``action=0`` (prepare) asks
whether the payment may proceed and ``action=1`` (complete) reports the
outcome. Both requests are signed with an MD5 ``sign_string`` over the
request fields and the merchant's secret key. Amounts travel in minor
currency units.
"""

import hashlib
import hmac
import time
from decimal import Decimal
from typing import Any, Mapping
from urllib.parse import urlencode

import httpx
import structlog
from sqlalchemy.orm import Session

from orderpay import ledger
from orderpay.config import settings
from orderpay.errors import Conflict, InvalidArgument, InvalidState, NotFound, UpstreamFailure
from orderpay.gateways import base
from orderpay.gateways.port import (
    CallbackOutcome,
    CallbackRequest,
    GatewayAdapter,
    PaymentSession,
)
from orderpay.models import CAPTURED_STATUSES, OrderPayment, OrderStatus, PaymentMethod, PaymentStatus

logger = structlog.get_logger(__name__)

ACTION_PREPARE = "0"
ACTION_COMPLETE = "1"

SUCCESS = (0, "Success")
SIGN_CHECK_FAILED = (-1, "SIGN CHECK FAILED!")
INCORRECT_AMOUNT = (-2, "Incorrect parameter amount")
ACTION_NOT_FOUND = (-3, "Action not found")
ALREADY_PAID = (-4, "Already paid")
ORDER_NOT_FOUND = (-5, "User does not exist")
TRANSACTION_NOT_FOUND = (-6, "Transaction does not exist")
BAD_REQUEST = (-8, "Error in request from click")
TRANSACTION_CANCELLED = (-9, "Transaction cancelled")

REQUIRED_FIELDS = (
    "click_trans_id",
    "service_id",
    "merchant_trans_id",
    "amount",
    "action",
    "sign_time",
    "sign_string",
)


def _order_cancelled(db: Session, payment: OrderPayment) -> bool:
    return ledger.lock_order(db, payment.order_id).status == OrderStatus.CANCELLED


class ClickGateway(GatewayAdapter):
    method = PaymentMethod.CLICK

    def __init__(
        self,
        service_id: str,
        merchant_id: str,
        merchant_user_id: str,
        secret_key: str,
        checkout_url: str,
        api_url: str,
        http_client: httpx.Client | None = None,
    ):
        self.service_id = str(service_id)
        self.merchant_id = str(merchant_id)
        self.merchant_user_id = str(merchant_user_id)
        self.secret_key = secret_key
        self.checkout_url = checkout_url
        self.api_url = api_url.rstrip("/")
        self.http = http_client or httpx.Client(timeout=settings.HTTP_TIMEOUT)

    @classmethod
    def from_settings(cls) -> "ClickGateway":
        return cls(
            service_id=settings.CLICK_SERVICE_ID,
            merchant_id=settings.CLICK_MERCHANT_ID,
            merchant_user_id=settings.CLICK_MERCHANT_USER_ID,
            secret_key=settings.CLICK_SECRET_KEY,
            checkout_url=settings.CLICK_CHECKOUT_URL,
            api_url=settings.CLICK_API_URL,
        )

    def amount_to_wire(self, amount: Decimal) -> int:
        return base.to_minor_units(amount)

    def amount_from_wire(self, value: Any) -> Decimal:
        return base.from_minor_units(value)

    def sign(self, payload: Mapping[str, Any]) -> str:
        action = str(payload.get("action", ""))
        prepare_id = str(payload.get("merchant_prepare_id", "")) if action == ACTION_COMPLETE else ""
        raw = (
            f"{payload.get('click_trans_id', '')}"
            f"{payload.get('service_id', '')}"
            f"{self.secret_key}"
            f"{payload.get('merchant_trans_id', '')}"
            f"{prepare_id}"
            f"{payload.get('amount', '')}"
            f"{action}"
            f"{payload.get('sign_time', '')}"
        )
        return hashlib.md5(raw.encode("utf-8")).hexdigest()

    def verify_signature(self, payload: Mapping[str, Any]) -> bool:
        received = str(payload.get("sign_string", ""))
        return hmac.compare_digest(received, self.sign(payload))

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
        params = {
            "service_id": self.service_id,
            "merchant_id": self.merchant_id,
            "amount": self.amount_to_wire(payment.amount),
            "transaction_param": payment.id,
            "return_url": return_url or f"{settings.FRONTEND_URL}/payment/success",
        }
        logger.info("click.payment_created", payment_id=payment.id, order_id=order_id)
        return PaymentSession(
            payment_id=payment.id,
            status=PaymentStatus.PENDING,
            payment_url=f"{self.checkout_url}?{urlencode(params)}",
        )

    def _ack(self, payload, result, **extra):
        code, note = result
        ack = {
            "click_trans_id": payload.get("click_trans_id"),
            "merchant_trans_id": payload.get("merchant_trans_id"),
            "error": code,
            "error_note": note,
        }
        ack.update(extra)
        return ack

    def _reject(self, payload, result) -> CallbackOutcome:
        logger.warning("click.callback_rejected", error=result[0], note=result[1])
        return CallbackOutcome(ack=self._ack(payload, result), rejected=True)

    def handle_callback(self, db: Session, request: CallbackRequest) -> CallbackOutcome:
        payload = request.payload or {}
        action = str(payload.get("action", ""))
        required = REQUIRED_FIELDS + (("merchant_prepare_id",) if action == ACTION_COMPLETE else ())
        if any(payload.get(f) in (None, "") for f in required):
            return self._reject(payload, BAD_REQUEST)

        if not self.verify_signature(payload):
            return self._reject(payload, SIGN_CHECK_FAILED)

        if action not in (ACTION_PREPARE, ACTION_COMPLETE):
            return self._reject(payload, ACTION_NOT_FOUND)
        if str(payload["service_id"]) != self.service_id:
            return self._reject(payload, BAD_REQUEST)

        try:
            payment_id = int(payload["merchant_trans_id"])
        except (TypeError, ValueError):
            return self._reject(payload, ORDER_NOT_FOUND)
        try:
            amount = self.amount_from_wire(payload["amount"])
        except InvalidArgument:
            return self._reject(payload, INCORRECT_AMOUNT)

        payment = db.get(OrderPayment, payment_id)
        if payment is None or payment.payment_method != self.method:
            return self._reject(payload, ORDER_NOT_FOUND)
        payment = ledger.lock_payment(db, payment_id)
        if amount != Decimal(payment.amount):
            return self._reject(payload, INCORRECT_AMOUNT)

        try:
            if action == ACTION_PREPARE:
                return self._prepare(db, payload, payment)
            return self._complete(db, payload, payment)
        except Conflict:
            return self._reject(payload, ALREADY_PAID)
        except InvalidState:
            return self._reject(payload, TRANSACTION_CANCELLED)
        except NotFound:
            return self._reject(payload, ORDER_NOT_FOUND)

    def _prepare(self, db: Session, payload, payment: OrderPayment) -> CallbackOutcome:
        click_trans_id = str(payload["click_trans_id"])
        if payment.status in CAPTURED_STATUSES:
            if payment.external_transaction_id == click_trans_id:
                return CallbackOutcome(
                    ack=self._ack(payload, SUCCESS, merchant_prepare_id=payment.id),
                    payment_id=payment.id,
                    status=payment.status,
                )
            return self._reject(payload, ALREADY_PAID)
        if payment.status == PaymentStatus.FAILED or _order_cancelled(db, payment):
            return self._reject(payload, TRANSACTION_CANCELLED)

        ledger.record_result(
            db,
            payment.id,
            PaymentStatus.PENDING,
            external_tx_id=click_trans_id,
            raw_response=dict(payload),
        )
        return CallbackOutcome(
            ack=self._ack(payload, SUCCESS, merchant_prepare_id=payment.id),
            payment_id=payment.id,
            status=PaymentStatus.PENDING,
        )

    def _complete(self, db: Session, payload, payment: OrderPayment) -> CallbackOutcome:
        click_trans_id = str(payload["click_trans_id"])
        if str(payload["merchant_prepare_id"]) != str(payment.id):
            return self._reject(payload, TRANSACTION_NOT_FOUND)
        if payment.external_transaction_id not in (None, click_trans_id):
            return self._reject(payload, TRANSACTION_NOT_FOUND)

        try:
            click_error = int(payload.get("error") or 0)
        except (TypeError, ValueError):
            return self._reject(payload, BAD_REQUEST)

        if payment.status in CAPTURED_STATUSES:
            if click_error < 0:
                return self._reject(payload, ALREADY_PAID)
            # Replay of a complete that already succeeded.
            return CallbackOutcome(
                ack=self._ack(payload, SUCCESS, merchant_confirm_id=payment.id),
                payment_id=payment.id,
                status=payment.status,
            )
        if payment.status == PaymentStatus.FAILED:
            return self._reject(payload, TRANSACTION_CANCELLED)
        if click_error >= 0 and _order_cancelled(db, payment):
            return self._reject(payload, TRANSACTION_CANCELLED)

        if click_error < 0:
            changed = ledger.record_result(
                db,
                payment.id,
                PaymentStatus.FAILED,
                external_tx_id=click_trans_id,
                raw_response=dict(payload),
            )
            return CallbackOutcome(
                ack=self._ack(payload, TRANSACTION_CANCELLED, merchant_confirm_id=payment.id),
                payment_id=payment.id,
                status=PaymentStatus.FAILED,
                changed=changed,
            )

        changed = ledger.record_result(
            db,
            payment.id,
            PaymentStatus.PAID,
            external_tx_id=click_trans_id,
            raw_response=dict(payload),
        )
        return CallbackOutcome(
            ack=self._ack(payload, SUCCESS, merchant_confirm_id=payment.id),
            payment_id=payment.id,
            status=PaymentStatus.PAID,
            changed=changed,
        )

    def _auth_header(self) -> dict[str, str]:
        timestamp = str(int(time.time()))
        digest = hashlib.sha1(f"{timestamp}{self.secret_key}".encode("utf-8")).hexdigest()
        return {"Auth": f"{self.merchant_user_id}:{digest}:{timestamp}", "Accept": "application/json"}

    def _reverse(self, payment: OrderPayment, amount: Decimal) -> str | None:
        response = payment.gateway_response or {}
        click_payment_id = response.get("click_paydoc_id") or payment.external_transaction_id
        if amount == Decimal(payment.amount):
            url = f"{self.api_url}/payment/reversal/{self.service_id}/{click_payment_id}"
        else:
            url = (
                f"{self.api_url}/payment/partial_reversal/"
                f"{self.service_id}/{click_payment_id}/{self.amount_to_wire(amount)}"
            )
        body = base.request(self.http, "DELETE", url, headers=self._auth_header())
        if int(body.get("error_code", -1)) != 0:
            raise UpstreamFailure(f"Click reversal failed: {body.get('error_note', 'unknown error')}")
        return str(body.get("payment_id", click_payment_id))

    def refund(self, db: Session, payment_id: int, amount: Decimal | None = None):
        return base.two_phase_refund(db, self.method, payment_id, amount, self._reverse)
