"""Uzum gateway adapter.

Payment sessions and refunds go through Uzum's REST API; the outcome
arrives as a flat JSON callback carrying ``error_code`` / ``error_message``
and a ``signature`` field. Amounts travel in tiyin.
"""

import hashlib
import hmac
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping
from urllib.parse import urlencode

import httpx
import structlog
from sqlalchemy.orm import Session

from orderpay import ledger
from orderpay.config import settings
from orderpay.database import run_in_transaction
from orderpay.errors import Conflict, InvalidArgument, InvalidState, UpstreamFailure
from orderpay.gateways import base
from orderpay.gateways.port import (
    CallbackOutcome,
    CallbackRequest,
    GatewayAdapter,
    PaymentSession,
    StatusCheck,
)
from orderpay.models import Order, OrderPayment, PaymentMethod, PaymentStatus

logger = structlog.get_logger(__name__)

SUCCESS = (0, "Success")
INVALID_SIGNATURE = (-1, "Invalid signature")
TRANSACTION_NOT_FOUND = (-2, "Transaction not found")
INCORRECT_AMOUNT = (-3, "Incorrect amount")
ALREADY_PROCESSED = (-4, "Transaction already processed")
INVALID_REQUEST = (-8, "Invalid request")

_STATUS_MAP = {
    "success": PaymentStatus.PAID,
    "paid": PaymentStatus.PAID,
    "completed": PaymentStatus.PAID,
    "failed": PaymentStatus.FAILED,
    "error": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
}


def map_status(value: Any) -> PaymentStatus:
    """Uzum status strings to ledger statuses; unknown values stay pending."""
    return _STATUS_MAP.get(str(value or "").lower(), PaymentStatus.PENDING)


class UzumGateway(GatewayAdapter):
    method = PaymentMethod.UZUM

    def __init__(
        self,
        merchant_id: str,
        secret_key: str,
        api_key: str,
        api_url: str,
        webhook_url: str,
        http_client: httpx.Client | None = None,
    ):
        self.merchant_id = merchant_id
        self.secret_key = secret_key
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")
        self.webhook_url = webhook_url
        self.http = http_client or httpx.Client(timeout=settings.HTTP_TIMEOUT)

    @classmethod
    def from_settings(cls) -> "UzumGateway":
        return cls(
            merchant_id=settings.UZUM_MERCHANT_ID,
            secret_key=settings.UZUM_SECRET_KEY,
            api_key=settings.UZUM_API_KEY,
            api_url=settings.UZUM_API_URL,
            webhook_url=settings.UZUM_WEBHOOK_URL,
        )

    def amount_to_wire(self, amount: Decimal) -> int:
        return base.to_minor_units(amount)

    def amount_from_wire(self, value: Any) -> Decimal:
        return base.from_minor_units(value)

    def sign(self, data: Mapping[str, Any]) -> str:
        keys = sorted(
            k for k, v in data.items()
            if k != "signature" and v is not None and not isinstance(v, (dict, list))
        )
        message = "&".join(f"{k}={data[k]}" for k in keys) + self.secret_key
        return hashlib.sha256(message.encode("utf-8")).hexdigest()

    def verify_signature(self, payload: Mapping[str, Any]) -> bool:
        received = str(payload.get("signature") or "")
        return hmac.compare_digest(received, self.sign(payload))

    def _post(self, endpoint: str, data: dict) -> dict:
        return base.request(
            self.http,
            "POST",
            f"{self.api_url}{endpoint}",
            json=data,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Accept": "application/json",
            },
        )

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
        order = db.get(Order, order_id)
        data = {
            "merchant_id": self.merchant_id,
            "transaction_id": str(payment.id),
            "order_id": str(order_id),
            "amount": self.amount_to_wire(payment.amount),
            "currency": "UZS",
            "description": description or f"Payment for order #{order.order_number}",
            "return_url": return_url or f"{settings.FRONTEND_URL}/payment/success",
            "cancel_url": cancel_url or f"{settings.FRONTEND_URL}/payment/cancel",
            "webhook_url": self.webhook_url,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        data["signature"] = self.sign(data)
        payment_id = payment.id

        # The ledger attempt is committed; no lock is held during the call.
        try:
            body = self._post("/payments/create", data)
        except UpstreamFailure as exc:
            base.mark_failed(db, payment_id, {"request": data, "error": exc.message})
            raise
        if not body.get("success"):
            base.mark_failed(db, payment_id, {"request": data, "uzum_response": body})
            raise UpstreamFailure(f"Uzum API error: {body.get('message', 'unknown error')}")

        run_in_transaction(
            db,
            lambda: ledger.record_result(
                db,
                payment_id,
                PaymentStatus.PENDING,
                external_tx_id=body.get("payment_id"),
                raw_response={**data, "uzum_response": body},
            ),
        )
        logger.info("uzum.payment_created", payment_id=payment_id, order_id=order_id)
        return PaymentSession(
            payment_id=payment_id,
            status=PaymentStatus.PENDING,
            payment_url=body.get("payment_url") or self.build_payment_url(data),
            external_transaction_id=body.get("payment_id"),
        )

    def build_payment_url(self, data: Mapping[str, Any]) -> str:
        params = {
            "merchant_id": data["merchant_id"],
            "transaction_id": data["transaction_id"],
            "amount": data["amount"],
            "signature": data["signature"],
        }
        return f"https://payment.uzum.uz/pay?{urlencode(params)}"

    def _ack(self, result, payload):
        code, message = result
        return {
            "error_code": code,
            "error_message": message,
            "transaction_id": payload.get("transaction_id"),
        }

    def _reject(self, result, payload) -> CallbackOutcome:
        logger.warning("uzum.callback_rejected", error_code=result[0], note=result[1])
        return CallbackOutcome(ack=self._ack(result, payload), rejected=True)

    def handle_callback(self, db: Session, request: CallbackRequest) -> CallbackOutcome:
        payload = request.payload
        if not isinstance(payload, dict) or not payload.get("transaction_id"):
            return self._reject(INVALID_REQUEST, payload if isinstance(payload, dict) else {})

        if not self.verify_signature(payload):
            return self._reject(INVALID_SIGNATURE, payload)

        try:
            payment_id = int(payload["transaction_id"])
        except (TypeError, ValueError):
            return self._reject(TRANSACTION_NOT_FOUND, payload)
        payment = db.get(OrderPayment, payment_id)
        if payment is None or payment.payment_method != self.method:
            return self._reject(TRANSACTION_NOT_FOUND, payload)
        payment = ledger.lock_payment(db, payment_id)
        if payload.get("order_id") is not None and str(payload["order_id"]) != str(payment.order_id):
            return self._reject(TRANSACTION_NOT_FOUND, payload)

        try:
            error_code = int(payload.get("error_code") or 0)
        except (TypeError, ValueError):
            return self._reject(INVALID_REQUEST, payload)

        if error_code != 0:
            logger.error(
                "uzum.payment_error",
                payment_id=payment_id,
                error_code=error_code,
                error_message=payload.get("error_message"),
            )
            status = PaymentStatus.FAILED
        else:
            status = map_status(payload.get("status"))
            if payload.get("amount") is not None:
                try:
                    amount = self.amount_from_wire(payload["amount"])
                except InvalidArgument:
                    return self._reject(INCORRECT_AMOUNT, payload)
                if amount != Decimal(payment.amount):
                    return self._reject(INCORRECT_AMOUNT, payload)

        try:
            # The raw payload is stored verbatim, provider message included.
            changed = ledger.record_result(db, payment_id, status, raw_response=dict(payload))
        except (Conflict, InvalidState):
            return self._reject(ALREADY_PROCESSED, payload)

        return CallbackOutcome(
            ack=self._ack(SUCCESS, payload),
            payment_id=payment_id,
            status=status,
            changed=changed,
        )

    def check_status(self, db: Session, payment_id: int) -> StatusCheck:
        payment = ledger.get_payment(db, payment_id)
        data = {
            "merchant_id": self.merchant_id,
            "transaction_id": str(payment.id),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        data["signature"] = self.sign(data)
        body = self._post("/payments/status", data)
        if not body.get("success"):
            raise UpstreamFailure(f"Uzum status check failed: {body.get('message', 'unknown error')}")

        status = map_status(body.get("status"))
        if status == PaymentStatus.PAID and body.get("amount") is not None:
            try:
                amount = self.amount_from_wire(body["amount"])
            except InvalidArgument as exc:
                raise UpstreamFailure(f"Uzum reported an invalid amount: {body['amount']!r}") from exc
            if amount != Decimal(payment.amount):
                raise UpstreamFailure(f"Uzum reported {amount} for a payment of {payment.amount}")
        return StatusCheck(
            status=status,
            raw_response={"uzum_status": body},
            external_transaction_id=body.get("payment_id"),
        )

    def _refund_call(self, payment: OrderPayment, amount: Decimal) -> str | None:
        data = {
            "merchant_id": self.merchant_id,
            "original_transaction_id": payment.external_transaction_id or str(payment.id),
            "refund_amount": self.amount_to_wire(amount),
            "refund_id": f"refund_{payment.id}_{int(time.time() * 1000)}",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "reason": "Customer refund request",
        }
        data["signature"] = self.sign(data)
        body = self._post("/payments/refund", data)
        if not body.get("success"):
            raise UpstreamFailure(f"Uzum refund failed: {body.get('message', 'unknown error')}")
        return body.get("refund_id", data["refund_id"])

    def refund(self, db: Session, payment_id: int, amount: Decimal | None = None):
        return base.two_phase_refund(db, self.method, payment_id, amount, self._refund_call)
