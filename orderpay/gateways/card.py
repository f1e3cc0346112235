"""Card payments through Stripe.

Unlike the redirect providers, a card PaymentIntent is confirmed
synchronously when the client supplies a payment method, so the ledger
result is known before ``create_payment`` returns. The Stripe webhook
later reports the same outcome and is applied idempotently.
"""

from decimal import Decimal
from typing import Any, Mapping

import stripe
import structlog
from sqlalchemy.orm import Session

from orderpay import ledger
from orderpay.config import settings
from orderpay.database import run_in_transaction
from orderpay.errors import Conflict, InvalidState, UpstreamFailure
from orderpay.gateways import base
from orderpay.gateways.port import (
    CallbackOutcome,
    CallbackRequest,
    GatewayAdapter,
    PaymentSession,
)
from orderpay.models import Order, OrderPayment, PaymentMethod, PaymentStatus

logger = structlog.get_logger(__name__)

PENDING_INTENT_STATUSES = ("requires_action", "requires_confirmation", "processing")

WEBHOOK_STATUSES = {
    "payment_intent.succeeded": PaymentStatus.PAID,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.FAILED,
}


def intent_status(intent_state: str, confirmed: bool) -> PaymentStatus:
    if intent_state == "succeeded":
        return PaymentStatus.PAID
    if intent_state in PENDING_INTENT_STATUSES:
        return PaymentStatus.PENDING
    if intent_state == "requires_payment_method" and not confirmed:
        # Nothing was charged yet; the client confirms with Stripe.js.
        return PaymentStatus.PENDING
    return PaymentStatus.FAILED


class CardGateway(GatewayAdapter):
    method = PaymentMethod.CARD

    def __init__(self, secret_key: str | None, webhook_secret: str | None, currency: str = "uzs"):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency.lower()

    @classmethod
    def from_settings(cls) -> "CardGateway":
        return cls(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            currency=settings.CARD_CURRENCY,
        )

    def amount_to_wire(self, amount: Decimal) -> int:
        return base.to_minor_units(amount)

    def amount_from_wire(self, value: Any) -> Decimal:
        return base.from_minor_units(value)

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
        payment_id = payment.id
        order = db.get(Order, order_id)
        extra = dict(extra or {})

        params = {
            "amount": self.amount_to_wire(payment.amount),
            "currency": self.currency,
            "description": description or f"Payment for order #{order.order_number}",
            "metadata": {"order_id": str(order_id), "payment_id": str(payment_id)},
            "idempotency_key": f"order-{order_id}-payment-{payment_id}",
            "api_key": self.secret_key,
        }
        confirmed = bool(extra.get("payment_method_id"))
        if confirmed:
            params.update(
                payment_method=extra["payment_method_id"],
                confirm=True,
                return_url=return_url or f"{settings.FRONTEND_URL}/payment/success",
            )
        else:
            params["automatic_payment_methods"] = {"enabled": True}

        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as exc:
            base.mark_failed(db, payment_id, {"error": str(exc)})
            logger.error("card.intent_failed", payment_id=payment_id, error=str(exc))
            raise UpstreamFailure(f"Card payment failed: {exc}") from exc

        status = intent_status(intent.status, confirmed)
        run_in_transaction(
            db,
            lambda: ledger.record_result(
                db,
                payment_id,
                status,
                external_tx_id=intent.id,
                raw_response={"id": intent.id, "status": intent.status},
            ),
        )
        logger.info(
            "card.intent_created",
            payment_id=payment_id,
            order_id=order_id,
            intent_status=intent.status,
        )
        return PaymentSession(
            payment_id=payment_id,
            status=status,
            client_secret=intent.client_secret,
            external_transaction_id=intent.id,
        )

    def _reject(self, error: str) -> CallbackOutcome:
        logger.warning("card.webhook_rejected", error=error)
        return CallbackOutcome(ack={"ok": False, "error": error}, rejected=True)

    def _find_payment(self, db: Session, intent) -> OrderPayment | None:
        payment = ledger.find_by_external_id(db, self.method, intent["id"])
        if payment is not None:
            return payment
        try:
            payment_id = int(intent["metadata"]["payment_id"])
        except (KeyError, TypeError, ValueError):
            return None
        payment = db.get(OrderPayment, payment_id)
        if payment is None or payment.payment_method != self.method:
            return None
        return payment

    def handle_callback(self, db: Session, request: CallbackRequest) -> CallbackOutcome:
        """Stripe webhook: payment_intent.succeeded and payment_intent.payment_failed."""
        try:
            event = stripe.Webhook.construct_event(
                request.body,
                request.headers.get("stripe-signature"),
                self.webhook_secret,
            )
        except ValueError:
            return self._reject("Invalid payload")
        except stripe.SignatureVerificationError:
            return self._reject("Invalid signature")

        status = WEBHOOK_STATUSES.get(event["type"])
        if status is None:
            return CallbackOutcome(ack={"ok": True})

        intent = event["data"]["object"]
        payment = self._find_payment(db, intent)
        if payment is None:
            logger.warning("card.webhook_unmatched", intent_id=intent["id"])
            return CallbackOutcome(ack={"ok": True})

        try:
            changed = ledger.record_result(
                db,
                payment.id,
                status,
                external_tx_id=intent["id"],
                raw_response={"event": event["type"], "id": intent["id"]},
            )
        except (Conflict, InvalidState) as exc:
            return self._reject(exc.message)

        return CallbackOutcome(
            ack={"ok": True},
            payment_id=payment.id,
            status=status,
            changed=changed,
        )

    def _create_refund(self, payment: OrderPayment, amount: Decimal) -> str | None:
        wire = self.amount_to_wire(amount)
        refund = stripe.Refund.create(
            payment_intent=payment.external_transaction_id,
            amount=wire,
            idempotency_key=f"refund-{payment.id}-{wire}",
            api_key=self.secret_key,
        )
        if refund.status in ("failed", "canceled"):
            raise UpstreamFailure(f"Stripe refund {refund.id} {refund.status}")
        return refund.id

    def refund(self, db: Session, payment_id: int, amount: Decimal | None = None):
        return base.two_phase_refund(db, self.method, payment_id, amount, self._create_refund)
