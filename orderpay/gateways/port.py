"""Payment gateway port (abstract interface).

Defines the contract every provider adapter implements. The orchestrator
looks adapters up by ``PaymentMethod`` and never depends on a concrete
provider class.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy.orm import Session

from orderpay.ledger import RefundResult
from orderpay.errors import InvalidArgument
from orderpay.models import PaymentMethod, PaymentStatus


@dataclass(frozen=True)
class PaymentSession:
    """Result of opening a payment with a provider."""

    payment_id: int
    status: PaymentStatus
    payment_url: str | None = None
    client_secret: str | None = None
    external_transaction_id: str | None = None


@dataclass(frozen=True)
class CallbackRequest:
    """An inbound provider notification as received over HTTP."""

    body: bytes
    payload: dict[str, Any] | None
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CallbackOutcome:
    """The provider acknowledgement plus what the callback did to the ledger.

    A rejected outcome carries the provider's error acknowledgement; the
    orchestrator rolls back anything the callback touched before answering.
    """

    ack: dict[str, Any]
    payment_id: int | None = None
    status: PaymentStatus | None = None
    changed: bool = False
    rejected: bool = False


@dataclass(frozen=True)
class StatusCheck:
    """What the provider reports for an attempt when asked directly."""

    status: PaymentStatus
    raw_response: dict[str, Any]
    external_transaction_id: str | None = None


class GatewayAdapter(ABC):
    """Abstract payment gateway interface."""

    method: PaymentMethod
    supports_partial_refund: bool = True

    @abstractmethod
    def amount_to_wire(self, amount: Decimal) -> int:
        ...

    @abstractmethod
    def amount_from_wire(self, value: Any) -> Decimal:
        ...

    @abstractmethod
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
        ...

    @abstractmethod
    def handle_callback(self, db: Session, request: CallbackRequest) -> CallbackOutcome:
        """Verify and apply a provider notification; never raises for bad input."""
        ...

    @abstractmethod
    def refund(
        self, db: Session, payment_id: int, amount: Decimal | None = None
    ) -> RefundResult:
        """Refund a captured payment in the ledger and at the provider."""
        ...

    def check_status(self, db: Session, payment_id: int) -> StatusCheck:
        """Query the provider for an attempt's outcome, for callbacks that never arrived."""
        raise InvalidArgument(f"{self.method.value} does not support status checks")

