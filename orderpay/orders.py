"""Order aggregator: validates resolved line items and persists the order.

Line items arrive already resolved by the cart collaborator as
``(product_id, quantity, unit_price)``. The unit price is snapshotted on the
item row and never follows later catalog changes.
"""

import math
import secrets
import string
import time
from dataclasses import dataclass
from decimal import Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orderpay import events
from orderpay.database import unit_of_work
from orderpay.errors import InvalidArgument, InvalidState, NotFound
from orderpay.models import (
    Order,
    OrderItem,
    OrderStatus,
    OrderTracking,
    PaymentStatus,
    Product,
    User,
)

logger = structlog.get_logger(__name__)

ORDER_NUMBER_ATTEMPTS = 5
_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class LineItem:
    product_id: int
    quantity: int
    unit_price: Decimal


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def compute_totals(
    items: list[LineItem],
    discount: Decimal = Decimal(0),
    tax: Decimal = Decimal(0),
    shipping: Decimal = Decimal(0),
) -> tuple[Decimal, Decimal]:
    """Return ``(total_amount, final_amount)`` for the given line items."""
    total = sum((Decimal(i.unit_price) * i.quantity for i in items), Decimal(0))
    final = total + Decimal(tax) + Decimal(shipping) - Decimal(discount)
    return total, final


def _validate(db: Session, user_id: int, items: list[LineItem], adjustments: dict) -> None:
    if not items:
        raise InvalidArgument("Order must contain at least one item")
    for name, value in adjustments.items():
        if Decimal(value) < 0:
            raise InvalidArgument(f"{name} must not be negative")

    if db.get(User, user_id) is None:
        raise NotFound("User not found")

    for item in items:
        if item.quantity <= 0:
            raise InvalidArgument(f"Quantity for product {item.product_id} must be positive")
        if Decimal(item.unit_price) < 0:
            raise InvalidArgument(f"Unit price for product {item.product_id} must not be negative")
        product = db.get(Product, item.product_id)
        if product is None:
            raise NotFound(f"Product with ID {item.product_id} not found")
        if not product.is_active:
            raise InvalidState(f"Product {product.title} is not active")


def _insert_items(db: Session, order: Order, items: list[LineItem]) -> None:
    for item in items:
        unit_price = Decimal(item.unit_price)
        db.add(
            OrderItem(
                order_id=order.id,
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=unit_price,
                total_price=unit_price * item.quantity,
            )
        )
    db.flush()


def create_order(
    db: Session,
    user_id: int,
    currency_id: int,
    items: list[LineItem],
    shipping_address_id: int | None = None,
    billing_address_id: int | None = None,
    discount: Decimal = Decimal(0),
    tax: Decimal = Decimal(0),
    shipping: Decimal = Decimal(0),
    notes: str | None = None,
) -> Order:
    items = [i if isinstance(i, LineItem) else LineItem(**i) for i in items]
    discount, tax, shipping = Decimal(discount), Decimal(tax), Decimal(shipping)
    total, final = compute_totals(items, discount, tax, shipping)
    if final < 0:
        raise InvalidArgument("Discount exceeds order total")

    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        # Validation runs inside the transaction that inserts, so a product
        # deactivated concurrently is seen by the retry as well.
        try:
            with unit_of_work(db):
                _validate(
                    db,
                    user_id,
                    items,
                    {"discount": discount, "tax": tax, "shipping": shipping},
                )
                order = Order(
                    order_number=generate_order_number(),
                    user_id=user_id,
                    currency_id=currency_id,
                    shipping_address_id=shipping_address_id,
                    billing_address_id=billing_address_id,
                    status=OrderStatus.PENDING,
                    payment_status=PaymentStatus.PENDING,
                    total_amount=total,
                    discount_amount=discount,
                    tax_amount=tax,
                    shipping_amount=shipping,
                    final_amount=final,
                    notes=notes,
                )
                db.add(order)
                # The order row is the first write, so a collision on
                # order_number rolls back nothing else.
                db.flush()
                _insert_items(db, order, items)
                db.add(
                    OrderTracking(
                        order_id=order.id,
                        status=OrderStatus.PENDING,
                        description="Order created",
                    )
                )
                events.enqueue(
                    db,
                    events.ORDER_TOPIC,
                    str(order.id),
                    {
                        "type": "order.created",
                        "order_id": order.id,
                        "order_number": order.order_number,
                        "user_id": user_id,
                        "final_amount": str(final),
                        "items": [
                            {
                                "product_id": i.product_id,
                                "quantity": i.quantity,
                                "unit_price": str(i.unit_price),
                            }
                            for i in items
                        ],
                    },
                )
        except IntegrityError as exc:
            if attempt == ORDER_NUMBER_ATTEMPTS:
                raise
            logger.warning("order.number_collision", attempt=attempt, error=str(exc.orig))
            continue

        logger.info(
            "order.created",
            order_id=order.id,
            order_number=order.order_number,
            user_id=user_id,
            final_amount=str(final),
        )
        return order


def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found")
    return order


def get_order_by_number(db: Session, order_number: str) -> Order:
    order = db.execute(
        select(Order).where(Order.order_number == order_number)
    ).scalar_one_or_none()
    if order is None:
        raise NotFound("Order not found")
    return order


def list_orders(
    db: Session,
    user_id: int | None = None,
    status: OrderStatus | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    filters = []
    if user_id is not None:
        filters.append(Order.user_id == user_id)
    if status is not None:
        filters.append(Order.status == status)

    total = db.execute(select(func.count(Order.id)).where(*filters)).scalar_one()
    orders = list(
        db.execute(
            select(Order)
            .where(*filters)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars()
    )
    return {
        "orders": orders,
        "total": total,
        "page": page,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


def order_statistics(db: Session, user_id: int | None = None) -> dict:
    filters = [Order.user_id == user_id] if user_id is not None else []

    def count(*extra):
        return db.execute(select(func.count(Order.id)).where(*filters, *extra)).scalar_one()

    revenue = db.execute(
        select(func.sum(Order.final_amount)).where(
            *filters, Order.status != OrderStatus.CANCELLED
        )
    ).scalar_one()
    return {
        "total_orders": count(),
        "pending_orders": count(Order.status == OrderStatus.PENDING),
        "completed_orders": count(Order.status == OrderStatus.DELIVERED),
        "cancelled_orders": count(Order.status == OrderStatus.CANCELLED),
        "total_revenue": Decimal(revenue or 0),
    }
