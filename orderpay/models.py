import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from orderpay.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    # Reserved: no transition leads here, refunds only move payment_status.
    REFUNDED = "REFUNDED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class PaymentMethod(str, enum.Enum):
    CLICK = "CLICK"
    PAYME = "PAYME"
    UZUM = "UZUM"
    CARD = "CARD"


CAPTURED_STATUSES = (
    PaymentStatus.PAID,
    PaymentStatus.REFUNDED,
    PaymentStatus.PARTIALLY_REFUNDED,
)

Money = Numeric(14, 2)


class User(Base):
    """Read-only view of the identity service's users table."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    is_active = Column(Boolean, default=True, nullable=False)


class Product(Base):
    """Read-only view of the catalog's products table."""

    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    title = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    order_number = Column(String(64), unique=True, index=True, nullable=False)
    user_id = Column(Integer, index=True, nullable=False)
    currency_id = Column(Integer, nullable=False)
    shipping_address_id = Column(Integer)
    billing_address_id = Column(Integer)
    status = Column(Enum(OrderStatus, native_enum=False), default=OrderStatus.PENDING, nullable=False)
    payment_status = Column(
        Enum(PaymentStatus, native_enum=False), default=PaymentStatus.PENDING, nullable=False
    )
    total_amount = Column(Money, nullable=False)
    discount_amount = Column(Money, nullable=False, default=0)
    tax_amount = Column(Money, nullable=False, default=0)
    shipping_amount = Column(Money, nullable=False, default=0)
    final_amount = Column(Money, nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    payments = relationship(
        "OrderPayment", back_populates="order", order_by="OrderPayment.id"
    )
    tracking = relationship(
        "OrderTracking", back_populates="order", order_by="OrderTracking.id"
    )

    __mapper_args__ = {"version_id_col": version}


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False)
    product_id = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Money, nullable=False)          # snapshot at order time
    total_price = Column(Money, nullable=False)

    order = relationship("Order", back_populates="items")


class OrderPayment(Base):
    __tablename__ = "order_payments"
    __table_args__ = (
        UniqueConstraint(
            "payment_method", "external_transaction_id", name="uq_payment_provider_txn"
        ),
    )

    id = Column(Integer, primary_key=True)
    order_id = Column(ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False)
    amount = Column(Money, nullable=False)
    payment_method = Column(Enum(PaymentMethod, native_enum=False), nullable=False)
    external_transaction_id = Column(String(128))   # provider-assigned
    status = Column(
        Enum(PaymentStatus, native_enum=False), default=PaymentStatus.PENDING, nullable=False
    )
    gateway_response = Column(JSON)                  # last provider payload
    refunded_amount = Column(Money)
    completed_at = Column(DateTime(timezone=True))
    refunded_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="payments")

    __mapper_args__ = {"version_id_col": version}


class OrderTracking(Base):
    __tablename__ = "order_tracking"

    id = Column(Integer, primary_key=True)
    order_id = Column(ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False)
    status = Column(Enum(OrderStatus, native_enum=False), nullable=False)
    description = Column(Text)
    location = Column(String(255))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    order = relationship("Order", back_populates="tracking")
