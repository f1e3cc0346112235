from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from orderpay.models import OrderStatus, PaymentMethod, PaymentStatus


class LineItemIn(BaseModel):
    product_id: int
    quantity: int
    unit_price: Decimal


class OrderCreate(BaseModel):
    currency_id: int
    items: List[LineItemIn]
    shipping_address_id: Optional[int] = None
    billing_address_id: Optional[int] = None
    discount: Decimal = Decimal(0)
    tax: Decimal = Decimal(0)
    shipping: Decimal = Decimal(0)
    notes: Optional[str] = None


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class OrderTrackingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: OrderStatus
    description: Optional[str] = None
    location: Optional[str] = None
    created_at: datetime


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: Decimal
    order_id: int
    payment_method: PaymentMethod
    external_transaction_id: Optional[str] = None
    status: PaymentStatus
    refunded_amount: Optional[Decimal] = None
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    user_id: int
    currency_id: int
    shipping_address_id: Optional[int] = None
    billing_address_id: Optional[int] = None
    status: OrderStatus
    payment_status: PaymentStatus
    total_amount: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    final_amount: Decimal
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemRead] = []
    tracking: List[OrderTrackingRead] = []
    payments: List[PaymentRead] = []


class OrderPage(BaseModel):
    orders: List[OrderRead]
    total: int
    page: int
    total_pages: int


class PaymentHistory(BaseModel):
    payments: List[PaymentRead]
    total: int
    page: int
    total_pages: int


class OrderStatistics(BaseModel):
    total_orders: int
    pending_orders: int
    completed_orders: int
    cancelled_orders: int
    total_revenue: Decimal


class StatusUpdate(BaseModel):
    status: OrderStatus
    reason: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class TrackingCreate(BaseModel):
    status: OrderStatus
    description: Optional[str] = None
    location: Optional[str] = None


class ProcessPaymentRequest(BaseModel):
    method: str
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    description: Optional[str] = None
    payment_method_id: Optional[str] = None   # CARD only


class PaymentResultRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: int
    payment_id: int
    method: PaymentMethod
    status: PaymentStatus
    amount: Decimal
    payment_url: Optional[str] = None
    client_secret: Optional[str] = None


class PaymentStatusRead(BaseModel):
    order_id: int
    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    final_amount: Decimal
    payments: List[PaymentRead]


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = None


class RefundRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: int
    amount: Decimal
    status: PaymentStatus
    provider_refund_id: Optional[str] = None


class Breakdown(BaseModel):
    count: int
    total_amount: Decimal


class PaymentStatistics(BaseModel):
    total_count: int
    total_amount: Decimal
    by_method: dict[str, Breakdown]
    by_status: dict[str, Breakdown]
