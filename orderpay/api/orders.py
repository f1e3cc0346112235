from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from orderpay import orders, state_machine
from orderpay.auth import current_user_id, verify_token
from orderpay.database import get_db
from orderpay.models import Order, OrderStatus
from orderpay.schemas import (
    CancelRequest,
    OrderCreate,
    OrderPage,
    OrderRead,
    OrderStatistics,
    OrderTrackingRead,
    StatusUpdate,
    TrackingCreate,
)

router = APIRouter(prefix="/orders", tags=["orders"])


def _owned(order: Order, user_id: int) -> Order:
    if order.user_id != user_id:
        raise HTTPException(status_code=403, detail="Access denied")
    return order


@router.post("", response_model=OrderRead, status_code=201)
def create_order(
    payload: OrderCreate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return orders.create_order(
        db,
        user_id=user_id,
        currency_id=payload.currency_id,
        items=[item.model_dump() for item in payload.items],
        shipping_address_id=payload.shipping_address_id,
        billing_address_id=payload.billing_address_id,
        discount=payload.discount,
        tax=payload.tax,
        shipping=payload.shipping,
        notes=payload.notes,
    )


@router.get("", response_model=OrderPage)
def list_orders(
    status: Optional[OrderStatus] = None,
    page: int = 1,
    limit: int = 10,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    if page < 1 or limit < 1:
        raise HTTPException(status_code=400, detail="page and limit must be positive")
    return orders.list_orders(db, user_id=user_id, status=status, page=page, limit=limit)


@router.get("/statistics", response_model=OrderStatistics)
def order_statistics(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return orders.order_statistics(db, user_id=user_id)


@router.get("/by-number/{order_number}", response_model=OrderRead)
def get_order_by_number(
    order_number: str,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return _owned(orders.get_order_by_number(db, order_number), user_id)


@router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return _owned(orders.get_order(db, order_id), user_id)


@router.patch("/{order_id}/status", response_model=OrderRead)
def update_status(
    order_id: int,
    payload: StatusUpdate,
    claims: dict = Depends(verify_token),
    db: Session = Depends(get_db),
):
    return state_machine.transition(
        db,
        order_id,
        payload.status,
        reason=payload.reason,
        description=payload.description,
        location=payload.location,
    )


@router.patch("/{order_id}/cancel", response_model=OrderRead)
def cancel_order(
    order_id: int,
    payload: Optional[CancelRequest] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    _owned(orders.get_order(db, order_id), user_id)
    return state_machine.cancel(db, order_id, reason=payload.reason if payload else None)


@router.post("/{order_id}/tracking", response_model=OrderTrackingRead, status_code=201)
def add_tracking(
    order_id: int,
    payload: TrackingCreate,
    claims: dict = Depends(verify_token),
    db: Session = Depends(get_db),
):
    return state_machine.add_tracking(
        db,
        order_id,
        payload.status,
        description=payload.description,
        location=payload.location,
    )
