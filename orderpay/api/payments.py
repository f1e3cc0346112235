import json
from datetime import datetime
from typing import Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from orderpay import ledger, orchestrator, orders
from orderpay.auth import current_user_id, verify_token
from orderpay.database import get_db
from orderpay.gateways.port import CallbackRequest
from orderpay.schemas import (
    PaymentHistory,
    PaymentRead,
    PaymentResultRead,
    PaymentStatistics,
    PaymentStatusRead,
    ProcessPaymentRequest,
    RefundRead,
    RefundRequest,
)

router = APIRouter(prefix="/payments", tags=["payments"])


def parse_callback_body(body: bytes, content_type: str) -> Optional[dict]:
    """Click posts form fields; Payme, Uzum and Stripe post JSON."""
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
    try:
        payload = json.loads(body) if body else None
    except (ValueError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


@router.post("/{order_id}/process", response_model=PaymentResultRead)
def process_payment(
    order_id: int,
    payload: ProcessPaymentRequest,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    order = orders.get_order(db, order_id)
    if order.user_id != user_id:
        raise HTTPException(status_code=403, detail="Access denied")
    extra = payload.model_dump(exclude={"method"}, exclude_none=True)
    return orchestrator.process_payment(db, order_id, payload.method, extra)


@router.get("", response_model=PaymentHistory)
def payment_history(
    page: int = 1,
    limit: int = 10,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    if page < 1 or limit < 1:
        raise HTTPException(status_code=400, detail="page and limit must be positive")
    return ledger.payment_history(db, user_id, page=page, limit=limit)


@router.get("/statistics", response_model=PaymentStatistics)
def payment_statistics(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    claims: dict = Depends(verify_token),
    db: Session = Depends(get_db),
):
    return ledger.payment_statistics(db, date_from=date_from, date_to=date_to)


@router.get("/{order_id}/status", response_model=PaymentStatusRead)
def payment_status(order_id: int, claims: dict = Depends(verify_token), db: Session = Depends(get_db)):
    return orchestrator.payment_status(db, order_id)


@router.post("/{method}/callback")
async def payment_callback(method: str, request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    callback = CallbackRequest(
        body=body,
        payload=parse_callback_body(body, request.headers.get("content-type", "")),
        headers=dict(request.headers),
    )
    # Row locks are taken inside, so the session work runs off the event loop.
    return await run_in_threadpool(orchestrator.handle_callback, db, method, callback)


@router.post("/{order_id}/refund", response_model=RefundRead)
def refund_order(
    order_id: int,
    payload: Optional[RefundRequest] = None,
    claims: dict = Depends(verify_token),
    db: Session = Depends(get_db),
):
    return orchestrator.refund_order(db, order_id, amount=payload.amount if payload else None)


@router.post("/attempts/{payment_id}/check", response_model=PaymentRead)
def check_payment_status(
    payment_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    payment = ledger.get_payment(db, payment_id)
    if payment.order.user_id != user_id:
        raise HTTPException(status_code=403, detail="Access denied")
    return orchestrator.check_payment_status(db, payment_id)
