from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from orderpay import ledger
from orderpay.database import run_in_transaction, unit_of_work
from orderpay.errors import Conflict, InvalidArgument, InvalidState, NotFound
from orderpay.models import OrderPayment, OrderTracking, PaymentMethod, PaymentStatus


def open_attempt(db, order, method=PaymentMethod.CLICK, amount=None):
    with unit_of_work(db):
        payment = ledger.open_attempt(db, order.id, method, amount or order.final_amount)
    return payment


def record(db, payment_id, status, **kwargs):
    return run_in_transaction(db, lambda: ledger.record_result(db, payment_id, status, **kwargs))


def refund(db, payment_id, amount=None):
    return run_in_transaction(db, lambda: ledger.refund(db, payment_id, amount))


@pytest.fixture
def paid(db, example_order):
    payment = open_attempt(db, example_order)
    record(db, payment.id, PaymentStatus.PAID, external_tx_id="tx-1")
    return payment


def test_open_attempt_rejects_non_positive_amount(db, example_order):
    with pytest.raises(InvalidArgument):
        open_attempt(db, example_order, amount=Decimal("-1"))


def test_open_attempt_conflicts_once_captured(db, example_order, paid):
    with pytest.raises(Conflict):
        open_attempt(db, example_order, method=PaymentMethod.PAYME)
    assert len(ledger.payments_for_order(db, example_order.id)) == 1


def test_paid_is_mirrored_on_order(db, example_order, paid):
    assert paid.status == PaymentStatus.PAID
    assert paid.completed_at is not None
    assert example_order.payment_status == PaymentStatus.PAID


def test_same_result_twice_is_a_noop(db, example_order, paid, published):
    assert record(db, paid.id, PaymentStatus.PAID, external_tx_id="tx-1") is False
    assert published == []
    assert paid.status == PaymentStatus.PAID


def test_duplicate_paid_from_two_sessions_captures_once(db, session_factory, example_order, published):
    payment = open_attempt(db, example_order)
    published.clear()
    first, second = session_factory(), session_factory()
    try:
        # Both sessions have read the attempt before either writes.
        assert ledger.get_payment(first, payment.id).status == PaymentStatus.PENDING
        assert ledger.get_payment(second, payment.id).status == PaymentStatus.PENDING

        changed = [
            record(first, payment.id, PaymentStatus.PAID, external_tx_id="tx-1"),
            record(second, payment.id, PaymentStatus.PAID, external_tx_id="tx-1"),
        ]
    finally:
        first.close()
        second.close()

    assert changed == [True, False]
    db.expire_all()
    assert [p.status for p in ledger.payments_for_order(db, example_order.id)] == [PaymentStatus.PAID]
    assert [v["status"] for _, v in published] == ["PAID"]
    assert db.query(OrderTracking).filter_by(order_id=example_order.id).count() == 1


def test_terminal_to_other_terminal_is_invalid(db, paid):
    with pytest.raises(InvalidState):
        record(db, paid.id, PaymentStatus.FAILED)
    with pytest.raises(InvalidState):
        record(db, paid.id, PaymentStatus.PENDING)
    assert paid.status == PaymentStatus.PAID


def test_second_attempt_cannot_capture(db, example_order):
    first = open_attempt(db, example_order)
    second = open_attempt(db, example_order, method=PaymentMethod.PAYME)
    record(db, first.id, PaymentStatus.PAID, external_tx_id="tx-1")

    with pytest.raises(Conflict):
        record(db, second.id, PaymentStatus.PAID, external_tx_id="tx-2")
    assert second.status == PaymentStatus.PENDING


def test_failed_attempt_allows_retry(db, example_order):
    first = open_attempt(db, example_order)
    record(db, first.id, PaymentStatus.FAILED, raw_response={"error": -9})
    assert example_order.payment_status == PaymentStatus.FAILED

    open_attempt(db, example_order, method=PaymentMethod.UZUM)
    assert example_order.payment_status == PaymentStatus.PENDING


def test_external_id_belongs_to_one_attempt(db, example_order):
    first = open_attempt(db, example_order)
    second = open_attempt(db, example_order)
    record(db, first.id, PaymentStatus.PENDING, external_tx_id="tx-1")

    with pytest.raises(Conflict):
        record(db, second.id, PaymentStatus.PENDING, external_tx_id="tx-1")
    assert ledger.find_by_external_id(db, PaymentMethod.CLICK, "tx-1").id == first.id


def test_idempotency_key_is_a_unique_constraint(db, example_order):
    db.add_all(
        [
            OrderPayment(
                order_id=example_order.id,
                amount=Decimal("1"),
                payment_method=PaymentMethod.PAYME,
                external_transaction_id="dup",
            ),
            OrderPayment(
                order_id=example_order.id,
                amount=Decimal("1"),
                payment_method=PaymentMethod.PAYME,
                external_transaction_id="dup",
            ),
        ]
    )
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_over_refund_leaves_payment_paid(db, paid):
    with pytest.raises(InvalidArgument):
        refund(db, paid.id, Decimal("145000.01"))
    db.expire_all()
    assert paid.status == PaymentStatus.PAID
    assert paid.refunded_amount is None


def test_full_refund(db, example_order, paid):
    result = refund(db, paid.id)

    assert result.status == PaymentStatus.REFUNDED
    assert result.amount == Decimal("145000")
    assert paid.status == PaymentStatus.REFUNDED
    assert paid.refunded_at is not None
    assert example_order.payment_status == PaymentStatus.REFUNDED


def test_partial_refund_keeps_captured_amount(db, paid):
    result = refund(db, paid.id, Decimal("45000"))

    assert result.status == PaymentStatus.PARTIALLY_REFUNDED
    assert paid.amount == Decimal("145000")
    assert paid.refunded_amount == Decimal("45000")

    with pytest.raises(InvalidState):
        refund(db, paid.id, Decimal("1000"))


def test_refund_requires_capture(db, example_order):
    payment = open_attempt(db, example_order)
    with pytest.raises(InvalidState):
        refund(db, payment.id)
    with pytest.raises(NotFound):
        refund(db, 999)


def test_revert_refund_restores_capture(db, example_order, paid):
    refund(db, paid.id, Decimal("1000"))
    run_in_transaction(db, lambda: ledger.revert_refund(db, paid.id))

    assert paid.status == PaymentStatus.PAID
    assert paid.refunded_amount is None
    assert example_order.payment_status == PaymentStatus.PAID


def test_payment_statistics(db, make_order, paid):
    other = make_order(user_id=2)
    open_attempt(db, other, method=PaymentMethod.UZUM, amount=Decimal("10"))

    stats = ledger.payment_statistics(db)

    assert stats["total_count"] == 2
    assert stats["total_amount"] == Decimal("145010")
    assert stats["by_method"]["CLICK"] == {"count": 1, "total_amount": Decimal("145000")}
    assert stats["by_method"]["UZUM"]["count"] == 1
    assert stats["by_status"]["PAID"]["count"] == 1
    assert stats["by_status"]["PENDING"]["count"] == 1


def test_payment_history_pages_across_orders_of_one_user(db, make_order):
    first, second = make_order(), make_order()
    failed = open_attempt(db, first)
    record(db, failed.id, PaymentStatus.FAILED)
    retry = open_attempt(db, first)
    latest = open_attempt(db, second)
    open_attempt(db, make_order(user_id=2))

    page = ledger.payment_history(db, user_id=1, page=1, limit=2)

    assert page["total"] == 3
    assert page["total_pages"] == 2
    assert [p.id for p in page["payments"]] == [latest.id, retry.id]
    assert [p.id for p in ledger.payment_history(db, 1, page=2, limit=2)["payments"]] == [failed.id]
    assert ledger.payment_history(db, user_id=3) == {"payments": [], "total": 0, "page": 1, "total_pages": 0}
