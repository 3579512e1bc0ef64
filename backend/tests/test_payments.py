"""
Payment tests: recording, settling, refunds and how they reconcile the
order's payment status and the purchase order's paid amount.
"""

import pytest

from backoffice.errors import PaymentError, ReferenceNotFound, ValidationError
from backoffice.extensions import db
from backoffice.models import Order, Payment
from backoffice.services import order_service, payment_service
from backoffice.services import purchase_order_service as po_service

from conftest import ACTOR_ID, walk_in_order_kwargs


@pytest.fixture
def order(stocked_product):
    product = stocked_product("PAY-A", 10, price_cents=1000)
    # pickup, one unit: 1000 + 10% tax
    return order_service.create_order(
        items=[{"product_id": product.id, "quantity": 1}],
        **walk_in_order_kwargs(delivery_type="pickup", shipping_address=None),
    )


@pytest.fixture
def purchase_order(supplier, make_product):
    product = make_product("PAY-PO")
    return po_service.create_purchase_order(
        supplier_id=supplier.id,
        items=[{"product_id": product.id, "quantity": 10, "unit_price_cents": 200}],
        actor_id=ACTOR_ID,
    )


def _stub(**filters) -> Payment:
    return db.session.query(Payment).filter_by(status="pending", **filters).one()


def _reload_order(order_id: int) -> Order:
    db.session.expire_all()
    return db.session.get(Order, order_id)


def _pay(order, amount_cents, method="cash"):
    return payment_service.record_payment(
        payment_type="sales",
        related_id=order.id,
        amount_cents=amount_cents,
        payment_method=method,
        actor_id=ACTOR_ID,
    )


def test_partial_then_full_payment(order):
    assert order.total_cents == 1100

    first = _pay(order, 500)
    assert first.status == "completed"
    assert first.related_number == order.order_number
    assert _reload_order(order.id).payment_status == "partial"

    _pay(order, 600, method="card")
    reloaded = _reload_order(order.id)
    assert reloaded.payment_status == "paid"
    assert reloaded.paid_at is not None


def test_refunds_walk_status_back(order):
    first = _pay(order, 500)
    second = _pay(order, 600)

    refunded = payment_service.process_refund(second.id, amount_cents=600, reason="Returned", actor_id=ACTOR_ID)
    assert refunded.status == "refunded"
    assert refunded.refunded_cents == 600
    assert _reload_order(order.id).payment_status == "partial"

    partly = payment_service.process_refund(first.id, amount_cents=200, reason="Goodwill", actor_id=ACTOR_ID)
    assert partly.status == "completed"
    assert partly.net_amount_cents == 300

    payment_service.process_refund(first.id, amount_cents=300, reason="Goodwill", actor_id=ACTOR_ID)
    assert _reload_order(order.id).payment_status == "refunded"


def test_refund_guards(order):
    payment = _pay(order, 500)

    with pytest.raises(PaymentError) as excinfo:
        payment_service.process_refund(payment.id, amount_cents=501, reason="Too much")
    assert excinfo.value.details["refundable_cents"] == 500

    with pytest.raises(ValidationError):
        payment_service.process_refund(payment.id, amount_cents=100, reason="  ")

    with pytest.raises(PaymentError):
        payment_service.process_refund(_stub(order_id=order.id).id, amount_cents=100, reason="Not settled")

    with pytest.raises(ReferenceNotFound):
        payment_service.process_refund(9999, amount_cents=100, reason="Missing")


def test_completing_the_stub_pays_the_order(order):
    stub = _stub(order_id=order.id)
    assert stub.amount_cents == 1100

    payment_service.complete_payment(stub.id, actor_id=ACTOR_ID, transaction_id="TX-1")

    assert _reload_order(order.id).payment_status == "paid"
    stub = payment_service.get_payment(stub.id)
    assert stub.transaction_id == "TX-1"
    with pytest.raises(PaymentError):
        payment_service.complete_payment(stub.id)


def test_failed_stub_marks_order_failed_until_paid(order):
    stub = _stub(order_id=order.id)

    payment_service.mark_payment_failed(stub.id, reason="Card declined")
    assert _reload_order(order.id).payment_status == "failed"

    payment_service.delete_payment(stub.id)
    assert db.session.get(Payment, stub.id) is None

    _pay(order, 1100)
    assert _reload_order(order.id).payment_status == "paid"


def test_cancel_and_delete_rules(order):
    stub = _stub(order_id=order.id)

    with pytest.raises(ValidationError):
        payment_service.cancel_payment(stub.id, reason="")
    cancelled = payment_service.cancel_payment(stub.id, reason="Customer changed mind")
    assert cancelled.status == "cancelled"
    assert cancelled.cancel_reason == "Customer changed mind"

    with pytest.raises(PaymentError):
        payment_service.complete_payment(stub.id)

    settled = _pay(order, 100)
    with pytest.raises(PaymentError):
        payment_service.delete_payment(settled.id)


def test_record_payment_validation(order):
    with pytest.raises(ValidationError):
        _pay(order, 0)
    with pytest.raises(ValidationError):
        _pay(order, 100, method="barter")
    with pytest.raises(ValidationError):
        payment_service.record_payment(
            payment_type="gift", related_id=order.id, amount_cents=100, payment_method="cash"
        )
    with pytest.raises(ReferenceNotFound):
        payment_service.record_payment(
            payment_type="sales", related_id=9999, amount_cents=100, payment_method="cash"
        )


def test_cancelled_order_rejects_payments(order):
    order_service.transition_order_status(order.id, "cancelled", actor_id=ACTOR_ID)
    with pytest.raises(PaymentError):
        _pay(order, 100)


def test_purchase_refund_reduces_paid_amount(purchase_order):
    po = po_service.add_payment(purchase_order.id, amount_cents=1000, actor_id=ACTOR_ID)
    assert (po.paid_amount_cents, po.payment_status) == (1000, "partial")
    payment = (
        db.session.query(Payment)
        .filter_by(purchase_order_id=po.id, status="completed")
        .one()
    )

    payment_service.process_refund(payment.id, amount_cents=400, reason="Short shipment")
    po = po_service.get_purchase_order(po.id)
    assert (po.paid_amount_cents, po.payment_status) == (600, "partial")

    payment_service.process_refund(payment.id, amount_cents=600, reason="Short shipment")
    po = po_service.get_purchase_order(po.id)
    assert (po.paid_amount_cents, po.payment_status) == (0, "unpaid")


def test_completing_purchase_stub_pays_po(purchase_order):
    stub = _stub(purchase_order_id=purchase_order.id)
    payment_service.complete_payment(stub.id, actor_id=ACTOR_ID)

    po = po_service.get_purchase_order(purchase_order.id)
    assert (po.paid_amount_cents, po.payment_status) == (2000, "paid")


def test_listing_and_stats(order, purchase_order):
    _pay(order, 1100)
    po_service.add_payment(purchase_order.id, amount_cents=1000, actor_id=ACTOR_ID)

    sales, total = payment_service.list_payments(payment_type="sales", status="completed")
    assert total == 1
    assert sales[0].order_id == order.id

    history = payment_service.payments_for_order(order.id)
    assert [p.status for p in history] == ["pending", "completed"]

    stats = payment_service.payment_stats()
    assert stats["by_type"]["sales"]["net_cents"] == 1100
    assert stats["by_type"]["purchase"]["net_cents"] == 1000
    assert stats["net_cash_flow_cents"] == 100
    assert stats["by_status"]["pending"] == 2
    assert stats["by_method"]["cash"]["count"] == 1

    with pytest.raises(ValidationError):
        payment_service.list_payments(status="bogus")


def test_delivery_of_a_prepaid_order_does_not_collect_again(order):
    _pay(order, 1100)
    order_service.transition_order_status(order.id, "processing", actor_id=ACTOR_ID)
    order_service.transition_order_status(order.id, "shipping", actor_id=ACTOR_ID)
    order_service.transition_order_status(order.id, "delivered", actor_id=ACTOR_ID)

    assert payment_service.order_net_paid_cents(order.id) == (1100, False)
    assert _reload_order(order.id).payment_status == "paid"
    stub = db.session.query(Payment).filter_by(order_id=order.id, amount_cents=1100, status="cancelled").one()
    assert stub.cancel_reason
    assert payment_service.payment_stats()["net_cash_flow_cents"] == 1100


def test_delivery_collects_only_the_outstanding_balance(order):
    _pay(order, 400)
    order_service.transition_order_status(order.id, "shipping", actor_id=ACTOR_ID)
    order_service.transition_order_status(order.id, "delivered", actor_id=ACTOR_ID)

    assert payment_service.order_net_paid_cents(order.id) == (1100, False)
    settled = db.session.query(Payment).filter_by(order_id=order.id, status="completed").order_by(Payment.amount_cents).all()
    assert [p.amount_cents for p in settled] == [400, 700]
