"""
Order lifecycle tests: pricing, reservations, transitions and compensation.
"""

import pytest

from backoffice.errors import InsufficientStock, InvalidTransition, PaymentError, ValidationError
from backoffice.extensions import db
from backoffice.models import InventoryMovement, Order, Payment, Product
from backoffice.services import inventory_service, order_service

from conftest import ACTOR_ID, record_for, walk_in_order_kwargs


@pytest.fixture
def two_products(stocked_product):
    first = stocked_product("ORD-A", 50, price_cents=1000)
    second = stocked_product("ORD-B", 50, price_cents=2000)
    return first, second


def _create(first, second, **overrides):
    return order_service.create_order(
        items=[
            {"product_id": first.id, "quantity": 2},
            {"product_id": second.id, "quantity": 3},
        ],
        **walk_in_order_kwargs(**overrides),
    )


def test_walk_in_delivery_order_totals_and_reservations(two_products):
    first, second = two_products

    order = _create(first, second)

    assert order.order_number == "ORD-000001"
    assert order.status == "pending"
    assert order.subtotal_cents == 8000
    assert order.shipping_fee_cents == 1000
    assert order.tax_cents == 800
    assert order.discount_cents == 0
    assert order.total_cents == 9800
    assert [(i.sku, i.quantity, i.subtotal_cents) for i in order.items] == [("ORD-A", 2, 2000), ("ORD-B", 3, 6000)]

    assert record_for(first.id).quantity_reserved == 2
    assert record_for(second.id).quantity_reserved == 3

    stub = db.session.query(Payment).filter_by(order_id=order.id).one()
    assert stub.status == "pending"
    assert stub.payment_type == "sales"
    assert stub.amount_cents == 9800
    assert stub.related_number == "ORD-000001"


def test_known_customer_gets_tier_discount_and_no_shipping(two_products, make_customer):
    first, second = two_products
    make_customer("vip@example.test", customer_type="vip")

    order = _create(first, second, customer_email="VIP@example.test")

    assert order.customer_id is not None
    assert order.discount_type == "vip"
    assert order.discount_percentage == 15
    assert order.discount_cents == 1200
    assert order.shipping_fee_cents == 0
    assert order.total_cents == 8000 - 1200 + 800


def test_pickup_walk_in_pays_no_shipping(two_products):
    first, second = two_products
    order = _create(first, second, delivery_type="pickup", shipping_address=None)
    assert order.shipping_fee_cents == 0
    assert order.shipping_address is None


def test_second_item_shortage_rolls_back_everything(stocked_product):
    plenty = stocked_product("RB-A", 10)
    scarce = stocked_product("RB-B", 1)

    with pytest.raises(InsufficientStock):
        order_service.create_order(
            items=[
                {"product_id": plenty.id, "quantity": 4},
                {"product_id": scarce.id, "quantity": 2},
            ],
            **walk_in_order_kwargs(),
        )

    assert record_for(plenty.id).quantity_reserved == 0
    assert record_for(plenty.id).quantity_available == 10
    assert record_for(scarce.id).quantity_reserved == 0
    assert db.session.query(Order).count() == 0
    assert db.session.query(Payment).count() == 0

    moves = (
        db.session.query(InventoryMovement.type)
        .filter_by(product_id=plenty.id)
        .order_by(InventoryMovement.id)
        .all()
    )
    assert [m.type for m in moves] == ["in", "reserved", "released"]


def test_free_pickup_order_has_no_payment_stub(stocked_product):
    freebie = stocked_product("FREE-1", 5, price_cents=0)

    order = order_service.create_order(
        items=[{"product_id": freebie.id, "quantity": 1}],
        **walk_in_order_kwargs(delivery_type="pickup", shipping_address=None),
    )

    assert order.total_cents == 0
    assert record_for(freebie.id).quantity_reserved == 1
    assert db.session.query(Payment).filter_by(order_id=order.id).count() == 0


def test_inactive_product_is_rejected(make_product, stocked_product):
    inactive = make_product("OFF-1", is_active=False)
    with pytest.raises(ValidationError):
        order_service.create_order(items=[{"product_id": inactive.id, "quantity": 1}], **walk_in_order_kwargs())


def test_delivery_requires_address(two_products):
    first, second = two_products
    with pytest.raises(ValidationError):
        _create(first, second, shipping_address="  ")


def test_shipping_converts_reservation_into_stock_out(two_products):
    first, second = two_products
    order = _create(first, second)

    order_service.transition_order_status(order.id, "processing", actor_id=ACTOR_ID)
    order = order_service.transition_order_status(order.id, "shipping", actor_id=ACTOR_ID)

    assert order.status == "shipping"
    assert order.processing_at is not None
    assert order.shipped_at is not None

    a, b = record_for(first.id), record_for(second.id)
    assert (a.quantity_on_hand, a.quantity_reserved) == (48, 0)
    assert (b.quantity_on_hand, b.quantity_reserved) == (47, 0)
    assert db.session.get(Product, first.id).stock == 48

    outs = db.session.query(InventoryMovement).filter_by(type="out", reference_id=str(order.id)).all()
    assert sorted(m.quantity for m in outs) == [2, 3]


def test_delivery_marks_order_paid_and_settles_stub(two_products):
    first, second = two_products
    order = _create(first, second)
    order_service.transition_order_status(order.id, "shipping", actor_id=ACTOR_ID)

    order = order_service.transition_order_status(order.id, "delivered", actor_id=ACTOR_ID)

    assert order.payment_status == "paid"
    assert order.paid_at is not None
    assert order.delivered_at is not None
    stub = db.session.query(Payment).filter_by(order_id=order.id).one()
    assert stub.status == "completed"


def test_cancel_releases_without_touching_on_hand(two_products):
    first, second = two_products
    order = _create(first, second)

    order = order_service.transition_order_status(order.id, "cancelled", actor_id=ACTOR_ID)

    assert order.cancelled_at is not None
    a = record_for(first.id)
    assert (a.quantity_on_hand, a.quantity_reserved, a.quantity_available) == (50, 0, 50)
    assert db.session.query(Payment).filter_by(order_id=order.id).one().status == "cancelled"


@pytest.mark.parametrize(
    "path, target",
    [
        ([], "delivered"),
        ([], "pending"),
        (["shipping"], "cancelled"),
        (["shipping"], "processing"),
        (["cancelled"], "processing"),
        (["processing"], "processing"),
    ],
)
def test_invalid_transitions_are_rejected(two_products, path, target):
    first, second = two_products
    order = _create(first, second)
    for status in path:
        order_service.transition_order_status(order.id, status, actor_id=ACTOR_ID)
    before = record_for(first.id)
    snapshot = (before.quantity_on_hand, before.quantity_reserved)

    with pytest.raises(InvalidTransition) as excinfo:
        order_service.transition_order_status(order.id, target, actor_id=ACTOR_ID)

    assert excinfo.value.details["to"] == target
    after = record_for(first.id)
    assert (after.quantity_on_hand, after.quantity_reserved) == snapshot


def test_failed_shipment_restores_stock_and_status(two_products):
    first, second = two_products
    order = _create(first, second)
    # Out-of-band: drop the second line's reservation and most of its stock
    inventory_service.release(product_id=second.id, quantity=3, reference_id=order.id, actor_id=ACTOR_ID)
    inventory_service.adjust(product_id=second.id, new_on_hand=1, reason="Damaged", actor_id=ACTOR_ID)

    with pytest.raises(InsufficientStock):
        order_service.transition_order_status(order.id, "shipping", actor_id=ACTOR_ID)

    db.session.expire_all()
    assert db.session.get(Order, order.id).status == "pending"
    a = record_for(first.id)
    assert (a.quantity_on_hand, a.quantity_reserved) == (50, 2)
    assert db.session.get(Product, first.id).stock == 50


def test_update_order_reprices_and_moves_reservations(two_products, stocked_product):
    first, second = two_products
    third = stocked_product("ORD-C", 5, price_cents=500)
    order = _create(first, second)

    order = order_service.update_order(
        order.id,
        items=[{"product_id": third.id, "quantity": 4}],
        actor_id=ACTOR_ID,
    )

    assert [(i.product_id, i.quantity) for i in order.items] == [(third.id, 4)]
    assert order.subtotal_cents == 2000
    assert order.total_cents == 2000 + 1000 + 200
    assert record_for(first.id).quantity_reserved == 0
    assert record_for(second.id).quantity_reserved == 0
    assert record_for(third.id).quantity_reserved == 4
    stub = db.session.query(Payment).filter_by(order_id=order.id).one()
    assert stub.amount_cents == order.total_cents


def test_failed_update_leaves_order_and_reservations_unchanged(two_products, stocked_product):
    first, second = two_products
    scarce = stocked_product("ORD-SCARCE", 1)
    order = _create(first, second)

    with pytest.raises(InsufficientStock):
        order_service.update_order(
            order.id,
            items=[
                {"product_id": first.id, "quantity": 1},
                {"product_id": scarce.id, "quantity": 5},
            ],
            actor_id=ACTOR_ID,
        )

    db.session.expire_all()
    order = db.session.get(Order, order.id)
    assert [(i.product_id, i.quantity) for i in order.items] == [(first.id, 2), (second.id, 3)]
    assert order.total_cents == 9800
    assert record_for(first.id).quantity_reserved == 2
    assert record_for(second.id).quantity_reserved == 3
    assert record_for(scarce.id).quantity_reserved == 0


def test_shipped_order_cannot_be_edited(two_products):
    first, second = two_products
    order = _create(first, second)
    order_service.transition_order_status(order.id, "shipping", actor_id=ACTOR_ID)

    with pytest.raises(InvalidTransition):
        order_service.update_order(order.id, customer_note="leave at door", actor_id=ACTOR_ID)


def test_order_queries_and_stats(two_products):
    first, second = two_products
    cheap = order_service.create_order(
        items=[{"product_id": first.id, "quantity": 1}],
        **walk_in_order_kwargs(delivery_type="pickup", shipping_address=None),
    )
    big = _create(first, second, customer_email="someone@example.test")
    order_service.set_payment_status(big.id, "paid")
    order_service.set_tracking_number(big.id, " TRK-1 ")

    orders, total = order_service.list_orders(sort="total_high")
    assert total == 2
    assert [o.id for o in orders] == [big.id, cheap.id]

    orders, total = order_service.list_orders(payment_status="paid")
    assert [o.id for o in orders] == [big.id]

    orders, total = order_service.list_orders(search="someone@")
    assert [o.id for o in orders] == [big.id]

    assert order_service.get_order(big.id).tracking_number == "TRK-1"

    stats = order_service.order_stats()
    assert stats["total_orders"] == 2
    assert stats["by_status"]["pending"] == 2
    assert stats["revenue_cents"] == 9800

    with pytest.raises(ValidationError):
        order_service.set_payment_status(big.id, "partial")


def test_delete_requires_settled_payment_and_no_reservations(two_products):
    first, second = two_products
    order = _create(first, second)

    with pytest.raises(InvalidTransition):
        order_service.delete_order(order.id)

    order_service.transition_order_status(order.id, "cancelled", actor_id=ACTOR_ID)
    with pytest.raises(PaymentError):
        order_service.delete_order(order.id)

    order_service.set_payment_status(order.id, "failed")
    order_service.delete_order(order.id)

    assert db.session.query(Order).count() == 0
    assert db.session.query(Payment).filter_by(order_id=order.id).count() == 0
    assert record_for(first.id).quantity_on_hand == 50


def test_delivered_order_can_be_deleted(two_products):
    first, second = two_products
    order = _create(first, second)
    order_service.transition_order_status(order.id, "shipping", actor_id=ACTOR_ID)
    order_service.transition_order_status(order.id, "delivered", actor_id=ACTOR_ID)

    order_service.delete_order(order.id)

    assert db.session.get(Order, order.id) is None
    assert record_for(first.id).quantity_on_hand == 48
