# Overview: Order lifecycle state machine; creation, edits and transitions driving the inventory ledger.

from __future__ import annotations

"""
Order lifecycle (authoritative)

Statuses:
    pending -> processing -> shipping -> delivered
    pending/processing -> cancelled
    pending -> shipping is allowed (skip processing)
    delivered and cancelled are terminal; re-entering the current status is
    rejected.

Ledger effects:
    create      reserve every line
    shipping    stock_out every line (consumes the reservation)
    cancelled   release every line
    update      release old lines, reserve new lines

Each ledger call commits on its own. Every workflow registers undo steps in a
Compensation list so a failure part-way through leaves the ledger and the
order as they were before the call.

Transitions are claimed with a conditional UPDATE on the current status, so
two concurrent requests cannot both ship or both cancel the same order.
"""

from collections import OrderedDict

from sqlalchemy import func, or_, update

from flask import current_app

from ..errors import InvalidTransition, PaymentError, ReferenceNotFound, ValidationError
from ..extensions import db
from ..models import Order, OrderItem, Payment
from ..time_utils import utcnow
from . import inventory_service, payment_service
from .concurrency import Compensation, run_with_retry
from .directory_service import find_customer_by_email, get_product
from .document_service import next_document_number
from .pricing import DELIVERY_TYPES, quote_order


PENDING = "pending"
PROCESSING = "processing"
SHIPPING = "shipping"
DELIVERED = "delivered"
CANCELLED = "cancelled"
ORDER_STATUSES = {PENDING, PROCESSING, SHIPPING, DELIVERED, CANCELLED}

ALLOWED_TRANSITIONS = {
    PENDING: {PROCESSING, SHIPPING, CANCELLED},
    PROCESSING: {SHIPPING, CANCELLED},
    SHIPPING: {DELIVERED},
    DELIVERED: set(),
    CANCELLED: set(),
}

EDITABLE_STATUSES = {PENDING, PROCESSING}

MANUAL_PAYMENT_STATUSES = {"pending", "paid", "failed", "refunded"}
ORDER_PAYMENT_STATUSES = {"pending", "partial", "paid", "failed", "refunded"}

_SORTS = {
    "newest": (Order.created_at.desc(), Order.id.desc()),
    "oldest": (Order.created_at.asc(), Order.id.asc()),
    "total_high": (Order.total_cents.desc(), Order.id.desc()),
    "total_low": (Order.total_cents.asc(), Order.id.asc()),
}


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise ReferenceNotFound("order not found", {"order_id": order_id})
    return order


def _normalize_items(items) -> list[dict]:
    """
    Validate requested lines and snapshot product data.

    Duplicate product ids are merged so each product is reserved once.
    """
    if not isinstance(items, list) or not items:
        raise ValidationError("order must contain at least one item")

    merged: "OrderedDict[int, int]" = OrderedDict()
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError("invalid item", {"index": index})
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        if isinstance(product_id, bool) or not isinstance(product_id, int):
            raise ValidationError("product_id must be an integer", {"index": index})
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("quantity must be at least 1", {"index": index, "quantity": quantity})
        merged[product_id] = merged.get(product_id, 0) + quantity

    lines = []
    for product_id, quantity in merged.items():
        product = get_product(product_id, require_active=True)
        lines.append({
            "product_id": product.id,
            "product_name": product.name,
            "sku": product.sku,
            "price_cents": product.price_cents,
            "quantity": quantity,
            "subtotal_cents": product.price_cents * quantity,
        })
    return lines


def _price(lines: list[dict], *, customer_email: str, delivery_type: str):
    customer = find_customer_by_email(customer_email)
    quote = quote_order(
        line_subtotals=[line["subtotal_cents"] for line in lines],
        customer_type=customer.customer_type if customer else None,
        delivery_type=delivery_type,
        is_walk_in=customer is None,
    )
    return customer, quote


def _apply_quote(order: Order, quote) -> None:
    order.subtotal_cents = quote.subtotal_cents
    order.discount_cents = quote.discount_cents
    order.discount_type = quote.discount_type
    order.discount_percentage = quote.discount_percentage
    order.shipping_fee_cents = quote.shipping_fee_cents
    order.tax_cents = quote.tax_cents
    order.total_cents = quote.total_cents


def _validate_delivery(delivery_type: str, shipping_address: str | None) -> None:
    if delivery_type not in DELIVERY_TYPES:
        raise ValidationError("invalid delivery_type", {"delivery_type": delivery_type})
    if delivery_type == "delivery" and not (shipping_address or "").strip():
        raise ValidationError("shipping_address is required for delivery orders")


def _reserve_lines(saga: Compensation, order_id: int, lines, *, actor_id, reason: str) -> None:
    for line in lines:
        product_id, quantity = line["product_id"], line["quantity"]
        inventory_service.reserve(
            product_id=product_id,
            quantity=quantity,
            reference_id=order_id,
            actor_id=actor_id,
            reason=reason,
        )
        saga.add(
            f"release {quantity} of product {product_id}",
            lambda p=product_id, q=quantity: inventory_service.release(
                product_id=p, quantity=q, reference_id=order_id, actor_id=actor_id,
                reason="Reservation rolled back",
            ),
        )


def _release_lines(saga: Compensation, order_id: int, lines, *, actor_id, reason: str) -> None:
    for line in lines:
        product_id, quantity = line["product_id"], line["quantity"]
        inventory_service.release(
            product_id=product_id,
            quantity=quantity,
            reference_id=order_id,
            actor_id=actor_id,
            reason=reason,
        )
        saga.add(
            f"re-reserve {quantity} of product {product_id}",
            lambda p=product_id, q=quantity: inventory_service.reserve(
                product_id=p, quantity=q, reference_id=order_id, actor_id=actor_id,
                reason="Release rolled back",
            ),
        )


def _delete_order(order_id: int) -> None:
    def _op():
        order = db.session.get(Order, order_id)
        if order is not None:
            db.session.query(Payment).filter_by(order_id=order_id).delete(synchronize_session=False)
            db.session.delete(order)
            db.session.commit()
    run_with_retry(_op)


# ---------------------------------------------------------------------------
# Create / update
# ---------------------------------------------------------------------------

def create_order(
    *,
    items,
    customer_name: str,
    customer_email: str,
    customer_phone: str | None = None,
    delivery_type: str = "delivery",
    shipping_address: str | None = None,
    payment_method: str = "cod",
    customer_note: str | None = None,
    user_id: int | None = None,
    actor_id: int | None = None,
) -> Order:
    """
    Create an order, reserve its stock and open a pending payment.

    Steps: persist order -> reserve each line -> payment stub. Any failure
    undoes the completed steps in reverse (releasing reservations, deleting
    the stub and the order) and re-raises the original error.
    """
    if not (customer_name or "").strip():
        raise ValidationError("customer name is required")
    if not (customer_email or "").strip():
        raise ValidationError("customer email is required")
    _validate_delivery(delivery_type, shipping_address)
    payment_service._require_method(payment_method)

    lines = _normalize_items(items)
    customer, quote = _price(lines, customer_email=customer_email, delivery_type=delivery_type)
    order_number = next_document_number(document_type="order", prefix="ORD-")

    def _persist() -> int:
        order = Order(
            order_number=order_number,
            user_id=user_id,
            customer_id=customer.id if customer else None,
            customer_name=customer_name.strip(),
            customer_email=customer_email.strip(),
            customer_phone=customer_phone,
            delivery_type=delivery_type,
            shipping_address=shipping_address if delivery_type == "delivery" else None,
            payment_method=payment_method,
            customer_note=customer_note,
            status=PENDING,
            payment_status="pending",
        )
        _apply_quote(order, quote)
        order.items = [OrderItem(**line) for line in lines]
        db.session.add(order)
        db.session.commit()
        return order.id

    order_id = run_with_retry(_persist)

    with Compensation(f"order {order_number} create") as saga:
        saga.add(f"delete order {order_number}", lambda: _delete_order(order_id))

        _reserve_lines(saga, order_id, lines, actor_id=actor_id, reason=f"Reserved for order {order_number}")

        def _stub() -> None:
            order = get_order(order_id)
            payment_service.build_stub(
                payment_type=payment_service.TYPE_SALES,
                amount_cents=order.total_cents,
                payment_method=payment_method,
                order=order,
                actor_id=actor_id,
            )
            db.session.commit()

        # Payments must be positive; a free order has nothing to collect
        if quote.total_cents > 0:
            run_with_retry(_stub)
        saga.discard()

    current_app.logger.info("Created order %s (total %s cents)", order_number, quote.total_cents)
    return get_order(order_id)


def update_order(
    order_id: int,
    *,
    items=None,
    customer_name: str | None = None,
    customer_email: str | None = None,
    customer_phone: str | None = None,
    delivery_type: str | None = None,
    shipping_address: str | None = None,
    payment_method: str | None = None,
    customer_note: str | None = None,
    actor_id: int | None = None,
) -> Order:
    """
    Edit a pending or processing order.

    With new items the old reservations are released and the new set is
    reserved; if anything fails the original reservations are restored and
    the order row is left untouched. Totals and the pending payment stub are
    re-priced either way.
    """
    order = get_order(order_id)
    if order.status not in EDITABLE_STATUSES:
        raise InvalidTransition(
            "order can only be edited while pending or processing",
            current=order.status,
            requested="update",
        )

    new_delivery = delivery_type or order.delivery_type
    new_address = shipping_address if shipping_address is not None else order.shipping_address
    _validate_delivery(new_delivery, new_address)
    if payment_method is not None:
        payment_service._require_method(payment_method)
    new_email = (customer_email or order.customer_email).strip()

    old_lines = [{"product_id": i.product_id, "quantity": i.quantity} for i in order.items]
    if items is not None:
        new_lines = _normalize_items(items)
    else:
        new_lines = [
            {
                "product_id": i.product_id,
                "product_name": i.product_name,
                "sku": i.sku,
                "price_cents": i.price_cents,
                "quantity": i.quantity,
                "subtotal_cents": i.subtotal_cents,
            }
            for i in order.items
        ]
    customer, quote = _price(new_lines, customer_email=new_email, delivery_type=new_delivery)
    order_number = order.order_number

    with Compensation(f"order {order_number} update") as saga:
        if items is not None:
            _release_lines(saga, order_id, old_lines, actor_id=actor_id, reason=f"Order {order_number} edited")
            _reserve_lines(saga, order_id, new_lines, actor_id=actor_id, reason=f"Reserved for order {order_number}")

        def _op() -> None:
            current = get_order(order_id)
            if current.status not in EDITABLE_STATUSES:
                raise InvalidTransition(
                    "order changed state during update",
                    current=current.status,
                    requested="update",
                )
            if items is not None:
                current.items = [OrderItem(**line) for line in new_lines]
            if customer_name is not None:
                current.customer_name = customer_name.strip()
            current.customer_email = new_email
            if customer_phone is not None:
                current.customer_phone = customer_phone
            current.customer_id = customer.id if customer else None
            current.delivery_type = new_delivery
            current.shipping_address = new_address if new_delivery == "delivery" else None
            if payment_method is not None:
                current.payment_method = payment_method
            if customer_note is not None:
                current.customer_note = customer_note
            _apply_quote(current, quote)
            db.session.flush()
            payment_service.update_pending_stub_amount(current)
            db.session.commit()

        run_with_retry(_op)
        saga.discard()

    current_app.logger.info("Updated order %s", order_number)
    return get_order(order_id)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def _claim_transition(order_id: int, current: str, new_status: str) -> None:
    """Flip status only if it is still ``current``; otherwise InvalidTransition."""
    def _op() -> None:
        result = db.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == current)
            .values(status=new_status, version_id=Order.version_id + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            raise InvalidTransition(
                "order status changed concurrently",
                current=current,
                requested=new_status,
            )
        db.session.commit()
    run_with_retry(_op)


def _restore_status(order_id: int, claimed: str, original: str) -> None:
    def _op() -> None:
        db.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == claimed)
            .values(status=original, version_id=Order.version_id + 1)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    run_with_retry(_op)


def _ship_lines(saga: Compensation, order: Order, *, actor_id) -> None:
    for item in order.items:
        product_id, quantity = item.product_id, item.quantity
        inventory_service.stock_out(
            product_id=product_id,
            quantity=quantity,
            reason=f"Shipped for order {order.order_number}",
            reference_id=order.id,
            reference_type=inventory_service.REF_ORDER,
            actor_id=actor_id,
        )

        def _undo(p=product_id, q=quantity, order_id=order.id):
            inventory_service.stock_in(
                product_id=p, quantity=q, reason="Shipment rolled back",
                reference_id=order_id, reference_type=inventory_service.REF_ORDER, actor_id=actor_id,
            )
            inventory_service.reserve(
                product_id=p, quantity=q, reference_id=order_id, actor_id=actor_id,
                reason="Shipment rolled back",
            )

        saga.add(f"return {quantity} of product {product_id} to stock", _undo)


def transition_order_status(order_id: int, new_status: str, *, actor_id: int | None = None) -> Order:
    """
    Move an order along its state machine and apply the ledger effects.

    The status is claimed first; the ledger steps follow under a
    Compensation list whose first undo puts the old status back.
    """
    if new_status not in ORDER_STATUSES:
        raise ValidationError("invalid status", {"status": new_status, "allowed": sorted(ORDER_STATUSES)})

    order = get_order(order_id)
    current = order.status
    if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(
            f"cannot change order status from {current} to {new_status}",
            current=current,
            requested=new_status,
        )

    _claim_transition(order_id, current, new_status)

    with Compensation(f"order {order.order_number} {current}->{new_status}") as saga:
        saga.add(f"restore status {current}", lambda: _restore_status(order_id, new_status, current))

        order = get_order(order_id)
        if new_status == SHIPPING:
            _ship_lines(saga, order, actor_id=actor_id)
        elif new_status == CANCELLED:
            lines = [{"product_id": i.product_id, "quantity": i.quantity} for i in order.items]
            _release_lines(
                saga, order_id, lines, actor_id=actor_id,
                reason=f"Order {order.order_number} cancelled",
            )

        def _finalize() -> None:
            current_order = get_order(order_id)
            now = utcnow()
            if new_status == PROCESSING:
                current_order.processing_at = now
            elif new_status == SHIPPING:
                current_order.shipped_at = now
            elif new_status == DELIVERED:
                current_order.delivered_at = now
                payment_service.settle_order_stubs(current_order, actor_id=actor_id)
                current_order.payment_status = "paid"
                current_order.paid_at = current_order.paid_at or now
            elif new_status == CANCELLED:
                current_order.cancelled_at = now
                payment_service.cancel_pending_stubs(order_id=order_id, reason="Order cancelled")
            db.session.commit()

        run_with_retry(_finalize)
        saga.discard()

    current_app.logger.info("Order %s moved %s -> %s", order.order_number, current, new_status)
    return get_order(order_id)


def set_payment_status(order_id: int, payment_status: str) -> Order:
    if payment_status not in MANUAL_PAYMENT_STATUSES:
        raise ValidationError(
            "invalid payment status",
            {"payment_status": payment_status, "allowed": sorted(MANUAL_PAYMENT_STATUSES)},
        )

    def _op() -> Order:
        order = get_order(order_id)
        order.payment_status = payment_status
        if payment_status == "paid" and order.paid_at is None:
            order.paid_at = utcnow()
        db.session.commit()
        return order

    return run_with_retry(_op)


def set_tracking_number(order_id: int, tracking_number: str) -> Order:
    if not (tracking_number or "").strip():
        raise ValidationError("tracking_number is required")

    def _op() -> Order:
        order = get_order(order_id)
        order.tracking_number = tracking_number.strip()
        db.session.commit()
        return order

    return run_with_retry(_op)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


DELETABLE_PAYMENT_STATUSES = {"paid", "failed", "refunded"}


def delete_order(order_id: int) -> None:
    """
    Remove a settled order and its payments.

    Only paid, failed or refunded orders qualify, and never while the order
    still holds reservations (pending or processing).
    """
    def _op() -> None:
        order = get_order(order_id)
        if order.status in EDITABLE_STATUSES:
            raise InvalidTransition(
                "orders holding reservations must be cancelled or shipped before deletion",
                current=order.status,
                requested="deleted",
            )
        if order.payment_status not in DELETABLE_PAYMENT_STATUSES:
            raise PaymentError(
                "only paid, failed or refunded orders can be deleted",
                {"order_id": order.id, "payment_status": order.payment_status},
            )
        number = order.order_number
        db.session.query(Payment).filter_by(order_id=order.id).delete(synchronize_session=False)
        db.session.delete(order)
        db.session.commit()
        current_app.logger.info("Deleted order %s", number)

    run_with_retry(_op)

def list_orders(
    *,
    status: str | None = None,
    payment_status: str | None = None,
    search: str | None = None,
    sort: str = "newest",
    page: int = 1,
    limit: int = 20,
    user_id: int | None = None,
) -> tuple[list[Order], int]:
    q = db.session.query(Order)
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationError("invalid status", {"status": status})
        q = q.filter(Order.status == status)
    if payment_status:
        if payment_status not in ORDER_PAYMENT_STATUSES:
            raise ValidationError("invalid payment status", {"payment_status": payment_status})
        q = q.filter(Order.payment_status == payment_status)
    if user_id is not None:
        q = q.filter(Order.user_id == user_id)
    if search:
        like = f"%{search.strip()}%"
        q = q.filter(or_(
            Order.order_number.ilike(like),
            Order.customer_name.ilike(like),
            Order.customer_email.ilike(like),
        ))

    ordering = _SORTS.get(sort)
    if ordering is None:
        raise ValidationError("invalid sort", {"sort": sort, "allowed": sorted(_SORTS)})

    total = q.count()
    items = q.order_by(*ordering).offset((page - 1) * limit).limit(limit).all()
    return items, total


def list_orders_for_user(user_id: int, *, page: int = 1, limit: int = 20) -> tuple[list[Order], int]:
    return list_orders(user_id=user_id, page=page, limit=limit)


def order_stats() -> dict:
    by_status = {status: 0 for status in sorted(ORDER_STATUSES)}
    for status, count in db.session.query(Order.status, func.count(Order.id)).group_by(Order.status).all():
        by_status[status] = int(count)

    revenue = (
        db.session.query(func.coalesce(func.sum(Order.total_cents), 0))
        .filter(Order.payment_status == "paid")
        .scalar()
    )
    return {
        "total_orders": sum(by_status.values()),
        "by_status": by_status,
        "revenue_cents": int(revenue or 0),
    }
