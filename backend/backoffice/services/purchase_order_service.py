# Overview: Supplier purchase orders; approval, receiving into stock, payments and stats.

from __future__ import annotations

"""
Purchase order workflow (authoritative)

Statuses:
    pending -> approved -> received
    pending/approved -> cancelled (never once anything was received)

Receiving:
- Only approved POs can receive.
- Every requested line is validated before the first ledger write: the
  product must be on the PO and the quantity may not exceed
  ordered - received.
- Lines are then stocked in one by one under a Compensation list; the PO
  lines are updated last. A failure part-way through takes the stock back
  out again.
- The PO becomes ``received`` only when every line is complete; a partial
  delivery leaves it ``approved``.

Money:
- total = subtotal + shipping + tax - discount, fixed while pending.
- paid_amount_cents is moved by completed purchase payments (see
  payment_service) and never exceeds the total.
"""

from collections import OrderedDict
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm.exc import StaleDataError

from flask import current_app

from ..errors import InvalidTransition, OverReceive, PaymentError, ReferenceNotFound, ValidationError
from ..extensions import db
from ..models import Payment, PurchaseOrder, PurchaseOrderLine
from ..time_utils import utcnow
from . import inventory_service, payment_service
from .concurrency import Compensation, run_with_retry
from .directory_service import get_product, get_supplier
from .document_service import next_document_number


PENDING = "pending"
APPROVED = "approved"
RECEIVED = "received"
CANCELLED = "cancelled"
PO_STATUSES = {PENDING, APPROVED, RECEIVED, CANCELLED}


def get_purchase_order(po_id: int) -> PurchaseOrder:
    po = db.session.get(PurchaseOrder, po_id)
    if po is None:
        raise ReferenceNotFound("purchase order not found", {"purchase_order_id": po_id})
    return po


def _non_negative_cents(value, field: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{field} must be a non-negative number of cents", {field: value})
    return value


def _build_lines(items) -> list[PurchaseOrderLine]:
    if not isinstance(items, list) or not items:
        raise ValidationError("purchase order must contain at least one item")

    lines = []
    seen = set()
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError("invalid item", {"index": index})
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        unit_price = item.get("unit_price_cents")
        if isinstance(product_id, bool) or not isinstance(product_id, int):
            raise ValidationError("product_id must be an integer", {"index": index})
        if product_id in seen:
            raise ValidationError("product appears more than once", {"index": index, "product_id": product_id})
        seen.add(product_id)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("quantity must be at least 1", {"index": index, "quantity": quantity})
        unit_price = _non_negative_cents(unit_price, "unit_price_cents")

        product = get_product(product_id)
        lines.append(PurchaseOrderLine(
            product_id=product.id,
            product_name=product.name,
            sku=product.sku,
            quantity_ordered=quantity,
            unit_price_cents=unit_price,
            subtotal_cents=quantity * unit_price,
            quantity_received=0,
        ))
    return lines


def _apply_totals(po: PurchaseOrder, lines, *, shipping_fee_cents, tax_cents, discount_cents) -> None:
    po.subtotal_cents = sum(line.subtotal_cents for line in lines)
    po.shipping_fee_cents = shipping_fee_cents
    po.tax_cents = tax_cents
    po.discount_cents = discount_cents
    total = po.subtotal_cents + shipping_fee_cents + tax_cents - discount_cents
    if total < 0:
        raise ValidationError("discount exceeds the purchase order value", {"total_cents": total})
    po.total_cents = total


def create_purchase_order(
    *,
    supplier_id: int,
    items,
    shipping_fee_cents: int | None = None,
    tax_cents: int | None = None,
    discount_cents: int | None = None,
    expected_delivery_date: datetime | None = None,
    notes: str | None = None,
    payment_method: str = "bank_transfer",
    actor_id: int | None = None,
) -> PurchaseOrder:
    """Create a pending PO with a pending purchase payment for its total."""
    supplier = get_supplier(supplier_id)
    shipping = _non_negative_cents(shipping_fee_cents, "shipping_fee_cents")
    tax = _non_negative_cents(tax_cents, "tax_cents")
    discount = _non_negative_cents(discount_cents, "discount_cents")
    payment_service._require_method(payment_method)
    lines = _build_lines(items)

    po_number = next_document_number(
        document_type="purchase_order",
        prefix=f"PO{utcnow().year}",
    )

    def _op() -> PurchaseOrder:
        po = PurchaseOrder(
            po_number=po_number,
            supplier_id=supplier.id,
            expected_delivery_date=expected_delivery_date,
            notes=notes,
            status=PENDING,
            payment_status="unpaid",
            paid_amount_cents=0,
            created_by=actor_id,
        )
        _apply_totals(po, lines, shipping_fee_cents=shipping, tax_cents=tax, discount_cents=discount)
        po.lines = lines
        db.session.add(po)
        db.session.flush()

        if po.total_cents > 0:
            payment_service.build_stub(
                payment_type=payment_service.TYPE_PURCHASE,
                amount_cents=po.total_cents,
                payment_method=payment_method,
                purchase_order=po,
                actor_id=actor_id,
            )
        db.session.commit()
        return po

    po = run_with_retry(_op)
    current_app.logger.info("Created purchase order %s (total %s cents)", po.po_number, po.total_cents)
    return po


def update_purchase_order(
    po_id: int,
    *,
    items=None,
    shipping_fee_cents: int | None = None,
    tax_cents: int | None = None,
    discount_cents: int | None = None,
    expected_delivery_date: datetime | None = None,
    notes: str | None = None,
) -> PurchaseOrder:
    def _op() -> PurchaseOrder:
        po = get_purchase_order(po_id)
        if po.status != PENDING:
            raise InvalidTransition(
                "purchase order can only be edited while pending",
                current=po.status,
                requested="update",
            )
        lines = _build_lines(items) if items is not None else list(po.lines)
        _apply_totals(
            po,
            lines,
            shipping_fee_cents=_non_negative_cents(shipping_fee_cents, "shipping_fee_cents")
            if shipping_fee_cents is not None else po.shipping_fee_cents,
            tax_cents=_non_negative_cents(tax_cents, "tax_cents") if tax_cents is not None else po.tax_cents,
            discount_cents=_non_negative_cents(discount_cents, "discount_cents")
            if discount_cents is not None else po.discount_cents,
        )
        if po.total_cents < po.paid_amount_cents:
            raise PaymentError(
                "new total is below the amount already paid",
                {"total_cents": po.total_cents, "paid_amount_cents": po.paid_amount_cents},
            )
        if items is not None:
            po.lines = lines
        if expected_delivery_date is not None:
            po.expected_delivery_date = expected_delivery_date
        if notes is not None:
            po.notes = notes
        po.payment_status = payment_service.derive_po_payment_status(po)

        for payment in db.session.query(Payment).filter_by(purchase_order_id=po.id, status="pending").all():
            if po.total_cents > 0:
                payment.amount_cents = po.total_cents
            else:
                db.session.delete(payment)
        db.session.commit()
        return po

    return run_with_retry(_op)


def approve_purchase_order(po_id: int, *, actor_id: int | None = None) -> PurchaseOrder:
    def _op() -> PurchaseOrder:
        po = get_purchase_order(po_id)
        if po.status != PENDING:
            raise InvalidTransition(
                "only pending purchase orders can be approved",
                current=po.status,
                requested=APPROVED,
            )
        po.status = APPROVED
        po.approved_by = actor_id
        po.approved_at = utcnow()
        db.session.commit()
        return po

    po = run_with_retry(_op)
    current_app.logger.info("Approved purchase order %s", po.po_number)
    return po


def _plan_receipt(po: PurchaseOrder, items) -> list[tuple[PurchaseOrderLine, int]]:
    """Validate a receipt against the PO without touching anything."""
    if not isinstance(items, list) or not items:
        raise ValidationError("at least one item must be received")

    requested: "OrderedDict[int, int]" = OrderedDict()
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError("invalid item", {"index": index})
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        if isinstance(product_id, bool) or not isinstance(product_id, int):
            raise ValidationError("product_id must be an integer", {"index": index})
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("quantity must be at least 1", {"index": index, "quantity": quantity})
        requested[product_id] = requested.get(product_id, 0) + quantity

    by_product = {line.product_id: line for line in po.lines}
    plan = []
    for product_id, quantity in requested.items():
        line = by_product.get(product_id)
        if line is None:
            raise ValidationError(
                "product is not on this purchase order",
                {"purchase_order_id": po.id, "product_id": product_id},
            )
        if quantity > line.remaining:
            raise OverReceive(
                "received quantity exceeds what remains on the order",
                {
                    "product_id": product_id,
                    "requested": quantity,
                    "ordered": line.quantity_ordered,
                    "received": line.quantity_received,
                    "remaining": line.remaining,
                },
            )
        plan.append((line, quantity))
    return plan


def receive_items(po_id: int, items, *, actor_id: int | None = None) -> PurchaseOrder:
    """
    Receive a (partial) delivery against an approved PO.

    The line updates are committed once at the end; if that commit loses an
    optimistic-lock race the stock-ins are compensated rather than retried.
    """
    po = get_purchase_order(po_id)
    if po.status != APPROVED:
        raise InvalidTransition(
            "only approved purchase orders can receive items",
            current=po.status,
            requested=RECEIVED,
        )
    plan = [(line.id, line.product_id, qty) for line, qty in _plan_receipt(po, items)]
    po_number = po.po_number
    version = po.version_id

    with Compensation(f"purchase order {po_number} receive") as saga:
        for _line_id, product_id, quantity in plan:
            inventory_service.stock_in(
                product_id=product_id,
                quantity=quantity,
                reason=f"Received from purchase order {po_number}",
                reference_id=po_id,
                reference_type=inventory_service.REF_PURCHASE_ORDER,
                actor_id=actor_id,
            )
            saga.add(
                f"remove {quantity} of product {product_id}",
                lambda p=product_id, q=quantity: inventory_service.stock_out(
                    product_id=p, quantity=q, reason="Receipt rolled back",
                    reference_id=po_id, reference_type=inventory_service.REF_PURCHASE_ORDER,
                    actor_id=actor_id,
                ),
            )

        current = get_purchase_order(po_id)
        if current.status != APPROVED or current.version_id != version:
            raise InvalidTransition(
                "purchase order changed while receiving",
                current=current.status,
                requested=RECEIVED,
            )
        lines = {line.id: line for line in current.lines}
        for line_id, _product_id, quantity in plan:
            lines[line_id].quantity_received += quantity

        # Touch the header so every receipt bumps version_id
        current.updated_at = utcnow()
        if all(line.remaining == 0 for line in current.lines):
            current.status = RECEIVED
            current.actual_delivery_date = current.updated_at
            current.received_by = actor_id
        try:
            db.session.commit()
        except StaleDataError as exc:
            raise InvalidTransition(
                "purchase order changed while receiving",
                current=APPROVED,
                requested=RECEIVED,
            ) from exc
        saga.discard()

    current_app.logger.info("Received %d line(s) on purchase order %s", len(plan), po_number)
    return get_purchase_order(po_id)


def receiving_summary(po_id: int) -> dict:
    po = get_purchase_order(po_id)
    lines = []
    fully = partially = not_received = 0
    for line in po.lines:
        percent = round(line.quantity_received * 100 / line.quantity_ordered, 2) if line.quantity_ordered else 0
        if line.remaining == 0:
            fully += 1
        elif line.quantity_received > 0:
            partially += 1
        else:
            not_received += 1
        lines.append({
            "product_id": line.product_id,
            "product_name": line.product_name,
            "sku": line.sku,
            "ordered": line.quantity_ordered,
            "received": line.quantity_received,
            "remaining": line.remaining,
            "percent_received": percent,
        })

    return {
        "purchase_order_id": po.id,
        "po_number": po.po_number,
        "status": po.status,
        "lines": lines,
        "fully_received": fully,
        "partially_received": partially,
        "not_received": not_received,
        "is_fully_received": fully == len(lines) and bool(lines),
    }


def cancel_purchase_order(po_id: int, *, reason: str | None = None) -> PurchaseOrder:
    def _op() -> PurchaseOrder:
        po = get_purchase_order(po_id)
        if po.status in (RECEIVED, CANCELLED):
            raise InvalidTransition(
                f"cannot cancel a {po.status} purchase order",
                current=po.status,
                requested=CANCELLED,
            )
        if any(line.quantity_received > 0 for line in po.lines):
            raise InvalidTransition(
                "cannot cancel a purchase order that has received items",
                current=po.status,
                requested=CANCELLED,
            )
        po.status = CANCELLED
        po.cancelled_at = utcnow()
        if reason:
            po.notes = f"{po.notes}\n{reason}" if po.notes else reason
        payment_service.cancel_pending_stubs(purchase_order_id=po.id, reason=reason or "Purchase order cancelled")
        db.session.commit()
        return po

    po = run_with_retry(_op)
    current_app.logger.info("Cancelled purchase order %s", po.po_number)
    return po


def add_payment(
    po_id: int,
    *,
    amount_cents: int,
    payment_method: str = "bank_transfer",
    actor_id: int | None = None,
    transaction_id: str | None = None,
    notes: str | None = None,
) -> PurchaseOrder:
    """Pay toward a PO. Recorded as a completed purchase payment."""
    payment_service.record_payment(
        payment_type=payment_service.TYPE_PURCHASE,
        related_id=po_id,
        amount_cents=amount_cents,
        payment_method=payment_method,
        actor_id=actor_id,
        transaction_id=transaction_id,
        notes=notes,
    )
    return get_purchase_order(po_id)


def delete_purchase_order(po_id: int) -> None:
    """Only fully paid purchase orders may be deleted; their payments go too."""
    def _op() -> None:
        po = get_purchase_order(po_id)
        if po.payment_status != "paid":
            raise PaymentError(
                "only fully paid purchase orders can be deleted",
                {"purchase_order_id": po.id, "payment_status": po.payment_status},
            )
        db.session.query(Payment).filter_by(purchase_order_id=po.id).delete(synchronize_session=False)
        db.session.delete(po)
        db.session.commit()

    run_with_retry(_op)


def list_purchase_orders(
    *,
    status: str | None = None,
    supplier_id: int | None = None,
    payment_status: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[PurchaseOrder], int]:
    q = db.session.query(PurchaseOrder)
    if status:
        if status not in PO_STATUSES:
            raise ValidationError("invalid status", {"status": status})
        q = q.filter(PurchaseOrder.status == status)
    if supplier_id is not None:
        q = q.filter(PurchaseOrder.supplier_id == supplier_id)
    if payment_status:
        q = q.filter(PurchaseOrder.payment_status == payment_status)

    total = q.count()
    items = (
        q.order_by(PurchaseOrder.created_at.desc(), PurchaseOrder.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def purchase_order_stats() -> dict:
    by_status = {status: 0 for status in sorted(PO_STATUSES)}
    for status, count in (
        db.session.query(PurchaseOrder.status, func.count(PurchaseOrder.id))
        .group_by(PurchaseOrder.status)
        .all()
    ):
        by_status[status] = int(count)

    total_value, paid = (
        db.session.query(
            func.coalesce(func.sum(PurchaseOrder.total_cents), 0),
            func.coalesce(func.sum(PurchaseOrder.paid_amount_cents), 0),
        )
        .filter(PurchaseOrder.status != CANCELLED)
        .one()
    )
    return {
        "total_purchase_orders": sum(by_status.values()),
        "by_status": by_status,
        "total_value_cents": int(total_value),
        "paid_cents": int(paid),
        "outstanding_cents": int(total_value) - int(paid),
    }
