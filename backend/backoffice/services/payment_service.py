# Overview: Payment records for orders and purchase orders; refunds and paid-status reconciliation.

from __future__ import annotations

"""
Payment reconciliation rules:

- Order creation leaves one pending sales stub; PO creation one pending
  purchase stub. Stubs count for nothing until completed.
- An order's paid total is the sum of (amount - refunded) over its completed
  and refunded payments. Its payment_status is derived from that:
    paid     net >= order total
    partial  0 < net < total
    refunded net == 0 and some refund exists
    pending  otherwise (a "failed" status is kept while nothing is paid)
- A purchase order's paid_amount_cents moves with completed payments and
  refunds and may never exceed the PO total.
"""

from datetime import datetime

from sqlalchemy import func

from flask import current_app

from ..errors import PaymentError, ReferenceNotFound, ValidationError
from ..extensions import db
from ..models import Order, Payment, PurchaseOrder
from ..time_utils import utcnow
from .concurrency import run_with_retry


TYPE_SALES = "sales"
TYPE_PURCHASE = "purchase"
PAYMENT_TYPES = {TYPE_SALES, TYPE_PURCHASE}

PAYMENT_METHODS = {"cash", "card", "bank_transfer", "e_wallet", "cod", "check"}

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"
STATUS_REFUNDED = "refunded"
PAYMENT_STATUSES = {STATUS_PENDING, STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED, STATUS_REFUNDED}

DELETABLE_STATUSES = {STATUS_PENDING, STATUS_FAILED, STATUS_CANCELLED}


def _require_amount(amount_cents) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError("amount must be a positive number of cents", {"amount_cents": amount_cents})
    return amount_cents


def _require_method(payment_method: str) -> str:
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            "invalid payment method",
            {"payment_method": payment_method, "allowed": sorted(PAYMENT_METHODS)},
        )
    return payment_method


def _require_reason(reason: str | None, action: str) -> str:
    if not reason or not str(reason).strip():
        raise ValidationError(f"a reason is required to {action} a payment")
    return str(reason).strip()


def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise ReferenceNotFound("payment not found", {"payment_id": payment_id})
    return payment


def _get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise ReferenceNotFound("order not found", {"order_id": order_id})
    return order


def _get_purchase_order(po_id: int) -> PurchaseOrder:
    po = db.session.get(PurchaseOrder, po_id)
    if po is None:
        raise ReferenceNotFound("purchase order not found", {"purchase_order_id": po_id})
    return po


# ---------------------------------------------------------------------------
# Reconciliation helpers (no commit; callers own the unit)
# ---------------------------------------------------------------------------

def order_net_paid_cents(order_id: int) -> tuple[int, bool]:
    """(net paid, whether any refund exists) over settled sales payments."""
    row = db.session.query(
        func.coalesce(func.sum(Payment.amount_cents - Payment.refunded_cents), 0),
        func.coalesce(func.sum(Payment.refunded_cents), 0),
    ).filter(
        Payment.order_id == order_id,
        Payment.status.in_([STATUS_COMPLETED, STATUS_REFUNDED]),
    ).one()
    return int(row[0]), int(row[1]) > 0


def reconcile_order_payment_status(order: Order) -> str:
    net, has_refunds = order_net_paid_cents(order.id)
    if order.total_cents > 0 and net >= order.total_cents:
        status = "paid"
    elif net > 0:
        status = "partial"
    elif has_refunds:
        status = "refunded"
    elif order.payment_status == "failed":
        status = "failed"
    else:
        status = "pending"

    if status == "paid" and order.paid_at is None:
        order.paid_at = utcnow()
    order.payment_status = status
    return status


def derive_po_payment_status(po: PurchaseOrder) -> str:
    if po.paid_amount_cents <= 0:
        return "unpaid"
    if po.paid_amount_cents >= po.total_cents:
        return "paid"
    return "partial"


def apply_purchase_payment(po: PurchaseOrder, amount_cents: int) -> None:
    """Add a payment to the PO's paid amount, capped at the PO total."""
    _require_amount(amount_cents)
    if po.status == "cancelled":
        raise PaymentError("cannot pay a cancelled purchase order", {"purchase_order_id": po.id})
    if po.paid_amount_cents + amount_cents > po.total_cents:
        raise PaymentError(
            "payment exceeds the purchase order balance",
            {
                "purchase_order_id": po.id,
                "amount_cents": amount_cents,
                "paid_amount_cents": po.paid_amount_cents,
                "total_cents": po.total_cents,
            },
        )
    po.paid_amount_cents += amount_cents
    po.payment_status = derive_po_payment_status(po)


def settle_order_stubs(order: Order, *, actor_id: int | None = None) -> int:
    """
    Collect what is still owed on delivery.

    The first pending sales payment is completed for the outstanding
    balance; any other pending ones are cancelled. Returns how many
    payments changed.
    """
    now = utcnow()
    stubs = (
        db.session.query(Payment)
        .filter_by(order_id=order.id, status=STATUS_PENDING)
        .order_by(Payment.id)
        .all()
    )
    net, _has_refunds = order_net_paid_cents(order.id)
    outstanding = order.total_cents - net
    for payment in stubs:
        if outstanding > 0:
            payment.amount_cents = outstanding
            payment.status = STATUS_COMPLETED
            payment.payment_date = payment.payment_date or now
            payment.received_by = actor_id
            outstanding = 0
        else:
            payment.status = STATUS_CANCELLED
            payment.cancel_reason = "Settled by earlier payments"
    return len(stubs)


def cancel_pending_stubs(*, order_id: int | None = None, purchase_order_id: int | None = None, reason: str) -> int:
    q = db.session.query(Payment).filter(Payment.status == STATUS_PENDING)
    if order_id is not None:
        q = q.filter(Payment.order_id == order_id)
    else:
        q = q.filter(Payment.purchase_order_id == purchase_order_id)
    stubs = q.all()
    for payment in stubs:
        payment.status = STATUS_CANCELLED
        payment.cancel_reason = reason
    return len(stubs)


def update_pending_stub_amount(order: Order) -> None:
    """Track a repriced order; a zero total drops the stub."""
    for payment in db.session.query(Payment).filter_by(order_id=order.id, status=STATUS_PENDING).all():
        if order.total_cents > 0:
            payment.amount_cents = order.total_cents
        else:
            db.session.delete(payment)


def build_stub(
    *,
    payment_type: str,
    amount_cents: int,
    payment_method: str,
    order: Order | None = None,
    purchase_order: PurchaseOrder | None = None,
    actor_id: int | None = None,
) -> Payment:
    """A pending payment for a freshly created document. Added, not committed."""
    if payment_type == TYPE_SALES:
        payment = Payment(
            payment_type=TYPE_SALES,
            order_id=order.id,
            related_number=order.order_number,
            customer_id=order.customer_id,
        )
    else:
        payment = Payment(
            payment_type=TYPE_PURCHASE,
            purchase_order_id=purchase_order.id,
            related_number=purchase_order.po_number,
            supplier_id=purchase_order.supplier_id,
        )
    payment.amount_cents = amount_cents
    payment.refunded_cents = 0
    payment.payment_method = payment_method
    payment.status = STATUS_PENDING
    payment.received_by = actor_id
    db.session.add(payment)
    return payment


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

def record_payment(
    *,
    payment_type: str,
    related_id: int,
    amount_cents: int,
    payment_method: str,
    actor_id: int | None = None,
    transaction_id: str | None = None,
    notes: str | None = None,
    payment_date: datetime | None = None,
) -> Payment:
    """Create a completed payment against an order or purchase order."""
    if payment_type not in PAYMENT_TYPES:
        raise ValidationError("invalid payment_type", {"payment_type": payment_type})
    _require_amount(amount_cents)
    _require_method(payment_method)

    def _op() -> Payment:
        payment = Payment(
            payment_type=payment_type,
            amount_cents=amount_cents,
            refunded_cents=0,
            payment_method=payment_method,
            payment_date=payment_date or utcnow(),
            status=STATUS_COMPLETED,
            transaction_id=transaction_id,
            notes=notes,
            received_by=actor_id,
        )
        if payment_type == TYPE_SALES:
            order = _get_order(related_id)
            if order.status == "cancelled":
                raise PaymentError("cannot record a payment for a cancelled order", {"order_id": order.id})
            payment.order_id = order.id
            payment.related_number = order.order_number
            payment.customer_id = order.customer_id
            db.session.add(payment)
            db.session.flush()
            reconcile_order_payment_status(order)
        else:
            po = _get_purchase_order(related_id)
            apply_purchase_payment(po, amount_cents)
            payment.purchase_order_id = po.id
            payment.related_number = po.po_number
            payment.supplier_id = po.supplier_id
            db.session.add(payment)

        db.session.commit()
        current_app.logger.info(
            "Recorded %s payment of %s cents for %s", payment_type, amount_cents, payment.related_number
        )
        return payment

    return run_with_retry(_op)


def complete_payment(payment_id: int, *, actor_id: int | None = None, transaction_id: str | None = None) -> Payment:
    def _op() -> Payment:
        payment = get_payment(payment_id)
        if payment.status != STATUS_PENDING:
            raise PaymentError(
                "only pending payments can be completed",
                {"payment_id": payment_id, "status": payment.status},
            )
        if payment.payment_type == TYPE_PURCHASE:
            apply_purchase_payment(_get_purchase_order(payment.purchase_order_id), payment.amount_cents)

        payment.status = STATUS_COMPLETED
        payment.payment_date = payment.payment_date or utcnow()
        payment.received_by = actor_id
        if transaction_id:
            payment.transaction_id = transaction_id
        db.session.flush()

        if payment.payment_type == TYPE_SALES:
            reconcile_order_payment_status(_get_order(payment.order_id))
        db.session.commit()
        return payment

    return run_with_retry(_op)


def process_refund(payment_id: int, *, amount_cents: int, reason: str, actor_id: int | None = None) -> Payment:
    """
    Refund part or all of a completed payment.

    The payment becomes ``refunded`` once nothing refundable is left; the
    linked order or purchase order is reconciled in the same unit.
    """
    _require_amount(amount_cents)
    reason = _require_reason(reason, "refund")

    def _op() -> Payment:
        payment = get_payment(payment_id)
        if payment.status != STATUS_COMPLETED:
            raise PaymentError(
                "only completed payments can be refunded",
                {"payment_id": payment_id, "status": payment.status},
            )
        refundable = payment.amount_cents - payment.refunded_cents
        if amount_cents > refundable:
            raise PaymentError(
                "refund exceeds the refundable amount",
                {"payment_id": payment_id, "amount_cents": amount_cents, "refundable_cents": refundable},
            )

        payment.refunded_cents += amount_cents
        payment.refund_reason = reason
        payment.refunded_at = utcnow()
        if payment.refunded_cents == payment.amount_cents:
            payment.status = STATUS_REFUNDED
        db.session.flush()

        if payment.payment_type == TYPE_SALES:
            reconcile_order_payment_status(_get_order(payment.order_id))
        else:
            po = _get_purchase_order(payment.purchase_order_id)
            po.paid_amount_cents = max(po.paid_amount_cents - amount_cents, 0)
            po.payment_status = derive_po_payment_status(po)

        db.session.commit()
        current_app.logger.info(
            "Refunded %s cents on payment %s (%s) by actor %s",
            amount_cents, payment.id, payment.related_number, actor_id,
        )
        return payment

    return run_with_retry(_op)


def cancel_payment(payment_id: int, *, reason: str) -> Payment:
    reason = _require_reason(reason, "cancel")

    def _op() -> Payment:
        payment = get_payment(payment_id)
        if payment.status != STATUS_PENDING:
            raise PaymentError(
                "only pending payments can be cancelled",
                {"payment_id": payment_id, "status": payment.status},
            )
        payment.status = STATUS_CANCELLED
        payment.cancel_reason = reason
        db.session.commit()
        return payment

    return run_with_retry(_op)


def mark_payment_failed(payment_id: int, *, reason: str) -> Payment:
    reason = _require_reason(reason, "fail")

    def _op() -> Payment:
        payment = get_payment(payment_id)
        if payment.status != STATUS_PENDING:
            raise PaymentError(
                "only pending payments can be marked as failed",
                {"payment_id": payment_id, "status": payment.status},
            )
        payment.status = STATUS_FAILED
        payment.failure_reason = reason
        db.session.flush()

        if payment.payment_type == TYPE_SALES:
            order = _get_order(payment.order_id)
            net, _has_refunds = order_net_paid_cents(order.id)
            if net == 0 and order.payment_status == "pending":
                order.payment_status = "failed"
        db.session.commit()
        return payment

    return run_with_retry(_op)


def delete_payment(payment_id: int) -> None:
    def _op() -> None:
        payment = get_payment(payment_id)
        if payment.status not in DELETABLE_STATUSES:
            raise PaymentError(
                "only pending, failed or cancelled payments can be deleted",
                {"payment_id": payment_id, "status": payment.status},
            )
        db.session.delete(payment)
        db.session.commit()

    run_with_retry(_op)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def list_payments(
    *,
    payment_type: str | None = None,
    payment_method: str | None = None,
    status: str | None = None,
    start=None,
    end=None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Payment], int]:
    q = db.session.query(Payment)
    if payment_type:
        q = q.filter(Payment.payment_type == payment_type)
    if payment_method:
        q = q.filter(Payment.payment_method == payment_method)
    if status:
        if status not in PAYMENT_STATUSES:
            raise ValidationError("invalid status", {"status": status})
        q = q.filter(Payment.status == status)
    if start is not None:
        q = q.filter(Payment.created_at >= start)
    if end is not None:
        q = q.filter(Payment.created_at <= end)

    total = q.count()
    items = (
        q.order_by(Payment.created_at.desc(), Payment.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def payments_for_order(order_id: int) -> list[Payment]:
    _get_order(order_id)
    return (
        db.session.query(Payment)
        .filter_by(order_id=order_id)
        .order_by(Payment.created_at.asc(), Payment.id.asc())
        .all()
    )


def payment_stats() -> dict:
    settled = [STATUS_COMPLETED, STATUS_REFUNDED]

    by_type = {}
    for payment_type, count, amount, refunded in (
        db.session.query(
            Payment.payment_type,
            func.count(Payment.id),
            func.coalesce(func.sum(Payment.amount_cents), 0),
            func.coalesce(func.sum(Payment.refunded_cents), 0),
        )
        .filter(Payment.status.in_(settled))
        .group_by(Payment.payment_type)
        .all()
    ):
        by_type[payment_type] = {
            "count": int(count),
            "amount_cents": int(amount),
            "refunded_cents": int(refunded),
            "net_cents": int(amount) - int(refunded),
        }

    by_method = {
        method: {"count": int(count), "amount_cents": int(amount)}
        for method, count, amount in (
            db.session.query(
                Payment.payment_method,
                func.count(Payment.id),
                func.coalesce(func.sum(Payment.amount_cents), 0),
            )
            .filter(Payment.status.in_(settled))
            .group_by(Payment.payment_method)
            .all()
        )
    }

    by_status = {
        status: int(count)
        for status, count in db.session.query(Payment.status, func.count(Payment.id)).group_by(Payment.status).all()
    }

    sales_net = by_type.get(TYPE_SALES, {}).get("net_cents", 0)
    purchase_net = by_type.get(TYPE_PURCHASE, {}).get("net_cents", 0)
    return {
        "by_type": by_type,
        "by_method": by_method,
        "by_status": by_status,
        "net_cash_flow_cents": sales_net - purchase_net,
    }
