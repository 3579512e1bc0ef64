from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Payment(db.Model):
    """
    Money movement tied to exactly one order (sales) or purchase order
    (purchase).

    LIFECYCLE:
    pending -> completed -> refunded (when fully refunded)
    pending -> failed
    pending -> cancelled

    Refunds never exceed amount_cents; net_amount_cents is what actually
    counts toward the linked document's paid total.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_payments_amount_positive"),
        db.CheckConstraint("refunded_cents >= 0", name="ck_payments_refunded_nonneg"),
        db.CheckConstraint("refunded_cents <= amount_cents", name="ck_payments_refunded_le_amount"),
        db.CheckConstraint(
            "(order_id IS NOT NULL AND purchase_order_id IS NULL) OR "
            "(order_id IS NULL AND purchase_order_id IS NOT NULL)",
            name="ck_payments_single_document",
        ),
        db.Index("ix_payments_type_status", "payment_type", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # sales, purchase
    payment_type = db.Column(db.String(16), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=True, index=True)
    related_number = db.Column(db.String(32), nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    refunded_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(32), nullable=False)
    payment_date = db.Column(db.DateTime(timezone=True), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    transaction_id = db.Column(db.String(128), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    received_by = db.Column(db.Integer, nullable=True)

    refund_reason = db.Column(db.String(255), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def net_amount_cents(self) -> int:
        return self.amount_cents - (self.refunded_cents or 0)

    def __repr__(self) -> str:
        return f"<Payment id={self.id} {self.payment_type} {self.related_number} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_type": self.payment_type,
            "order_id": self.order_id,
            "purchase_order_id": self.purchase_order_id,
            "related_number": self.related_number,
            "customer_id": self.customer_id,
            "supplier_id": self.supplier_id,
            "amount_cents": self.amount_cents,
            "refunded_cents": self.refunded_cents,
            "net_amount_cents": self.net_amount_cents,
            "payment_method": self.payment_method,
            "payment_date": to_utc_z(self.payment_date),
            "status": self.status,
            "transaction_id": self.transaction_id,
            "notes": self.notes,
            "received_by": self.received_by,
            "refund_reason": self.refund_reason,
            "refunded_at": to_utc_z(self.refunded_at),
            "failure_reason": self.failure_reason,
            "cancel_reason": self.cancel_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
