from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class InventoryRecord(db.Model):
    """
    Per-product stock record: the authoritative counters.

    INVARIANTS:
    - quantity_available == quantity_on_hand - quantity_reserved, written in
      the same UPDATE statement as the counters it derives from
    - all three counters are >= 0 (CHECK constraints back this up)
    - one record per product

    Counters are never assigned through the ORM; the inventory service
    mutates them with guarded UPDATE statements so the availability check and
    the write are one atomic step.
    """
    __tablename__ = "inventory_records"
    __table_args__ = (
        db.CheckConstraint("quantity_on_hand >= 0", name="ck_inventory_on_hand_nonneg"),
        db.CheckConstraint("quantity_reserved >= 0", name="ck_inventory_reserved_nonneg"),
        db.CheckConstraint("quantity_available >= 0", name="ck_inventory_available_nonneg"),
        db.Index("ix_inventory_records_available", "quantity_available"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, unique=True)

    quantity_on_hand = db.Column(db.Integer, nullable=False, default=0)
    quantity_reserved = db.Column(db.Integer, nullable=False, default=0)
    quantity_available = db.Column(db.Integer, nullable=False, default=0)

    reorder_point = db.Column(db.Integer, nullable=False, default=10)
    reorder_quantity = db.Column(db.Integer, nullable=False, default=50)
    warehouse_location = db.Column(db.String(120), nullable=True)

    last_restocked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_sold_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("inventory_record", uselist=False, lazy=True))

    @property
    def is_low_stock(self) -> bool:
        return self.quantity_available <= self.reorder_point

    def __repr__(self) -> str:
        return (
            f"<InventoryRecord product_id={self.product_id} on_hand={self.quantity_on_hand} "
            f"reserved={self.quantity_reserved} available={self.quantity_available}>"
        )

    def to_dict(self, include_product: bool = True) -> dict:
        data = {
            "id": self.id,
            "product_id": self.product_id,
            "quantity_on_hand": self.quantity_on_hand,
            "quantity_reserved": self.quantity_reserved,
            "quantity_available": self.quantity_available,
            "reorder_point": self.reorder_point,
            "reorder_quantity": self.reorder_quantity,
            "warehouse_location": self.warehouse_location,
            "is_low_stock": self.is_low_stock,
            "last_restocked_at": to_utc_z(self.last_restocked_at),
            "last_sold_at": to_utc_z(self.last_sold_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_product and self.product is not None:
            data["product"] = self.product.to_summary()
        return data


class InventoryMovement(db.Model):
    """
    Append-only audit entry for one ledger event.

    Rows are inserted in the same commit as the counter change they describe
    and are never updated or deleted.
    """
    __tablename__ = "inventory_movements"
    __table_args__ = (
        db.Index("ix_invmove_product_occurred", "product_id", "occurred_at"),
        db.Index("ix_invmove_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    record_id = db.Column(db.Integer, db.ForeignKey("inventory_records.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # in, out, adjustment, reserved, released
    type = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    # increase / decrease, adjustments only
    adjustment_type = db.Column(db.String(16), nullable=True)

    reason = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # order, purchase_order, stock_adjustment, return
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.String(64), nullable=True)

    performed_by = db.Column(db.Integer, nullable=True, index=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    record = db.relationship("InventoryRecord", backref=db.backref("movements", lazy="dynamic"))
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "type": self.type,
            "quantity": self.quantity,
            "adjustment_type": self.adjustment_type,
            "reason": self.reason,
            "notes": self.notes,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "performed_by": self.performed_by,
            "occurred_at": to_utc_z(self.occurred_at),
        }
