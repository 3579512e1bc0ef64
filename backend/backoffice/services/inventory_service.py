# Overview: Inventory ledger; guarded counter updates, movement log, stock queries and alerts.

from __future__ import annotations

"""
Inventory Ledger Invariants (authoritative)

Counters:
- One InventoryRecord per product holds quantity_on_hand, quantity_reserved
  and quantity_available.
- quantity_available == quantity_on_hand - quantity_reserved after every
  write; all three are >= 0.
- Counters are only written by _write_counters(): a single conditional
  UPDATE whose WHERE clause re-checks the resulting values. The check and the
  write are one statement, so two concurrent reservations cannot both pass.

Movements:
- Every counter mutation appends exactly one InventoryMovement in the same
  commit. Movements are never updated or deleted.

Product mirror:
- Product.stock is rewritten from quantity_on_hand in the same commit as any
  on-hand change.

Units of work:
- Each public mutation commits its own unit and is wrapped in run_with_retry.
  Multi-step workflows compose these calls with a Compensation list.
"""

from sqlalchemy import case, func, literal, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from flask import current_app

from ..errors import (
    InsufficientStock,
    OverRelease,
    ReferenceNotFound,
    ValidationError,
)
from ..extensions import db
from ..models import InventoryMovement, InventoryRecord, Product
from ..time_utils import utcnow
from .concurrency import run_with_retry


MOVE_IN = "in"
MOVE_OUT = "out"
MOVE_ADJUSTMENT = "adjustment"
MOVE_RESERVED = "reserved"
MOVE_RELEASED = "released"
MOVEMENT_TYPES = {MOVE_IN, MOVE_OUT, MOVE_ADJUSTMENT, MOVE_RESERVED, MOVE_RELEASED}

REF_ORDER = "order"
REF_PURCHASE_ORDER = "purchase_order"
REF_ADJUSTMENT = "stock_adjustment"
REFERENCE_TYPES = {REF_ORDER, REF_PURCHASE_ORDER, REF_ADJUSTMENT}

ALERT_SEVERITY_RANK = {"critical": 0, "high": 1, "medium": 2}


def _require_positive(quantity, field: str = "quantity") -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(f"{field} must be a positive integer", {field: quantity})
    return quantity


def _require_reference_type(reference_type: str | None) -> None:
    if reference_type is not None and reference_type not in REFERENCE_TYPES:
        raise ValidationError(
            "invalid reference_type",
            {"reference_type": reference_type, "allowed": sorted(REFERENCE_TYPES)},
        )


def _find_record(product_id: int) -> InventoryRecord | None:
    return db.session.query(InventoryRecord).filter_by(product_id=product_id).first()


def _get_or_create_record(product_id: int, actor_id: int | None = None) -> InventoryRecord:
    """
    Return the product's record, creating it on first use.

    A new record opens with the product's current stock mirror; a non-zero
    opening balance is written as one adjustment movement. Creation commits
    its own unit. Losing a creation race to another request surfaces as an
    IntegrityError on the unique product_id, after which the winner's row is
    used.
    """
    record = _find_record(product_id)
    if record is not None:
        return record

    product = db.session.get(Product, product_id)
    if product is None:
        raise ReferenceNotFound("product not found", {"product_id": product_id})

    opening = max(product.stock or 0, 0)
    record = InventoryRecord(
        product_id=product_id,
        quantity_on_hand=opening,
        quantity_reserved=0,
        quantity_available=opening,
        reorder_point=current_app.config.get("DEFAULT_REORDER_POINT", 10),
        reorder_quantity=current_app.config.get("DEFAULT_REORDER_QUANTITY", 50),
    )
    db.session.add(record)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        record = _find_record(product_id)
        if record is None:
            raise
        return record

    if opening:
        _append_movement(
            record,
            MOVE_ADJUSTMENT,
            opening,
            adjustment_type="increase",
            reason="Opening balance",
            reference_type=REF_ADJUSTMENT,
            actor_id=actor_id,
        )
    db.session.commit()
    return record


def _write_counters(
    record: InventoryRecord,
    *,
    on_hand=None,
    reserved=None,
    guards=(),
    **extra,
) -> bool:
    """
    Apply new counter expressions to one record in a single UPDATE.

    The WHERE clause requires every resulting counter to be non-negative,
    plus any extra guards. Returns False (nothing written) when a guard
    fails; on success the record is refreshed from the database.
    """
    on_hand_expr = InventoryRecord.quantity_on_hand if on_hand is None else on_hand
    reserved_expr = InventoryRecord.quantity_reserved if reserved is None else reserved
    available_expr = on_hand_expr - reserved_expr

    stmt = (
        update(InventoryRecord)
        .where(
            InventoryRecord.id == record.id,
            on_hand_expr >= 0,
            reserved_expr >= 0,
            available_expr >= 0,
            *guards,
        )
        .values(
            quantity_on_hand=on_hand_expr,
            quantity_reserved=reserved_expr,
            quantity_available=available_expr,
            updated_at=utcnow(),
            **extra,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        return False
    db.session.refresh(record)
    return True


def _append_movement(
    record: InventoryRecord,
    movement_type: str,
    quantity: int,
    *,
    reason: str | None = None,
    reference_type: str | None = None,
    reference_id=None,
    actor_id: int | None = None,
    adjustment_type: str | None = None,
    notes: str | None = None,
) -> InventoryMovement:
    movement = InventoryMovement(
        record_id=record.id,
        product_id=record.product_id,
        type=movement_type,
        quantity=quantity,
        adjustment_type=adjustment_type,
        reason=reason,
        notes=notes,
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        performed_by=actor_id,
        occurred_at=utcnow(),
    )
    db.session.add(movement)
    return movement


def _sync_product_stock(record: InventoryRecord) -> None:
    """Rewrite Product.stock from the record inside the current unit."""
    db.session.execute(
        update(Product)
        .where(Product.id == record.product_id)
        .values(stock=record.quantity_on_hand, version_id=Product.version_id + 1)
        .execution_options(synchronize_session=False)
    )


def _shortage(record: InventoryRecord, requested: int, available: int, action: str) -> InsufficientStock:
    return InsufficientStock(
        f"insufficient stock to {action}",
        product_id=record.product_id,
        requested=requested,
        available=available,
    )


# ---------------------------------------------------------------------------
# Ledger mutations
# ---------------------------------------------------------------------------

def reserve(
    *,
    product_id: int,
    quantity: int,
    reference_id=None,
    actor_id: int | None = None,
    reference_type: str = REF_ORDER,
    reason: str | None = None,
    notes: str | None = None,
) -> InventoryRecord:
    """
    Move ``quantity`` units from available to reserved.

    Raises InsufficientStock (and writes nothing) when fewer than
    ``quantity`` units are available.
    """
    _require_positive(quantity)
    _require_reference_type(reference_type)

    def _op() -> InventoryRecord:
        record = _get_or_create_record(product_id, actor_id)
        if not _write_counters(record, reserved=InventoryRecord.quantity_reserved + quantity):
            db.session.refresh(record)
            available = record.quantity_available
            db.session.rollback()
            raise _shortage(record, quantity, available, "reserve")

        _append_movement(
            record,
            MOVE_RESERVED,
            quantity,
            reason=reason or f"Reserved for {reference_type}",
            reference_type=reference_type,
            reference_id=reference_id,
            actor_id=actor_id,
            notes=notes,
        )
        db.session.commit()
        return record

    return run_with_retry(_op)


def release(
    *,
    product_id: int,
    quantity: int,
    reference_id=None,
    actor_id: int | None = None,
    reference_type: str = REF_ORDER,
    reason: str | None = None,
    notes: str | None = None,
) -> InventoryRecord:
    """Return reserved units to available. OverRelease if fewer are reserved."""
    _require_positive(quantity)
    _require_reference_type(reference_type)

    def _op() -> InventoryRecord:
        record = _find_record(product_id)
        if record is None:
            raise OverRelease(
                "no reservation exists for product",
                {"product_id": product_id, "requested": quantity, "reserved": 0},
            )
        if not _write_counters(record, reserved=InventoryRecord.quantity_reserved - quantity):
            db.session.refresh(record)
            reserved = record.quantity_reserved
            db.session.rollback()
            raise OverRelease(
                "cannot release more than is reserved",
                {"product_id": product_id, "requested": quantity, "reserved": reserved},
            )

        _append_movement(
            record,
            MOVE_RELEASED,
            quantity,
            reason=reason or f"Released from {reference_type}",
            reference_type=reference_type,
            reference_id=reference_id,
            actor_id=actor_id,
            notes=notes,
        )
        db.session.commit()
        return record

    return run_with_retry(_op)


def stock_in(
    *,
    product_id: int,
    quantity: int,
    reason: str | None = None,
    reference_id=None,
    reference_type: str | None = REF_PURCHASE_ORDER,
    actor_id: int | None = None,
    warehouse_location: str | None = None,
    notes: str | None = None,
) -> InventoryRecord:
    """Add physical units. Always succeeds for a positive quantity."""
    _require_positive(quantity)
    _require_reference_type(reference_type)

    def _op() -> InventoryRecord:
        record = _get_or_create_record(product_id, actor_id)
        extra = {"last_restocked_at": utcnow()}
        if warehouse_location:
            extra["warehouse_location"] = warehouse_location
        if not _write_counters(record, on_hand=InventoryRecord.quantity_on_hand + quantity, **extra):
            raise StaleDataError(f"inventory record {record.id} could not be updated")

        _append_movement(
            record,
            MOVE_IN,
            quantity,
            reason=reason or "Stock received",
            reference_type=reference_type,
            reference_id=reference_id,
            actor_id=actor_id,
            notes=notes,
        )
        _sync_product_stock(record)
        db.session.commit()
        return record

    return run_with_retry(_op)


def stock_out(
    *,
    product_id: int,
    quantity: int,
    reason: str | None = None,
    reference_id=None,
    reference_type: str | None = REF_ORDER,
    actor_id: int | None = None,
    notes: str | None = None,
) -> InventoryRecord:
    """
    Remove physical units.

    When at least ``quantity`` units are reserved the reservation is consumed
    too (shipping a reserved order); otherwise only on-hand drops, and the
    result must still leave available >= 0.
    """
    _require_positive(quantity)
    _require_reference_type(reference_type)

    def _op() -> InventoryRecord:
        record = _get_or_create_record(product_id, actor_id)
        reserved_expr = case(
            (InventoryRecord.quantity_reserved >= quantity, InventoryRecord.quantity_reserved - quantity),
            else_=InventoryRecord.quantity_reserved,
        )
        written = _write_counters(
            record,
            on_hand=InventoryRecord.quantity_on_hand - quantity,
            reserved=reserved_expr,
            last_sold_at=utcnow(),
        )
        if not written:
            db.session.refresh(record)
            if record.quantity_on_hand < quantity:
                available = record.quantity_on_hand
            else:
                available = record.quantity_available
            db.session.rollback()
            raise _shortage(record, quantity, available, "remove")

        _append_movement(
            record,
            MOVE_OUT,
            quantity,
            reason=reason or "Stock removed",
            reference_type=reference_type,
            reference_id=reference_id,
            actor_id=actor_id,
            notes=notes,
        )
        _sync_product_stock(record)
        db.session.commit()
        return record

    return run_with_retry(_op)


def _adjust_unit(product_id: int, target_for, *, reason: str, actor_id, notes) -> InventoryRecord:
    """
    Set on-hand to ``target_for(current_on_hand)``.

    The write is compare-and-swap on the on-hand value that was read; if a
    concurrent write moved it, StaleDataError makes run_with_retry redo the
    unit against the new value.
    """
    if not reason or not str(reason).strip():
        raise ValidationError("reason is required for an adjustment")

    def _op() -> InventoryRecord:
        record = _get_or_create_record(product_id, actor_id)
        db.session.refresh(record)
        current = record.quantity_on_hand
        new_on_hand = target_for(current)

        if new_on_hand < 0:
            raise ValidationError(
                "quantity on hand cannot be negative",
                {"product_id": product_id, "current": current, "requested": new_on_hand},
            )
        delta = new_on_hand - current
        if delta == 0:
            raise ValidationError("adjustment does not change quantity on hand", {"product_id": product_id})
        if new_on_hand < record.quantity_reserved:
            raise InsufficientStock(
                "adjustment would leave less on hand than is reserved",
                product_id=product_id,
                requested=new_on_hand,
                available=record.quantity_reserved,
            )

        written = _write_counters(
            record,
            on_hand=literal(new_on_hand),
            guards=(InventoryRecord.quantity_on_hand == current,),
        )
        if not written:
            raise StaleDataError(f"inventory record {record.id} changed during adjustment")

        _append_movement(
            record,
            MOVE_ADJUSTMENT,
            abs(delta),
            adjustment_type="increase" if delta > 0 else "decrease",
            reason=f"{reason} ({delta:+d})",
            reference_type=REF_ADJUSTMENT,
            actor_id=actor_id,
            notes=notes,
        )
        _sync_product_stock(record)
        db.session.commit()
        return record

    return run_with_retry(_op)


def adjust(
    *,
    product_id: int,
    new_on_hand: int,
    reason: str,
    actor_id: int | None = None,
    notes: str | None = None,
) -> InventoryRecord:
    """Set on-hand to an absolute count (physical recount). Reserved is untouched."""
    if isinstance(new_on_hand, bool) or not isinstance(new_on_hand, int):
        raise ValidationError("new quantity must be an integer", {"new_on_hand": new_on_hand})
    return _adjust_unit(product_id, lambda _current: new_on_hand, reason=reason, actor_id=actor_id, notes=notes)


def adjust_by(
    *,
    product_id: int,
    delta: int,
    reason: str,
    actor_id: int | None = None,
    notes: str | None = None,
) -> InventoryRecord:
    """Relative adjustment: on-hand += delta (delta may be negative)."""
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise ValidationError("adjustment must be a non-zero integer", {"delta": delta})
    return _adjust_unit(product_id, lambda current: current + delta, reason=reason, actor_id=actor_id, notes=notes)


def bulk_stock_in(items: list[dict], *, actor_id: int | None = None, reason: str | None = None) -> list[dict]:
    """
    Stock in several products, one ledger write per line.

    Lines are independent: a failing line is reported and the rest still
    apply.
    """
    results = []
    for index, item in enumerate(items):
        product_id = item.get("product_id")
        try:
            record = stock_in(
                product_id=product_id,
                quantity=item.get("quantity"),
                reason=item.get("reason") or reason or "Bulk stock in",
                reference_id=item.get("reference_id"),
                reference_type=item.get("reference_type") or REF_PURCHASE_ORDER,
                actor_id=actor_id,
                notes=item.get("notes"),
            )
        except (ValidationError, ReferenceNotFound) as e:
            results.append({"index": index, "product_id": product_id, "success": False, "error": e.to_dict()})
            continue
        results.append({
            "index": index,
            "product_id": product_id,
            "success": True,
            "inventory": record.to_dict(include_product=False),
        })
    return results


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

def update_reorder_settings(
    *,
    product_id: int,
    reorder_point: int | None = None,
    reorder_quantity: int | None = None,
) -> InventoryRecord:
    if reorder_point is None and reorder_quantity is None:
        raise ValidationError("reorder_point or reorder_quantity is required")
    for field, value in (("reorder_point", reorder_point), ("reorder_quantity", reorder_quantity)):
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
            raise ValidationError(f"{field} must be a non-negative integer", {field: value})

    def _op() -> InventoryRecord:
        record = _get_or_create_record(product_id)
        if reorder_point is not None:
            record.reorder_point = reorder_point
        if reorder_quantity is not None:
            record.reorder_quantity = reorder_quantity
        db.session.commit()
        return record

    return run_with_retry(_op)


def update_location(*, product_id: int, warehouse_location: str | None) -> InventoryRecord:
    def _op() -> InventoryRecord:
        record = _get_or_create_record(product_id)
        record.warehouse_location = (warehouse_location or "").strip() or None
        db.session.commit()
        return record

    return run_with_retry(_op)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_inventory(product_id: int) -> InventoryRecord:
    record = _find_record(product_id)
    if record is None:
        raise ReferenceNotFound("inventory record not found", {"product_id": product_id})
    return record


_LIST_SORTS = {
    "updated_at": InventoryRecord.updated_at,
    "quantity_on_hand": InventoryRecord.quantity_on_hand,
    "quantity_available": InventoryRecord.quantity_available,
    "quantity_reserved": InventoryRecord.quantity_reserved,
    "reorder_point": InventoryRecord.reorder_point,
}


def list_inventory(
    *,
    stock_status: str | None = None,
    search: str | None = None,
    sort_by: str = "updated_at",
    order: str = "desc",
    page: int = 1,
    limit: int = 20,
) -> tuple[list[InventoryRecord], int]:
    """
    Page through inventory records.

    stock_status: ``low_stock`` (0 < available <= reorder point),
    ``out_of_stock`` (available == 0) or ``in_stock`` (available > reorder point).
    """
    q = db.session.query(InventoryRecord).join(Product, Product.id == InventoryRecord.product_id)

    if stock_status == "low_stock":
        q = q.filter(
            InventoryRecord.quantity_available > 0,
            InventoryRecord.quantity_available <= InventoryRecord.reorder_point,
        )
    elif stock_status == "out_of_stock":
        q = q.filter(InventoryRecord.quantity_available == 0)
    elif stock_status == "in_stock":
        q = q.filter(InventoryRecord.quantity_available > InventoryRecord.reorder_point)
    elif stock_status:
        raise ValidationError("invalid stock_status", {"stock_status": stock_status})

    if search:
        like = f"%{search.strip()}%"
        q = q.filter(or_(Product.name.ilike(like), Product.sku.ilike(like)))

    column = _LIST_SORTS.get(sort_by)
    if column is None:
        raise ValidationError("invalid sort_by", {"sort_by": sort_by, "allowed": sorted(_LIST_SORTS)})
    q = q.order_by(column.asc() if order == "asc" else column.desc(), InventoryRecord.id.asc())

    total = q.count()
    items = q.offset((page - 1) * limit).limit(limit).all()
    return items, total


def inventory_stats() -> dict:
    row = db.session.query(
        func.count(InventoryRecord.id),
        func.coalesce(func.sum(InventoryRecord.quantity_on_hand), 0),
        func.coalesce(func.sum(InventoryRecord.quantity_reserved), 0),
        func.coalesce(func.sum(InventoryRecord.quantity_available), 0),
        func.coalesce(func.sum(InventoryRecord.quantity_on_hand * Product.price_cents), 0),
    ).join(Product, Product.id == InventoryRecord.product_id).one()

    low_stock = (
        db.session.query(func.count(InventoryRecord.id))
        .filter(
            InventoryRecord.quantity_available > 0,
            InventoryRecord.quantity_available <= InventoryRecord.reorder_point,
        )
        .scalar()
    )
    out_of_stock = (
        db.session.query(func.count(InventoryRecord.id))
        .filter(InventoryRecord.quantity_available == 0)
        .scalar()
    )

    return {
        "total_products": int(row[0]),
        "total_on_hand": int(row[1]),
        "total_reserved": int(row[2]),
        "total_available": int(row[3]),
        "total_value_cents": int(row[4]),
        "low_stock_count": int(low_stock or 0),
        "out_of_stock_count": int(out_of_stock or 0),
    }


def list_low_stock(threshold: int | None = None) -> list[InventoryRecord]:
    """Records at or below their reorder point, or at or below an explicit threshold."""
    q = db.session.query(InventoryRecord)
    if threshold is not None:
        q = q.filter(InventoryRecord.quantity_available <= threshold)
    else:
        q = q.filter(InventoryRecord.quantity_available <= InventoryRecord.reorder_point)
    return q.order_by(InventoryRecord.quantity_available.asc(), InventoryRecord.id.asc()).all()


def list_out_of_stock() -> list[InventoryRecord]:
    return (
        db.session.query(InventoryRecord)
        .filter(InventoryRecord.quantity_available == 0)
        .order_by(InventoryRecord.updated_at.desc(), InventoryRecord.id.asc())
        .all()
    )


def list_reorder_needed() -> list[dict]:
    records = (
        db.session.query(InventoryRecord)
        .filter(InventoryRecord.quantity_available <= InventoryRecord.reorder_point)
        .order_by(InventoryRecord.quantity_available.asc(), InventoryRecord.id.asc())
        .all()
    )
    return [
        {
            **record.to_dict(),
            "suggested_order_quantity": record.reorder_quantity,
        }
        for record in records
    ]


def list_movements(
    *,
    product_id: int | None = None,
    movement_type: str | None = None,
    performed_by: int | None = None,
    start=None,
    end=None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[InventoryMovement], int]:
    """Movements newest first. Date bounds are inclusive."""
    if movement_type is not None and movement_type not in MOVEMENT_TYPES:
        raise ValidationError("invalid movement type", {"type": movement_type, "allowed": sorted(MOVEMENT_TYPES)})

    q = db.session.query(InventoryMovement)
    if product_id is not None:
        q = q.filter(InventoryMovement.product_id == product_id)
    if movement_type is not None:
        q = q.filter(InventoryMovement.type == movement_type)
    if performed_by is not None:
        q = q.filter(InventoryMovement.performed_by == performed_by)
    if start is not None:
        q = q.filter(InventoryMovement.occurred_at >= start)
    if end is not None:
        q = q.filter(InventoryMovement.occurred_at <= end)

    total = q.count()
    items = (
        q.order_by(InventoryMovement.occurred_at.desc(), InventoryMovement.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def derive_alert(record: InventoryRecord) -> dict | None:
    """
    Severity for one record, or None when stock is healthy.

    critical: nothing available
    high:     available at or below half the reorder point
    medium:   available at or below the reorder point
    """
    available = record.quantity_available
    if available == 0:
        alert_type, severity, message = "out_of_stock", "critical", "Out of stock"
    elif available * 2 <= record.reorder_point:
        alert_type, severity, message = "reorder_needed", "high", "Stock critically low, reorder needed"
    elif available <= record.reorder_point:
        alert_type, severity, message = "low_stock", "medium", "Stock below reorder point"
    else:
        return None

    return {
        "type": alert_type,
        "severity": severity,
        "message": message,
        "product_id": record.product_id,
        "product": record.product.to_summary() if record.product else None,
        "quantity_available": available,
        "reorder_point": record.reorder_point,
        "suggested_order_quantity": record.reorder_quantity,
    }


def get_alerts() -> dict:
    records = (
        db.session.query(InventoryRecord)
        .filter(InventoryRecord.quantity_available <= InventoryRecord.reorder_point)
        .all()
    )
    alerts = [alert for alert in (derive_alert(r) for r in records) if alert is not None]
    alerts.sort(key=lambda a: (ALERT_SEVERITY_RANK[a["severity"]], a["quantity_available"], a["product_id"]))

    summary = {"total": len(alerts), "critical": 0, "high": 0, "medium": 0}
    for alert in alerts:
        summary[alert["severity"]] += 1
    return {"alerts": alerts, "summary": summary}


def audit_records(*, fix_mirror: bool = False) -> list[dict]:
    """
    Check counter invariants and the Product.stock mirror for every record.

    With ``fix_mirror`` the mirror is rewritten from on-hand; counter problems
    are only reported.
    """
    problems = []
    records = db.session.query(InventoryRecord).order_by(InventoryRecord.product_id.asc()).all()
    for record in records:
        if record.quantity_available != record.quantity_on_hand - record.quantity_reserved:
            problems.append({"product_id": record.product_id, "problem": "available_mismatch"})
        if min(record.quantity_on_hand, record.quantity_reserved, record.quantity_available) < 0:
            problems.append({"product_id": record.product_id, "problem": "negative_counter"})
        if record.product is not None and record.product.stock != record.quantity_on_hand:
            problems.append({
                "product_id": record.product_id,
                "problem": "stock_mirror_mismatch",
                "stock": record.product.stock,
                "quantity_on_hand": record.quantity_on_hand,
            })
            if fix_mirror:
                _sync_product_stock(record)

    if fix_mirror:
        db.session.commit()
    return problems
