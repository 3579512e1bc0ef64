"""
Inventory ledger tests: counter invariants, movement log, product mirror,
queries and alerts.
"""

import pytest

from backoffice.errors import InsufficientStock, OverRelease, ReferenceNotFound, ValidationError
from backoffice.extensions import db
from backoffice.models import InventoryMovement, Product
from backoffice.services import inventory_service

from conftest import ACTOR_ID, record_for


def movement_count(product_id: int) -> int:
    return db.session.query(InventoryMovement).filter_by(product_id=product_id).count()


def assert_consistent(product_id: int):
    record = record_for(product_id)
    assert record.quantity_available == record.quantity_on_hand - record.quantity_reserved
    assert record.quantity_on_hand >= 0
    assert record.quantity_reserved >= 0
    assert record.quantity_available >= 0
    assert db.session.get(Product, product_id).stock == record.quantity_on_hand
    return record


def test_reserve_until_low_stock(stocked_product):
    product = stocked_product("SKU-A", 100, reorder_point=20)

    inventory_service.reserve(product_id=product.id, quantity=30, reference_id="o-1", actor_id=ACTOR_ID)
    record = assert_consistent(product.id)
    assert (record.quantity_on_hand, record.quantity_reserved, record.quantity_available) == (100, 30, 70)
    assert record.is_low_stock is False

    inventory_service.reserve(product_id=product.id, quantity=60, reference_id="o-2", actor_id=ACTOR_ID)
    record = assert_consistent(product.id)
    assert (record.quantity_reserved, record.quantity_available) == (90, 10)
    assert record.is_low_stock is True


def test_reserve_beyond_available_changes_nothing(stocked_product):
    product = stocked_product("SKU-B", 3)
    before = movement_count(product.id)

    with pytest.raises(InsufficientStock) as excinfo:
        inventory_service.reserve(product_id=product.id, quantity=5, reference_id="o-1", actor_id=ACTOR_ID)

    assert excinfo.value.available == 3
    assert excinfo.value.requested == 5
    assert excinfo.value.details["product_id"] == product.id
    record = assert_consistent(product.id)
    assert (record.quantity_on_hand, record.quantity_reserved, record.quantity_available) == (3, 0, 3)
    assert movement_count(product.id) == before


def test_reserve_then_release_restores_split(stocked_product):
    product = stocked_product("SKU-C", 20)
    inventory_service.reserve(product_id=product.id, quantity=4, reference_id="o-0", actor_id=ACTOR_ID)
    before = record_for(product.id)
    split = (before.quantity_reserved, before.quantity_available)
    moves = movement_count(product.id)

    inventory_service.reserve(product_id=product.id, quantity=7, reference_id="o-1", actor_id=ACTOR_ID)
    inventory_service.release(product_id=product.id, quantity=7, reference_id="o-1", actor_id=ACTOR_ID)

    after = assert_consistent(product.id)
    assert (after.quantity_reserved, after.quantity_available) == split
    assert movement_count(product.id) == moves + 2


def test_release_more_than_reserved_is_rejected(stocked_product, make_product):
    product = stocked_product("SKU-D", 10)
    inventory_service.reserve(product_id=product.id, quantity=2, reference_id="o-1", actor_id=ACTOR_ID)

    with pytest.raises(OverRelease):
        inventory_service.release(product_id=product.id, quantity=3, reference_id="o-1", actor_id=ACTOR_ID)
    assert record_for(product.id).quantity_reserved == 2

    untracked = make_product("SKU-NO-RECORD")
    with pytest.raises(OverRelease):
        inventory_service.release(product_id=untracked.id, quantity=1, actor_id=ACTOR_ID)


def test_stock_in_sets_restock_time_and_mirror(make_product):
    product = make_product("SKU-E")
    inventory_service.stock_in(
        product_id=product.id,
        quantity=12,
        reason="Delivery",
        reference_id="po-9",
        actor_id=ACTOR_ID,
        warehouse_location="A-01",
    )

    record = assert_consistent(product.id)
    assert record.quantity_on_hand == 12
    assert record.last_restocked_at is not None
    assert record.warehouse_location == "A-01"

    movement = db.session.query(InventoryMovement).filter_by(product_id=product.id).one()
    assert movement.type == "in"
    assert movement.quantity == 12
    assert movement.reference_id == "po-9"
    assert movement.performed_by == ACTOR_ID


def test_stock_out_consumes_reservation(stocked_product):
    product = stocked_product("SKU-F", 10)
    inventory_service.reserve(product_id=product.id, quantity=4, reference_id="o-1", actor_id=ACTOR_ID)

    inventory_service.stock_out(product_id=product.id, quantity=4, reference_id="o-1", actor_id=ACTOR_ID)

    record = assert_consistent(product.id)
    assert (record.quantity_on_hand, record.quantity_reserved, record.quantity_available) == (6, 0, 6)
    assert record.last_sold_at is not None


def test_stock_out_without_reservation_keeps_reserved(stocked_product):
    product = stocked_product("SKU-G", 10)
    inventory_service.reserve(product_id=product.id, quantity=2, reference_id="o-1", actor_id=ACTOR_ID)

    inventory_service.stock_out(product_id=product.id, quantity=5, reason="Damaged", actor_id=ACTOR_ID)

    record = assert_consistent(product.id)
    assert (record.quantity_on_hand, record.quantity_reserved, record.quantity_available) == (5, 2, 3)


def test_stock_out_rejects_shortage(stocked_product):
    product = stocked_product("SKU-H", 3)
    moves = movement_count(product.id)

    with pytest.raises(InsufficientStock) as excinfo:
        inventory_service.stock_out(product_id=product.id, quantity=4, actor_id=ACTOR_ID)

    assert excinfo.value.available == 3
    record = assert_consistent(product.id)
    assert record.quantity_on_hand == 3
    assert movement_count(product.id) == moves


def test_stock_out_cannot_eat_into_reserved_units(stocked_product):
    product = stocked_product("SKU-I", 10)
    inventory_service.reserve(product_id=product.id, quantity=8, reference_id="o-1", actor_id=ACTOR_ID)

    with pytest.raises(InsufficientStock):
        inventory_service.stock_out(product_id=product.id, quantity=5, reason="Sample", actor_id=ACTOR_ID)
    assert record_for(product.id).quantity_on_hand == 10


def test_adjust_records_signed_delta(stocked_product):
    product = stocked_product("SKU-J", 10)

    inventory_service.adjust(product_id=product.id, new_on_hand=7, reason="Recount", actor_id=ACTOR_ID)

    record = assert_consistent(product.id)
    assert record.quantity_on_hand == 7
    movement = (
        db.session.query(InventoryMovement)
        .filter_by(product_id=product.id, type="adjustment")
        .one()
    )
    assert movement.quantity == 3
    assert movement.adjustment_type == "decrease"
    assert movement.reason == "Recount (-3)"
    assert movement.reference_type == "stock_adjustment"


def test_adjust_by_increases(stocked_product):
    product = stocked_product("SKU-K", 5)

    inventory_service.adjust_by(product_id=product.id, delta=4, reason="Found in back room", actor_id=ACTOR_ID)

    record = assert_consistent(product.id)
    assert record.quantity_on_hand == 9
    movement = db.session.query(InventoryMovement).filter_by(product_id=product.id, type="adjustment").one()
    assert movement.adjustment_type == "increase"
    assert movement.reason.endswith("(+4)")


def test_adjust_below_reserved_is_rejected(stocked_product):
    product = stocked_product("SKU-L", 10)
    inventory_service.reserve(product_id=product.id, quantity=6, reference_id="o-1", actor_id=ACTOR_ID)

    with pytest.raises(InsufficientStock):
        inventory_service.adjust(product_id=product.id, new_on_hand=5, reason="Recount", actor_id=ACTOR_ID)
    with pytest.raises(ValidationError):
        inventory_service.adjust(product_id=product.id, new_on_hand=-1, reason="Recount", actor_id=ACTOR_ID)
    with pytest.raises(ValidationError):
        inventory_service.adjust(product_id=product.id, new_on_hand=10, reason="Recount", actor_id=ACTOR_ID)

    record = assert_consistent(product.id)
    assert (record.quantity_on_hand, record.quantity_reserved) == (10, 6)


@pytest.mark.parametrize("quantity", [0, -3, "4", 2.5, True])
def test_quantities_must_be_positive_integers(stocked_product, quantity):
    product = stocked_product("SKU-M", 10)
    with pytest.raises(ValidationError):
        inventory_service.reserve(product_id=product.id, quantity=quantity, actor_id=ACTOR_ID)


def test_record_opens_with_existing_stock_mirror(make_product):
    product = make_product("SKU-N", stock=25)

    inventory_service.reserve(product_id=product.id, quantity=5, reference_id="o-1", actor_id=ACTOR_ID)

    record = assert_consistent(product.id)
    assert (record.quantity_on_hand, record.quantity_reserved) == (25, 5)
    opening = (
        db.session.query(InventoryMovement)
        .filter_by(product_id=product.id, type="adjustment")
        .one()
    )
    assert opening.quantity == 25
    assert opening.reason == "Opening balance"


def test_unknown_product_is_not_found(db_session):
    with pytest.raises(ReferenceNotFound):
        inventory_service.stock_in(product_id=999, quantity=1, actor_id=ACTOR_ID)


def test_low_and_out_of_stock_queries(stocked_product, make_product):
    healthy = stocked_product("Q-OK", 100)
    low = stocked_product("Q-LOW", 8)
    empty = stocked_product("Q-EMPTY", 4)
    inventory_service.stock_out(product_id=empty.id, quantity=4, actor_id=ACTOR_ID)

    low_ids = {r.product_id for r in inventory_service.list_low_stock()}
    assert low_ids == {low.id, empty.id}

    assert {r.product_id for r in inventory_service.list_low_stock(threshold=5)} == {empty.id}
    assert [r.product_id for r in inventory_service.list_out_of_stock()] == [empty.id]

    items, total = inventory_service.list_inventory(stock_status="low_stock")
    assert total == 1 and items[0].product_id == low.id

    items, total = inventory_service.list_inventory(stock_status="out_of_stock")
    assert [r.product_id for r in items] == [empty.id]

    items, total = inventory_service.list_inventory(stock_status="in_stock")
    assert [r.product_id for r in items] == [healthy.id]

    stats = inventory_service.inventory_stats()
    assert stats["total_products"] == 3
    assert stats["total_on_hand"] == 108
    assert stats["low_stock_count"] == 1
    assert stats["out_of_stock_count"] == 1

    reorder = inventory_service.list_reorder_needed()
    assert {r["product_id"] for r in reorder} == {low.id, empty.id}
    assert all(r["suggested_order_quantity"] == 50 for r in reorder)


def test_alerts_are_ranked_by_severity(stocked_product):
    stocked_product("AL-MED", 9, reorder_point=10)
    high = stocked_product("AL-HIGH", 5, reorder_point=10)
    out = stocked_product("AL-OUT", 2, reorder_point=10)
    stocked_product("AL-FINE", 40, reorder_point=10)
    inventory_service.stock_out(product_id=out.id, quantity=2, actor_id=ACTOR_ID)

    result = inventory_service.get_alerts()

    assert [a["severity"] for a in result["alerts"]] == ["critical", "high", "medium"]
    assert result["alerts"][0]["type"] == "out_of_stock"
    assert result["alerts"][1]["product_id"] == high.id
    assert result["alerts"][1]["type"] == "reorder_needed"
    assert result["alerts"][2]["type"] == "low_stock"
    assert result["summary"] == {"total": 3, "critical": 1, "high": 1, "medium": 1}


def test_movement_filters(stocked_product):
    product = stocked_product("MV-1", 10)
    inventory_service.reserve(product_id=product.id, quantity=2, reference_id="o-1", actor_id=99)
    inventory_service.release(product_id=product.id, quantity=2, reference_id="o-1", actor_id=99)

    items, total = inventory_service.list_movements(product_id=product.id)
    assert total == 3
    assert [m.type for m in items] == ["released", "reserved", "in"]

    items, total = inventory_service.list_movements(performed_by=99)
    assert total == 2

    items, total = inventory_service.list_movements(product_id=product.id, movement_type="reserved")
    assert total == 1

    with pytest.raises(ValidationError):
        inventory_service.list_movements(movement_type="teleported")


def test_reorder_settings_and_location(stocked_product):
    product = stocked_product("SET-1", 10)

    inventory_service.update_reorder_settings(product_id=product.id, reorder_point=3, reorder_quantity=30)
    inventory_service.update_location(product_id=product.id, warehouse_location="  B-07 ")

    record = record_for(product.id)
    assert (record.reorder_point, record.reorder_quantity) == (3, 30)
    assert record.warehouse_location == "B-07"

    with pytest.raises(ValidationError):
        inventory_service.update_reorder_settings(product_id=product.id, reorder_point=-1)


def test_bulk_stock_in_reports_each_line(make_product):
    a = make_product("BULK-A")
    b = make_product("BULK-B")

    results = inventory_service.bulk_stock_in(
        [
            {"product_id": a.id, "quantity": 5},
            {"product_id": 424242, "quantity": 1},
            {"product_id": b.id, "quantity": 0},
            {"product_id": b.id, "quantity": 2},
        ],
        actor_id=ACTOR_ID,
    )

    assert [r["success"] for r in results] == [True, False, False, True]
    assert results[1]["error"]["error"] == "not_found"
    assert results[2]["error"]["error"] == "validation_error"
    assert record_for(a.id).quantity_on_hand == 5
    assert record_for(b.id).quantity_on_hand == 2


def test_audit_detects_and_fixes_mirror_drift(stocked_product):
    product = stocked_product("AUD-1", 10)
    db.session.get(Product, product.id).stock = 3
    db.session.commit()

    problems = inventory_service.audit_records()
    assert [p["problem"] for p in problems] == ["stock_mirror_mismatch"]

    inventory_service.audit_records(fix_mirror=True)
    db.session.expire_all()
    assert inventory_service.audit_records() == []
    assert db.session.get(Product, product.id).stock == 10


@pytest.mark.parametrize("reference_type", ["cart", "return", "sale"])
def test_unknown_reference_types_are_rejected(make_product, reference_type):
    product = make_product("REF-TYPE")

    with pytest.raises(ValidationError) as excinfo:
        inventory_service.stock_in(product_id=product.id, quantity=1, reference_type=reference_type, actor_id=ACTOR_ID)

    assert excinfo.value.details["allowed"] == ["order", "purchase_order", "stock_adjustment"]
    assert db.session.query(InventoryMovement).filter_by(product_id=product.id).count() == 0
