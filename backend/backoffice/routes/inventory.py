# backend/backoffice/routes/inventory.py
"""
Inventory ledger routes.

All ``<int:product_id>`` segments are product ids; every product has at most
one inventory record. Mutating routes require X-Actor-Id, which is recorded
as performed_by on the movement.

Time semantics:
- Date filters accept ISO-8601 with Z/offsets and are inclusive.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..errors import BackofficeError, ValidationError, error_response
from ..services import inventory_service
from ..validation import (
    coerce_datetime,
    coerce_int,
    coerce_positive_int,
    page_payload,
    pagination_args,
)


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _internal_error(action: str):
    current_app.logger.exception("Failed to %s", action)
    return jsonify({"error": "internal_error", "message": "Internal server error"}), 500


@inventory_bp.get("")
def list_inventory_route():
    """List inventory records. ?stock_status=low_stock|out_of_stock|in_stock&search=&sort_by=&order="""
    try:
        page, limit = pagination_args(request.args)
        items, total = inventory_service.list_inventory(
            stock_status=request.args.get("stock_status") or None,
            search=request.args.get("search") or None,
            sort_by=request.args.get("sort_by") or "updated_at",
            order=request.args.get("order") or "desc",
            page=page,
            limit=limit,
        )
        return jsonify(page_payload([r.to_dict() for r in items], total, page, limit)), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("list inventory")


@inventory_bp.get("/stats/summary")
def inventory_stats_route():
    try:
        return jsonify({"stats": inventory_service.inventory_stats()}), 200
    except Exception:
        return _internal_error("load inventory stats")


@inventory_bp.get("/low-stock")
def low_stock_route():
    try:
        threshold = coerce_int(request.args.get("threshold"), "threshold", required=False, minimum=0)
        records = inventory_service.list_low_stock(threshold)
        return jsonify({"items": [r.to_dict() for r in records], "count": len(records)}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("list low stock")


@inventory_bp.get("/out-of-stock")
def out_of_stock_route():
    try:
        records = inventory_service.list_out_of_stock()
        return jsonify({"items": [r.to_dict() for r in records], "count": len(records)}), 200
    except Exception:
        return _internal_error("list out of stock")


@inventory_bp.get("/reorder-needed")
def reorder_needed_route():
    try:
        items = inventory_service.list_reorder_needed()
        return jsonify({"items": items, "count": len(items)}), 200
    except Exception:
        return _internal_error("list reorder needed")


@inventory_bp.get("/alerts")
def alerts_route():
    try:
        return jsonify(inventory_service.get_alerts()), 200
    except Exception:
        return _internal_error("load inventory alerts")


@inventory_bp.get("/movements")
def movements_route():
    """Global movement log. ?performed_by=&start=&end=&type="""
    try:
        page, limit = pagination_args(request.args, default_limit=50)
        items, total = inventory_service.list_movements(
            movement_type=request.args.get("type") or None,
            performed_by=coerce_int(request.args.get("performed_by"), "performed_by", required=False),
            start=coerce_datetime(request.args.get("start"), "start"),
            end=coerce_datetime(request.args.get("end"), "end"),
            page=page,
            limit=limit,
        )
        return jsonify(page_payload([m.to_dict() for m in items], total, page, limit)), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("list movements")


@inventory_bp.get("/product/<int:product_id>")
def get_inventory_route(product_id: int):
    try:
        record = inventory_service.get_inventory(product_id)
        return jsonify({"inventory": record.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("load inventory record")


@inventory_bp.get("/<int:product_id>/movements")
def product_movements_route(product_id: int):
    try:
        inventory_service.get_inventory(product_id)
        page, limit = pagination_args(request.args, default_limit=50)
        items, total = inventory_service.list_movements(
            product_id=product_id,
            movement_type=request.args.get("type") or None,
            start=coerce_datetime(request.args.get("start"), "start"),
            end=coerce_datetime(request.args.get("end"), "end"),
            page=page,
            limit=limit,
        )
        return jsonify(page_payload([m.to_dict() for m in items], total, page, limit)), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("list product movements")


@inventory_bp.post("/adjust")
@require_actor
def adjust_by_route():
    """Relative adjustment: {"product_id", "quantity" (signed delta), "reason", "notes"}."""
    data = request.get_json(silent=True) or {}
    try:
        record = inventory_service.adjust_by(
            product_id=coerce_positive_int(data.get("product_id"), "product_id"),
            delta=coerce_int(data.get("quantity"), "quantity"),
            reason=data.get("reason"),
            notes=data.get("notes"),
            actor_id=g.actor_id,
        )
        return jsonify({"inventory": record.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("adjust inventory")


@inventory_bp.put("/<int:product_id>/adjust")
@require_actor
def adjust_route(product_id: int):
    """Absolute recount: {"quantity" (new on-hand), "reason", "notes"}."""
    data = request.get_json(silent=True) or {}
    try:
        record = inventory_service.adjust(
            product_id=product_id,
            new_on_hand=coerce_int(data.get("quantity"), "quantity"),
            reason=data.get("reason"),
            notes=data.get("notes"),
            actor_id=g.actor_id,
        )
        return jsonify({"inventory": record.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("adjust inventory")


def _ledger_args(data: dict) -> dict:
    return {
        "product_id": coerce_positive_int(data.get("product_id"), "product_id"),
        "quantity": coerce_positive_int(data.get("quantity"), "quantity"),
        "reference_id": data.get("reference_id"),
        "notes": data.get("notes"),
    }


@inventory_bp.post("/reserve")
@require_actor
def reserve_route():
    data = request.get_json(silent=True) or {}
    try:
        record = inventory_service.reserve(
            **_ledger_args(data),
            reference_type=data.get("reference_type") or inventory_service.REF_ORDER,
            reason=data.get("reason"),
            actor_id=g.actor_id,
        )
        return jsonify({"inventory": record.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("reserve stock")


@inventory_bp.post("/release")
@require_actor
def release_route():
    data = request.get_json(silent=True) or {}
    try:
        record = inventory_service.release(
            **_ledger_args(data),
            reference_type=data.get("reference_type") or inventory_service.REF_ORDER,
            reason=data.get("reason"),
            actor_id=g.actor_id,
        )
        return jsonify({"inventory": record.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("release stock")


@inventory_bp.post("/stock-in")
@require_actor
def stock_in_route():
    data = request.get_json(silent=True) or {}
    try:
        record = inventory_service.stock_in(
            **_ledger_args(data),
            reason=data.get("reason"),
            reference_type=data.get("reference_type") or inventory_service.REF_PURCHASE_ORDER,
            warehouse_location=data.get("warehouse_location"),
            actor_id=g.actor_id,
        )
        return jsonify({"inventory": record.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("stock in")


@inventory_bp.post("/stock-in/bulk")
@require_actor
def bulk_stock_in_route():
    """{"items": [{"product_id", "quantity", "reason"?}, ...]}; returns one result per line."""
    data = request.get_json(silent=True) or {}
    items = data.get("items")
    try:
        if not isinstance(items, list) or not items:
            raise ValidationError("items must be a non-empty list")
        results = inventory_service.bulk_stock_in(items, actor_id=g.actor_id, reason=data.get("reason"))
        succeeded = sum(1 for r in results if r["success"])
        status = 200 if succeeded == len(results) else 207
        return jsonify({
            "results": results,
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
        }), status
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("bulk stock in")


@inventory_bp.post("/stock-out")
@require_actor
def stock_out_route():
    data = request.get_json(silent=True) or {}
    try:
        record = inventory_service.stock_out(
            **_ledger_args(data),
            reason=data.get("reason"),
            reference_type=data.get("reference_type") or inventory_service.REF_ORDER,
            actor_id=g.actor_id,
        )
        return jsonify({"inventory": record.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("stock out")


@inventory_bp.put("/<int:product_id>/reorder-settings")
@require_actor
def reorder_settings_route(product_id: int):
    data = request.get_json(silent=True) or {}
    try:
        record = inventory_service.update_reorder_settings(
            product_id=product_id,
            reorder_point=coerce_int(data.get("reorder_point"), "reorder_point", required=False, minimum=0),
            reorder_quantity=coerce_int(data.get("reorder_quantity"), "reorder_quantity", required=False, minimum=0),
        )
        return jsonify({"inventory": record.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("update reorder settings")


@inventory_bp.put("/<int:product_id>/location")
@require_actor
def location_route(product_id: int):
    data = request.get_json(silent=True) or {}
    try:
        record = inventory_service.update_location(
            product_id=product_id,
            warehouse_location=data.get("warehouse_location"),
        )
        return jsonify({"inventory": record.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("update warehouse location")
