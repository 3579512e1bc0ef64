# backend/backoffice/routes/purchase_orders.py
"""
Purchase order routes: create, approve, receive into stock, pay, cancel.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..errors import BackofficeError, ValidationError, error_response
from ..services import purchase_order_service as po_service
from ..validation import (
    coerce_cents,
    coerce_datetime,
    coerce_int,
    coerce_items,
    page_payload,
    pagination_args,
)


purchase_orders_bp = Blueprint("purchase_orders", __name__, url_prefix="/api/purchase-orders")


def _internal_error(action: str):
    current_app.logger.exception("Failed to %s", action)
    return jsonify({"error": "internal_error", "message": "Internal server error"}), 500


def _fee_fields(data: dict) -> dict:
    return {
        "shipping_fee_cents": coerce_cents(data.get("shipping_fee_cents"), "shipping_fee_cents", required=False),
        "tax_cents": coerce_cents(data.get("tax_cents"), "tax_cents", required=False),
        "discount_cents": coerce_cents(data.get("discount_cents"), "discount_cents", required=False),
    }


@purchase_orders_bp.get("")
def list_purchase_orders_route():
    try:
        page, limit = pagination_args(request.args)
        items, total = po_service.list_purchase_orders(
            status=request.args.get("status") or None,
            supplier_id=coerce_int(request.args.get("supplier_id"), "supplier_id", required=False),
            payment_status=request.args.get("payment_status") or None,
            page=page,
            limit=limit,
        )
        return jsonify(page_payload([po.to_dict(include_lines=False) for po in items], total, page, limit)), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("list purchase orders")


@purchase_orders_bp.get("/stats")
def purchase_order_stats_route():
    try:
        return jsonify({"stats": po_service.purchase_order_stats()}), 200
    except Exception:
        return _internal_error("load purchase order stats")


@purchase_orders_bp.get("/<int:po_id>")
def get_purchase_order_route(po_id: int):
    try:
        return jsonify({"purchase_order": po_service.get_purchase_order(po_id).to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("load purchase order")


@purchase_orders_bp.post("")
@require_actor
def create_purchase_order_route():
    """
    Body: {"supplier_id", "items": [{"product_id", "quantity", "unit_price_cents"}],
    "shipping_fee_cents", "tax_cents", "discount_cents", "expected_delivery_date", "notes"}
    """
    data = request.get_json(silent=True) or {}
    try:
        po = po_service.create_purchase_order(
            supplier_id=coerce_int(data.get("supplier_id"), "supplier_id", minimum=1),
            items=coerce_items(data.get("items"), price_field="unit_price_cents"),
            **_fee_fields(data),
            expected_delivery_date=coerce_datetime(data.get("expected_delivery_date"), "expected_delivery_date"),
            notes=data.get("notes"),
            payment_method=data.get("payment_method") or "bank_transfer",
            actor_id=g.actor_id,
        )
        return jsonify({"purchase_order": po.to_dict()}), 201
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("create purchase order")


@purchase_orders_bp.put("/<int:po_id>")
@require_actor
def update_purchase_order_route(po_id: int):
    data = request.get_json(silent=True) or {}
    try:
        items = coerce_items(data["items"], price_field="unit_price_cents") if "items" in data else None
        po = po_service.update_purchase_order(
            po_id,
            items=items,
            **_fee_fields(data),
            expected_delivery_date=coerce_datetime(data.get("expected_delivery_date"), "expected_delivery_date"),
            notes=data.get("notes"),
        )
        return jsonify({"purchase_order": po.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("update purchase order")


@purchase_orders_bp.put("/<int:po_id>/approve")
@require_actor
def approve_purchase_order_route(po_id: int):
    try:
        po = po_service.approve_purchase_order(po_id, actor_id=g.actor_id)
        return jsonify({"purchase_order": po.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("approve purchase order")


@purchase_orders_bp.put("/<int:po_id>/status")
@require_actor
def update_status_route(po_id: int):
    """Generic status endpoint; maps onto approve / cancel."""
    data = request.get_json(silent=True) or {}
    try:
        status = data.get("status")
        if status == po_service.APPROVED:
            po = po_service.approve_purchase_order(po_id, actor_id=g.actor_id)
        elif status == po_service.CANCELLED:
            po = po_service.cancel_purchase_order(po_id, reason=data.get("reason"))
        else:
            raise ValidationError(
                "status must be approved or cancelled; use /receive to receive items",
                {"status": status},
            )
        return jsonify({"purchase_order": po.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("update purchase order status")


@purchase_orders_bp.get("/<int:po_id>/receives")
def receiving_summary_route(po_id: int):
    try:
        return jsonify({"summary": po_service.receiving_summary(po_id)}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("load receiving summary")


@purchase_orders_bp.post("/<int:po_id>/receive")
@require_actor
def receive_items_route(po_id: int):
    """Body: {"items": [{"product_id", "quantity"}]}"""
    data = request.get_json(silent=True) or {}
    try:
        po = po_service.receive_items(po_id, coerce_items(data.get("items")), actor_id=g.actor_id)
        return jsonify({
            "purchase_order": po.to_dict(),
            "summary": po_service.receiving_summary(po_id),
        }), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("receive purchase order items")


@purchase_orders_bp.put("/<int:po_id>/cancel")
@require_actor
def cancel_purchase_order_route(po_id: int):
    data = request.get_json(silent=True) or {}
    try:
        po = po_service.cancel_purchase_order(po_id, reason=data.get("reason"))
        return jsonify({"purchase_order": po.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("cancel purchase order")


@purchase_orders_bp.post("/<int:po_id>/payment")
@require_actor
def add_payment_route(po_id: int):
    data = request.get_json(silent=True) or {}
    try:
        po = po_service.add_payment(
            po_id,
            amount_cents=coerce_int(data.get("amount_cents"), "amount_cents", minimum=1),
            payment_method=data.get("payment_method") or "bank_transfer",
            transaction_id=data.get("transaction_id"),
            notes=data.get("notes"),
            actor_id=g.actor_id,
        )
        return jsonify({"purchase_order": po.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("add purchase order payment")


@purchase_orders_bp.delete("/<int:po_id>")
@require_actor
def delete_purchase_order_route(po_id: int):
    try:
        po_service.delete_purchase_order(po_id)
        return jsonify({"deleted": True, "purchase_order_id": po_id}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("delete purchase order")
