# backend/backoffice/routes/orders.py
"""
Order routes.

Creating, editing and moving an order through its status machine all drive
the inventory ledger (reserve, release, stock out). Errors come back as
{"error": code, "message", "details"} with the status of the error class.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..errors import BackofficeError, ValidationError, error_response
from ..services import order_service
from ..validation import coerce_int, coerce_items, page_payload, pagination_args


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _internal_error(action: str):
    current_app.logger.exception("Failed to %s", action)
    return jsonify({"error": "internal_error", "message": "Internal server error"}), 500


def _customer_fields(data: dict) -> dict:
    customer = data.get("customer") or {}
    if not isinstance(customer, dict):
        raise ValidationError("customer must be an object")
    return {
        "customer_name": customer.get("name"),
        "customer_email": customer.get("email"),
        "customer_phone": customer.get("phone"),
    }


@orders_bp.get("")
def list_orders_route():
    """?status=&payment_status=&search=&sort=newest|oldest|total_high|total_low"""
    try:
        page, limit = pagination_args(request.args)
        orders, total = order_service.list_orders(
            status=request.args.get("status") or None,
            payment_status=request.args.get("payment_status") or None,
            search=request.args.get("search") or None,
            sort=request.args.get("sort") or "newest",
            page=page,
            limit=limit,
        )
        return jsonify(page_payload([o.to_dict(include_items=False) for o in orders], total, page, limit)), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("list orders")


@orders_bp.get("/stats/dashboard")
def order_stats_route():
    try:
        return jsonify({"stats": order_service.order_stats()}), 200
    except Exception:
        return _internal_error("load order stats")


@orders_bp.get("/user/my-orders")
@require_actor
def my_orders_route():
    try:
        page, limit = pagination_args(request.args)
        orders, total = order_service.list_orders_for_user(g.actor_id, page=page, limit=limit)
        return jsonify(page_payload([o.to_dict() for o in orders], total, page, limit)), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("list user orders")


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        return jsonify({"order": order_service.get_order(order_id).to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("load order")


@orders_bp.post("")
@require_actor
def create_order_route():
    """
    Create an order and reserve its stock.

    Body: {"items": [{"product_id", "quantity"}], "customer": {"name", "email",
    "phone"}, "delivery_type", "shipping_address", "payment_method",
    "customer_note", "user_id"}
    """
    data = request.get_json(silent=True) or {}
    try:
        order = order_service.create_order(
            items=coerce_items(data.get("items")),
            **_customer_fields(data),
            delivery_type=data.get("delivery_type") or "delivery",
            shipping_address=data.get("shipping_address"),
            payment_method=data.get("payment_method") or "cod",
            customer_note=data.get("customer_note"),
            user_id=coerce_int(data.get("user_id"), "user_id", required=False) or g.actor_id,
            actor_id=g.actor_id,
        )
        return jsonify({"order": order.to_dict()}), 201
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("create order")


@orders_bp.put("/<int:order_id>")
@require_actor
def update_order_route(order_id: int):
    data = request.get_json(silent=True) or {}
    try:
        items = coerce_items(data["items"]) if "items" in data else None
        order = order_service.update_order(
            order_id,
            items=items,
            **_customer_fields(data),
            delivery_type=data.get("delivery_type"),
            shipping_address=data.get("shipping_address"),
            payment_method=data.get("payment_method"),
            customer_note=data.get("customer_note"),
            actor_id=g.actor_id,
        )
        return jsonify({"order": order.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("update order")


@orders_bp.route("/<int:order_id>/status", methods=["PUT", "PATCH"])
@require_actor
def update_status_route(order_id: int):
    data = request.get_json(silent=True) or {}
    try:
        status = data.get("status")
        if not status:
            raise ValidationError("status is required")
        order = order_service.transition_order_status(order_id, status, actor_id=g.actor_id)
        return jsonify({"order": order.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("update order status")


@orders_bp.route("/<int:order_id>/payment", methods=["PUT", "PATCH"])
@require_actor
def update_payment_status_route(order_id: int):
    data = request.get_json(silent=True) or {}
    try:
        order = order_service.set_payment_status(order_id, data.get("payment_status"))
        return jsonify({"order": order.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("update order payment status")


@orders_bp.put("/<int:order_id>/tracking")
@require_actor
def update_tracking_route(order_id: int):
    data = request.get_json(silent=True) or {}
    try:
        order = order_service.set_tracking_number(order_id, data.get("tracking_number"))
        return jsonify({"order": order.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("update tracking number")


@orders_bp.delete("/<int:order_id>")
@require_actor
def delete_order_route(order_id: int):
    try:
        order_service.delete_order(order_id)
        return jsonify({"deleted": True, "order_id": order_id}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("delete order")
