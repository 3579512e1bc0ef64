# backend/backoffice/routes/carts.py
"""
Cart routes. The cart belongs to the acting user (X-Actor-Id).
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..errors import BackofficeError, error_response
from ..services import cart_service
from ..validation import coerce_positive_int


carts_bp = Blueprint("carts", __name__, url_prefix="/api/cart")


def _internal_error(action: str):
    current_app.logger.exception("Failed to %s", action)
    return jsonify({"error": "internal_error", "message": "Internal server error"}), 500


@carts_bp.get("")
@require_actor
def get_cart_route():
    try:
        return jsonify({"cart": cart_service.get_cart(g.actor_id).to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("load cart")


@carts_bp.post("/add")
@require_actor
def add_item_route():
    data = request.get_json(silent=True) or {}
    try:
        quantity = data.get("quantity", 1)
        cart = cart_service.add_item(
            g.actor_id,
            product_id=coerce_positive_int(data.get("product_id"), "product_id"),
            quantity=coerce_positive_int(quantity, "quantity"),
        )
        return jsonify({"cart": cart.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("add cart item")


@carts_bp.put("/update/<int:item_id>")
@require_actor
def update_item_route(item_id: int):
    data = request.get_json(silent=True) or {}
    try:
        cart = cart_service.update_item(
            g.actor_id,
            item_id,
            quantity=coerce_positive_int(data.get("quantity"), "quantity"),
        )
        return jsonify({"cart": cart.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("update cart item")


@carts_bp.delete("/remove/<int:item_id>")
@require_actor
def remove_item_route(item_id: int):
    try:
        cart = cart_service.remove_item(g.actor_id, item_id)
        return jsonify({"cart": cart.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("remove cart item")


@carts_bp.delete("/clear")
@require_actor
def clear_cart_route():
    try:
        cart = cart_service.clear_cart(g.actor_id)
        return jsonify({"cart": cart.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("clear cart")


@carts_bp.post("/checkout")
@require_actor
def checkout_route():
    """Body: {"customer": {"name", "email", "phone"}, "delivery_type", "shipping_address", ...}"""
    data = request.get_json(silent=True) or {}
    customer = data.get("customer") or {}
    try:
        order = cart_service.checkout(
            g.actor_id,
            customer_name=customer.get("name"),
            customer_email=customer.get("email"),
            customer_phone=customer.get("phone"),
            delivery_type=data.get("delivery_type") or "delivery",
            shipping_address=data.get("shipping_address"),
            payment_method=data.get("payment_method") or "cod",
            customer_note=data.get("customer_note"),
            actor_id=g.actor_id,
        )
        return jsonify({"order": order.to_dict()}), 201
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("check out cart")
