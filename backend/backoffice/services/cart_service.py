# Overview: Per-user shopping carts and checkout into the order workflow.

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..errors import InsufficientStock, ReferenceNotFound, ValidationError
from ..extensions import db
from ..models import Cart, CartItem, InventoryRecord, Order
from .concurrency import run_with_retry
from .directory_service import get_product
from . import order_service


def _require_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("quantity must be at least 1", {"quantity": quantity})
    return quantity


def _available_for(product) -> int:
    """Ledger availability, or the product mirror before a record exists."""
    record = db.session.query(InventoryRecord).filter_by(product_id=product.id).first()
    if record is not None:
        return record.quantity_available
    return max(product.stock or 0, 0)


def _check_stock(product, quantity: int) -> None:
    available = _available_for(product)
    if quantity > available:
        raise InsufficientStock(
            "not enough stock for the requested quantity",
            product_id=product.id,
            requested=quantity,
            available=available,
        )


def _get_or_create_cart(user_id: int) -> Cart:
    cart = db.session.query(Cart).filter_by(user_id=user_id).first()
    if cart is not None:
        return cart
    cart = Cart(user_id=user_id)
    db.session.add(cart)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        cart = db.session.query(Cart).filter_by(user_id=user_id).first()
        if cart is None:
            raise
    return cart


def _get_item(cart: Cart, item_id: int) -> CartItem:
    item = db.session.query(CartItem).filter_by(id=item_id, cart_id=cart.id).first()
    if item is None:
        raise ReferenceNotFound("cart item not found", {"item_id": item_id})
    return item


def get_cart(user_id: int) -> Cart:
    return _get_or_create_cart(user_id)


def add_item(user_id: int, *, product_id: int, quantity: int = 1) -> Cart:
    """Add a product; an existing line for the same product is increased."""
    _require_quantity(quantity)

    def _op() -> Cart:
        cart = _get_or_create_cart(user_id)
        product = get_product(product_id, require_active=True)
        existing = db.session.query(CartItem).filter_by(cart_id=cart.id, product_id=product.id).first()
        new_quantity = quantity + (existing.quantity if existing else 0)
        _check_stock(product, new_quantity)
        if existing is not None:
            existing.quantity = new_quantity
        else:
            db.session.add(CartItem(cart_id=cart.id, product_id=product.id, quantity=quantity))
        db.session.commit()
        return cart

    return run_with_retry(_op)


def update_item(user_id: int, item_id: int, *, quantity: int) -> Cart:
    _require_quantity(quantity)

    def _op() -> Cart:
        cart = _get_or_create_cart(user_id)
        item = _get_item(cart, item_id)
        product = get_product(item.product_id, require_active=True)
        _check_stock(product, quantity)
        item.quantity = quantity
        db.session.commit()
        return cart

    return run_with_retry(_op)


def remove_item(user_id: int, item_id: int) -> Cart:
    def _op() -> Cart:
        cart = _get_or_create_cart(user_id)
        db.session.delete(_get_item(cart, item_id))
        db.session.commit()
        return cart

    return run_with_retry(_op)


def clear_cart(user_id: int) -> Cart:
    def _op() -> Cart:
        cart = _get_or_create_cart(user_id)
        db.session.query(CartItem).filter_by(cart_id=cart.id).delete(synchronize_session=False)
        db.session.commit()
        db.session.expire(cart)
        return cart

    return run_with_retry(_op)


def checkout(
    user_id: int,
    *,
    customer_name: str,
    customer_email: str,
    customer_phone: str | None = None,
    delivery_type: str = "delivery",
    shipping_address: str | None = None,
    payment_method: str = "cod",
    customer_note: str | None = None,
    actor_id: int | None = None,
) -> Order:
    """
    Turn the cart into an order. The cart is cleared only after the order
    (with its reservations) exists; a failed checkout leaves it intact.
    """
    cart = _get_or_create_cart(user_id)
    items = [{"product_id": item.product_id, "quantity": item.quantity} for item in cart.items]
    if not items:
        raise ValidationError("cart is empty")

    order = order_service.create_order(
        items=items,
        customer_name=customer_name,
        customer_email=customer_email,
        customer_phone=customer_phone,
        delivery_type=delivery_type,
        shipping_address=shipping_address,
        payment_method=payment_method,
        customer_note=customer_note,
        user_id=user_id,
        actor_id=actor_id,
    )
    clear_cart(user_id)
    return order
