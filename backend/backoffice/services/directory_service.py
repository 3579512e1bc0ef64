# Overview: Read-only lookups against the product, customer and supplier directories.

from __future__ import annotations

from sqlalchemy import func

from ..errors import ReferenceNotFound, ValidationError
from ..extensions import db
from ..models import Customer, Product, Supplier


def get_product(product_id: int, *, require_active: bool = False) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise ReferenceNotFound("product not found", {"product_id": product_id})
    if require_active and not product.is_active:
        raise ValidationError("product is not available", {"product_id": product_id})
    return product


def find_customer_by_email(email: str | None) -> Customer | None:
    """Case-insensitive lookup. None means the buyer is a walk-in."""
    if not email:
        return None
    return (
        db.session.query(Customer)
        .filter(func.lower(Customer.email) == email.strip().lower())
        .first()
    )


def get_supplier(supplier_id: int) -> Supplier:
    supplier = db.session.get(Supplier, supplier_id)
    if supplier is None:
        raise ReferenceNotFound("supplier not found", {"supplier_id": supplier_id})
    return supplier
