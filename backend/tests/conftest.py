"""
Pytest fixtures for back-office tests.

Provides an in-memory application, a clean database per test, and small
factories for directory records.
"""

import pytest

from backoffice import create_app
from backoffice.extensions import db
from backoffice.models import Customer, Product, Supplier
from backoffice.services import inventory_service


ACTOR_ID = 7


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RETRY_BACKOFF_SECONDS': 0.0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        db.session.remove()
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        db.session.remove()


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: make_product(sku, price_cents=1000, stock=0, is_active=True)."""
    def _make(sku: str, *, price_cents: int = 1000, stock: int = 0, is_active: bool = True, name: str | None = None):
        product = Product(
            sku=sku,
            name=name or f"Product {sku}",
            price_cents=price_cents,
            stock=stock,
            is_active=is_active,
        )
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def stocked_product(make_product):
    """Factory: a product whose ledger holds ``on_hand`` units."""
    def _make(sku: str, on_hand: int, *, price_cents: int = 1000, reorder_point: int | None = None):
        product = make_product(sku, price_cents=price_cents)
        if on_hand:
            inventory_service.stock_in(
                product_id=product.id,
                quantity=on_hand,
                reason="Initial stock",
                actor_id=ACTOR_ID,
            )
        if reorder_point is not None:
            inventory_service.update_reorder_settings(product_id=product.id, reorder_point=reorder_point)
        return product
    return _make


@pytest.fixture(scope='function')
def make_customer(db_session):
    def _make(email: str, customer_type: str = "retail"):
        customer = Customer(email=email, full_name=email.split("@")[0].title(), customer_type=customer_type)
        db_session.add(customer)
        db_session.commit()
        return customer
    return _make


@pytest.fixture(scope='function')
def supplier(db_session):
    supplier = Supplier(code="SUP-001", company_name="Acme Wholesale", email="orders@acme.test")
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def actor_headers():
    return {"X-Actor-Id": str(ACTOR_ID)}


def record_for(product_id: int):
    """Fresh read of a product's inventory record."""
    db.session.expire_all()
    return inventory_service.get_inventory(product_id)


def walk_in_order_kwargs(**overrides) -> dict:
    kwargs = {
        "customer_name": "Walk In",
        "customer_email": "walkin@example.test",
        "delivery_type": "delivery",
        "shipping_address": "1 Main Street",
        "payment_method": "cod",
        "actor_id": ACTOR_ID,
    }
    kwargs.update(overrides)
    return kwargs
