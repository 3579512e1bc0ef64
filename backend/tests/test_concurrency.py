"""
Threaded tests against a file-backed SQLite database: concurrent reservations
must never oversell and document numbers must never repeat.
"""

import threading

import pytest
from sqlalchemy.exc import OperationalError

from backoffice import create_app
from backoffice.errors import InsufficientStock
from backoffice.extensions import db
from backoffice.models import InventoryMovement, Product
from backoffice.services import inventory_service, order_service
from backoffice.services.document_service import next_document_number

from conftest import ACTOR_ID


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'concurrency.db'}",
        "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30, "check_same_thread": False}},
        "RETRY_ATTEMPTS": 8,
        "RETRY_BACKOFF_SECONDS": 0.01,
    })
    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _seed_product(app, sku: str, on_hand: int) -> int:
    with app.app_context():
        product = Product(sku=sku, name=f"Product {sku}", price_cents=1000)
        db.session.add(product)
        db.session.commit()
        inventory_service.stock_in(product_id=product.id, quantity=on_hand, reason="Seed", actor_id=ACTOR_ID)
        product_id = product.id
        db.session.remove()
    return product_id


def _run_threads(app, count: int, work):
    results = []
    lock = threading.Lock()

    def worker(index):
        with app.app_context():
            try:
                outcome = work(index)
                with lock:
                    results.append(outcome)
            except Exception as exc:
                with lock:
                    results.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


def test_concurrent_reservations_never_oversell(file_app):
    product_id = _seed_product(file_app, "CONC-RES", 10)

    results = _run_threads(
        file_app,
        8,
        lambda i: inventory_service.reserve(
            product_id=product_id, quantity=3, reference_id=i, actor_id=ACTOR_ID
        ).quantity_reserved,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    successes = len(results) - len(failures)
    assert all(isinstance(f, (InsufficientStock, OperationalError)) for f in failures)
    assert 1 <= successes <= 3
    if not any(isinstance(f, OperationalError) for f in failures):
        assert successes == 3

    with file_app.app_context():
        record = inventory_service.get_inventory(product_id)
        assert record.quantity_on_hand == 10
        assert record.quantity_reserved == 3 * successes
        assert record.quantity_available == 10 - 3 * successes
        assert record.quantity_available >= 0
        reserved_moves = (
            db.session.query(InventoryMovement)
            .filter_by(product_id=product_id, type="reserved")
            .count()
        )
        assert reserved_moves == successes


def test_concurrent_orders_for_last_units(file_app):
    product_id = _seed_product(file_app, "CONC-ORD", 5)

    results = _run_threads(
        file_app,
        4,
        lambda i: order_service.create_order(
            items=[{"product_id": product_id, "quantity": 2}],
            customer_name=f"Buyer {i}",
            customer_email=f"buyer{i}@example.test",
            delivery_type="pickup",
            actor_id=ACTOR_ID,
        ).order_number,
    )

    numbers = [r for r in results if isinstance(r, str)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert all(isinstance(f, (InsufficientStock, OperationalError)) for f in failures)
    assert len(numbers) <= 2
    assert len(numbers) == len(set(numbers))

    with file_app.app_context():
        record = inventory_service.get_inventory(product_id)
        assert record.quantity_reserved == 2 * len(numbers)
        assert record.quantity_available >= 0


def test_document_numbers_are_unique_under_contention(file_app):
    results = _run_threads(
        file_app,
        10,
        lambda i: next_document_number(document_type="order", prefix="ORD-"),
    )

    numbers = [r for r in results if isinstance(r, str)]
    assert all(isinstance(r, (str, OperationalError)) for r in results)
    assert len(numbers) == len(set(numbers))
    assert numbers
