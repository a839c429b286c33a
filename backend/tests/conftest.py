"""
Pytest fixtures for rxledger backend tests.

Provides test database setup, product/batch factories, and test client.
"""

from datetime import timedelta

import pytest

from rxledger import create_app
from rxledger.extensions import db
from rxledger.models import Product, StockBatch
from rxledger.services.receive_service import receive_stock
from rxledger.time_utils import today


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RUN_DATA_MIGRATIONS': False,
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
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: active product with price and reorder point."""
    counter = {"n": 0}

    def _make(name=None, selling_price_cents=1000, reorder_point=10, is_active=True):
        counter["n"] += 1
        product = Product(
            name=name or f"Product {counter['n']}",
            selling_price_cents=selling_price_cents,
            reorder_point=reorder_point,
            reorder_quantity=reorder_point * 2,
            is_active=is_active,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def receive(db_session):
    """Factory: receive a batch through the real intake path (batch + purchase movement)."""
    counter = {"n": 0}

    def _receive(product, quantity, *, expires_in_days=365, unit_cost_cents=100, batch_number=None, **kwargs):
        counter["n"] += 1
        return receive_stock(
            product_id=product.id,
            batch_number=batch_number or f"LOT-{counter['n']:03d}",
            expiry_date=today() + timedelta(days=expires_in_days),
            quantity=quantity,
            unit_cost_cents=unit_cost_cents,
            supplier=kwargs.pop("supplier", "Acme Pharma"),
            **kwargs,
        )

    return _receive


@pytest.fixture(scope='function')
def raw_batch(db_session):
    """Factory: insert a batch row directly, bypassing intake validation and the ledger."""

    def _raw(product, remaining, *, unit_cost_cents=100, expires_in_days=365, batch_number="RAW-1"):
        batch = StockBatch(
            product_id=product.id,
            batch_number=batch_number,
            expiry_date=today() + timedelta(days=expires_in_days),
            unit_cost_cents=unit_cost_cents,
            pack_size=1,
            quantity_received=remaining,
            remaining_quantity=remaining,
        )
        db_session.add(batch)
        db_session.commit()
        return batch

    return _raw


@pytest.fixture(scope='function')
def reload(db_session):
    """Re-read a model instance from the database."""

    def _reload(obj):
        obj_id = obj.id
        db_session.expire_all()
        return db_session.get(type(obj), obj_id)

    return _reload
