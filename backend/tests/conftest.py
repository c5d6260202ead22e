"""
Pytest fixtures for stock ledger backend tests.

Provides test database setup, catalog fixtures, a stock helper and a
notification sink that records every dispatched intent.
"""

import pytest
from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Product, Size
from stockledger.models.stock import REASON_ADJUSTMENT
from stockledger.services.notification_service import get_dispatcher
from stockledger.services.transaction_coordinator import get_coordinator


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'LOW_STOCK_THRESHOLD': 5,
    'LOW_STOCK_HIGH_PRIORITY_AT': 2,
    'NOTIFY_RESTOCKED': True,
    'IMPORTANT_SALE_THRESHOLD_CENTS': 50_000_000,
    'ORDER_DELAY_DAYS': 3,
    'LEDGER_LOCK_TIMEOUT_SECONDS': 2.0,
    'LEDGER_COMMIT_ATTEMPTS': 3,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

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
def sink(app):
    """Collect dispatched notification intents for the duration of a test."""
    received = []
    dispatcher = get_dispatcher()
    dispatcher.register(received.append)
    yield received
    dispatcher.unregister(received.append)


@pytest.fixture(scope='function')
def product(db_session):
    product = Product(sku="TEE-001", name="Basic Tee", price_cents=1500)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def other_product(db_session):
    product = Product(sku="HOOD-001", name="Hoodie", price_cents=4500)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def size_m(db_session):
    size = Size(name="M", sort_order=2)
    db_session.add(size)
    db_session.commit()
    return size


@pytest.fixture(scope='function')
def size_l(db_session):
    size = Size(name="L", sort_order=3)
    db_session.add(size)
    db_session.commit()
    return size


def stock_up(product_id: int, size_id: int, quantity: int, **kwargs):
    """Seed stock through the ledger so history stays consistent."""
    return get_coordinator().submit(
        REASON_ADJUSTMENT,
        [(product_id, size_id, quantity)],
        actor="test",
        note="opening stock",
        **kwargs,
    )
