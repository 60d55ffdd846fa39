"""
Pytest fixtures for opsledger backend tests.

Provides an in-memory database, a per-test clean slate, the test client and
small factories for lots and batches.
"""

from datetime import date

import pytest

from opsledger import create_app
from opsledger.extensions import db
from opsledger.services import lot_service, production_service


RECEIVED = date(2025, 3, 1)
BATCH_DAY = date(2025, 3, 10)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LOG_LEVEL': 'DEBUG',
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
def runner(app):
    """Create CLI runner."""
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Core deletes bypass the append-only ORM listeners
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def make_lot(db_session):
    """Receive a lot through the service layer."""
    def _make(
        quantity="100",
        *,
        lot_type="raw_material",
        name="Wheat Flour",
        unit="kg",
        received_date=RECEIVED,
        **extra,
    ):
        payload = {
            "name": name,
            "unit": unit,
            "quantity_received": quantity,
            "received_date": received_date.isoformat(),
            **extra,
        }
        return lot_service.create_lot(lot_type, payload)
    return _make


@pytest.fixture(scope='function')
def make_batch(db_session):
    """Create a draft batch dated BATCH_DAY unless told otherwise."""
    def _make(batch_date=BATCH_DAY, **kwargs):
        return production_service.create_batch(batch_date, **kwargs)
    return _make


@pytest.fixture(scope='function')
def complete_output():
    """Output payload with every field locking requires."""
    def _build(**overrides) -> dict:
        output = {
            "output_name": "Flour Mix",
            "produced_quantity": "45",
            "produced_unit": "kg",
            "produced_goods_tag_id": "mixes",
        }
        output.update(overrides)
        return output
    return _build
