"""
Pytest fixtures for possettle backend tests.

Provides test database setup, a scripted verification gateway, and test client.
"""

import asyncio

import pytest
from possettle import create_app
from possettle.extensions import db
from possettle.services import cash_session_service
from possettle.services.coordinator_service import get_coordinator
from possettle.services.verification_gateway import StaticVerificationGateway, VerificationGateway


OPERATOR_ID = 7
OTHER_OPERATOR_ID = 8
LOCATION_ID = 1


class SlowVerificationGateway(VerificationGateway):
    """Never answers within a short timeout."""

    def __init__(self, delay: float = 5.0):
        self.delay = delay
        self.calls = []

    async def check(self, reference, *, kind, amount_cents):
        self.calls.append(reference)
        await asyncio.sleep(self.delay)
        return "CONFIRMED"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'VERIFICATION_GATEWAY_URL': None,
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
        # Clear all data but keep schema
        db.session.rollback()
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def coordinator(app, db_session):
    """App coordinator with a fresh scripted gateway and the default timeout."""
    coordinator = get_coordinator()
    original_gateway, original_timeout = coordinator.gateway, coordinator.timeout_seconds
    coordinator.gateway = StaticVerificationGateway()
    coordinator.timeout_seconds = 1.0

    yield coordinator

    coordinator.gateway = original_gateway
    coordinator.timeout_seconds = original_timeout


@pytest.fixture(scope='function')
def gateway(coordinator):
    """The scripted gateway wired into the coordinator."""
    return coordinator.gateway


@pytest.fixture(scope='function')
def open_session(db_session):
    """OPEN cash session for OPERATOR_ID with a 5000 cent float."""
    return cash_session_service.open_session(
        operator_id=OPERATOR_ID,
        location_id=LOCATION_ID,
        opening_float_cents=5000,
    )


def _operator_headers(operator_id: int, manager_override: bool = False) -> dict:
    headers = {'X-Operator-Id': str(operator_id)}
    if manager_override:
        headers['X-Manager-Override'] = 'true'
    return headers


@pytest.fixture
def operator_headers():
    """Headers for the operator owning open_session."""
    return _operator_headers(OPERATOR_ID)


@pytest.fixture
def other_operator_headers():
    """Headers for a second operator without manager approval."""
    return _operator_headers(OTHER_OPERATOR_ID)


@pytest.fixture
def manager_headers():
    """Second operator acting with manager approval."""
    return _operator_headers(OTHER_OPERATOR_ID, manager_override=True)
