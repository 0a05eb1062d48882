"""
Pytest fixtures for workshop engine tests.

Provides test database setup, user/vehicle/stock factories, a recording
notification sender, a fake payment gateway and a test client.
"""

import pytest

from workshop import create_app
from workshop.extensions import db
from workshop.models import User, Vehicle
from workshop.models.auth import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_MECHANIC
from workshop.services import gateway_service, job_service, notification_service, session_service, stock_service


GATEWAY_KEY_ID = "rzp_test_key"
GATEWAY_KEY_SECRET = "rzp_test_secret"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'GATEWAY_KEY_ID': GATEWAY_KEY_ID,
        'GATEWAY_KEY_SECRET': GATEWAY_KEY_SECRET,
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


# =============================================================================
# NOTIFICATIONS / GATEWAY DOUBLES
# =============================================================================


class RecordingSender:
    """Notification sender that keeps every delivery in memory."""

    def __init__(self):
        self.sent = []

    def notify(self, recipient_ref, template_kind, payload):
        self.sent.append((recipient_ref, template_kind, payload))

    def kinds(self):
        return [kind for _, kind, _ in self.sent]


class FailingSender:
    def notify(self, recipient_ref, template_kind, payload):
        raise RuntimeError("SMS provider down")


class FakeGatewayClient(gateway_service.GatewayClient):
    """Gateway client that creates orders locally instead of calling the API."""

    def __init__(self):
        super().__init__(GATEWAY_KEY_ID, GATEWAY_KEY_SECRET, "https://gateway.invalid/v1")
        self.orders = []

    def create_order(self, amount_cents, receipt, notes=None):
        order = {"id": f"order_{receipt}", "amount": amount_cents, "currency": "INR"}
        self.orders.append(order)
        return order


@pytest.fixture(autouse=True)
def sender(app):
    """Fresh recording sender for every test."""
    recording = RecordingSender()
    app.extensions[notification_service.SENDER_EXTENSION_KEY] = recording
    yield recording
    app.extensions.pop(notification_service.SENDER_EXTENSION_KEY, None)


@pytest.fixture(scope='function')
def failing_sender(app, sender):
    app.extensions[notification_service.SENDER_EXTENSION_KEY] = FailingSender()
    yield
    app.extensions[notification_service.SENDER_EXTENSION_KEY] = sender


@pytest.fixture(scope='function')
def gateway(app):
    fake = FakeGatewayClient()
    app.extensions[gateway_service.CLIENT_EXTENSION_KEY] = fake
    yield fake
    app.extensions.pop(gateway_service.CLIENT_EXTENSION_KEY, None)


# =============================================================================
# FACTORIES
# =============================================================================


def _make_user(session, name, mobile, role):
    user = User(name=name, mobile=mobile, role=role, is_active=True)
    session.add(user)
    session.commit()
    return user


@pytest.fixture(scope='function')
def admin(db_session):
    return _make_user(db_session, "Asha Admin", "9000000001", ROLE_ADMIN)


@pytest.fixture(scope='function')
def mechanic(db_session):
    return _make_user(db_session, "Manoj Mechanic", "9000000002", ROLE_MECHANIC)


@pytest.fixture(scope='function')
def other_mechanic(db_session):
    return _make_user(db_session, "Mehul Mechanic", "9000000003", ROLE_MECHANIC)


@pytest.fixture(scope='function')
def customer(db_session):
    return _make_user(db_session, "Chitra Customer", "9000000004", ROLE_CUSTOMER)


@pytest.fixture(scope='function')
def other_customer(db_session):
    return _make_user(db_session, "Chetan Customer", "9000000005", ROLE_CUSTOMER)


@pytest.fixture(scope='function')
def vehicle(db_session, customer):
    v = Vehicle(
        owner_user_id=customer.id,
        vehicle_number="KA01AB1234",
        brand="Maruti",
        model="Swift",
        year=2019,
        color="Red",
    )
    db_session.add(v)
    db_session.commit()
    return v


@pytest.fixture(scope='function')
def make_item(db_session, admin):
    """Factory: make_item(name, opening_stock=..., min_stock=..., ...)."""
    def _make(name="Brake Pad Set", category="brake", **kwargs):
        kwargs.setdefault("cost_price_cents", 80000)
        kwargs.setdefault("selling_price_cents", 120000)
        return stock_service.create_item(name=name, category=category, user_id=admin.id, **kwargs)
    return _make


SERVICE_LINE = {"item_type": "labour", "description": "General service", "quantity": 2, "unit_price_cents": 10000}


@pytest.fixture(scope='function')
def make_job(db_session, admin, customer, vehicle):
    """
    Factory for job cards.

    Defaults to one labour line of 2 x 100.00 with a 20.00 job discount at
    18% tax, i.e. a grand total of 212.40.
    """
    def _make(items=None, **kwargs):
        kwargs.setdefault("discount_cents", 2000)
        kwargs.setdefault("tax_rate_bps", 1800)
        return job_service.create_job(
            customer_user_id=customer.id,
            vehicle_id=vehicle.id,
            user_id=admin.id,
            items=[dict(SERVICE_LINE)] if items is None else items,
            **kwargs,
        )
    return _make


@pytest.fixture(scope='function')
def ready_job(make_job, admin):
    """A job with every item approved, moved through to ready."""
    def _make(**kwargs):
        job = make_job(**kwargs)
        job_service.change_status(job.id, "awaiting-approval", user_id=admin.id)
        job_service.approve_items(job.id, [i.id for i in job.items], user_id=admin.id)
        job_service.change_status(job.id, "in-progress", user_id=admin.id)
        return job_service.change_status(job.id, "ready", user_id=admin.id)
    return _make


# =============================================================================
# AUTH HELPERS
# =============================================================================


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def headers_for(db_session):
    """Factory: headers_for(user) -> Authorization headers with a fresh token."""
    def _headers(user):
        _, token = session_service.create_session(user.id)
        return auth_headers(token)
    return _headers
