import itertools
from datetime import datetime, timedelta

import pytest
from faker import Faker
from flask_jwt_extended import create_access_token
from sqlalchemy.pool import NullPool

from billing_engine import create_app
from billing_engine.extensions import db
from billing_engine.models import User
from billing_engine.utils import to_unix as unix

# Initialize Faker for generating test data
fake = Faker()

_event_ids = itertools.count(1)


# Custom pytest marks for organizing tests
def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow-running"
    )
    config.addinivalue_line(
        "markers",
        "db: mark test as database-intensive"
    )
    config.addinivalue_line(
        "markers",
        "payment: mark test as payment-related"
    )


# ============================================
# Application fixtures
# ============================================

@pytest.fixture()
def app():
    """Fresh application on an in-memory database for each test"""
    app = create_app("testing")

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def file_app(tmp_path):
    """
    Application on a file-backed SQLite database, for tests that hit the
    store from several threads. Each thread must push its own app context.
    """
    app = create_app(
        "testing",
        config_overrides={
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'billing.db'}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30}, "poolclass": NullPool},
        },
    )
    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.drop_all()
        db.engine.dispose()


# ============================================
# Data factories
# ============================================

@pytest.fixture()
def make_user(app):
    """Create and commit a user; keyword arguments override subscription fields."""

    def _make_user(**kwargs):
        kwargs.setdefault("email", fake.unique.email())
        kwargs.setdefault("created_at", datetime(2024, 1, 15, 12, 0, 0))
        user = User(**kwargs)
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture()
def auth_headers(app):
    def _auth_headers(user, role=None):
        token = create_access_token(identity=user.id, additional_claims={"role": role or user.role})
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers


def _envelope(event_type, obj, created=None, event_id=None, previous_attributes=None):
    data = {"object": obj}
    if previous_attributes is not None:
        data["previous_attributes"] = previous_attributes
    return {
        "id": event_id or f"evt_test_{next(_event_ids):06d}",
        "object": "event",
        "type": event_type,
        "created": created or unix(datetime(2024, 2, 1)),
        "data": data,
    }


@pytest.fixture()
def subscription_payload():
    def _subscription_payload(
        event_type="customer.subscription.updated",
        sub_id="sub_test_1",
        customer="cus_test_1",
        status="active",
        period_end=datetime(2024, 3, 1),
        price_id="price_pro_monthly",
        created=None,
        event_id=None,
        previous_attributes=None,
        **extra,
    ):
        obj = {
            "id": sub_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "current_period_end": unix(period_end),
            "items": {"object": "list", "data": [{"price": {"id": price_id}}]},
            **extra,
        }
        return _envelope(event_type, obj, created=created, event_id=event_id,
                         previous_attributes=previous_attributes)

    return _subscription_payload


@pytest.fixture()
def checkout_payload():
    def _checkout_payload(
        customer="cus_test_1",
        subscription="sub_test_1",
        mode="subscription",
        email=None,
        client_reference_id=None,
        metadata=None,
        created=None,
        event_id=None,
    ):
        obj = {
            "id": f"cs_test_{fake.pystr(min_chars=10, max_chars=10)}",
            "object": "checkout.session",
            "mode": mode,
            "customer": customer,
            "subscription": subscription,
            "customer_email": email,
            "client_reference_id": client_reference_id,
            "metadata": metadata or {},
        }
        return _envelope("checkout.session.completed", obj, created=created, event_id=event_id)

    return _checkout_payload


@pytest.fixture()
def invoice_payload():
    def _invoice_payload(
        event_type="invoice.payment_succeeded",
        subscription="sub_test_1",
        customer="cus_test_1",
        status="paid",
        amount=2900,
        created=None,
        event_id=None,
    ):
        obj = {
            "id": f"in_test_{fake.pystr(min_chars=10, max_chars=10)}",
            "object": "invoice",
            "status": status,
            "amount_paid": amount if status == "paid" else 0,
            "amount_due": amount,
            "subscription": subscription,
            "customer": customer,
        }
        return _envelope(event_type, obj, created=created, event_id=event_id)

    return _invoice_payload


@pytest.fixture()
def now():
    return datetime(2024, 2, 10, 12, 0, 0)


@pytest.fixture()
def one_second():
    return timedelta(seconds=1)
