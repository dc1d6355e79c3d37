"""
Pytest fixtures for the approvals test suite.

Provides:
- an application on in-memory SQLite (config.TestConfig)
- one active user per role (username == role, password "secret")
- HTTP Basic headers for those users
- a stub requests session standing in for the Medad ERP
"""

import base64
import json
from datetime import datetime

import pytest

from approvals import create_app, init_services
from approvals.extensions import db
from approvals.models import ROLES, Client, PaymentRequest, User

PASSWORD = "secret"


# ---------------------------------------------------------------------
# Medad stub
# ---------------------------------------------------------------------
class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        if text is None:
            text = "" if body is None else json.dumps(body)
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return json.loads(self.text)


class FakeMedadSession:
    """
    Records every call and answers from a per-(method, path) queue.

    The last queued response is repeated; an Exception instance is raised instead of returned.
    """

    def __init__(self, base_url):
        self.base_url = base_url
        self.calls = []
        self.routes = {}
        self.respond("POST", "/getToken", FakeResponse(200, {"token": "tok-1", "expiresIn": 3600}))

    def respond(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def calls_to(self, method, path):
        return [call for call in self.calls if call[0] == method and call[1] == path]

    def _answer(self, method, url, **kwargs):
        path = url[len(self.base_url):]
        self.calls.append((method, path, kwargs))
        queue = self.routes.get((method, path))
        if not queue:
            raise AssertionError(f"Unexpected Medad call {method} {path}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url, **kwargs):
        return self._answer("POST", url, **kwargs)

    def request(self, method, url, **kwargs):
        return self._answer(method, url, **kwargs)


# ---------------------------------------------------------------------
# App
# ---------------------------------------------------------------------
@pytest.fixture
def app():
    app = create_app("config.TestConfig")
    with app.app_context():
        db.create_all()
        for role in ROLES:
            user = User(username=role, role=role, display_name=role.title(), is_active=True)
            user.set_password(PASSWORD)
            if role == "sales_rep":
                user.medad_salesman_id = "S-1"
                user.warehouse_no = "W-1"
            db.session.add(user)
        db.session.commit()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def medad(app):
    session = FakeMedadSession(app.config["MEDAD_BASE_URL"])
    init_services(app, session=session)
    return session


@pytest.fixture
def client(app, medad):
    return app.test_client()


@pytest.fixture
def app_ctx(app, medad):
    """App context for tests that call services directly (no test client requests)."""
    with app.app_context():
        yield app


@pytest.fixture
def notifications(app, medad):
    events = []
    app.extensions["notifier"].add_sink(events.append)
    return events


def basic_auth(username, password=PASSWORD):
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


@pytest.fixture
def auth():
    return basic_auth


def get_user(username):
    return User.query.filter_by(username=username).one()


# ---------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------
@pytest.fixture
def linked_client_id(app):
    with app.app_context():
        record = Client(
            client_name="Ahmed",
            company_name="Nahdi Trading",
            tax_number="300000000000003",
            street="King Fahd Rd",
            city="Riyadh",
            medad_customer_id="C-100",
            medad_vat_no="311111111100003",
            medad_vat_type="1",
            medad_address1="King Fahd Rd 12",
        )
        db.session.add(record)
        db.session.commit()
        return record.id


@pytest.fixture
def unlinked_client_id(app):
    with app.app_context():
        record = Client(client_name="Walk-in", company_name=None)
        db.session.add(record)
        db.session.commit()
        return record.id


def make_payment(sequence_id, **overrides):
    values = dict(
        sequence_id=sequence_id,
        beneficiary_id="B-1",
        beneficiary_name="Supplier One",
        beneficiary_type="supplier",
        operation_amount=1000,
        created_at=datetime(2025, 3, 1),
    )
    values.update(overrides)
    payment = PaymentRequest(**values)
    db.session.add(payment)
    db.session.flush()
    return payment


PRODUCTS = [
    {"description": "Cement 50kg", "medad_product_no": "P-1", "quantity": 3, "price": "10"},
    {"description": "Steel bar", "productNo": "P-2", "quantity": "2", "unit_price": "12.50"},
]
