# tests/conftest.py
# Ensure project root (parent of tests) is on sys.path so the flat modules import.
import sys
from pathlib import Path

import mongomock
import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from config import Settings, get_settings  # noqa: E402
from database import ensure_indexes, get_db  # noqa: E402
from main import app, get_gateway  # noqa: E402


class FakeRazorpay:
    """Stands in for the gateway REST API; records every order it creates."""

    def __init__(self):
        self.orders = []

    def create_order(self, amount, currency, receipt, notes=None):
        order = {"id": f"order_test_{len(self.orders) + 1}", "amount": amount, "currency": currency, "receipt": receipt}
        self.orders.append(order)
        return order


@pytest.fixture
def settings():
    return Settings(
        secret="test-secret-0123456789abcdef0123456789",
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret="rzp_test_secret",
        cod_dev_otp=True,
        api_url="http://testserver",
    )


@pytest.fixture
def mongo_db():
    database = mongomock.MongoClient()["store_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def razorpay():
    return FakeRazorpay()


@pytest.fixture
def api(settings, mongo_db, razorpay):
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_db] = lambda: mongo_db
    app.dependency_overrides[get_gateway] = lambda: razorpay
    yield app
    app.dependency_overrides.clear()
