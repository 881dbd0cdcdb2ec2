# writerdesk/conftest.py
import os

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from writerdesk.core.config import Settings
from writerdesk.core.database import create_all_tables, dispose_engine, init_engine
from writerdesk.core.metrics import METRICS
from writerdesk.features.billing.service import BillingServices
from writerdesk.tests.mocks import FakeStripeProvider


WEBHOOK_SECRET = "whsec_test"


@pytest.fixture(scope="function", autouse=True)
def database(tmp_path):
    """
    Fresh SQLite database per test.

    Set TEST_DATABASE_URL to run against Postgres instead; tables are
    dropped and recreated around each test in that case.
    """
    url = os.getenv("TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'writerdesk.db'}"
    init_engine(url)
    create_all_tables()
    yield url
    if os.getenv("TEST_DATABASE_URL"):
        from writerdesk.core.database import drop_all_tables
        drop_all_tables()
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    METRICS.reset()
    yield


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        ENV="test",
        DATABASE_URL=None,
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        STRIPE_PRICE_PRO_MONTHLY="price_pro_monthly",
        STRIPE_PRICE_PRO_YEARLY="price_pro_yearly",
        STRIPE_PRICE_STARTER_MONTHLY="price_starter_monthly",
        APP_URL="https://app.example.com",
        CHECKOUT_TRIAL_DAYS=3,
        SIGNUP_TRIAL_DAYS=0,
        PAST_DUE_GRACE_DAYS=3,
    )


@pytest.fixture
def fake_provider():
    return FakeStripeProvider(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def billing_services(test_settings, fake_provider):
    return BillingServices(test_settings, fake_provider)


@pytest.fixture
def client(test_settings, billing_services):
    from writerdesk.main import create_app

    app = create_app(test_settings, billing_services)
    return TestClient(app)
