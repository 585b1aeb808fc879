import hashlib
import hmac
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from billing_events_svc.app import app
from billing_events_svc.config import Settings, get_settings
from billing_events_svc.models.base import Base, get_db
from billing_events_svc.models import invoice, processed_event, subscription  # noqa: F401
from billing_events_svc.price_catalog import PriceCatalog
from billing_events_svc.record_store import RecordStore
from billing_events_svc.routers import billing_router
from billing_events_svc.stripe_integration import StripeIntegration

WEBHOOK_SECRET = "whsec_test_secret"


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhook bodies."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def store(db_session):
    return RecordStore(db_session)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        stripe_api_key="sk_test_dummy",
        stripe_webhook_secret=WEBHOOK_SECRET,
        site_url="https://app.example.test",
        stripe_price_starter_monthly="price_starter_monthly",
        stripe_price_starter_annual="price_starter_annual",
        stripe_price_professional_monthly="price_pro_monthly",
        stripe_price_professional_annual="price_pro_annual",
        stripe_price_enterprise_monthly="price_ent_monthly",
        stripe_price_enterprise_annual="",
    )


@pytest.fixture
def client(db_session, settings):
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[billing_router.get_price_catalog] = lambda: PriceCatalog.from_settings(settings)
    app.dependency_overrides[billing_router.get_stripe_integration] = lambda: StripeIntegration.from_settings(settings)
    yield TestClient(app)
    app.dependency_overrides.clear()
