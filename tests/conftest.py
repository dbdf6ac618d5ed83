"""Pytest configuration and shared fixtures."""

import json
import os

# Settings are read once and cached; point them at test values before app imports
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SITE_URL", "http://testserver")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("CLEANUP_CRON_ENABLED", "false")
os.environ.setdefault("MAILGUN_API_KEY", "")
os.environ.setdefault("SENDGRID_API_KEY", "")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db
from app.dependencies import get_billing_gateway, get_magic_link_sender
from app.exceptions import UpstreamProviderError, WebhookSignatureError
from app.main import app
from app.schemas.webhook import CompletionEvent
from app.services.accounts import AccountDirectory
from app.services.billing_gateway import PaymentSessionToken
from app.services.credentials import CredentialIssuer
from app.services.ephemeral_identity import EphemeralIdentityProvisioner
from app.services.reconciler import WebhookReconciler
from app.services.session_linker import SessionLinker
from app.services.subscriptions import SubscriptionLedger

VALID_SIGNATURE = "t=1,v1=valid"


class FakeGateway:
    """Stands in for StripeBillingGateway; records checkout calls."""

    def __init__(self):
        self.checkouts: list[dict] = []
        self.fail = False
        self.checkout_metadata: dict[str, dict] = {}
        self.retrieved: list[str] = []

    @property
    def configured(self) -> bool:
        return True

    def create_checkout_session(self, **kwargs) -> PaymentSessionToken:
        if self.fail:
            raise UpstreamProviderError("Stripe error: card_declined")
        self.checkouts.append(kwargs)
        token = f"cs_test_{len(self.checkouts)}"
        return PaymentSessionToken(checkout_token=token, url=f"https://checkout.stripe.test/{token}")

    def construct_event(self, payload: bytes, signature: str | None) -> dict:
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureError("Invalid signature")
        return json.loads(payload)

    def retrieve_checkout_metadata(self, checkout_session_id: str) -> dict:
        self.retrieved.append(checkout_session_id)
        return dict(self.checkout_metadata.get(checkout_session_id, {}))


class SentLinks:
    """Records sign-in links instead of emailing them."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.ok = True

    def __call__(self, to_email: str, link: str) -> bool:
        self.sent.append((to_email, link))
        return self.ok


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sent_links() -> SentLinks:
    return SentLinks()


@pytest.fixture
def linker(db) -> SessionLinker:
    return SessionLinker(db)


@pytest.fixture
def provisioner(db) -> EphemeralIdentityProvisioner:
    return EphemeralIdentityProvisioner(db, placeholder_domain="guest.invalid")


@pytest.fixture
def accounts(db) -> AccountDirectory:
    return AccountDirectory(db)


@pytest.fixture
def subscriptions(db) -> SubscriptionLedger:
    return SubscriptionLedger(db)


@pytest.fixture
def reconciler(accounts, subscriptions, provisioner, linker) -> WebhookReconciler:
    return WebhookReconciler(accounts, subscriptions, provisioner, linker)


@pytest.fixture
def issuer(db) -> CredentialIssuer:
    return CredentialIssuer(db, ttl_minutes=15)


@pytest.fixture
def client(session_factory, gateway, sent_links) -> TestClient:
    """FastAPI test client wired to the in-memory database and fakes."""

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_billing_gateway] = lambda: gateway
    app.dependency_overrides[get_magic_link_sender] = lambda: sent_links
    yield TestClient(app)
    app.dependency_overrides = {}


def guest_completion_event(
    email: str = "a@x.com",
    session_id: str = "sess-1",
    temp_identity_id: str | None = None,
    subscription_ref: str | None = "sub_1",
    checkout_session_id: str = "cs_test_1",
    character_type: str | None = None,
) -> CompletionEvent:
    metadata = {
        "is_guest_checkout": "true",
        "session": session_id,
        "email": email,
        "source": "quiz",
        "plan_id": "premium-monthly",
        "character_type": character_type or "unknown",
        "body_type": "unknown",
    }
    if temp_identity_id:
        metadata["temp_identity_id"] = temp_identity_id
    return CompletionEvent(
        checkout_session_id=checkout_session_id,
        account_ref=temp_identity_id,
        subscription_ref=subscription_ref,
        customer_ref="cus_1",
        metadata=metadata,
    )


def checkout_completed_payload(checkout: dict, token: str, subscription_ref: str = "sub_1") -> bytes:
    """Webhook body for a checkout recorded by FakeGateway."""
    event = {
        "id": f"evt_{token}",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": token,
                "object": "checkout.session",
                "client_reference_id": checkout["account_ref"],
                "subscription": subscription_ref,
                "customer": "cus_1",
                "metadata": checkout["metadata"],
            }
        },
    }
    return json.dumps(event).encode("utf-8")
