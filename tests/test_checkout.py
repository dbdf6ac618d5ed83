"""Checkout initiation and the correlation metadata carried through the gateway."""
import pytest

from app.exceptions import ProvisioningError, UnknownPlanError, UpstreamProviderError
from app.models.audit_log import AuditLog
from app.models.ephemeral_identity import EphemeralIdentity
from app.models.funnel_session import FunnelSessionStatus
from app.schemas.checkout import AuthenticatedCheckout, GuestCheckout, correlation_from_metadata
from app.services.checkout import CheckoutSessionInitiator, start_guest_checkout, with_checkout_params

PLANS = {"premium-monthly": "price_monthly", "premium-annual": "price_annual"}


@pytest.fixture
def initiator(gateway):
    return CheckoutSessionInitiator(gateway, PLANS)


def _start(linker, provisioner, initiator, **overrides):
    params = dict(
        plan_id="premium-monthly",
        email="guest@example.com",
        session_id="sess-1",
        success_url="https://app.test/payment-success",
        cancel_url="https://app.test/quiz",
        character_type="cat",
    )
    params.update(overrides)
    return start_guest_checkout(linker, provisioner, initiator, **params)


class TestCorrelationMetadata:
    def test_guest_metadata_parses_back(self):
        meta = GuestCheckout(email="a@x.com", session_id="sess-1", temp_identity_id="tmp-1").to_metadata()

        parsed = correlation_from_metadata(meta)

        assert isinstance(parsed, GuestCheckout)
        assert parsed.session_id == "sess-1"
        assert parsed.temp_identity_id == "tmp-1"
        assert parsed.character_type is None
        assert meta["session"] == "sess-1"
        assert meta["character_type"] == "unknown"

    def test_guest_without_session_is_unusable(self):
        assert correlation_from_metadata({"is_guest_checkout": "true", "email": "a@x.com"}) is None
        assert correlation_from_metadata({"is_guest_checkout": "true", "email": "a@x.com", "session": " "}) is None

    def test_authenticated_metadata(self):
        parsed = correlation_from_metadata(AuthenticatedCheckout(account_id=7).to_metadata())

        assert isinstance(parsed, AuthenticatedCheckout)
        assert parsed.account_id == 7

    def test_empty_metadata(self):
        assert correlation_from_metadata({}) is None
        assert correlation_from_metadata(None) is None


class TestWithCheckoutParams:
    def test_appends_session_placeholder_and_email(self):
        url = with_checkout_params("https://app.test/done", "a+b@x.com")
        assert url == "https://app.test/done?session_id={CHECKOUT_SESSION_ID}&email=a%2Bb%40x.com"

    def test_placeholder_is_not_duplicated(self):
        url = with_checkout_params("https://app.test/done?session_id={CHECKOUT_SESSION_ID}")
        assert url.count("session_id=") == 1


class TestInitiator:
    def test_unknown_plan(self, initiator, gateway):
        with pytest.raises(UnknownPlanError):
            initiator.initiate("gold", "ref", AuthenticatedCheckout(account_id=1), "https://app.test/done")
        assert gateway.checkouts == []

    def test_plan_id_is_stamped_into_metadata(self, initiator, gateway):
        initiator.initiate("premium-annual", "1", AuthenticatedCheckout(account_id=1), "https://app.test/done")

        call = gateway.checkouts[0]
        assert call["price_id"] == "price_annual"
        assert call["metadata"]["plan_id"] == "premium-annual"
        assert call["customer_email"] is None


class TestStartGuestCheckout:
    def test_happy_path(self, linker, provisioner, initiator, gateway, db):
        token = _start(linker, provisioner, initiator)

        assert token.checkout_token == "cs_test_1"
        identity = db.query(EphemeralIdentity).one()
        call = gateway.checkouts[0]
        assert call["account_ref"] == identity.id
        assert call["customer_email"] == "guest@example.com"
        assert call["metadata"]["is_guest_checkout"] == "true"
        assert call["metadata"]["session"] == "sess-1"
        assert call["metadata"]["temp_identity_id"] == identity.id
        assert call["metadata"]["character_type"] == "cat"
        assert "session_id={CHECKOUT_SESSION_ID}" in call["success_url"]
        assert call["cancel_url"] == "https://app.test/quiz"

        funnel = linker.get("sess-1")
        assert funnel.status == FunnelSessionStatus.checkout_started
        assert funnel.quiz_answers == {"character_type": "cat"}
        assert db.query(AuditLog).filter(AuditLog.category == "checkout").count() == 1

    def test_unknown_plan_writes_nothing(self, linker, provisioner, initiator, db):
        with pytest.raises(UnknownPlanError):
            _start(linker, provisioner, initiator, plan_id="gold")

        assert linker.get("sess-1") is None
        assert db.query(EphemeralIdentity).count() == 0

    def test_gateway_failure_discards_identity(self, linker, provisioner, initiator, gateway, db):
        gateway.fail = True

        with pytest.raises(UpstreamProviderError):
            _start(linker, provisioner, initiator)

        assert db.query(EphemeralIdentity).count() == 0

    def test_provisioning_failure_skips_gateway(self, linker, provisioner, initiator, gateway, monkeypatch):
        def fail(*args, **kwargs):
            raise ProvisioningError("store unavailable")

        monkeypatch.setattr(provisioner, "provision", fail)

        with pytest.raises(ProvisioningError):
            _start(linker, provisioner, initiator)
        assert gateway.checkouts == []

    def test_retry_after_failure_gets_a_new_identity(self, linker, provisioner, initiator, gateway, db):
        gateway.fail = True
        with pytest.raises(UpstreamProviderError):
            _start(linker, provisioner, initiator)
        gateway.fail = False

        _start(linker, provisioner, initiator)

        assert db.query(EphemeralIdentity).count() == 1
