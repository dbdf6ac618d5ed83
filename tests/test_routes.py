"""HTTP surface: quiz, checkout, billing webhook and post-payment sign-in."""
import json

import pytest

from app.config import get_settings
from app.models.account import Account
from app.models.ephemeral_identity import EphemeralIdentity
from app.models.funnel_session import FunnelSession, FunnelSessionStatus
from app.models.magic_link import MagicLinkCredential
from app.models.subscription import Subscription
from app.services.auth import create_access_token

from tests.conftest import VALID_SIGNATURE, checkout_completed_payload

GUEST_CHECKOUT = {
    "plan_id": "premium-monthly",
    "success_url": "https://app.test/payment-success",
    "cancel_url": "https://app.test/quiz",
    "email": "guest@example.com",
    "session_id": "sess-1",
    "source": "quiz",
    "metadata": {"character_type": "cat", "body_type": "slim"},
}


def _open_checkout(client, **overrides) -> dict:
    r = client.post("/billing/guest-checkout", json={**GUEST_CHECKOUT, **overrides})
    assert r.status_code == 200, r.text
    return r.json()


def _deliver(client, payload: bytes, signature: str = VALID_SIGNATURE):
    return client.post("/billing/webhook", content=payload, headers={"Stripe-Signature": signature})


def _pay(client, gateway, index: int = 0, subscription_ref: str = "sub_1"):
    token = f"cs_test_{index + 1}"
    return _deliver(client, checkout_completed_payload(gateway.checkouts[index], token, subscription_ref))


class TestHealth:
    def test_root_and_health(self, client):
        assert client.get("/").json()["status"] == "ok"
        assert client.get("/health").json() == {"status": "healthy"}
        assert client.get("/billing/webhook/health").json()["status"] == "healthy"


class TestQuiz:
    def test_submit_records_lead_without_account(self, client, db):
        r = client.post(
            "/quiz/submit",
            json={"email": "Guest@Example.com", "session_id": "sess-1", "responses": {"character_type": "cat", "body_type": "slim"}},
        )

        assert r.status_code == 200
        assert r.json() == {"success": True, "session_id": "sess-1", "lead_captured": True}
        funnel = db.query(FunnelSession).one()
        assert funnel.email == "guest@example.com"
        assert funnel.quiz_answers == {"character_type": "cat", "body_type": "slim"}
        assert db.query(Account).count() == 0

    def test_invalid_email_is_rejected(self, client):
        r = client.post(
            "/quiz/submit",
            json={"email": "nope", "session_id": "sess-1", "responses": {"character_type": "cat", "body_type": "slim"}},
        )
        assert r.status_code == 422


class TestGuestCheckout:
    def test_returns_checkout_token_and_url(self, client, gateway, db):
        body = _open_checkout(client)

        assert body["success"] is True
        assert body["checkout_token"] == "cs_test_1"
        assert body["checkout_url"] == "https://checkout.stripe.test/cs_test_1"
        assert gateway.checkouts[0]["metadata"]["body_type"] == "slim"
        assert db.query(EphemeralIdentity).count() == 1
        assert db.query(FunnelSession).one().status == FunnelSessionStatus.checkout_started

    def test_unknown_plan(self, client, gateway):
        r = client.post("/billing/guest-checkout", json={**GUEST_CHECKOUT, "plan_id": "gold"})

        assert r.status_code == 400
        assert r.json()["detail"] == "Invalid plan ID"
        assert gateway.checkouts == []

    def test_gateway_failure_is_retryable_and_leaves_no_identity(self, client, gateway, db):
        gateway.fail = True

        r = client.post("/billing/guest-checkout", json=GUEST_CHECKOUT)

        assert r.status_code == 502
        assert "try again" in r.json()["detail"]
        assert db.query(EphemeralIdentity).count() == 0

    def test_missing_session_id(self, client):
        r = client.post("/billing/guest-checkout", json={**GUEST_CHECKOUT, "session_id": "  "})
        assert r.status_code == 422


class TestWebhook:
    def test_bad_signature(self, client, gateway, db):
        _open_checkout(client)

        r = _deliver(client, checkout_completed_payload(gateway.checkouts[0], "cs_test_1"), signature="t=1,v1=forged")

        assert r.status_code == 400
        assert db.query(Account).count() == 0

    def test_guest_checkout_is_reconciled(self, client, gateway, db):
        _open_checkout(client)

        r = _pay(client, gateway)

        assert r.status_code == 200
        assert r.json() == {"received": True, "state": "DONE"}
        account = db.query(Account).one()
        assert account.email == "guest@example.com"
        assert db.query(Subscription).one().account_id == account.id
        assert db.query(EphemeralIdentity).count() == 0
        assert db.query(FunnelSession).one().linked_account_id == account.id
        credential = db.query(MagicLinkCredential).one()
        assert credential.correlation_key == "cs_test_1"

    def test_redelivery_is_idempotent(self, client, gateway, db):
        _open_checkout(client)

        assert _pay(client, gateway).status_code == 200
        assert _pay(client, gateway).status_code == 200

        assert db.query(Account).count() == 1
        assert db.query(Subscription).count() == 1
        assert db.query(MagicLinkCredential).count() == 1

    def test_metadata_is_fetched_when_event_lacks_it(self, client, gateway, db):
        _open_checkout(client)
        checkout = gateway.checkouts[0]
        gateway.checkout_metadata["cs_test_1"] = checkout["metadata"]

        r = _deliver(client, checkout_completed_payload({**checkout, "metadata": {}}, "cs_test_1"))

        assert r.json()["state"] == "DONE"
        assert gateway.retrieved == ["cs_test_1"]
        assert db.query(Account).one().email == "guest@example.com"

    def test_failure_returns_500_for_redelivery(self, client, gateway, db):
        other = Account(email="other@x.com")
        db.add(other)
        db.commit()
        db.add(Subscription(provider_subscription_id="sub_1", account_id=other.id, status="active"))
        db.commit()
        _open_checkout(client)

        r = _pay(client, gateway)

        assert r.status_code == 500
        assert db.query(MagicLinkCredential).count() == 0

    def test_authenticated_checkout_is_recorded_without_reconciliation(self, client, gateway, db):
        account = Account(email="member@x.com")
        db.add(account)
        db.commit()
        headers = {"Authorization": f"Bearer {create_access_token(account.id, account.email)}"}

        r = client.post(
            "/billing/checkout",
            json={"plan_id": "premium-annual", "success_url": "https://app.test/ok", "cancel_url": "https://app.test/no"},
            headers=headers,
        )
        assert r.status_code == 200
        assert gateway.checkouts[0]["customer_email"] is None

        r = _pay(client, gateway)

        assert r.json() == {"received": True, "state": "SKIPPED"}
        sub = db.query(Subscription).one()
        assert sub.account_id == account.id
        assert sub.plan_id == "premium-annual"
        assert db.query(Account).count() == 1

    def test_subscription_status_updates(self, client, gateway, db):
        _open_checkout(client)
        _pay(client, gateway)
        event = {"id": "evt_2", "type": "customer.subscription.deleted", "data": {"object": {"id": "sub_1"}}}

        r = _deliver(client, json.dumps(event).encode())

        assert r.json() == {"received": True}
        db.expire_all()
        assert db.query(Subscription).one().status == "canceled"


class TestPostPaymentSignIn:
    def test_readiness_is_404_until_reconciled(self, client, gateway):
        _open_checkout(client)

        r = client.post("/auth/payment-success", json={"session_id": "cs_test_1"})

        assert r.status_code == 404

    def test_full_flow_signs_the_guest_in(self, client, gateway):
        _open_checkout(client)
        _pay(client, gateway)

        ready = client.post("/auth/payment-success", json={"session_id": "cs_test_1"})
        assert ready.status_code == 200
        sign_in_url = ready.json()["sign_in_url"]
        assert sign_in_url.startswith("http://testserver/auth/verify?token=")

        r = client.get(sign_in_url, follow_redirects=False)

        assert r.status_code == 303
        assert r.headers["location"] == "http://testserver/home?welcome=premium"
        cookie_name = get_settings().session_cookie_name
        session_token = r.cookies.get(cookie_name)
        assert session_token

        client.cookies.set(cookie_name, session_token)
        me = client.get("/auth/me")
        assert me.status_code == 200
        assert me.json()["email"] == "guest@example.com"

        # Another tab polling the same checkout falls back to email
        assert client.post("/auth/payment-success", json={"session_id": "cs_test_1"}).status_code == 404

    def test_used_link_redirects_with_message(self, client, gateway):
        _open_checkout(client)
        _pay(client, gateway)
        url = client.post("/auth/payment-success", json={"session_id": "cs_test_1"}).json()["sign_in_url"]
        client.get(url, follow_redirects=False)

        r = client.get(url, follow_redirects=False)

        assert r.status_code == 303
        assert r.headers["location"].endswith("/auth/sign-in?message=link-used")

    def test_unsafe_next_is_ignored(self, client, gateway):
        _open_checkout(client)
        _pay(client, gateway)
        url = client.post("/auth/payment-success", json={"session_id": "cs_test_1"}).json()["sign_in_url"]

        r = client.get(url + "&next=//evil.test/", follow_redirects=False)

        assert r.headers["location"] == "http://testserver/home?welcome=premium"

    def test_api_verify(self, client, gateway):
        _open_checkout(client)
        _pay(client, gateway)
        token = client.post("/auth/payment-success", json={"session_id": "cs_test_1"}).json()["credential_token"]

        r = client.post("/auth/verify", json={"token": token})
        assert r.status_code == 200
        body = r.json()
        assert body["token_type"] == "bearer"
        assert body["account"]["email"] == "guest@example.com"

        assert client.post("/auth/verify", json={"token": token}).status_code == 409
        assert client.post("/auth/verify", json={"token": "bogus"}).status_code == 404

        me = client.get("/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
        assert me.json()["email"] == "guest@example.com"

    def test_me_requires_authentication(self, client):
        assert client.get("/auth/me").status_code == 401
        assert client.get("/auth/me", headers={"Authorization": "Bearer garbage"}).status_code == 401


class TestFallbackMagicLink:
    def test_request_before_webhook_is_served_after_reconciliation(self, client, gateway, sent_links):
        _open_checkout(client)

        r = client.post("/auth/magic-link", json={"email": "guest@example.com"})
        assert r.status_code == 202
        assert sent_links.sent == []

        _pay(client, gateway)

        assert len(sent_links.sent) == 1
        to_email, link = sent_links.sent[0]
        assert to_email == "guest@example.com"
        assert link.startswith("http://testserver/auth/verify?token=")

    def test_existing_account_gets_link_immediately(self, client, gateway, sent_links):
        _open_checkout(client)
        _pay(client, gateway)

        r = client.post("/auth/magic-link", json={"email": "GUEST@example.com"})

        assert r.status_code == 202
        assert [to for to, _ in sent_links.sent] == ["guest@example.com"]
        assert client.get(sent_links.sent[0][1], follow_redirects=False).status_code == 303

    @pytest.mark.parametrize("email", ["unknown@x.com", "someone@else.com"])
    def test_unknown_email_is_still_accepted(self, client, sent_links, email):
        r = client.post("/auth/magic-link", json={"email": email})

        assert r.status_code == 202
        assert sent_links.sent == []
