"""Stripe adapter: opens checkout sessions, verifies webhooks, reads checkout metadata back."""
from __future__ import annotations

import json
import logging

import stripe
from pydantic import BaseModel

from app.exceptions import UpstreamProviderError, WebhookSignatureError

log = logging.getLogger("uvicorn.error")


class PaymentSessionToken(BaseModel):
    checkout_token: str
    url: str | None = None


def _stripe_message(e: Exception) -> str:
    return getattr(e, "user_message", None) or getattr(e, "message", None) or str(e)


class StripeBillingGateway:
    """Thin wrapper over the Stripe SDK so handlers and tests depend on an injectable object."""

    def __init__(self, secret_key: str, webhook_secret: str = ""):
        self.secret_key = (secret_key or "").strip()
        self.webhook_secret = (webhook_secret or "").strip()

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def create_checkout_session(
        self,
        *,
        price_id: str,
        account_ref: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: str | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentSessionToken:
        if not self.configured:
            raise UpstreamProviderError("Billing is not configured. Set STRIPE_SECRET_KEY in .env.")
        params = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "client_reference_id": account_ref,
            "metadata": metadata,
            # Subscription events carry the same correlation metadata as the checkout session
            "subscription_data": {"metadata": metadata},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_email:
            params["customer_email"] = customer_email
        try:
            session = stripe.checkout.Session.create(
                api_key=self.secret_key,
                idempotency_key=idempotency_key,
                **params,
            )
        except stripe.StripeError as e:
            log.error("Stripe checkout session creation failed: %s", _stripe_message(e))
            raise UpstreamProviderError(f"Stripe error: {_stripe_message(e)}") from e
        return PaymentSessionToken(checkout_token=session.id, url=getattr(session, "url", None))

    def construct_event(self, payload: bytes, signature: str | None) -> dict:
        """Verify the Stripe-Signature header and return the event as a plain dict."""
        if not self.webhook_secret:
            raise WebhookSignatureError("STRIPE_WEBHOOK_SECRET is not set.")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header.")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid signature: {_stripe_message(e)}") from e
        return json.loads(payload)

    def retrieve_checkout_metadata(self, checkout_session_id: str) -> dict[str, str]:
        try:
            session = stripe.checkout.Session.retrieve(checkout_session_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise UpstreamProviderError(f"Stripe error: {_stripe_message(e)}") from e
        metadata = getattr(session, "metadata", None) or {}
        return {str(k): str(v) for k, v in dict(metadata).items() if v is not None}
