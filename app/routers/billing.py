"""Checkout for guests and signed-in accounts, and the billing gateway webhook."""
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError

from app.config import Settings, get_settings
from app.dependencies import (
    get_billing_gateway,
    get_checkout_initiator,
    get_credential_issuer,
    get_current_account,
    get_magic_link_sender,
    get_provisioner,
    get_reconciler,
    get_session_linker,
    get_subscription_ledger,
)
from app.exceptions import (
    ProvisioningError,
    ReconciliationFailure,
    UnknownPlanError,
    UpstreamProviderError,
    WebhookSignatureError,
)
from app.models.account import Account
from app.schemas.checkout import (
    AuthenticatedCheckout,
    AuthenticatedCheckoutRequest,
    CheckoutResponse,
    GuestCheckoutRequest,
    correlation_from_metadata,
)
from app.schemas.webhook import CompletionEvent
from app.services.audit_log import mask_email
from app.services.billing_gateway import StripeBillingGateway
from app.services.checkout import CheckoutSessionInitiator, start_guest_checkout
from app.services.credentials import CredentialIssuer, sign_in_url
from app.services.ephemeral_identity import EphemeralIdentityProvisioner
from app.services.reconciler import ReconciliationState, WebhookReconciler
from app.services.session_linker import SessionLinker
from app.services.subscriptions import SubscriptionLedger

router = APIRouter(prefix="/billing", tags=["billing"])
log = logging.getLogger("uvicorn.error")

CHECKOUT_RETRY_MESSAGE = "We couldn't start your checkout. Please try again, or restart the quiz."


async def raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/guest-checkout", response_model=CheckoutResponse)
def guest_checkout(
    data: GuestCheckoutRequest,
    linker: SessionLinker = Depends(get_session_linker),
    provisioner: EphemeralIdentityProvisioner = Depends(get_provisioner),
    initiator: CheckoutSessionInitiator = Depends(get_checkout_initiator),
):
    """Open a checkout for a quiz visitor who has no account yet."""
    selections = data.metadata
    try:
        token = start_guest_checkout(
            linker,
            provisioner,
            initiator,
            plan_id=data.plan_id,
            email=data.email,
            session_id=data.session_id,
            success_url=str(data.success_url),
            cancel_url=str(data.cancel_url),
            source=data.source,
            character_type=selections.character_type if selections else None,
            body_type=selections.body_type if selections else None,
        )
    except UnknownPlanError:
        raise HTTPException(status_code=400, detail="Invalid plan ID")
    except (ProvisioningError, UpstreamProviderError) as e:
        log.error("Guest checkout failed: session=%s email=%s error=%s", data.session_id, mask_email(data.email), e)
        raise HTTPException(status_code=502, detail=CHECKOUT_RETRY_MESSAGE)
    return CheckoutResponse(checkout_token=token.checkout_token, checkout_url=token.url)


@router.post("/checkout", response_model=CheckoutResponse)
def authenticated_checkout(
    data: AuthenticatedCheckoutRequest,
    current_account: Account = Depends(get_current_account),
    initiator: CheckoutSessionInitiator = Depends(get_checkout_initiator),
):
    """Open a checkout for a signed-in account; the webhook records it without reconciliation."""
    correlation = AuthenticatedCheckout(account_id=current_account.id, source=data.source)
    try:
        token = initiator.initiate(
            data.plan_id, str(current_account.id), correlation, str(data.success_url), str(data.cancel_url)
        )
    except UnknownPlanError:
        raise HTTPException(status_code=400, detail="Invalid plan ID")
    except UpstreamProviderError as e:
        log.error("Checkout failed for account %s: %s", current_account.id, e)
        raise HTTPException(status_code=502, detail=CHECKOUT_RETRY_MESSAGE)
    return CheckoutResponse(checkout_token=token.checkout_token, checkout_url=token.url)


@router.get("/webhook/health")
def webhook_health():
    """Lets operators confirm the webhook URL is reachable."""
    return {"status": "healthy", "endpoint": "/billing/webhook"}


@router.post("/webhook")
def billing_webhook(
    payload: bytes = Depends(raw_body),
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    gateway: StripeBillingGateway = Depends(get_billing_gateway),
    reconciler: WebhookReconciler = Depends(get_reconciler),
    subscriptions: SubscriptionLedger = Depends(get_subscription_ledger),
    issuer: CredentialIssuer = Depends(get_credential_issuer),
    send_link=Depends(get_magic_link_sender),
    settings: Settings = Depends(get_settings),
):
    """Gateway events. A 500 response makes the gateway redeliver; every path here is safe to repeat."""
    try:
        event = gateway.construct_event(payload, stripe_signature)
    except WebhookSignatureError as e:
        log.warning("Rejected billing webhook: %s", e)
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    log.info("Billing webhook received: type=%s id=%s object=%s", event_type, event.get("id"), obj.get("id"))

    if event_type == "checkout.session.completed":
        return _checkout_completed(
            CompletionEvent.from_checkout_session(obj), gateway, reconciler, subscriptions, issuer, send_link, settings
        )
    if event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
        status = obj.get("status") or ("canceled" if event_type.endswith("deleted") else None)
        if obj.get("id") and status:
            subscriptions.update_status(obj["id"], status)
    return {"received": True}


def _checkout_completed(
    completion: CompletionEvent,
    gateway: StripeBillingGateway,
    reconciler: WebhookReconciler,
    subscriptions: SubscriptionLedger,
    issuer: CredentialIssuer,
    send_link,
    settings: Settings,
) -> dict:
    if completion.needs_metadata() and completion.checkout_session_id:
        # Subscription-level metadata can be empty; the checkout session carries the full set
        try:
            merged = gateway.retrieve_checkout_metadata(completion.checkout_session_id)
            completion.metadata = {**completion.metadata, **merged}
        except UpstreamProviderError as e:
            log.warning("Could not fetch checkout metadata for %s: %s", completion.checkout_session_id, e)

    checkout = correlation_from_metadata(completion.metadata)
    if isinstance(checkout, AuthenticatedCheckout) and completion.subscription_ref:
        if reconciler.accounts.get(checkout.account_id) is None:
            log.error("Checkout %s references unknown account %s", completion.checkout_session_id, checkout.account_id)
        else:
            subscriptions.ensure(
                completion.subscription_ref,
                account_id=checkout.account_id,
                provider_customer_id=completion.customer_ref,
                plan_id=checkout.plan_id,
            )

    try:
        result = reconciler.reconcile(completion)
    except ReconciliationFailure:
        raise HTTPException(status_code=500, detail="Failed to process billing webhook")

    if result.state == ReconciliationState.done:
        _issue_credentials(result.account, completion.checkout_session_id, issuer, send_link, settings)
    return {"received": True, "state": result.state.value}


def _issue_credentials(account: Account, correlation_key: str | None, issuer: CredentialIssuer, send_link, settings) -> None:
    """Mint the poll credential and serve queued sign-in requests. Failures leave the email fallback."""
    try:
        if correlation_key:
            issuer.ensure_for_correlation(account.id, correlation_key)
        pending = issuer.fulfil_pending(account)
    except SQLAlchemyError as e:
        issuer.db.rollback()
        log.error("Credential issuance after reconciliation failed for account %s: %s", account.id, e)
        return
    if pending is not None and not send_link(account.email, sign_in_url(settings.site_url, pending.token)):
        log.warning("Queued sign-in link could not be emailed to %s", mask_email(account.email))
