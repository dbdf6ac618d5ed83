"""Checkout initiation for guest (quiz funnel) and authenticated visitors.

Guest checkouts have no account yet, so an ephemeral identity stands in as the
gateway's account reference. There is no distributed transaction between our
store and the gateway: if opening the payment session fails, the identity
provisioned for that attempt is discarded explicitly.
"""
import logging
from urllib.parse import quote

from app.config import Settings
from app.exceptions import UnknownPlanError, UpstreamProviderError
from app.models.funnel_session import FunnelSessionStatus
from app.schemas.checkout import AuthenticatedCheckout, GuestCheckout
from app.services.audit_log import CATEGORY_CHECKOUT, create_log, mask_email
from app.services.billing_gateway import PaymentSessionToken, StripeBillingGateway
from app.services.ephemeral_identity import EphemeralIdentityProvisioner
from app.services.session_linker import SessionLinker

log = logging.getLogger("uvicorn.error")


def plan_catalog(settings: Settings) -> dict[str, str]:
    """Plan id -> gateway price id."""
    return {
        "premium-monthly": settings.stripe_price_premium_monthly,
        "premium-annual": settings.stripe_price_premium_annual,
    }


def with_checkout_params(success_url: str, email: str | None = None) -> str:
    """Append the gateway's session id placeholder (once) and the email to the return URL."""
    url = str(success_url)
    if "session_id=" not in url:
        url += ("&" if "?" in url else "?") + "session_id={CHECKOUT_SESSION_ID}"
    if email and "email=" not in url:
        url += "&email=" + quote(email, safe="")
    return url


class CheckoutSessionInitiator:
    def __init__(self, gateway: StripeBillingGateway, plans: dict[str, str]):
        self.gateway = gateway
        self.plans = plans

    def initiate(
        self,
        plan: str,
        account_ref: str,
        correlation: GuestCheckout | AuthenticatedCheckout,
        return_url: str,
        cancel_url: str | None = None,
    ) -> PaymentSessionToken:
        price_id = self.plans.get(plan)
        if not price_id:
            raise UnknownPlanError(plan)
        correlation = correlation.model_copy(update={"plan_id": plan})
        email = correlation.email if isinstance(correlation, GuestCheckout) else None
        return self.gateway.create_checkout_session(
            price_id=price_id,
            account_ref=account_ref,
            metadata=correlation.to_metadata(),
            success_url=with_checkout_params(return_url, email),
            cancel_url=str(cancel_url or return_url),
            customer_email=email,
        )


def start_guest_checkout(
    linker: SessionLinker,
    provisioner: EphemeralIdentityProvisioner,
    initiator: CheckoutSessionInitiator,
    *,
    plan_id: str,
    email: str,
    session_id: str,
    success_url: str,
    cancel_url: str,
    source: str = "quiz",
    character_type: str | None = None,
    body_type: str | None = None,
) -> PaymentSessionToken:
    """Record the funnel session, provision an ephemeral identity and open the payment session.

    Raises UnknownPlanError before anything is written, ProvisioningError when the
    identity cannot be created (no payment attempted), UpstreamProviderError after
    rolling back the identity when the gateway call fails.
    """
    if plan_id not in initiator.plans:
        raise UnknownPlanError(plan_id)

    selections = {"character_type": character_type, "body_type": body_type}
    linker.record(
        session_id,
        email,
        quiz_answers={k: v for k, v in selections.items() if v},
        source=source,
        status=FunnelSessionStatus.checkout_started,
    )
    identity = provisioner.provision(session_id, email, selections)

    correlation = GuestCheckout(
        email=email,
        session_id=session_id,
        source=source,
        character_type=character_type,
        body_type=body_type,
        temp_identity_id=identity.id,
        temp_email=identity.placeholder_email,
    )
    try:
        token = initiator.initiate(plan_id, identity.id, correlation, success_url, cancel_url)
    except UpstreamProviderError:
        if not provisioner.discard(identity.id):
            log.warning("Ephemeral identity %s left behind after failed checkout", identity.id)
        raise

    create_log(
        linker.db,
        CATEGORY_CHECKOUT,
        "Guest checkout opened",
        f"Checkout {token.checkout_token} opened for plan {plan_id} (session {session_id}).",
        funnel_session_id=session_id,
        actor_email=email,
        meta={"plan_id": plan_id, "temp_identity_id": identity.id, "checkout_token": token.checkout_token},
    )
    linker.db.commit()
    log.info("Guest checkout opened: session=%s email=%s plan=%s", session_id, mask_email(email), plan_id)
    return token
