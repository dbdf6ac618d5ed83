"""Shared dependencies: DB session, services, current account.

Services are built per request from their collaborators; tests swap the gateway,
mail sender or clock through app.dependency_overrides.
"""
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.database import get_db
from app.models.account import Account
from app.services.accounts import AccountDirectory
from app.services.auth import decode_token_with_error
from app.services.billing_gateway import StripeBillingGateway
from app.services.checkout import CheckoutSessionInitiator, plan_catalog
from app.services.credentials import CredentialIssuer
from app.services.ephemeral_identity import EphemeralIdentityProvisioner
from app.services.notifications import send_magic_link_email
from app.services.reconciler import WebhookReconciler
from app.services.session_linker import SessionLinker
from app.services.subscriptions import SubscriptionLedger

security = HTTPBearer(auto_error=False)


def get_billing_gateway(settings: Settings = Depends(get_settings)) -> StripeBillingGateway:
    return StripeBillingGateway(settings.stripe_secret_key, settings.stripe_webhook_secret)


def get_session_linker(db: Session = Depends(get_db)) -> SessionLinker:
    return SessionLinker(db)


def get_provisioner(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> EphemeralIdentityProvisioner:
    return EphemeralIdentityProvisioner(db, placeholder_domain=settings.placeholder_email_domain)


def get_checkout_initiator(
    gateway: StripeBillingGateway = Depends(get_billing_gateway),
    settings: Settings = Depends(get_settings),
) -> CheckoutSessionInitiator:
    return CheckoutSessionInitiator(gateway, plan_catalog(settings))


def get_subscription_ledger(db: Session = Depends(get_db)) -> SubscriptionLedger:
    return SubscriptionLedger(db)


def get_reconciler(
    db: Session = Depends(get_db),
    provisioner: EphemeralIdentityProvisioner = Depends(get_provisioner),
    linker: SessionLinker = Depends(get_session_linker),
    subscriptions: SubscriptionLedger = Depends(get_subscription_ledger),
) -> WebhookReconciler:
    return WebhookReconciler(AccountDirectory(db), subscriptions, provisioner, linker)


def get_credential_issuer(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> CredentialIssuer:
    return CredentialIssuer(
        db,
        ttl_minutes=settings.magic_link_expire_minutes,
        reissue_window_hours=settings.credential_retention_hours,
    )


def get_magic_link_sender():
    """Callable(to_email, link) -> bool used to deliver sign-in links."""
    return send_magic_link_email


def get_current_account(
    request: Request,
    db: Session = Depends(get_db),
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    settings: Settings = Depends(get_settings),
) -> Account:
    """Account from a bearer token, or from the session cookie set when a sign-in link was consumed."""
    token_str = (credentials.credentials if credentials else None) or request.cookies.get(settings.session_cookie_name)
    if not token_str:
        raise HTTPException(status_code=401, detail="Not authenticated")
    payload, _ = decode_token_with_error(token_str.strip())
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    try:
        account_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")
    account = db.query(Account).filter(Account.id == account_id).first()
    if not account:
        raise HTTPException(status_code=401, detail="Account not found")
    return account
