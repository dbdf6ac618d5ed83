"""Post-payment sign-in: readiness polling, fallback magic links, credential verification."""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from app.config import Settings, get_settings
from app.dependencies import get_credential_issuer, get_current_account, get_magic_link_sender
from app.exceptions import CredentialAlreadyConsumed, CredentialError, CredentialExpired
from app.models.account import Account
from app.schemas.auth import (
    AccountResponse,
    MagicLinkAccepted,
    MagicLinkRequest,
    ReadinessRequest,
    ReadinessResponse,
    Token,
)
from app.services.audit_log import CATEGORY_CREDENTIAL, create_log, mask_email
from app.services.auth import create_access_token
from app.services.credentials import CredentialIssuer, sign_in_url

router = APIRouter(prefix="/auth", tags=["auth"])
log = logging.getLogger("uvicorn.error")

DEFAULT_NEXT = "/home?welcome=premium"


class VerifyRequest(BaseModel):
    token: str


def _safe_next(next_path: str | None) -> str:
    """Only same-site paths; anything else falls back to the dashboard."""
    if not next_path or not next_path.startswith("/") or next_path.startswith("//"):
        return DEFAULT_NEXT
    return next_path


def _client_meta(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _record_failed_verification(issuer: CredentialIssuer, request: Request, e: CredentialError) -> None:
    create_log(
        issuer.db,
        CATEGORY_CREDENTIAL,
        "Sign-in link rejected",
        f"Sign-in link verification failed: {e.reason}.",
        meta={"reason": e.reason},
        **_client_meta(request),
    )
    issuer.db.commit()


def _consume(issuer: CredentialIssuer, request: Request, token: str) -> Account:
    try:
        account = issuer.verify(token)
    except CredentialError as e:
        _record_failed_verification(issuer, request, e)
        raise
    create_log(
        issuer.db,
        CATEGORY_CREDENTIAL,
        "Signed in with link",
        f"Account {account.id} signed in with a one-time link.",
        account_id=account.id,
        actor_email=account.email,
        **_client_meta(request),
    )
    issuer.db.commit()
    return account


@router.post("/payment-success", response_model=ReadinessResponse)
def payment_success_ready(
    data: ReadinessRequest,
    request: Request,
    issuer: CredentialIssuer = Depends(get_credential_issuer),
):
    """Readiness poll keyed by the gateway checkout session id. 404 means not ready yet."""
    credential = issuer.ready_for(data.session_id)
    if credential is None:
        raise HTTPException(status_code=404, detail="Not ready")
    return ReadinessResponse(
        credential_token=credential.token,
        sign_in_url=sign_in_url(str(request.base_url), credential.token),
    )


@router.post("/magic-link", response_model=MagicLinkAccepted, status_code=202)
def request_magic_link(
    data: MagicLinkRequest,
    issuer: CredentialIssuer = Depends(get_credential_issuer),
    send_link=Depends(get_magic_link_sender),
    settings: Settings = Depends(get_settings),
):
    """Fallback sign-in. Always accepted; queued until reconciliation when the account does not exist yet."""
    credential = issuer.request_sign_in(data.email)
    if credential is not None:
        link = sign_in_url(settings.site_url, credential.token)
        if not send_link(credential.account.email, link):
            log.warning("Sign-in link email to %s was not sent", mask_email(data.email))
    return MagicLinkAccepted()


@router.get("/verify")
def verify_link(
    request: Request,
    token: str = Query(...),
    next: str | None = Query(None),
    issuer: CredentialIssuer = Depends(get_credential_issuer),
    settings: Settings = Depends(get_settings),
):
    """One-time link target: consume the credential, set the session cookie, go to the app."""
    try:
        account = _consume(issuer, request, token)
    except CredentialError as e:
        message = "link-expired" if isinstance(e, CredentialExpired) else "link-invalid"
        if isinstance(e, CredentialAlreadyConsumed):
            message = "link-used"
        return RedirectResponse(f"{settings.site_url}/auth/sign-in?message={message}", status_code=303)

    response = RedirectResponse(f"{settings.site_url}{_safe_next(next)}", status_code=303)
    response.set_cookie(
        settings.session_cookie_name,
        create_access_token(account.id, account.email),
        max_age=settings.jwt_access_token_expire_minutes * 60,
        httponly=True,
        secure=settings.app_env != "development",
        samesite="lax",
    )
    return response


@router.post("/verify", response_model=Token)
def verify_token(
    data: VerifyRequest,
    request: Request,
    issuer: CredentialIssuer = Depends(get_credential_issuer),
):
    """API variant of /verify for clients that keep the bearer token themselves."""
    try:
        account = _consume(issuer, request, data.token)
    except CredentialAlreadyConsumed:
        raise HTTPException(status_code=409, detail="This sign-in link was already used.")
    except CredentialExpired:
        raise HTTPException(status_code=410, detail="This sign-in link has expired. Request a new one.")
    except CredentialError:
        raise HTTPException(status_code=404, detail="Invalid sign-in link.")
    return Token(
        access_token=create_access_token(account.id, account.email),
        account=AccountResponse.model_validate(account),
    )


@router.get("/me", response_model=AccountResponse)
def me(current_account: Account = Depends(get_current_account)):
    return AccountResponse.model_validate(current_account)
