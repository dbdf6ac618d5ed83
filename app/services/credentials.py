"""Single-use, time-boxed sign-in credentials (magic links).

Consumption is one conditional UPDATE, so two tabs racing on the same token
cannot both sign in. A credential bound to a checkout correlation key is the
only live one for that key: issuing a new one expires the others.
"""
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable
from urllib.parse import quote

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.exceptions import CredentialAlreadyConsumed, CredentialExpired, CredentialNotFound
from app.models.account import Account, normalize_email
from app.models.magic_link import MagicLinkCredential, SignInRequest
from app.services.audit_log import mask_email

log = logging.getLogger("uvicorn.error")

TOKEN_BYTES = 32


def _aware(dt: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def sign_in_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/auth/verify?token={quote(token, safe='')}"


class CredentialIssuer:
    def __init__(
        self,
        db: Session,
        ttl_minutes: int = 15,
        clock: Callable[[], datetime] | None = None,
        reissue_window_hours: int = 24,
    ):
        self.db = db
        self.ttl = timedelta(minutes=ttl_minutes)
        # Readiness only regenerates credentials first issued within this window
        self.reissue_window = timedelta(hours=reissue_window_hours)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _live(self, now: datetime):
        return (MagicLinkCredential.consumed_at.is_(None), MagicLinkCredential.expires_at > now)

    def issue(self, account_id: int, correlation_key: str | None = None) -> MagicLinkCredential:
        """Mint a fresh token. With a correlation key, every other live token for that key is expired."""
        now = self.clock()
        credential = MagicLinkCredential(
            token=secrets.token_urlsafe(TOKEN_BYTES),
            account_id=account_id,
            correlation_key=correlation_key,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        self.db.add(credential)
        self.db.flush()
        if correlation_key:
            self.db.query(MagicLinkCredential).filter(
                MagicLinkCredential.correlation_key == correlation_key,
                MagicLinkCredential.id != credential.id,
                *self._live(now),
            ).update({MagicLinkCredential.expires_at: now}, synchronize_session=False)
        self.db.commit()
        self.db.refresh(credential)
        return credential

    def verify(self, token: str) -> Account:
        """Atomically consume the token and return its account.

        Raises CredentialNotFound, CredentialAlreadyConsumed or CredentialExpired.
        """
        token = (token or "").strip()
        if not token:
            raise CredentialNotFound("empty token")
        now = self.clock()
        consumed = (
            self.db.query(MagicLinkCredential)
            .filter(MagicLinkCredential.token == token, *self._live(now))
            .update({MagicLinkCredential.consumed_at: now}, synchronize_session=False)
        )
        self.db.commit()

        credential = self.db.query(MagicLinkCredential).filter(MagicLinkCredential.token == token).first()
        if credential is None:
            raise CredentialNotFound("unknown token")
        if not consumed:
            if credential.consumed_at is not None:
                raise CredentialAlreadyConsumed("token already used")
            raise CredentialExpired("token expired")
        account = self.db.query(Account).filter(Account.id == credential.account_id).first()
        if account is None:
            raise CredentialNotFound("account no longer exists")
        return account

    def _latest(self, correlation_key: str) -> MagicLinkCredential | None:
        return (
            self.db.query(MagicLinkCredential)
            .filter(MagicLinkCredential.correlation_key == correlation_key)
            .order_by(MagicLinkCredential.issued_at.desc(), MagicLinkCredential.id.desc())
            .first()
        )

    def ensure_for_correlation(self, account_id: int, correlation_key: str) -> MagicLinkCredential:
        """Issue the reconciliation's credential once; redeliveries get the existing one back."""
        latest = self._latest(correlation_key)
        if latest is not None:
            return latest
        return self.issue(account_id, correlation_key)

    def _first_issued_at(self, correlation_key: str) -> datetime | None:
        return _aware(
            self.db.query(func.min(MagicLinkCredential.issued_at))
            .filter(MagicLinkCredential.correlation_key == correlation_key)
            .scalar()
        )

    def ready_for(self, correlation_key: str) -> MagicLinkCredential | None:
        """Readiness check for a polling browser.

        Live credential -> returned. Expired and unused -> regenerated for the same
        account, but only while the key's first credential is inside the reissue
        window. Nothing yet, already consumed (another tab signed in) or a stale
        key -> None, and the browser falls back to email.
        """
        if not correlation_key:
            return None
        latest = self._latest(correlation_key)
        if latest is None or latest.consumed_at is not None:
            return None
        now = self.clock()
        if _aware(latest.expires_at) > now:
            return latest
        first_issued = self._first_issued_at(correlation_key)
        if first_issued is None or first_issued < now - self.reissue_window:
            log.info("Credential for %s expired outside the reissue window; not regenerating", correlation_key)
            return None
        log.info("Credential for %s expired before use; regenerating", correlation_key)
        return self.issue(latest.account_id, correlation_key)

    def request_sign_in(self, email: str) -> MagicLinkCredential | None:
        """Fallback issuance. Queues the request when the account is not reconciled yet."""
        email = normalize_email(email)
        account = self.db.query(Account).filter(Account.email == email).first()
        if account is not None:
            return self.issue(account.id)
        self.db.add(SignInRequest(email=email))
        self.db.commit()
        log.info("Sign-in requested before account exists; queued for %s", mask_email(email))
        return None

    def fulfil_pending(self, account: Account) -> MagicLinkCredential | None:
        """Issue one credential for queued sign-in requests of this account's email, if any."""
        now = self.clock()
        claimed = (
            self.db.query(SignInRequest)
            .filter(SignInRequest.email == account.email, SignInRequest.fulfilled_at.is_(None))
            .update({SignInRequest.fulfilled_at: now}, synchronize_session=False)
        )
        self.db.commit()
        if not claimed:
            return None
        return self.issue(account.id)

    def purge_expired(self, older_than_hours: int) -> int:
        threshold = self.clock() - timedelta(hours=older_than_hours)
        deleted = (
            self.db.query(MagicLinkCredential)
            .filter(MagicLinkCredential.expires_at < threshold)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted

    def purge_stale_requests(self, older_than_hours: int) -> int:
        """Delete queued sign-in requests older than the window, fulfilled or not."""
        threshold = self.clock() - timedelta(hours=older_than_hours)
        deleted = (
            self.db.query(SignInRequest)
            .filter(SignInRequest.requested_at < threshold)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted
