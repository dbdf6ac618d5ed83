"""Ephemeral identities: throwaway account references that let a guest reach the payment gateway."""
import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.exceptions import ProvisioningError
from app.models.ephemeral_identity import EphemeralIdentity
from app.models.subscription import Subscription
from app.services.audit_log import mask_email

log = logging.getLogger("uvicorn.error")


class EphemeralIdentityProvisioner:
    def __init__(self, db: Session, placeholder_domain: str = "guest.invalid"):
        self.db = db
        self.placeholder_domain = placeholder_domain

    def provision(self, funnel_session_id: str, guest_email: str, metadata: dict | None = None) -> EphemeralIdentity:
        """Write one ephemeral identity. Raises ProvisioningError if the store rejects it."""
        identity_id = str(uuid.uuid4())
        identity = EphemeralIdentity(
            id=identity_id,
            placeholder_email=f"guest-{uuid.uuid4().hex}@{self.placeholder_domain}",
            guest_email=(guest_email or "").strip().lower(),
            funnel_session_id=funnel_session_id,
            character_selections=metadata or {},
        )
        self.db.add(identity)
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            log.error(
                "Ephemeral identity provisioning failed: session=%s email=%s error=%s",
                funnel_session_id, mask_email(guest_email), e,
            )
            raise ProvisioningError(f"Could not provision ephemeral identity: {e}") from e
        self.db.refresh(identity)
        log.info("Ephemeral identity %s provisioned for session=%s", identity.id, funnel_session_id)
        return identity

    def get(self, identity_id: str) -> EphemeralIdentity | None:
        return self.db.query(EphemeralIdentity).filter(EphemeralIdentity.id == identity_id).first()

    def discard(self, identity_id: str | None) -> bool:
        """Idempotent delete. Not found counts as success; store failures are logged, not raised.

        Returns True when the identity is gone afterwards.
        """
        if not identity_id:
            return True
        try:
            deleted = self.db.query(EphemeralIdentity).filter(EphemeralIdentity.id == identity_id).delete(
                synchronize_session=False
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            log.warning("Failed to discard ephemeral identity %s (left for sweep): %s", identity_id, e)
            return False
        if deleted:
            log.info("Ephemeral identity %s discarded", identity_id)
        return True

    def sweep_orphans(self, older_than_hours: int, now: datetime | None = None) -> int:
        """Delete ephemeral identities older than the window that no subscription still references."""
        threshold = (now or datetime.now(timezone.utc)) - timedelta(hours=older_than_hours)
        referenced = select(Subscription.ephemeral_identity_id).where(
            Subscription.ephemeral_identity_id.isnot(None)
        )
        deleted = (
            self.db.query(EphemeralIdentity)
            .filter(
                EphemeralIdentity.created_at < threshold,
                EphemeralIdentity.id.notin_(referenced),
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted
