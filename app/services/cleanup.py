"""Housekeeping sweep: orphaned ephemeral identities, long-expired sign-in credentials and stale sign-in requests."""
import logging

from sqlalchemy.orm import Session

from app.config import get_settings
from app.database import SessionLocal
from app.services.audit_log import CATEGORY_CLEANUP, create_log
from app.services.credentials import CredentialIssuer
from app.services.ephemeral_identity import EphemeralIdentityProvisioner

log = logging.getLogger("uvicorn.error")


def sweep(
    db: Session,
    orphan_hours: int,
    credential_retention_hours: int,
    request_retention_hours: int = 24,
) -> dict[str, int]:
    """Delete ephemeral identities past the orphan window, credentials expired beyond retention
    and queued sign-in requests older than their window."""
    identities = EphemeralIdentityProvisioner(db).sweep_orphans(orphan_hours)
    issuer = CredentialIssuer(db)
    credentials = issuer.purge_expired(credential_retention_hours)
    requests = issuer.purge_stale_requests(request_retention_hours)
    counts = {"ephemeral_identities": identities, "credentials": credentials, "sign_in_requests": requests}
    if any(counts.values()):
        create_log(
            db,
            CATEGORY_CLEANUP,
            "Housekeeping sweep",
            f"Deleted {identities} orphaned ephemeral identit(ies), {credentials} expired credential(s) "
            f"and {requests} stale sign-in request(s).",
            meta=counts,
        )
        db.commit()
        log.info(
            "Cleanup: deleted %d orphaned identity(ies), %d expired credential(s), %d stale sign-in request(s).",
            identities, credentials, requests,
        )
    return counts


def run_cleanup_job() -> None:
    """Scheduler entry point; owns its own session."""
    settings = get_settings()
    db: Session = SessionLocal()
    try:
        sweep(
            db,
            settings.ephemeral_identity_orphan_hours,
            settings.credential_retention_hours,
            settings.sign_in_request_retention_hours,
        )
    finally:
        db.close()
