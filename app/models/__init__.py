"""
All SQLAlchemy models. Schema is the source of truth for new DBs.
Base.metadata.create_all() creates every table; no migration scripts needed for fresh installs.
"""
from app.models.account import Account
from app.models.funnel_session import FunnelSession, FunnelSessionStatus
from app.models.ephemeral_identity import EphemeralIdentity
from app.models.subscription import Subscription
from app.models.magic_link import MagicLinkCredential, SignInRequest
from app.models.audit_log import AuditLog

__all__ = [
    "Account",
    "FunnelSession",
    "FunnelSessionStatus",
    "EphemeralIdentity",
    "Subscription",
    "MagicLinkCredential",
    "SignInRequest",
    "AuditLog",
]
