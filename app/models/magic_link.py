"""Single-use, time-boxed sign-in credential (magic link) and queued sign-in requests."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base


class MagicLinkCredential(Base):
    __tablename__ = "magic_link_credentials"

    id = Column(Integer, primary_key=True, index=True)
    token = Column(String(128), unique=True, nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)

    # Gateway checkout session id the browser polls with; null for fallback/email links
    correlation_key = Column(String(255), nullable=True, index=True)

    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    consumed_at = Column(DateTime(timezone=True), nullable=True)

    account = relationship("Account", backref="magic_link_credentials")


class SignInRequest(Base):
    """Fallback "email me a link" request received before the account was reconciled."""

    __tablename__ = "sign_in_requests"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), nullable=False, index=True)
    requested_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    fulfilled_at = Column(DateTime(timezone=True), nullable=True)
