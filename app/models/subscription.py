"""Subscription opened through the billing gateway.

Until reconciliation the row may only reference the ephemeral identity used at
checkout; the remap sets account_id and clears that reference exactly once.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    provider_subscription_id = Column(String(255), unique=True, nullable=False, index=True)
    provider_customer_id = Column(String(255), nullable=True)
    plan_id = Column(String(100), nullable=True)
    status = Column(String(32), nullable=False, default="active")

    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True, index=True)
    ephemeral_identity_id = Column(
        String(36), ForeignKey("ephemeral_identities.id", ondelete="SET NULL"), nullable=True, index=True
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    account = relationship("Account", backref="subscriptions")
