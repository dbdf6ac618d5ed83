"""Permanent account: the identity the user signs into after paying."""
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from app.database import Base, JSONType


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


class Account(Base):
    __tablename__ = "accounts"
    # One account per normalized email; concurrent webhook deliveries race on this constraint
    __table_args__ = (UniqueConstraint("email", name="uq_accounts_email"),)

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    source = Column(String(50), nullable=True)  # quiz_checkout, magic_link, ...

    # Quiz-derived attributes and the funnel session the account came from
    profile = Column(JSONType, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
