"""Throwaway identity handed to the payment gateway as the account reference for a guest checkout."""
from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from app.database import Base, JSONType


class EphemeralIdentity(Base):
    __tablename__ = "ephemeral_identities"

    id = Column(String(36), primary_key=True)  # uuid4, also the gateway client_reference_id
    # Generated from a fresh uuid, never from user input, so it cannot collide
    placeholder_email = Column(String(255), unique=True, nullable=False)

    guest_email = Column(String(255), nullable=False, index=True)
    funnel_session_id = Column(String(128), nullable=False, index=True)
    character_selections = Column(JSONType, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
