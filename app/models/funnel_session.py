"""Anonymous quiz funnel session: answers and contact email before any account exists."""
import enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, JSONType


class FunnelSessionStatus(str, enum.Enum):
    started = "started"
    checkout_started = "checkout_started"
    converted = "converted"


class FunnelSession(Base):
    __tablename__ = "funnel_sessions"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(128), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=False, index=True)
    quiz_answers = Column(JSONType, nullable=True)
    source = Column(String(50), nullable=False, default="quiz")
    status = Column(SQLEnum(FunnelSessionStatus), nullable=False, default=FunnelSessionStatus.started)

    # Set once reconciliation resolves the permanent account; never cleared
    linked_account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    linked_account = relationship("Account", backref="funnel_sessions")
