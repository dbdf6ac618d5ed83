"""Sign-in schemas: readiness polling, fallback magic links, session tokens."""
from pydantic import BaseModel, EmailStr, field_validator


class AccountResponse(BaseModel):
    id: int
    email: str
    display_name: str | None = None
    source: str | None = None

    class Config:
        from_attributes = True


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    account: AccountResponse


class ReadinessRequest(BaseModel):
    session_id: str

    @field_validator("session_id")
    @classmethod
    def strip_session_id(cls, v: str) -> str:
        return (v or "").strip()


class ReadinessResponse(BaseModel):
    credential_token: str
    sign_in_url: str


class MagicLinkRequest(BaseModel):
    email: EmailStr
    redirect_to: str | None = None


class MagicLinkAccepted(BaseModel):
    status: str = "accepted"
    message: str = "If an account exists for this email, a sign-in link is on its way."
