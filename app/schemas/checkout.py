"""Checkout schemas and the correlation metadata carried through the billing gateway.

A checkout is either a guest checkout (funnel session + email, no account yet)
or an authenticated one (existing account). The gateway only stores flat string
metadata, so both variants serialize to and parse from a single dict shape.
"""
from typing import Annotated, Literal, Union

from pydantic import BaseModel, EmailStr, Field, HttpUrl, field_validator

GUEST_FLAG = "is_guest_checkout"


class GuestCheckout(BaseModel):
    kind: Literal["guest"] = "guest"
    email: str
    session_id: str
    source: str = "quiz"
    plan_id: str | None = None
    character_type: str | None = None
    body_type: str | None = None
    temp_identity_id: str | None = None
    temp_email: str | None = None

    def to_metadata(self) -> dict[str, str]:
        meta = {
            GUEST_FLAG: "true",
            "session": self.session_id,
            "email": self.email,
            "source": self.source,
            "character_type": self.character_type or "unknown",
            "body_type": self.body_type or "unknown",
        }
        if self.plan_id:
            meta["plan_id"] = self.plan_id
        if self.temp_identity_id:
            meta["temp_identity_id"] = self.temp_identity_id
        if self.temp_email:
            meta["temp_email"] = self.temp_email
        return meta


class AuthenticatedCheckout(BaseModel):
    kind: Literal["authenticated"] = "authenticated"
    account_id: int
    source: str = "app"
    plan_id: str | None = None

    def to_metadata(self) -> dict[str, str]:
        meta = {
            GUEST_FLAG: "false",
            "account_id": str(self.account_id),
            "source": self.source,
        }
        if self.plan_id:
            meta["plan_id"] = self.plan_id
        return meta


CheckoutCorrelation = Annotated[Union[GuestCheckout, AuthenticatedCheckout], Field(discriminator="kind")]


def _clean(value) -> str | None:
    s = (str(value) if value is not None else "").strip()
    if not s or s == "unknown":
        return None
    return s


def correlation_from_metadata(metadata: dict | None) -> GuestCheckout | AuthenticatedCheckout | None:
    """Parse gateway metadata back into a checkout variant. Returns None when unusable."""
    meta = metadata or {}
    if str(meta.get(GUEST_FLAG, "")).strip().lower() == "true":
        email = _clean(meta.get("email"))
        session_id = _clean(meta.get("session"))
        if not email or not session_id:
            return None
        return GuestCheckout(
            email=email,
            session_id=session_id,
            source=_clean(meta.get("source")) or "quiz",
            plan_id=_clean(meta.get("plan_id")),
            character_type=_clean(meta.get("character_type")),
            body_type=_clean(meta.get("body_type")),
            temp_identity_id=_clean(meta.get("temp_identity_id")),
            temp_email=_clean(meta.get("temp_email")),
        )
    account_id = _clean(meta.get("account_id"))
    if account_id is None:
        return None
    try:
        return AuthenticatedCheckout(
            account_id=int(account_id),
            source=_clean(meta.get("source")) or "app",
            plan_id=_clean(meta.get("plan_id")),
        )
    except ValueError:
        return None


class CharacterSelections(BaseModel):
    character_type: str | None = None
    body_type: str | None = None


class GuestCheckoutRequest(BaseModel):
    plan_id: str = Field(min_length=1)
    success_url: HttpUrl
    cancel_url: HttpUrl
    email: EmailStr
    session_id: str = Field(min_length=1)
    source: str = "quiz"
    metadata: CharacterSelections | None = None

    @field_validator("session_id")
    @classmethod
    def strip_session_id(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("session_id is required")
        return v


class AuthenticatedCheckoutRequest(BaseModel):
    plan_id: str = Field(min_length=1)
    success_url: HttpUrl
    cancel_url: HttpUrl
    source: str = "app"


class CheckoutResponse(BaseModel):
    success: bool = True
    checkout_token: str
    checkout_url: str | None = None
