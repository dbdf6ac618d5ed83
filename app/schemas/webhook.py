"""Billing gateway completion event, reduced to the fields reconciliation needs."""
from pydantic import BaseModel, Field


class CompletionEvent(BaseModel):
    checkout_session_id: str | None = None
    account_ref: str | None = None  # client_reference_id given at checkout
    subscription_ref: str | None = None
    customer_ref: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_checkout_session(cls, obj: dict) -> "CompletionEvent":
        """Build from a `checkout.session.completed` data object."""
        metadata = {str(k): str(v) for k, v in (obj.get("metadata") or {}).items() if v is not None}
        return cls(
            checkout_session_id=obj.get("id"),
            account_ref=obj.get("client_reference_id"),
            subscription_ref=obj.get("subscription"),
            customer_ref=obj.get("customer"),
            metadata=metadata,
        )

    def needs_metadata(self) -> bool:
        """Subscription-level metadata can be empty; the checkout session holds the full set."""
        return "is_guest_checkout" not in self.metadata or not self.metadata.get("source")
