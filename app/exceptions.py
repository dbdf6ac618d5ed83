"""Error taxonomy for checkout, reconciliation and sign-in credentials.

Services raise these; routers translate them into HTTP responses. None of them
carry user-facing text: the HTTP layer decides what the visitor sees.
"""


class GuestPassError(Exception):
    """Base class for all domain errors."""


class ProvisioningError(GuestPassError):
    """The ephemeral identity could not be created. No payment session may be opened."""


class UpstreamProviderError(GuestPassError):
    """The billing gateway rejected or failed a call."""


class UnknownPlanError(GuestPassError):
    """Checkout was requested for a plan id that is not in the catalog."""

    def __init__(self, plan_id: str):
        super().__init__(f"Unknown plan id: {plan_id!r}")
        self.plan_id = plan_id


class WebhookSignatureError(GuestPassError):
    """The webhook payload could not be verified against the signing secret."""


class IdentityConflictError(GuestPassError):
    """A concurrent writer created the account for this email first.

    Never surfaced to users; the reconciler re-reads the existing row.
    """

    def __init__(self, email: str):
        super().__init__(f"Account already exists for {email[:3]}***")
        self.email = email


class ReconciliationFailure(GuestPassError):
    """A reconciliation step failed. Propagated so the gateway redelivers the event."""


class CredentialError(GuestPassError):
    """Base for sign-in credential verification failures."""

    reason = "invalid"


class CredentialNotFound(CredentialError):
    reason = "not_found"


class CredentialAlreadyConsumed(CredentialError):
    reason = "already_consumed"


class CredentialExpired(CredentialError):
    reason = "expired"
