"""Reconciles gateway completion events into exactly one permanent account.

States: RECEIVED -> METADATA_PARSED -> IDENTITY_RESOLVED -> SUBSCRIPTION_REMAPPED
-> SESSION_LINKED -> DONE, with terminal SKIPPED (not a guest checkout) and
FAILED (raises ReconciliationFailure so the gateway redelivers).

Every invocation repeats the email lookup before creating anything, so a
replayed or concurrent delivery resolves to the same account. Funnel session
linking and ephemeral identity deletion are best-effort; the housekeeping
sweep catches identities left behind.
"""
import enum
import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from app.exceptions import IdentityConflictError, ReconciliationFailure
from app.models.account import Account
from app.schemas.checkout import GuestCheckout, correlation_from_metadata
from app.schemas.webhook import CompletionEvent
from app.services.accounts import AccountDirectory, display_name_for
from app.services.audit_log import CATEGORY_RECONCILIATION, create_log, mask_email
from app.services.ephemeral_identity import EphemeralIdentityProvisioner
from app.services.session_linker import SessionLinker
from app.services.subscriptions import SubscriptionLedger

log = logging.getLogger("uvicorn.error")


class ReconciliationState(str, enum.Enum):
    received = "RECEIVED"
    metadata_parsed = "METADATA_PARSED"
    identity_resolved = "IDENTITY_RESOLVED"
    subscription_remapped = "SUBSCRIPTION_REMAPPED"
    session_linked = "SESSION_LINKED"
    done = "DONE"
    skipped = "SKIPPED"
    failed = "FAILED"


@dataclass
class ReconciliationResult:
    state: ReconciliationState
    account: Account | None = None
    created: bool = False

    @property
    def account_id(self) -> int | None:
        return self.account.id if self.account is not None else None


class WebhookReconciler:
    def __init__(
        self,
        accounts: AccountDirectory,
        subscriptions: SubscriptionLedger,
        provisioner: EphemeralIdentityProvisioner,
        linker: SessionLinker,
    ):
        self.accounts = accounts
        self.subscriptions = subscriptions
        self.provisioner = provisioner
        self.linker = linker

    def reconcile(self, event: CompletionEvent) -> ReconciliationResult:
        state = ReconciliationState.received
        ctx = {"checkout": event.checkout_session_id, "subscription": event.subscription_ref}

        checkout = correlation_from_metadata(event.metadata)
        if not isinstance(checkout, GuestCheckout):
            if event.metadata.get("is_guest_checkout", "").lower() == "true":
                log.error("Guest checkout event without usable email/session metadata, skipping: %s", ctx)
            else:
                log.info("Regular checkout (not guest), skipping reconciliation: %s", ctx)
            return ReconciliationResult(ReconciliationState.skipped)
        state = ReconciliationState.metadata_parsed
        ephemeral_id = checkout.temp_identity_id or event.account_ref
        log.info(
            "Reconciling guest checkout: session=%s email=%s %s",
            checkout.session_id, mask_email(checkout.email), ctx,
        )

        try:
            account, created = self._resolve_account(checkout)
            state = ReconciliationState.identity_resolved

            if event.subscription_ref:
                self._remap_subscription(event, checkout, account, ephemeral_id)
            else:
                log.warning("Completion event has no subscription reference; nothing to remap: %s", ctx)
            state = ReconciliationState.subscription_remapped
        except (SQLAlchemyError, ReconciliationFailure) as e:
            self.accounts.db.rollback()
            log.error("Reconciliation failed at %s: %s error=%s", state.value, ctx, e)
            self._audit(
                checkout, None, ReconciliationState.failed,
                f"Reconciliation failed after {state.value}: {e}", event,
            )
            if isinstance(e, ReconciliationFailure):
                raise
            raise ReconciliationFailure(f"Reconciliation failed after {state.value}: {e}") from e

        if self.linker.link_account(checkout.session_id, account.id):
            state = ReconciliationState.session_linked

        if ephemeral_id:
            self.provisioner.discard(ephemeral_id)

        self._audit(
            checkout, account, ReconciliationState.done,
            f"{'Created' if created else 'Resolved existing'} account {account.id} for checkout "
            f"{event.checkout_session_id} (last step {state.value}).",
            event,
        )
        log.info("Guest checkout reconciled: account=%s created=%s %s", account.id, created, ctx)
        return ReconciliationResult(ReconciliationState.done, account=account, created=created)

    def _resolve_account(self, checkout: GuestCheckout) -> tuple[Account, bool]:
        # Lookup is authoritative and always runs first: replays and returning users land here
        existing = self.accounts.find_by_email(checkout.email)
        if existing is not None:
            return existing, False
        profile = {
            "funnel_session_id": checkout.session_id,
            "character_type": checkout.character_type,
            "body_type": checkout.body_type,
        }
        try:
            account = self.accounts.create(
                checkout.email,
                display_name=display_name_for(checkout.email, checkout.character_type),
                source="quiz_checkout",
                profile={k: v for k, v in profile.items() if v},
            )
        except IdentityConflictError:
            log.info("Concurrent account creation for %s; using the existing row", mask_email(checkout.email))
            account = self.accounts.find_by_email(checkout.email)
            if account is None:
                raise ReconciliationFailure("Account conflict reported but no row found")
            return account, False
        return account, True

    def _remap_subscription(self, event: CompletionEvent, checkout: GuestCheckout, account: Account, ephemeral_id):
        placeholder = ephemeral_id if ephemeral_id and self.provisioner.get(ephemeral_id) is not None else None
        self.subscriptions.ensure(
            event.subscription_ref,
            ephemeral_identity_id=placeholder,
            provider_customer_id=event.customer_ref,
            plan_id=checkout.plan_id,
        )
        if not self.subscriptions.remap(event.subscription_ref, account.id):
            raise ReconciliationFailure(
                f"Subscription {event.subscription_ref} is bound to a different account"
            )

    def _audit(self, checkout: GuestCheckout, account: Account | None, state, message: str, event) -> None:
        try:
            create_log(
                self.accounts.db,
                CATEGORY_RECONCILIATION,
                f"Guest checkout {state.value.lower()}",
                message,
                account_id=account.id if account is not None else None,
                funnel_session_id=checkout.session_id,
                actor_email=checkout.email,
                meta={
                    "state": state.value,
                    "checkout_session_id": event.checkout_session_id,
                    "subscription_id": event.subscription_ref,
                },
            )
            self.accounts.db.commit()
        except SQLAlchemyError as e:
            self.accounts.db.rollback()
            log.warning("Failed to write reconciliation audit entry: %s", e)
