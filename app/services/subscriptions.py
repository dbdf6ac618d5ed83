"""Subscription rows mirrored from the billing gateway.

Every write here is conditional (insert-if-absent, update-where-current-value-matches)
because webhook deliveries for the same subscription may run concurrently.
"""
import logging

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.subscription import Subscription

log = logging.getLogger("uvicorn.error")


class SubscriptionLedger:
    def __init__(self, db: Session):
        self.db = db

    def get(self, provider_subscription_id: str) -> Subscription | None:
        return (
            self.db.query(Subscription)
            .filter(Subscription.provider_subscription_id == provider_subscription_id)
            .first()
        )

    def ensure(
        self,
        provider_subscription_id: str,
        *,
        account_id: int | None = None,
        ephemeral_identity_id: str | None = None,
        provider_customer_id: str | None = None,
        plan_id: str | None = None,
        status: str = "active",
    ) -> Subscription:
        """Insert the row if absent; an existing row (e.g. already remapped) is returned untouched."""
        existing = self.get(provider_subscription_id)
        if existing is not None:
            return existing
        sub = Subscription(
            provider_subscription_id=provider_subscription_id,
            provider_customer_id=provider_customer_id,
            plan_id=plan_id,
            status=status,
            account_id=account_id,
            ephemeral_identity_id=ephemeral_identity_id,
        )
        self.db.add(sub)
        try:
            self.db.commit()
        except IntegrityError:
            # Concurrent delivery inserted it first
            self.db.rollback()
            existing = self.get(provider_subscription_id)
            if existing is None:
                raise
            return existing
        self.db.refresh(sub)
        return sub

    def remap(self, provider_subscription_id: str, account_id: int) -> bool:
        """Point the subscription at the resolved account and drop the ephemeral reference.

        Applies only while the row is unbound or already bound to this account.
        Returns False when the row is missing or bound to a different account.
        """
        updated = (
            self.db.query(Subscription)
            .filter(
                Subscription.provider_subscription_id == provider_subscription_id,
                or_(Subscription.account_id.is_(None), Subscription.account_id == account_id),
            )
            .update(
                {Subscription.account_id: account_id, Subscription.ephemeral_identity_id: None},
                synchronize_session=False,
            )
        )
        self.db.commit()
        return bool(updated)

    def update_status(self, provider_subscription_id: str, status: str) -> bool:
        updated = (
            self.db.query(Subscription)
            .filter(Subscription.provider_subscription_id == provider_subscription_id)
            .update({Subscription.status: status}, synchronize_session=False)
        )
        self.db.commit()
        if not updated:
            log.info("Status update for unknown subscription %s ignored", provider_subscription_id)
        return bool(updated)
