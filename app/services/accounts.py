"""Permanent account lookup and creation, keyed by normalized email."""
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.exceptions import IdentityConflictError
from app.models.account import Account, normalize_email


def display_name_for(email: str, character_type: str | None = None) -> str:
    if character_type:
        return f"{character_type}_lover"
    return normalize_email(email).split("@")[0]


class AccountDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get(self, account_id: int) -> Account | None:
        return self.db.query(Account).filter(Account.id == account_id).first()

    def find_by_email(self, email: str) -> Account | None:
        return self.db.query(Account).filter(Account.email == normalize_email(email)).first()

    def create(
        self,
        email: str,
        display_name: str | None = None,
        source: str | None = None,
        profile: dict | None = None,
    ) -> Account:
        """Insert guarded by the unique email constraint. Raises IdentityConflictError if another writer won."""
        email = normalize_email(email)
        account = Account(
            email=email,
            display_name=display_name or display_name_for(email),
            source=source,
            profile=profile or {},
        )
        self.db.add(account)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise IdentityConflictError(email) from e
        self.db.refresh(account)
        return account
