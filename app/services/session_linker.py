"""Funnel session persistence: quiz answers before checkout, resolved account after."""
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.funnel_session import FunnelSession, FunnelSessionStatus
from app.models.account import normalize_email
from app.services.audit_log import mask_email

log = logging.getLogger("uvicorn.error")


class SessionLinker:
    def __init__(self, db: Session):
        self.db = db

    def get(self, session_id: str) -> FunnelSession | None:
        return self.db.query(FunnelSession).filter(FunnelSession.session_id == session_id).first()

    def record(
        self,
        session_id: str,
        email: str,
        quiz_answers: dict | None = None,
        source: str | None = None,
        status: FunnelSessionStatus | None = None,
    ) -> FunnelSession:
        """Create the funnel session or update its answers/email. Never moves a converted session backwards."""
        email = normalize_email(email)
        funnel = self.get(session_id)
        if funnel is None:
            funnel = FunnelSession(
                session_id=session_id,
                email=email,
                quiz_answers=quiz_answers or {},
                source=source or "quiz",
                status=status or FunnelSessionStatus.started,
            )
            self.db.add(funnel)
            try:
                self.db.commit()
            except IntegrityError:
                # Another request created it first (double submit, second tab); update that row instead
                self.db.rollback()
                funnel = self.get(session_id)
                if funnel is None:
                    raise
                return self._update(funnel, email, quiz_answers, source, status)
            self.db.refresh(funnel)
            log.info("Funnel session recorded: session=%s email=%s", session_id, mask_email(email))
            return funnel
        return self._update(funnel, email, quiz_answers, source, status)

    def _update(self, funnel, email, quiz_answers, source, status) -> FunnelSession:
        if email:
            funnel.email = email
        if quiz_answers:
            funnel.quiz_answers = {**(funnel.quiz_answers or {}), **quiz_answers}
        if source:
            funnel.source = source
        if status and funnel.status != FunnelSessionStatus.converted:
            funnel.status = status
        self.db.commit()
        self.db.refresh(funnel)
        return funnel

    def link_account(self, session_id: str, account_id: int) -> bool:
        """Attach the resolved account. Best-effort: failures are logged and reported as False."""
        try:
            updated = (
                self.db.query(FunnelSession)
                .filter(FunnelSession.session_id == session_id)
                .update(
                    {
                        FunnelSession.linked_account_id: account_id,
                        FunnelSession.status: FunnelSessionStatus.converted,
                    },
                    synchronize_session=False,
                )
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            log.warning("Failed to link funnel session %s to account %s: %s", session_id, account_id, e)
            return False
        if not updated:
            log.warning("Funnel session %s not found while linking account %s", session_id, account_id)
            return False
        return True
