"""
Audit trail for security-relevant broker events. No tokens, codes or secrets recorded.
"""
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from oidc_broker.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_AUTHORIZE = "authorize"
EVENT_LOGIN_OK = "login_ok"
EVENT_LOGIN_FAIL = "login_fail"
EVENT_CONSENT_ALLOW = "consent_allow"
EVENT_CONSENT_DENY = "consent_deny"
EVENT_CODE_ISSUED = "code_issued"
EVENT_TOKEN_ISSUED = "token_issued"
EVENT_TOKEN_FAIL = "token_fail"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


class AuditTrail:
    """Records events via the given session factory; with none configured, events only go to the logger."""

    def __init__(self, session_factory: sessionmaker | None = None, query_enabled: bool = False):
        self._session_factory = session_factory
        # GET /audit serves recent() only when enabled
        self.query_enabled = query_enabled

    def record(
        self,
        event_type: str,
        *,
        client_id: str | None = None,
        user_id: int | None = None,
        outcome: str = OUTCOME_SUCCESS,
    ) -> None:
        logger.info("audit event=%s client_id=%s user_id=%s outcome=%s", event_type, client_id, user_id, outcome)
        if self._session_factory is None:
            return
        try:
            with self._session_factory() as db:
                db.add(AuditLog(event_type=event_type, client_id=client_id, user_id=user_id, outcome=outcome))
                db.commit()
        except SQLAlchemyError as e:
            # Losing an audit row must not fail the protocol step that produced it
            logger.error("Failed to write audit event %s: %s", event_type, e)

    def recent(
        self,
        *,
        limit: int = 100,
        event_type: str | None = None,
        outcome: str | None = None,
        client_id: str | None = None,
    ) -> list[dict]:
        """Most recent events first, optionally filtered."""
        if self._session_factory is None:
            return []
        q = select(AuditLog).order_by(AuditLog.id.desc())
        if event_type:
            q = q.where(AuditLog.event_type == event_type)
        if outcome:
            q = q.where(AuditLog.outcome == outcome)
        if client_id:
            q = q.where(AuditLog.client_id == client_id)
        with self._session_factory() as db:
            rows = db.execute(q.limit(min(max(1, limit), 500))).scalars().all()
            return [
                {
                    "created_at": r.created_at.isoformat() if r.created_at else None,
                    "event_type": r.event_type,
                    "client_id": r.client_id,
                    "user_id": r.user_id,
                    "outcome": r.outcome,
                }
                for r in rows
            ]
