from __future__ import annotations

import logging

from sqlmodel import Session

from identity_core.domain.errors import ForbiddenError, NotFoundError
from identity_core.domain.models import Admin, Operator, SubjectType
from identity_core.infra.db import get_engine
from identity_core.services.session_service import SessionService

logger = logging.getLogger(__name__)


class PrincipalAdminService:
    """Deactivation of admins and operators.

    The active flag and the session revocations commit together, so no
    refresh token outlives the principal it belongs to.
    """

    def __init__(self, sessions: SessionService | None = None) -> None:
        self.sessions = sessions or SessionService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def deactivate_admin(self, actor_id: str, admin_id: str) -> int:
        if actor_id == admin_id:
            raise ForbiddenError("Cannot deactivate yourself")
        with self._session() as session:
            admin = session.get(Admin, admin_id)
            if admin is None:
                raise NotFoundError("Admin not found")
            admin.is_active = False
            session.add(admin)
            revoked = self.sessions.revoke_all(session, SubjectType.ADMIN, admin_id)
            session.commit()
        logger.info(
            "admin.deactivated admin_id=%s actor_id=%s revoked_sessions=%d",
            admin_id,
            actor_id,
            revoked,
        )
        return revoked

    def deactivate_operator(self, actor_id: str, operator_id: str) -> int:
        with self._session() as session:
            operator = session.get(Operator, operator_id)
            if operator is None:
                raise NotFoundError("Operator not found")
            operator.is_active = False
            session.add(operator)
            revoked = self.sessions.revoke_all(session, SubjectType.OPERATOR, operator_id)
            session.commit()
        logger.info(
            "operator.deactivated operator_id=%s actor_id=%s revoked_sessions=%d",
            operator_id,
            actor_id,
            revoked,
        )
        return revoked
