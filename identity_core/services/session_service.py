from __future__ import annotations

import logging
import os
from datetime import UTC, datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from identity_core.domain.errors import ConflictError, InvalidToken
from identity_core.domain.models import AuthSession, SubjectType, now_utc
from identity_core.infra.auth import decode_token, hash_token
from identity_core.infra.db import get_engine

REFRESH_ROTATION_GRACE_SECONDS = int(os.getenv("REFRESH_ROTATION_GRACE_SECONDS", "30"))

logger = logging.getLogger(__name__)


def as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class SessionService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _new_record(
        self,
        subject_id: str,
        subject_type: SubjectType,
        token: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> AuthSession:
        claims = decode_token(token)
        return AuthSession(
            subject_id=subject_id,
            subject_type=subject_type,
            token_hash=hash_token(token),
            expires_at=datetime.fromtimestamp(int(claims["exp"]), UTC),
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def save_refresh_token(
        self,
        subject_id: str,
        subject_type: SubjectType,
        token: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthSession:
        record = self._new_record(subject_id, subject_type, token, ip_address, user_agent)
        with self._session() as session:
            session.add(record)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("Refresh token already stored") from exc
            session.refresh(record)
        return record

    def get_active_session(self, token: str) -> AuthSession:
        with self._session() as session:
            record = session.exec(
                select(AuthSession).where(AuthSession.token_hash == hash_token(token))
            ).first()
        if record is None or record.revoked_at is not None:
            raise InvalidToken("Session not found or revoked")
        if as_utc(record.expires_at) <= now_utc():
            raise InvalidToken("Session expired")
        return record

    def replace(
        self,
        previous: AuthSession,
        token: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthSession:
        """Store the rotated refresh token, then let the previous one lapse.

        The new row is committed before the old one is touched, so a failure in
        between leaves the caller holding a valid token either way. The old
        token keeps working only for the grace window.
        """
        record = self.save_refresh_token(
            previous.subject_id,
            previous.subject_type,
            token,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        grace_deadline = now_utc() + timedelta(seconds=REFRESH_ROTATION_GRACE_SECONDS)
        with self._session() as session:
            old = session.get(AuthSession, previous.id)
            if old is not None:
                old.expires_at = min(as_utc(old.expires_at), grace_deadline)
                old.replaced_by = record.id
                session.add(old)
                session.commit()
        logger.info(
            "session.rotated subject_type=%s subject_id=%s session_id=%s",
            previous.subject_type,
            previous.subject_id,
            record.id,
        )
        return record

    def revoke(self, subject_id: str, token: str) -> bool:
        with self._session() as session:
            record = session.exec(
                select(AuthSession)
                .where(AuthSession.token_hash == hash_token(token))
                .where(AuthSession.subject_id == subject_id)
            ).first()
            if record is None or record.revoked_at is not None:
                return False
            record.revoked_at = now_utc()
            session.add(record)
            session.commit()
        logger.info("session.revoked subject_id=%s session_id=%s", subject_id, record.id)
        return True

    def revoke_all(self, session: Session, subject_type: SubjectType, subject_id: str) -> int:
        """Revoke every open session of a subject inside the caller's transaction."""
        records = session.exec(
            select(AuthSession)
            .where(AuthSession.subject_type == subject_type)
            .where(AuthSession.subject_id == subject_id)
            .where(col(AuthSession.revoked_at).is_(None))
        ).all()
        revoked_at = now_utc()
        for record in records:
            record.revoked_at = revoked_at
            session.add(record)
        return len(records)

    def list_active(self, subject_type: SubjectType, subject_id: str) -> list[AuthSession]:
        with self._session() as session:
            records = session.exec(
                select(AuthSession)
                .where(AuthSession.subject_type == subject_type)
                .where(AuthSession.subject_id == subject_id)
                .where(col(AuthSession.revoked_at).is_(None))
            ).all()
        now = now_utc()
        return [item for item in records if as_utc(item.expires_at) > now]
