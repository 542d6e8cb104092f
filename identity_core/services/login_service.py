from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from identity_core.domain.errors import ConflictError, InvalidCredentials, InvalidToken, InvalidTokenType
from identity_core.domain.models import (
    Account,
    Admin,
    OAuthProvider,
    Operator,
    Profile,
    SubjectType,
    TokenPair,
)
from identity_core.domain.principals import REFRESH_TOKEN_TYPES
from identity_core.infra.auth import decode_token, hash_password, verify_password
from identity_core.infra.db import get_engine
from identity_core.services.oauth_broker import build_username
from identity_core.services.service_catalog import ServiceCatalog
from identity_core.services.session_service import SessionService
from identity_core.services.token_service import TokenService

SUBJECT_BY_REFRESH_TYPE = {token_type.value: subject for subject, token_type in REFRESH_TOKEN_TYPES.items()}

logger = logging.getLogger(__name__)


class LoginService:
    def __init__(
        self,
        catalog: ServiceCatalog,
        tokens: TokenService | None = None,
        sessions: SessionService | None = None,
    ) -> None:
        self.catalog = catalog
        self.sessions = sessions or SessionService()
        self.tokens = tokens or TokenService(self.sessions)

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def register_user(self, email: str, password: str, name: str | None = None) -> Account:
        account = Account(
            email=email,
            username=build_username(email),
            provider=OAuthProvider.LOCAL,
            password_hash=hash_password(password),
        )
        with self._session() as session:
            try:
                session.add(account)
                session.flush()
                session.add(Profile(account_id=account.id, display_name=name))
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("Account already exists") from exc
        logger.info("auth.registered account_id=%s", account.id)
        return account

    def login_user(
        self,
        email: str,
        password: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        with self._session() as session:
            account = session.exec(
                select(Account)
                .where(Account.email == email)
                .where(Account.provider == OAuthProvider.LOCAL)
            ).first()
        if account is None or not account.is_active or not verify_password(password, account.password_hash):
            logger.info("auth.login_failed subject_type=USER")
            raise InvalidCredentials("Invalid credentials")
        return self.tokens.issue_pair(
            SubjectType.USER, account.id, ip_address=ip_address, user_agent=user_agent
        )

    def login_admin(
        self,
        email: str,
        password: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        with self._session() as session:
            admin = session.exec(select(Admin).where(Admin.email == email)).first()
        if admin is None or not admin.is_active or not verify_password(password, admin.password_hash):
            logger.info("auth.login_failed subject_type=ADMIN")
            raise InvalidCredentials("Invalid credentials")
        return self.tokens.issue_pair(
            SubjectType.ADMIN, admin.id, ip_address=ip_address, user_agent=user_agent
        )

    def login_operator(
        self,
        email: str,
        password: str,
        service_slug: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        service = self.catalog.get_by_slug(service_slug)
        with self._session() as session:
            operator = session.exec(
                select(Operator)
                .where(Operator.email == email)
                .where(Operator.service_id == service.id)
            ).first()
        if operator is None or not operator.is_active or not verify_password(password, operator.password_hash):
            logger.info("auth.login_failed subject_type=OPERATOR")
            raise InvalidCredentials("Invalid credentials")
        return self.tokens.issue_pair(
            SubjectType.OPERATOR, operator.id, ip_address=ip_address, user_agent=user_agent
        )

    def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        claims = decode_token(refresh_token)
        subject_type = SUBJECT_BY_REFRESH_TYPE.get(str(claims.get("type")))
        if subject_type is None:
            raise InvalidTokenType("Not a refresh token")
        record = self.sessions.get_active_session(refresh_token)
        if record.subject_id != claims["sub"] or record.subject_type != subject_type:
            raise InvalidToken("Refresh token does not match session")
        pair = self.tokens.mint_pair(subject_type, record.subject_id)
        self.sessions.replace(record, pair.refresh_token, ip_address=ip_address, user_agent=user_agent)
        return pair

    def logout(self, subject_id: str, refresh_token: str) -> bool:
        return self.sessions.revoke(subject_id, refresh_token)
