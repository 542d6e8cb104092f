from __future__ import annotations

import logging

from pydantic import ValidationError as PydanticValidationError
from sqlmodel import Session

from identity_core.domain.errors import InvalidToken, InvalidTokenType, PrincipalNotFound, ServiceNotFound
from identity_core.domain.models import DEFAULT_COUNTRY_CODE, Account, AccountMode, Admin, Operator, Profile
from identity_core.domain.principals import (
    LEGACY_TOKEN_TYPES,
    AdminAccessPayload,
    AdminPrincipal,
    LegacyPayload,
    OperatorAccessPayload,
    OperatorPrincipal,
    TokenType,
    UserAccessPayload,
    UserPrincipal,
)
from identity_core.infra.auth import decode_token
from identity_core.infra.db import get_engine
from identity_core.services.service_catalog import ServiceCatalog

logger = logging.getLogger(__name__)

AnyPrincipal = UserPrincipal | AdminPrincipal | OperatorPrincipal


class PrincipalResolver:
    """Turns a bearer token into a live principal.

    The ``type`` claim picks the variant before anything else is read. Each
    variant is then checked against its backing row; a disabled row and a
    missing row fail the same way.
    """

    def __init__(self, catalog: ServiceCatalog) -> None:
        self.catalog = catalog

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def verify_and_resolve(self, token: str) -> AnyPrincipal:
        claims = decode_token(token)
        token_type = claims.get("type")
        try:
            if token_type == TokenType.USER_ACCESS:
                return self.validate_user(UserAccessPayload.model_validate(claims))
            if token_type == TokenType.ADMIN_ACCESS:
                return self.validate_admin(AdminAccessPayload.model_validate(claims))
            if token_type == TokenType.OPERATOR_ACCESS:
                return self.validate_operator(OperatorAccessPayload.model_validate(claims))
            if token_type is None or (isinstance(token_type, str) and token_type in LEGACY_TOKEN_TYPES):
                return self.validate_legacy(LegacyPayload.model_validate(claims))
        except PydanticValidationError as exc:
            raise InvalidToken("Malformed token payload") from exc
        logger.info("auth.rejected reason=token_type token_type=%s", token_type)
        raise InvalidTokenType(f"Invalid token type: {token_type}")

    def _load_account(self, session: Session, account_id: str) -> tuple[Account, str]:
        account = session.get(Account, account_id)
        if account is None or not account.is_active:
            raise PrincipalNotFound("User not found")
        profile = session.get(Profile, account.id)
        name = profile.display_name if profile is not None and profile.display_name else ""
        return account, name

    def validate_user(self, payload: UserAccessPayload) -> UserPrincipal:
        with self._session() as session:
            account, name = self._load_account(session, payload.sub)
        return UserPrincipal(
            id=account.id,
            email=account.email,
            name=name,
            account_mode=payload.account_mode,
            country_code=payload.country_code,
            services=payload.services,
        )

    def validate_legacy(self, payload: LegacyPayload) -> UserPrincipal:
        with self._session() as session:
            account, name = self._load_account(session, payload.sub)
        return UserPrincipal(
            id=account.id,
            email=account.email,
            name=name,
            account_mode=AccountMode.SERVICE,
            country_code=DEFAULT_COUNTRY_CODE,
            services={},
        )

    def validate_admin(self, payload: AdminAccessPayload) -> AdminPrincipal:
        with self._session() as session:
            admin = session.get(Admin, payload.sub)
        if admin is None or not admin.is_active:
            logger.info("auth.rejected reason=admin_unavailable admin_id=%s", payload.sub)
            raise PrincipalNotFound("Admin not found or inactive")
        return AdminPrincipal(
            id=admin.id,
            email=admin.email,
            name=admin.name,
            scope=payload.scope,
            tenant_id=payload.tenant_id,
            role_id=payload.role_id,
            role_name=payload.role_name,
            level=payload.level,
            permissions=payload.permissions,
            services=payload.services,
        )

    def validate_operator(self, payload: OperatorAccessPayload) -> OperatorPrincipal:
        with self._session() as session:
            operator = session.get(Operator, payload.sub)
        if operator is None or not operator.is_active:
            logger.info("auth.rejected reason=operator_unavailable operator_id=%s", payload.sub)
            raise PrincipalNotFound("Operator not found or inactive")
        try:
            service = self.catalog.get_by_slug(payload.service_slug)
        except ServiceNotFound as exc:
            raise PrincipalNotFound("Operator not found or inactive") from exc
        if service.id != operator.service_id:
            raise PrincipalNotFound("Operator not found or inactive")
        return OperatorPrincipal(
            id=operator.id,
            email=operator.email,
            name=operator.name,
            admin_id=operator.admin_id,
            service_id=operator.service_id,
            service_slug=service.slug,
            country_code=payload.country_code,
            permissions=payload.permissions,
        )
