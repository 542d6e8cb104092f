from __future__ import annotations

from collections import defaultdict

from sqlmodel import Session, col, select

from identity_core.domain.errors import PrincipalNotFound
from identity_core.domain.models import (
    Account,
    Admin,
    AdminServiceAssignment,
    Operator,
    Role,
    Service,
    ServiceEntitlement,
    SubjectType,
    TokenPair,
)
from identity_core.domain.principals import (
    REFRESH_TOKEN_TYPES,
    AdminAccessPayload,
    AdminServiceClaim,
    OperatorAccessPayload,
    UserAccessPayload,
    UserServiceClaim,
)
from identity_core.domain.state_machine import EntitlementStatus
from identity_core.infra.auth import issue_access_token, issue_refresh_token
from identity_core.infra.db import get_engine
from identity_core.services.session_service import SessionService


def services_snapshot(session: Session, account_id: str) -> dict[str, UserServiceClaim]:
    statement = (
        select(Service.slug, ServiceEntitlement.country_code)
        .select_from(ServiceEntitlement)
        .join(Service, col(Service.id) == col(ServiceEntitlement.service_id))
        .where(ServiceEntitlement.account_id == account_id)
        .where(ServiceEntitlement.status == EntitlementStatus.ACTIVE)
        .where(col(Service.is_active))
    )
    countries: dict[str, list[str]] = defaultdict(list)
    for slug, country_code in session.exec(statement).all():
        countries[slug].append(country_code)
    return {
        slug: UserServiceClaim(status=EntitlementStatus.ACTIVE, countries=sorted(items))
        for slug, items in countries.items()
    }


def admin_services_snapshot(session: Session, admin_id: str) -> dict[str, AdminServiceClaim]:
    statement = (
        select(AdminServiceAssignment, Service, Role)
        .join(Service, col(Service.id) == col(AdminServiceAssignment.service_id))
        .join(Role, col(Role.id) == col(AdminServiceAssignment.role_id))
        .where(AdminServiceAssignment.admin_id == admin_id)
    )
    snapshot: dict[str, AdminServiceClaim] = {}
    for assignment, service, role in session.exec(statement).all():
        claim = snapshot.get(service.slug)
        if claim is None:
            claim = AdminServiceClaim(
                role_id=role.id,
                role_name=role.name,
                permissions=list(role.permissions),
            )
            snapshot[service.slug] = claim
        if assignment.country_code and assignment.country_code not in claim.countries:
            claim.countries.append(assignment.country_code)
    return snapshot


class TokenService:
    """Builds the access payload for each principal kind and mints token pairs."""

    def __init__(self, sessions: SessionService | None = None) -> None:
        self.sessions = sessions or SessionService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def user_payload(self, session: Session, account_id: str) -> UserAccessPayload:
        account = session.get(Account, account_id)
        if account is None or not account.is_active:
            raise PrincipalNotFound("Account not found")
        return UserAccessPayload(
            sub=account.id,
            email=account.email,
            account_mode=account.account_mode,
            country_code=account.country_code,
            services=services_snapshot(session, account.id),
        )

    def admin_payload(self, session: Session, admin_id: str) -> AdminAccessPayload:
        admin = session.get(Admin, admin_id)
        if admin is None or not admin.is_active:
            raise PrincipalNotFound("Admin not found or inactive")
        role = session.get(Role, admin.role_id)
        if role is None:
            raise PrincipalNotFound("Admin not found or inactive")
        return AdminAccessPayload(
            sub=admin.id,
            email=admin.email,
            name=admin.name,
            account_mode=admin.account_mode,
            scope=admin.scope,
            tenant_id=admin.tenant_id,
            tenant_slug=admin.tenant_slug,
            tenant_type=admin.tenant_type,
            role_id=role.id,
            role_name=role.name,
            level=role.level,
            permissions=list(role.permissions),
            services=admin_services_snapshot(session, admin.id),
        )

    def operator_payload(self, session: Session, operator_id: str) -> OperatorAccessPayload:
        operator = session.get(Operator, operator_id)
        if operator is None or not operator.is_active:
            raise PrincipalNotFound("Operator not found or inactive")
        service = session.get(Service, operator.service_id)
        if service is None or not service.is_active:
            raise PrincipalNotFound("Operator not found or inactive")
        return OperatorAccessPayload(
            sub=operator.id,
            email=operator.email,
            name=operator.name,
            admin_id=operator.admin_id,
            service_id=service.id,
            service_slug=service.slug,
            country_code=operator.country_code,
            permissions=list(operator.permissions),
        )

    def mint_pair(self, subject_type: SubjectType, subject_id: str) -> TokenPair:
        """Mint a fresh pair from current backing state without persisting the refresh token."""
        with self._session() as session:
            if subject_type == SubjectType.USER:
                payload = self.user_payload(session, subject_id)
            elif subject_type == SubjectType.ADMIN:
                payload = self.admin_payload(session, subject_id)
            else:
                payload = self.operator_payload(session, subject_id)
        access_token = issue_access_token(subject_id, payload.to_claims())
        refresh_token = issue_refresh_token(
            subject_id,
            {"type": REFRESH_TOKEN_TYPES[subject_type].value},
        )
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    def issue_pair(
        self,
        subject_type: SubjectType,
        subject_id: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        pair = self.mint_pair(subject_type, subject_id)
        self.sessions.save_refresh_token(
            subject_id,
            subject_type,
            pair.refresh_token,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return pair
