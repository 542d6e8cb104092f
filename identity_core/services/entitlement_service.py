from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from identity_core.domain.errors import (
    AlreadyConsented,
    AlreadyJoined,
    ConsentNotFound,
    MissingRequiredConsent,
    PrincipalNotFound,
    RequiredConsentWithdrawalDenied,
    ServiceNotJoined,
)
from identity_core.domain.models import (
    Account,
    ConsentInput,
    ConsentType,
    EntitlementChangeResult,
    EntitlementRead,
    ServiceConsentRequirement,
    ServiceEntitlement,
    ServiceRead,
    SubjectType,
    UserConsent,
    now_utc,
)
from identity_core.domain.state_machine import EntitlementStatus, can_transition
from identity_core.infra.db import get_engine
from identity_core.services.service_catalog import ServiceCatalog
from identity_core.services.token_service import TokenService

logger = logging.getLogger(__name__)


def _dedupe_consents(consents: Iterable[ConsentInput]) -> list[ConsentInput]:
    # Last entry for a consent type wins.
    by_type: dict[ConsentType, ConsentInput] = {}
    for item in consents:
        by_type[item.consent_type] = item
    return list(by_type.values())


class EntitlementService:
    """Join, consent and withdrawal flows for service entitlements.

    Every mutation commits its rows in a single transaction and then mints a
    fresh token pair whose service snapshot is read after the commit.
    """

    def __init__(self, catalog: ServiceCatalog, tokens: TokenService | None = None) -> None:
        self.catalog = catalog
        self.tokens = tokens or TokenService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _find_entitlement(
        self,
        session: Session,
        account_id: str,
        service_id: str,
        country_code: str,
    ) -> ServiceEntitlement | None:
        return session.exec(
            select(ServiceEntitlement)
            .where(ServiceEntitlement.account_id == account_id)
            .where(ServiceEntitlement.service_id == service_id)
            .where(ServiceEntitlement.country_code == country_code)
        ).first()

    def _ensure_account(self, session: Session, account_id: str) -> None:
        account = session.get(Account, account_id)
        if account is None or not account.is_active:
            raise PrincipalNotFound("User not found")

    def _validate_required_consents(
        self,
        service_id: str,
        country_code: str,
        consents: list[ConsentInput],
    ) -> None:
        requirements = self.catalog.list_consent_requirements(service_id, country_code)
        agreed = {item.consent_type for item in consents if item.agreed}
        missing = [
            str(requirement.consent_type)
            for requirement in requirements
            if requirement.is_required and requirement.consent_type not in agreed
        ]
        if missing:
            raise MissingRequiredConsent(missing)

    def _create_entitlement(
        self,
        session: Session,
        account_id: str,
        service: ServiceRead,
        country_code: str,
        consents: list[ConsentInput],
        ip_address: str | None,
        user_agent: str | None,
    ) -> ServiceEntitlement:
        now = now_utc()
        entitlement = ServiceEntitlement(
            account_id=account_id,
            service_id=service.id,
            country_code=country_code,
            status=EntitlementStatus.ACTIVE,
            joined_at=now,
        )
        session.add(entitlement)
        session.flush()
        for item in consents:
            session.add(
                UserConsent(
                    entitlement_id=entitlement.id,
                    account_id=account_id,
                    service_id=service.id,
                    country_code=country_code,
                    consent_type=item.consent_type,
                    document_id=item.document_id,
                    agreed=item.agreed,
                    agreed_at=now if item.agreed else None,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
        return entitlement

    def _read(self, entitlement: ServiceEntitlement, service: ServiceRead) -> EntitlementRead:
        return EntitlementRead(
            id=entitlement.id,
            service_id=service.id,
            service_slug=service.slug,
            country_code=entitlement.country_code,
            status=entitlement.status,
            joined_at=entitlement.joined_at,
            withdrawn_at=entitlement.withdrawn_at,
        )

    def join_service(
        self,
        account_id: str,
        slug: str,
        country_code: str,
        consents: Iterable[ConsentInput],
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> EntitlementChangeResult:
        country_code = country_code.upper()
        service = self.catalog.get_by_slug(slug)
        consent_list = _dedupe_consents(consents)
        with self._session() as session:
            self._ensure_account(session, account_id)
            if self._find_entitlement(session, account_id, service.id, country_code) is not None:
                raise AlreadyJoined(f"Already joined {slug} in {country_code}")
        self._validate_required_consents(service.id, country_code, consent_list)

        with self._session() as session:
            try:
                entitlement = self._create_entitlement(
                    session, account_id, service, country_code, consent_list, ip_address, user_agent
                )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise AlreadyJoined(f"Already joined {slug} in {country_code}") from exc
        logger.info(
            "entitlement.joined account_id=%s service=%s country=%s consents=%d",
            account_id,
            slug,
            country_code,
            len(consent_list),
        )

        tokens = self.tokens.issue_pair(
            SubjectType.USER, account_id, ip_address=ip_address, user_agent=user_agent
        )
        return EntitlementChangeResult(entitlement=self._read(entitlement, service), tokens=tokens)

    def add_country_consent(
        self,
        account_id: str,
        slug: str,
        country_code: str,
        consents: Iterable[ConsentInput],
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> EntitlementChangeResult:
        country_code = country_code.upper()
        service = self.catalog.get_by_slug(slug)
        consent_list = _dedupe_consents(consents)
        with self._session() as session:
            active = session.exec(
                select(ServiceEntitlement)
                .where(ServiceEntitlement.account_id == account_id)
                .where(ServiceEntitlement.service_id == service.id)
                .where(ServiceEntitlement.status == EntitlementStatus.ACTIVE)
            ).first()
            if active is None:
                raise ServiceNotJoined(f"Not joined to {slug}")
            if self._find_entitlement(session, account_id, service.id, country_code) is not None:
                raise AlreadyConsented(f"Already consented for {slug} in {country_code}")
        self._validate_required_consents(service.id, country_code, consent_list)

        with self._session() as session:
            try:
                entitlement = self._create_entitlement(
                    session, account_id, service, country_code, consent_list, ip_address, user_agent
                )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise AlreadyConsented(f"Already consented for {slug} in {country_code}") from exc
        logger.info(
            "entitlement.country_added account_id=%s service=%s country=%s",
            account_id,
            slug,
            country_code,
        )

        tokens = self.tokens.issue_pair(
            SubjectType.USER, account_id, ip_address=ip_address, user_agent=user_agent
        )
        return EntitlementChangeResult(entitlement=self._read(entitlement, service), tokens=tokens)

    def update_consent(
        self,
        account_id: str,
        slug: str,
        consent_type: ConsentType,
        country_code: str,
        agreed: bool,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> UserConsent:
        country_code = country_code.upper()
        service = self.catalog.get_by_slug(slug)
        with self._session() as session:
            consent = session.exec(
                select(UserConsent)
                .where(UserConsent.account_id == account_id)
                .where(UserConsent.service_id == service.id)
                .where(UserConsent.country_code == country_code)
                .where(UserConsent.consent_type == consent_type)
            ).first()
            if consent is None:
                raise ConsentNotFound(f"Consent not found: {consent_type}")

            if not agreed:
                entitlement = session.get(ServiceEntitlement, consent.entitlement_id)
                requirement = session.exec(
                    select(ServiceConsentRequirement)
                    .where(ServiceConsentRequirement.service_id == service.id)
                    .where(ServiceConsentRequirement.country_code == country_code)
                    .where(ServiceConsentRequirement.consent_type == consent_type)
                ).first()
                if (
                    entitlement is not None
                    and entitlement.status == EntitlementStatus.ACTIVE
                    and requirement is not None
                    and requirement.is_required
                ):
                    raise RequiredConsentWithdrawalDenied(
                        f"Cannot withdraw required consent: {consent_type}"
                    )

            now = now_utc()
            consent.agreed = agreed
            if agreed:
                consent.agreed_at = now
                consent.withdrawn_at = None
            else:
                consent.withdrawn_at = now
            consent.ip_address = ip_address
            consent.user_agent = user_agent
            session.add(consent)
            session.commit()
            session.refresh(consent)
        logger.info(
            "consent.updated account_id=%s service=%s country=%s type=%s agreed=%s",
            account_id,
            slug,
            country_code,
            consent_type,
            agreed,
        )
        return consent

    def withdraw_service(
        self,
        account_id: str,
        slug: str,
        country_code: str | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> EntitlementChangeResult:
        service = self.catalog.get_by_slug(slug)
        with self._session() as session:
            statement = (
                select(ServiceEntitlement)
                .where(ServiceEntitlement.account_id == account_id)
                .where(ServiceEntitlement.service_id == service.id)
                .where(ServiceEntitlement.status == EntitlementStatus.ACTIVE)
            )
            if country_code:
                statement = statement.where(ServiceEntitlement.country_code == country_code.upper())
            entitlements = list(session.exec(statement).all())
            if not entitlements:
                raise ServiceNotJoined(f"Not joined to {slug}")

            now = now_utc()
            for entitlement in entitlements:
                if not can_transition(entitlement.status, EntitlementStatus.WITHDRAWN):
                    raise ServiceNotJoined(f"Not joined to {slug}")
                entitlement.status = EntitlementStatus.WITHDRAWN
                entitlement.withdrawn_at = now
                session.add(entitlement)

            consents = session.exec(
                select(UserConsent).where(
                    col(UserConsent.entitlement_id).in_([item.id for item in entitlements])
                )
            ).all()
            for consent in consents:
                consent.agreed = False
                consent.withdrawn_at = now
                session.add(consent)
            session.commit()
        logger.info(
            "entitlement.withdrawn account_id=%s service=%s country=%s count=%d",
            account_id,
            slug,
            country_code or "*",
            len(entitlements),
        )

        tokens = self.tokens.issue_pair(
            SubjectType.USER, account_id, ip_address=ip_address, user_agent=user_agent
        )
        return EntitlementChangeResult(withdrawn_count=len(entitlements), tokens=tokens)

    def get_consent_requirements(self, slug: str, country_code: str) -> list[ServiceConsentRequirement]:
        service = self.catalog.get_by_slug(slug)
        return self.catalog.list_consent_requirements(service.id, country_code)

    def get_my_consents(
        self,
        account_id: str,
        slug: str,
        country_code: str | None = None,
    ) -> list[UserConsent]:
        service = self.catalog.get_by_slug(slug)
        with self._session() as session:
            statement = (
                select(UserConsent)
                .where(UserConsent.account_id == account_id)
                .where(UserConsent.service_id == service.id)
            )
            if country_code:
                statement = statement.where(UserConsent.country_code == country_code.upper())
            return list(session.exec(statement.order_by(col(UserConsent.consent_type))).all())
