from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from identity_core.domain.errors import ConflictError, ServiceNotFound
from identity_core.domain.models import (
    ConsentRequirementCreate,
    Service,
    ServiceConsentRequirement,
    ServiceCreate,
    ServiceRead,
    ServiceUpdate,
)
from identity_core.infra.cache import ServiceCache
from identity_core.infra.db import get_engine

logger = logging.getLogger(__name__)


class ServiceCatalog:
    """Service lookups by slug, read through a shared cache."""

    def __init__(self, cache: ServiceCache) -> None:
        self.cache = cache

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def get_by_slug(self, slug: str) -> ServiceRead:
        cached = self.cache.get(slug)
        if cached is not None:
            return ServiceRead.model_validate(cached)
        with self._session() as session:
            service = session.exec(select(Service).where(Service.slug == slug)).first()
        if service is None or not service.is_active:
            raise ServiceNotFound(f"Service not found: {slug}")
        read = ServiceRead.model_validate(service)
        self.cache.set(slug, read.model_dump())
        return read

    def create_service(self, payload: ServiceCreate) -> Service:
        service = Service(slug=payload.slug, name=payload.name)
        with self._session() as session:
            session.add(service)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f"Service slug already exists: {payload.slug}") from exc
            session.refresh(service)
        logger.info("service.created service_id=%s slug=%s", service.id, service.slug)
        return service

    def update_service(self, slug: str, payload: ServiceUpdate) -> Service:
        with self._session() as session:
            service = session.exec(select(Service).where(Service.slug == slug)).first()
            if service is None:
                raise ServiceNotFound(f"Service not found: {slug}")
            for key, value in payload.model_dump(exclude_unset=True).items():
                setattr(service, key, value)
            session.add(service)
            session.commit()
            session.refresh(service)
        self.cache.invalidate(slug)
        logger.info("service.updated service_id=%s slug=%s", service.id, slug)
        return service

    def add_consent_requirement(
        self,
        slug: str,
        payload: ConsentRequirementCreate,
    ) -> ServiceConsentRequirement:
        service = self.get_by_slug(slug)
        requirement = ServiceConsentRequirement(
            service_id=service.id,
            country_code=payload.country_code.upper(),
            consent_type=payload.consent_type,
            is_required=payload.is_required,
            document_type=payload.document_type,
            display_order=payload.display_order,
        )
        with self._session() as session:
            session.add(requirement)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(
                    f"Consent requirement already exists: {payload.consent_type}"
                ) from exc
            session.refresh(requirement)
        return requirement

    def list_consent_requirements(self, service_id: str, country_code: str) -> list[ServiceConsentRequirement]:
        with self._session() as session:
            statement = (
                select(ServiceConsentRequirement)
                .where(ServiceConsentRequirement.service_id == service_id)
                .where(ServiceConsentRequirement.country_code == country_code.upper())
                .order_by(col(ServiceConsentRequirement.display_order))
            )
            return list(session.exec(statement).all())
