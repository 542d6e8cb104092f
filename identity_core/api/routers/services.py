from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from identity_core.api.deps import (
    client_ip,
    get_current_principal,
    get_service_catalog,
    require_country_consent,
    require_service_access,
    unauthorized,
    user_agent,
)
from identity_core.domain.errors import (
    AlreadyConsented,
    AlreadyJoined,
    AuthenticationError,
    EntitlementError,
    MissingRequiredConsent,
    NotFoundError,
    RequiredConsentWithdrawalDenied,
    ServiceNotJoined,
)
from identity_core.domain.models import (
    ConsentRequirementRead,
    EntitlementChangeResult,
    JoinServiceRequest,
    ServiceAccessRead,
    UpdateConsentRequest,
    UserConsentRead,
)
from identity_core.domain.principals import UserPrincipal
from identity_core.services.entitlement_service import EntitlementService
from identity_core.services.principal_resolver import AnyPrincipal
from identity_core.services.service_catalog import ServiceCatalog

router = APIRouter()


def get_entitlement_service(
    catalog: Annotated[ServiceCatalog, Depends(get_service_catalog)],
) -> EntitlementService:
    return EntitlementService(catalog)


def get_current_user(principal: Annotated[AnyPrincipal, Depends(get_current_principal)]) -> UserPrincipal:
    if not isinstance(principal, UserPrincipal):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User principal required")
    return principal


CurrentUser = Annotated[UserPrincipal, Depends(get_current_user)]
Service = Annotated[EntitlementService, Depends(get_entitlement_service)]


def _handle_entitlement_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, (AlreadyJoined, AlreadyConsented)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, MissingRequiredConsent):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(exc), "missing": exc.missing},
        ) from exc
    if isinstance(exc, (ServiceNotJoined, RequiredConsentWithdrawalDenied)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if isinstance(exc, AuthenticationError):
        raise unauthorized() from exc
    raise exc


@router.get("/{slug}/consent-requirements", response_model=list[ConsentRequirementRead])
def list_consent_requirements(
    slug: str,
    service: Service,
    country_code: Annotated[str, Query(min_length=2, max_length=2)] = "KR",
) -> list[ConsentRequirementRead]:
    try:
        rows = service.get_consent_requirements(slug, country_code)
        return [ConsentRequirementRead.model_validate(item) for item in rows]
    except NotFoundError as exc:
        _handle_entitlement_error(exc)
        raise


@router.post("/{slug}/join", response_model=EntitlementChangeResult, status_code=status.HTTP_201_CREATED)
def join_service(
    slug: str,
    payload: JoinServiceRequest,
    request: Request,
    user: CurrentUser,
    service: Service,
) -> EntitlementChangeResult:
    try:
        return service.join_service(
            user.id,
            slug,
            payload.country_code,
            payload.consents,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
        )
    except (EntitlementError, NotFoundError, AuthenticationError) as exc:
        _handle_entitlement_error(exc)
        raise


@router.post("/{slug}/countries", response_model=EntitlementChangeResult, status_code=status.HTTP_201_CREATED)
def add_country_consent(
    slug: str,
    payload: JoinServiceRequest,
    request: Request,
    user: CurrentUser,
    service: Service,
) -> EntitlementChangeResult:
    try:
        return service.add_country_consent(
            user.id,
            slug,
            payload.country_code,
            payload.consents,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
        )
    except (EntitlementError, NotFoundError, AuthenticationError) as exc:
        _handle_entitlement_error(exc)
        raise


@router.get("/{slug}/consents", response_model=list[UserConsentRead])
def list_my_consents(
    slug: str,
    user: CurrentUser,
    service: Service,
    country_code: Annotated[str | None, Query(min_length=2, max_length=2)] = None,
) -> list[UserConsentRead]:
    try:
        rows = service.get_my_consents(user.id, slug, country_code)
        return [UserConsentRead.model_validate(item) for item in rows]
    except NotFoundError as exc:
        _handle_entitlement_error(exc)
        raise


@router.patch("/{slug}/consents", response_model=UserConsentRead)
def update_consent(
    slug: str,
    payload: UpdateConsentRequest,
    request: Request,
    user: CurrentUser,
    service: Service,
) -> UserConsentRead:
    try:
        consent = service.update_consent(
            user.id,
            slug,
            payload.consent_type,
            payload.country_code,
            payload.agreed,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
        )
        return UserConsentRead.model_validate(consent)
    except (EntitlementError, NotFoundError) as exc:
        _handle_entitlement_error(exc)
        raise


@router.delete("/{slug}", response_model=EntitlementChangeResult)
def withdraw_service(
    slug: str,
    request: Request,
    user: CurrentUser,
    service: Service,
    country_code: Annotated[str | None, Query(min_length=2, max_length=2)] = None,
) -> EntitlementChangeResult:
    try:
        return service.withdraw_service(
            user.id,
            slug,
            country_code,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
        )
    except (EntitlementError, NotFoundError, AuthenticationError) as exc:
        _handle_entitlement_error(exc)
        raise


@router.get("/{slug}/access", response_model=ServiceAccessRead)
def check_service_access(
    slug: str,
    user: Annotated[UserPrincipal, Depends(require_service_access())],
) -> ServiceAccessRead:
    claim = user.services[slug]
    return ServiceAccessRead(slug=slug, status=claim.status, countries=claim.countries)


@router.get("/{slug}/countries/{country_code}/access", response_model=ServiceAccessRead)
def check_country_access(
    slug: str,
    country_code: str,
    request: Request,
    user: Annotated[UserPrincipal, Depends(require_service_access())],
    _consented: Annotated[AnyPrincipal, Depends(require_country_consent())],
) -> ServiceAccessRead:
    claim = user.services[slug]
    resolved = request.headers.get("x-country-code") or country_code
    return ServiceAccessRead(
        slug=slug,
        status=claim.status,
        countries=claim.countries,
        country_code=resolved.upper(),
    )
