from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from identity_core.api.deps import get_service_catalog, require_admin_permissions
from identity_core.api.routers.oauth import get_oauth_config_service
from identity_core.domain.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from identity_core.domain.models import (
    ConsentRequirementCreate,
    ConsentRequirementRead,
    OAuthCredentialsUpdate,
    OAuthProvider,
    OAuthProviderRead,
    OAuthProviderToggle,
    ServiceCreate,
    ServiceRead,
    ServiceUpdate,
)
from identity_core.domain.permissions import (
    PERM_ADMIN_UPDATE,
    PERM_OPERATOR_UPDATE,
    PERM_SERVICE_UPDATE,
    PERM_SETTINGS_READ,
    PERM_SETTINGS_UPDATE,
)
from identity_core.domain.principals import AdminPrincipal
from identity_core.services.oauth_config_service import OAuthConfigService
from identity_core.services.principal_admin_service import PrincipalAdminService
from identity_core.services.service_catalog import ServiceCatalog

router = APIRouter()


def get_principal_admin_service() -> PrincipalAdminService:
    return PrincipalAdminService()


Catalog = Annotated[ServiceCatalog, Depends(get_service_catalog)]
Config = Annotated[OAuthConfigService, Depends(get_oauth_config_service)]
PrincipalAdmin = Annotated[PrincipalAdminService, Depends(get_principal_admin_service)]


def _handle_admin_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ForbiddenError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    raise exc


@router.post("/admins/{admin_id}/deactivate")
def deactivate_admin(
    admin_id: str,
    principal: Annotated[AdminPrincipal, Depends(require_admin_permissions(PERM_ADMIN_UPDATE))],
    service: PrincipalAdmin,
) -> dict[str, int]:
    try:
        return {"revoked_sessions": service.deactivate_admin(principal.id, admin_id)}
    except (NotFoundError, ForbiddenError) as exc:
        _handle_admin_error(exc)
        raise


@router.post("/operators/{operator_id}/deactivate")
def deactivate_operator(
    operator_id: str,
    principal: Annotated[AdminPrincipal, Depends(require_admin_permissions(PERM_OPERATOR_UPDATE))],
    service: PrincipalAdmin,
) -> dict[str, int]:
    try:
        return {"revoked_sessions": service.deactivate_operator(principal.id, operator_id)}
    except NotFoundError as exc:
        _handle_admin_error(exc)
        raise


@router.get(
    "/oauth-providers",
    response_model=list[OAuthProviderRead],
    dependencies=[Depends(require_admin_permissions(PERM_SETTINGS_READ))],
)
def list_oauth_providers(config: Config) -> list[OAuthProviderRead]:
    return config.list_providers()


@router.patch("/oauth-providers/{provider}/toggle", response_model=OAuthProviderRead)
def toggle_oauth_provider(
    provider: OAuthProvider,
    payload: OAuthProviderToggle,
    principal: Annotated[AdminPrincipal, Depends(require_admin_permissions(PERM_SETTINGS_UPDATE))],
    config: Config,
) -> OAuthProviderRead:
    try:
        return config.toggle(provider, payload.enabled, actor_id=principal.id)
    except ValidationError as exc:
        _handle_admin_error(exc)
        raise


@router.put("/oauth-providers/{provider}/credentials", response_model=OAuthProviderRead)
def update_oauth_credentials(
    provider: OAuthProvider,
    payload: OAuthCredentialsUpdate,
    principal: Annotated[AdminPrincipal, Depends(require_admin_permissions(PERM_SETTINGS_UPDATE))],
    config: Config,
) -> OAuthProviderRead:
    try:
        return config.update_credentials(provider, payload, actor_id=principal.id)
    except ValidationError as exc:
        _handle_admin_error(exc)
        raise


@router.post(
    "/services",
    response_model=ServiceRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_permissions(PERM_SERVICE_UPDATE))],
)
def create_service(payload: ServiceCreate, catalog: Catalog) -> ServiceRead:
    try:
        return ServiceRead.model_validate(catalog.create_service(payload))
    except ConflictError as exc:
        _handle_admin_error(exc)
        raise


@router.patch(
    "/services/{slug}",
    response_model=ServiceRead,
    dependencies=[Depends(require_admin_permissions(PERM_SERVICE_UPDATE))],
)
def update_service(slug: str, payload: ServiceUpdate, catalog: Catalog) -> ServiceRead:
    try:
        return ServiceRead.model_validate(catalog.update_service(slug, payload))
    except NotFoundError as exc:
        _handle_admin_error(exc)
        raise


@router.post(
    "/services/{slug}/consent-requirements",
    response_model=ConsentRequirementRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_permissions(PERM_SERVICE_UPDATE))],
)
def add_consent_requirement(
    slug: str,
    payload: ConsentRequirementCreate,
    catalog: Catalog,
) -> ConsentRequirementRead:
    try:
        return ConsentRequirementRead.model_validate(catalog.add_consent_requirement(slug, payload))
    except (NotFoundError, ConflictError) as exc:
        _handle_admin_error(exc)
        raise
