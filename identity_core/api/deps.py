from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from identity_core.domain.errors import AuthenticationError
from identity_core.domain.permissions import missing_permissions
from identity_core.domain.principals import AdminPrincipal, UserPrincipal, granted_permissions
from identity_core.domain.state_machine import EntitlementStatus
from identity_core.infra.cache import ServiceCache
from identity_core.services.principal_resolver import AnyPrincipal, PrincipalResolver
from identity_core.services.service_catalog import ServiceCatalog

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

logger = logging.getLogger(__name__)

UNAUTHORIZED_DETAIL = "unauthorized"


def unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=UNAUTHORIZED_DETAIL,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_service_cache(request: Request) -> ServiceCache:
    return request.app.state.service_cache


def get_service_catalog(cache: Annotated[ServiceCache, Depends(get_service_cache)]) -> ServiceCatalog:
    return ServiceCatalog(cache)


def get_principal_resolver(
    catalog: Annotated[ServiceCatalog, Depends(get_service_catalog)],
) -> PrincipalResolver:
    return PrincipalResolver(catalog)


def get_current_principal(
    request: Request,
    resolver: Annotated[PrincipalResolver, Depends(get_principal_resolver)],
    token: str | None = Depends(oauth2_scheme),
) -> AnyPrincipal:
    if not token:
        raise unauthorized()
    try:
        principal = resolver.verify_and_resolve(token)
    except AuthenticationError as exc:
        logger.info("auth.denied path=%s reason=%s", request.url.path, type(exc).__name__)
        raise unauthorized() from exc
    request.state.principal = principal
    return principal


def require_admin_permissions(*permissions: str) -> Callable[[AnyPrincipal], AdminPrincipal]:
    """Admin-only permission guard.

    Operator grants are scoped to one service and never reach admin routes,
    whatever they contain.
    """
    required = [item for item in permissions if item]

    def _checker(
        principal: Annotated[AnyPrincipal, Depends(get_current_principal)],
    ) -> AdminPrincipal:
        if not isinstance(principal, AdminPrincipal):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin authentication required")
        missing = missing_permissions(granted_permissions(principal), required)
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(missing)}",
            )
        return principal

    return _checker


def _forbidden(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def require_service_access(slug: str | None = None) -> Callable[..., UserPrincipal]:
    """Require an ACTIVE entry for the service in the token's `services` map.

    Without a fixed `slug` the `{slug}` path parameter is used.
    """

    def _checker(
        request: Request,
        principal: Annotated[AnyPrincipal, Depends(get_current_principal)],
    ) -> UserPrincipal:
        if not isinstance(principal, UserPrincipal):
            raise _forbidden("User authentication required")
        target = slug or request.path_params.get("slug")
        if not target:
            raise _forbidden("Service slug required")
        claim = principal.services.get(target)
        if claim is None:
            raise _forbidden(f"Not joined to service: {target}")
        if claim.status != EntitlementStatus.ACTIVE:
            raise _forbidden(f"Service access suspended: {target}")
        return principal

    return _checker


def require_country_consent(slug: str | None = None) -> Callable[..., AnyPrincipal]:
    """Require the request's country in `services[slug].countries`.

    The country comes from the `x-country-code` header, else the
    `{country_code}` path parameter. Admin and operator principals are not
    subject to country consent.
    """

    def _checker(
        request: Request,
        principal: Annotated[AnyPrincipal, Depends(get_current_principal)],
    ) -> AnyPrincipal:
        if not isinstance(principal, UserPrincipal):
            return principal
        target = slug or request.path_params.get("slug")
        if not target:
            return principal
        country_code = request.headers.get("x-country-code") or request.path_params.get("country_code")
        if not country_code:
            raise _forbidden("Country code required")
        country_code = country_code.upper()
        claim = principal.services.get(target)
        if claim is None or country_code not in claim.countries:
            raise _forbidden(f"No consent for country: {country_code}")
        return principal

    return _checker


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",", 1)[0].strip()
    return request.client.host if request.client else None


def user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")
