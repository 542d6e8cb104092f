from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from identity_core.api.deps import (
    client_ip,
    get_current_principal,
    get_service_catalog,
    unauthorized,
    user_agent,
)
from identity_core.domain.errors import AuthenticationError, ConflictError, ServiceNotFound
from identity_core.domain.models import (
    AccountRead,
    LoginRequest,
    OperatorLoginRequest,
    RefreshRequest,
    RegisterRequest,
    TokenPair,
)
from identity_core.services.login_service import LoginService
from identity_core.services.principal_resolver import AnyPrincipal
from identity_core.services.service_catalog import ServiceCatalog

router = APIRouter()


def get_login_service(catalog: Annotated[ServiceCatalog, Depends(get_service_catalog)]) -> LoginService:
    return LoginService(catalog)


Principal = Annotated[AnyPrincipal, Depends(get_current_principal)]
Service = Annotated[LoginService, Depends(get_login_service)]


def _handle_auth_error(exc: Exception) -> None:
    # Unknown service slugs look like bad credentials to the caller.
    if isinstance(exc, (AuthenticationError, ServiceNotFound)):
        raise unauthorized() from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise exc


@router.post("/register", response_model=AccountRead, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, service: Service) -> AccountRead:
    try:
        account = service.register_user(payload.email, payload.password, payload.name)
        return AccountRead.model_validate(account)
    except ConflictError as exc:
        _handle_auth_error(exc)
        raise


@router.post("/login", response_model=TokenPair)
def login(payload: LoginRequest, request: Request, service: Service) -> TokenPair:
    try:
        return service.login_user(
            payload.email,
            payload.password,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
        )
    except AuthenticationError as exc:
        _handle_auth_error(exc)
        raise


@router.post("/admin/login", response_model=TokenPair)
def admin_login(payload: LoginRequest, request: Request, service: Service) -> TokenPair:
    try:
        return service.login_admin(
            payload.email,
            payload.password,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
        )
    except AuthenticationError as exc:
        _handle_auth_error(exc)
        raise


@router.post("/operator/login", response_model=TokenPair)
def operator_login(payload: OperatorLoginRequest, request: Request, service: Service) -> TokenPair:
    try:
        return service.login_operator(
            payload.email,
            payload.password,
            payload.service_slug,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
        )
    except (AuthenticationError, ServiceNotFound) as exc:
        _handle_auth_error(exc)
        raise


@router.post("/refresh", response_model=TokenPair)
def refresh(payload: RefreshRequest, request: Request, service: Service) -> TokenPair:
    try:
        return service.refresh(
            payload.refresh_token,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
        )
    except AuthenticationError as exc:
        _handle_auth_error(exc)
        raise


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(payload: RefreshRequest, principal: Principal, service: Service) -> Response:
    service.logout(principal.id, payload.refresh_token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/me")
def me(principal: Principal) -> dict[str, Any]:
    return principal.to_claims()
