from __future__ import annotations

from typing import Annotated

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from identity_core.adapters.base import OAuthHandshake
from identity_core.adapters.registry import build_adapter
from identity_core.api.deps import client_ip, unauthorized, user_agent
from identity_core.domain.errors import (
    AuthenticationError,
    ConflictError,
    MissingIdentityAttribute,
    ProviderDisabled,
    ValidationError,
)
from identity_core.domain.models import OAuthCompleteRequest, OAuthLoginResult, OAuthProvider
from identity_core.services.oauth_broker import OAuthBroker
from identity_core.services.oauth_config_service import OAuthConfigService

router = APIRouter()


def get_oauth_broker() -> OAuthBroker:
    return OAuthBroker()


def get_oauth_config_service() -> OAuthConfigService:
    return OAuthConfigService()


def get_profile_http_client(request: Request) -> httpx.AsyncClient | None:
    return getattr(request.app.state, "oauth_http_client", None)


Broker = Annotated[OAuthBroker, Depends(get_oauth_broker)]
Config = Annotated[OAuthConfigService, Depends(get_oauth_config_service)]
HttpClient = Annotated[httpx.AsyncClient | None, Depends(get_profile_http_client)]


def _parse_provider(raw: str) -> OAuthProvider:
    try:
        provider = OAuthProvider(raw.upper())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown provider") from exc
    if provider == OAuthProvider.LOCAL:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown provider")
    return provider


def _handle_oauth_error(exc: Exception) -> None:
    if isinstance(exc, ProviderDisabled):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, (MissingIdentityAttribute, ValidationError)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, AuthenticationError):
        raise unauthorized() from exc
    if isinstance(exc, httpx.HTTPError):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="OAuth provider request failed",
        ) from exc
    if isinstance(exc, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    raise exc


@router.get("/providers", response_model=list[OAuthProvider])
def list_enabled_providers(config: Config) -> list[OAuthProvider]:
    return config.list_enabled()


@router.post("/{provider}/complete", response_model=OAuthLoginResult)
async def complete_oauth_login(
    provider: str,
    payload: OAuthCompleteRequest,
    request: Request,
    broker: Broker,
    config: Config,
    http_client: HttpClient,
) -> OAuthLoginResult:
    oauth_provider = _parse_provider(provider)
    try:
        await run_in_threadpool(config.ensure_enabled, oauth_provider)
        credentials = await run_in_threadpool(config.get_decrypted_credentials, oauth_provider)
        adapter = build_adapter(oauth_provider, http_client, credentials)
        profile = await adapter.fetch_profile(
            OAuthHandshake(access_token=payload.access_token, profile=payload.profile, user=payload.user)
        )
        return await run_in_threadpool(
            broker.login_with_profile,
            profile,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
        )
    except (
        ProviderDisabled,
        MissingIdentityAttribute,
        ValidationError,
        ConflictError,
        AuthenticationError,
        httpx.HTTPError,
        ValueError,
    ) as exc:
        _handle_oauth_error(exc)
        raise
