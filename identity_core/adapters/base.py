from __future__ import annotations

from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from identity_core.domain.errors import InvalidToken
from identity_core.domain.models import OAuthProvider

PROFILE_FETCH_TIMEOUT = httpx.Timeout(10.0)


class OAuthHandshake(BaseModel):
    """What the redirect handler hands over after the provider callback."""

    access_token: str | None = None
    profile: dict[str, Any] = Field(default_factory=dict)
    user: dict[str, Any] | None = None


class OAuthProfile(BaseModel):
    provider: OAuthProvider
    external_id: str
    email: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None


class OAuthAdapter(Protocol):
    provider: OAuthProvider

    async def fetch_profile(self, handshake: OAuthHandshake) -> OAuthProfile: ...


async def fetch_profile_json(
    client: httpx.AsyncClient | None,
    url: str,
    access_token: str,
) -> dict[str, Any]:
    headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
    if client is not None:
        response = await client.get(url, headers=headers)
    else:
        async with httpx.AsyncClient(timeout=PROFILE_FETCH_TIMEOUT, follow_redirects=False) as owned:
            response = await owned.get(url, headers=headers)
    response.raise_for_status()
    payload = response.json()
    if not isinstance(payload, dict):
        raise ValueError(f"Unexpected profile payload from {url}")
    return payload


def email_local_part(email: str) -> str:
    return email.split("@", 1)[0]


def ensure_audience(provider: OAuthProvider, claims: dict[str, Any], client_id: str | None) -> None:
    """Reject id-token claims minted for another client.

    Skipped while no client id is configured for the provider. Claims without
    an `aud` (plain userinfo profiles) pass.
    """
    if not client_id or "aud" not in claims:
        return
    audience = claims["aud"]
    allowed = audience if isinstance(audience, list) else [audience]
    if client_id not in allowed:
        raise InvalidToken(f"{provider} token audience does not match the configured client")
