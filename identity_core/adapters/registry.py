from __future__ import annotations

import httpx

from identity_core.adapters.apple_adapter import AppleAdapter
from identity_core.adapters.base import OAuthAdapter
from identity_core.adapters.google_adapter import GoogleAdapter
from identity_core.adapters.kakao_adapter import KakaoAdapter
from identity_core.adapters.naver_adapter import NaverAdapter
from identity_core.domain.errors import ValidationError
from identity_core.domain.models import OAuthProvider
from identity_core.services.oauth_config_service import DecryptedCredentials


def build_adapter(
    provider: OAuthProvider,
    client: httpx.AsyncClient | None = None,
    credentials: DecryptedCredentials | None = None,
) -> OAuthAdapter:
    client_id = credentials.client_id if credentials is not None else None
    if provider == OAuthProvider.GOOGLE:
        return GoogleAdapter(client_id)
    if provider == OAuthProvider.APPLE:
        return AppleAdapter(client_id)
    if provider == OAuthProvider.KAKAO:
        return KakaoAdapter(client)
    if provider == OAuthProvider.NAVER:
        return NaverAdapter(client)
    raise ValidationError(f"No federation adapter for provider: {provider}")
