from __future__ import annotations

import httpx

from identity_core.adapters.base import OAuthHandshake, OAuthProfile, fetch_profile_json
from identity_core.domain.errors import MissingIdentityAttribute
from identity_core.domain.models import OAuthProvider

NAVER_PROFILE_URL = "https://openapi.naver.com/v1/nid/me"


class NaverAdapter:
    provider = OAuthProvider.NAVER

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self.client = client

    async def fetch_profile(self, handshake: OAuthHandshake) -> OAuthProfile:
        if not handshake.access_token:
            raise MissingIdentityAttribute(self.provider, "access_token")
        data = await fetch_profile_json(self.client, NAVER_PROFILE_URL, handshake.access_token)
        profile = data.get("response")
        if not isinstance(profile, dict):
            profile = {}
        if not profile.get("id"):
            raise ValueError("Naver profile has no id")
        return OAuthProfile(
            provider=self.provider,
            external_id=str(profile["id"]),
            email=profile.get("email"),
            display_name=profile.get("nickname") or profile.get("name"),
            avatar_url=profile.get("profile_image"),
        )
