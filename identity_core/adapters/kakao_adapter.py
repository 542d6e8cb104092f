from __future__ import annotations

import httpx

from identity_core.adapters.base import OAuthHandshake, OAuthProfile, fetch_profile_json
from identity_core.domain.errors import MissingIdentityAttribute
from identity_core.domain.models import OAuthProvider

KAKAO_PROFILE_URL = "https://kapi.kakao.com/v2/user/me"


class KakaoAdapter:
    provider = OAuthProvider.KAKAO

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self.client = client

    async def fetch_profile(self, handshake: OAuthHandshake) -> OAuthProfile:
        if not handshake.access_token:
            raise MissingIdentityAttribute(self.provider, "access_token")
        data = await fetch_profile_json(self.client, KAKAO_PROFILE_URL, handshake.access_token)
        account = data.get("kakao_account")
        if not isinstance(account, dict):
            account = {}
        profile = account.get("profile")
        if not isinstance(profile, dict):
            profile = {}
        if data.get("id") is None:
            raise ValueError("Kakao profile has no id")
        return OAuthProfile(
            provider=self.provider,
            # Kakao ids are numeric.
            external_id=str(data["id"]),
            email=account.get("email"),
            display_name=profile.get("nickname"),
            avatar_url=profile.get("profile_image_url"),
        )
