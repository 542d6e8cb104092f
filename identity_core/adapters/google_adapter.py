from __future__ import annotations

from identity_core.adapters.base import OAuthHandshake, OAuthProfile, ensure_audience
from identity_core.domain.models import OAuthProvider


class GoogleAdapter:
    """Google hands over the OpenID profile with the handshake; no extra fetch."""

    provider = OAuthProvider.GOOGLE

    def __init__(self, client_id: str | None = None) -> None:
        self.client_id = client_id

    async def fetch_profile(self, handshake: OAuthHandshake) -> OAuthProfile:
        profile = handshake.profile
        ensure_audience(self.provider, profile, self.client_id)
        external_id = profile.get("sub") or profile.get("id")
        if not external_id:
            raise ValueError("Google profile has no subject id")
        return OAuthProfile(
            provider=self.provider,
            external_id=str(external_id),
            email=profile.get("email"),
            display_name=profile.get("name") or profile.get("displayName"),
            avatar_url=profile.get("picture"),
        )
