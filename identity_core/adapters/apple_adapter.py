from __future__ import annotations

from identity_core.adapters.base import OAuthHandshake, OAuthProfile, email_local_part, ensure_audience
from identity_core.domain.models import OAuthProvider


def _full_name(user: dict[str, object] | None) -> str | None:
    if not user:
        return None
    name = user.get("name")
    if not isinstance(name, dict):
        return None
    parts = [str(name.get(key) or "").strip() for key in ("firstName", "lastName")]
    full = " ".join(part for part in parts if part)
    return full or None


class AppleAdapter:
    """Apple sends the user's name only on first consent and never an avatar."""

    provider = OAuthProvider.APPLE

    def __init__(self, client_id: str | None = None) -> None:
        self.client_id = client_id

    async def fetch_profile(self, handshake: OAuthHandshake) -> OAuthProfile:
        claims = handshake.profile
        ensure_audience(self.provider, claims, self.client_id)
        external_id = claims.get("sub")
        if not external_id:
            raise ValueError("Apple identity token has no subject")
        email = claims.get("email")
        if not email and handshake.user:
            email = handshake.user.get("email")
        display_name = _full_name(handshake.user)
        if display_name is None and email:
            display_name = email_local_part(str(email))
        return OAuthProfile(
            provider=self.provider,
            external_id=str(external_id),
            email=email,
            display_name=display_name,
        )
