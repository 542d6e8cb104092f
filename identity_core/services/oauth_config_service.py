from __future__ import annotations

import logging
import os
from urllib.parse import urlparse

from pydantic import BaseModel
from sqlmodel import Session, select

from identity_core.domain.errors import ProviderDisabled, ValidationError
from identity_core.domain.models import (
    OAuthCredentialsUpdate,
    OAuthProvider,
    OAuthProviderConfig,
    OAuthProviderRead,
    now_utc,
)
from identity_core.infra.crypto import get_cipher, mask_secret
from identity_core.infra.db import get_engine

OAUTH_ALLOWED_CALLBACK_DOMAINS = [
    item.strip().lower()
    for item in os.getenv("OAUTH_ALLOWED_CALLBACK_DOMAINS", "localhost").split(",")
    if item.strip()
]

DISPLAY_NAMES: dict[OAuthProvider, str] = {
    OAuthProvider.LOCAL: "Local",
    OAuthProvider.GOOGLE: "Google",
    OAuthProvider.KAKAO: "Kakao",
    OAuthProvider.NAVER: "Naver",
    OAuthProvider.APPLE: "Apple",
}

logger = logging.getLogger(__name__)


class DecryptedCredentials(BaseModel):
    client_id: str | None = None
    client_secret: str | None = None
    callback_url: str | None = None


def env_credentials(provider: OAuthProvider) -> DecryptedCredentials:
    prefix = provider.value
    return DecryptedCredentials(
        client_id=os.getenv(f"{prefix}_CLIENT_ID") or None,
        client_secret=os.getenv(f"{prefix}_CLIENT_SECRET") or None,
        callback_url=os.getenv(f"{prefix}_CALLBACK_URL") or None,
    )


def validate_callback_url(url: str, allowed_domains: list[str] | None = None) -> None:
    domains = allowed_domains if allowed_domains is not None else OAUTH_ALLOWED_CALLBACK_DOMAINS
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise ValidationError(f"Invalid callback URL: {url}")
    host = parsed.hostname.lower()
    if host in {"localhost", "127.0.0.1"}:
        return
    for domain in domains:
        if host == domain or host.endswith(f".{domain}"):
            return
    raise ValidationError(f"Callback URL domain is not allowed: {host}")


class OAuthConfigService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_or_create(self, session: Session, provider: OAuthProvider) -> OAuthProviderConfig:
        config = session.get(OAuthProviderConfig, provider)
        if config is None:
            config = OAuthProviderConfig(provider=provider, display_name=DISPLAY_NAMES[provider])
        return config

    def is_enabled(self, provider: OAuthProvider) -> bool:
        if provider == OAuthProvider.LOCAL:
            return True
        with self._session() as session:
            config = session.get(OAuthProviderConfig, provider)
        return True if config is None else config.enabled

    def ensure_enabled(self, provider: OAuthProvider) -> None:
        if not self.is_enabled(provider):
            raise ProviderDisabled(f"{DISPLAY_NAMES[provider]} login is disabled")

    def toggle(self, provider: OAuthProvider, enabled: bool, actor_id: str | None = None) -> OAuthProviderRead:
        if provider == OAuthProvider.LOCAL and not enabled:
            raise ValidationError("LOCAL login cannot be disabled")
        with self._session() as session:
            config = self._get_or_create(session, provider)
            config.enabled = enabled
            config.updated_by = actor_id
            config.updated_at = now_utc()
            session.add(config)
            session.commit()
            session.refresh(config)
        logger.info("oauth.provider_toggled provider=%s enabled=%s actor_id=%s", provider, enabled, actor_id)
        return self._read(config)

    def update_credentials(
        self,
        provider: OAuthProvider,
        payload: OAuthCredentialsUpdate,
        actor_id: str | None = None,
    ) -> OAuthProviderRead:
        if provider == OAuthProvider.LOCAL:
            raise ValidationError("LOCAL login has no credentials")
        if payload.callback_url:
            validate_callback_url(payload.callback_url)
        cipher = get_cipher()
        with self._session() as session:
            config = self._get_or_create(session, provider)
            config.client_id_encrypted = cipher.encrypt(payload.client_id)
            config.client_secret_encrypted = cipher.encrypt(payload.client_secret)
            if payload.callback_url is not None:
                config.callback_url = payload.callback_url
            config.updated_by = actor_id
            config.updated_at = now_utc()
            session.add(config)
            session.commit()
            session.refresh(config)
        # Never log credential values.
        logger.info("oauth.credentials_updated provider=%s actor_id=%s", provider, actor_id)
        return self._read(config)

    def get_decrypted_credentials(self, provider: OAuthProvider) -> DecryptedCredentials:
        """Stored credentials, falling back per field to `{PROVIDER}_CLIENT_ID` style env vars."""
        with self._session() as session:
            config = session.get(OAuthProviderConfig, provider)
        fallback = env_credentials(provider)
        if config is None:
            return fallback
        cipher = get_cipher()
        return DecryptedCredentials(
            client_id=(
                cipher.decrypt(config.client_id_encrypted) if config.client_id_encrypted else fallback.client_id
            ),
            client_secret=(
                cipher.decrypt(config.client_secret_encrypted)
                if config.client_secret_encrypted
                else fallback.client_secret
            ),
            callback_url=config.callback_url or fallback.callback_url,
        )

    def _read(self, config: OAuthProviderConfig) -> OAuthProviderRead:
        cipher = get_cipher()
        client_id = cipher.decrypt(config.client_id_encrypted) if config.client_id_encrypted else None
        secret = cipher.decrypt(config.client_secret_encrypted) if config.client_secret_encrypted else None
        return OAuthProviderRead(
            provider=config.provider,
            enabled=config.enabled,
            display_name=config.display_name,
            description=config.description,
            client_id=client_id,
            client_secret_masked=mask_secret(secret),
            callback_url=config.callback_url,
            updated_by=config.updated_by,
            updated_at=config.updated_at,
        )

    def list_providers(self) -> list[OAuthProviderRead]:
        with self._session() as session:
            stored = {item.provider: item for item in session.exec(select(OAuthProviderConfig)).all()}
        result: list[OAuthProviderRead] = []
        for provider in OAuthProvider:
            config = stored.get(provider)
            if config is None:
                result.append(OAuthProviderRead(provider=provider, enabled=True, display_name=DISPLAY_NAMES[provider]))
            else:
                result.append(self._read(config))
        return result

    def list_enabled(self) -> list[OAuthProvider]:
        return [item.provider for item in self.list_providers() if item.enabled]
