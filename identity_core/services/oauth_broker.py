from __future__ import annotations

import logging
import re
import secrets
import string

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from identity_core.adapters.base import OAuthProfile, email_local_part
from identity_core.domain.errors import (
    ConflictError,
    MissingIdentityAttribute,
    OrphanedIdentityLink,
    PrincipalNotFound,
)
from identity_core.domain.models import (
    Account,
    OAuthIdentityLink,
    OAuthLoginResult,
    OAuthProvider,
    Profile,
    SubjectType,
)
from identity_core.infra.db import get_engine
from identity_core.services.token_service import TokenService

USERNAME_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
USERNAME_SUFFIX_LENGTH = 6
USERNAME_ATTEMPTS = 5

logger = logging.getLogger(__name__)


def build_username(email: str) -> str:
    base = re.sub(r"[^a-z0-9]", "", email_local_part(email).lower()) or "user"
    suffix = "".join(secrets.choice(USERNAME_SUFFIX_ALPHABET) for _ in range(USERNAME_SUFFIX_LENGTH))
    return f"{base}{suffix}"


class OAuthBroker:
    """Maps a normalized provider profile onto exactly one canonical account."""

    def __init__(self, tokens: TokenService | None = None) -> None:
        self.tokens = tokens or TokenService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _find_linked(self, session: Session, provider: OAuthProvider, external_id: str) -> Account | None:
        link = session.exec(
            select(OAuthIdentityLink)
            .where(OAuthIdentityLink.provider == provider)
            .where(OAuthIdentityLink.external_id == external_id)
        ).first()
        if link is None:
            return None
        account = session.get(Account, link.account_id)
        if account is None:
            logger.error(
                "oauth.orphaned_link provider=%s external_id=%s account_id=%s",
                provider,
                external_id,
                link.account_id,
            )
            raise OrphanedIdentityLink(f"{provider} identity is linked to a missing account")
        return account

    def find_or_create_account(
        self,
        email: str | None,
        provider: OAuthProvider,
        external_id: str,
        name: str | None = None,
        avatar: str | None = None,
    ) -> tuple[Account, bool]:
        """Return ``(account, created)``.

        A known ``(provider, external_id)`` returns the stored account as is:
        name and avatar from later logins are ignored. A concurrent first
        login for the same identity loses on the link's unique constraint and
        falls back to the winner's account.
        """
        if not email:
            raise MissingIdentityAttribute(provider, "email")

        with self._session() as session:
            existing = self._find_linked(session, provider, external_id)
            if existing is not None:
                return existing, False
            clash = session.exec(
                select(Account).where(Account.email == email).where(Account.provider == provider)
            ).first()
            if clash is not None:
                raise ConflictError(f"Account already exists for {provider} email")

        for _ in range(USERNAME_ATTEMPTS):
            username = build_username(email)
            account = Account(
                email=email,
                username=username,
                provider=provider,
                email_verified=True,
            )
            with self._session() as session:
                try:
                    session.add(account)
                    session.flush()
                    session.add(Profile(account_id=account.id, display_name=name, avatar_url=avatar))
                    session.add(
                        OAuthIdentityLink(
                            provider=provider,
                            external_id=external_id,
                            account_id=account.id,
                        )
                    )
                    session.commit()
                except IntegrityError:
                    session.rollback()
                else:
                    logger.info(
                        "oauth.account_created provider=%s account_id=%s",
                        provider,
                        account.id,
                    )
                    return account, True

            with self._session() as session:
                winner = self._find_linked(session, provider, external_id)
            if winner is not None:
                return winner, False
            # Username collision; try another suffix.

        raise ConflictError("Unable to allocate a unique username")

    def login_with_profile(
        self,
        profile: OAuthProfile,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> OAuthLoginResult:
        account, created = self.find_or_create_account(
            profile.email,
            profile.provider,
            profile.external_id,
            name=profile.display_name,
            avatar=profile.avatar_url,
        )
        if not account.is_active:
            raise PrincipalNotFound("User not found")
        tokens = self.tokens.issue_pair(
            SubjectType.USER,
            account.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info(
            "oauth.login provider=%s account_id=%s created=%s",
            profile.provider,
            account.id,
            created,
        )
        return OAuthLoginResult(
            account_id=account.id,
            username=account.username,
            created=created,
            tokens=tokens,
        )
