from __future__ import annotations

import re
from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import event, func
from sqlmodel import Session, SQLModel, create_engine, select

from identity_core.adapters.base import OAuthProfile
from identity_core.domain.errors import ConflictError, MissingIdentityAttribute, OrphanedIdentityLink
from identity_core.domain.models import Account, OAuthIdentityLink, OAuthProvider, Profile, now_utc
from identity_core.infra import db
from identity_core.infra.auth import decode_token
from identity_core.services import oauth_broker
from identity_core.services.oauth_broker import OAuthBroker, build_username


@pytest.fixture()
def broker(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[OAuthBroker, None, None]:
    db_path = tmp_path / "oauth_broker_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    yield OAuthBroker()


def _count(model: type) -> int:
    with Session(db.get_engine()) as session:
        return session.exec(select(func.count()).select_from(model)).one()


def _profile(account_id: str) -> Profile:
    with Session(db.get_engine()) as session:
        profile = session.get(Profile, account_id)
    assert profile is not None
    return profile


def test_build_username_sanitizes_local_part() -> None:
    assert re.fullmatch(r"janedoe[a-z0-9]{6}", build_username("Jane.Doe+news@example.com"))
    assert re.fullmatch(r"user[a-z0-9]{6}", build_username("...@example.com"))


def test_first_login_creates_account_profile_and_link(broker: OAuthBroker) -> None:
    account, created = broker.find_or_create_account(
        "Jane.Doe@example.com",
        OAuthProvider.GOOGLE,
        "google-123",
        name="Jane Doe",
        avatar="https://img.example.com/jane.png",
    )

    assert created is True
    assert account.provider == OAuthProvider.GOOGLE
    assert account.email_verified is True
    assert re.fullmatch(r"janedoe[a-z0-9]{6}", account.username)
    profile = _profile(account.id)
    assert profile.display_name == "Jane Doe"
    assert profile.avatar_url == "https://img.example.com/jane.png"
    with Session(db.get_engine()) as session:
        link = session.exec(select(OAuthIdentityLink)).one()
    assert link.account_id == account.id
    assert link.external_id == "google-123"


def test_repeat_login_returns_same_account_without_overwriting(broker: OAuthBroker) -> None:
    first, _ = broker.find_or_create_account(
        "jane@example.com", OAuthProvider.KAKAO, "42", name="Jane", avatar="https://a/1.png"
    )
    second, created = broker.find_or_create_account(
        "jane@example.com", OAuthProvider.KAKAO, "42", name="Renamed", avatar="https://a/2.png"
    )

    assert created is False
    assert second.id == first.id
    assert _count(Account) == 1
    profile = _profile(first.id)
    assert profile.display_name == "Jane"
    assert profile.avatar_url == "https://a/1.png"


def test_missing_email_is_rejected_before_any_write(broker: OAuthBroker) -> None:
    with pytest.raises(MissingIdentityAttribute) as exc_info:
        broker.find_or_create_account(None, OAuthProvider.NAVER, "naver-1")

    assert exc_info.value.provider == OAuthProvider.NAVER
    assert exc_info.value.attribute == "email"
    assert _count(Account) == 0


def test_same_email_on_other_identity_of_provider_conflicts(broker: OAuthBroker) -> None:
    broker.find_or_create_account("jane@example.com", OAuthProvider.GOOGLE, "g-1")
    with pytest.raises(ConflictError):
        broker.find_or_create_account("jane@example.com", OAuthProvider.GOOGLE, "g-2")

    # Other providers keep separate accounts for the same address.
    _, created = broker.find_or_create_account("jane@example.com", OAuthProvider.APPLE, "a-1")
    assert created is True
    assert _count(Account) == 2


def test_concurrent_first_login_falls_back_to_winner(
    broker: OAuthBroker,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    winner, _ = broker.find_or_create_account("old@example.com", OAuthProvider.GOOGLE, "g-1")

    original = OAuthBroker._find_linked
    calls: list[str] = []

    def _racing_find_linked(self: OAuthBroker, session: Session, provider: OAuthProvider, external_id: str):
        calls.append(external_id)
        # The first lookup ran before the winner committed.
        if len(calls) == 1:
            return None
        return original(self, session, provider, external_id)

    monkeypatch.setattr(OAuthBroker, "_find_linked", _racing_find_linked)
    account, created = broker.find_or_create_account("new@example.com", OAuthProvider.GOOGLE, "g-1")

    assert created is False
    assert account.id == winner.id
    assert _count(Account) == 1
    assert _count(OAuthIdentityLink) == 1


def test_username_collision_retries_with_new_suffix(
    broker: OAuthBroker,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    taken, _ = broker.find_or_create_account("jane@example.com", OAuthProvider.GOOGLE, "g-1")
    candidates = iter([taken.username, "janeqqq111"])
    monkeypatch.setattr(oauth_broker, "build_username", lambda email: next(candidates))

    account, created = broker.find_or_create_account("jane@example.com", OAuthProvider.KAKAO, "k-1")

    assert created is True
    assert account.username == "janeqqq111"
    assert _count(Account) == 2


def test_login_with_profile_issues_user_tokens(broker: OAuthBroker) -> None:
    profile = OAuthProfile(
        provider=OAuthProvider.NAVER,
        external_id="naver-7",
        email="minsu@example.com",
        display_name="Minsu",
    )

    first = broker.login_with_profile(profile, ip_address="203.0.113.9", user_agent="pytest")
    again = broker.login_with_profile(profile)

    assert first.created is True
    assert again.created is False
    assert again.account_id == first.account_id
    claims = decode_token(first.tokens.access_token)
    assert claims["sub"] == first.account_id
    assert claims["type"] == "USER_ACCESS"
    assert claims["email"] == "minsu@example.com"
    assert decode_token(first.tokens.refresh_token)["type"] == "USER_REFRESH"


def test_link_to_missing_account_is_reported_as_orphaned(broker: OAuthBroker) -> None:
    with db.get_engine().connect() as conn:
        conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
        conn.execute(
            OAuthIdentityLink.__table__.insert().values(  # type: ignore[attr-defined]
                id="link-orphan",
                provider=OAuthProvider.GOOGLE,
                external_id="g-9",
                account_id="deleted-account",
                created_at=now_utc(),
            )
        )
        conn.commit()
        conn.exec_driver_sql("PRAGMA foreign_keys=ON")

    with pytest.raises(OrphanedIdentityLink):
        broker.find_or_create_account("ghost@example.com", OAuthProvider.GOOGLE, "g-9")

    assert _count(Account) == 0
