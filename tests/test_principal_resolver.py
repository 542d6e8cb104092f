from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import jwt
import pytest
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine

from identity_core.domain.errors import InvalidToken, InvalidTokenType, PrincipalNotFound
from identity_core.domain.models import (
    Account,
    AccountMode,
    Admin,
    AdminScope,
    AdminServiceAssignment,
    Operator,
    Profile,
    Role,
    Service,
    SubjectType,
)
from identity_core.domain.principals import AdminPrincipal, OperatorPrincipal, UserPrincipal
from identity_core.infra import auth, db
from identity_core.infra.auth import decode_token, issue_access_token, issue_refresh_token
from identity_core.infra.cache import InMemoryServiceCache
from identity_core.services.principal_resolver import PrincipalResolver
from identity_core.services.service_catalog import ServiceCatalog
from identity_core.services.token_service import TokenService


@pytest.fixture()
def resolver(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[PrincipalResolver, None, None]:
    db_path = tmp_path / "resolver_test.db"
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
    yield PrincipalResolver(ServiceCatalog(InMemoryServiceCache()))


def _add(*rows: object) -> None:
    with Session(db.get_engine(), expire_on_commit=False) as session:
        for row in rows:
            session.add(row)
            session.flush()
        session.commit()


def _seed_account(*, display_name: str | None = "Jane Doe", is_active: bool = True) -> Account:
    account = Account(email="jane@example.com", username="janeabc123", is_active=is_active)
    rows: list[object] = [account]
    if display_name is not None:
        rows.append(Profile(account_id=account.id, display_name=display_name))
    _add(*rows)
    return account


def _seed_admin(*, is_active: bool = True) -> Admin:
    role = Role(name="service-manager", level=50, permissions=["service:*", "admin:read"])
    admin = Admin(
        email="admin@example.com",
        name="Ada Admin",
        password_hash="x",
        scope=AdminScope.SYSTEM,
        role_id=role.id,
        is_active=is_active,
    )
    _add(role, admin)
    return admin


def _seed_operator(*, is_active: bool = True, service_active: bool = True) -> Operator:
    role = Role(name="owner", level=100, permissions=["*"])
    admin = Admin(email="owner@example.com", name="Owner", password_hash="x", role_id=role.id)
    service = Service(slug="blog", name="Blog", is_active=service_active)
    operator = Operator(
        email="op@example.com",
        name="Oscar Operator",
        password_hash="x",
        admin_id=admin.id,
        service_id=service.id,
        country_code="KR",
        permissions=["content:read", "content:update"],
        is_active=is_active,
    )
    _add(role, admin, service, operator)
    return operator


def _mint_access(subject_type: SubjectType, subject_id: str) -> str:
    return TokenService().mint_pair(subject_type, subject_id).access_token


def test_issued_access_token_carries_payload_and_ttl() -> None:
    token = issue_access_token("acct-1", {"type": "USER_ACCESS", "email": "a@example.com"})
    claims = decode_token(token)
    assert claims["sub"] == "acct-1"
    assert claims["type"] == "USER_ACCESS"
    assert claims["exp"] - claims["iat"] == auth.JWT_ACCESS_EXPIRES_MIN * 60


def test_refresh_tokens_are_unique_and_long_lived() -> None:
    first = issue_refresh_token("acct-1", {"type": "USER_REFRESH"})
    second = issue_refresh_token("acct-1", {"type": "USER_REFRESH"})
    assert first != second
    claims = decode_token(first)
    assert claims["exp"] - claims["iat"] == auth.JWT_REFRESH_EXPIRES_DAYS * 86400


def test_user_token_resolves_with_profile_name(resolver: PrincipalResolver) -> None:
    account = _seed_account()
    principal = resolver.verify_and_resolve(_mint_access(SubjectType.USER, account.id))
    assert isinstance(principal, UserPrincipal)
    assert principal.id == account.id
    assert principal.name == "Jane Doe"
    assert principal.account_mode == AccountMode.SERVICE
    assert principal.country_code == "KR"
    assert principal.services == {}


def test_missing_profile_yields_empty_name(resolver: PrincipalResolver) -> None:
    account = _seed_account(display_name=None)
    principal = resolver.verify_and_resolve(_mint_access(SubjectType.USER, account.id))
    assert isinstance(principal, UserPrincipal)
    assert principal.name == ""


def test_user_token_for_deleted_account_is_rejected(resolver: PrincipalResolver) -> None:
    token = issue_access_token("ghost", {"type": "USER_ACCESS", "email": "ghost@example.com"})
    with pytest.raises(PrincipalNotFound):
        resolver.verify_and_resolve(token)


def test_legacy_tokens_resolve_to_default_user(resolver: PrincipalResolver) -> None:
    account = _seed_account()
    for claims in ({"email": account.email}, {"email": account.email, "type": "DOMAIN_ACCESS"}):
        token = issue_access_token(account.id, claims)
        principal = resolver.verify_and_resolve(token)
        assert isinstance(principal, UserPrincipal)
        assert principal.account_mode == AccountMode.SERVICE
        assert principal.country_code == "KR"
        assert principal.services == {}


def test_admin_token_resolves(resolver: PrincipalResolver) -> None:
    admin = _seed_admin()
    principal = resolver.verify_and_resolve(_mint_access(SubjectType.ADMIN, admin.id))
    assert isinstance(principal, AdminPrincipal)
    assert principal.role_name == "service-manager"
    assert principal.level == 50
    assert principal.permissions == ["service:*", "admin:read"]


def test_admin_service_assignments_are_embedded(resolver: PrincipalResolver) -> None:
    admin = _seed_admin()
    service = Service(slug="shop", name="Shop")
    role = Role(name="shop-editor", level=10, permissions=["product:update"])
    _add(
        service,
        role,
        AdminServiceAssignment(admin_id=admin.id, service_id=service.id, country_code="KR", role_id=role.id),
        AdminServiceAssignment(admin_id=admin.id, service_id=service.id, country_code="JP", role_id=role.id),
    )
    principal = resolver.verify_and_resolve(_mint_access(SubjectType.ADMIN, admin.id))
    assert isinstance(principal, AdminPrincipal)
    assert sorted(principal.services["shop"].countries) == ["JP", "KR"]
    assert principal.services["shop"].permissions == ["product:update"]


def test_inactive_and_missing_admin_fail_identically(resolver: PrincipalResolver) -> None:
    admin = _seed_admin()
    token = _mint_access(SubjectType.ADMIN, admin.id)
    with Session(db.get_engine()) as session:
        row = session.get(Admin, admin.id)
        assert row is not None
        row.is_active = False
        session.add(row)
        session.commit()

    with pytest.raises(PrincipalNotFound) as inactive:
        resolver.verify_and_resolve(token)

    claims = decode_token(token)
    claims.pop("iat")
    claims.pop("exp")
    claims.pop("sub")
    missing_token = issue_access_token("no-such-admin", claims)
    with pytest.raises(PrincipalNotFound) as missing:
        resolver.verify_and_resolve(missing_token)

    assert type(inactive.value) is type(missing.value)
    assert str(inactive.value) == str(missing.value)


def test_operator_token_resolves(resolver: PrincipalResolver) -> None:
    operator = _seed_operator()
    principal = resolver.verify_and_resolve(_mint_access(SubjectType.OPERATOR, operator.id))
    assert isinstance(principal, OperatorPrincipal)
    assert principal.service_slug == "blog"
    assert principal.permissions == ["content:read", "content:update"]


def test_inactive_operator_is_rejected(resolver: PrincipalResolver) -> None:
    operator = _seed_operator()
    token = _mint_access(SubjectType.OPERATOR, operator.id)
    with Session(db.get_engine()) as session:
        row = session.get(Operator, operator.id)
        assert row is not None
        row.is_active = False
        session.add(row)
        session.commit()
    with pytest.raises(PrincipalNotFound):
        resolver.verify_and_resolve(token)


def test_operator_of_disabled_service_is_rejected(resolver: PrincipalResolver) -> None:
    operator = _seed_operator()
    token = _mint_access(SubjectType.OPERATOR, operator.id)
    with Session(db.get_engine()) as session:
        service = session.get(Service, operator.service_id)
        assert service is not None
        service.is_active = False
        session.add(service)
        session.commit()
    with pytest.raises(PrincipalNotFound):
        resolver.verify_and_resolve(token)


def test_unknown_type_tag_is_rejected(resolver: PrincipalResolver) -> None:
    token = issue_access_token("acct-1", {"type": "SUPERUSER", "email": "a@example.com"})
    with pytest.raises(InvalidTokenType):
        resolver.verify_and_resolve(token)


def test_refresh_token_is_not_a_bearer_credential(resolver: PrincipalResolver) -> None:
    account = _seed_account()
    refresh = TokenService().mint_pair(SubjectType.USER, account.id).refresh_token
    with pytest.raises(InvalidTokenType):
        resolver.verify_and_resolve(refresh)


def test_malformed_variant_payload_is_invalid(resolver: PrincipalResolver) -> None:
    token = issue_access_token("admin-1", {"type": "ADMIN_ACCESS", "email": "a@example.com"})
    with pytest.raises(InvalidToken):
        resolver.verify_and_resolve(token)


def test_expired_and_tampered_tokens_are_invalid(resolver: PrincipalResolver) -> None:
    account = _seed_account()
    past = datetime.now(UTC) - timedelta(hours=2)
    expired = jwt.encode(
        {
            "sub": account.id,
            "type": "USER_ACCESS",
            "email": account.email,
            "iat": int(past.timestamp()),
            "exp": int((past + timedelta(minutes=5)).timestamp()),
        },
        auth.JWT_SECRET,
        algorithm=auth.JWT_ALGORITHM,
    )
    with pytest.raises(InvalidToken):
        resolver.verify_and_resolve(expired)

    claims = decode_token(_mint_access(SubjectType.USER, account.id))
    forged = jwt.encode(claims, "someone-elses-secret", algorithm=auth.JWT_ALGORITHM)
    with pytest.raises(InvalidToken):
        resolver.verify_and_resolve(forged)

    with pytest.raises(InvalidToken):
        resolver.verify_and_resolve("not-a-jwt")
