from __future__ import annotations

import threading
from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import event, func
from sqlmodel import Session, SQLModel, create_engine, select

from identity_core.domain.errors import (
    AlreadyConsented,
    AlreadyJoined,
    ConsentNotFound,
    MissingRequiredConsent,
    RequiredConsentWithdrawalDenied,
    ServiceNotFound,
    ServiceNotJoined,
)
from identity_core.domain.models import (
    Account,
    AuthSession,
    ConsentInput,
    ConsentRequirementCreate,
    ConsentType,
    ServiceCreate,
    ServiceEntitlement,
    ServiceUpdate,
    SubjectType,
    UserConsent,
)
from identity_core.domain.state_machine import EntitlementStatus
from identity_core.infra import db
from identity_core.infra.auth import decode_token, hash_token
from identity_core.infra.cache import InMemoryServiceCache
from identity_core.services.entitlement_service import EntitlementService
from identity_core.services.service_catalog import ServiceCatalog
from identity_core.services.token_service import TokenService


@pytest.fixture()
def entitlements(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[EntitlementService, None, None]:
    db_path = tmp_path / "entitlement_test.db"
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

    catalog = ServiceCatalog(InMemoryServiceCache())
    catalog.create_service(ServiceCreate(slug="blog", name="Blog"))
    for display_order, (country_code, consent_type, is_required) in enumerate(
        (
            ("KR", ConsentType.TERMS_OF_SERVICE, True),
            ("KR", ConsentType.PRIVACY_POLICY, True),
            ("KR", ConsentType.MARKETING_EMAIL, False),
            ("JP", ConsentType.TERMS_OF_SERVICE, True),
        )
    ):
        catalog.add_consent_requirement(
            "blog",
            ConsentRequirementCreate(
                country_code=country_code,
                consent_type=consent_type,
                is_required=is_required,
                display_order=display_order,
            ),
        )
    yield EntitlementService(catalog)


def _create_account(email: str = "user@example.com") -> str:
    account = Account(email=email, username=email.split("@")[0] + "x1y2z3")
    with Session(db.get_engine(), expire_on_commit=False) as session:
        session.add(account)
        session.commit()
    return account.id


def _kr_consents(*, marketing: bool = True) -> list[ConsentInput]:
    return [
        ConsentInput(consent_type=ConsentType.TERMS_OF_SERVICE, agreed=True),
        ConsentInput(consent_type=ConsentType.PRIVACY_POLICY, agreed=True),
        ConsentInput(consent_type=ConsentType.MARKETING_EMAIL, agreed=marketing),
    ]


def _count(model: type) -> int:
    with Session(db.get_engine()) as session:
        return session.exec(select(func.count()).select_from(model)).one()


def test_join_service_creates_rows_and_reissues_tokens(entitlements: EntitlementService) -> None:
    account_id = _create_account()

    result = entitlements.join_service(
        account_id,
        "blog",
        "kr",
        _kr_consents(),
        ip_address="203.0.113.7",
        user_agent="pytest",
    )

    assert result.entitlement is not None
    assert result.entitlement.status == EntitlementStatus.ACTIVE
    assert result.entitlement.service_slug == "blog"
    assert result.entitlement.country_code == "KR"

    claims = decode_token(result.tokens.access_token)
    assert claims["type"] == "USER_ACCESS"
    assert claims["services"] == {"blog": {"status": "ACTIVE", "countries": ["KR"]}}

    with Session(db.get_engine()) as session:
        consents = session.exec(select(UserConsent)).all()
        stored_session = session.exec(
            select(AuthSession).where(AuthSession.token_hash == hash_token(result.tokens.refresh_token))
        ).first()
    assert {item.consent_type for item in consents} == {
        ConsentType.TERMS_OF_SERVICE,
        ConsentType.PRIVACY_POLICY,
        ConsentType.MARKETING_EMAIL,
    }
    assert all(item.entitlement_id == result.entitlement.id for item in consents)
    assert all(item.ip_address == "203.0.113.7" for item in consents)
    assert stored_session is not None
    assert stored_session.subject_id == account_id


def test_join_without_required_consent_writes_nothing(entitlements: EntitlementService) -> None:
    account_id = _create_account()

    with pytest.raises(MissingRequiredConsent) as exc_info:
        entitlements.join_service(
            account_id,
            "blog",
            "KR",
            [ConsentInput(consent_type=ConsentType.TERMS_OF_SERVICE, agreed=True)],
        )

    assert exc_info.value.missing == ["PRIVACY_POLICY"]
    assert _count(ServiceEntitlement) == 0
    assert _count(UserConsent) == 0
    assert _count(AuthSession) == 0


def test_declined_required_consent_counts_as_missing(entitlements: EntitlementService) -> None:
    account_id = _create_account()
    consents = _kr_consents()
    consents.append(ConsentInput(consent_type=ConsentType.PRIVACY_POLICY, agreed=False))

    with pytest.raises(MissingRequiredConsent) as exc_info:
        entitlements.join_service(account_id, "blog", "KR", consents)

    assert exc_info.value.missing == ["PRIVACY_POLICY"]
    assert _count(ServiceEntitlement) == 0


def test_second_join_is_rejected(entitlements: EntitlementService) -> None:
    account_id = _create_account()
    entitlements.join_service(account_id, "blog", "KR", _kr_consents())

    with pytest.raises(AlreadyJoined):
        entitlements.join_service(account_id, "blog", "KR", _kr_consents())

    assert _count(ServiceEntitlement) == 1


def test_join_race_loser_maps_constraint_violation(
    entitlements: EntitlementService,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    account_id = _create_account()
    entitlements.join_service(account_id, "blog", "KR", _kr_consents())

    # Both requests passed the existence check before either committed.
    monkeypatch.setattr(entitlements, "_find_entitlement", lambda *args, **kwargs: None)
    with pytest.raises(AlreadyJoined):
        entitlements.join_service(account_id, "blog", "KR", _kr_consents())

    assert _count(ServiceEntitlement) == 1
    assert _count(UserConsent) == 3


def test_concurrent_joins_let_exactly_one_through(
    entitlements: EntitlementService,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    account_id = _create_account()
    barrier = threading.Barrier(2)
    find_entitlement = entitlements._find_entitlement

    def _find_then_wait(*args: object, **kwargs: object) -> ServiceEntitlement | None:
        found = find_entitlement(*args, **kwargs)
        barrier.wait(timeout=5)
        return found

    monkeypatch.setattr(entitlements, "_find_entitlement", _find_then_wait)
    outcomes: list[str] = []
    lock = threading.Lock()

    def _join() -> None:
        try:
            entitlements.join_service(account_id, "blog", "KR", _kr_consents())
            outcome = "joined"
        except AlreadyJoined:
            outcome = "already_joined"
        with lock:
            outcomes.append(outcome)

    workers = [threading.Thread(target=_join) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=30)

    assert sorted(outcomes) == ["already_joined", "joined"]
    assert _count(ServiceEntitlement) == 1
    assert _count(UserConsent) == 3


def test_deactivated_service_drops_out_of_token_snapshot(entitlements: EntitlementService) -> None:
    account_id = _create_account()
    entitlements.join_service(account_id, "blog", "KR", _kr_consents())

    entitlements.catalog.update_service("blog", ServiceUpdate(is_active=False))
    pair = TokenService().mint_pair(SubjectType.USER, account_id)

    assert decode_token(pair.access_token)["services"] == {}
    with Session(db.get_engine()) as session:
        row = session.exec(select(ServiceEntitlement)).one()
    assert row.status == EntitlementStatus.ACTIVE


def test_unknown_service_is_rejected(entitlements: EntitlementService) -> None:
    account_id = _create_account()
    with pytest.raises(ServiceNotFound):
        entitlements.join_service(account_id, "nope", "KR", _kr_consents())


def test_add_country_requires_existing_join(entitlements: EntitlementService) -> None:
    account_id = _create_account()
    jp = [ConsentInput(consent_type=ConsentType.TERMS_OF_SERVICE, agreed=True)]

    with pytest.raises(ServiceNotJoined):
        entitlements.add_country_consent(account_id, "blog", "JP", jp)

    entitlements.join_service(account_id, "blog", "KR", _kr_consents())
    result = entitlements.add_country_consent(account_id, "blog", "JP", jp)

    claims = decode_token(result.tokens.access_token)
    assert claims["services"]["blog"]["countries"] == ["JP", "KR"]

    with pytest.raises(AlreadyConsented):
        entitlements.add_country_consent(account_id, "blog", "JP", jp)
    with pytest.raises(AlreadyConsented):
        entitlements.add_country_consent(account_id, "blog", "KR", _kr_consents())


def test_add_country_validates_that_country_requirements(entitlements: EntitlementService) -> None:
    account_id = _create_account()
    entitlements.join_service(account_id, "blog", "KR", _kr_consents())

    with pytest.raises(MissingRequiredConsent) as exc_info:
        entitlements.add_country_consent(account_id, "blog", "JP", [])

    assert exc_info.value.missing == ["TERMS_OF_SERVICE"]
    assert _count(ServiceEntitlement) == 1


def test_required_consent_cannot_be_withdrawn_while_active(entitlements: EntitlementService) -> None:
    account_id = _create_account()
    entitlements.join_service(account_id, "blog", "KR", _kr_consents())

    with pytest.raises(RequiredConsentWithdrawalDenied):
        entitlements.update_consent(account_id, "blog", ConsentType.TERMS_OF_SERVICE, "KR", False)

    with Session(db.get_engine()) as session:
        row = session.exec(
            select(UserConsent).where(UserConsent.consent_type == ConsentType.TERMS_OF_SERVICE)
        ).one()
    assert row.agreed is True
    assert row.withdrawn_at is None


def test_optional_consent_can_be_withdrawn_and_regranted(entitlements: EntitlementService) -> None:
    account_id = _create_account()
    entitlements.join_service(account_id, "blog", "KR", _kr_consents())

    withdrawn = entitlements.update_consent(
        account_id,
        "blog",
        ConsentType.MARKETING_EMAIL,
        "KR",
        False,
        ip_address="198.51.100.1",
    )
    assert withdrawn.agreed is False
    assert withdrawn.withdrawn_at is not None
    assert withdrawn.ip_address == "198.51.100.1"

    regranted = entitlements.update_consent(account_id, "blog", ConsentType.MARKETING_EMAIL, "KR", True)
    assert regranted.agreed is True
    assert regranted.withdrawn_at is None
    assert regranted.agreed_at is not None


def test_update_unknown_consent_is_not_found(entitlements: EntitlementService) -> None:
    account_id = _create_account()
    entitlements.join_service(account_id, "blog", "KR", _kr_consents())

    with pytest.raises(ConsentNotFound):
        entitlements.update_consent(account_id, "blog", ConsentType.MARKETING_SMS, "KR", True)


def test_withdraw_all_countries_keeps_rows(entitlements: EntitlementService) -> None:
    account_id = _create_account()
    entitlements.join_service(account_id, "blog", "KR", _kr_consents())
    entitlements.add_country_consent(
        account_id,
        "blog",
        "JP",
        [ConsentInput(consent_type=ConsentType.TERMS_OF_SERVICE, agreed=True)],
    )

    result = entitlements.withdraw_service(account_id, "blog")

    assert result.withdrawn_count == 2
    assert decode_token(result.tokens.access_token)["services"] == {}
    with Session(db.get_engine()) as session:
        rows = session.exec(select(ServiceEntitlement)).all()
        consents = session.exec(select(UserConsent)).all()
    assert len(rows) == 2
    assert all(item.status == EntitlementStatus.WITHDRAWN for item in rows)
    assert all(item.withdrawn_at is not None for item in rows)
    assert len(consents) == 4
    assert all(item.agreed is False and item.withdrawn_at is not None for item in consents)


def test_withdraw_single_country(entitlements: EntitlementService) -> None:
    account_id = _create_account()
    entitlements.join_service(account_id, "blog", "KR", _kr_consents())
    entitlements.add_country_consent(
        account_id,
        "blog",
        "JP",
        [ConsentInput(consent_type=ConsentType.TERMS_OF_SERVICE, agreed=True)],
    )

    result = entitlements.withdraw_service(account_id, "blog", "KR")

    assert result.withdrawn_count == 1
    claims = decode_token(result.tokens.access_token)
    assert claims["services"] == {"blog": {"status": "ACTIVE", "countries": ["JP"]}}

    with pytest.raises(ServiceNotJoined):
        entitlements.withdraw_service(account_id, "blog", "KR")


def test_withdraw_without_active_entitlement(entitlements: EntitlementService) -> None:
    account_id = _create_account()
    with pytest.raises(ServiceNotJoined):
        entitlements.withdraw_service(account_id, "blog")


def test_rejoin_after_withdrawal_is_rejected(entitlements: EntitlementService) -> None:
    account_id = _create_account()
    entitlements.join_service(account_id, "blog", "KR", _kr_consents())
    entitlements.withdraw_service(account_id, "blog")

    with pytest.raises(AlreadyJoined):
        entitlements.join_service(account_id, "blog", "KR", _kr_consents())


def test_consent_reads(entitlements: EntitlementService) -> None:
    account_id = _create_account()
    requirements = entitlements.get_consent_requirements("blog", "KR")
    assert [item.consent_type for item in requirements] == [
        ConsentType.TERMS_OF_SERVICE,
        ConsentType.PRIVACY_POLICY,
        ConsentType.MARKETING_EMAIL,
    ]
    assert [item.is_required for item in requirements] == [True, True, False]

    entitlements.join_service(account_id, "blog", "KR", _kr_consents(marketing=False))
    mine = entitlements.get_my_consents(account_id, "blog", "KR")
    by_type = {item.consent_type: item for item in mine}
    assert by_type[ConsentType.MARKETING_EMAIL].agreed is False
    assert by_type[ConsentType.MARKETING_EMAIL].agreed_at is None
    assert by_type[ConsentType.TERMS_OF_SERVICE].agreed is True
    assert entitlements.get_my_consents(account_id, "blog", "JP") == []
