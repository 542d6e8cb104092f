from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from identity_core.domain.state_machine import EntitlementStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


class OAuthProvider(StrEnum):
    LOCAL = "LOCAL"
    GOOGLE = "GOOGLE"
    KAKAO = "KAKAO"
    NAVER = "NAVER"
    APPLE = "APPLE"


class AccountMode(StrEnum):
    SERVICE = "SERVICE"
    UNIFIED = "UNIFIED"


class AdminScope(StrEnum):
    SYSTEM = "SYSTEM"
    TENANT = "TENANT"


class SubjectType(StrEnum):
    USER = "USER"
    ADMIN = "ADMIN"
    OPERATOR = "OPERATOR"


class ConsentType(StrEnum):
    TERMS_OF_SERVICE = "TERMS_OF_SERVICE"
    PRIVACY_POLICY = "PRIVACY_POLICY"
    AGE_VERIFICATION = "AGE_VERIFICATION"
    MARKETING_EMAIL = "MARKETING_EMAIL"
    MARKETING_PUSH = "MARKETING_PUSH"
    MARKETING_SMS = "MARKETING_SMS"
    PERSONALIZED_ADS = "PERSONALIZED_ADS"
    THIRD_PARTY_SHARING = "THIRD_PARTY_SHARING"
    CROSS_BORDER_TRANSFER = "CROSS_BORDER_TRANSFER"
    CROSS_SERVICE_SHARING = "CROSS_SERVICE_SHARING"


DEFAULT_COUNTRY_CODE = "KR"


class Account(SQLModel, table=True):
    __tablename__ = "accounts"
    __table_args__ = (UniqueConstraint("email", "provider", name="uq_accounts_email_provider"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email: str = Field(index=True)
    username: str = Field(index=True, unique=True)
    provider: OAuthProvider = Field(default=OAuthProvider.LOCAL)
    password_hash: str | None = None
    account_mode: AccountMode = Field(default=AccountMode.SERVICE)
    country_code: str = Field(default=DEFAULT_COUNTRY_CODE, max_length=2)
    email_verified: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Profile(SQLModel, table=True):
    __tablename__ = "profiles"

    account_id: str = Field(foreign_key="accounts.id", primary_key=True)
    display_name: str | None = None
    avatar_url: str | None = None
    updated_at: datetime = Field(default_factory=now_utc)


class OAuthIdentityLink(SQLModel, table=True):
    __tablename__ = "oauth_identity_links"
    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_oauth_identity_links_provider_external"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    provider: OAuthProvider = Field(index=True)
    external_id: str
    account_id: str = Field(foreign_key="accounts.id", index=True)
    created_at: datetime = Field(default_factory=now_utc)


class Role(SQLModel, table=True):
    __tablename__ = "roles"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    display_name: str | None = None
    level: int = 0
    permissions: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )


class Admin(SQLModel, table=True):
    __tablename__ = "admins"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email: str = Field(index=True, unique=True)
    name: str
    password_hash: str
    scope: AdminScope = Field(default=AdminScope.TENANT)
    tenant_id: str | None = Field(default=None, index=True)
    tenant_slug: str | None = None
    tenant_type: str | None = None
    role_id: str = Field(foreign_key="roles.id", index=True)
    account_mode: AccountMode = Field(default=AccountMode.SERVICE)
    is_active: bool = True
    created_at: datetime = Field(default_factory=now_utc)


class Service(SQLModel, table=True):
    __tablename__ = "services"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    slug: str = Field(index=True, unique=True)
    name: str
    is_active: bool = True
    created_at: datetime = Field(default_factory=now_utc)


class AdminServiceAssignment(SQLModel, table=True):
    __tablename__ = "admin_services"
    __table_args__ = (
        UniqueConstraint("admin_id", "service_id", "country_code", name="uq_admin_services_scope"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    admin_id: str = Field(foreign_key="admins.id", index=True)
    service_id: str = Field(foreign_key="services.id", index=True)
    country_code: str | None = None
    role_id: str = Field(foreign_key="roles.id")


class Operator(SQLModel, table=True):
    __tablename__ = "operators"
    __table_args__ = (UniqueConstraint("email", "service_id", name="uq_operators_email_service"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email: str = Field(index=True)
    name: str
    password_hash: str
    admin_id: str = Field(foreign_key="admins.id", index=True)
    service_id: str = Field(foreign_key="services.id", index=True)
    country_code: str = Field(default=DEFAULT_COUNTRY_CODE, max_length=2)
    permissions: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    is_active: bool = True
    created_at: datetime = Field(default_factory=now_utc)


class ServiceConsentRequirement(SQLModel, table=True):
    __tablename__ = "service_consent_requirements"
    __table_args__ = (
        UniqueConstraint(
            "service_id",
            "country_code",
            "consent_type",
            name="uq_service_consent_requirements_scope",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    service_id: str = Field(foreign_key="services.id", index=True)
    country_code: str = Field(max_length=2, index=True)
    consent_type: ConsentType
    is_required: bool = True
    document_type: str | None = None
    display_order: int = 0


class ServiceEntitlement(SQLModel, table=True):
    __tablename__ = "user_services"
    __table_args__ = (
        UniqueConstraint(
            "account_id",
            "service_id",
            "country_code",
            name="uq_user_services_account_service_country",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    account_id: str = Field(foreign_key="accounts.id", index=True)
    service_id: str = Field(foreign_key="services.id", index=True)
    country_code: str = Field(max_length=2)
    status: EntitlementStatus = Field(default=EntitlementStatus.ACTIVE, index=True)
    joined_at: datetime = Field(default_factory=now_utc)
    withdrawn_at: datetime | None = None


class UserConsent(SQLModel, table=True):
    __tablename__ = "user_consents"
    __table_args__ = (
        UniqueConstraint(
            "account_id",
            "service_id",
            "country_code",
            "consent_type",
            name="uq_user_consents_scope_type",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    entitlement_id: str = Field(foreign_key="user_services.id", index=True)
    account_id: str = Field(foreign_key="accounts.id", index=True)
    service_id: str = Field(foreign_key="services.id", index=True)
    country_code: str = Field(max_length=2)
    consent_type: ConsentType
    document_id: str | None = None
    agreed: bool = True
    agreed_at: datetime | None = None
    withdrawn_at: datetime | None = None
    ip_address: str | None = None
    user_agent: str | None = None


class AuthSession(SQLModel, table=True):
    __tablename__ = "auth_sessions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    subject_id: str = Field(index=True)
    subject_type: SubjectType = Field(index=True)
    token_hash: str = Field(index=True, unique=True)
    expires_at: datetime
    revoked_at: datetime | None = None
    replaced_by: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime = Field(default_factory=now_utc)


class OAuthProviderConfig(SQLModel, table=True):
    __tablename__ = "oauth_provider_configs"

    provider: OAuthProvider = Field(primary_key=True)
    enabled: bool = True
    client_id_encrypted: str | None = None
    client_secret_encrypted: str | None = None
    callback_url: str | None = None
    display_name: str
    description: str | None = None
    updated_by: str | None = None
    updated_at: datetime = Field(default_factory=now_utc)


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ConsentInput(BaseModel):
    consent_type: ConsentType
    agreed: bool
    document_id: str | None = None


class JoinServiceRequest(BaseModel):
    country_code: str = PydanticField(min_length=2, max_length=2)
    consents: list[ConsentInput] = PydanticField(default_factory=list)


class UpdateConsentRequest(BaseModel):
    consent_type: ConsentType
    country_code: str = PydanticField(min_length=2, max_length=2)
    agreed: bool


class EntitlementRead(ORMReadModel):
    id: str
    service_id: str
    service_slug: str
    country_code: str
    status: EntitlementStatus
    joined_at: datetime
    withdrawn_at: datetime | None


class ServiceAccessRead(BaseModel):
    slug: str
    status: EntitlementStatus
    countries: list[str]
    country_code: str | None = None


class UserConsentRead(ORMReadModel):
    id: str
    consent_type: ConsentType
    country_code: str
    document_id: str | None
    agreed: bool
    agreed_at: datetime | None
    withdrawn_at: datetime | None


class ConsentRequirementRead(ORMReadModel):
    id: str
    service_id: str
    country_code: str
    consent_type: ConsentType
    is_required: bool
    document_type: str | None
    display_order: int


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class EntitlementChangeResult(BaseModel):
    entitlement: EntitlementRead | None = None
    withdrawn_count: int = 0
    tokens: TokenPair


class ServiceCreate(BaseModel):
    slug: str = PydanticField(min_length=1, max_length=100)
    name: str = PydanticField(min_length=1, max_length=200)


class ServiceUpdate(BaseModel):
    name: str | None = PydanticField(default=None, min_length=1, max_length=200)
    is_active: bool | None = None


class ServiceRead(ORMReadModel):
    id: str
    slug: str
    name: str
    is_active: bool


class ConsentRequirementCreate(BaseModel):
    country_code: str = PydanticField(min_length=2, max_length=2)
    consent_type: ConsentType
    is_required: bool = True
    document_type: str | None = None
    display_order: int = 0


class LoginRequest(BaseModel):
    email: str
    password: str


class RegisterRequest(LoginRequest):
    name: str | None = None


class AccountRead(ORMReadModel):
    id: str
    email: str
    username: str
    provider: OAuthProvider
    account_mode: AccountMode
    country_code: str


class OperatorLoginRequest(LoginRequest):
    service_slug: str


class RefreshRequest(BaseModel):
    refresh_token: str


class OAuthCompleteRequest(BaseModel):
    access_token: str | None = None
    profile: dict[str, Any] = PydanticField(default_factory=dict)
    user: dict[str, Any] | None = None


class OAuthLoginResult(BaseModel):
    account_id: str
    username: str
    created: bool
    tokens: TokenPair


class OAuthProviderToggle(BaseModel):
    enabled: bool


class OAuthCredentialsUpdate(BaseModel):
    client_id: str = PydanticField(min_length=1)
    client_secret: str = PydanticField(min_length=1)
    callback_url: str | None = None


class OAuthProviderRead(BaseModel):
    provider: OAuthProvider
    enabled: bool
    display_name: str
    description: str | None = None
    client_id: str | None = None
    client_secret_masked: str | None = None
    callback_url: str | None = None
    updated_by: str | None = None
    updated_at: datetime | None = None
