from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from identity_core.domain.models import AccountMode, AdminScope, DEFAULT_COUNTRY_CODE, SubjectType
from identity_core.domain.state_machine import EntitlementStatus


class TokenType(StrEnum):
    USER_ACCESS = "USER_ACCESS"
    ADMIN_ACCESS = "ADMIN_ACCESS"
    OPERATOR_ACCESS = "OPERATOR_ACCESS"
    USER_REFRESH = "USER_REFRESH"
    ADMIN_REFRESH = "ADMIN_REFRESH"
    OPERATOR_REFRESH = "OPERATOR_REFRESH"
    ACCESS = "ACCESS"
    REFRESH = "REFRESH"
    DOMAIN_ACCESS = "DOMAIN_ACCESS"


LEGACY_TOKEN_TYPES = {TokenType.ACCESS.value, TokenType.REFRESH.value, TokenType.DOMAIN_ACCESS.value}

ACCESS_TOKEN_TYPES: dict[SubjectType, TokenType] = {
    SubjectType.USER: TokenType.USER_ACCESS,
    SubjectType.ADMIN: TokenType.ADMIN_ACCESS,
    SubjectType.OPERATOR: TokenType.OPERATOR_ACCESS,
}

REFRESH_TOKEN_TYPES: dict[SubjectType, TokenType] = {
    SubjectType.USER: TokenType.USER_REFRESH,
    SubjectType.ADMIN: TokenType.ADMIN_REFRESH,
    SubjectType.OPERATOR: TokenType.OPERATOR_REFRESH,
}


class WireModel(BaseModel):
    """Claims travel camelCase on the wire and snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_claims(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class UserServiceClaim(WireModel):
    status: EntitlementStatus = EntitlementStatus.ACTIVE
    countries: list[str] = Field(default_factory=list)


class AdminServiceClaim(WireModel):
    role_id: str
    role_name: str
    countries: list[str] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)


class UserAccessPayload(WireModel):
    type: Literal["USER_ACCESS"] = "USER_ACCESS"
    sub: str
    email: str
    account_mode: AccountMode = AccountMode.SERVICE
    country_code: str = DEFAULT_COUNTRY_CODE
    services: dict[str, UserServiceClaim] = Field(default_factory=dict)


class AdminAccessPayload(WireModel):
    type: Literal["ADMIN_ACCESS"] = "ADMIN_ACCESS"
    sub: str
    email: str
    name: str
    account_mode: AccountMode = AccountMode.SERVICE
    scope: AdminScope
    tenant_id: str | None = None
    tenant_slug: str | None = None
    tenant_type: str | None = None
    role_id: str
    role_name: str
    level: int
    permissions: list[str] = Field(default_factory=list)
    services: dict[str, AdminServiceClaim] = Field(default_factory=dict)


class OperatorAccessPayload(WireModel):
    type: Literal["OPERATOR_ACCESS"] = "OPERATOR_ACCESS"
    sub: str
    email: str
    name: str
    admin_id: str
    service_id: str
    service_slug: str
    country_code: str
    permissions: list[str] = Field(default_factory=list)


class LegacyPayload(WireModel):
    type: TokenType | None = None
    sub: str
    email: str
    role: str | None = None
    domain: str | None = None


class UserPrincipal(WireModel):
    type: Literal["USER"] = "USER"
    id: str
    email: str
    name: str = ""
    account_mode: AccountMode
    country_code: str
    services: dict[str, UserServiceClaim] = Field(default_factory=dict)


class AdminPrincipal(WireModel):
    type: Literal["ADMIN"] = "ADMIN"
    id: str
    email: str
    name: str
    scope: AdminScope
    tenant_id: str | None = None
    role_id: str
    role_name: str
    level: int
    permissions: list[str] = Field(default_factory=list)
    services: dict[str, AdminServiceClaim] = Field(default_factory=dict)


class OperatorPrincipal(WireModel):
    type: Literal["OPERATOR"] = "OPERATOR"
    id: str
    email: str
    name: str
    admin_id: str
    service_id: str
    service_slug: str
    country_code: str
    permissions: list[str] = Field(default_factory=list)


Principal = Annotated[
    Union[UserPrincipal, AdminPrincipal, OperatorPrincipal],
    Field(discriminator="type"),
]


def granted_permissions(principal: UserPrincipal | AdminPrincipal | OperatorPrincipal) -> list[str]:
    if isinstance(principal, UserPrincipal):
        return []
    return list(principal.permissions)
