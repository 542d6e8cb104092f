"""identity core tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610180001"
down_revision = None
branch_labels = None
depends_on = None

oauth_provider = sa.Enum("LOCAL", "GOOGLE", "KAKAO", "NAVER", "APPLE", name="oauthprovider")
account_mode = sa.Enum("SERVICE", "UNIFIED", name="accountmode")
admin_scope = sa.Enum("SYSTEM", "TENANT", name="adminscope")
subject_type = sa.Enum("USER", "ADMIN", "OPERATOR", name="subjecttype")
entitlement_status = sa.Enum("ACTIVE", "WITHDRAWN", name="entitlementstatus")
consent_type = sa.Enum(
    "TERMS_OF_SERVICE",
    "PRIVACY_POLICY",
    "AGE_VERIFICATION",
    "MARKETING_EMAIL",
    "MARKETING_PUSH",
    "MARKETING_SMS",
    "PERSONALIZED_ADS",
    "THIRD_PARTY_SHARING",
    "CROSS_BORDER_TRANSFER",
    "CROSS_SERVICE_SHARING",
    name="consenttype",
)


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("provider", oauth_provider, nullable=False),
        sa.Column("password_hash", sa.String(), nullable=True),
        sa.Column("account_mode", account_mode, nullable=False),
        sa.Column("country_code", sa.String(length=2), nullable=False),
        sa.Column("email_verified", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", "provider", name="uq_accounts_email_provider"),
    )
    op.create_index("ix_accounts_email", "accounts", ["email"])
    op.create_index("ix_accounts_username", "accounts", ["username"], unique=True)
    op.create_index("ix_accounts_created_at", "accounts", ["created_at"])

    op.create_table(
        "profiles",
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("avatar_url", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("account_id"),
    )

    op.create_table(
        "oauth_identity_links",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("provider", oauth_provider, nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "external_id", name="uq_oauth_identity_links_provider_external"),
    )
    op.create_index("ix_oauth_identity_links_provider", "oauth_identity_links", ["provider"])
    op.create_index("ix_oauth_identity_links_account_id", "oauth_identity_links", ["account_id"])

    op.create_table(
        "roles",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("permissions", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_roles_name", "roles", ["name"], unique=True)

    op.create_table(
        "admins",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=False),
        sa.Column("scope", admin_scope, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("tenant_slug", sa.String(), nullable=True),
        sa.Column("tenant_type", sa.String(), nullable=True),
        sa.Column("role_id", sa.String(), nullable=False),
        sa.Column("account_mode", account_mode, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_admins_email", "admins", ["email"], unique=True)
    op.create_index("ix_admins_tenant_id", "admins", ["tenant_id"])
    op.create_index("ix_admins_role_id", "admins", ["role_id"])

    op.create_table(
        "services",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_services_slug", "services", ["slug"], unique=True)

    op.create_table(
        "admin_services",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("admin_id", sa.String(), nullable=False),
        sa.Column("service_id", sa.String(), nullable=False),
        sa.Column("country_code", sa.String(), nullable=True),
        sa.Column("role_id", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["admin_id"], ["admins.id"]),
        sa.ForeignKeyConstraint(["service_id"], ["services.id"]),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("admin_id", "service_id", "country_code", name="uq_admin_services_scope"),
    )
    op.create_index("ix_admin_services_admin_id", "admin_services", ["admin_id"])
    op.create_index("ix_admin_services_service_id", "admin_services", ["service_id"])

    op.create_table(
        "operators",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=False),
        sa.Column("admin_id", sa.String(), nullable=False),
        sa.Column("service_id", sa.String(), nullable=False),
        sa.Column("country_code", sa.String(length=2), nullable=False),
        sa.Column("permissions", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["admin_id"], ["admins.id"]),
        sa.ForeignKeyConstraint(["service_id"], ["services.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", "service_id", name="uq_operators_email_service"),
    )
    op.create_index("ix_operators_email", "operators", ["email"])
    op.create_index("ix_operators_admin_id", "operators", ["admin_id"])
    op.create_index("ix_operators_service_id", "operators", ["service_id"])

    op.create_table(
        "service_consent_requirements",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("service_id", sa.String(), nullable=False),
        sa.Column("country_code", sa.String(length=2), nullable=False),
        sa.Column("consent_type", consent_type, nullable=False),
        sa.Column("is_required", sa.Boolean(), nullable=False),
        sa.Column("document_type", sa.String(), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["service_id"], ["services.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "service_id",
            "country_code",
            "consent_type",
            name="uq_service_consent_requirements_scope",
        ),
    )
    op.create_index(
        "ix_service_consent_requirements_service_id",
        "service_consent_requirements",
        ["service_id"],
    )
    op.create_index(
        "ix_service_consent_requirements_country_code",
        "service_consent_requirements",
        ["country_code"],
    )

    op.create_table(
        "user_services",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("service_id", sa.String(), nullable=False),
        sa.Column("country_code", sa.String(length=2), nullable=False),
        sa.Column("status", entitlement_status, nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["service_id"], ["services.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "account_id",
            "service_id",
            "country_code",
            name="uq_user_services_account_service_country",
        ),
    )
    op.create_index("ix_user_services_account_id", "user_services", ["account_id"])
    op.create_index("ix_user_services_service_id", "user_services", ["service_id"])
    op.create_index("ix_user_services_status", "user_services", ["status"])

    op.create_table(
        "user_consents",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("entitlement_id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("service_id", sa.String(), nullable=False),
        sa.Column("country_code", sa.String(length=2), nullable=False),
        sa.Column("consent_type", consent_type, nullable=False),
        sa.Column("document_id", sa.String(), nullable=True),
        sa.Column("agreed", sa.Boolean(), nullable=False),
        sa.Column("agreed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["entitlement_id"], ["user_services.id"]),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["service_id"], ["services.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "account_id",
            "service_id",
            "country_code",
            "consent_type",
            name="uq_user_consents_scope_type",
        ),
    )
    op.create_index("ix_user_consents_entitlement_id", "user_consents", ["entitlement_id"])
    op.create_index("ix_user_consents_account_id", "user_consents", ["account_id"])
    op.create_index("ix_user_consents_service_id", "user_consents", ["service_id"])

    op.create_table(
        "auth_sessions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("subject_type", subject_type, nullable=False),
        sa.Column("token_hash", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("replaced_by", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_auth_sessions_subject_id", "auth_sessions", ["subject_id"])
    op.create_index("ix_auth_sessions_subject_type", "auth_sessions", ["subject_type"])
    op.create_index("ix_auth_sessions_token_hash", "auth_sessions", ["token_hash"], unique=True)

    op.create_table(
        "oauth_provider_configs",
        sa.Column("provider", oauth_provider, nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("client_id_encrypted", sa.String(), nullable=True),
        sa.Column("client_secret_encrypted", sa.String(), nullable=True),
        sa.Column("callback_url", sa.String(), nullable=True),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("provider"),
    )


def downgrade() -> None:
    op.drop_table("oauth_provider_configs")
    op.drop_index("ix_auth_sessions_token_hash", table_name="auth_sessions")
    op.drop_index("ix_auth_sessions_subject_type", table_name="auth_sessions")
    op.drop_index("ix_auth_sessions_subject_id", table_name="auth_sessions")
    op.drop_table("auth_sessions")
    op.drop_index("ix_user_consents_service_id", table_name="user_consents")
    op.drop_index("ix_user_consents_account_id", table_name="user_consents")
    op.drop_index("ix_user_consents_entitlement_id", table_name="user_consents")
    op.drop_table("user_consents")
    op.drop_index("ix_user_services_status", table_name="user_services")
    op.drop_index("ix_user_services_service_id", table_name="user_services")
    op.drop_index("ix_user_services_account_id", table_name="user_services")
    op.drop_table("user_services")
    op.drop_index(
        "ix_service_consent_requirements_country_code",
        table_name="service_consent_requirements",
    )
    op.drop_index(
        "ix_service_consent_requirements_service_id",
        table_name="service_consent_requirements",
    )
    op.drop_table("service_consent_requirements")
    op.drop_index("ix_operators_service_id", table_name="operators")
    op.drop_index("ix_operators_admin_id", table_name="operators")
    op.drop_index("ix_operators_email", table_name="operators")
    op.drop_table("operators")
    op.drop_index("ix_admin_services_service_id", table_name="admin_services")
    op.drop_index("ix_admin_services_admin_id", table_name="admin_services")
    op.drop_table("admin_services")
    op.drop_index("ix_services_slug", table_name="services")
    op.drop_table("services")
    op.drop_index("ix_admins_role_id", table_name="admins")
    op.drop_index("ix_admins_tenant_id", table_name="admins")
    op.drop_index("ix_admins_email", table_name="admins")
    op.drop_table("admins")
    op.drop_index("ix_roles_name", table_name="roles")
    op.drop_table("roles")
    op.drop_index("ix_oauth_identity_links_account_id", table_name="oauth_identity_links")
    op.drop_index("ix_oauth_identity_links_provider", table_name="oauth_identity_links")
    op.drop_table("oauth_identity_links")
    op.drop_table("profiles")
    op.drop_index("ix_accounts_created_at", table_name="accounts")
    op.drop_index("ix_accounts_username", table_name="accounts")
    op.drop_index("ix_accounts_email", table_name="accounts")
    op.drop_table("accounts")

    bind = op.get_bind()
    for enum_type in (
        consent_type,
        entitlement_status,
        subject_type,
        admin_scope,
        account_mode,
        oauth_provider,
    ):
        enum_type.drop(bind, checkfirst=True)
