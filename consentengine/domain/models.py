from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite test databases).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class ConsentStatement(Base):
    __tablename__ = "consent_statements"
    __table_args__ = (
        UniqueConstraint("tenant_id", "slug", name="uq_consent_statements_slug"),
        Index("ix_consent_statements_tenant_active", "tenant_id", "is_active"),
    )

    # One consentable item (terms of service, marketing, ...) per tenant slug.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    slug: Mapped[str] = mapped_column(String)
    category: Mapped[str] = mapped_column(String, default="custom")
    legal_basis: Mapped[str] = mapped_column(String, default="consent")
    processing_purpose: Mapped[str | None] = mapped_column(Text, nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ConsentStatementVersion(Base):
    __tablename__ = "consent_statement_versions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "statement_id", "version", name="uq_consent_statement_versions_version"),
        Index("ix_consent_statement_versions_statement_current", "statement_id", "is_current"),
        # At most one current version per statement.
        Index(
            "uq_consent_statement_versions_current",
            "tenant_id",
            "statement_id",
            unique=True,
            postgresql_where=text("is_current"),
            sqlite_where=text("is_current = 1"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    statement_id: Mapped[str] = mapped_column(
        String, ForeignKey("consent_statements.id", ondelete="CASCADE"), index=True
    )
    # YYYYMMDD; compared as a string, never parsed for ordering.
    version: Mapped[str] = mapped_column(String(8))
    # 'url' | 'inline'
    content_type: Mapped[str] = mapped_column(String, default="url")
    effective_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # SHA-256 of the localized content, stamped on activation.
    content_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    is_current: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # 'draft' | 'active' | 'archived'
    status: Mapped[str] = mapped_column(String, default="draft")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ConsentStatementLocalization(Base):
    __tablename__ = "consent_statement_localizations"
    __table_args__ = (
        UniqueConstraint("version_id", "language", name="uq_consent_statement_localizations_language"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    version_id: Mapped[str] = mapped_column(
        String, ForeignKey("consent_statement_versions.id", ondelete="CASCADE"), index=True
    )
    # BCP 47 language tag.
    language: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text)
    document_url: Mapped[str | None] = mapped_column(String, nullable=True)
    inline_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class TenantConsentRequirement(Base):
    __tablename__ = "tenant_consent_requirements"
    __table_args__ = (
        UniqueConstraint("tenant_id", "statement_id", name="uq_tenant_consent_requirements_statement"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    statement_id: Mapped[str] = mapped_column(
        String, ForeignKey("consent_statements.id", ondelete="CASCADE")
    )
    is_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    min_version: Mapped[str | None] = mapped_column(String(8), nullable=True)
    # 'block' | 'allow_continue'
    enforcement: Mapped[str] = mapped_column(String, default="block")
    show_deletion_link: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deletion_url: Mapped[str | None] = mapped_column(String, nullable=True)
    # Ordered list of {claim, op, value, result} objects.
    conditional_rules_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    # Null falls back to the statement's own display order.
    display_order: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ClientConsentOverride(Base):
    __tablename__ = "client_consent_overrides"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "client_id", "statement_id", name="uq_client_consent_overrides_statement"
        ),
        Index("ix_client_consent_overrides_tenant_client", "tenant_id", "client_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    client_id: Mapped[str] = mapped_column(String)
    statement_id: Mapped[str] = mapped_column(
        String, ForeignKey("consent_statements.id", ondelete="CASCADE")
    )
    # 'required' | 'optional' | 'hidden' | 'inherit'
    requirement: Mapped[str] = mapped_column(String, default="inherit")
    # Null columns inherit the tenant value.
    min_version: Mapped[str | None] = mapped_column(String(8), nullable=True)
    enforcement: Mapped[str | None] = mapped_column(String, nullable=True)
    conditional_rules_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    display_order: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UserConsentRecord(Base):
    __tablename__ = "user_consent_records"
    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", "statement_id", name="uq_user_consent_records_statement"),
        Index("ix_user_consent_records_tenant_user", "tenant_id", "user_id"),
        Index("ix_user_consent_records_tenant_statement", "tenant_id", "statement_id"),
        Index("ix_user_consent_records_expires_at", "expires_at"),
    )

    # Latest decision per (tenant, user, statement); mutated in place.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    user_id: Mapped[str] = mapped_column(String)
    statement_id: Mapped[str] = mapped_column(String, ForeignKey("consent_statements.id"))
    version_id: Mapped[str] = mapped_column(String, ForeignKey("consent_statement_versions.id"))
    version: Mapped[str] = mapped_column(String(8))
    # 'granted' | 'denied' | 'withdrawn' | 'expired'
    status: Mapped[str] = mapped_column(String, index=True)
    # Kept on withdrawal as evidence of the original grant.
    granted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    withdrawn_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    client_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Tenant-salted SHA-256; raw IPs are never stored.
    ip_address_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    receipt_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ConsentItemHistory(Base):
    __tablename__ = "consent_item_history"
    __table_args__ = (
        Index("ix_consent_item_history_user_created", "user_id", "created_at"),
        Index("ix_consent_item_history_statement_created", "statement_id", "created_at"),
        Index("ix_consent_item_history_tenant_created", "tenant_id", "created_at"),
    )

    # Append-only; one row per consent state transition.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    user_id: Mapped[str] = mapped_column(String)
    statement_id: Mapped[str] = mapped_column(String)
    # 'granted' | 'denied' | 'withdrawn' | 'version_upgraded' | 'expired'
    action: Mapped[str] = mapped_column(String)
    version_before: Mapped[str | None] = mapped_column(String(8), nullable=True)
    version_after: Mapped[str | None] = mapped_column(String(8), nullable=True)
    status_before: Mapped[str | None] = mapped_column(String, nullable=True)
    status_after: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    client_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class UserProfile(Base):
    __tablename__ = "users_core"

    # Base identity claims readable by conditional consent rules.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    email_verified: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    locale: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserPii(Base):
    __tablename__ = "users_pii"

    # Supplementary profile claims; may be served from a separate database.
    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    given_name: Mapped[str | None] = mapped_column(String, nullable=True)
    family_name: Mapped[str | None] = mapped_column(String, nullable=True)
    # ISO 8601 date string as issued in OIDC claims.
    birthdate: Mapped[str | None] = mapped_column(String, nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String, nullable=True)
    address_country: Mapped[str | None] = mapped_column(String, nullable=True)
    address_region: Mapped[str | None] = mapped_column(String, nullable=True)
    zoneinfo: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
