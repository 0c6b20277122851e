from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Iterable, Literal
from uuid import uuid4

from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from consentengine.core.errors import (
    ConsentConflictError,
    ConsentNotFoundError,
    ConsentValidationError,
)
from consentengine.domain.consent import (
    CLIENT_REQUIREMENT_INHERIT,
    CLIENT_REQUIREMENTS,
    CONTENT_TYPE_INLINE,
    CONTENT_TYPE_URL,
    ENFORCEMENT_BLOCK,
    ENFORCEMENT_MODES,
    VERSION_STATUS_DRAFT,
)
from consentengine.domain.models import (
    ClientConsentOverride,
    ConsentStatement,
    ConsentStatementLocalization,
    ConsentStatementVersion,
    TenantConsentRequirement,
)
from consentengine.persistence.repos import statements as statements_repo
from consentengine.services.consent.rules import validate_rules
from consentengine.services.consent.versioning import require_valid_version


logger = logging.getLogger(__name__)


class StatementPatch(BaseModel):
    slug: str | None = Field(default=None, min_length=1)
    category: str | None = None
    legal_basis: str | None = None
    processing_purpose: str | None = None
    display_order: int | None = None
    is_active: bool | None = None

    # Reject unknown fields so ids and tenant_id cannot be patched.
    model_config = {"extra": "forbid"}


class VersionPatch(BaseModel):
    content_type: Literal["url", "inline"] | None = None
    effective_at: datetime | None = None

    model_config = {"extra": "forbid"}


# Columns a patch may not clear.
_STATEMENT_REQUIRED_FIELDS = frozenset({"slug", "category", "legal_basis", "display_order", "is_active"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _commit(session: AsyncSession, *, conflict_message: str) -> None:
    # Unique constraints back the pre-checks when two writers race.
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConsentConflictError(conflict_message) from exc
    except SQLAlchemyError:
        await session.rollback()
        raise


async def _require_statement(session: AsyncSession, *, tenant_id: str, statement_id: str) -> ConsentStatement:
    statement = await statements_repo.get_statement(session, tenant_id=tenant_id, statement_id=statement_id)
    if statement is None:
        raise ConsentNotFoundError("Statement not found")
    return statement


async def _require_draft_version(
    session: AsyncSession,
    *,
    tenant_id: str,
    version_id: str,
    action: str,
) -> ConsentStatementVersion:
    version = await statements_repo.get_version(session, tenant_id=tenant_id, version_id=version_id)
    if version is None:
        raise ConsentNotFoundError("Version not found")
    if version.status != VERSION_STATUS_DRAFT:
        raise ConsentValidationError(f"Only draft versions can be {action}")
    return version


def _validate_enforcement(enforcement: str | None) -> None:
    if enforcement is not None and enforcement not in ENFORCEMENT_MODES:
        raise ConsentValidationError(f"enforcement must be one of {sorted(ENFORCEMENT_MODES)}")


def _serialize_rules(conditional_rules: Iterable[Any] | None) -> list[dict[str, Any]] | None:
    if not conditional_rules:
        return None
    return [rule.to_json() for rule in validate_rules(conditional_rules)]


async def create_statement(
    session: AsyncSession,
    *,
    tenant_id: str,
    slug: str,
    category: str | None = None,
    legal_basis: str | None = None,
    processing_purpose: str | None = None,
    display_order: int | None = None,
) -> ConsentStatement:
    if not slug or not isinstance(slug, str):
        raise ConsentValidationError("slug is required")
    existing = await statements_repo.get_statement_by_slug(session, tenant_id=tenant_id, slug=slug)
    if existing is not None:
        raise ConsentConflictError("A statement with this slug already exists")
    now = _utc_now()
    statement = ConsentStatement(
        id=uuid4().hex,
        tenant_id=tenant_id,
        slug=slug,
        category=category or "custom",
        legal_basis=legal_basis or "consent",
        processing_purpose=processing_purpose,
        display_order=display_order or 0,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    session.add(statement)
    await _commit(session, conflict_message="A statement with this slug already exists")
    logger.info("consent_statement_created tenant=%s statement=%s slug=%s", tenant_id, statement.id, slug)
    return statement


async def deactivate_statement(session: AsyncSession, *, tenant_id: str, statement_id: str) -> ConsentStatement:
    # Soft delete: inactive statements drop out of requirement resolution.
    statement = await _require_statement(session, tenant_id=tenant_id, statement_id=statement_id)
    statement.is_active = False
    statement.updated_at = _utc_now()
    await _commit(session, conflict_message="Statement update conflicted")
    logger.info("consent_statement_deactivated tenant=%s statement=%s", tenant_id, statement_id)
    return statement


async def update_statement(
    session: AsyncSession,
    *,
    tenant_id: str,
    statement_id: str,
    patch: StatementPatch,
) -> ConsentStatement:
    """Apply the fields set on ``patch``; omitted fields keep their values."""
    updates = patch.model_dump(exclude_unset=True)
    if not updates:
        raise ConsentValidationError("No fields to update")
    cleared = sorted(key for key, value in updates.items() if value is None and key in _STATEMENT_REQUIRED_FIELDS)
    if cleared:
        raise ConsentValidationError(f"Fields cannot be cleared: {', '.join(cleared)}")
    statement = await _require_statement(session, tenant_id=tenant_id, statement_id=statement_id)
    new_slug = updates.get("slug")
    if new_slug is not None and new_slug != statement.slug:
        existing = await statements_repo.get_statement_by_slug(session, tenant_id=tenant_id, slug=new_slug)
        if existing is not None:
            raise ConsentConflictError("A statement with this slug already exists")
    for key, value in updates.items():
        setattr(statement, key, value)
    statement.updated_at = _utc_now()
    await _commit(session, conflict_message="A statement with this slug already exists")
    logger.info(
        "consent_statement_updated tenant=%s statement=%s fields=%s",
        tenant_id,
        statement_id,
        ",".join(sorted(updates)),
    )
    return statement


async def create_version(
    session: AsyncSession,
    *,
    tenant_id: str,
    statement_id: str,
    version: str,
    effective_at: datetime,
    content_type: str = CONTENT_TYPE_URL,
) -> ConsentStatementVersion:
    """Create a draft version; it becomes current only through activation."""
    require_valid_version(version)
    if content_type not in (CONTENT_TYPE_URL, CONTENT_TYPE_INLINE):
        raise ConsentValidationError("content_type must be 'url' or 'inline'")
    if effective_at is None:
        raise ConsentValidationError("effective_at is required")
    await _require_statement(session, tenant_id=tenant_id, statement_id=statement_id)
    existing = await statements_repo.get_version_by_string(
        session, tenant_id=tenant_id, statement_id=statement_id, version=version
    )
    if existing is not None:
        raise ConsentConflictError("This version already exists for this statement")
    now = _utc_now()
    row = ConsentStatementVersion(
        id=uuid4().hex,
        tenant_id=tenant_id,
        statement_id=statement_id,
        version=version,
        content_type=content_type,
        effective_at=effective_at,
        is_current=False,
        status=VERSION_STATUS_DRAFT,
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    await _commit(session, conflict_message="This version already exists for this statement")
    logger.info(
        "consent_version_created tenant=%s statement=%s version=%s", tenant_id, statement_id, version
    )
    return row


async def update_draft_version(
    session: AsyncSession,
    *,
    tenant_id: str,
    version_id: str,
    patch: VersionPatch,
) -> ConsentStatementVersion:
    updates = patch.model_dump(exclude_unset=True)
    if not updates:
        raise ConsentValidationError("No fields to update")
    if any(value is None for value in updates.values()):
        raise ConsentValidationError("content_type and effective_at cannot be cleared")
    version = await _require_draft_version(session, tenant_id=tenant_id, version_id=version_id, action="updated")
    for key, value in updates.items():
        setattr(version, key, value)
    version.updated_at = _utc_now()
    await _commit(session, conflict_message="Version update conflicted")
    logger.info(
        "consent_version_updated tenant=%s version_id=%s fields=%s",
        tenant_id,
        version_id,
        ",".join(sorted(updates)),
    )
    return version


async def delete_draft_version(session: AsyncSession, *, tenant_id: str, version_id: str) -> None:
    version = await _require_draft_version(session, tenant_id=tenant_id, version_id=version_id, action="deleted")
    for localization in await statements_repo.list_localizations(
        session, tenant_id=tenant_id, version_id=version_id
    ):
        await session.delete(localization)
    await session.delete(version)
    await _commit(session, conflict_message="Version delete conflicted")
    logger.info("consent_version_deleted tenant=%s version_id=%s", tenant_id, version_id)


async def upsert_localization(
    session: AsyncSession,
    *,
    tenant_id: str,
    version_id: str,
    language: str,
    title: str,
    description: str,
    document_url: str | None = None,
    inline_content: str | None = None,
) -> ConsentStatementLocalization:
    if not title or not description:
        raise ConsentValidationError("title and description are required")
    if not language:
        raise ConsentValidationError("language is required")
    # Published content is immutable; its hash was stamped at activation.
    await _require_draft_version(session, tenant_id=tenant_id, version_id=version_id, action="edited")
    now = _utc_now()
    row = await statements_repo.get_localization(
        session, tenant_id=tenant_id, version_id=version_id, language=language
    )
    if row is None:
        row = ConsentStatementLocalization(
            id=uuid4().hex,
            tenant_id=tenant_id,
            version_id=version_id,
            language=language,
            created_at=now,
        )
        session.add(row)
    row.title = title
    row.description = description
    row.document_url = document_url
    row.inline_content = inline_content
    row.updated_at = now
    await _commit(session, conflict_message="Localization already exists for this language")
    logger.info(
        "consent_localization_upserted tenant=%s version_id=%s language=%s", tenant_id, version_id, language
    )
    return row


async def delete_localization(
    session: AsyncSession,
    *,
    tenant_id: str,
    version_id: str,
    language: str,
) -> bool:
    # Draft only, like edits; returns False when no row matched.
    await _require_draft_version(session, tenant_id=tenant_id, version_id=version_id, action="edited")
    deleted = await statements_repo.delete_localization(
        session, tenant_id=tenant_id, version_id=version_id, language=language
    )
    await _commit(session, conflict_message="Localization delete conflicted")
    logger.info(
        "consent_localization_deleted tenant=%s version_id=%s language=%s deleted=%s",
        tenant_id,
        version_id,
        language,
        deleted,
    )
    return deleted


async def set_tenant_requirement(
    session: AsyncSession,
    *,
    tenant_id: str,
    statement_id: str,
    is_required: bool,
    min_version: str | None = None,
    enforcement: str | None = None,
    show_deletion_link: bool = False,
    deletion_url: str | None = None,
    conditional_rules: Iterable[Any] | None = None,
    display_order: int | None = None,
) -> TenantConsentRequirement:
    if min_version:
        require_valid_version(min_version, field_name="min_version")
    _validate_enforcement(enforcement)
    rules_json = _serialize_rules(conditional_rules)
    await _require_statement(session, tenant_id=tenant_id, statement_id=statement_id)
    now = _utc_now()
    row = await statements_repo.get_tenant_requirement(session, tenant_id=tenant_id, statement_id=statement_id)
    if row is None:
        row = TenantConsentRequirement(
            id=uuid4().hex,
            tenant_id=tenant_id,
            statement_id=statement_id,
            created_at=now,
        )
        session.add(row)
    row.is_required = bool(is_required)
    row.min_version = min_version or None
    row.enforcement = enforcement or ENFORCEMENT_BLOCK
    row.show_deletion_link = bool(show_deletion_link)
    row.deletion_url = deletion_url
    row.conditional_rules_json = rules_json
    row.display_order = display_order
    row.updated_at = now
    await _commit(session, conflict_message="Requirement already exists for this statement")
    logger.info(
        "consent_requirement_upserted tenant=%s statement=%s required=%s",
        tenant_id,
        statement_id,
        row.is_required,
    )
    return row


async def delete_tenant_requirement(session: AsyncSession, *, tenant_id: str, statement_id: str) -> bool:
    # Removing the row falls back to the optional, block-enforced default.
    deleted = await statements_repo.delete_tenant_requirement(
        session, tenant_id=tenant_id, statement_id=statement_id
    )
    await _commit(session, conflict_message="Requirement delete conflicted")
    logger.info(
        "consent_requirement_deleted tenant=%s statement=%s deleted=%s", tenant_id, statement_id, deleted
    )
    return deleted


async def set_client_override(
    session: AsyncSession,
    *,
    tenant_id: str,
    client_id: str,
    statement_id: str,
    requirement: str = CLIENT_REQUIREMENT_INHERIT,
    min_version: str | None = None,
    enforcement: str | None = None,
    conditional_rules: Iterable[Any] | None = None,
    display_order: int | None = None,
) -> ClientConsentOverride:
    if not client_id:
        raise ConsentValidationError("client_id is required")
    if requirement not in CLIENT_REQUIREMENTS:
        raise ConsentValidationError(f"requirement must be one of {sorted(CLIENT_REQUIREMENTS)}")
    if min_version:
        require_valid_version(min_version, field_name="min_version")
    _validate_enforcement(enforcement)
    rules_json = _serialize_rules(conditional_rules)
    await _require_statement(session, tenant_id=tenant_id, statement_id=statement_id)
    now = _utc_now()
    row = await statements_repo.get_client_override(
        session, tenant_id=tenant_id, client_id=client_id, statement_id=statement_id
    )
    if row is None:
        row = ClientConsentOverride(
            id=uuid4().hex,
            tenant_id=tenant_id,
            client_id=client_id,
            statement_id=statement_id,
            created_at=now,
        )
        session.add(row)
    row.requirement = requirement
    row.min_version = min_version or None
    row.enforcement = enforcement
    row.conditional_rules_json = rules_json
    row.display_order = display_order
    row.updated_at = now
    await _commit(session, conflict_message="Override already exists for this client and statement")
    logger.info(
        "consent_client_override_upserted tenant=%s client=%s statement=%s requirement=%s",
        tenant_id,
        client_id,
        statement_id,
        requirement,
    )
    return row


async def delete_client_override(
    session: AsyncSession,
    *,
    tenant_id: str,
    client_id: str,
    statement_id: str,
) -> bool:
    deleted = await statements_repo.delete_client_override(
        session, tenant_id=tenant_id, client_id=client_id, statement_id=statement_id
    )
    await _commit(session, conflict_message="Override delete conflicted")
    logger.info(
        "consent_client_override_deleted tenant=%s client=%s statement=%s deleted=%s",
        tenant_id,
        client_id,
        statement_id,
        deleted,
    )
    return deleted
