from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from consentengine.domain.consent import VERSION_STATUS_ACTIVE, VERSION_STATUS_ARCHIVED
from consentengine.domain.models import (
    ClientConsentOverride,
    ConsentStatement,
    ConsentStatementLocalization,
    ConsentStatementVersion,
    TenantConsentRequirement,
)
from consentengine.persistence.guards import require_tenant_id, tenant_predicate


async def list_active_statements(session: AsyncSession, *, tenant_id: str) -> list[ConsentStatement]:
    # Catalog order: display_order, then creation time; id keeps ties deterministic.
    stmt = (
        select(ConsentStatement)
        .where(
            tenant_predicate(ConsentStatement, tenant_id),
            ConsentStatement.is_active.is_(True),
        )
        .order_by(
            ConsentStatement.display_order.asc(),
            ConsentStatement.created_at.asc(),
            ConsentStatement.id.asc(),
        )
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_statement(
    session: AsyncSession,
    *,
    tenant_id: str,
    statement_id: str,
) -> ConsentStatement | None:
    stmt = select(ConsentStatement).where(
        tenant_predicate(ConsentStatement, tenant_id),
        ConsentStatement.id == statement_id,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_statement_by_slug(
    session: AsyncSession,
    *,
    tenant_id: str,
    slug: str,
) -> ConsentStatement | None:
    stmt = select(ConsentStatement).where(
        tenant_predicate(ConsentStatement, tenant_id),
        ConsentStatement.slug == slug,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_current_versions(
    session: AsyncSession,
    *,
    tenant_id: str,
    statement_ids: list[str],
) -> dict[str, ConsentStatementVersion]:
    # Map statement id -> its is_current version; statements without one are absent.
    require_tenant_id(tenant_id, table=ConsentStatementVersion.__tablename__)
    if not statement_ids:
        return {}
    stmt = select(ConsentStatementVersion).where(
        tenant_predicate(ConsentStatementVersion, tenant_id),
        ConsentStatementVersion.statement_id.in_(statement_ids),
        ConsentStatementVersion.is_current.is_(True),
    )
    result = await session.execute(stmt)
    return {row.statement_id: row for row in result.scalars().all()}


async def get_current_version(
    session: AsyncSession,
    *,
    tenant_id: str,
    statement_id: str,
) -> ConsentStatementVersion | None:
    versions = await get_current_versions(session, tenant_id=tenant_id, statement_ids=[statement_id])
    return versions.get(statement_id)


async def get_version(
    session: AsyncSession,
    *,
    tenant_id: str,
    version_id: str,
    statement_id: str | None = None,
) -> ConsentStatementVersion | None:
    stmt = select(ConsentStatementVersion).where(
        tenant_predicate(ConsentStatementVersion, tenant_id),
        ConsentStatementVersion.id == version_id,
    )
    if statement_id is not None:
        stmt = stmt.where(ConsentStatementVersion.statement_id == statement_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_version_by_string(
    session: AsyncSession,
    *,
    tenant_id: str,
    statement_id: str,
    version: str,
) -> ConsentStatementVersion | None:
    stmt = select(ConsentStatementVersion).where(
        tenant_predicate(ConsentStatementVersion, tenant_id),
        ConsentStatementVersion.statement_id == statement_id,
        ConsentStatementVersion.version == version,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def demote_current_versions(
    session: AsyncSession,
    *,
    tenant_id: str,
    statement_id: str,
    now: datetime,
) -> None:
    stmt = (
        update(ConsentStatementVersion)
        .where(
            tenant_predicate(ConsentStatementVersion, tenant_id),
            ConsentStatementVersion.statement_id == statement_id,
            ConsentStatementVersion.is_current.is_(True),
        )
        .values(is_current=False, status=VERSION_STATUS_ARCHIVED, updated_at=now)
    )
    await session.execute(stmt)


async def promote_version(
    session: AsyncSession,
    *,
    tenant_id: str,
    version_id: str,
    content_hash: str,
    now: datetime,
) -> None:
    stmt = (
        update(ConsentStatementVersion)
        .where(
            tenant_predicate(ConsentStatementVersion, tenant_id),
            ConsentStatementVersion.id == version_id,
        )
        .values(is_current=True, status=VERSION_STATUS_ACTIVE, content_hash=content_hash, updated_at=now)
    )
    await session.execute(stmt)


async def list_localizations(
    session: AsyncSession,
    *,
    tenant_id: str,
    version_id: str,
) -> list[ConsentStatementLocalization]:
    mapping = await list_localizations_for_versions(session, tenant_id=tenant_id, version_ids=[version_id])
    return mapping.get(version_id, [])


async def list_localizations_for_versions(
    session: AsyncSession,
    *,
    tenant_id: str,
    version_ids: list[str],
) -> dict[str, list[ConsentStatementLocalization]]:
    # Rows per version, ordered by language.
    require_tenant_id(tenant_id, table=ConsentStatementLocalization.__tablename__)
    if not version_ids:
        return {}
    stmt = (
        select(ConsentStatementLocalization)
        .where(
            tenant_predicate(ConsentStatementLocalization, tenant_id),
            ConsentStatementLocalization.version_id.in_(version_ids),
        )
        .order_by(ConsentStatementLocalization.language.asc())
    )
    result = await session.execute(stmt)
    mapping: dict[str, list[ConsentStatementLocalization]] = {}
    for row in result.scalars().all():
        mapping.setdefault(row.version_id, []).append(row)
    return mapping


async def get_localization(
    session: AsyncSession,
    *,
    tenant_id: str,
    version_id: str,
    language: str,
) -> ConsentStatementLocalization | None:
    stmt = select(ConsentStatementLocalization).where(
        tenant_predicate(ConsentStatementLocalization, tenant_id),
        ConsentStatementLocalization.version_id == version_id,
        ConsentStatementLocalization.language == language,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def delete_localization(
    session: AsyncSession,
    *,
    tenant_id: str,
    version_id: str,
    language: str,
) -> bool:
    stmt = delete(ConsentStatementLocalization).where(
        tenant_predicate(ConsentStatementLocalization, tenant_id),
        ConsentStatementLocalization.version_id == version_id,
        ConsentStatementLocalization.language == language,
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)


async def list_tenant_requirements(
    session: AsyncSession,
    *,
    tenant_id: str,
) -> dict[str, TenantConsentRequirement]:
    stmt = select(TenantConsentRequirement).where(tenant_predicate(TenantConsentRequirement, tenant_id))
    result = await session.execute(stmt)
    return {row.statement_id: row for row in result.scalars().all()}


async def get_tenant_requirement(
    session: AsyncSession,
    *,
    tenant_id: str,
    statement_id: str,
) -> TenantConsentRequirement | None:
    stmt = select(TenantConsentRequirement).where(
        tenant_predicate(TenantConsentRequirement, tenant_id),
        TenantConsentRequirement.statement_id == statement_id,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def delete_tenant_requirement(
    session: AsyncSession,
    *,
    tenant_id: str,
    statement_id: str,
) -> bool:
    stmt = delete(TenantConsentRequirement).where(
        tenant_predicate(TenantConsentRequirement, tenant_id),
        TenantConsentRequirement.statement_id == statement_id,
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)


async def list_client_overrides(
    session: AsyncSession,
    *,
    tenant_id: str,
    client_id: str,
) -> dict[str, ClientConsentOverride]:
    stmt = select(ClientConsentOverride).where(
        tenant_predicate(ClientConsentOverride, tenant_id),
        ClientConsentOverride.client_id == client_id,
    )
    result = await session.execute(stmt)
    return {row.statement_id: row for row in result.scalars().all()}


async def get_client_override(
    session: AsyncSession,
    *,
    tenant_id: str,
    client_id: str,
    statement_id: str,
) -> ClientConsentOverride | None:
    stmt = select(ClientConsentOverride).where(
        tenant_predicate(ClientConsentOverride, tenant_id),
        ClientConsentOverride.client_id == client_id,
        ClientConsentOverride.statement_id == statement_id,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def delete_client_override(
    session: AsyncSession,
    *,
    tenant_id: str,
    client_id: str,
    statement_id: str,
) -> bool:
    stmt = delete(ClientConsentOverride).where(
        tenant_predicate(ClientConsentOverride, tenant_id),
        ClientConsentOverride.client_id == client_id,
        ClientConsentOverride.statement_id == statement_id,
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)
