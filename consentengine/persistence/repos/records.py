from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consentengine.domain.consent import RECORD_STATUS_GRANTED
from consentengine.domain.models import ConsentItemHistory, UserConsentRecord
from consentengine.persistence.guards import require_tenant_id, tenant_predicate


async def list_user_records(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
) -> dict[str, UserConsentRecord]:
    # One record per statement, keyed by statement id.
    stmt = select(UserConsentRecord).where(
        tenant_predicate(UserConsentRecord, tenant_id),
        UserConsentRecord.user_id == user_id,
    )
    result = await session.execute(stmt)
    return {row.statement_id: row for row in result.scalars().all()}


async def list_user_records_recent(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
) -> list[UserConsentRecord]:
    stmt = (
        select(UserConsentRecord)
        .where(
            tenant_predicate(UserConsentRecord, tenant_id),
            UserConsentRecord.user_id == user_id,
        )
        .order_by(UserConsentRecord.updated_at.desc(), UserConsentRecord.id.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_user_record(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    statement_id: str,
) -> UserConsentRecord | None:
    stmt = select(UserConsentRecord).where(
        tenant_predicate(UserConsentRecord, tenant_id),
        UserConsentRecord.user_id == user_id,
        UserConsentRecord.statement_id == statement_id,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_expirable_records(
    session: AsyncSession,
    *,
    tenant_id: str,
    now: datetime,
) -> list[UserConsentRecord]:
    # Granted records whose expiry has passed.
    stmt = select(UserConsentRecord).where(
        tenant_predicate(UserConsentRecord, tenant_id),
        UserConsentRecord.status == RECORD_STATUS_GRANTED,
        UserConsentRecord.expires_at.is_not(None),
        UserConsentRecord.expires_at < now,
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


def add_history(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    statement_id: str,
    action: str,
    created_at: datetime,
    version_before: str | None = None,
    version_after: str | None = None,
    status_before: str | None = None,
    status_after: str | None = None,
    ip_address_hash: str | None = None,
    user_agent: str | None = None,
    client_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> ConsentItemHistory:
    # Stage an append-only history row; the caller owns the commit.
    require_tenant_id(tenant_id, table=ConsentItemHistory.__tablename__)
    entry = ConsentItemHistory(
        id=uuid4().hex,
        tenant_id=tenant_id,
        user_id=user_id,
        statement_id=statement_id,
        action=action,
        version_before=version_before,
        version_after=version_after,
        status_before=status_before,
        status_after=status_after,
        ip_address_hash=ip_address_hash,
        user_agent=user_agent,
        client_id=client_id,
        metadata_json=metadata,
        created_at=created_at,
    )
    session.add(entry)
    return entry


async def list_history(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    statement_id: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[ConsentItemHistory]:
    stmt = select(ConsentItemHistory).where(
        tenant_predicate(ConsentItemHistory, tenant_id),
        ConsentItemHistory.user_id == user_id,
    )
    if statement_id:
        stmt = stmt.where(ConsentItemHistory.statement_id == statement_id)
    stmt = stmt.order_by(ConsentItemHistory.created_at.desc(), ConsentItemHistory.id.desc())
    result = await session.execute(stmt.offset(offset).limit(limit))
    return list(result.scalars().all())
