from __future__ import annotations

import calendar
from datetime import datetime, timezone
import hashlib
import logging
from typing import Iterable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from consentengine.core.config import VERSION_LENGTH
from consentengine.core.errors import ConsentNotFoundError, ConsentValidationError
from consentengine.domain.consent import CONTENT_TYPE_URL
from consentengine.domain.models import ConsentStatementVersion
from consentengine.persistence.repos import statements as statements_repo
from consentengine.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class LocalizedContent(Protocol):
    language: str
    document_url: str | None
    inline_content: str | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_version_format(version: str) -> bool:
    """Return True when ``version`` is an 8-digit YYYYMMDD string naming a real date."""
    if not isinstance(version, str) or len(version) != VERSION_LENGTH:
        return False
    if not (version.isascii() and version.isdigit()):
        return False
    year = int(version[0:4])
    month = int(version[4:6])
    day = int(version[6:8])
    if month < 1 or month > 12:
        return False
    # calendar rejects year 0; the proleptic calendar treats it as a leap year like 2000.
    days_in_month = calendar.monthrange(year or 2000, month)[1]
    return 1 <= day <= days_in_month


def require_valid_version(version: str, *, field_name: str = "version") -> str:
    if not validate_version_format(version):
        raise ConsentValidationError(f"{field_name} must be YYYYMMDD format (8 digits, valid date)")
    return version


def hash_localized_content(content_type: str, localizations: Iterable[LocalizedContent]) -> str:
    """Hash a version's localized content.

    Rows are sorted by language so storage order never affects the digest. URL
    versions hash ``document_url``; inline versions hash ``inline_content``.
    """
    parts: list[str] = []
    for loc in sorted(localizations, key=lambda item: item.language):
        if content_type == CONTENT_TYPE_URL:
            value = loc.document_url or ""
        else:
            value = loc.inline_content or ""
        parts.append(f"{loc.language}:{value}\n")
    return hashlib.sha256("".join(parts).encode("utf-8")).hexdigest()


async def compute_content_hash(session: AsyncSession, *, tenant_id: str, version_id: str) -> str:
    version = await statements_repo.get_version(session, tenant_id=tenant_id, version_id=version_id)
    if version is None:
        raise ConsentNotFoundError("Version not found for content hash")
    localizations = await statements_repo.list_localizations(
        session, tenant_id=tenant_id, version_id=version_id
    )
    return hash_localized_content(version.content_type, localizations)


async def activate_version(
    session: AsyncSession,
    *,
    tenant_id: str,
    statement_id: str,
    version_id: str,
    now: datetime | None = None,
) -> ConsentStatementVersion:
    """Make ``version_id`` the single current version of ``statement_id``.

    The previous current version is archived and the target promoted in one
    transaction, so readers never observe zero or two current versions.
    """
    version = await statements_repo.get_version(
        session, tenant_id=tenant_id, version_id=version_id, statement_id=statement_id
    )
    if version is None:
        raise ConsentNotFoundError("Version not found")
    localizations = await statements_repo.list_localizations(
        session, tenant_id=tenant_id, version_id=version_id
    )
    if not localizations:
        raise ConsentValidationError("Cannot activate version without at least one localization")

    content_hash = hash_localized_content(version.content_type, localizations)
    timestamp = now or _utc_now()
    try:
        await statements_repo.demote_current_versions(
            session, tenant_id=tenant_id, statement_id=statement_id, now=timestamp
        )
        await statements_repo.promote_version(
            session,
            tenant_id=tenant_id,
            version_id=version_id,
            content_hash=content_hash,
            now=timestamp,
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.error(
            "consent_version_activation_failed tenant=%s statement=%s version_id=%s",
            tenant_id,
            statement_id,
            version_id,
        )
        raise
    increment_counter("consent_version_activations_total")
    logger.info(
        "consent_version_activated tenant=%s statement=%s version=%s hash=%s",
        tenant_id,
        statement_id,
        version.version,
        content_hash,
    )
    await session.refresh(version)
    return version
