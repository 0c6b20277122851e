from __future__ import annotations

from typing import Sequence, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from consentengine.core.config import get_settings
from consentengine.domain.models import (
    ConsentStatement,
    ConsentStatementLocalization,
    ConsentStatementVersion,
)
from consentengine.persistence.repos import statements as statements_repo
from consentengine.services.consent.versioning import LocalizedContent


FALLBACK_LANGUAGE = "en"

L = TypeVar("L", bound=LocalizedContent)


def language_fallback_chain(language: str | None, tenant_default_language: str | None = None) -> list[str]:
    # [user, tenant default, "en"], first occurrence wins.
    default_language = tenant_default_language or get_settings().consent_default_language
    chain: list[str] = []
    for candidate in (language, default_language, FALLBACK_LANGUAGE):
        if candidate and candidate not in chain:
            chain.append(candidate)
    return chain


def select_localization(
    localizations: Sequence[L],
    language: str | None,
    tenant_default_language: str | None = None,
) -> L | None:
    """Pick the localization to display for a version.

    Walks the fallback chain, then falls back to the first available row.
    Returns None only when the version has no localizations.
    """
    if not localizations:
        return None
    by_language = {loc.language: loc for loc in localizations}
    for candidate in language_fallback_chain(language, tenant_default_language):
        if candidate in by_language:
            return by_language[candidate]
    return localizations[0]


async def load_active_statements(session: AsyncSession, *, tenant_id: str) -> list[ConsentStatement]:
    return await statements_repo.list_active_statements(session, tenant_id=tenant_id)


async def load_current_versions(
    session: AsyncSession,
    *,
    tenant_id: str,
    statement_ids: list[str],
) -> dict[str, ConsentStatementVersion]:
    return await statements_repo.get_current_versions(
        session, tenant_id=tenant_id, statement_ids=statement_ids
    )


async def load_localizations(
    session: AsyncSession,
    *,
    tenant_id: str,
    version_ids: list[str],
) -> dict[str, list[ConsentStatementLocalization]]:
    # One query for every version shown on a screen.
    return await statements_repo.list_localizations_for_versions(
        session, tenant_id=tenant_id, version_ids=version_ids
    )
