from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from consentengine.domain.consent import RECORD_STATUS_GRANTED, ConsentScreenItem
from consentengine.persistence.repos import records as records_repo
from consentengine.services.consent import catalog
from consentengine.services.consent.claims import load_user_claims
from consentengine.services.consent.requirements import resolve_consent_requirements


async def get_consent_items_for_screen(
    session: AsyncSession,
    *,
    tenant_id: str,
    client_id: str | None,
    user_id: str,
    language: str | None,
    tenant_default_language: str | None = None,
    pii_session: AsyncSession | None = None,
) -> list[ConsentScreenItem]:
    """Build the consent items shown to a user, in resolved-requirement order."""
    user_claims = await load_user_claims(
        session, tenant_id=tenant_id, user_id=user_id, pii_session=pii_session
    )
    requirements = await resolve_consent_requirements(
        session, tenant_id=tenant_id, client_id=client_id, user_claims=user_claims
    )
    if not requirements:
        return []
    records = await records_repo.list_user_records(session, tenant_id=tenant_id, user_id=user_id)
    localizations = await catalog.load_localizations(
        session,
        tenant_id=tenant_id,
        version_ids=[req.current_version.id for req in requirements],
    )

    items: list[ConsentScreenItem] = []
    for req in requirements:
        localization = catalog.select_localization(
            localizations.get(req.current_version.id, []),
            language,
            tenant_default_language,
        )
        record = records.get(req.statement_id)
        current_status = record.status if record else None
        current_version = record.version if record else None
        needs_version_upgrade = bool(
            current_status == RECORD_STATUS_GRANTED
            and current_version
            and req.min_version
            and current_version < req.min_version
        )
        items.append(
            ConsentScreenItem(
                statement_id=req.statement_id,
                slug=req.statement.slug,
                category=req.statement.category,
                legal_basis=req.statement.legal_basis,
                title=localization.title if localization else req.statement.slug,
                description=localization.description if localization else "",
                document_url=localization.document_url if localization else None,
                inline_content=localization.inline_content if localization else None,
                version=req.current_version.version,
                version_id=req.current_version.id,
                is_required=req.is_required,
                enforcement=req.enforcement,
                current_status=current_status,
                current_version=current_version,
                needs_version_upgrade=needs_version_upgrade,
                show_deletion_link=req.show_deletion_link,
                deletion_url=req.deletion_url,
                display_order=req.display_order,
            )
        )
    return items
