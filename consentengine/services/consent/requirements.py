from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from consentengine.domain.consent import (
    CLIENT_REQUIREMENT_HIDDEN,
    CLIENT_REQUIREMENT_OPTIONAL,
    CLIENT_REQUIREMENT_REQUIRED,
    ENFORCEMENT_BLOCK,
    RECORD_STATUS_GRANTED,
    ResolvedConsentRequirement,
    SatisfactionResult,
)
from consentengine.domain.models import UserConsentRecord
from consentengine.persistence.repos import records as records_repo
from consentengine.persistence.repos import statements as statements_repo
from consentengine.services.consent import catalog
from consentengine.services.consent.rules import evaluate_conditional_rules, parse_rules


logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; stored values are always UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def resolve_consent_requirements(
    session: AsyncSession,
    *,
    tenant_id: str,
    client_id: str | None,
    user_claims: Mapping[str, Any],
) -> list[ResolvedConsentRequirement]:
    """Merge tenant defaults, client overrides and conditional rules per statement.

    Statements without a current version are never returned. A ``hidden``
    outcome from the client override or from either rule list drops the
    statement. The result is stably sorted by display order.
    """
    statements = await catalog.load_active_statements(session, tenant_id=tenant_id)
    if not statements:
        return []
    current_versions = await catalog.load_current_versions(
        session, tenant_id=tenant_id, statement_ids=[stmt.id for stmt in statements]
    )
    tenant_requirements = await statements_repo.list_tenant_requirements(session, tenant_id=tenant_id)
    client_overrides = {}
    if client_id:
        client_overrides = await statements_repo.list_client_overrides(
            session, tenant_id=tenant_id, client_id=client_id
        )

    resolved: list[ResolvedConsentRequirement] = []
    for stmt in statements:
        current_version = current_versions.get(stmt.id)
        if current_version is None:
            continue
        tenant_req = tenant_requirements.get(stmt.id)
        override = client_overrides.get(stmt.id)
        if override is not None and override.requirement == CLIENT_REQUIREMENT_HIDDEN:
            continue

        is_required = bool(tenant_req.is_required) if tenant_req else False
        min_version = tenant_req.min_version if tenant_req else None
        enforcement = (tenant_req.enforcement if tenant_req else None) or ENFORCEMENT_BLOCK
        show_deletion_link = bool(tenant_req.show_deletion_link) if tenant_req else False
        deletion_url = tenant_req.deletion_url if tenant_req else None
        display_order = stmt.display_order
        if tenant_req is not None and tenant_req.display_order is not None:
            display_order = tenant_req.display_order

        if tenant_req is not None and tenant_req.conditional_rules_json:
            outcome = evaluate_conditional_rules(parse_rules(tenant_req.conditional_rules_json), user_claims)
            if outcome == CLIENT_REQUIREMENT_HIDDEN:
                continue
            if outcome == CLIENT_REQUIREMENT_REQUIRED:
                is_required = True
            elif outcome == CLIENT_REQUIREMENT_OPTIONAL:
                is_required = False

        if override is not None:
            if override.requirement == CLIENT_REQUIREMENT_REQUIRED:
                is_required = True
            elif override.requirement == CLIENT_REQUIREMENT_OPTIONAL:
                is_required = False
            if override.min_version:
                min_version = override.min_version
            if override.enforcement:
                enforcement = override.enforcement
            if override.display_order is not None:
                display_order = override.display_order
            if override.conditional_rules_json:
                outcome = evaluate_conditional_rules(parse_rules(override.conditional_rules_json), user_claims)
                # Client rules can still hide a statement the tenant rules kept.
                if outcome == CLIENT_REQUIREMENT_HIDDEN:
                    continue
                if outcome == CLIENT_REQUIREMENT_REQUIRED:
                    is_required = True
                elif outcome == CLIENT_REQUIREMENT_OPTIONAL:
                    is_required = False

        resolved.append(
            ResolvedConsentRequirement(
                statement_id=stmt.id,
                statement=stmt,
                current_version=current_version,
                is_required=is_required,
                min_version=min_version,
                enforcement=enforcement,
                show_deletion_link=show_deletion_link,
                deletion_url=deletion_url,
                display_order=display_order,
            )
        )

    # sorted() is stable, so ties keep catalog order.
    return sorted(resolved, key=lambda item: item.display_order)


def record_satisfies(
    record: UserConsentRecord | None,
    requirement: ResolvedConsentRequirement,
    *,
    now: datetime,
) -> bool:
    if record is None or record.status != RECORD_STATUS_GRANTED:
        return False
    if record.expires_at is not None and _as_utc(record.expires_at) < now:
        return False
    if requirement.min_version and record.version < requirement.min_version:
        return False
    return True


async def check_user_consent_satisfaction(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    requirements: list[ResolvedConsentRequirement],
    now: datetime | None = None,
) -> SatisfactionResult:
    """Report which required statements the user's records do not cover."""
    if not requirements:
        return SatisfactionResult(satisfied=True, unsatisfied=[])
    records = await records_repo.list_user_records(session, tenant_id=tenant_id, user_id=user_id)
    timestamp = now or datetime.now(timezone.utc)
    unsatisfied = [
        req.statement_id
        for req in requirements
        if req.is_required and not record_satisfies(records.get(req.statement_id), req, now=timestamp)
    ]
    if unsatisfied:
        logger.debug(
            "consent_requirements_unsatisfied tenant=%s user=%s statements=%s",
            tenant_id,
            user_id,
            ",".join(unsatisfied),
        )
    return SatisfactionResult(satisfied=not unsatisfied, unsatisfied=unsatisfied)
