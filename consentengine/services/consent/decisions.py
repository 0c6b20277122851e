from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Mapping
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from consentengine.core.errors import ConsentNotFoundError, ConsentValidationError
from consentengine.domain.consent import (
    ACTION_DENIED,
    ACTION_EXPIRED,
    ACTION_GRANTED,
    ACTION_VERSION_UPGRADED,
    ACTION_WITHDRAWN,
    RECORD_STATUS_DENIED,
    RECORD_STATUS_EXPIRED,
    RECORD_STATUS_GRANTED,
    RECORD_STATUS_WITHDRAWN,
    ConsentDecision,
    ConsentEvidence,
)
from consentengine.domain.models import ConsentItemHistory, ConsentStatementVersion, UserConsentRecord
from consentengine.persistence.repos import records as records_repo
from consentengine.persistence.repos import statements as statements_repo
from consentengine.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _refresh_evidence(record: UserConsentRecord, evidence: ConsentEvidence, ip_hash: str | None) -> None:
    record.client_id = evidence.client_id
    record.ip_address_hash = ip_hash
    record.user_agent = evidence.user_agent


async def _commit_transitions(
    session: AsyncSession,
    history: list[ConsentItemHistory],
    *,
    tenant_id: str,
    user_id: str,
) -> None:
    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.error("consent_transition_commit_failed tenant=%s user=%s", tenant_id, user_id)
        raise
    for entry in history:
        increment_counter(f"consent_transitions_total.{entry.action}")
        logger.info(
            "consent_transition tenant=%s user=%s statement=%s action=%s version=%s",
            tenant_id,
            user_id,
            entry.statement_id,
            entry.action,
            entry.version_after,
        )


def _apply_granted(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    statement_id: str,
    existing: UserConsentRecord | None,
    current: ConsentStatementVersion,
    evidence: ConsentEvidence,
    ip_hash: str | None,
    now: datetime,
) -> tuple[UserConsentRecord, ConsentItemHistory] | None:
    history_kwargs = {
        "tenant_id": tenant_id,
        "user_id": user_id,
        "statement_id": statement_id,
        "created_at": now,
        "ip_address_hash": ip_hash,
        "user_agent": evidence.user_agent,
        "client_id": evidence.client_id,
    }
    if existing is None:
        record = UserConsentRecord(
            id=uuid4().hex,
            tenant_id=tenant_id,
            user_id=user_id,
            statement_id=statement_id,
            version_id=current.id,
            version=current.version,
            status=RECORD_STATUS_GRANTED,
            granted_at=now,
            client_id=evidence.client_id,
            ip_address_hash=ip_hash,
            user_agent=evidence.user_agent,
            created_at=now,
            updated_at=now,
        )
        session.add(record)
        entry = records_repo.add_history(
            session,
            action=ACTION_GRANTED,
            version_after=current.version,
            status_after=RECORD_STATUS_GRANTED,
            **history_kwargs,
        )
        return record, entry

    # Already granted for this exact version: nothing to write.
    if existing.status == RECORD_STATUS_GRANTED and existing.version == current.version:
        return None

    status_before = existing.status
    version_before = existing.version
    is_upgrade = status_before == RECORD_STATUS_GRANTED and version_before < current.version
    existing.version_id = current.id
    existing.version = current.version
    existing.status = RECORD_STATUS_GRANTED
    existing.granted_at = now
    existing.updated_at = now
    _refresh_evidence(existing, evidence, ip_hash)
    entry = records_repo.add_history(
        session,
        action=ACTION_VERSION_UPGRADED if is_upgrade else ACTION_GRANTED,
        version_before=version_before,
        version_after=current.version,
        status_before=status_before,
        status_after=RECORD_STATUS_GRANTED,
        **history_kwargs,
    )
    return existing, entry


def _apply_denied(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    statement_id: str,
    existing: UserConsentRecord | None,
    current: ConsentStatementVersion,
    evidence: ConsentEvidence,
    ip_hash: str | None,
    now: datetime,
) -> tuple[UserConsentRecord, ConsentItemHistory] | None:
    history_kwargs = {
        "tenant_id": tenant_id,
        "user_id": user_id,
        "statement_id": statement_id,
        "created_at": now,
        "ip_address_hash": ip_hash,
        "user_agent": evidence.user_agent,
        "client_id": evidence.client_id,
    }
    if existing is None:
        record = UserConsentRecord(
            id=uuid4().hex,
            tenant_id=tenant_id,
            user_id=user_id,
            statement_id=statement_id,
            version_id=current.id,
            version=current.version,
            status=RECORD_STATUS_DENIED,
            client_id=evidence.client_id,
            ip_address_hash=ip_hash,
            user_agent=evidence.user_agent,
            created_at=now,
            updated_at=now,
        )
        session.add(record)
        entry = records_repo.add_history(
            session,
            action=ACTION_DENIED,
            version_after=current.version,
            status_after=RECORD_STATUS_DENIED,
            **history_kwargs,
        )
        return record, entry

    if existing.status == RECORD_STATUS_DENIED:
        return None

    if existing.status == RECORD_STATUS_GRANTED:
        # Denying a granted item withdraws it; the stored version names what was withdrawn.
        existing.status = RECORD_STATUS_WITHDRAWN
        existing.withdrawn_at = now
        existing.updated_at = now
        _refresh_evidence(existing, evidence, ip_hash)
        entry = records_repo.add_history(
            session,
            action=ACTION_WITHDRAWN,
            version_before=existing.version,
            version_after=existing.version,
            status_before=RECORD_STATUS_GRANTED,
            status_after=RECORD_STATUS_WITHDRAWN,
            **history_kwargs,
        )
        return existing, entry

    # Stored version stays put while history reports the current version.
    status_before = existing.status
    existing.status = RECORD_STATUS_DENIED
    existing.updated_at = now
    _refresh_evidence(existing, evidence, ip_hash)
    entry = records_repo.add_history(
        session,
        action=ACTION_DENIED,
        version_before=existing.version,
        version_after=current.version,
        status_before=status_before,
        status_after=RECORD_STATUS_DENIED,
        **history_kwargs,
    )
    return existing, entry


async def process_consent_item_decisions(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    decisions: Mapping[str, ConsentDecision],
    evidence: ConsentEvidence | None = None,
    ip_hash: str | None = None,
    now: datetime | None = None,
) -> list[ConsentItemHistory]:
    """Apply granted/denied decisions per statement as audited transitions.

    Statements without a current version are skipped. Repeating a grant for
    the current version writes nothing. Returns the history rows appended;
    the session is committed only when at least one transition happened.
    """
    evidence = evidence or ConsentEvidence()
    timestamp = now or _utc_now()
    existing_records = await records_repo.list_user_records(session, tenant_id=tenant_id, user_id=user_id)

    for statement_id, decision in decisions.items():
        if decision not in (RECORD_STATUS_GRANTED, RECORD_STATUS_DENIED):
            raise ConsentValidationError(f"Unsupported consent decision for {statement_id}: {decision}")

    history: list[ConsentItemHistory] = []
    for statement_id, decision in decisions.items():
        current = await statements_repo.get_current_version(
            session, tenant_id=tenant_id, statement_id=statement_id
        )
        if current is None:
            increment_counter("consent_decisions_skipped_total")
            logger.warning(
                "consent_decision_skipped_no_current_version tenant=%s user=%s statement=%s",
                tenant_id,
                user_id,
                statement_id,
            )
            continue
        kwargs = {
            "tenant_id": tenant_id,
            "user_id": user_id,
            "statement_id": statement_id,
            "existing": existing_records.get(statement_id),
            "current": current,
            "evidence": evidence,
            "ip_hash": ip_hash,
            "now": timestamp,
        }
        if decision == RECORD_STATUS_GRANTED:
            outcome = _apply_granted(session, **kwargs)
        else:
            outcome = _apply_denied(session, **kwargs)
        if outcome is None:
            continue
        record, entry = outcome
        existing_records[statement_id] = record
        history.append(entry)

    if history:
        await _commit_transitions(session, history, tenant_id=tenant_id, user_id=user_id)
    return history


async def withdraw_consent(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    statement_id: str,
    now: datetime | None = None,
) -> UserConsentRecord:
    # Administrative withdrawal; only granted consent can be withdrawn.
    record = await records_repo.get_user_record(
        session, tenant_id=tenant_id, user_id=user_id, statement_id=statement_id
    )
    if record is None:
        raise ConsentNotFoundError("Consent record not found")
    if record.status != RECORD_STATUS_GRANTED:
        raise ConsentValidationError("Can only withdraw granted consent")
    timestamp = now or _utc_now()
    record.status = RECORD_STATUS_WITHDRAWN
    record.withdrawn_at = timestamp
    record.updated_at = timestamp
    entry = records_repo.add_history(
        session,
        tenant_id=tenant_id,
        user_id=user_id,
        statement_id=statement_id,
        action=ACTION_WITHDRAWN,
        created_at=timestamp,
        version_before=record.version,
        version_after=record.version,
        status_before=RECORD_STATUS_GRANTED,
        status_after=RECORD_STATUS_WITHDRAWN,
        metadata={"initiated_by": "admin"},
    )
    await _commit_transitions(session, [entry], tenant_id=tenant_id, user_id=user_id)
    return record


async def expire_consent_records(
    session: AsyncSession,
    *,
    tenant_id: str,
    now: datetime | None = None,
) -> list[ConsentItemHistory]:
    """Mark granted records past their expiry as expired, one history row each."""
    timestamp = now or _utc_now()
    records = await records_repo.list_expirable_records(session, tenant_id=tenant_id, now=timestamp)
    history: list[ConsentItemHistory] = []
    for record in records:
        record.status = RECORD_STATUS_EXPIRED
        record.updated_at = timestamp
        history.append(
            records_repo.add_history(
                session,
                tenant_id=tenant_id,
                user_id=record.user_id,
                statement_id=record.statement_id,
                action=ACTION_EXPIRED,
                created_at=timestamp,
                version_before=record.version,
                version_after=record.version,
                status_before=RECORD_STATUS_GRANTED,
                status_after=RECORD_STATUS_EXPIRED,
            )
        )
    if not history:
        return history
    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.error("consent_expiry_commit_failed tenant=%s", tenant_id)
        raise
    increment_counter(f"consent_transitions_total.{ACTION_EXPIRED}", len(history))
    logger.info("consent_records_expired tenant=%s count=%s", tenant_id, len(history))
    return history


async def list_user_consent_records(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
) -> list[UserConsentRecord]:
    return await records_repo.list_user_records_recent(session, tenant_id=tenant_id, user_id=user_id)


async def list_consent_history(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    statement_id: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[ConsentItemHistory]:
    return await records_repo.list_history(
        session,
        tenant_id=tenant_id,
        user_id=user_id,
        statement_id=statement_id,
        offset=offset,
        limit=limit,
    )
