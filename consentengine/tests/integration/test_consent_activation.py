from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from consentengine.core.errors import ConsentNotFoundError, ConsentValidationError
from consentengine.domain.models import ConsentStatementVersion
from consentengine.persistence.db import SessionLocal
from consentengine.persistence.repos import statements as statements_repo
from consentengine.services.consent.versioning import activate_version, compute_content_hash
from consentengine.services.telemetry import get_counter
from consentengine.tests.utils.consent_seed import seed_statement, seed_version


TENANT = "tenant-a"


async def _current_versions(session, statement_id: str) -> list[str]:
    result = await session.execute(
        select(ConsentStatementVersion.version).where(
            ConsentStatementVersion.statement_id == statement_id,
            ConsentStatementVersion.is_current.is_(True),
        )
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_activation_swaps_the_current_version() -> None:
    async with SessionLocal() as session:
        stmt = await seed_statement(session, tenant_id=TENANT, slug="tos")
        old = await seed_version(
            session,
            tenant_id=TENANT,
            statement=stmt,
            version="20240101",
            is_current=True,
            localizations={"en": {"title": "Terms", "description": "v1", "document_url": "https://t/v1"}},
        )
        new = await seed_version(
            session,
            tenant_id=TENANT,
            statement=stmt,
            version="20250206",
            localizations={
                "en": {"title": "Terms", "description": "v2", "document_url": "https://t/v2"},
                "ja": {"title": "規約", "description": "v2", "document_url": "https://t/v2/ja"},
            },
        )
        await session.commit()

        activated = await activate_version(session, tenant_id=TENANT, statement_id=stmt.id, version_id=new.id)
        expected_hash = await compute_content_hash(session, tenant_id=TENANT, version_id=new.id)

    async with SessionLocal() as session:
        current = await _current_versions(session, stmt.id)
        archived = await session.get(ConsentStatementVersion, old.id)

    assert current == ["20250206"]
    assert activated.status == "active"
    assert activated.content_hash == expected_hash
    assert len(expected_hash) == 64
    assert archived.status == "archived"
    assert archived.is_current is False
    assert get_counter("consent_version_activations_total") == 1


@pytest.mark.asyncio
async def test_reactivating_the_current_version_keeps_one_current() -> None:
    async with SessionLocal() as session:
        stmt = await seed_statement(session, tenant_id=TENANT, slug="tos")
        version = await seed_version(
            session,
            tenant_id=TENANT,
            statement=stmt,
            version="20250206",
            localizations={"en": {"title": "Terms", "description": "v1", "document_url": "https://t/v1"}},
        )
        await session.commit()

        await activate_version(session, tenant_id=TENANT, statement_id=stmt.id, version_id=version.id)
        await activate_version(session, tenant_id=TENANT, statement_id=stmt.id, version_id=version.id)
        current = await _current_versions(session, stmt.id)

    assert current == ["20250206"]


@pytest.mark.asyncio
async def test_activation_requires_localizations() -> None:
    async with SessionLocal() as session:
        stmt = await seed_statement(session, tenant_id=TENANT, slug="tos")
        live = await seed_version(
            session,
            tenant_id=TENANT,
            statement=stmt,
            version="20240101",
            is_current=True,
            localizations={"en": {"title": "Terms", "description": "v1"}},
        )
        empty = await seed_version(session, tenant_id=TENANT, statement=stmt, version="20250206")
        await session.commit()

        with pytest.raises(ConsentValidationError):
            await activate_version(session, tenant_id=TENANT, statement_id=stmt.id, version_id=empty.id)
        current = await _current_versions(session, stmt.id)

    assert current == [live.version]


@pytest.mark.asyncio
async def test_activation_rejects_unknown_or_foreign_versions() -> None:
    async with SessionLocal() as session:
        stmt = await seed_statement(session, tenant_id=TENANT, slug="tos")
        other = await seed_statement(session, tenant_id=TENANT, slug="privacy", created_offset=1)
        version = await seed_version(
            session,
            tenant_id=TENANT,
            statement=other,
            version="20250206",
            localizations={"en": {"title": "Privacy", "description": "v1"}},
        )
        await session.commit()

        with pytest.raises(ConsentNotFoundError):
            await activate_version(session, tenant_id=TENANT, statement_id=stmt.id, version_id="missing")
        with pytest.raises(ConsentNotFoundError):
            await activate_version(session, tenant_id=TENANT, statement_id=stmt.id, version_id=version.id)
        with pytest.raises(ConsentNotFoundError):
            await activate_version(session, tenant_id="tenant-b", statement_id=other.id, version_id=version.id)
        with pytest.raises(ConsentNotFoundError):
            await compute_content_hash(session, tenant_id=TENANT, version_id="missing")


@pytest.mark.asyncio
async def test_content_hash_is_stable_across_calls() -> None:
    async with SessionLocal() as session:
        stmt = await seed_statement(session, tenant_id=TENANT, slug="tos")
        version = await seed_version(
            session,
            tenant_id=TENANT,
            statement=stmt,
            version="20250206",
            content_type="inline",
            localizations={
                "ja": {"title": "規約", "description": "d", "inline_content": "本文"},
                "en": {"title": "Terms", "description": "d", "inline_content": "Body"},
            },
        )
        await session.commit()

        first = await compute_content_hash(session, tenant_id=TENANT, version_id=version.id)
        second = await compute_content_hash(session, tenant_id=TENANT, version_id=version.id)

    assert first == second


@pytest.mark.asyncio
async def test_failed_promotion_rolls_back_the_demotion(monkeypatch: pytest.MonkeyPatch) -> None:
    async with SessionLocal() as session:
        stmt = await seed_statement(session, tenant_id=TENANT, slug="tos")
        old = await seed_version(
            session,
            tenant_id=TENANT,
            statement=stmt,
            version="20240101",
            is_current=True,
            localizations={"en": {"title": "Terms", "description": "v1", "document_url": "https://t/v1"}},
        )
        new = await seed_version(
            session,
            tenant_id=TENANT,
            statement=stmt,
            version="20250206",
            localizations={"en": {"title": "Terms", "description": "v2", "document_url": "https://t/v2"}},
        )
        await session.commit()

        async def _fail_promotion(*args, **kwargs) -> None:
            raise OperationalError("UPDATE consent_statement_versions", {}, Exception("connection lost"))

        monkeypatch.setattr(statements_repo, "promote_version", _fail_promotion)
        with pytest.raises(OperationalError):
            await activate_version(session, tenant_id=TENANT, statement_id=stmt.id, version_id=new.id)

    async with SessionLocal() as session:
        current = await _current_versions(session, stmt.id)
        previous = await session.get(ConsentStatementVersion, old.id)
        draft = await session.get(ConsentStatementVersion, new.id)

    assert current == ["20240101"]
    assert previous.status == "active"
    assert draft.status == "draft"
    assert draft.is_current is False
    assert get_counter("consent_version_activations_total") == 0
