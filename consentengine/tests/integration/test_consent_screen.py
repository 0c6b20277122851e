from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from consentengine.core.config import get_settings
from consentengine.domain.models import UserPii, UserProfile
from consentengine.persistence.db import SessionLocal, engine
from consentengine.services.consent.claims import load_user_claims
from consentengine.services.consent.screen import get_consent_items_for_screen
from consentengine.services.telemetry import get_counter
from consentengine.tests.utils.consent_seed import (
    seed_record,
    seed_requirement,
    seed_statement,
    seed_version,
)


TENANT = "tenant-a"


@pytest.mark.asyncio
async def test_screen_items_use_language_fallback_chain() -> None:
    async with SessionLocal() as session:
        tos = await seed_statement(session, tenant_id=TENANT, slug="tos", created_offset=0)
        privacy = await seed_statement(session, tenant_id=TENANT, slug="privacy", created_offset=1)
        cookies = await seed_statement(session, tenant_id=TENANT, slug="cookies", created_offset=2)
        bare = await seed_statement(session, tenant_id=TENANT, slug="bare", created_offset=3)
        await seed_version(
            session,
            tenant_id=TENANT,
            statement=tos,
            version="20250206",
            is_current=True,
            localizations={
                "en": {"title": "Terms", "description": "Terms of service", "document_url": "https://t/en"},
                "ja": {"title": "利用規約", "description": "規約", "document_url": "https://t/ja"},
            },
        )
        await seed_version(
            session,
            tenant_id=TENANT,
            statement=privacy,
            version="20250206",
            is_current=True,
            localizations={
                "de": {"title": "Datenschutz", "description": "DE"},
                "en": {"title": "Privacy", "description": "EN"},
            },
        )
        await seed_version(
            session,
            tenant_id=TENANT,
            statement=cookies,
            version="20250206",
            is_current=True,
            content_type="inline",
            localizations={"fr": {"title": "Cookies", "description": "FR", "inline_content": "Nous..."}},
        )
        await seed_version(session, tenant_id=TENANT, statement=bare, version="20250206", is_current=True)
        await session.commit()

        items = await get_consent_items_for_screen(
            session,
            tenant_id=TENANT,
            client_id=None,
            user_id="user-1",
            language="ja",
            tenant_default_language="de",
        )

    by_slug = {item.slug: item for item in items}
    assert [item.slug for item in items] == ["tos", "privacy", "cookies", "bare"]
    assert by_slug["tos"].title == "利用規約"
    assert by_slug["tos"].document_url == "https://t/ja"
    assert by_slug["privacy"].title == "Datenschutz"
    # No match in the chain: first available localization.
    assert by_slug["cookies"].title == "Cookies"
    assert by_slug["cookies"].inline_content == "Nous..."
    assert by_slug["bare"].title == "bare"
    assert by_slug["bare"].description == ""
    assert by_slug["bare"].document_url is None


@pytest.mark.asyncio
async def test_screen_items_report_record_state_and_upgrade_need() -> None:
    async with SessionLocal() as session:
        stmt = await seed_statement(session, tenant_id=TENANT, slug="tos")
        old = await seed_version(session, tenant_id=TENANT, statement=stmt, version="20240101")
        await seed_version(
            session,
            tenant_id=TENANT,
            statement=stmt,
            version="20250206",
            is_current=True,
            localizations={"en": {"title": "Terms", "description": "Terms of service"}},
        )
        await seed_requirement(
            session,
            tenant_id=TENANT,
            statement=stmt,
            is_required=True,
            min_version="20250101",
            show_deletion_link=True,
            deletion_url="https://example.com/delete",
        )
        await seed_record(session, tenant_id=TENANT, user_id="user-1", version=old)
        await seed_record(session, tenant_id=TENANT, user_id="user-2", version=old, status="withdrawn")
        await session.commit()

        granted_old = await get_consent_items_for_screen(
            session, tenant_id=TENANT, client_id=None, user_id="user-1", language="en"
        )
        withdrawn = await get_consent_items_for_screen(
            session, tenant_id=TENANT, client_id=None, user_id="user-2", language="en"
        )
        fresh = await get_consent_items_for_screen(
            session, tenant_id=TENANT, client_id=None, user_id="user-3", language="en"
        )

    item = granted_old[0]
    assert item.is_required is True
    assert item.current_status == "granted"
    assert item.current_version == "20240101"
    assert item.version == "20250206"
    assert item.needs_version_upgrade is True
    assert item.show_deletion_link is True
    assert item.deletion_url == "https://example.com/delete"
    assert withdrawn[0].needs_version_upgrade is False
    assert fresh[0].current_status is None
    assert fresh[0].needs_version_upgrade is False


@pytest.mark.asyncio
async def test_screen_applies_rules_to_loaded_claims() -> None:
    async with SessionLocal() as session:
        session.add(UserProfile(id="user-1", tenant_id=TENANT, email="a@example.com", email_verified=True))
        session.add(
            UserPii(user_id="user-1", tenant_id=TENANT, birthdate="2015-03-01", address_country="JP")
        )
        stmt = await seed_statement(session, tenant_id=TENANT, slug="guardian")
        await seed_version(session, tenant_id=TENANT, statement=stmt, version="20250101", is_current=True)
        await seed_requirement(
            session,
            tenant_id=TENANT,
            statement=stmt,
            rules=[{"claim": "birthdate_age", "op": "lt", "value": 18, "result": "required"}],
        )
        await session.commit()

        items = await get_consent_items_for_screen(
            session, tenant_id=TENANT, client_id=None, user_id="user-1", language="en"
        )

    assert [item.is_required for item in items] == [True]


@pytest.mark.asyncio
async def test_load_user_claims_merges_core_and_pii() -> None:
    async with SessionLocal() as session:
        session.add(UserProfile(id="user-1", tenant_id=TENANT, email="a@example.com", email_verified=False, locale="ja"))
        session.add(
            UserPii(
                user_id="user-1",
                tenant_id=TENANT,
                given_name="Aiko",
                birthdate="1990-04-01",
                address_country="JP",
                metadata_json={"plan": "pro"},
            )
        )
        await session.commit()

    async with SessionLocal() as session, SessionLocal() as pii_session:
        claims = await load_user_claims(session, tenant_id=TENANT, user_id="user-1", pii_session=pii_session)

    assert claims == {
        "email": "a@example.com",
        "email_verified": False,
        "locale": "ja",
        "given_name": "Aiko",
        "birthdate": "1990-04-01",
        "address": {"country": "JP"},
        "metadata": {"plan": "pro"},
    }


@pytest.mark.asyncio
async def test_unreachable_pii_source_degrades_to_base_claims() -> None:
    async with SessionLocal() as session:
        session.add(UserProfile(id="user-1", tenant_id=TENANT, email="a@example.com"))
        await session.commit()

    class _BrokenSession:
        async def execute(self, *args, **kwargs):
            raise OperationalError("SELECT users_pii", {}, Exception("pii database unreachable"))

        async def rollback(self) -> None:
            return None

    async with SessionLocal() as session:
        claims = await load_user_claims(
            session, tenant_id=TENANT, user_id="user-1", pii_session=_BrokenSession()  # type: ignore[arg-type]
        )

    assert claims == {"email": "a@example.com"}
    assert get_counter("consent_claims_pii_degraded_total") == 1


@pytest.mark.asyncio
async def test_pii_failure_on_shared_session_keeps_staged_work() -> None:
    async with SessionLocal() as session:
        session.add(UserProfile(id="user-1", tenant_id=TENANT, email="a@example.com"))
        await session.commit()
    async with engine.begin() as conn:
        await conn.run_sync(UserPii.__table__.drop)

    async with SessionLocal() as session:
        session.add(UserProfile(id="user-2", tenant_id=TENANT, locale="fr"))
        claims = await load_user_claims(session, tenant_id=TENANT, user_id="user-1")
        await session.commit()

    async with SessionLocal() as session:
        staged = await session.get(UserProfile, "user-2")

    assert claims == {"email": "a@example.com"}
    assert get_counter("consent_claims_pii_degraded_total") == 1
    assert staged is not None
    assert staged.locale == "fr"


@pytest.mark.asyncio
async def test_pii_claims_can_be_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONSENT_PII_CLAIMS_ENABLED", "false")
    get_settings.cache_clear()
    async with SessionLocal() as session:
        session.add(UserProfile(id="user-1", tenant_id=TENANT, locale="en"))
        session.add(UserPii(user_id="user-1", tenant_id=TENANT, given_name="Aiko"))
        await session.commit()
        claims = await load_user_claims(session, tenant_id=TENANT, user_id="user-1")
    assert claims == {"locale": "en"}
