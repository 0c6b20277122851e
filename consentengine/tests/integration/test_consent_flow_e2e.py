from __future__ import annotations

import pytest
from sqlalchemy import func, select

from consentengine.domain.consent import ConsentEvidence
from consentengine.domain.models import ConsentItemHistory, UserConsentRecord
from consentengine.persistence.db import SessionLocal
from consentengine.services.consent import (
    check_user_consent_satisfaction,
    hash_ip_address,
    process_consent_item_decisions,
    resolve_consent_requirements,
)
from consentengine.tests.utils.consent_seed import seed_requirement, seed_statement, seed_version


TENANT = "tenant-a"
USER = "new-user"


@pytest.mark.asyncio
async def test_new_user_grants_terms_and_becomes_satisfied() -> None:
    async with SessionLocal() as session:
        tos = await seed_statement(session, tenant_id=TENANT, slug="tos")
        await seed_version(
            session,
            tenant_id=TENANT,
            statement=tos,
            version="20250206",
            is_current=True,
            localizations={"en": {"title": "Terms", "description": "Terms of service"}},
        )
        await seed_requirement(session, tenant_id=TENANT, statement=tos, is_required=True, min_version="20250101")
        await session.commit()

        requirements = await resolve_consent_requirements(
            session, tenant_id=TENANT, client_id=None, user_claims={}
        )
        assert len(requirements) == 1
        assert requirements[0].is_required is True
        assert requirements[0].current_version.version == "20250206"

        before = await check_user_consent_satisfaction(
            session, tenant_id=TENANT, user_id=USER, requirements=requirements
        )
        assert before.satisfied is False
        assert before.unsatisfied == [tos.id]

        evidence = ConsentEvidence(client_id="client-web", user_agent="Mozilla/5.0")
        ip_hash = await hash_ip_address("203.0.113.9", TENANT, None)
        written = await process_consent_item_decisions(
            session,
            tenant_id=TENANT,
            user_id=USER,
            decisions={tos.id: "granted"},
            evidence=evidence,
            ip_hash=ip_hash,
        )
        assert [entry.action for entry in written] == ["granted"]

        after = await check_user_consent_satisfaction(
            session, tenant_id=TENANT, user_id=USER, requirements=requirements
        )
        assert after.satisfied is True
        assert after.unsatisfied == []

        repeated = await process_consent_item_decisions(
            session,
            tenant_id=TENANT,
            user_id=USER,
            decisions={tos.id: "granted"},
            evidence=evidence,
            ip_hash=ip_hash,
        )
        assert repeated == []

    async with SessionLocal() as session:
        record = (
            await session.execute(select(UserConsentRecord).where(UserConsentRecord.user_id == USER))
        ).scalar_one()
        history_count = (
            await session.execute(select(func.count()).select_from(ConsentItemHistory))
        ).scalar_one()

    assert record.status == "granted"
    assert record.version == "20250206"
    assert record.ip_address_hash == ip_hash
    assert history_count == 1
