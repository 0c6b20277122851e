from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import date, datetime, timezone
import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from consentengine.core.config import get_settings
from consentengine.domain.models import UserPii, UserProfile
from consentengine.persistence.guards import tenant_predicate
from consentengine.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

BIRTHDATE_AGE_CLAIM = "birthdate_age"


class _Undefined:
    # Marks a claim that is absent, as opposed to a present JSON null.
    __slots__ = ()

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED: Any = _Undefined()


def is_defined(value: Any) -> bool:
    return value is not UNDEFINED


def _parse_birthdate(value: str) -> date | None:
    # Accept full dates, datetimes, and the year-only form OIDC allows.
    raw = value.strip()
    try:
        return date.fromisoformat(raw)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    if len(raw) == 4 and raw.isdigit() and int(raw) > 0:
        return date(int(raw), 1, 1)
    return None


def _age_on(born: date, today: date) -> int:
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return age


def resolve_claim_value(claims: Mapping[str, Any], path: str, *, today: date | None = None) -> Any:
    """Resolve a dot-path against a claim bag, returning ``UNDEFINED`` when absent.

    ``birthdate_age`` is computed from the ``birthdate`` claim as whole years
    elapsed. Never raises.
    """
    if path == BIRTHDATE_AGE_CLAIM:
        birthdate = claims.get("birthdate") if isinstance(claims, Mapping) else None
        if not isinstance(birthdate, str):
            return UNDEFINED
        born = _parse_birthdate(birthdate)
        if born is None:
            return UNDEFINED
        return _age_on(born, today or datetime.now(timezone.utc).date())

    if not isinstance(path, str) or not path:
        return UNDEFINED
    node: Any = claims
    for part in path.split("."):
        if isinstance(node, Mapping) and part in node:
            node = node[part]
        else:
            return UNDEFINED
    return node


async def _load_base_claims(session: AsyncSession, *, tenant_id: str, user_id: str) -> dict[str, Any]:
    stmt = select(UserProfile).where(tenant_predicate(UserProfile, tenant_id), UserProfile.id == user_id)
    result = await session.execute(stmt)
    profile = result.scalar_one_or_none()
    claims: dict[str, Any] = {}
    if profile is None:
        return claims
    if profile.email:
        claims["email"] = profile.email
    if profile.email_verified is not None:
        claims["email_verified"] = bool(profile.email_verified)
    if profile.locale:
        claims["locale"] = profile.locale
    return claims


async def _read_pii_row(
    session: AsyncSession, *, tenant_id: str, user_id: str, shared: bool
) -> UserPii | None:
    stmt = select(UserPii).where(tenant_predicate(UserPii, tenant_id), UserPii.user_id == user_id)
    if not shared:
        result = await session.execute(stmt)
        return result.scalar_one_or_none()
    # On the caller's session the read runs in a savepoint so a failure
    # rolls back only the read and leaves staged work intact.
    async with session.begin_nested():
        result = await session.execute(stmt)
        return result.scalar_one_or_none()


async def _load_pii_claims(
    session: AsyncSession, *, tenant_id: str, user_id: str, shared: bool = False
) -> dict[str, Any]:
    # Non-fatal: an unreachable PII store contributes no claims.
    if shared:
        # Caller's pending writes flush here, outside the degraded path.
        await session.flush()
    try:
        pii = await _read_pii_row(session, tenant_id=tenant_id, user_id=user_id, shared=shared)
    except SQLAlchemyError as exc:
        if not shared:
            # A dedicated PII session is ours to reset.
            await session.rollback()
        increment_counter("consent_claims_pii_degraded_total")
        logger.warning("consent_claims_pii_unavailable tenant=%s user=%s", tenant_id, user_id, exc_info=exc)
        return {}
    claims: dict[str, Any] = {}
    if pii is None:
        return claims
    for name in ("given_name", "family_name", "birthdate", "phone_number", "zoneinfo"):
        value = getattr(pii, name)
        if value:
            claims[name] = value
    if pii.address_country or pii.address_region:
        address: dict[str, Any] = {}
        if pii.address_country:
            address["country"] = pii.address_country
        if pii.address_region:
            address["region"] = pii.address_region
        claims["address"] = address
    metadata = pii.metadata_json
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            logger.warning("consent_claims_metadata_invalid tenant=%s user=%s", tenant_id, user_id)
            metadata = None
    if metadata is not None:
        claims["metadata"] = metadata
    return claims


async def load_user_claims(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    pii_session: AsyncSession | None = None,
) -> dict[str, Any]:
    """Assemble the claim bag used by conditional consent rules.

    Base claims come from ``users_core``; profile claims come from ``users_pii``.
    With a separate ``pii_session`` both reads run concurrently. Without one the
    PII read shares ``session`` inside a savepoint, so a failed read never
    discards work the caller has staged on it.
    """
    settings = get_settings()
    if not settings.consent_pii_claims_enabled:
        return await _load_base_claims(session, tenant_id=tenant_id, user_id=user_id)
    if pii_session is not None and pii_session is not session:
        base, pii = await asyncio.gather(
            _load_base_claims(session, tenant_id=tenant_id, user_id=user_id),
            _load_pii_claims(pii_session, tenant_id=tenant_id, user_id=user_id),
        )
    else:
        base = await _load_base_claims(session, tenant_id=tenant_id, user_id=user_id)
        pii = await _load_pii_claims(session, tenant_id=tenant_id, user_id=user_id, shared=True)
    return {**base, **pii}
