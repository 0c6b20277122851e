from __future__ import annotations

import asyncio
import hashlib
import logging
import secrets
import weakref
from typing import Protocol, runtime_checkable

from redis.asyncio import Redis

from consentengine.core.config import get_settings
from consentengine.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

SALT_BYTES = 16


class SaltStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str) -> None: ...


@runtime_checkable
class AtomicSaltStore(SaltStore, Protocol):
    # Stores that can write a key only when it is missing.
    async def put_if_absent(self, key: str, value: str) -> bool: ...


class RedisSaltStore:
    """Salt store backed by Redis string keys."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    @classmethod
    def from_settings(cls) -> RedisSaltStore:
        # Salts are a handful of short keys; a small pool covers them.
        settings = get_settings()
        return cls(
            Redis.from_url(
                settings.redis_url,
                decode_responses=True,
                max_connections=settings.consent_salt_redis_max_connections,
            )
        )

    async def get(self, key: str) -> str | None:
        value = await self._redis.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def put(self, key: str, value: str) -> None:
        await self._redis.set(key, value)

    async def put_if_absent(self, key: str, value: str) -> bool:
        # SET NX returns None when another writer got there first.
        return bool(await self._redis.set(key, value, nx=True))

    async def close(self) -> None:
        await self._redis.aclose()


# redis.asyncio clients are bound to the loop that first awaits them, so one
# store is kept per running loop (one per asyncio.run in scripts and tests).
_stores: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, RedisSaltStore] = weakref.WeakKeyDictionary()


async def get_salt_store() -> RedisSaltStore | None:
    """Return the Redis salt store for the running loop.

    ``None`` means hashing proceeds on the tenant-id fallback salt.
    """
    loop = asyncio.get_running_loop()
    store = _stores.get(loop)
    if store is not None:
        return store
    try:
        store = RedisSaltStore.from_settings()
    except ValueError as exc:
        # A malformed REDIS_URL; connection errors surface later, per call.
        logger.warning("consent_salt_store_unconfigured", exc_info=exc)
        return None
    _stores[loop] = store
    return store


def salt_key(tenant_id: str) -> str:
    return f"{get_settings().consent_ip_salt_prefix}:{tenant_id}"


def _digest(salt: str, ip: str) -> str:
    return hashlib.sha256(f"{salt}:{ip}".encode("utf-8")).hexdigest()


async def _get_or_create_salt(tenant_id: str, salt_store: SaltStore) -> str:
    key = salt_key(tenant_id)
    salt = await salt_store.get(key)
    if salt:
        return salt
    candidate = secrets.token_hex(SALT_BYTES)
    if isinstance(salt_store, AtomicSaltStore):
        if await salt_store.put_if_absent(key, candidate):
            return candidate
        # Lost the race; hash with the salt that won.
        winner = await salt_store.get(key)
        return winner or candidate
    await salt_store.put(key, candidate)
    return candidate


async def hash_ip_address(ip: str, tenant_id: str, salt_store: SaltStore | None) -> str:
    """Return the tenant-salted SHA-256 hex digest of ``ip``.

    A missing or failing salt store degrades to using the tenant id as the
    salt; the digest stays well formed either way.
    """
    if salt_store is None:
        increment_counter("consent_ip_salt_fallback_total")
        return _digest(tenant_id, ip)
    try:
        salt = await _get_or_create_salt(tenant_id, salt_store)
    except Exception as exc:  # noqa: BLE001 - salt store outages must not block consent
        increment_counter("consent_ip_salt_fallback_total")
        logger.warning("consent_ip_salt_unavailable tenant=%s", tenant_id, exc_info=exc)
        return _digest(tenant_id, ip)
    return _digest(salt, ip)


async def provision_ip_salt(tenant_id: str, salt_store: SaltStore) -> str:
    # Pre-create the tenant salt so first requests never race on it.
    salt = await _get_or_create_salt(tenant_id, salt_store)
    logger.info("consent_ip_salt_provisioned tenant=%s", tenant_id)
    return salt
