from __future__ import annotations

from dataclasses import dataclass

from consentengine.core.config import get_settings


@dataclass(eq=False)
class TenantPredicateError(RuntimeError):
    # Consent rows from one tenant must never answer another tenant's query.
    message: str
    table: str | None = None


def require_tenant_id(tenant_id: str | None, *, table: str | None = None) -> None:
    if not get_settings().require_tenant_predicate:
        return
    if tenant_id:
        return
    scope = f" for {table}" if table else ""
    raise TenantPredicateError(f"tenant_id is required{scope}", table=table)


def tenant_predicate(model, tenant_id: str) -> object:
    """Return ``model.tenant_id == tenant_id`` once the id is known to be set.

    Every consent repo filters through here, so enabling
    ``REQUIRE_TENANT_PREDICATE`` covers all tables at once.
    """
    table = getattr(model, "__tablename__", None)
    require_tenant_id(tenant_id, table=table)
    return model.tenant_id == tenant_id
