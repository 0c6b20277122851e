from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from consentengine.core.config import get_settings
from consentengine.services.consent.ip_hash import get_salt_store, provision_ip_salt


def _build_parser() -> argparse.ArgumentParser:
    # Run at tenant creation so concurrent first requests share one salt.
    parser = argparse.ArgumentParser(description="Pre-create the IP hashing salt for tenants")
    parser.add_argument("tenant_ids", nargs="+", help="Tenant ids to provision")
    return parser


async def _provision(args: argparse.Namespace) -> int:
    store = await get_salt_store()
    if store is None:
        print("provision_ip_salt failed: salt store unavailable", file=sys.stderr)
        return 1
    try:
        for tenant_id in args.tenant_ids:
            await provision_ip_salt(tenant_id, store)
            print(f"provisioned_ip_salt tenant={tenant_id}")
    finally:
        await store.close()
    return 0


def main() -> int:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_provision(args))
    except Exception as exc:  # noqa: BLE001 - surface Redis failures clearly in CLI output.
        print(f"provision_ip_salt failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
