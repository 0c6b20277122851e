from __future__ import annotations

import argparse
import asyncio
import logging

from consentengine.core.config import get_settings
from consentengine.persistence.db import get_session
from consentengine.services.consent.decisions import expire_consent_records


async def expire(tenant_ids: list[str]) -> None:
    async with get_session() as session:
        for tenant_id in tenant_ids:
            history = await expire_consent_records(session, tenant_id=tenant_id)
            print(f"expired_consent_records tenant={tenant_id} count={len(history)}")


def main() -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    parser = argparse.ArgumentParser(description="Expire granted consent records past their expiry")
    parser.add_argument("tenant_ids", nargs="+")
    args = parser.parse_args()
    asyncio.run(expire(args.tenant_ids))


if __name__ == "__main__":
    main()
