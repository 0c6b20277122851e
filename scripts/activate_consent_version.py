from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from consentengine.core.config import get_settings
from consentengine.core.errors import ConsentError
from consentengine.persistence.db import SessionLocal
from consentengine.services.consent.versioning import activate_version


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Make a consent statement version the current version")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--statement-id", required=True)
    parser.add_argument("--version-id", required=True)
    return parser


async def _activate(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        version = await activate_version(
            session,
            tenant_id=args.tenant_id,
            statement_id=args.statement_id,
            version_id=args.version_id,
        )
    print("Consent version activated:")
    print(f"  statement_id: {args.statement_id}")
    print(f"  version: {version.version}")
    print(f"  content_hash: {version.content_hash}")
    return 0


def main() -> int:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_activate(args))
    except ConsentError as exc:
        print(f"activate_consent_version failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
