from __future__ import annotations

import os
from pathlib import Path
import tempfile

# Point the engine at a throwaway SQLite file before consentengine builds it.
_DB_PATH = Path(tempfile.mkdtemp(prefix="consentengine-tests-")) / "consent.db"
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_PATH}")

import pytest  # noqa: E402

from consentengine.core.config import get_settings  # noqa: E402
from consentengine.persistence.db import create_schema, drop_schema, engine  # noqa: E402
from consentengine.services.telemetry import reset_counters  # noqa: E402


@pytest.fixture(autouse=True)
async def consent_schema_between_tests() -> None:
    # Rebuild the consent tables so every test starts from an empty catalog.
    await drop_schema()
    await create_schema()
    reset_counters()
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
