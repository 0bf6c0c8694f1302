from __future__ import annotations

import os
import tempfile

# Point settings at local test backends before any dealsync module reads them.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'dealsync-tests.db')}",
)
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("XERO_CLIENT_ID", "test-client")
os.environ.setdefault("XERO_CLIENT_SECRET", "test-secret")

import pytest  # noqa: E402

from dealsync.core.config import get_settings  # noqa: E402
from dealsync.domain.models import Base  # noqa: E402
from dealsync.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_cache():
    # Tests that monkeypatch env vars get fresh settings; others see the defaults above.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def db_tables():
    # Recreate tables per test so sequence and audit state never leaks.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
