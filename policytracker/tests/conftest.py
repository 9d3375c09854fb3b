from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before any policytracker import builds it.
_DB_DIR = tempfile.mkdtemp(prefix="policytracker-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/policytracker.db")
os.environ.setdefault("AUTH_JWT_SECRET", "policytracker-test-session-secret-0123456789")
os.environ.setdefault("RL_BACKEND", "database")

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from policytracker.apps.api import rate_limit  # noqa: E402
from policytracker.core.config import get_settings  # noqa: E402
from policytracker.domain.models import Base  # noqa: E402
from policytracker.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
async def database() -> None:
    # Fresh schema per test keeps rows from leaking across cases.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def _reset_cached_state() -> None:
    # Clear settings cache and the shared limiter so env overrides never leak.
    yield
    get_settings.cache_clear()
    rate_limit.set_rate_limiter(None)


@pytest.fixture
def app():
    from policytracker.apps.api.main import create_app

    return create_app()


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
