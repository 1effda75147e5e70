"""Shared test fixtures and configuration."""

import os

# Settings are read at import time; pin them before any project import.
os.environ["ENCRYPTION_KEY"] = "a1" * 32
os.environ["SHOPIFY_CLIENT_ID"] = "shopify-client"
os.environ["SHOPIFY_CLIENT_SECRET"] = "shopify-secret"
os.environ["KLAVIYO_CLIENT_ID"] = "klaviyo-client"
os.environ["KLAVIYO_CLIENT_SECRET"] = "klaviyo-secret"
os.environ["API_BASE_URL"] = "https://api.example.test"
os.environ["CLIENT_URL"] = "https://app.example.test"
os.environ["JWT_SECRET"] = "test-jwt-secret"

import uuid
from typing import Any, Callable, Dict, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from connectors.encryption import TokenVault
from database.models import STATUS_CONNECTED, Base, Integration


@pytest.fixture
def vault():
    return TokenVault("a1" * 32)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """File-backed SQLite database with the full schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'connectors.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def make_integration(session_factory, vault):
    """Insert an integration row and return it."""

    async def _make(
        provider: str = "shopify",
        *,
        user_id: str = "user-1",
        account_id: str = "test-store.myshopify.com",
        access_token: str = "access-token",
        refresh_token: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **values: Any,
    ) -> Integration:
        if metadata is None and provider == "shopify":
            metadata = {"shopDomain": account_id}
        integration = Integration(
            id=uuid.uuid4(),
            user_id=user_id,
            provider=provider,
            account_id=account_id,
            access_token=vault.encrypt(access_token),
            refresh_token=vault.encrypt_optional(refresh_token),
            metadata_=metadata or {},
            status=values.pop("status", STATUS_CONNECTED),
            **values,
        )
        async with session_factory() as session:
            session.add(integration)
            await session.commit()
        return integration

    return _make


@pytest.fixture
def mock_http():
    """Build an ``httpx.AsyncClient`` whose requests go to ``handler``."""

    def _build(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _build


# ── Advisory lock fakes ───────────────────────────────────────────────


class _Result:
    def __init__(self, value):
        self._value = value

    def scalar(self):
        return self._value


class FakeAdvisoryConnection:
    """
    Mimics a pooled PostgreSQL connection: ``close()`` returns it to the pool
    with its session (and advisory locks) intact; only ``invalidate()`` ends
    the session.
    """

    def __init__(self, store: "FakeAdvisoryStore"):
        self.store = store
        self.closed = False
        self.invalidated = False

    async def execute(self, statement, params):
        if self.store.fail:
            raise ConnectionError("database unavailable")
        key = params["key"]
        sql = str(statement)
        if "pg_advisory_unlock" in sql and self.store.fail_unlock:
            raise RuntimeError("statement timeout")
        if "pg_try_advisory_lock" in sql:
            owner = self.store.held.get(key)
            if owner is None:
                self.store.held[key] = self
                return _Result(True)
            return _Result(False)
        if "pg_advisory_unlock" in sql:
            if self.store.held.get(key) is self:
                del self.store.held[key]
                return _Result(True)
            return _Result(False)
        raise AssertionError(f"unexpected SQL: {sql}")

    async def commit(self):
        if self.store.fail_commit:
            raise RuntimeError("commit failed")

    async def invalidate(self):
        self.invalidated = True
        for key, owner in list(self.store.held.items()):
            if owner is self:
                del self.store.held[key]

    async def close(self):
        self.closed = True


class FakeAdvisoryEngine:
    def __init__(self, store: "FakeAdvisoryStore"):
        self.store = store

    async def connect(self):
        if self.store.fail:
            raise ConnectionError("database unavailable")
        conn = FakeAdvisoryConnection(self.store)
        self.store.connections.append(conn)
        return conn


class FakeAdvisoryStore:
    """Shared lock table; each ``engine()`` stands in for one process."""

    def __init__(self):
        self.held: Dict[int, FakeAdvisoryConnection] = {}
        self.connections = []
        self.fail = False
        self.fail_unlock = False
        self.fail_commit = False

    def engine(self) -> FakeAdvisoryEngine:
        return FakeAdvisoryEngine(self)


@pytest.fixture
def advisory_store():
    return FakeAdvisoryStore()
