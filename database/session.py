"""
Async SQLAlchemy engine and session factory.

PostgreSQL (asyncpg) in every deployed environment; the advisory-lock
scheduler depends on it.  A ``sqlite+aiosqlite`` URL is accepted for local
runs, where pool sizing does not apply.
"""

from __future__ import annotations

from typing import Any, Dict

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from config.settings import config


def _engine_options(database_url: str) -> Dict[str, Any]:
    if make_url(database_url).get_backend_name() == "sqlite":
        return {"echo": False}
    return {
        "echo": False,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_recycle": 3600,
        "pool_pre_ping": True,
    }


engine = create_async_engine(config.database_url, **_engine_options(config.database_url))

# Connectors and the manager open short sessions and commit explicitly;
# loaded rows stay usable after commit.
async_session_factory = async_sessionmaker(
    engine,
    expire_on_commit=False,
)
