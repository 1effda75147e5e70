"""
Database helper functions — integration upserts, sync-log bookkeeping and
single-use OAuth state storage.

Every helper takes an ``AsyncSession`` and leaves committing to the caller.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    STATUS_CONNECTED,
    Integration,
    OAuthState,
    SyncLog,
    SYNC_SUCCESS,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return uuid.UUID(value) if isinstance(value, str) else value


# ── OAuth state ─────────────────────────────────────────────────────


async def save_oauth_state(
    session: AsyncSession,
    state: str,
    payload: Dict[str, Any],
    ttl_seconds: int,
) -> None:
    """Insert (or overwrite) a pending OAuth handshake keyed by ``state``."""
    expires_at = utcnow() + timedelta(seconds=ttl_seconds)
    existing = await session.get(OAuthState, state)
    if existing is not None:
        existing.data = json.dumps(payload)
        existing.expires_at = expires_at
    else:
        session.add(OAuthState(state=state, data=json.dumps(payload), expires_at=expires_at))
    await session.flush()


async def consume_oauth_state(
    session: AsyncSession,
    state: str,
) -> Optional[Dict[str, Any]]:
    """
    Claim a pending OAuth state exactly once.

    The row is deleted as part of the claim; the delete's row count decides
    the winner when two callbacks race on the same state.  Returns the stored
    payload, or ``None`` if the state is unknown, expired or already claimed.
    """
    result = await session.execute(select(OAuthState).where(OAuthState.state == state))
    row = result.scalar_one_or_none()
    if row is None:
        return None

    data, expires_at = row.data, as_utc(row.expires_at)
    claimed = await session.execute(
        delete(OAuthState)
        .where(OAuthState.state == state)
        .execution_options(synchronize_session=False)
    )
    session.expunge(row)
    if claimed.rowcount != 1:
        return None
    if expires_at <= utcnow():
        logger.info("OAuth state %s… expired at %s", state[:8], expires_at.isoformat())
        return None
    return json.loads(data)


async def purge_expired_oauth_states(session: AsyncSession) -> int:
    """Delete every OAuth state whose TTL has passed.  Returns rows removed."""
    result = await session.execute(
        delete(OAuthState)
        .where(OAuthState.expires_at < utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


# ── Integrations ────────────────────────────────────────────────────


async def _find_by_identity(
    session: AsyncSession,
    user_id: str,
    provider: str,
    account_id: str,
) -> Optional[Integration]:
    result = await session.execute(
        select(Integration).where(
            Integration.user_id == user_id,
            Integration.provider == provider,
            Integration.account_id == account_id,
        )
    )
    return result.scalar_one_or_none()


def _apply_reconnect(integration: Integration, values: Dict[str, Any]) -> None:
    for key, value in values.items():
        setattr(integration, key, value)
    integration.status = STATUS_CONNECTED
    integration.deleted_at = None
    integration.updated_at = utcnow()


async def upsert_integration(
    session: AsyncSession,
    *,
    user_id: str,
    provider: str,
    account_id: str,
    values: Dict[str, Any],
) -> Integration:
    """
    Create or update the integration identified by
    ``(user_id, provider, account_id)``.

    The update path clears a prior soft delete and resets the status to
    ``connected``.  A concurrent first connect that loses the insert race
    falls back to the update path.
    """
    existing = await _find_by_identity(session, user_id, provider, account_id)
    if existing is not None:
        _apply_reconnect(existing, values)
        await session.flush()
        logger.info("Updated %s integration %s for user %s", provider, existing.id, user_id)
        return existing

    integration = Integration(
        id=uuid.uuid4(),
        user_id=user_id,
        provider=provider,
        account_id=account_id,
        status=STATUS_CONNECTED,
        **values,
    )
    session.add(integration)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        existing = await _find_by_identity(session, user_id, provider, account_id)
        if existing is None:
            raise
        _apply_reconnect(existing, values)
        await session.flush()
        logger.info("Integration %s created concurrently; updated instead", existing.id)
        return existing

    logger.info("Created %s integration %s for user %s", provider, integration.id, user_id)
    return integration


async def get_integration(
    session: AsyncSession,
    integration_id: str | uuid.UUID,
) -> Optional[Integration]:
    return await session.get(Integration, to_uuid(integration_id))


async def update_integration(
    session: AsyncSession,
    integration_id: str | uuid.UUID,
    **values: Any,
) -> None:
    """Column-level update of a single integration row."""
    values.setdefault("updated_at", utcnow())
    await session.execute(
        update(Integration)
        .where(Integration.id == to_uuid(integration_id))
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def find_active_integration(
    session: AsyncSession,
    user_id: str,
    provider: str,
) -> Optional[Integration]:
    """Most recently updated non-deleted integration of a user for a provider."""
    result = await session.execute(
        select(Integration)
        .where(
            Integration.user_id == user_id,
            Integration.provider == provider,
            Integration.deleted_at.is_(None),
        )
        .order_by(Integration.updated_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_user_integrations(
    session: AsyncSession,
    user_id: str,
    *,
    connected_only: bool = False,
) -> List[Integration]:
    stmt = select(Integration).where(
        Integration.user_id == user_id,
        Integration.deleted_at.is_(None),
    )
    if connected_only:
        stmt = stmt.where(Integration.status == STATUS_CONNECTED)
    result = await session.execute(stmt.order_by(Integration.created_at.asc()))
    return list(result.scalars().all())


async def list_due_integrations(
    session: AsyncSession,
    cutoff: datetime,
) -> List[Integration]:
    """Connected, non-deleted integrations never synced or last synced before ``cutoff``."""
    result = await session.execute(
        select(Integration)
        .where(
            Integration.status == STATUS_CONNECTED,
            Integration.deleted_at.is_(None),
            or_(Integration.last_sync_at.is_(None), Integration.last_sync_at < cutoff),
        )
        .order_by(Integration.created_at.asc())
    )
    return list(result.scalars().all())


# ── Sync log ────────────────────────────────────────────────────────


async def create_sync_log(
    session: AsyncSession,
    integration_id: str | uuid.UUID,
    *,
    data_type: str,
    status: str,
    records_count: int,
    error_message: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    started_at: Optional[datetime] = None,
) -> SyncLog:
    """Append one completed sync-log row."""
    now = utcnow()
    row = SyncLog(
        integration_id=to_uuid(integration_id),
        data_type=data_type,
        status=status,
        records_count=records_count,
        error_message=error_message,
        metadata_=metadata,
        started_at=started_at or now,
        completed_at=now,
    )
    session.add(row)
    await session.flush()
    return row


async def last_successful_sync(
    session: AsyncSession,
    integration_id: str | uuid.UUID,
    data_type: str,
) -> Optional[datetime]:
    """Completion time of the newest successful sync for a data type (the watermark)."""
    result = await session.execute(
        select(SyncLog.completed_at)
        .where(
            SyncLog.integration_id == to_uuid(integration_id),
            SyncLog.data_type == data_type,
            SyncLog.status == SYNC_SUCCESS,
        )
        .order_by(SyncLog.completed_at.desc())
        .limit(1)
    )
    return as_utc(result.scalar_one_or_none())


async def recent_sync_logs(
    session: AsyncSession,
    integration_id: str | uuid.UUID,
    limit: int = 10,
    data_type: Optional[str] = None,
) -> List[SyncLog]:
    """Newest-first sync logs of an integration, optionally for one data type."""
    query = select(SyncLog).where(SyncLog.integration_id == to_uuid(integration_id))
    if data_type is not None:
        query = query.where(SyncLog.data_type == data_type)
    result = await session.execute(query.order_by(SyncLog.started_at.desc()).limit(limit))
    return list(result.scalars().all())
