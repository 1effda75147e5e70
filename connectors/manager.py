"""
ConnectorManager — orchestrates the OAuth handshake, syncs and the
integration lifecycle.

OAuth state machine::

    initiated ──callback──▶ connected ──▶ error | expired | disconnected

``error`` and ``expired`` recover through a reconnect (the upsert resets
the row to ``connected``); ``disconnected`` needs a fresh connect flow.

The manager owns no connections of its own: every operation opens a short
session from the injected ``async_sessionmaker`` and commits before any
provider I/O happens.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import config
from connectors.base import BaseConnector, SyncResult, build_authorization_url
from connectors.encryption import TokenVault, get_vault
from connectors.errors import (
    ConnectionValidationError,
    ConnectorConfigError,
    IntegrationNotFound,
    IntegrationStateError,
    OAuthStateInvalid,
    TokenRefreshError,
    WebhookSignatureInvalid,
)
from connectors.registry import ConnectorRegistry
from database import helpers
from database.models import (
    STATUS_CONNECTED,
    STATUS_DISCONNECTED,
    STATUS_ERROR,
    SYNC_ERROR,
    Integration,
    SyncLog,
)
from scheduler.periodic import PeriodicJob

logger = logging.getLogger(__name__)

SCHEDULED_SYNC_JOB = "connectors_scheduled_sync"


def _iso(value) -> Optional[str]:
    value = helpers.as_utc(value)
    return value.isoformat() if value else None


def _sync_log_view(log: SyncLog) -> Dict[str, Any]:
    return {
        "dataType": log.data_type,
        "status": log.status,
        "recordsCount": log.records_count,
        "errorMessage": log.error_message,
        "startedAt": _iso(log.started_at),
        "completedAt": _iso(log.completed_at),
    }


class ConnectorManager:
    """Entry point used by the HTTP routes and the scheduled sync job."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        registry: Optional[ConnectorRegistry] = None,
        vault: Optional[TokenVault] = None,
        **connector_kwargs: Any,
    ):
        if session_factory is None:
            from database.session import async_session_factory

            session_factory = async_session_factory
        self._session_factory = session_factory
        self.registry = registry or ConnectorRegistry()
        self.vault = vault or get_vault()
        # forwarded to every connector (e.g. a shared http_client, max_pages)
        self._connector_kwargs = connector_kwargs

    def _connector(self, integration: Integration) -> BaseConnector:
        return self.registry.create(
            integration,
            session_factory=self._session_factory,
            vault=self.vault,
            **self._connector_kwargs,
        )

    async def _load(self, integration_id: str | uuid.UUID) -> Integration:
        try:
            key = helpers.to_uuid(integration_id)
        except ValueError:
            raise IntegrationNotFound(f"Integration {integration_id} not found") from None
        async with self._session_factory() as session:
            integration = await helpers.get_integration(session, key)
        if integration is None:
            raise IntegrationNotFound(f"Integration {integration_id} not found")
        return integration

    async def _set_status(self, integration_id: uuid.UUID, status: str, **values: Any) -> None:
        async with self._session_factory() as session:
            await helpers.update_integration(session, integration_id, status=status, **values)
            await session.commit()

    # ── OAuth ───────────────────────────────────────────────────────────

    async def initiate_oauth(
        self,
        provider: str,
        user_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, str]:
        """
        Start a connect flow.  Persists a single-use state row and returns
        ``{"authUrl", "state"}``.  Raises ``ProviderNotSupported`` or
        ``ConnectorConfigError``.
        """
        metadata = dict(metadata or {})
        oauth = self.registry.get_oauth_config(provider, metadata)

        state = self.vault.generate_state()
        code_verifier = self.vault.generate_code_verifier() if oauth.pkce_required else None

        async with self._session_factory() as session:
            await helpers.save_oauth_state(
                session,
                state,
                {
                    "user_id": user_id,
                    "provider": provider,
                    "metadata": metadata,
                    "code_verifier": code_verifier,
                },
                config.oauth_state_ttl_seconds,
            )
            await session.commit()

        logger.info("OAuth initiated: provider=%s user=%s", provider, user_id)
        return {
            "authUrl": build_authorization_url(oauth, state, code_verifier),
            "state": state,
        }

    async def handle_oauth_callback(
        self,
        provider: str,
        code: str,
        state: str,
        callback_metadata: Optional[Dict[str, Any]] = None,
    ) -> Integration:
        """
        Finish a connect flow and return the persisted integration.

        The state row is claimed (deleted) before the token exchange, so a
        replayed callback fails with ``OAuthStateInvalid`` and never reaches
        the provider.
        """
        async with self._session_factory() as session:
            stored = await helpers.consume_oauth_state(session, state)
            await session.commit()
        if stored is None:
            raise OAuthStateInvalid("OAuth state is invalid, expired or already used")
        if stored.get("provider") != provider:
            raise OAuthStateInvalid(
                f"OAuth state was issued for {stored.get('provider')}, not {provider}"
            )

        user_id = stored["user_id"]
        merged = {**(stored.get("metadata") or {}), **(callback_metadata or {})}

        # Transient shell; never added to a session.
        shell = Integration(provider=provider, user_id=user_id, metadata_=merged)
        async with self._connector(shell) as connector:
            tokens = await connector.exchange_code_for_tokens(
                code, state=state, code_verifier=stored.get("code_verifier")
            )

        if not tokens.account_id:
            logger.error("%s token exchange returned no account id (user=%s)", provider, user_id)
            raise ConnectorConfigError(f"{provider} connector did not resolve an account id")

        values = {
            "access_token": self.vault.encrypt(tokens.access_token),
            "refresh_token": self.vault.encrypt_optional(tokens.refresh_token),
            "expires_at": tokens.expires_at,
            "scopes": tokens.scopes,
            "metadata_": {**merged, **tokens.metadata},
        }
        async with self._session_factory() as session:
            integration = await helpers.upsert_integration(
                session,
                user_id=user_id,
                provider=provider,
                account_id=tokens.account_id,
                values=values,
            )
            await session.commit()

        logger.info(
            "OAuth completed: provider=%s user=%s account=%s integration=%s",
            provider, user_id, tokens.account_id, integration.id,
        )
        return integration

    # ── Sync ────────────────────────────────────────────────────────────

    async def sync_integration(self, integration_id: str | uuid.UUID) -> List[SyncResult]:
        """
        Validate the stored credentials, then run every data-type sync.

        Per-type failures come back as ``error`` results; a failed validation
        sets the status to ``error`` and raises ``ConnectionValidationError``.
        """
        integration = await self._load(integration_id)
        if integration.deleted_at is not None or integration.status != STATUS_CONNECTED:
            raise IntegrationStateError(
                f"Integration {integration.id} is {integration.status}; reconnect to sync"
            )

        async with self._connector(integration) as connector:
            try:
                valid = await connector.validate_connection()
            except TokenRefreshError:
                # connector already marked the integration expired
                raise
            except Exception:
                await self._set_status(integration.id, STATUS_ERROR)
                raise
            if not valid:
                await self._set_status(integration.id, STATUS_ERROR)
                raise ConnectionValidationError(
                    f"{integration.provider} connection validation failed for {integration.id}"
                )

            logger.info("Sync started: %s integration %s", integration.provider, integration.id)
            results = await connector.sync()

        failed = [r.data_type for r in results if r.status == SYNC_ERROR]
        logger.info(
            "Sync finished: %s integration %s (%d data types, failed=%s)",
            integration.provider, integration.id, len(results), failed or "none",
        )
        return results

    async def sync_user_integrations(self, user_id: str) -> Dict[str, Any]:
        """
        Sync every connected integration of a user concurrently.  One
        integration failing never aborts the others.
        """
        async with self._session_factory() as session:
            integrations = await helpers.list_user_integrations(session, user_id, connected_only=True)

        async def _one(integration: Integration) -> Any:
            try:
                return await self.sync_integration(integration.id)
            except Exception as exc:
                logger.error(
                    "Sync failed for %s integration %s: %s",
                    integration.provider, integration.id, exc,
                )
                return exc

        outcomes = await asyncio.gather(*(_one(i) for i in integrations))
        return {
            str(i.id): (
                {"status": "error", "error": str(o) or o.__class__.__name__}
                if isinstance(o, Exception)
                else {"status": "completed", "results": [r.to_dict() for r in o]}
            )
            for i, o in zip(integrations, outcomes)
        }

    async def sync_due_integrations(self) -> int:
        """
        Scheduled batch: sync, one at a time, every connected integration
        whose last sync is older than the sync interval.  Returns how many
        completed without raising.
        """
        cutoff = helpers.utcnow() - timedelta(seconds=config.sync_interval_seconds)
        async with self._session_factory() as session:
            due = await helpers.list_due_integrations(session, cutoff)

        logger.info("Scheduled sync: %d integration(s) due", len(due))
        completed = 0
        for integration in due:
            try:
                await self.sync_integration(integration.id)
                completed += 1
            except Exception as exc:
                logger.error(
                    "Scheduled sync failed for %s integration %s: %s",
                    integration.provider, integration.id, exc,
                )
        return completed

    def build_sync_job(self, lock) -> PeriodicJob:
        return PeriodicJob(
            name=SCHEDULED_SYNC_JOB,
            interval=config.sync_interval_seconds,
            tick=self.sync_due_integrations,
            lock=lock,
        )

    # ── Lifecycle / queries ─────────────────────────────────────────────

    async def disconnect_integration(self, integration_id: str | uuid.UUID) -> None:
        """Soft delete: the row is kept for audit."""
        integration = await self._load(integration_id)
        await self._set_status(
            integration.id, STATUS_DISCONNECTED, deleted_at=helpers.utcnow()
        )
        logger.info("Disconnected %s integration %s", integration.provider, integration.id)

    async def get_integration_status(self, integration_id: str | uuid.UUID) -> Dict[str, Any]:
        integration = await self._load(integration_id)
        async with self._session_factory() as session:
            logs = await helpers.recent_sync_logs(session, integration.id, limit=10)

        last_error = next((log.error_message for log in logs if log.status == SYNC_ERROR), None)
        return {
            "id": str(integration.id),
            "provider": integration.provider,
            "status": integration.status,
            "lastSyncAt": _iso(integration.last_sync_at),
            "lastError": last_error,
            "syncLogs": [_sync_log_view(log) for log in logs],
        }

    async def recent_sync_logs(
        self,
        integration_id: str | uuid.UUID,
        data_type: Optional[str] = None,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        async with self._session_factory() as session:
            logs = await helpers.recent_sync_logs(session, integration_id, limit=limit, data_type=data_type)
        return [_sync_log_view(log) for log in logs]

    async def find_user_integration(self, user_id: str, provider: str) -> Optional[Integration]:
        async with self._session_factory() as session:
            return await helpers.find_active_integration(session, user_id, provider)

    async def list_user_integrations(self, user_id: str) -> List[Integration]:
        async with self._session_factory() as session:
            return await helpers.list_user_integrations(session, user_id)

    async def handle_webhook(
        self,
        integration_id: str | uuid.UUID,
        payload: Dict[str, Any],
        *,
        raw_body: bytes = b"",
        headers: Optional[Dict[str, str]] = None,
        provider: Optional[str] = None,
    ) -> None:
        integration = await self._load(integration_id)
        if provider is not None and integration.provider != provider:
            raise IntegrationNotFound(f"No {provider} integration {integration_id}")
        headers = headers or {}
        async with self._connector(integration) as connector:
            if not connector.verify_webhook(raw_body, headers):
                logger.warning(
                    "Rejected %s webhook for integration %s: bad signature",
                    integration.provider, integration.id,
                )
                raise WebhookSignatureInvalid("Webhook signature verification failed")
            await connector.handle_webhook(payload, headers)

    async def purge_stale_oauth_states(self) -> int:
        async with self._session_factory() as session:
            removed = await helpers.purge_expired_oauth_states(session)
            await session.commit()
        if removed:
            logger.info("Purged %d expired OAuth state(s)", removed)
        return removed
