"""
Integration API routes — OAuth connect/callback, status, manual sync,
disconnect and inbound webhooks.

Route prefix: /api/integrations
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional, Set
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from auth.dependencies import get_current_user_id
from config.settings import config
from connectors.errors import (
    ConnectorConfigError,
    IntegrationNotFound,
    OAuthStateInvalid,
    ProviderNotSupported,
    WebhookSignatureInvalid,
)
from connectors.manager import ConnectorManager
from connectors.shopify import normalize_shop_domain
from database.models import STATUS_CONNECTED, Integration

logger = logging.getLogger(__name__)

router = APIRouter(tags=["integrations"])

_manager: Optional[ConnectorManager] = None

# Strong references so fire-and-forget syncs are not garbage collected mid-run.
_background_tasks: Set[asyncio.Task] = set()


def get_connector_manager() -> ConnectorManager:
    """Process-wide manager; overridden in tests via ``dependency_overrides``."""
    global _manager
    if _manager is None:
        _manager = ConnectorManager()
    return _manager


# ── Request models ─────────────────────────────────────────────────────


class ConnectRequest(BaseModel):
    metadata: Dict[str, Any] = {}


# ── Helpers ────────────────────────────────────────────────────────────


def _integration_view(integration: Integration) -> Dict[str, Any]:
    last_sync = integration.last_sync_at
    return {
        "id": str(integration.id),
        "provider": integration.provider,
        "accountId": integration.account_id,
        "status": integration.status,
        "lastSyncAt": last_sync.isoformat() if last_sync else None,
        "metadata": integration.metadata_ or {},
    }


def _ensure_supported(manager: ConnectorManager, provider: str) -> None:
    if not manager.registry.is_supported(provider):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Provider '{provider}' is not supported",
        )


def _error_redirect(reason: str) -> RedirectResponse:
    url = f"{config.client_url.rstrip('/')}/?{urlencode({'error': reason})}"
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


def _success_redirect(provider: str, integration_id: uuid.UUID) -> RedirectResponse:
    query = urlencode({"connected": provider, "integration": str(integration_id)})
    url = f"{config.client_url.rstrip('/')}{config.frontend_success_path}?{query}"
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


async def _bg_sync(manager: ConnectorManager, integration_id: uuid.UUID) -> None:
    """Fire-and-forget wrapper: logs errors instead of raising."""
    try:
        await manager.sync_integration(integration_id)
    except Exception:
        logger.exception("Background sync failed for integration %s", integration_id)


async def _user_integration(manager: ConnectorManager, user_id: str, provider: str) -> Integration:
    integration = await manager.find_user_integration(user_id, provider)
    if integration is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No {provider} integration found",
        )
    return integration


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("")
async def list_integrations(
    user_id: str = Depends(get_current_user_id),
    manager: ConnectorManager = Depends(get_connector_manager),
) -> Dict[str, Any]:
    """Available providers plus the user's non-deleted integrations."""
    integrations = await manager.list_user_integrations(user_id)
    return {
        "providers": manager.registry.list_providers(),
        "integrations": [_integration_view(i) for i in integrations],
    }


@router.get("/health")
async def health(manager: ConnectorManager = Depends(get_connector_manager)) -> Dict[str, Any]:
    return {"status": "ok", "providers": manager.registry.available_providers()}


@router.get("/shopify/install")
async def shopify_install(
    shop: str = Query(...),
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    """
    Entry point for installs started from the Shopify admin: validates the
    shop and tells the frontend how to start the connect flow.
    """
    try:
        domain = normalize_shop_domain(shop)
    except ConnectorConfigError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return {
        "provider": "shopify",
        "connectUrl": "/api/integrations/shopify/connect",
        "metadata": {"shopDomain": domain},
    }


@router.get("/klaviyo/campaigns")
async def klaviyo_campaigns(
    user_id: str = Depends(get_current_user_id),
    manager: ConnectorManager = Depends(get_connector_manager),
) -> Dict[str, Any]:
    """The user's connected Klaviyo integration and its latest campaign syncs."""
    integration = await manager.find_user_integration(user_id, "klaviyo")
    if integration is None or integration.status != STATUS_CONNECTED:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Klaviyo integration not found")
    campaigns = await manager.recent_sync_logs(integration.id, data_type="campaigns", limit=10)
    last_sync = integration.last_sync_at
    return {
        "integration": {
            "id": str(integration.id),
            "status": integration.status,
            "lastSyncAt": last_sync.isoformat() if last_sync else None,
        },
        "campaigns": campaigns,
    }


@router.post("/{provider}/connect")
async def connect(
    provider: str,
    body: Optional[ConnectRequest] = None,
    user_id: str = Depends(get_current_user_id),
    manager: ConnectorManager = Depends(get_connector_manager),
) -> Dict[str, str]:
    """Start an OAuth flow; the frontend navigates to ``authUrl``."""
    _ensure_supported(manager, provider)
    metadata = body.metadata if body else {}
    try:
        result = await manager.initiate_oauth(provider, user_id, metadata)
    except (ProviderNotSupported, ConnectorConfigError) as exc:
        logger.warning("Connect rejected for %s (user=%s): %s", provider, user_id, exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return {**result, "provider": provider}


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    shop: Optional[str] = Query(None),
    manager: ConnectorManager = Depends(get_connector_manager),
) -> RedirectResponse:
    """
    Provider redirect target.  Always answers with a redirect to the
    frontend; failures carry only an opaque ``error`` code.
    """
    if error:
        logger.info("OAuth denied by %s: %s", provider, error)
        return _error_redirect(error)
    if not code or not state:
        return _error_redirect("missing_oauth_parameters")

    callback_metadata: Dict[str, Any] = {}
    if shop:
        callback_metadata["shopDomain"] = shop

    try:
        integration = await manager.handle_oauth_callback(provider, code, state, callback_metadata)
    except OAuthStateInvalid as exc:
        logger.warning("OAuth callback for %s rejected: %s", provider, exc)
        return _error_redirect("invalid_state")
    except (ProviderNotSupported, ConnectorConfigError) as exc:
        logger.error("OAuth callback for %s misconfigured: %s", provider, exc)
        return _error_redirect("provider_not_configured")
    except SQLAlchemyError:
        logger.exception("Could not store %s integration", provider)
        return _error_redirect("integration_creation_failed")
    except Exception as exc:
        logger.error("OAuth callback failed for %s: %s", provider, exc)
        return _error_redirect("oauth_failed")

    return _success_redirect(provider, integration.id)


@router.get("/{provider}/status")
async def integration_status(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    manager: ConnectorManager = Depends(get_connector_manager),
) -> Dict[str, Any]:
    """Connection state for one provider; never 404s when nothing is connected."""
    _ensure_supported(manager, provider)
    integration = await manager.find_user_integration(user_id, provider)
    if integration is None:
        return {"connected": False, "provider": provider}
    return {"connected": integration.status == STATUS_CONNECTED, **_integration_view(integration)}


@router.post("/{provider}/sync")
async def trigger_sync(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    manager: ConnectorManager = Depends(get_connector_manager),
) -> Dict[str, str]:
    """Start a sync in the background and acknowledge immediately."""
    _ensure_supported(manager, provider)
    integration = await _user_integration(manager, user_id, provider)
    task = asyncio.create_task(_bg_sync(manager, integration.id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return {"message": "Sync initiated", "integrationId": str(integration.id)}


@router.delete("/{provider}/disconnect")
async def disconnect(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    manager: ConnectorManager = Depends(get_connector_manager),
) -> Dict[str, str]:
    _ensure_supported(manager, provider)
    integration = await _user_integration(manager, user_id, provider)
    await manager.disconnect_integration(integration.id)
    return {"message": "Integration disconnected"}


@router.post("/{provider}/webhook")
async def webhook(
    provider: str,
    request: Request,
    integration_id: Optional[str] = Query(None, alias="integrationId"),
    manager: ConnectorManager = Depends(get_connector_manager),
) -> Dict[str, bool]:
    """Provider-invoked; forwards the payload to the integration's connector."""
    if not integration_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="integrationId is required")

    raw_body = await request.body()
    try:
        payload = json.loads(raw_body) if raw_body else {}
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        payload = {"data": payload}

    try:
        await manager.handle_webhook(
            integration_id,
            payload,
            raw_body=raw_body,
            headers=dict(request.headers),
            provider=provider,
        )
    except IntegrationNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration not found")
    except WebhookSignatureInvalid:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")
    return {"received": True}
