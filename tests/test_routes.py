"""
Tests for the /api/integrations routes with a mocked ConnectorManager.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from auth.jwt import create_token
from connectors import routes
from connectors.errors import (
    ConnectorConfigError,
    IntegrationNotFound,
    OAuthStateInvalid,
    TokenExchangeError,
    WebhookSignatureInvalid,
)
from connectors.manager import ConnectorManager
from connectors.registry import ConnectorRegistry
from database.models import STATUS_CONNECTED, Integration

SHOP = "test-store.myshopify.com"
INTEGRATION_ID = uuid.UUID("6f1c2d9e-8a1b-4c3d-9e2f-112233445566")


def _integration(provider="shopify", **kw) -> Integration:
    return Integration(
        id=INTEGRATION_ID,
        user_id="user-1",
        provider=provider,
        account_id=kw.pop("account_id", SHOP),
        status=kw.pop("status", STATUS_CONNECTED),
        metadata_=kw.pop("metadata", {"shopDomain": SHOP, "shopName": "Test Store"}),
        last_sync_at=kw.pop("last_sync_at", None),
    )


@pytest.fixture
def manager():
    mock = MagicMock(spec=ConnectorManager)
    mock.registry = ConnectorRegistry()
    mock.initiate_oauth = AsyncMock(return_value={"authUrl": "https://auth.test/authorize?x=1", "state": "st"})
    mock.handle_oauth_callback = AsyncMock(return_value=_integration())
    mock.find_user_integration = AsyncMock(return_value=None)
    mock.list_user_integrations = AsyncMock(return_value=[])
    mock.sync_integration = AsyncMock(return_value=[])
    mock.disconnect_integration = AsyncMock()
    mock.handle_webhook = AsyncMock()
    return mock


@pytest.fixture
def client(manager):
    app = FastAPI()
    app.include_router(routes.router, prefix="/api/integrations")
    app.dependency_overrides[routes.get_connector_manager] = lambda: manager
    return TestClient(app)


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {create_token('user-1')}"}


class TestAuth:
    def test_invalid_token_rejected(self, client):
        response = client.get("/api/integrations/klaviyo/status", headers={"Authorization": "Bearer bogus"})
        assert response.status_code == 401

    def test_expired_token_rejected(self, client):
        token = create_token("user-1", expires_in=-10)
        response = client.get("/api/integrations/klaviyo/status", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401


class TestConnect:
    def test_returns_auth_url(self, client, manager, auth_headers):
        response = client.post(
            "/api/integrations/shopify/connect",
            json={"metadata": {"shopDomain": SHOP}},
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert response.json() == {
            "authUrl": "https://auth.test/authorize?x=1",
            "state": "st",
            "provider": "shopify",
        }
        manager.initiate_oauth.assert_awaited_once_with("shopify", "user-1", {"shopDomain": SHOP})

    def test_body_is_optional(self, client, manager, auth_headers):
        response = client.post("/api/integrations/klaviyo/connect", headers=auth_headers)
        assert response.status_code == 200
        manager.initiate_oauth.assert_awaited_once_with("klaviyo", "user-1", {})

    def test_unsupported_provider(self, client, manager, auth_headers):
        response = client.post("/api/integrations/gmail/connect", headers=auth_headers)
        assert response.status_code == 400
        manager.initiate_oauth.assert_not_awaited()

    def test_unconfigured_provider(self, client, manager, auth_headers):
        manager.initiate_oauth.side_effect = ConnectorConfigError("Klaviyo OAuth credentials are not configured")
        response = client.post("/api/integrations/klaviyo/connect", headers=auth_headers)
        assert response.status_code == 400


class TestCallback:
    def _get(self, client, query):
        return client.get(f"/api/integrations/shopify/callback?{query}", follow_redirects=False)

    def test_success_redirects_to_dashboard(self, client, manager):
        response = self._get(client, f"code=c&state=s&shop={SHOP}")
        assert response.status_code == 302
        assert response.headers["location"] == (
            f"https://app.example.test/dashboard?connected=shopify&integration={INTEGRATION_ID}"
        )
        manager.handle_oauth_callback.assert_awaited_once_with("shopify", "c", "s", {"shopDomain": SHOP})

    def test_provider_error_passed_through(self, client, manager):
        response = self._get(client, "error=access_denied")
        assert response.headers["location"] == "https://app.example.test/?error=access_denied"
        manager.handle_oauth_callback.assert_not_awaited()

    def test_missing_parameters(self, client):
        response = self._get(client, "code=c")
        assert response.headers["location"] == "https://app.example.test/?error=missing_oauth_parameters"

    @pytest.mark.parametrize(
        "exc, code",
        [
            (OAuthStateInvalid("replayed"), "invalid_state"),
            (ConnectorConfigError("no account id"), "provider_not_configured"),
            (TokenExchangeError("HTTP 400 {secret body}", 400, "{secret body}"), "oauth_failed"),
            (OperationalError("INSERT", {}, Exception("db down")), "integration_creation_failed"),
        ],
    )
    def test_failures_redirect_with_opaque_code(self, client, manager, exc, code):
        manager.handle_oauth_callback.side_effect = exc
        response = self._get(client, "code=c&state=s")
        assert response.status_code == 302
        assert response.headers["location"] == f"https://app.example.test/?error={code}"


class TestStatus:
    def test_not_connected_is_200(self, client, auth_headers):
        response = client.get("/api/integrations/klaviyo/status", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {"connected": False, "provider": "klaviyo"}

    def test_connected_shopify(self, client, manager, auth_headers):
        manager.find_user_integration.return_value = _integration()
        body = client.get("/api/integrations/shopify/status", headers=auth_headers).json()

        assert body["connected"] is True
        assert body["id"] == str(INTEGRATION_ID)
        assert body["accountId"] == SHOP
        assert body["status"] == "connected"
        assert body["metadata"]["shopDomain"] == SHOP
        manager.find_user_integration.assert_awaited_once_with("user-1", "shopify")

    def test_errored_integration_reports_not_connected(self, client, manager, auth_headers):
        manager.find_user_integration.return_value = _integration(status="expired")
        body = client.get("/api/integrations/shopify/status", headers=auth_headers).json()
        assert body["connected"] is False
        assert body["status"] == "expired"


class TestSyncAndDisconnect:
    def test_sync_acknowledges_immediately(self, client, manager, auth_headers):
        manager.find_user_integration.return_value = _integration()
        response = client.post("/api/integrations/shopify/sync", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["message"] == "Sync initiated"

    def test_sync_without_integration(self, client, auth_headers):
        response = client.post("/api/integrations/shopify/sync", headers=auth_headers)
        assert response.status_code == 404

    def test_disconnect(self, client, manager, auth_headers):
        manager.find_user_integration.return_value = _integration()
        response = client.delete("/api/integrations/shopify/disconnect", headers=auth_headers)
        assert response.status_code == 200
        manager.disconnect_integration.assert_awaited_once_with(INTEGRATION_ID)

    def test_disconnect_without_integration(self, client, auth_headers):
        response = client.delete("/api/integrations/shopify/disconnect", headers=auth_headers)
        assert response.status_code == 404


class TestWebhook:
    def test_requires_integration_id(self, client):
        response = client.post("/api/integrations/shopify/webhook", json={"id": 1})
        assert response.status_code == 400

    def test_forwards_payload_and_headers(self, client, manager):
        response = client.post(
            f"/api/integrations/shopify/webhook?integrationId={INTEGRATION_ID}",
            content=b'{"id": 1}',
            headers={"X-Shopify-Topic": "orders/create", "Content-Type": "application/json"},
        )
        assert response.status_code == 200
        args, kwargs = manager.handle_webhook.await_args
        assert args == (str(INTEGRATION_ID), {"id": 1})
        assert kwargs["raw_body"] == b'{"id": 1}'
        assert kwargs["headers"]["x-shopify-topic"] == "orders/create"
        assert kwargs["provider"] == "shopify"

    def test_unknown_integration(self, client, manager):
        manager.handle_webhook.side_effect = IntegrationNotFound("nope")
        response = client.post(f"/api/integrations/shopify/webhook?integrationId={INTEGRATION_ID}", json={})
        assert response.status_code == 404

    def test_bad_signature(self, client, manager):
        manager.handle_webhook.side_effect = WebhookSignatureInvalid("bad")
        response = client.post(f"/api/integrations/shopify/webhook?integrationId={INTEGRATION_ID}", json={})
        assert response.status_code == 401

    def test_invalid_json(self, client):
        response = client.post(
            f"/api/integrations/shopify/webhook?integrationId={INTEGRATION_ID}", content=b"not json"
        )
        assert response.status_code == 400


class TestListing:
    def test_list_integrations(self, client, manager, auth_headers):
        manager.list_user_integrations.return_value = [_integration()]
        body = client.get("/api/integrations", headers=auth_headers).json()
        assert {p["provider"] for p in body["providers"]} == {"shopify", "klaviyo"}
        assert body["integrations"][0]["accountId"] == SHOP

    def test_health(self, client):
        body = client.get("/api/integrations/health").json()
        assert body["status"] == "ok"
        assert set(body["providers"]) == {"shopify", "klaviyo"}

    def test_shopify_install(self, client, auth_headers):
        body = client.get("/api/integrations/shopify/install?shop=test-store", headers=auth_headers).json()
        assert body["metadata"] == {"shopDomain": SHOP}

    def test_klaviyo_campaigns(self, client, manager, auth_headers):
        manager.find_user_integration.return_value = _integration(provider="klaviyo", account_id="XyZ123")
        manager.recent_sync_logs = AsyncMock(
            return_value=[{"dataType": "campaigns", "status": "success", "recordsCount": 4}]
        )

        body = client.get("/api/integrations/klaviyo/campaigns", headers=auth_headers).json()

        assert body["integration"] == {"id": str(INTEGRATION_ID), "status": "connected", "lastSyncAt": None}
        assert body["campaigns"][0]["recordsCount"] == 4
        manager.find_user_integration.assert_awaited_once_with("user-1", "klaviyo")
        manager.recent_sync_logs.assert_awaited_once_with(INTEGRATION_ID, data_type="campaigns", limit=10)

    def test_klaviyo_campaigns_without_connected_integration(self, client, manager, auth_headers):
        response = client.get("/api/integrations/klaviyo/campaigns", headers=auth_headers)
        assert response.status_code == 404

        manager.find_user_integration.return_value = _integration(provider="klaviyo", status="expired")
        response = client.get("/api/integrations/klaviyo/campaigns", headers=auth_headers)
        assert response.status_code == 404

    def test_shopify_install_rejects_bad_shop(self, client, auth_headers):
        response = client.get("/api/integrations/shopify/install?shop=evil.com", headers=auth_headers)
        assert response.status_code == 400
