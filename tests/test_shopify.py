"""
Tests for the Shopify connector against a mocked Admin API.
"""

import base64
import hashlib
import hmac
import json
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import select

from connectors.errors import ConnectorConfigError, TokenExchangeError
from connectors.shopify import ShopifyConnector, normalize_shop_domain
from database import helpers
from database.models import STATUS_DISCONNECTED, Integration, SyncLog

SHOP = "test-store.myshopify.com"

SHOP_JSON = {
    "shop": {
        "id": 548380009,
        "name": "Test Store",
        "email": "owner@test-store.com",
        "domain": "shop.test-store.com",
        "myshopify_domain": SHOP,
        "currency": "USD",
        "iana_timezone": "America/New_York",
    }
}


def _connection(root, nodes, end_cursor=None):
    return {
        "data": {
            root: {
                "edges": [{"node": n} for n in nodes],
                "pageInfo": {"hasNextPage": end_cursor is not None, "endCursor": end_cursor},
            }
        }
    }


def _root_of(query: str) -> str:
    for root in ("orders", "products", "customers"):
        if f"{root}(first" in query:
            return root
    raise AssertionError("unexpected query")


def _connector(integration, session_factory, vault, handler) -> ShopifyConnector:
    connector = ShopifyConnector(
        integration,
        session_factory=session_factory,
        vault=vault,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    connector._delay = AsyncMock()
    return connector


class TestShopDomain:
    @pytest.mark.parametrize(
        "value",
        ["test-store", "test-store.myshopify.com", "https://Test-Store.myshopify.com/admin", " test-store.myshopify.com "],
    )
    def test_normalises(self, value):
        assert normalize_shop_domain(value) == SHOP

    @pytest.mark.parametrize("value", ["", "evil.com", "test-store.myshopify.com.evil.com", "-bad.myshopify.com"])
    def test_rejects(self, value):
        with pytest.raises(ConnectorConfigError):
            normalize_shop_domain(value)


class TestOAuth:
    def test_config_requires_shop_domain(self):
        with pytest.raises(ConnectorConfigError):
            ShopifyConnector.oauth_config({})

    def test_config_uses_shop_urls(self):
        oauth = ShopifyConnector.oauth_config({"shopDomain": "test-store"})
        assert oauth.auth_url == f"https://{SHOP}/admin/oauth/authorize"
        assert oauth.token_url == f"https://{SHOP}/admin/oauth/access_token"
        assert oauth.redirect_uri == "https://api.example.test/api/integrations/shopify/callback"
        assert oauth.pkce_required is False

    @pytest.mark.asyncio
    async def test_exchange_resolves_shop_identity(self, session_factory, vault):
        def handler(request):
            if request.url.path == "/admin/oauth/access_token":
                form = dict(x.split("=") for x in request.content.decode().split("&"))
                assert form["code"] == "auth-code"
                assert form["client_id"] == "shopify-client"
                return httpx.Response(200, json={"access_token": "shpat_1", "scope": "read_orders,read_products"})
            assert request.url.path == "/admin/api/2023-10/shop.json"
            assert request.headers["X-Shopify-Access-Token"] == "shpat_1"
            return httpx.Response(200, json=SHOP_JSON)

        shell = Integration(provider="shopify", user_id="u", metadata_={"shopDomain": SHOP})
        connector = _connector(shell, session_factory, vault, handler)
        tokens = await connector.exchange_code_for_tokens("auth-code")

        assert tokens.account_id == SHOP
        assert tokens.refresh_token is None
        assert tokens.expires_at is None
        assert tokens.scopes == ["read_orders", "read_products"]
        assert tokens.metadata["shopDomain"] == SHOP
        assert tokens.metadata["shopName"] == "Test Store"
        assert tokens.metadata["currency"] == "USD"

    @pytest.mark.asyncio
    async def test_exchange_failure_wrapped(self, session_factory, vault):
        shell = Integration(provider="shopify", user_id="u", metadata_={"shopDomain": SHOP})
        connector = _connector(shell, session_factory, vault, lambda r: httpx.Response(400, json={"error": "invalid_request"}))
        with pytest.raises(TokenExchangeError):
            await connector.exchange_code_for_tokens("bad-code")

    @pytest.mark.asyncio
    async def test_refresh_returns_current_token(self, make_integration, session_factory, vault):
        integration = await make_integration("shopify", access_token="shpat_keep")
        connector = _connector(integration, session_factory, vault, lambda r: httpx.Response(500))
        tokens = await connector.refresh_access_token()
        assert tokens.access_token == "shpat_keep"


class TestSync:
    @pytest.mark.asyncio
    async def test_products_failure_does_not_affect_other_types(self, make_integration, session_factory, vault):
        integration = await make_integration("shopify")
        product_pages = []

        def handler(request):
            query = json.loads(request.content)["query"]
            root = _root_of(query)
            if root == "orders":
                return httpx.Response(200, json=_connection("orders", [{"id": "gid://shopify/Order/1", "name": "#1001"}]))
            if root == "customers":
                return httpx.Response(200, json=_connection("customers", [{"id": "gid://shopify/Customer/7"}]))
            product_pages.append(query)
            if len(product_pages) == 1:
                return httpx.Response(200, json=_connection("products", [{"id": "p1", "title": "Hat"}], "cursor-2"))
            return httpx.Response(500, text="internal error")

        connector = _connector(integration, session_factory, vault, handler)
        results = await connector.sync()

        assert {r.data_type: r.status for r in results} == {
            "orders": "success",
            "products": "error",
            "customers": "success",
        }
        async with session_factory() as session:
            rows = (await session.execute(
                select(SyncLog).where(SyncLog.integration_id == integration.id)
            )).scalars().all()
        assert sorted((r.data_type, r.status) for r in rows) == [
            ("customers", "success"), ("orders", "success"), ("products", "error"),
        ]

    @pytest.mark.asyncio
    async def test_incremental_filter_after_first_sync(self, make_integration, session_factory, vault):
        integration = await make_integration("shopify")
        searches = []

        def handler(request):
            body = json.loads(request.content)
            root = _root_of(body["query"])
            if root == "orders":
                searches.append(body["variables"]["query"])
            return httpx.Response(200, json=_connection(root, []))

        connector = _connector(integration, session_factory, vault, handler)
        await connector.sync()
        await connector.sync()

        assert searches[0] is None
        assert searches[1].startswith("updated_at:>'")

    @pytest.mark.asyncio
    async def test_throttled_graphql_retried_once(self, make_integration, session_factory, vault):
        integration = await make_integration("shopify")
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                return httpx.Response(200, json={"errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]})
            return httpx.Response(200, json=_connection("orders", [{"id": "o1"}]))

        connector = _connector(integration, session_factory, vault, handler)
        assert await connector._sync_orders(None) == 1
        assert len(calls) == 2


class TestWebhooks:
    def _signed(self, body: bytes, secret: str = "shopify-secret") -> str:
        return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()

    @pytest.mark.asyncio
    async def test_verify_webhook(self, make_integration, session_factory, vault):
        integration = await make_integration("shopify")
        connector = _connector(integration, session_factory, vault, lambda r: httpx.Response(200))
        body = b'{"id": 1}'

        assert connector.verify_webhook(body, {"x-shopify-hmac-sha256": self._signed(body)})
        assert not connector.verify_webhook(body, {"x-shopify-hmac-sha256": self._signed(body, "wrong")})
        assert not connector.verify_webhook(body, {})

    @pytest.mark.asyncio
    async def test_app_uninstalled_disconnects(self, make_integration, session_factory, vault):
        integration = await make_integration("shopify")
        connector = _connector(integration, session_factory, vault, lambda r: httpx.Response(200))

        await connector.handle_webhook({"id": 1}, {"x-shopify-topic": "app/uninstalled"})

        async with session_factory() as session:
            stored = await helpers.get_integration(session, integration.id)
        assert stored.status == STATUS_DISCONNECTED
        assert stored.deleted_at is not None
