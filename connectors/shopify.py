"""
ShopifyConnector — per-shop OAuth and GraphQL Admin API sync.

Shopify offline access tokens never expire, so there is no refresh token;
the shop's ``myshopify.com`` domain is the account identity.  Orders,
products and customers are pulled through cursor-paginated GraphQL
connections at roughly two requests per second.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx

from config.settings import config
from connectors.base import BaseConnector, OAuthConfig, Page, SyncRoutine, TokenSet
from connectors.errors import (
    ConnectorConfigError,
    ConnectorError,
    ProviderHTTPError,
    RateLimitedError,
    TokenExchangeError,
    TokenRefreshError,
)
from database import helpers
from database.models import STATUS_DISCONNECTED

logger = logging.getLogger(__name__)

_SHOP_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")

SHOPIFY_SCOPES = [
    "read_orders",
    "read_products",
    "read_customers",
    "read_analytics",
    "read_inventory",
    "read_fulfillments",
]

ORDERS_QUERY = """
query getOrders($first: Int!, $after: String, $query: String) {
  orders(first: $first, after: $after, query: $query, sortKey: UPDATED_AT) {
    edges {
      node {
        id
        name
        email
        processedAt
        updatedAt
        totalPriceSet { shopMoney { amount currencyCode } }
        subtotalPriceSet { shopMoney { amount currencyCode } }
        totalTaxSet { shopMoney { amount currencyCode } }
        customer { id email firstName lastName }
        lineItems(first: 100) {
          edges {
            node {
              id
              title
              quantity
              variant { id price product { id title } }
            }
          }
        }
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""

PRODUCTS_QUERY = """
query getProducts($first: Int!, $after: String, $query: String) {
  products(first: $first, after: $after, query: $query, sortKey: UPDATED_AT) {
    edges {
      node {
        id
        title
        handle
        status
        productType
        vendor
        createdAt
        updatedAt
        variants(first: 100) {
          edges { node { id title price sku inventoryQuantity } }
        }
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""

CUSTOMERS_QUERY = """
query getCustomers($first: Int!, $after: String, $query: String) {
  customers(first: $first, after: $after, query: $query, sortKey: UPDATED_AT) {
    edges {
      node {
        id
        email
        firstName
        lastName
        numberOfOrders
        amountSpent { amount currencyCode }
        createdAt
        updatedAt
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""


def normalize_shop_domain(value: str) -> str:
    """
    Reduce user/provider input to a bare ``<shop>.myshopify.com`` host.

    Raises ``ConnectorConfigError`` for anything that is not a Shopify
    shop domain; the value is used to build request URLs.
    """
    domain = (value or "").strip().lower()
    domain = re.sub(r"^https?://", "", domain).split("/", 1)[0]
    if domain and "." not in domain:
        domain = f"{domain}.myshopify.com"
    if not _SHOP_DOMAIN_RE.match(domain):
        raise ConnectorConfigError(f"Invalid Shopify shop domain: {value!r}")
    return domain


class ShopifyConnector(BaseConnector):
    """OAuth2 + GraphQL connector for Shopify."""

    provider_name = "shopify"
    display_name = "Shopify"
    rate_limit_delay = 0.5          # ~2 requests / second
    page_size = 50

    @classmethod
    def oauth_config(cls, metadata: Dict[str, Any]) -> OAuthConfig:
        shop = metadata.get("shopDomain")
        if not shop:
            raise ConnectorConfigError("Shop domain not found in integration metadata")
        domain = normalize_shop_domain(shop)
        client_id, client_secret = cls.credentials()
        return OAuthConfig(
            client_id=client_id,
            client_secret=client_secret,
            auth_url=f"https://{domain}/admin/oauth/authorize",
            token_url=f"https://{domain}/admin/oauth/access_token",
            redirect_uri=config.redirect_uri(cls.provider_name),
            scopes=list(SHOPIFY_SCOPES),
            scope_separator=",",
        )

    def _shop_domain(self) -> str:
        shop = self.metadata.get("shopDomain") or self.integration.account_id
        if not shop:
            raise ConnectorConfigError("Shop domain not available in integration metadata")
        return normalize_shop_domain(shop)

    def _admin_url(self, domain: str, path: str) -> str:
        return f"https://{domain}/admin/api/{config.shopify_api_version}/{path}"

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {"X-Shopify-Access-Token": token}

    # ── OAuth ───────────────────────────────────────────────────────────

    async def exchange_code_for_tokens(
        self,
        code: str,
        state: Optional[str] = None,
        code_verifier: Optional[str] = None,
    ) -> TokenSet:
        oauth = self.get_oauth_config()
        domain = self._shop_domain()
        form = {
            "client_id": oauth.client_id,
            "client_secret": oauth.client_secret,
            "code": code,
        }
        if code_verifier:
            form["code_verifier"] = code_verifier

        try:
            response = await self._request("POST", oauth.token_url, authenticated=False, data=form)
            payload = response.json()
            access_token = payload.get("access_token")
            if not access_token:
                raise TokenExchangeError("Shopify token response did not include an access_token")
            shop = await self._fetch_shop_info(access_token, domain)
        except ProviderHTTPError as exc:
            if isinstance(exc, TokenExchangeError):
                raise
            raise TokenExchangeError(
                f"Shopify token exchange failed (HTTP {exc.status_code})", exc.status_code, exc.body
            ) from exc
        except httpx.HTTPError as exc:
            raise TokenExchangeError(f"Shopify token exchange failed: {exc}") from exc

        account_id = shop.get("myshopify_domain") or shop.get("domain")
        if not account_id:
            raise ConnectorConfigError("Shopify token exchange did not resolve the shop domain")

        return TokenSet(
            access_token=access_token,
            account_id=account_id,
            scopes=[s for s in (payload.get("scope") or "").split(",") if s],
            metadata={
                "shopName": shop.get("name"),
                "shopDomain": account_id,
                "shopId": self.normalize_id(shop.get("id")),
                "email": shop.get("email"),
                "currency": shop.get("currency"),
                "timezone": shop.get("iana_timezone") or shop.get("timezone"),
            },
        )

    async def refresh_access_token(self) -> TokenSet:
        # Offline tokens do not expire; hand back what is stored.
        return TokenSet(access_token=self.vault.decrypt(self.integration.access_token))

    async def validate_connection(self) -> bool:
        try:
            await self._fetch_shop_info()
            return True
        except TokenRefreshError:
            raise
        except (ConnectorError, httpx.HTTPError) as exc:
            logger.warning("Shopify connection validation failed for %s: %s", self.integration.id, exc)
            return False

    async def _fetch_shop_info(
        self,
        access_token: Optional[str] = None,
        shop_domain: Optional[str] = None,
    ) -> Dict[str, Any]:
        domain = shop_domain or self._shop_domain()
        response = await self._request("GET", self._admin_url(domain, "shop.json"), token=access_token)
        shop = response.json().get("shop")
        if not shop:
            raise ProviderHTTPError("Shopify shop.json response did not include a shop")
        return shop

    # ── GraphQL ─────────────────────────────────────────────────────────

    async def _graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        url = self._admin_url(self._shop_domain(), "graphql.json")
        body = {"query": query, "variables": variables}
        payload = (await self._request("POST", url, json=body)).json()
        errors = payload.get("errors")
        if errors and _is_throttled(errors):
            logger.info("Shopify GraphQL throttled; retrying in %.2fs", self.rate_limit_delay * 2)
            await self._delay(self.rate_limit_delay * 2)
            payload = (await self._request("POST", url, json=body)).json()
            errors = payload.get("errors")
            if errors and _is_throttled(errors):
                raise RateLimitedError("Shopify GraphQL throttling persisted", 429)
        if errors:
            messages = "; ".join(str(e.get("message", e)) for e in errors) if isinstance(errors, list) else str(errors)
            raise ProviderHTTPError(f"Shopify GraphQL error: {messages}")
        return payload.get("data") or {}

    async def _sync_connection(self, root: str, query: str, since: Optional[datetime], handler) -> int:
        search = f"updated_at:>'{since.isoformat()}'" if since else None

        async def fetch(cursor: Optional[str]) -> Page:
            data = await self._graphql(
                query, {"first": self.page_size, "after": cursor, "query": search}
            )
            connection = data.get(root) or {}
            page_info = connection.get("pageInfo") or {}
            return Page(
                items=[edge["node"] for edge in connection.get("edges") or []],
                next_cursor=page_info.get("endCursor") if page_info.get("hasNextPage") else None,
            )

        return await self._paginate(root, fetch, handler)

    # ── Sync ────────────────────────────────────────────────────────────

    def _sync_routines(self) -> List[Tuple[str, SyncRoutine]]:
        return [
            ("orders", self._sync_orders),
            ("products", self._sync_products),
            ("customers", self._sync_customers),
        ]

    async def _prepare_sync(self) -> None:
        self._shop_domain()
        await self.get_access_token()

    async def _sync_orders(self, since: Optional[datetime]) -> int:
        return await self._sync_connection("orders", ORDERS_QUERY, since, self._store_order)

    async def _sync_products(self, since: Optional[datetime]) -> int:
        return await self._sync_connection("products", PRODUCTS_QUERY, since, self._store_product)

    async def _sync_customers(self, since: Optional[datetime]) -> int:
        return await self._sync_connection("customers", CUSTOMERS_QUERY, since, self._store_customer)

    async def _store_order(self, order: Dict[str, Any]) -> None:
        total = ((order.get("totalPriceSet") or {}).get("shopMoney") or {})
        record = {
            "id": self.normalize_id(order.get("id")),
            "name": order.get("name"),
            "total": self.normalize_amount(total.get("amount")),
            "currency": total.get("currencyCode"),
            "processed_at": self.normalize_timestamp(order.get("processedAt")),
            "line_items": len(((order.get("lineItems") or {}).get("edges")) or []),
        }
        logger.debug("Shopify order %s: %s", record["name"], record)

    async def _store_product(self, product: Dict[str, Any]) -> None:
        logger.debug("Shopify product %s: %s", self.normalize_id(product.get("id")), product.get("title"))

    async def _store_customer(self, customer: Dict[str, Any]) -> None:
        logger.debug(
            "Shopify customer %s: orders=%s",
            self.normalize_id(customer.get("id")),
            customer.get("numberOfOrders"),
        )

    # ── Webhooks ────────────────────────────────────────────────────────

    def verify_webhook(self, raw_body: bytes, headers: Dict[str, str]) -> bool:
        signature = headers.get("x-shopify-hmac-sha256", "")
        _, client_secret = config.provider_credentials(self.provider_name)
        return self.vault.validate_webhook_signature(
            raw_body, signature, client_secret, encoding="base64"
        )

    async def handle_webhook(self, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> None:
        topic = (headers or {}).get("x-shopify-topic") or payload.get("topic") or "unknown"
        if topic == "app/uninstalled" and self.is_persisted:
            logger.info("Shopify app uninstalled for integration %s; disconnecting", self.integration.id)
            await self._update_integration(status=STATUS_DISCONNECTED, deleted_at=helpers.utcnow())
            return
        logger.info("Processing Shopify webhook %s for integration %s", topic, self.integration.id)


def _is_throttled(errors: Any) -> bool:
    if not isinstance(errors, list):
        return False
    return any((e.get("extensions") or {}).get("code") == "THROTTLED" for e in errors if isinstance(e, dict))
