"""
KlaviyoConnector — OAuth2 (PKCE) and JSON:API sync for Klaviyo.

Klaviyo access tokens are short-lived and refresh tokens rotate on every
refresh.  Collections are paginated by following ``links.next``; the API
allows roughly ten requests per second on the endpoints used here.
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from config.settings import config
from connectors.base import BaseConnector, OAuthConfig, Page, SyncRoutine, TokenSet
from connectors.errors import (
    ConnectorConfigError,
    ConnectorError,
    ProviderHTTPError,
    TokenExchangeError,
    TokenRefreshError,
)
from database import helpers

logger = logging.getLogger(__name__)

# Klaviyo endpoints
_KLAVIYO_AUTH_URL = "https://www.klaviyo.com/oauth/authorize"
_KLAVIYO_TOKEN_URL = "https://a.klaviyo.com/oauth/token"
_KLAVIYO_API = "https://a.klaviyo.com/api"

KLAVIYO_SCOPES = [
    "accounts:read",
    "campaigns:read",
    "flows:read",
    "lists:read",
    "metrics:read",
    "profiles:read",
    "events:read",
    "segments:read",
    "templates:read",
]

_ATTRIBUTION_METRICS = {"Clicked Email", "Received Email", "Opened Email"}
_ATTRIBUTION_LOOKBACK = timedelta(days=30)


def _klaviyo_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _filter_safe(value: str) -> bool:
    """True if ``value`` can sit inside a quoted filter literal unchanged."""
    return '"' not in value and "\\" not in value


def _event_metric_name(event: Dict[str, Any]) -> Optional[str]:
    metric = ((event.get("attributes") or {}).get("metric") or {}).get("data") or {}
    return (metric.get("attributes") or {}).get("name")


def calculate_attribution(events: List[Dict[str, Any]], order_info: Dict[str, Any]) -> Dict[str, Any]:
    """
    Last-touch attribution for one order.

    ``events`` must be sorted newest first.  An email touch wins over UTM
    parameters; with neither the order is ``direct``.
    """
    order_value = order_info.get("orderValue", 0)
    for event in events:
        if _event_metric_name(event) in _ATTRIBUTION_METRICS:
            campaign = ((event.get("relationships") or {}).get("campaign") or {}).get("data") or {}
            return {
                "type": "klaviyo_campaign",
                "campaignId": campaign.get("id"),
                "touchpointTime": (event.get("attributes") or {}).get("datetime"),
                "orderValue": order_value,
            }

    utm = {k: order_info.get(k) for k in ("utmSource", "utmMedium", "utmCampaign")}
    if any(utm.values()):
        return {"type": "utm_attribution", **utm, "orderValue": order_value}

    return {"type": "direct", "orderValue": order_value}


class KlaviyoConnector(BaseConnector):
    """OAuth2 + JSON:API connector for Klaviyo."""

    provider_name = "klaviyo"
    display_name = "Klaviyo"
    rate_limit_delay = 0.1          # ~10 requests / second

    @classmethod
    def oauth_config(cls, metadata: Dict[str, Any]) -> OAuthConfig:
        client_id, client_secret = cls.credentials()
        return OAuthConfig(
            client_id=client_id,
            client_secret=client_secret,
            auth_url=_KLAVIYO_AUTH_URL,
            token_url=_KLAVIYO_TOKEN_URL,
            redirect_uri=config.redirect_uri(cls.provider_name),
            scopes=list(KLAVIYO_SCOPES),
            pkce_required=True,
        )

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "revision": config.klaviyo_api_revision,
        }

    @staticmethod
    def _basic_auth(oauth: OAuthConfig) -> Dict[str, str]:
        raw = f"{oauth.client_id}:{oauth.client_secret}".encode()
        return {"Authorization": f"Basic {base64.b64encode(raw).decode()}"}

    async def _token_request(self, oauth: OAuthConfig, form: Dict[str, str]) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            oauth.token_url,
            authenticated=False,
            data=form,
            headers=self._basic_auth(oauth),
        )
        payload = response.json()
        if not payload.get("access_token"):
            raise ProviderHTTPError("Klaviyo token response did not include an access_token")
        return payload

    @staticmethod
    def _expires_at(payload: Dict[str, Any]) -> Optional[datetime]:
        expires_in = payload.get("expires_in")
        if not expires_in:
            return None
        return helpers.utcnow() + timedelta(seconds=int(expires_in))

    # ── OAuth ───────────────────────────────────────────────────────────

    async def exchange_code_for_tokens(
        self,
        code: str,
        state: Optional[str] = None,
        code_verifier: Optional[str] = None,
    ) -> TokenSet:
        oauth = self.get_oauth_config()
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": oauth.redirect_uri,
        }
        if code_verifier:
            form["code_verifier"] = code_verifier

        try:
            payload = await self._token_request(oauth, form)
            account = await self._fetch_account(payload["access_token"])
        except ProviderHTTPError as exc:
            raise TokenExchangeError(
                f"Klaviyo token exchange failed (HTTP {exc.status_code})", exc.status_code, exc.body
            ) from exc
        except httpx.HTTPError as exc:
            raise TokenExchangeError(f"Klaviyo token exchange failed: {exc}") from exc

        account_id = account.get("id")
        if not account_id:
            raise ConnectorConfigError("Klaviyo token exchange did not resolve an account id")

        attributes = account.get("attributes") or {}
        contact = attributes.get("contact_information") or {}
        return TokenSet(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_at=self._expires_at(payload),
            account_id=account_id,
            scopes=(payload.get("scope") or "").split(),
            metadata={
                "organizationName": contact.get("organization_name"),
                "industry": attributes.get("industry"),
                "timezone": attributes.get("timezone"),
                "currency": attributes.get("preferred_currency"),
            },
        )

    async def refresh_access_token(self) -> TokenSet:
        if not self.integration.refresh_token:
            raise TokenRefreshError("Klaviyo integration has no refresh token")
        oauth = self.get_oauth_config()
        refresh_token = self.vault.decrypt(self.integration.refresh_token)
        try:
            payload = await self._token_request(
                oauth, {"grant_type": "refresh_token", "refresh_token": refresh_token}
            )
        except ProviderHTTPError as exc:
            raise TokenRefreshError(
                f"Klaviyo token refresh failed (HTTP {exc.status_code})", exc.status_code, exc.body
            ) from exc
        except httpx.HTTPError as exc:
            raise TokenRefreshError(f"Klaviyo token refresh failed: {exc}") from exc
        return TokenSet(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_at=self._expires_at(payload),
        )

    async def validate_connection(self) -> bool:
        try:
            await self._fetch_account()
            return True
        except TokenRefreshError:
            raise
        except (ConnectorError, httpx.HTTPError) as exc:
            logger.warning("Klaviyo connection validation failed for %s: %s", self.integration.id, exc)
            return False

    async def _fetch_account(self, access_token: Optional[str] = None) -> Dict[str, Any]:
        response = await self._request("GET", f"{_KLAVIYO_API}/accounts/", token=access_token)
        data = response.json().get("data")
        account = data[0] if isinstance(data, list) and data else data
        if not account or not account.get("attributes"):
            raise ProviderHTTPError("Klaviyo accounts response did not include account attributes")
        return account

    # ── Sync ────────────────────────────────────────────────────────────

    def _sync_routines(self) -> List[Tuple[str, SyncRoutine]]:
        return [
            ("campaigns", self._sync_campaigns),
            ("flows", self._sync_flows),
            ("metrics", self._sync_metrics),
            ("events", self._sync_events),
        ]

    async def _sync_collection(self, data_type: str, path: str, params: Dict[str, Any], handler) -> int:
        async def fetch(cursor: Optional[str]) -> Page:
            if cursor:
                # links.next already carries the query string
                response = await self._request("GET", cursor)
            else:
                response = await self._request("GET", f"{_KLAVIYO_API}/{path}", params=params)
            body = response.json()
            return Page(
                items=body.get("data") or [],
                next_cursor=(body.get("links") or {}).get("next"),
            )

        return await self._paginate(data_type, fetch, handler)

    async def _sync_campaigns(self, since: Optional[datetime]) -> int:
        filters = ["equals(messages.channel,'email')"]
        if since:
            filters.append(f"greater-than(updated_at,{_klaviyo_time(since)})")
        return await self._sync_collection(
            "campaigns", "campaigns/", {"filter": ",".join(filters)}, self._store_campaign
        )

    async def _sync_flows(self, since: Optional[datetime]) -> int:
        params: Dict[str, Any] = {"page[size]": 50}
        if since:
            params["filter"] = f"greater-than(updated,{_klaviyo_time(since)})"
        return await self._sync_collection("flows", "flows/", params, self._store_flow)

    async def _sync_metrics(self, since: Optional[datetime]) -> int:
        return await self._sync_collection("metrics", "metrics/", {}, self._store_metric)

    async def _sync_events(self, since: Optional[datetime]) -> int:
        params: Dict[str, Any] = {"page[size]": 100, "sort": "-datetime"}
        if since:
            params["filter"] = f"greater-than(datetime,{_klaviyo_time(since)})"
        return await self._sync_collection("events", "events/", params, self._store_event)

    async def _store_campaign(self, campaign: Dict[str, Any]) -> None:
        logger.debug("Klaviyo campaign %s: %s", campaign.get("id"), (campaign.get("attributes") or {}).get("name"))

    async def _store_flow(self, flow: Dict[str, Any]) -> None:
        logger.debug("Klaviyo flow %s: %s", flow.get("id"), (flow.get("attributes") or {}).get("name"))

    async def _store_metric(self, metric: Dict[str, Any]) -> None:
        logger.debug("Klaviyo metric %s: %s", metric.get("id"), (metric.get("attributes") or {}).get("name"))

    async def _store_event(self, event: Dict[str, Any]) -> None:
        logger.debug("Klaviyo event %s: %s", event.get("id"), _event_metric_name(event))

    # ── Revenue attribution ─────────────────────────────────────────────

    async def get_customer_events(self, email: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """Events for one profile inside ``[start, end]``, newest first."""
        if not _filter_safe(email):
            raise ValueError(f"Email {email!r} cannot be used in a Klaviyo filter")
        params = {
            "filter": (
                f'equals(profile.email,"{email}"),'
                f"greater-than(datetime,{_klaviyo_time(start)}),"
                f"less-than(datetime,{_klaviyo_time(end)})"
            ),
            "sort": "-datetime",
            "page[size]": 100,
            "include": "metric",
        }
        response = await self._request("GET", f"{_KLAVIYO_API}/events/", params=params)
        return response.json().get("data") or []

    async def attribute_revenue(self, order_id: str, order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Attribute a storefront order to a Klaviyo touch in the 30 days
        before it was placed.  Returns ``None`` when the order has no
        customer email.
        """
        email = order.get("email")
        if not email:
            return None
        if not _filter_safe(email):
            logger.warning("Order %s email is not usable in a Klaviyo filter; skipping attribution", order_id)
            return None
        placed_at = self.normalize_timestamp(order.get("created_at")) or helpers.utcnow()
        events = await self.get_customer_events(email, placed_at - _ATTRIBUTION_LOOKBACK, placed_at)
        attribution = calculate_attribution(
            events,
            {
                "utmSource": order.get("utm_source"),
                "utmMedium": order.get("utm_medium"),
                "utmCampaign": order.get("utm_campaign"),
                "orderValue": self.normalize_amount(order.get("total_price")),
            },
        )
        logger.info("Attributed order %s as %s", order_id, attribution["type"])
        return attribution

    async def handle_webhook(self, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> None:
        # Klaviyo sends no topic header; the payload shape identifies the event.
        kind = payload.get("type") or (payload.get("data") or {}).get("type") or "unknown"
        logger.info("Processing Klaviyo webhook %s for integration %s", kind, self.integration.id)
