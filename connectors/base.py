"""
BaseConnector — abstract interface for all provider connectors.

Every provider (Shopify, Klaviyo, …) subclasses this and implements the
OAuth exchange / refresh methods plus its list of data-type sync routines.
The base class owns the parts every provider shares: authenticated
requests with 429 / 401 recovery, rate-limit pacing, bounded pagination,
incremental watermarks and sync-log bookkeeping.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode, urlsplit

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import config
from connectors.encryption import CryptoError, TokenVault, get_vault
from connectors.errors import (
    ConnectorConfigError,
    PaginationLimitExceeded,
    ProviderHTTPError,
    RateLimitedError,
    TokenRefreshError,
    UnauthorizedError,
)
from database import helpers
from database.models import (
    STATUS_CONNECTED,
    STATUS_ERROR,
    STATUS_EXPIRED,
    SYNC_ERROR,
    SYNC_PARTIAL,
    SYNC_SUCCESS,
    Integration,
)

logger = logging.getLogger(__name__)


@dataclass
class OAuthConfig:
    client_id: str
    client_secret: str
    auth_url: str
    token_url: str
    redirect_uri: str
    scopes: List[str]
    pkce_required: bool = False
    scope_separator: str = " "


@dataclass
class TokenSet:
    """Result of a code exchange or refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    account_id: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncResult:
    data_type: str
    records_count: int
    status: str
    error_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Page:
    """One page of provider records and the cursor for the next one (if any)."""

    items: Sequence[Any]
    next_cursor: Optional[str] = None


FetchPage = Callable[[Optional[str]], Awaitable[Page]]
HandleItem = Callable[[Any], Awaitable[None]]
SyncRoutine = Callable[[Optional[datetime]], Awaitable[int]]


def build_authorization_url(
    oauth: OAuthConfig,
    state: Optional[str] = None,
    code_verifier: Optional[str] = None,
) -> str:
    """
    Build a provider authorize URL.

    PKCE parameters are appended only when the provider mandates PKCE
    *and* a verifier was supplied.
    """
    params = {
        "client_id": oauth.client_id,
        "redirect_uri": oauth.redirect_uri,
        "scope": oauth.scope_separator.join(oauth.scopes),
        "response_type": "code",
    }
    if state:
        params["state"] = state
    if oauth.pkce_required and code_verifier:
        params["code_challenge"] = TokenVault.code_challenge(code_verifier)
        params["code_challenge_method"] = "S256"
    return f"{oauth.auth_url}?{urlencode(params)}"


class BaseConnector(ABC):
    """Abstract base for provider connectors bound to one integration."""

    provider_name: str = ""
    display_name: str = ""
    rate_limit_delay: float = 1.0            # seconds between page requests
    refresh_buffer = timedelta(seconds=120)

    def __init__(
        self,
        integration: Integration,
        *,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        vault: Optional[TokenVault] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_pages: Optional[int] = None,
    ):
        if session_factory is None:
            from database.session import async_session_factory

            session_factory = async_session_factory
        self.integration = integration
        self._session_factory = session_factory
        self.vault = vault or get_vault()
        self._owns_http = http_client is None
        self.http = http_client or httpx.AsyncClient(
            timeout=config.connector_http_timeout,
            headers={
                "User-Agent": config.connector_user_agent,
                "Accept": "application/json",
            },
        )
        self.max_pages = max_pages or config.max_pages_per_sync
        self._access_token: Optional[str] = None

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def __aenter__(self) -> "BaseConnector":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ── Identity / configuration ────────────────────────────────────────

    @classmethod
    def credentials(cls) -> Tuple[str, str]:
        client_id, client_secret = config.provider_credentials(cls.provider_name)
        if not (client_id and client_secret):
            raise ConnectorConfigError(
                f"{cls.display_name} OAuth credentials are not configured"
            )
        return client_id, client_secret

    @classmethod
    def is_configured(cls) -> bool:
        client_id, client_secret = config.provider_credentials(cls.provider_name)
        return bool(client_id and client_secret)

    @classmethod
    @abstractmethod
    def oauth_config(cls, metadata: Dict[str, Any]) -> OAuthConfig:
        """OAuth parameters for this provider; needs no persisted integration."""
        ...

    @property
    def metadata(self) -> Dict[str, Any]:
        return dict(self.integration.metadata_ or {})

    @property
    def is_persisted(self) -> bool:
        return self.integration.id is not None

    def get_oauth_config(self) -> OAuthConfig:
        return type(self).oauth_config(self.metadata)

    def get_authorization_url(self, state: str, code_verifier: Optional[str] = None) -> str:
        return build_authorization_url(self.get_oauth_config(), state, code_verifier)

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    async def exchange_code_for_tokens(
        self,
        code: str,
        state: Optional[str] = None,
        code_verifier: Optional[str] = None,
    ) -> TokenSet:
        """
        Exchange the authorization code for tokens.

        Must resolve a stable, non-empty ``account_id`` (fetching account
        info if the token response lacks one) or raise
        ``ConnectorConfigError``.
        """
        ...

    @abstractmethod
    async def refresh_access_token(self) -> TokenSet:
        """
        Exchange the stored refresh token for a new access token.
        Providers whose tokens never expire return the current token.
        """
        ...

    @abstractmethod
    async def validate_connection(self) -> bool:
        """Cheap read-only call proving the stored credentials still work."""
        ...

    async def handle_webhook(self, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> None:
        logger.info(
            "Webhook received for %s integration %s (keys=%s)",
            self.provider_name,
            self.integration.id,
            sorted(payload)[:10],
        )

    def verify_webhook(self, raw_body: bytes, headers: Dict[str, str]) -> bool:
        """Return False to reject an inbound webhook; providers with signed
        webhooks override this."""
        return True

    # ── Sync ────────────────────────────────────────────────────────────

    @abstractmethod
    def _sync_routines(self) -> List[Tuple[str, SyncRoutine]]:
        """``(data_type, routine)`` pairs run in order by :meth:`sync`."""
        ...

    async def _prepare_sync(self) -> None:
        await self.get_access_token()

    async def sync(self) -> List[SyncResult]:
        """
        Run every data-type routine and return one result per data type.

        Per-type failures are recorded as ``error`` rows and do not stop the
        remaining types.  A structural failure (credentials, token refresh,
        setup) sets the integration status and yields a single
        ``sync_error`` result instead of raising.
        """
        results: List[SyncResult] = []
        try:
            await self._prepare_sync()
            for data_type, routine in self._sync_routines():
                results.append(await self._run_data_type(data_type, routine))
            if self.integration.status != STATUS_EXPIRED:
                await self._update_status(STATUS_CONNECTED, last_sync_at=helpers.utcnow())
        except Exception as exc:
            logger.exception(
                "%s sync failed for integration %s", self.provider_name, self.integration.id
            )
            if not isinstance(exc, TokenRefreshError):
                try:
                    await self._update_status(STATUS_ERROR)
                except Exception:
                    logger.exception("Could not mark integration %s as error", self.integration.id)
            results.append(
                SyncResult(
                    data_type="sync_error",
                    records_count=0,
                    status=SYNC_ERROR,
                    error_message=str(exc) or exc.__class__.__name__,
                )
            )
        return results

    async def _run_data_type(self, data_type: str, routine: SyncRoutine) -> SyncResult:
        """Run one routine against its watermark and write exactly one sync-log row."""
        started_at = helpers.utcnow()
        fatal: Optional[BaseException] = None
        since: Optional[datetime] = None
        try:
            since = await self._last_sync_time(data_type)
            count = await routine(since)
            result = SyncResult(
                data_type=data_type,
                records_count=count,
                status=SYNC_SUCCESS,
                metadata={"incremental": since is not None},
            )
        except PaginationLimitExceeded as exc:
            logger.error("%s: %s", self.provider_name, exc)
            result = SyncResult(
                data_type=data_type,
                records_count=exc.records,
                status=SYNC_PARTIAL,
                error_message=str(exc),
                metadata={"incremental": since is not None, "max_pages": exc.max_pages},
            )
        except Exception as exc:
            logger.error(
                "%s %s sync failed for integration %s: %s",
                self.provider_name, data_type, self.integration.id, exc,
            )
            result = SyncResult(
                data_type=data_type,
                records_count=0,
                status=SYNC_ERROR,
                error_message=str(exc) or exc.__class__.__name__,
            )
            if isinstance(exc, (TokenRefreshError, CryptoError)):
                fatal = exc
        await self._log_sync(result, started_at)
        if fatal is not None:
            raise fatal
        return result

    async def _paginate(self, data_type: str, fetch_page: FetchPage, handle_item: HandleItem) -> int:
        """
        Drive a cursor loop until the provider stops returning a next cursor
        (or returns an empty page), sleeping ``rate_limit_delay`` after every
        page.  Raises :class:`PaginationLimitExceeded` after ``max_pages``.
        """
        cursor: Optional[str] = None
        pages = 0
        count = 0
        while True:
            if pages >= self.max_pages:
                raise PaginationLimitExceeded(data_type, self.max_pages, count)
            page = await fetch_page(cursor)
            pages += 1
            for item in page.items:
                await handle_item(item)
                count += 1
            await self._delay(self.rate_limit_delay)
            if not page.items or not page.next_cursor:
                break
            cursor = page.next_cursor
        logger.info(
            "%s %s: %d records in %d page(s)", self.provider_name, data_type, count, pages
        )
        return count

    # ── Tokens ──────────────────────────────────────────────────────────

    async def get_access_token(self) -> str:
        """
        Decrypted access token, refreshed first when it expires within
        ``refresh_buffer``.  ``expires_at = None`` never triggers a proactive
        refresh.
        """
        if self._access_token is None:
            self._access_token = self.vault.decrypt(self.integration.access_token)
        expires_at = helpers.as_utc(self.integration.expires_at)
        if expires_at is not None and expires_at <= helpers.utcnow() + self.refresh_buffer:
            return await self._handle_token_refresh()
        return self._access_token

    async def _handle_token_refresh(self) -> str:
        try:
            tokens = await self.refresh_access_token()
        except Exception as exc:
            logger.warning(
                "%s token refresh failed for integration %s: %s",
                self.provider_name, self.integration.id, exc,
            )
            self.integration.status = STATUS_EXPIRED
            if self.is_persisted:
                await self._update_integration(status=STATUS_EXPIRED)
            if isinstance(exc, TokenRefreshError):
                raise
            raise TokenRefreshError(f"{self.display_name} token refresh failed: {exc}") from exc

        values: Dict[str, Any] = {
            "access_token": self.vault.encrypt(tokens.access_token),
            "expires_at": tokens.expires_at,
            "status": STATUS_CONNECTED,
        }
        if tokens.refresh_token:
            values["refresh_token"] = self.vault.encrypt(tokens.refresh_token)
        if self.is_persisted:
            await self._update_integration(**values)
        for key, value in values.items():
            setattr(self.integration, key, value)
        self._access_token = tokens.access_token
        logger.info("Refreshed %s token for integration %s", self.provider_name, self.integration.id)
        return tokens.access_token

    # ── HTTP ────────────────────────────────────────────────────────────

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def _retry_after(self, response: httpx.Response) -> float:
        value = response.headers.get("retry-after")
        if value:
            try:
                return min(max(float(value), 0.0), config.connector_max_retry_after)
            except ValueError:
                pass
        return self.rate_limit_delay

    async def _delay(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        token: Optional[str] = None,
        authenticated: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a provider request.

        HTTP 429 waits ``Retry-After`` (or ``rate_limit_delay``) and retries
        once.  HTTP 401 refreshes the token once and retries, unless an
        explicit ``token`` was passed (OAuth handshake calls).  Any other
        error status raises :class:`ProviderHTTPError`.
        """
        explicit_token = token is not None
        if authenticated and token is None:
            token = await self.get_access_token()
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers.update(self._auth_headers(token))

        response = await self.http.request(method, url, headers=headers, **kwargs)

        if response.status_code == 429:
            wait = self._retry_after(response)
            logger.info("%s rate limited on %s; retrying in %.2fs", self.provider_name, _path(url), wait)
            await self._delay(wait)
            response = await self.http.request(method, url, headers=headers, **kwargs)
            if response.status_code == 429:
                raise RateLimitedError(
                    f"{self.display_name} rate limit persisted on {_path(url)}",
                    429,
                    response.text[:500],
                )

        if response.status_code == 401 and authenticated and not explicit_token:
            token = await self._handle_token_refresh()
            headers.update(self._auth_headers(token))
            response = await self.http.request(method, url, headers=headers, **kwargs)
            if response.status_code == 401:
                raise UnauthorizedError(
                    f"{self.display_name} rejected refreshed credentials on {_path(url)}",
                    401,
                    response.text[:500],
                )

        if response.is_error:
            raise ProviderHTTPError(
                f"{self.display_name} {method} {_path(url)} failed with HTTP {response.status_code}",
                response.status_code,
                response.text[:500],
            )
        return response

    # ── Persistence ─────────────────────────────────────────────────────

    async def _update_integration(self, **values: Any) -> None:
        async with self._session_factory() as session:
            await helpers.update_integration(session, self.integration.id, **values)
            await session.commit()

    async def _update_status(self, status: str, last_sync_at: Optional[datetime] = None) -> None:
        values: Dict[str, Any] = {"status": status}
        if last_sync_at is not None:
            values["last_sync_at"] = last_sync_at
        if self.is_persisted:
            await self._update_integration(**values)
        for key, value in values.items():
            setattr(self.integration, key, value)

    async def _last_sync_time(self, data_type: str) -> Optional[datetime]:
        if not self.is_persisted:
            return None
        async with self._session_factory() as session:
            return await helpers.last_successful_sync(session, self.integration.id, data_type)

    async def _log_sync(self, result: SyncResult, started_at: datetime) -> None:
        if not self.is_persisted:
            return
        async with self._session_factory() as session:
            await helpers.create_sync_log(
                session,
                self.integration.id,
                data_type=result.data_type,
                status=result.status,
                records_count=result.records_count,
                error_message=result.error_message,
                metadata=result.metadata,
                started_at=started_at,
            )
            await session.commit()

    # ── Normalisation helpers ───────────────────────────────────────────

    @staticmethod
    def normalize_timestamp(value: Any) -> Optional[datetime]:
        if value is None or isinstance(value, datetime):
            return value
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))

    @staticmethod
    def normalize_amount(value: Any) -> float:
        try:
            return float(value or 0)
        except (TypeError, ValueError):
            return 0.0

    @staticmethod
    def normalize_id(value: Any) -> str:
        return str(value) if value is not None else ""


def _path(url: str) -> str:
    return urlsplit(url).path or url
