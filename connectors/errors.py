"""
Connector error taxonomy.

Routes translate these into HTTP responses or OAuth error redirects;
sync code converts provider failures into sync-log rows instead of
letting them escape.
"""

from __future__ import annotations

from typing import Optional


class ConnectorError(Exception):
    """Base class for connector-layer failures."""


class ProviderNotSupported(ConnectorError):
    def __init__(self, provider: str):
        super().__init__(f"Provider '{provider}' is not supported")
        self.provider = provider


class IntegrationNotFound(ConnectorError):
    pass


class IntegrationStateError(ConnectorError):
    """Operation not allowed in the integration's current status."""


class OAuthStateInvalid(ConnectorError):
    """OAuth ``state`` is unknown, expired or already consumed."""


class ConnectorConfigError(ConnectorError):
    """Missing credentials or connector identity; a code or config defect."""


class ProviderHTTPError(ConnectorError):
    """Provider API answered with an error; keeps the status and raw body."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TokenExchangeError(ProviderHTTPError):
    pass


class TokenRefreshError(ProviderHTTPError):
    pass


class RateLimitedError(ProviderHTTPError):
    """HTTP 429 that persisted after the single delayed retry."""


class UnauthorizedError(ProviderHTTPError):
    """HTTP 401 that persisted after a successful token refresh."""


class ConnectionValidationError(ConnectorError):
    pass


class PaginationLimitExceeded(ConnectorError):
    def __init__(self, data_type: str, max_pages: int, records: int):
        super().__init__(
            f"{data_type}: stopped after {max_pages} pages; provider kept returning a next page"
        )
        self.data_type = data_type
        self.max_pages = max_pages
        self.records = records


class WebhookSignatureInvalid(ConnectorError):
    """Inbound webhook failed the provider's signature check."""
