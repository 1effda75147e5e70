"""
ConnectorRegistry — maps provider names to connector classes.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Type

from connectors.base import BaseConnector, OAuthConfig
from connectors.errors import ProviderNotSupported
from connectors.klaviyo import KlaviyoConnector
from connectors.shopify import ShopifyConnector
from database.models import Integration

logger = logging.getLogger(__name__)

# ── All known connectors (add new ones here) ─────────────────────────────

_ALL_CONNECTORS: List[Type[BaseConnector]] = [
    ShopifyConnector,
    KlaviyoConnector,
]


class ConnectorRegistry:
    """Singleton registry of connector classes keyed by provider name."""

    _instance: Optional["ConnectorRegistry"] = None

    def __new__(cls) -> "ConnectorRegistry":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._connectors = {c.provider_name: c for c in _ALL_CONNECTORS}
            cls._instance._discovered = False
        return cls._instance

    def register(self, connector_cls: Type[BaseConnector]) -> None:
        self._connectors[connector_cls.provider_name] = connector_cls

    def discover(self) -> None:
        """Log which providers have OAuth credentials configured."""
        if self._discovered:
            return
        for conn in self._connectors.values():
            if conn.is_configured():
                logger.info("Connector registered: %s (%s)", conn.display_name, conn.provider_name)
            else:
                logger.warning(
                    "Connector %s not configured (missing client_id/secret); "
                    "connect requests will be rejected",
                    conn.provider_name,
                )
        self._discovered = True

    def is_supported(self, provider: str) -> bool:
        return provider in self._connectors

    def get_class(self, provider: str) -> Type[BaseConnector]:
        try:
            return self._connectors[provider]
        except KeyError:
            raise ProviderNotSupported(provider) from None

    def available_providers(self) -> List[str]:
        return list(self._connectors.keys())

    def create(self, integration: Integration, **kwargs: Any) -> BaseConnector:
        """Instantiate the connector for ``integration.provider``."""
        return self.get_class(integration.provider)(integration, **kwargs)

    def get_oauth_config(self, provider: str, metadata: Optional[Dict[str, Any]] = None) -> OAuthConfig:
        return self.get_class(provider).oauth_config(metadata or {})

    def list_providers(self) -> List[Dict[str, Any]]:
        """Return info about all available connectors."""
        return [
            {
                "provider": c.provider_name,
                "display_name": c.display_name,
                "configured": c.is_configured(),
            }
            for c in self._connectors.values()
        ]
