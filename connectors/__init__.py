"""
connectors — OAuth connectors for commerce and marketing platforms.

Provides a generic connector framework that handles:
  • OAuth2 authorize URLs (with PKCE where the provider requires it)
  • Single-use OAuth state and code → token exchange
  • AES-GCM encryption of tokens at rest
  • Rate-limited, paginated, incremental data sync
  • Soft-delete disconnect and inbound webhooks

Each provider (Shopify, Klaviyo, …) is a subclass of BaseConnector and is
registered in ``connectors.registry``.
"""
