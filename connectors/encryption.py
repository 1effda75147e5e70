"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses AES-256-GCM from the ``cryptography`` library.  Every call draws a
fresh 12-byte nonce; the stored envelope is ``nonce:tag:ciphertext`` with
each part hex-encoded.

The key is loaded from ``config.encryption_key`` (env var:
``ENCRYPTION_KEY``, 64 hex characters).  Generate one with::

    python -c "import secrets; print(secrets.token_hex(32))"

If no key is configured a random key is generated for the lifetime of
the process, with a warning: anything encrypted under it is unreadable
after a restart.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config.settings import config

logger = logging.getLogger(__name__)

_NONCE_BYTES = 12
_TAG_BYTES = 16
_KEY_HEX_CHARS = 64


class CryptoError(Exception):
    """Envelope malformed, tampered with, or encrypted under another key."""


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


class TokenVault:
    """Authenticated encryption for provider tokens plus OAuth/PKCE helpers."""

    def __init__(self, key_hex: Optional[str] = None):
        if key_hex:
            try:
                key = bytes.fromhex(key_hex[:_KEY_HEX_CHARS])
            except ValueError as exc:
                raise CryptoError("ENCRYPTION_KEY must be hex-encoded") from exc
            if len(key) != 32:
                raise CryptoError(
                    f"ENCRYPTION_KEY must be {_KEY_HEX_CHARS} hex characters (32 bytes)"
                )
            self.ephemeral = False
        else:
            key = secrets.token_bytes(32)
            self.ephemeral = True
            logger.warning(
                "ENCRYPTION_KEY not set — using a random key for this process only. "
                "Tokens encrypted now cannot be decrypted after a restart. "
                "Generate a key: python -c \"import secrets; print(secrets.token_hex(32))\""
            )
        self._aead = AESGCM(key)

    # ── Encryption ──────────────────────────────────────────────────────

    def encrypt(self, plaintext: str) -> str:
        nonce = secrets.token_bytes(_NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, envelope: str) -> str:
        parts = envelope.split(":")
        if len(parts) != 3:
            raise CryptoError("Invalid encrypted token format")
        try:
            nonce, tag, ciphertext = (binascii.unhexlify(p) for p in parts)
        except (binascii.Error, ValueError) as exc:
            raise CryptoError("Invalid encrypted token encoding") from exc
        if len(nonce) != _NONCE_BYTES or len(tag) != _TAG_BYTES:
            raise CryptoError("Invalid encrypted token format")
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CryptoError("Token authentication failed (tampered or wrong key)") from exc
        return plaintext.decode("utf-8")

    def encrypt_optional(self, plaintext: Optional[str]) -> Optional[str]:
        return self.encrypt(plaintext) if plaintext else None

    # ── OAuth helpers ───────────────────────────────────────────────────

    @staticmethod
    def generate_state() -> str:
        """Opaque, unguessable OAuth ``state`` value."""
        return secrets.token_hex(32)

    @staticmethod
    def generate_code_verifier() -> str:
        """PKCE code verifier: 32 random bytes, base64url without padding."""
        return _b64url(secrets.token_bytes(32))

    @staticmethod
    def code_challenge(code_verifier: str) -> str:
        """PKCE S256 challenge for a verifier."""
        return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())

    @staticmethod
    def hash(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    @staticmethod
    def validate_webhook_signature(
        payload: bytes | str,
        signature: str,
        secret: str,
        algorithm: str = "sha256",
        encoding: str = "hex",
    ) -> bool:
        """
        Check an HMAC webhook signature in constant time.

        ``encoding`` is ``"hex"`` or ``"base64"`` depending on how the
        provider renders the digest.
        """
        if not signature or not secret:
            return False
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        try:
            digest = hmac.new(secret.encode("utf-8"), payload, getattr(hashlib, algorithm)).digest()
        except AttributeError:
            logger.error("Unsupported webhook HMAC algorithm: %s", algorithm)
            return False
        expected = base64.b64encode(digest).decode() if encoding == "base64" else digest.hex()
        return hmac.compare_digest(signature.strip().encode(), expected.encode())


_vault: Optional[TokenVault] = None


def get_vault() -> TokenVault:
    """Lazily build the process-wide vault from configuration."""
    global _vault
    if _vault is None:
        _vault = TokenVault(config.encryption_key or None)
        if not _vault.ephemeral:
            logger.info("Token encryption enabled (AES-256-GCM)")
    return _vault
