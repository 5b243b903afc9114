"""
Token refresh guard for outbound provider calls.

Called before every authenticated request to a provider. It never
returns an expired token:

1. Integration not connected (or token/instance missing) -> NotConnectedError
2. Token still valid -> returned unchanged, no network call
3. Token expired:
   - refresh token stored -> refresh_token grant; any failure -> ReauthRequiredError
   - client_credentials grant -> token re-issued without user interaction
   - otherwise -> ReauthRequiredError
4. Disconnected while the renewal was in flight -> NotConnectedError;
   the new token is discarded

Refreshes are serialized per provider with an asyncio.Lock; the record is
re-read after the lock is taken so concurrent callers refresh once.

SECURITY REQUIREMENTS:
- Tokens are encrypted before storage
- No plaintext tokens in logs
- Audit events for all refresh operations
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from integration_auth.config.integrations import IntegrationSettings
from integration_auth.credentials.encryption import DecryptionError
from integration_auth.credentials.store import CredentialStore
from integration_auth.integrations.oauth import OAuthHandshakeEngine
from integration_auth.models.base import utc_now
from integration_auth.models.provider_credential import ProviderCredential, GrantType
from integration_auth.platform.audit import AuditLedger, IntegrationAuditAction
from integration_auth.platform.errors import (
    AppError,
    NotConnectedError,
    ReauthRequiredError,
)

logger = logging.getLogger(__name__)


class TokenRefreshGuard:
    """
    Hands out valid access tokens, refreshing them when needed.

    One instance per process; it owns the per-provider lock registry.
    """

    def __init__(
        self,
        store: CredentialStore,
        engine: OAuthHandshakeEngine,
        audit: AuditLedger,
        settings: IntegrationSettings,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.engine = engine
        self.audit = audit
        self.refresh_buffer_seconds = settings.refresh_buffer_seconds
        self.now = now_fn
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, provider: str) -> asyncio.Lock:
        lock = self._locks.get(provider)
        if lock is None:
            lock = self._locks.setdefault(provider, asyncio.Lock())
        return lock

    async def get_valid_access_token(self, provider: str) -> str:
        """
        Return a non-expired access token for a connected integration.

        Raises:
            NotConnectedError: If the integration is not connected
            ReauthRequiredError: If the token expired and cannot be renewed
            TokenExchangeError / SecretUnavailableError: If a
                client_credentials re-issue fails
        """
        credential = self._load_connected(provider)
        if not self._needs_refresh(credential):
            return self._access_token(credential)

        async with self._lock_for(provider):
            # Another caller may have refreshed while we waited
            credential = self._load_connected(provider)
            if not self._needs_refresh(credential):
                return self._access_token(credential)

            credential = await self._renew(provider, credential)
            return self._access_token(credential)

    def _load_connected(self, provider: str) -> ProviderCredential:
        credential = self.store.find_credential(provider)
        if (
            credential is None
            or not credential.is_connected
            or not credential.has_tokens
            or not credential.instance_url
        ):
            raise NotConnectedError()
        return credential

    def _needs_refresh(self, credential: ProviderCredential) -> bool:
        return credential.is_token_expired(
            now=self.now(), buffer_seconds=self.refresh_buffer_seconds
        )

    def _access_token(self, credential: ProviderCredential) -> str:
        try:
            return self.store.decrypt_access_token(credential)
        except DecryptionError as e:
            logger.error(
                "Stored access token could not be decrypted",
                extra={"provider": credential.provider},
            )
            raise ReauthRequiredError(
                "Stored access token is unreadable. Please reconnect."
            ) from e

    async def _renew(
        self,
        provider: str,
        credential: ProviderCredential,
    ) -> ProviderCredential:
        if credential.refresh_token_encrypted:
            return await self._refresh_with_token(provider, credential)

        if credential.grant_type == GrantType.CLIENT_CREDENTIALS:
            logger.info(
                "Re-issuing client credentials token",
                extra={"provider": provider},
            )
            return await self.engine.acquire_client_credentials_token(
                provider, require_connected=True
            )

        error = ReauthRequiredError(
            "Access token expired and no refresh token is available. Please reconnect."
        )
        self.audit.append(
            provider,
            IntegrationAuditAction.TOKEN_REFRESH_FAILED,
            {"error": error.message, "reason": "no_refresh_path"},
        )
        raise error

    async def _refresh_with_token(
        self,
        provider: str,
        credential: ProviderCredential,
    ) -> ProviderCredential:
        try:
            updated = await self.engine.refresh_access_token(provider, credential)
        except NotConnectedError as e:
            # Disconnected while the grant was in flight; tokens stay cleared
            self.audit.append(
                provider,
                IntegrationAuditAction.TOKEN_REFRESH_FAILED,
                {"error": e.message, "error_code": e.code, "reason": "disconnected"},
            )
            raise
        except AppError as e:
            logger.warning(
                "Token refresh failed",
                extra={
                    "provider": provider,
                    "error_code": e.code,
                    "upstream_status": e.details.get("upstream_status"),
                }
            )
            details: Dict[str, Optional[object]] = {
                "error": e.message,
                "error_code": e.code,
            }
            if e.details.get("upstream_status") is not None:
                details["upstream_status"] = e.details["upstream_status"]
            self.audit.append(
                provider, IntegrationAuditAction.TOKEN_REFRESH_FAILED, details
            )
            raise ReauthRequiredError(
                "Failed to refresh access token. Please reconnect."
            ) from e

        expires_at = updated.token_expires_at
        self.audit.append(
            provider,
            IntegrationAuditAction.TOKEN_REFRESHED,
            {"token_expires_at": expires_at.isoformat() if expires_at else None},
        )
        logger.info(
            "Access token refreshed",
            extra={
                "provider": provider,
                "token_expires_at": expires_at.isoformat() if expires_at else None,
            }
        )
        return updated
