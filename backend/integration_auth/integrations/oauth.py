"""
OAuth handshake engine for integration providers.

Handles:
- Authorization URL generation with a single-use anti-CSRF state
- Authorization-code exchange (state verified before the token call)
- Client-credentials token acquisition
- Refresh-token grants on behalf of the refresh guard

SECURITY:
- The client secret is decrypted only in memory, right before the POST
- Upstream error bodies are scrubbed of the secret before surfacing
- State comparison is constant-time
- Exchange acquires tokens only; it NEVER marks an integration connected
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional
from urllib.parse import urlencode

import httpx

from integration_auth.config.integrations import IntegrationSettings, ProviderProfile
from integration_auth.credentials.encryption import DecryptionError
from integration_auth.credentials.redaction import redact_credential_value
from integration_auth.credentials.store import CredentialStore
from integration_auth.integrations.http import IntegrationHttpClient
from integration_auth.models.base import utc_now
from integration_auth.models.provider_credential import ProviderCredential, GrantType
from integration_auth.platform.audit import AuditLedger, IntegrationAuditAction
from integration_auth.platform.errors import (
    AppError,
    AuthorizationDeniedError,
    CsrfValidationError,
    NotConfiguredError,
    SecretUnavailableError,
    TokenExchangeError,
    ValidationError,
)

logger = logging.getLogger(__name__)

STATE_BYTES = 32
MAX_UPSTREAM_BODY_CHARS = 1000
MAX_TOKEN_LIFETIME_SECONDS = 10 * 365 * 24 * 60 * 60


def _parse_expires_in(raw: Any, default_lifetime: int) -> int:
    if raw is None or isinstance(raw, bool):
        return default_lifetime
    try:
        expires_in = int(raw)
    except (TypeError, ValueError):
        return default_lifetime
    except OverflowError as e:
        raise TokenExchangeError("Token endpoint returned an invalid expires_in") from e
    if expires_in > MAX_TOKEN_LIFETIME_SECONDS:
        raise TokenExchangeError("Token endpoint returned an invalid expires_in")
    return max(expires_in, 0)


@dataclass
class TokenResponse:
    """
    Parsed token endpoint response.

    SECURITY: Never log instances of this class.
    """
    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    scope: Optional[str] = None
    token_type: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], default_lifetime: int) -> "TokenResponse":
        """
        Build from a decoded token response.

        An absent or non-numeric expires_in falls back to default_lifetime;
        0 is kept (already expired) and negatives are clamped to 0.

        Raises:
            TokenExchangeError: If expires_in is beyond MAX_TOKEN_LIFETIME_SECONDS
        """
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or None,
            expires_in=_parse_expires_in(payload.get("expires_in"), default_lifetime),
            scope=payload.get("scope"),
            token_type=payload.get("token_type"),
        )

    def metadata(self, grant_type: str) -> Dict[str, Any]:
        return {
            "scope": self.scope,
            "token_type": self.token_type,
            "grant_type": grant_type,
        }


class OAuthHandshakeEngine:
    """
    Runs OAuth2 grants against a provider's token endpoint.

    Tokens are persisted through the credential store; the engine never
    mutates a record directly.
    """

    def __init__(
        self,
        store: CredentialStore,
        audit: AuditLedger,
        http: IntegrationHttpClient,
        settings: IntegrationSettings,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.audit = audit
        self.http = http
        self.settings = settings
        self.now = now_fn

    # =========================================================================
    # Authorization URL
    # =========================================================================

    def build_authorization_url(self, provider: str) -> str:
        """
        Generate the provider authorization URL and persist a fresh state.

        Raises:
            NotConfiguredError: If instance or client id are not saved
            ValidationError: If the integration does not use authorization_code
        """
        try:
            profile, credential = self._require_configured(provider)
            if credential.grant_type != GrantType.AUTHORIZATION_CODE:
                raise ValidationError(
                    "OAuth authorization is only available for the authorization_code grant. "
                    "Use token acquisition for client_credentials."
                )

            state = secrets.token_hex(STATE_BYTES)
            expires_at = self.now() + timedelta(seconds=self.settings.oauth_state_ttl_seconds)
            self.store.save_oauth_state(provider, state, expires_at)

            redirect_uri = credential.redirect_uri or self.settings.default_redirect_uri(provider)
            query = urlencode({
                "response_type": "code",
                "client_id": credential.client_id,
                "redirect_uri": redirect_uri,
                "state": state,
            })
        except AppError as e:
            self._audit_failure(provider, IntegrationAuditAction.OAUTH_START_FAILED, e)
            raise

        self.audit.append(
            provider,
            IntegrationAuditAction.OAUTH_STARTED,
            {
                "instance_url": credential.instance_url,
                "redirect_uri": redirect_uri,
                "state_expires_at": expires_at.isoformat(),
            },
        )
        logger.info(
            "OAuth authorization started",
            extra={"provider": provider, "instance_url": credential.instance_url},
        )
        return f"{profile.authorize_endpoint(credential.instance_url)}?{query}"

    # =========================================================================
    # Grants
    # =========================================================================

    async def exchange_authorization_code(
        self,
        provider: str,
        code: str,
        state: Optional[str] = None,
    ) -> ProviderCredential:
        """
        Exchange an authorization code for tokens.

        The stored state (when present) is verified before any network
        call. On success the state is cleared and the status moves to
        TOKEN_ACQUIRED; the integration is NOT connected.

        Raises:
            NotConfiguredError, CsrfValidationError, SecretUnavailableError,
            TokenExchangeError, ValidationError
        """
        try:
            if not code:
                raise ValidationError("Authorization code is required")

            profile, credential = self._require_configured(provider)
            self._verify_state(provider, credential, state)
            client_secret = self._client_secret(credential)

            redirect_uri = credential.redirect_uri or self.settings.default_redirect_uri(provider)
            token = await self._request_token(
                profile.token_endpoint(credential.instance_url),
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": redirect_uri,
                    "client_id": credential.client_id,
                    "client_secret": client_secret,
                },
                scrub=(client_secret, code),
            )

            expires_at = self.now() + timedelta(seconds=token.expires_in)
            updated = self.store.update_tokens(
                provider,
                access_token=token.access_token,
                refresh_token=token.refresh_token,
                token_expires_at=expires_at,
                metadata=token.metadata(GrantType.AUTHORIZATION_CODE.value),
                clear_oauth_state=True,
            )
        except AppError as e:
            self._audit_failure(provider, IntegrationAuditAction.OAUTH_EXCHANGE_FAILED, e)
            raise

        self.audit.append(
            provider,
            IntegrationAuditAction.OAUTH_EXCHANGED,
            {
                "scope": token.scope,
                "token_expires_at": expires_at.isoformat(),
                "has_refresh_token": token.refresh_token is not None,
            },
        )
        logger.info(
            "Authorization code exchanged",
            extra={"provider": provider, "token_expires_at": expires_at.isoformat()},
        )
        return updated

    async def handle_callback(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> ProviderCredential:
        """
        Process the provider's redirect back to us.

        An `error` parameter is surfaced without attempting an exchange;
        a missing code fails fast.
        """
        if error or not code:
            failure: AppError
            if error:
                failure = AuthorizationDeniedError(error, error_description)
            else:
                failure = ValidationError("Authorization code missing from callback")
            logger.warning(
                "OAuth callback rejected",
                extra={"provider": provider, "oauth_error": error, "error_code": failure.code},
            )
            self._audit_failure(provider, IntegrationAuditAction.OAUTH_CALLBACK_FAILED, failure)
            raise failure

        return await self.exchange_authorization_code(provider, code, state)

    async def acquire_client_credentials_token(
        self,
        provider: str,
        require_connected: bool = False,
    ) -> ProviderCredential:
        """
        Obtain a token with the client_credentials grant.

        With require_connected (renewal of a live integration) the token is
        only stored if the record is still connected when the call returns.

        Raises:
            NotConfiguredError, SecretUnavailableError, TokenExchangeError,
            ValidationError
        """
        try:
            profile, credential = self._require_configured(provider)
            if credential.grant_type != GrantType.CLIENT_CREDENTIALS:
                raise ValidationError(
                    "Integration is not configured for the client_credentials grant"
                )
            client_secret = self._client_secret(credential)

            token = await self._request_token(
                profile.token_endpoint(credential.instance_url),
                {
                    "grant_type": "client_credentials",
                    "client_id": credential.client_id,
                    "client_secret": client_secret,
                },
                scrub=(client_secret,),
            )

            expires_at = self.now() + timedelta(seconds=token.expires_in)
            updated = self.store.update_tokens(
                provider,
                access_token=token.access_token,
                refresh_token=token.refresh_token,
                token_expires_at=expires_at,
                metadata=token.metadata(GrantType.CLIENT_CREDENTIALS.value),
                require_connected=require_connected,
            )
        except AppError as e:
            self._audit_failure(provider, IntegrationAuditAction.TOKEN_ACQUIRE_FAILED, e)
            raise

        self.audit.append(
            provider,
            IntegrationAuditAction.TOKEN_ACQUIRED,
            {
                "scope": token.scope,
                "token_expires_at": expires_at.isoformat(),
            },
        )
        logger.info(
            "Client credentials token acquired",
            extra={"provider": provider, "token_expires_at": expires_at.isoformat()},
        )
        return updated

    async def refresh_access_token(
        self,
        provider: str,
        credential: ProviderCredential,
    ) -> ProviderCredential:
        """
        Run a refresh_token grant for a record.

        Auditing is left to the caller. The stored refresh token is kept
        when the provider does not rotate it. The write is dropped with
        NotConnectedError if the integration was disconnected meanwhile.
        """
        profile = self.store.profile_for(provider)
        if not credential.is_configured:
            raise NotConfiguredError()

        try:
            refresh_token = self.store.decrypt_refresh_token(credential)
        except DecryptionError as e:
            raise SecretUnavailableError("Stored refresh token could not be decrypted") from e
        if not refresh_token:
            raise NotConfiguredError("No refresh token is stored for this integration")

        client_secret = self._client_secret(credential)
        token = await self._request_token(
            profile.token_endpoint(credential.instance_url),
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": credential.client_id,
                "client_secret": client_secret,
            },
            scrub=(client_secret, refresh_token),
        )

        metadata = dict(credential.token_metadata or {})
        if token.scope:
            metadata["scope"] = token.scope
        if token.token_type:
            metadata["token_type"] = token.token_type
        return self.store.update_tokens(
            provider,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            token_expires_at=self.now() + timedelta(seconds=token.expires_in),
            metadata=metadata,
            require_connected=True,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_configured(self, provider: str) -> tuple[ProviderProfile, ProviderCredential]:
        profile = self.store.profile_for(provider)
        credential = self.store.find_credential(provider)
        if credential is None or not credential.is_configured:
            raise NotConfiguredError()
        return profile, credential

    def _verify_state(
        self,
        provider: str,
        credential: ProviderCredential,
        state: Optional[str],
    ) -> None:
        """
        Verify the echoed state against the stored one.

        Skipped only when no state is on file.
        """
        stored = credential.oauth_state
        if not stored:
            return

        reason = None
        if not state:
            reason = "missing_state"
        elif not secrets.compare_digest(stored.encode("utf-8"), state.encode("utf-8")):
            reason = "state_mismatch"
        elif (
            credential.oauth_state_expires_at is not None
            and self.now() >= credential.oauth_state_expires_at
        ):
            reason = "state_expired"

        if reason is None:
            return

        logger.warning(
            "OAuth state validation failed",
            extra={
                "provider": provider,
                "reason": reason,
                "security_event": True,
            }
        )
        if reason == "state_expired":
            raise CsrfValidationError("OAuth state has expired. Please restart authorization.")
        raise CsrfValidationError()

    def _client_secret(self, credential: ProviderCredential) -> str:
        try:
            secret = self.store.decrypt_client_secret(credential)
        except DecryptionError as e:
            raise SecretUnavailableError(
                "Client secret could not be decrypted. Please save credentials again."
            ) from e
        if not secret:
            raise SecretUnavailableError(
                "Client secret not found. Please save credentials again."
            )
        return secret

    async def _request_token(
        self,
        url: str,
        form: Dict[str, str],
        scrub: Iterable[str] = (),
    ) -> TokenResponse:
        """POST a token request and parse the response."""
        try:
            response = await self.http.post_form(url, form)
        except httpx.TimeoutException as e:
            raise TokenExchangeError("Token endpoint timed out") from e
        except httpx.HTTPError as e:
            raise TokenExchangeError(
                f"Token endpoint unreachable ({type(e).__name__})"
            ) from e

        if not response.is_success:
            body = redact_credential_value(
                response.text[:MAX_UPSTREAM_BODY_CHARS], secrets=scrub
            )
            logger.warning(
                "Token request rejected",
                extra={"url": url, "status_code": response.status_code},
            )
            raise TokenExchangeError(
                f"Token request failed with status {response.status_code}",
                upstream_status=response.status_code,
                upstream_body=body,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise TokenExchangeError(
                "Token endpoint returned an invalid response",
                upstream_status=response.status_code,
            ) from e

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise TokenExchangeError(
                "Token response did not include an access token",
                upstream_status=response.status_code,
            )

        return TokenResponse.from_payload(
            payload, self.settings.default_token_lifetime_seconds
        )

    def _audit_failure(
        self,
        provider: str,
        action: IntegrationAuditAction,
        error: AppError,
    ) -> None:
        details: Dict[str, Any] = {"error": error.message, "error_code": error.code}
        upstream_status = error.details.get("upstream_status")
        if upstream_status is not None:
            details["upstream_status"] = upstream_status
        self.audit.append(provider, action, details)
