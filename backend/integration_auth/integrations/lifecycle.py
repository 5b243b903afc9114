"""
Connection state machine for integrations.

    UNCONFIGURED -> SAVED -> TOKEN_ACQUIRED -> CONNECTED <-> DISCONNECTED

- Saving credentials never connects. A CONNECTED integration that is
  re-saved drops to TOKEN_ACQUIRED (tokens kept) or SAVED (no tokens).
- SAVED -> TOKEN_ACQUIRED happens in the OAuth engine on a successful grant.
- TOKEN_ACQUIRED -> CONNECTED only through an explicit connect().
- disconnect() clears tokens locally and keeps instance/client config.
  Nothing is revoked upstream.

Every transition writes one audit entry. Status writes are checked against
ALLOWED_TRANSITIONS (models.provider_credential) in the credential store.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping

from integration_auth.config.integrations import IntegrationSettings
from integration_auth.credentials.store import CredentialStore, SaveResult
from integration_auth.models.base import utc_now
from integration_auth.models.provider_credential import (
    ConnectionStatus,
    ProviderCredential,
    can_transition,
)
from integration_auth.platform.audit import AuditLedger, IntegrationAuditAction
from integration_auth.platform.errors import AppError, TokensMissingError

logger = logging.getLogger(__name__)


def _safe_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Non-secret subset of a save payload, for audit details."""
    return {
        "instance_url": fields.get("instance") or fields.get("instance_url"),
        "client_id": fields.get("client_id") or fields.get("clientId"),
        "grant_type": fields.get("grant_type") or fields.get("grantType"),
    }


class ConnectionManager:
    """Drives explicit lifecycle transitions and reports integration state."""

    def __init__(
        self,
        store: CredentialStore,
        audit: AuditLedger,
        settings: IntegrationSettings,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.audit = audit
        self.settings = settings
        self.now = now_fn

    def save_credentials(self, provider: str, fields: Mapping[str, Any]) -> SaveResult:
        """
        Save or re-save client configuration.

        Raises:
            ValidationError: If the payload is invalid (nothing is persisted)
        """
        try:
            result = self.store.upsert_credential(provider, fields)
        except AppError as e:
            details = {"error": e.message, "error_code": e.code}
            details.update({k: v for k, v in _safe_fields(fields).items() if v})
            self.audit.append(provider, IntegrationAuditAction.CREDENTIALS_SAVE_FAILED, details)
            raise

        credential = result.credential
        previous = result.previous_status or ConnectionStatus.UNCONFIGURED
        self.audit.append(
            provider,
            IntegrationAuditAction.CREDENTIALS_SAVED,
            {
                "instance_url": credential.instance_url,
                "client_id": credential.client_id,
                "grant_type": credential.grant_type.value,
                "from_status": previous.value,
                "to_status": credential.status.value,
                "reauthorization_recommended": result.reauthorization_recommended,
            },
        )
        if result.reauthorization_recommended:
            logger.info(
                "Client secret rotated while tokens exist; re-authorization recommended",
                extra={"provider": provider},
            )
        return result

    def connect(self, provider: str) -> ProviderCredential:
        """
        Activate an integration that holds a usable access token.

        Raises:
            TokensMissingError: If no usable access token is stored
        """
        credential = self.store.find_credential(provider)
        if (
            credential is None
            or not can_transition(credential.status, ConnectionStatus.CONNECTED)
            or not credential.has_usable_token(self.now())
        ):
            error = TokensMissingError()
            current = credential.status if credential else ConnectionStatus.UNCONFIGURED
            self.audit.append(
                provider,
                IntegrationAuditAction.INTEGRATION_CONNECT_FAILED,
                {"error": error.message, "error_code": error.code, "status": current.value},
            )
            raise error

        previous = credential.status
        updated = self.store.set_connected(provider, True)
        self.audit.append(
            provider,
            IntegrationAuditAction.INTEGRATION_CONNECTED,
            {
                "from_status": previous.value,
                "instance_url": updated.instance_url,
                "token_expires_at": (
                    updated.token_expires_at.isoformat() if updated.token_expires_at else None
                ),
            },
        )
        logger.info("Integration connected", extra={"provider": provider})
        return updated

    def disconnect(self, provider: str) -> None:
        """
        Deactivate an integration and drop its tokens locally.

        Disconnecting a provider with no saved record is a no-op.
        """
        credential = self.store.find_credential(provider)
        if credential is None:
            return

        previous = credential.status
        self.store.set_connected(provider, False, clear_tokens=True)
        self.audit.append(
            provider,
            IntegrationAuditAction.INTEGRATION_DISCONNECTED,
            {
                "from_status": previous.value,
                "tokens_cleared": credential.has_tokens,
            },
        )
        logger.info("Integration disconnected", extra={"provider": provider})

    def get_state(self, provider: str) -> Dict[str, Any]:
        """
        Safe view of an integration's state.

        SECURITY: never includes the client secret or token values.
        """
        self.store.profile_for(provider)
        credential = self.store.find_credential(provider)
        if credential is None:
            return {
                "provider": provider,
                "instance": None,
                "clientId": None,
                "grantType": None,
                "redirectUri": self.settings.default_redirect_uri(provider),
                "status": ConnectionStatus.UNCONFIGURED.value,
                "connected": False,
                "hasTokens": False,
                "tokenExpired": False,
            }

        state = credential.to_safe_dict()
        state["tokenExpired"] = credential.has_tokens and credential.is_token_expired(self.now())
        return state

    def list_states(self) -> List[Dict[str, Any]]:
        states = []
        for name, profile in self.settings.providers.items():
            state = self.get_state(name)
            state["displayName"] = profile.display_name
            states.append(state)
        return states
