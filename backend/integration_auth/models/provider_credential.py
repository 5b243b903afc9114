"""
ProviderCredential model - one row of OAuth configuration per integration provider.

SECURITY REQUIREMENTS:
- client_secret_encrypted, access_token_encrypted and refresh_token_encrypted
  hold ciphertext only (see integration_auth.credentials.encryption)
- Secrets and tokens are NEVER exposed in API responses or logs
- instance_url and client_id are safe to log

Lifecycle:
    UNCONFIGURED -> SAVED -> TOKEN_ACQUIRED -> CONNECTED <-> DISCONNECTED
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional, Tuple

from sqlalchemy import Column, String, Text, Enum, JSON, UniqueConstraint

from integration_auth.db_base import Base
from integration_auth.models.base import TimestampMixin, UTCDateTime


class GrantType(str, enum.Enum):
    """OAuth2 grant used to obtain tokens for a provider."""
    AUTHORIZATION_CODE = "authorization_code"
    CLIENT_CREDENTIALS = "client_credentials"


class ConnectionStatus(str, enum.Enum):
    """
    Explicit connection state.

    UNCONFIGURED is never stored; it is reported when no row exists.
    """
    UNCONFIGURED = "unconfigured"
    SAVED = "saved"  # Credentials present, no tokens
    TOKEN_ACQUIRED = "token_acquired"  # Tokens present, not activated
    CONNECTED = "connected"  # Explicitly activated by an admin
    DISCONNECTED = "disconnected"  # Explicitly deactivated


# Status writes are checked against this table, by the store and the
# connection manager alike.
ALLOWED_TRANSITIONS: Dict[ConnectionStatus, FrozenSet[ConnectionStatus]] = {
    ConnectionStatus.UNCONFIGURED: frozenset({
        ConnectionStatus.SAVED,
    }),
    ConnectionStatus.SAVED: frozenset({
        ConnectionStatus.SAVED,
        ConnectionStatus.TOKEN_ACQUIRED,
        ConnectionStatus.DISCONNECTED,
    }),
    ConnectionStatus.TOKEN_ACQUIRED: frozenset({
        ConnectionStatus.SAVED,
        ConnectionStatus.TOKEN_ACQUIRED,
        ConnectionStatus.CONNECTED,
        ConnectionStatus.DISCONNECTED,
    }),
    ConnectionStatus.CONNECTED: frozenset({
        ConnectionStatus.SAVED,
        ConnectionStatus.TOKEN_ACQUIRED,
        ConnectionStatus.CONNECTED,
        ConnectionStatus.DISCONNECTED,
    }),
    ConnectionStatus.DISCONNECTED: frozenset({
        ConnectionStatus.SAVED,
        ConnectionStatus.TOKEN_ACQUIRED,
        ConnectionStatus.CONNECTED,
        ConnectionStatus.DISCONNECTED,
    }),
}


def can_transition(current: ConnectionStatus, target: ConnectionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def statuses_allowing(target: ConnectionStatus) -> Tuple[ConnectionStatus, ...]:
    """Stored statuses from which `target` may be reached."""
    return tuple(
        current for current, targets in ALLOWED_TRANSITIONS.items()
        if target in targets and current != ConnectionStatus.UNCONFIGURED
    )


class ProviderCredential(Base, TimestampMixin):
    """
    OAuth client configuration and token state for a single provider.

    SECURITY:
    - Ciphertext columns are NEVER logged or returned to callers
    - to_safe_dict() is the only serialization used for responses
    """

    __tablename__ = "provider_credentials"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )
    provider = Column(
        String(50),
        nullable=False,
        comment="Provider identifier (servicenow, ...)"
    )

    # Client configuration
    instance_url = Column(
        String(512),
        nullable=True,
        comment="Base HTTPS URL of the remote instance"
    )
    client_id = Column(
        String(255),
        nullable=True,
        comment="OAuth client identifier (safe to log)"
    )
    client_secret_encrypted = Column(
        Text,
        nullable=True,
        comment="Encrypted client secret - NEVER log plaintext"
    )
    grant_type = Column(
        Enum(GrantType),
        nullable=False,
        default=GrantType.AUTHORIZATION_CODE,
        comment="OAuth grant type"
    )
    redirect_uri = Column(
        String(1024),
        nullable=True,
        comment="Callback URL registered with the provider"
    )

    # In-flight authorization-code handshake
    oauth_state = Column(
        String(128),
        nullable=True,
        comment="Single-use anti-CSRF state"
    )
    oauth_state_expires_at = Column(UTCDateTime, nullable=True)

    # Tokens - NEVER log these values
    access_token_encrypted = Column(
        Text,
        nullable=True,
        comment="Encrypted access token - NEVER log plaintext"
    )
    refresh_token_encrypted = Column(
        Text,
        nullable=True,
        comment="Encrypted refresh token - NEVER log plaintext"
    )
    token_expires_at = Column(
        UTCDateTime,
        nullable=True,
        comment="When the access token expires"
    )
    token_refreshed_at = Column(UTCDateTime, nullable=True)
    token_metadata = Column(
        JSON,
        nullable=False,
        default=dict,
        comment="scope / token_type / grant_type from the token response"
    )

    # Status and lifecycle
    status = Column(
        Enum(ConnectionStatus),
        nullable=False,
        default=ConnectionStatus.SAVED,
        comment="Current connection state"
    )
    saved_at = Column(UTCDateTime, nullable=True)
    connected_at = Column(UTCDateTime, nullable=True)
    last_test_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", name="uq_provider_credentials_provider"),
    )

    def __repr__(self) -> str:
        """Safe repr - NEVER include secrets or tokens."""
        return (
            f"<ProviderCredential("
            f"provider={self.provider}, "
            f"instance_url={self.instance_url}, "
            f"status={self.status})>"
        )

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    @property
    def has_tokens(self) -> bool:
        return self.access_token_encrypted is not None

    @property
    def is_configured(self) -> bool:
        """Instance and client id are both saved."""
        return bool(self.instance_url and self.client_id)

    def is_token_expired(
        self,
        now: Optional[datetime] = None,
        buffer_seconds: int = 0,
    ) -> bool:
        """
        Check if the access token is expired (or within buffer of expiry).

        A token without a recorded expiry is treated as not expired.
        """
        if not self.token_expires_at:
            return False
        now = now or datetime.now(timezone.utc)
        return now.timestamp() + buffer_seconds >= self.token_expires_at.timestamp()

    def can_refresh(self) -> bool:
        """A fresh access token can be obtained without user interaction."""
        return (
            self.refresh_token_encrypted is not None
            or self.grant_type == GrantType.CLIENT_CREDENTIALS
        )

    def has_usable_token(self, now: Optional[datetime] = None) -> bool:
        """Access token present and either unexpired or refreshable."""
        return self.has_tokens and (
            not self.is_token_expired(now) or self.can_refresh()
        )

    def to_safe_dict(self) -> dict:
        """
        Return dictionary safe for logging/API responses.

        SECURITY: Excludes the client secret and all token values.
        """
        return {
            "provider": self.provider,
            "instance": self.instance_url,
            "clientId": self.client_id,
            "grantType": self.grant_type.value if self.grant_type else None,
            "redirectUri": self.redirect_uri,
            "status": self.status.value if self.status else None,
            "connected": self.is_connected,
            "hasTokens": self.has_tokens,
            "tokenExpiresAt": self.token_expires_at.isoformat() if self.token_expires_at else None,
            "savedAt": self.saved_at.isoformat() if self.saved_at else None,
            "connectedAt": self.connected_at.isoformat() if self.connected_at else None,
            "lastTestAt": self.last_test_at.isoformat() if self.last_test_at else None,
            "scope": (self.token_metadata or {}).get("scope"),
        }
