"""
Credential storage service for integration OAuth configuration and tokens.

SECURITY REQUIREMENTS:
- Client secrets and tokens are encrypted at rest before storage
- No plaintext secrets outside process memory
- Exactly one row per provider (unique constraint)
- Writes are partial-field UPDATEs; a racing writer never reverts
  unrelated fields such as status

Usage:
    store = CredentialStore(session_factory, cipher, settings)

    # Save client configuration
    result = store.upsert_credential("servicenow", {
        "instance": "https://acme.service-now.com",
        "client_id": "abc",
        "client_secret": "s3cret",
        "grant_type": "client_credentials",
    })

    # Persist tokens from a token response
    store.update_tokens("servicenow", access_token="tok", token_expires_at=expiry)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlparse

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from integration_auth.config.integrations import IntegrationSettings, ProviderProfile
from integration_auth.credentials.encryption import SecretCipher
from integration_auth.models.base import utc_now
from integration_auth.models.provider_credential import (
    ProviderCredential,
    GrantType,
    ConnectionStatus,
    can_transition,
    statuses_allowing,
)
from integration_auth.platform.errors import (
    CredentialNotFoundError,
    NotConnectedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# A token write advances these to TOKEN_ACQUIRED; CONNECTED stays connected
_TOKEN_ACQUIRABLE_FROM = tuple(
    s for s in statuses_allowing(ConnectionStatus.TOKEN_ACQUIRED)
    if s not in (ConnectionStatus.TOKEN_ACQUIRED, ConnectionStatus.CONNECTED)
)

_CLEARED_TOKEN_FIELDS: Dict[str, Any] = {
    "access_token_encrypted": None,
    "refresh_token_encrypted": None,
    "token_expires_at": None,
    "token_refreshed_at": None,
    "oauth_state": None,
    "oauth_state_expires_at": None,
}


@dataclass
class SaveResult:
    """Outcome of upsert_credential."""
    credential: ProviderCredential
    created: bool
    previous_status: Optional[ConnectionStatus]
    reauthorization_recommended: bool = False


def _field(fields: Mapping[str, Any], *names: str) -> Any:
    """First non-None value among snake_case / camelCase aliases."""
    for name in names:
        value = fields.get(name)
        if value is not None:
            return value
    return None


def parse_grant_type(value: Any) -> GrantType:
    if isinstance(value, GrantType):
        return value
    try:
        return GrantType(str(value))
    except ValueError:
        allowed = ", ".join(g.value for g in GrantType)
        raise ValidationError(
            f"Unsupported grant type '{value}'. Expected one of: {allowed}"
        )


def normalize_instance_url(instance: Any, profile: ProviderProfile) -> str:
    """
    Validate and normalize an instance URL.

    The URL must be HTTPS and its host must end with one of the
    provider's allowed domain suffixes. Trailing slashes, queries and
    fragments are dropped.
    """
    if not instance or not isinstance(instance, str):
        raise ValidationError("Instance URL is required")

    parsed = urlparse(instance.strip())
    if parsed.scheme != "https":
        raise ValidationError("Instance URL must use HTTPS")
    if parsed.username or parsed.password:
        raise ValidationError("Instance URL must not contain credentials")

    host = (parsed.hostname or "").lower()
    if not host or not any(host.endswith(s) for s in profile.allowed_domain_suffixes):
        raise ValidationError(
            f"Instance URL must be a {profile.display_name} domain "
            f"({', '.join(profile.allowed_domain_suffixes)})"
        )

    return f"https://{parsed.netloc.lower()}{parsed.path.rstrip('/')}"


def _check_transition(current: ConnectionStatus, target: ConnectionStatus) -> None:
    if not can_transition(current, target):
        raise ValidationError(
            f"Integration cannot move from {current.value} to {target.value}",
            details={"from_status": current.value, "to_status": target.value},
        )


def _validate_redirect_uri(redirect_uri: str) -> str:
    parsed = urlparse(redirect_uri)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("Redirect URI must be an absolute http(s) URL")
    return redirect_uri


class CredentialStore:
    """
    Sole owner of ProviderCredential rows.

    Constructed once at process start. Every operation runs in its own
    short session, so no caller holds a row across an await boundary.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        cipher: SecretCipher,
        settings: IntegrationSettings,
    ):
        self._session_factory = session_factory
        self.cipher = cipher
        self.settings = settings

    # =========================================================================
    # Reads
    # =========================================================================

    def profile_for(self, provider: str) -> ProviderProfile:
        profile = self.settings.get_profile(provider)
        if profile is None:
            raise ValidationError(f"Unknown provider '{provider}'")
        return profile

    def find_credential(self, provider: str) -> Optional[ProviderCredential]:
        """Return the provider's record or None."""
        with self._session_factory() as session:
            return self._load(session, provider)

    def get_credential(self, provider: str) -> ProviderCredential:
        """
        Return the provider's record.

        Raises:
            CredentialNotFoundError: If nothing was saved for the provider
        """
        credential = self.find_credential(provider)
        if credential is None:
            raise CredentialNotFoundError(provider)
        return credential

    def list_credentials(self) -> List[ProviderCredential]:
        with self._session_factory() as session:
            stmt = select(ProviderCredential).order_by(ProviderCredential.provider)
            return list(session.execute(stmt).scalars().all())

    def decrypt_client_secret(self, credential: ProviderCredential) -> Optional[str]:
        """
        Decrypt the stored client secret.

        Returns None when no secret was saved. Raises DecryptionError when
        the stored value cannot be decrypted.
        """
        if not credential.client_secret_encrypted:
            return None
        return self.cipher.decrypt(credential.client_secret_encrypted)

    def decrypt_access_token(self, credential: ProviderCredential) -> Optional[str]:
        if not credential.access_token_encrypted:
            return None
        return self.cipher.decrypt(credential.access_token_encrypted)

    def decrypt_refresh_token(self, credential: ProviderCredential) -> Optional[str]:
        if not credential.refresh_token_encrypted:
            return None
        return self.cipher.decrypt(credential.refresh_token_encrypted)

    # =========================================================================
    # Writes
    # =========================================================================

    def upsert_credential(self, provider: str, fields: Mapping[str, Any]) -> SaveResult:
        """
        Create or merge client configuration for a provider.

        Accepted fields (snake_case or camelCase): instance, client_id,
        client_secret, grant_type, redirect_uri.

        Validation runs before anything is written; an invalid payload
        never persists a record.

        Re-saving does not reconnect: a CONNECTED integration drops back to
        TOKEN_ACQUIRED (tokens kept) or SAVED (no tokens).

        Raises:
            ValidationError: On invalid instance URL or missing required fields
        """
        profile = self.profile_for(provider)
        instance_url = normalize_instance_url(
            _field(fields, "instance", "instance_url", "instanceUrl"), profile
        )

        client_id = _field(fields, "client_id", "clientId")
        client_id = client_id.strip() if isinstance(client_id, str) else client_id
        if not client_id:
            raise ValidationError("Client ID is required")

        raw_grant = _field(fields, "grant_type", "grantType")
        client_secret = _field(fields, "client_secret", "clientSecret")
        redirect_uri = _field(fields, "redirect_uri", "redirectUri")
        if redirect_uri:
            redirect_uri = _validate_redirect_uri(redirect_uri)

        with self._session_factory() as session:
            existing = self._load(session, provider)

            if raw_grant is not None:
                grant_type = parse_grant_type(raw_grant)
            elif existing is not None:
                grant_type = existing.grant_type
            else:
                grant_type = GrantType.AUTHORIZATION_CODE

            has_stored_secret = bool(existing and existing.client_secret_encrypted)
            if grant_type == GrantType.CLIENT_CREDENTIALS:
                if client_secret is not None and not client_secret.strip():
                    raise ValidationError("Client secret must not be empty for client_credentials")
                if client_secret is None and not has_stored_secret:
                    raise ValidationError("Client secret is required for client_credentials")

            values: Dict[str, Any] = {
                "instance_url": instance_url,
                "client_id": client_id,
                "grant_type": grant_type,
                "saved_at": utc_now(),
            }
            new_secret = bool(client_secret)
            if new_secret:
                values["client_secret_encrypted"] = self.cipher.encrypt(client_secret)
            if redirect_uri:
                values["redirect_uri"] = redirect_uri
            elif existing is None or not existing.redirect_uri:
                values["redirect_uri"] = self.settings.default_redirect_uri(provider)

            if existing is None:
                credential = ProviderCredential(
                    provider=provider,
                    status=ConnectionStatus.SAVED,
                    token_metadata={},
                    **values,
                )
                session.add(credential)
                try:
                    session.commit()
                except IntegrityError:
                    # Lost a create race; merge into the winner's row instead
                    session.rollback()
                    return self.upsert_credential(provider, fields)
                created = True
                previous_status = None
                reauth = False
            else:
                previous_status = existing.status
                if existing.status == ConnectionStatus.CONNECTED:
                    values["status"] = (
                        ConnectionStatus.TOKEN_ACQUIRED
                        if existing.has_tokens
                        else ConnectionStatus.SAVED
                    )
                _check_transition(existing.status, values.get("status", existing.status))
                session.execute(
                    update(ProviderCredential)
                    .where(ProviderCredential.provider == provider)
                    .values(**values)
                )
                session.commit()
                created = False
                reauth = new_secret and existing.has_tokens

            credential = self._load(session, provider)

        logger.info(
            "Credentials saved",
            extra={
                "provider": provider,
                "instance_url": instance_url,
                "client_id": client_id,
                "grant_type": grant_type.value,
                "created": created,
            }
        )
        return SaveResult(
            credential=credential,
            created=created,
            previous_status=previous_status,
            reauthorization_recommended=reauth,
        )

    def save_oauth_state(
        self,
        provider: str,
        state: str,
        expires_at: Optional[datetime],
    ) -> None:
        """Persist the anti-CSRF state of an in-flight authorization."""
        self._update(
            provider,
            oauth_state=state,
            oauth_state_expires_at=expires_at,
        )

    def update_tokens(
        self,
        provider: str,
        access_token: str,
        token_expires_at: Optional[datetime],
        refresh_token: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        clear_oauth_state: bool = False,
        require_connected: bool = False,
    ) -> ProviderCredential:
        """
        Persist a token response.

        Restricted to token fields. A missing refresh_token keeps the
        stored one. Status only moves SAVED/DISCONNECTED -> TOKEN_ACQUIRED;
        a CONNECTED integration stays connected.

        With require_connected, the write only lands while the row is still
        CONNECTED, so a disconnect that happened during the token request
        is not undone.

        Raises:
            CredentialNotFoundError: If no record exists
            NotConnectedError: If require_connected and the row is no
                longer connected
        """
        values: Dict[str, Any] = {
            "access_token_encrypted": self.cipher.encrypt(access_token),
            "token_expires_at": token_expires_at,
            "token_refreshed_at": utc_now(),
        }
        if refresh_token:
            values["refresh_token_encrypted"] = self.cipher.encrypt(refresh_token)
        if metadata is not None:
            values["token_metadata"] = metadata
        if clear_oauth_state:
            values["oauth_state"] = None
            values["oauth_state_expires_at"] = None

        conditions = [ProviderCredential.provider == provider]
        if require_connected:
            conditions.append(ProviderCredential.status == ConnectionStatus.CONNECTED)

        with self._session_factory() as session:
            result = session.execute(
                update(ProviderCredential).where(*conditions).values(**values)
            )
            if result.rowcount == 0:
                session.rollback()
                if require_connected and self._load(session, provider) is not None:
                    logger.warning(
                        "Token write dropped, integration no longer connected",
                        extra={"provider": provider},
                    )
                    raise NotConnectedError()
                raise CredentialNotFoundError(provider)

            session.execute(
                update(ProviderCredential)
                .where(
                    ProviderCredential.provider == provider,
                    ProviderCredential.status.in_(_TOKEN_ACQUIRABLE_FROM),
                )
                .values(status=ConnectionStatus.TOKEN_ACQUIRED)
            )
            session.commit()
            credential = self._load(session, provider)

        logger.info(
            "Tokens stored",
            extra={
                "provider": provider,
                "token_expires_at": token_expires_at.isoformat() if token_expires_at else None,
                "has_refresh_token": credential.refresh_token_encrypted is not None,
            }
        )
        return credential

    def set_connected(
        self,
        provider: str,
        connected: bool,
        clear_tokens: bool = False,
    ) -> ProviderCredential:
        """
        Explicit CONNECTED / DISCONNECTED transition.

        With clear_tokens, tokens and any in-flight state are dropped in the
        same UPDATE; client configuration is always kept. The UPDATE only
        matches a row whose current status may move to the target.

        Raises:
            CredentialNotFoundError: If no record exists
            ValidationError: If the transition is not allowed
        """
        target = ConnectionStatus.CONNECTED if connected else ConnectionStatus.DISCONNECTED
        values: Dict[str, Any] = {"status": target}
        if connected:
            values["connected_at"] = utc_now()
        elif clear_tokens:
            values.update(_CLEARED_TOKEN_FIELDS)

        with self._session_factory() as session:
            result = session.execute(
                update(ProviderCredential)
                .where(
                    ProviderCredential.provider == provider,
                    ProviderCredential.status.in_(statuses_allowing(target)),
                )
                .values(**values)
            )
            if result.rowcount == 0:
                session.rollback()
                existing = self._load(session, provider)
                if existing is None:
                    raise CredentialNotFoundError(provider)
                _check_transition(existing.status, target)
            session.commit()
            return self._load(session, provider)

    def touch_last_test(self, provider: str) -> ProviderCredential:
        return self._update(provider, last_test_at=utc_now())

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load(self, session: Session, provider: str) -> Optional[ProviderCredential]:
        stmt = (
            select(ProviderCredential)
            .where(ProviderCredential.provider == provider)
            .execution_options(populate_existing=True)
        )
        return session.execute(stmt).scalar_one_or_none()

    def _update(self, provider: str, **values: Any) -> ProviderCredential:
        with self._session_factory() as session:
            result = session.execute(
                update(ProviderCredential)
                .where(ProviderCredential.provider == provider)
                .values(**values)
            )
            if result.rowcount == 0:
                session.rollback()
                raise CredentialNotFoundError(provider)
            session.commit()
            return self._load(session, provider)
