"""
Process-wide integration services.

Built once at application start and shared by every request handler.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

from integration_auth.config.integrations import IntegrationSettings
from integration_auth.credentials.encryption import SecretCipher
from integration_auth.credentials.refresh import TokenRefreshGuard
from integration_auth.credentials.store import CredentialStore
from integration_auth.integrations.connectivity import ConnectionTester, ProviderApiClient
from integration_auth.integrations.http import IntegrationHttpClient
from integration_auth.integrations.lifecycle import ConnectionManager
from integration_auth.integrations.oauth import OAuthHandshakeEngine
from integration_auth.models.base import utc_now
from integration_auth.platform.audit import AuditLedger


@dataclass
class IntegrationServices:
    settings: IntegrationSettings
    store: CredentialStore
    audit: AuditLedger
    engine: OAuthHandshakeEngine
    guard: TokenRefreshGuard
    connections: ConnectionManager
    api: ProviderApiClient
    tester: ConnectionTester


def build_services(
    settings: IntegrationSettings,
    session_factory: Callable[[], Session],
    transport: Optional[httpx.AsyncBaseTransport] = None,
    now_fn: Callable[[], datetime] = utc_now,
) -> IntegrationServices:
    """
    Wire the store, audit ledger, OAuth engine, refresh guard and
    connection services together.

    Raises:
        InvalidKeyError: If INTEGRATION_SECRET_KEY is not configured
    """
    cipher = SecretCipher.from_key_material(settings.secret_key)
    http = IntegrationHttpClient(settings.http_timeout_seconds, transport=transport)

    store = CredentialStore(session_factory, cipher, settings)
    audit = AuditLedger(session_factory)
    engine = OAuthHandshakeEngine(store, audit, http, settings, now_fn=now_fn)
    guard = TokenRefreshGuard(store, engine, audit, settings, now_fn=now_fn)
    api = ProviderApiClient(store, guard, http)

    return IntegrationServices(
        settings=settings,
        store=store,
        audit=audit,
        engine=engine,
        guard=guard,
        connections=ConnectionManager(store, audit, settings, now_fn=now_fn),
        api=api,
        tester=ConnectionTester(store, api, audit),
    )
