"""
Integrations API routes.

Admin-facing endpoints for the integration credential lifecycle:
- POST /api/integrations/{provider}/save         - Save client configuration
- POST /api/integrations/{provider}/start-oauth  - Begin authorization-code flow
- POST /api/integrations/{provider}/exchange     - Exchange an authorization code
- POST /api/integrations/{provider}/token        - Acquire a client-credentials token
- POST /api/integrations/{provider}/connect      - Activate the integration
- POST /api/integrations/{provider}/disconnect   - Deactivate and clear tokens
- POST /api/integrations/{provider}/test         - Authenticated connectivity check
- GET  /api/integrations/{provider}/state        - Safe state view
- GET  /api/integrations/{provider}/logs         - Recent audit entries
- GET  /api/integrations                         - State of every known provider
- GET  /oauth/callback/{provider}                - Provider redirect target

Failures are AppErrors rendered as {"ok": false, "code", "message"}.

SECURITY: Responses NEVER include the client secret or token values.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from integration_auth.api.dependencies.integrations import (
    get_integration_services,
    get_provider,
)
from integration_auth.api.schemas.integrations import (
    AuditLogEntryResponse,
    AuditLogListResponse,
    AuthorizeUrlResponse,
    ConnectResponse,
    ConnectionTestResponse,
    ExchangeCodeRequest,
    IntegrationListResponse,
    IntegrationStateResponse,
    OkResponse,
    SaveCredentialsRequest,
    SaveCredentialsResponse,
    TokenRequest,
    TokensSavedResponse,
)
from integration_auth.credentials.store import parse_grant_type
from integration_auth.integrations.services import IntegrationServices
from integration_auth.models.provider_credential import GrantType, ProviderCredential
from integration_auth.platform.audit import DEFAULT_LOG_LIMIT

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations", tags=["integrations"])
callback_router = APIRouter(tags=["integrations"])


def _tokens_saved(credential: ProviderCredential) -> TokensSavedResponse:
    return TokensSavedResponse(
        status=credential.status.value,
        token_expires_at=(
            credential.token_expires_at.isoformat() if credential.token_expires_at else None
        ),
    )


@router.get("", response_model=IntegrationListResponse)
async def list_integrations(
    services: IntegrationServices = Depends(get_integration_services),
):
    """List the safe state of every configured provider."""
    states = services.connections.list_states()
    return IntegrationListResponse(
        integrations=[IntegrationStateResponse.model_validate(s) for s in states]
    )


@router.post("/{provider}/save", response_model=SaveCredentialsResponse)
async def save_credentials(
    body: Optional[SaveCredentialsRequest] = None,
    provider_key: str = Depends(get_provider),
    services: IntegrationServices = Depends(get_integration_services),
):
    """
    Save client configuration.

    Re-saving never reconnects. When a new secret is supplied while tokens
    exist, reauthorizationRecommended is true.
    """
    fields = body.model_dump(exclude_none=True) if body else {}
    result = services.connections.save_credentials(provider_key, fields)
    return SaveCredentialsResponse(
        status=result.credential.status.value,
        reauthorization_recommended=result.reauthorization_recommended,
    )


@router.post("/{provider}/start-oauth", response_model=AuthorizeUrlResponse)
async def start_oauth(
    provider_key: str = Depends(get_provider),
    services: IntegrationServices = Depends(get_integration_services),
):
    """Return the provider authorization URL for the admin to visit."""
    authorize_url = services.engine.build_authorization_url(provider_key)
    return AuthorizeUrlResponse(authorize_url=authorize_url)


@router.post("/{provider}/exchange", response_model=TokensSavedResponse)
async def exchange_code(
    body: Optional[ExchangeCodeRequest] = None,
    provider_key: str = Depends(get_provider),
    services: IntegrationServices = Depends(get_integration_services),
):
    """Exchange an authorization code for tokens. Does not connect."""
    body = body or ExchangeCodeRequest()
    credential = await services.engine.exchange_authorization_code(
        provider_key, body.code, body.state
    )
    return _tokens_saved(credential)


@router.post("/{provider}/token", response_model=TokensSavedResponse)
async def acquire_token(
    body: Optional[TokenRequest] = None,
    provider_key: str = Depends(get_provider),
    services: IntegrationServices = Depends(get_integration_services),
):
    """
    Acquire tokens without the browser redirect.

    An explicit grantType picks the grant; without one, a body carrying
    a code is an authorization-code exchange and anything else a
    client_credentials acquisition.
    """
    body = body or TokenRequest()
    if body.grant_type:
        grant_type = parse_grant_type(body.grant_type)
    elif body.code:
        grant_type = GrantType.AUTHORIZATION_CODE
    else:
        grant_type = GrantType.CLIENT_CREDENTIALS

    if grant_type == GrantType.AUTHORIZATION_CODE:
        credential = await services.engine.exchange_authorization_code(
            provider_key, body.code or "", body.state
        )
    else:
        credential = await services.engine.acquire_client_credentials_token(provider_key)
    return _tokens_saved(credential)


@router.post("/{provider}/connect", response_model=ConnectResponse)
async def connect(
    provider_key: str = Depends(get_provider),
    services: IntegrationServices = Depends(get_integration_services),
):
    """Activate an integration that already holds tokens."""
    services.connections.connect(provider_key)
    return ConnectResponse()


@router.post("/{provider}/disconnect", response_model=OkResponse)
async def disconnect(
    provider_key: str = Depends(get_provider),
    services: IntegrationServices = Depends(get_integration_services),
):
    """Deactivate an integration and clear its tokens locally."""
    services.connections.disconnect(provider_key)
    return OkResponse()


@router.post("/{provider}/test", response_model=ConnectionTestResponse)
async def test_connection(
    provider_key: str = Depends(get_provider),
    services: IntegrationServices = Depends(get_integration_services),
):
    """Make an authenticated call to the provider, refreshing first if needed."""
    result = await services.tester.test_connection(provider_key)
    return ConnectionTestResponse(msg=result["msg"], data=result["data"])


@router.get("/{provider}/state", response_model=IntegrationStateResponse)
async def get_state(
    provider_key: str = Depends(get_provider),
    services: IntegrationServices = Depends(get_integration_services),
):
    """Safe view of the integration. Never includes secrets or tokens."""
    return IntegrationStateResponse.model_validate(
        services.connections.get_state(provider_key)
    )


@router.get("/{provider}/logs", response_model=AuditLogListResponse)
async def get_logs(
    limit: int = Query(DEFAULT_LOG_LIMIT, description="Maximum entries to return"),
    provider_key: str = Depends(get_provider),
    services: IntegrationServices = Depends(get_integration_services),
):
    """Most recent audit entries for the provider, newest first."""
    entries = services.audit.list_for_provider(provider_key, limit=limit)
    return AuditLogListResponse(
        provider=provider_key,
        logs=[AuditLogEntryResponse.model_validate(e.to_dict()) for e in entries],
    )


@callback_router.get("/oauth/callback/{provider}", response_model=TokensSavedResponse)
async def oauth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    provider_key: str = Depends(get_provider),
    services: IntegrationServices = Depends(get_integration_services),
):
    """
    Provider redirect target.

    An error from the provider is surfaced without attempting an exchange.
    """
    credential = await services.engine.handle_callback(
        provider_key, code, state, error=error, error_description=error_description
    )
    return _tokens_saved(credential)
