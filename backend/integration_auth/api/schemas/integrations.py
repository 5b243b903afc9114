"""
Pydantic schemas for the Integrations API.

JSON bodies use camelCase; snake_case field names are accepted too.
Every request field is optional so that missing input surfaces as a
VALIDATION_ERROR (400) from the service layer rather than a 422.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# =============================================================================
# Requests
# =============================================================================


class SaveCredentialsRequest(CamelModel):
    """Request body for POST /api/integrations/{provider}/save."""
    instance: Optional[str] = Field(
        None,
        description="HTTPS base URL of the provider instance",
        examples=["https://acme.service-now.com"],
    )
    client_id: Optional[str] = Field(None, description="OAuth client identifier")
    client_secret: Optional[str] = Field(
        None,
        description="OAuth client secret. Omit to keep the stored secret.",
    )
    grant_type: Optional[str] = Field(
        None,
        description="authorization_code or client_credentials",
        examples=["client_credentials"],
    )
    redirect_uri: Optional[str] = Field(None, description="OAuth callback URL")


class ExchangeCodeRequest(CamelModel):
    """Request body for POST /api/integrations/{provider}/exchange."""
    code: Optional[str] = None
    state: Optional[str] = None


class TokenRequest(CamelModel):
    """
    Request body for POST /api/integrations/{provider}/token.

    grant_type selects the grant explicitly. Without it, a code routes to
    the authorization-code exchange and otherwise a client_credentials
    token is acquired.
    """
    grant_type: Optional[str] = None
    code: Optional[str] = None
    state: Optional[str] = None


# =============================================================================
# Responses
# =============================================================================


class OkResponse(CamelModel):
    ok: bool = True


class SaveCredentialsResponse(OkResponse):
    saved: bool = True
    status: str
    reauthorization_recommended: bool = False


class AuthorizeUrlResponse(OkResponse):
    authorize_url: str


class TokensSavedResponse(OkResponse):
    tokens_saved: bool = True
    status: str
    token_expires_at: Optional[str] = None


class ConnectResponse(OkResponse):
    connected: bool = True


class ConnectionTestResponse(OkResponse):
    msg: str
    data: Dict[str, Any] = Field(default_factory=dict)


class IntegrationStateResponse(CamelModel):
    """
    Safe integration state.

    SECURITY: Has no secret or token fields.
    """
    provider: str
    display_name: Optional[str] = None
    instance: Optional[str] = None
    client_id: Optional[str] = None
    grant_type: Optional[str] = None
    redirect_uri: Optional[str] = None
    status: str
    connected: bool = False
    has_tokens: bool = False
    token_expired: bool = False
    token_expires_at: Optional[str] = None
    scope: Optional[str] = None
    saved_at: Optional[str] = None
    connected_at: Optional[str] = None
    last_test_at: Optional[str] = None


class IntegrationListResponse(OkResponse):
    integrations: List[IntegrationStateResponse]


class AuditLogEntryResponse(CamelModel):
    id: str
    provider: str
    action: str
    actor: str
    timestamp: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class AuditLogListResponse(OkResponse):
    provider: str
    logs: List[AuditLogEntryResponse]
