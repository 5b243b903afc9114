"""FastAPI dependencies for the Integrations API."""

from fastapi import Depends, HTTPException, Request, status

from integration_auth.integrations.services import IntegrationServices
from integration_auth.platform.errors import ValidationError


def get_integration_services(request: Request) -> IntegrationServices:
    """Return the services built at application start."""
    services = getattr(request.app.state, "integrations", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Integration services not initialized",
        )
    return services


def get_provider(
    provider: str,
    services: IntegrationServices = Depends(get_integration_services),
) -> str:
    """Validate the {provider} path parameter against configured profiles."""
    provider = provider.lower()
    if services.settings.get_profile(provider) is None:
        raise ValidationError(f"Unknown provider '{provider}'")
    return provider
