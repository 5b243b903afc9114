"""Configuration module for integration services."""

from integration_auth.config.integrations import (
    IntegrationSettings,
    ProviderProfile,
    PROVIDER_PROFILES,
    SERVICENOW,
)

__all__ = [
    "IntegrationSettings",
    "ProviderProfile",
    "PROVIDER_PROFILES",
    "SERVICENOW",
]
