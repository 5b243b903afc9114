"""
Integration configuration.

Settings are read from environment variables once at process start and
passed explicitly to the services that need them.

Environment variables:
- INTEGRATION_SECRET_KEY: key material for the secret cipher (required)
- DATABASE_URL: SQLAlchemy URL for credential + audit storage
- BASE_URL: public base URL used to build default OAuth redirect URIs
- INTEGRATION_HTTP_TIMEOUT_SECONDS: bound for every outbound HTTP call
- TOKEN_REFRESH_BUFFER_SECONDS: refresh tokens this close to expiry
- OAUTH_STATE_TTL_SECONDS: lifetime of an in-flight OAuth state
- DEFAULT_TOKEN_LIFETIME_SECONDS: used when a token response omits expires_in
- INTEGRATION_EXTRA_DOMAIN_SUFFIXES_<PROVIDER>: extra allowed instance domains
"""

import os
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple

DEFAULT_DATABASE_URL = "sqlite:///./integrations.db"
DEFAULT_BASE_URL = "http://localhost:3000"
DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0
DEFAULT_REFRESH_BUFFER_SECONDS = 60
DEFAULT_OAUTH_STATE_TTL_SECONDS = 600
DEFAULT_TOKEN_LIFETIME_SECONDS = 1800


@dataclass(frozen=True)
class ProviderProfile:
    """
    Static description of how to talk OAuth to a provider.

    Paths are appended to the saved instance URL.
    """
    name: str
    display_name: str
    allowed_domain_suffixes: Tuple[str, ...]
    authorize_path: str
    token_path: str
    test_path: str

    def authorize_endpoint(self, instance_url: str) -> str:
        return f"{instance_url}{self.authorize_path}"

    def token_endpoint(self, instance_url: str) -> str:
        return f"{instance_url}{self.token_path}"


SERVICENOW = ProviderProfile(
    name="servicenow",
    display_name="ServiceNow",
    allowed_domain_suffixes=(".service-now.com",),
    authorize_path="/oauth_auth.do",
    token_path="/oauth_token.do",
    test_path="/api/now/table/incident?sysparm_limit=1",
)

PROVIDER_PROFILES: Dict[str, ProviderProfile] = {
    SERVICENOW.name: SERVICENOW,
}


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


def _extra_suffixes(provider: str) -> Tuple[str, ...]:
    raw = os.getenv(f"INTEGRATION_EXTRA_DOMAIN_SUFFIXES_{provider.upper()}", "")
    suffixes = []
    for item in raw.split(","):
        item = item.strip().lower()
        if not item:
            continue
        suffixes.append(item if item.startswith(".") else f".{item}")
    return tuple(suffixes)


@dataclass
class IntegrationSettings:
    """Process-wide integration settings."""

    secret_key: Optional[str] = None
    database_url: str = DEFAULT_DATABASE_URL
    base_url: str = DEFAULT_BASE_URL
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    refresh_buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS
    oauth_state_ttl_seconds: int = DEFAULT_OAUTH_STATE_TTL_SECONDS
    default_token_lifetime_seconds: int = DEFAULT_TOKEN_LIFETIME_SECONDS
    providers: Dict[str, ProviderProfile] = field(
        default_factory=lambda: dict(PROVIDER_PROFILES)
    )

    @classmethod
    def from_env(cls) -> "IntegrationSettings":
        """Load settings from environment variables."""
        providers = {}
        for name, profile in PROVIDER_PROFILES.items():
            extra = _extra_suffixes(name)
            if extra:
                profile = replace(
                    profile,
                    allowed_domain_suffixes=profile.allowed_domain_suffixes + extra,
                )
            providers[name] = profile

        return cls(
            secret_key=os.getenv("INTEGRATION_SECRET_KEY"),
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            base_url=os.getenv("BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
            http_timeout_seconds=_float_env(
                "INTEGRATION_HTTP_TIMEOUT_SECONDS", DEFAULT_HTTP_TIMEOUT_SECONDS
            ),
            refresh_buffer_seconds=_int_env(
                "TOKEN_REFRESH_BUFFER_SECONDS", DEFAULT_REFRESH_BUFFER_SECONDS
            ),
            oauth_state_ttl_seconds=_int_env(
                "OAUTH_STATE_TTL_SECONDS", DEFAULT_OAUTH_STATE_TTL_SECONDS
            ),
            default_token_lifetime_seconds=_int_env(
                "DEFAULT_TOKEN_LIFETIME_SECONDS", DEFAULT_TOKEN_LIFETIME_SECONDS
            ),
            providers=providers,
        )

    def get_profile(self, provider: str) -> Optional[ProviderProfile]:
        return self.providers.get(provider)

    def default_redirect_uri(self, provider: str) -> str:
        return f"{self.base_url}/oauth/callback/{provider}"
