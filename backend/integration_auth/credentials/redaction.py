"""
Credential redaction utilities.

SECURITY REQUIREMENTS:
- Tokens NEVER appear in logs (access_token, refresh_token)
- Client secrets NEVER appear in logs or error details
- ALLOWED in logs: provider, instance_url, client_id

Usage:
    from integration_auth.credentials.redaction import redact_credential_data

    logger.info("Token response", extra=redact_credential_data(payload))
"""

import logging
import re
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)

REDACTED_VALUE = "[REDACTED]"

# Key names that are safe to log even though they match a secret pattern
ALLOWED_KEYS = frozenset({
    "provider",
    "instance_url",
    "client_id",
    "clientid",
    "grant_type",
    "granttype",
    "token_expires_at",
    "token_type",
    "has_tokens",
    "hastokens",
    "has_refresh_token",
    "tokens_cleared",
    "token_refreshed_at",
    "security_event",
})

SECRET_KEY_FRAGMENTS = (
    "token",
    "secret",
    "password",
    "credential",
    "authorization",
    "bearer",
    "api_key",
    "apikey",
)

MAX_REDACTION_DEPTH = 10

SECRET_VALUE_PATTERNS = [
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9\-._~+/]+=*"),
    re.compile(r"(?i)((?:access_token|refresh_token|client_secret|code)=)[^&\s\"']+"),
    re.compile(r"(?i)(\"(?:access_token|refresh_token|client_secret)\"\s*:\s*\")[^\"]*"),
]


def is_credential_secret_key(key: str) -> bool:
    """True for key names such as access_token or clientSecret, unless allow-listed."""
    lowered = key.lower()
    if lowered in ALLOWED_KEYS:
        return False
    return any(fragment in lowered for fragment in SECRET_KEY_FRAGMENTS)


def redact_credential_value(value: Any, secrets: Optional[Iterable[str]] = None) -> Any:
    """
    Scrub secrets out of free text such as an upstream error body.

    `secrets` lists exact values to remove (the client secret, a refresh
    token); known token shapes are masked afterwards. Non-string values
    pass through unchanged.
    """
    if not isinstance(value, str):
        return value

    text = value
    for known in filter(None, secrets or ()):
        text = text.replace(known, REDACTED_VALUE)
    for pattern in SECRET_VALUE_PATTERNS:
        text = pattern.sub(rf"\1{REDACTED_VALUE}", text)
    return text


def redact_credential_data(data: Any, _depth: int = 0) -> Any:
    """Copy of `data` with secret keys masked and string values scrubbed."""
    if _depth > MAX_REDACTION_DEPTH:
        return data
    if isinstance(data, str):
        return redact_credential_value(data)
    if isinstance(data, list):
        return [redact_credential_data(v, _depth + 1) for v in data]
    if isinstance(data, dict):
        return {
            k: (
                REDACTED_VALUE
                if isinstance(k, str) and is_credential_secret_key(k)
                else redact_credential_data(v, _depth + 1)
            )
            for k, v in data.items()
        }
    return data


# Attributes every LogRecord has; only caller-supplied `extra` keys are rewritten
_RESERVED_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()
) | {"message", "asctime"}


class CredentialLoggingFilter(logging.Filter):
    """
    Masks credentials in the message, its args, and `extra` fields.

    Attach to any logger that may see token responses or client config.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_credential_value(record.msg)

        if isinstance(record.args, dict):
            record.args = redact_credential_data(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(redact_credential_value(a) for a in record.args)

        extras = [k for k in record.__dict__ if k not in _RESERVED_RECORD_ATTRS]
        for name in extras:
            if is_credential_secret_key(name):
                setattr(record, name, REDACTED_VALUE)
            else:
                setattr(record, name, redact_credential_data(getattr(record, name)))
        return True


# Logger filters only see records created on that exact logger, so every
# module that logs around credentials is listed by name.
CREDENTIAL_LOGGERS = (
    "integration_auth.credentials.store",
    "integration_auth.credentials.refresh",
    "integration_auth.credentials.encryption",
    "integration_auth.integrations.oauth",
    "integration_auth.integrations.connectivity",
    "integration_auth.integrations.http",
    "integration_auth.integrations.lifecycle",
    "integration_auth.platform.audit",
    "integration_auth.platform.errors",
    "integration_auth.api.routes.integrations",
    "audit.fallback",
)


def setup_credential_logging() -> None:
    """Install CredentialLoggingFilter on every credential logger (idempotent)."""
    for name in CREDENTIAL_LOGGERS:
        target = logging.getLogger(name)
        if not any(isinstance(f, CredentialLoggingFilter) for f in target.filters):
            target.addFilter(CredentialLoggingFilter())

    logger.info("Credential redaction filter installed", extra={"loggers": list(CREDENTIAL_LOGGERS)})
