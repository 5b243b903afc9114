"""
Database models for integration credentials.

The audit ledger model lives in integration_auth.platform.audit and is
re-exported from integration_auth.models.audit_log.
"""

from integration_auth.models.base import TimestampMixin, UTCDateTime
from integration_auth.models.provider_credential import (
    ProviderCredential,
    GrantType,
    ConnectionStatus,
)

__all__ = [
    "TimestampMixin",
    "UTCDateTime",
    "ProviderCredential",
    "GrantType",
    "ConnectionStatus",
]
