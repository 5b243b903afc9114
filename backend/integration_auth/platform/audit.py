"""
Audit ledger for integration credential lifecycle actions.

CRITICAL SECURITY REQUIREMENTS:
- Audit logs MUST be append-only (no UPDATE/DELETE)
- Every state-changing credential operation MUST write an audit event
- Failures are recorded with a ".failed" action and an "error" detail
- Secrets and tokens MUST be redacted from details before persistence
- Failed logging attempts MUST fall back to secondary logger

Audited actions (each with a ".failed" counterpart except disconnect):
- credentials.saved
- oauth.started / oauth.exchanged / oauth.callback.failed
- token.acquired / token.refreshed
- connection.test.succeeded
- integration.connected / integration.disconnected
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, FrozenSet, List, Optional

from sqlalchemy import Column, String, JSON, Index, select
from sqlalchemy.orm import Session

from integration_auth.db_base import Base
from integration_auth.models.base import UTCDateTime

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("audit.fallback")

DEFAULT_ACTOR = "admin"
DEFAULT_LOG_LIMIT = 20
MAX_LOG_LIMIT = 200


class IntegrationAuditAction(str, Enum):
    """
    Enumeration of all auditable integration actions.

    Failure variants carry the ".failed" suffix.
    """
    CREDENTIALS_SAVED = "credentials.saved"
    CREDENTIALS_SAVE_FAILED = "credentials.save.failed"

    OAUTH_STARTED = "oauth.started"
    OAUTH_START_FAILED = "oauth.start.failed"
    OAUTH_EXCHANGED = "oauth.exchanged"
    OAUTH_EXCHANGE_FAILED = "oauth.exchange.failed"
    OAUTH_CALLBACK_FAILED = "oauth.callback.failed"

    TOKEN_ACQUIRED = "token.acquired"
    TOKEN_ACQUIRE_FAILED = "token.acquire.failed"
    TOKEN_REFRESHED = "token.refreshed"
    TOKEN_REFRESH_FAILED = "token.refresh.failed"

    CONNECTION_TEST_SUCCEEDED = "connection.test.succeeded"
    CONNECTION_TEST_FAILED = "connection.test.failed"

    INTEGRATION_CONNECTED = "integration.connected"
    INTEGRATION_CONNECT_FAILED = "integration.connect.failed"
    INTEGRATION_DISCONNECTED = "integration.disconnected"

    @property
    def is_failure(self) -> bool:
        return self.value.endswith(".failed")


class SecretRedactor:
    """
    Masks secret-named keys in audit details before they are stored.

    Matching is on the exact lowercased key; the shape of the details
    is preserved.
    """

    REDACTED_FIELDS: FrozenSet[str] = frozenset({
        "token",
        "access_token",
        "accesstoken",
        "refresh_token",
        "refreshtoken",
        "id_token",
        "client_secret",
        "clientsecret",
        "secret",
        "password",
        "api_key",
        "authorization",
        "code",
        "state",
        "oauth_state",
        "credential",
        "credentials",
        "encryption_key",
    })

    REDACTION_MARKER = "[REDACTED]"

    @classmethod
    def redact(cls, data: Any) -> Any:
        """Copy of `data` with every secret-named key masked, at any depth."""
        if isinstance(data, dict):
            return {
                key: (
                    cls.REDACTION_MARKER
                    if str(key).lower() in cls.REDACTED_FIELDS
                    else cls.redact(value)
                )
                for key, value in data.items()
            }
        if isinstance(data, list):
            return [cls.redact(item) for item in data]
        return data


class IntegrationAuditLog(Base):
    """
    Integration audit log database model.

    CRITICAL: This table is append-only. The ledger exposes no update or
    delete operations.
    """
    __tablename__ = "integration_audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String(50), nullable=False, index=True)
    action = Column(String(100), nullable=False, index=True)
    actor = Column(String(255), nullable=False, default=DEFAULT_ACTOR)
    timestamp = Column(UTCDateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    details = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_integration_audit_logs_provider_timestamp", "provider", "timestamp"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "action": self.action,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "details": self.details or {},
        }


@dataclass(frozen=True)
class AuditEvent:
    """
    Immutable audit event data structure.

    Secrets in details are automatically redacted before persistence.
    """
    provider: str
    action: IntegrationAuditAction
    actor: str = DEFAULT_ACTOR
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for database insertion with secret redaction."""
        return {
            "provider": self.provider,
            "action": self.action.value if isinstance(self.action, IntegrationAuditAction) else self.action,
            "actor": self.actor,
            "timestamp": self.timestamp,
            "details": SecretRedactor.redact(self.details),
        }


class AuditLedger:
    """
    Append-only ledger of integration lifecycle events.

    Writes never raise: a database failure is routed to the fallback
    logger so the audited operation itself is not crashed.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def append(
        self,
        provider: str,
        action: IntegrationAuditAction,
        details: Optional[dict[str, Any]] = None,
        actor: str = DEFAULT_ACTOR,
    ) -> Optional[IntegrationAuditLog]:
        """
        Record an audit event.

        Args:
            provider: Provider identifier
            action: Audited action
            details: Structured, non-secret context (redacted again here)
            actor: Who performed the action

        Returns:
            The created IntegrationAuditLog, or None if fallback was used
        """
        event = AuditEvent(
            provider=provider,
            action=action,
            actor=actor,
            details=details or {},
        )
        return self.write(event)

    def write(self, event: AuditEvent) -> Optional[IntegrationAuditLog]:
        audit_id = str(uuid.uuid4())
        try:
            with self._session_factory() as session:
                entry = IntegrationAuditLog(id=audit_id, **event.to_dict())
                session.add(entry)
                session.commit()
        except Exception as e:
            _write_fallback_log(event, audit_id, str(e))
            return None

        log = logger.warning if event.action.is_failure else logger.info
        log(
            "Audit event recorded",
            extra={
                "audit_id": audit_id,
                "provider": event.provider,
                "action": event.action.value,
                "actor": event.actor,
            }
        )
        return entry

    def list_for_provider(
        self,
        provider: str,
        limit: int = DEFAULT_LOG_LIMIT,
    ) -> List[IntegrationAuditLog]:
        """Most recent audit entries for a provider, newest first."""
        limit = max(1, min(limit, MAX_LOG_LIMIT))
        with self._session_factory() as session:
            stmt = (
                select(IntegrationAuditLog)
                .where(IntegrationAuditLog.provider == provider)
                .order_by(IntegrationAuditLog.timestamp.desc())
                .limit(limit)
            )
            return list(session.execute(stmt).scalars().all())


def _write_fallback_log(event: AuditEvent, audit_id: str, error_reason: str) -> None:
    """Write audit event to fallback logger when primary DB fails."""
    fallback_entry = {
        "event_id": audit_id,
        "provider": event.provider,
        "action": event.action.value if isinstance(event.action, IntegrationAuditAction) else event.action,
        "actor": event.actor,
        "timestamp": event.timestamp.isoformat(),
        "details": SecretRedactor.redact(event.details),
        "fallback_reason": error_reason,
    }
    fallback_logger.error(
        "Audit log fallback",
        extra={"audit_entry": json.dumps(fallback_entry, default=str)},
    )
