"""
Tests for the integration audit ledger.

CRITICAL: These tests verify that:
1. Secrets never reach the audit table
2. A database failure falls back to the fallback logger instead of raising
3. Reads are bounded and scoped to one provider
"""

import json
import logging

import pytest

from integration_auth.platform.audit import (
    MAX_LOG_LIMIT,
    AuditEvent,
    AuditLedger,
    IntegrationAuditAction,
    SecretRedactor,
)


@pytest.fixture
def ledger(session_factory):
    return AuditLedger(session_factory)


class TestSecretRedactor:

    def test_redacts_top_level_and_nested_secrets(self):
        redacted = SecretRedactor.redact({
            "instance_url": "https://acme.service-now.com",
            "access_token": "tok",
            "nested": {"client_secret": "s3cret", "scope": "useraccount"},
            "items": [{"refresh_token": "ref"}],
        })

        assert redacted["instance_url"] == "https://acme.service-now.com"
        assert redacted["access_token"] == "[REDACTED]"
        assert redacted["nested"]["client_secret"] == "[REDACTED]"
        assert redacted["nested"]["scope"] == "useraccount"
        assert redacted["items"][0]["refresh_token"] == "[REDACTED]"

    def test_key_match_is_case_insensitive(self):
        assert SecretRedactor.redact({"Client_Secret": "s3cret"})["Client_Secret"] == "[REDACTED]"

    def test_original_not_mutated(self):
        details = {"code": "abc"}
        SecretRedactor.redact(details)

        assert details == {"code": "abc"}


class TestAuditEvent:

    def test_to_dict_redacts(self):
        event = AuditEvent(
            provider="servicenow",
            action=IntegrationAuditAction.OAUTH_EXCHANGED,
            details={"state": "abc", "scope": "useraccount"},
        )

        row = event.to_dict()

        assert row["action"] == "oauth.exchanged"
        assert row["details"] == {"state": "[REDACTED]", "scope": "useraccount"}

    def test_failure_actions(self):
        assert IntegrationAuditAction.TOKEN_REFRESH_FAILED.is_failure
        assert not IntegrationAuditAction.TOKEN_REFRESHED.is_failure
        assert not IntegrationAuditAction.INTEGRATION_DISCONNECTED.is_failure


# ============================================================================
# TEST SUITE: LEDGER
# ============================================================================

class TestAuditLedger:

    def test_append_persists_redacted_entry(self, ledger):
        entry = ledger.append(
            "servicenow",
            IntegrationAuditAction.CREDENTIALS_SAVED,
            {"client_id": "abc", "client_secret": "s3cret"},
        )

        assert entry is not None
        stored = ledger.list_for_provider("servicenow")
        assert len(stored) == 1
        assert stored[0].actor == "admin"
        assert stored[0].details == {"client_id": "abc", "client_secret": "[REDACTED]"}
        assert stored[0].timestamp.tzinfo is not None

    def test_custom_actor(self, ledger):
        ledger.append("servicenow", IntegrationAuditAction.INTEGRATION_CONNECTED, actor="ops@example.com")

        assert ledger.list_for_provider("servicenow")[0].actor == "ops@example.com"

    def test_list_scoped_to_provider(self, ledger):
        ledger.append("servicenow", IntegrationAuditAction.CREDENTIALS_SAVED)
        ledger.append("jira", IntegrationAuditAction.CREDENTIALS_SAVED)

        entries = ledger.list_for_provider("servicenow")

        assert [e.provider for e in entries] == ["servicenow"]

    def test_limit_is_applied(self, ledger):
        for _ in range(5):
            ledger.append("servicenow", IntegrationAuditAction.TOKEN_REFRESHED)

        assert len(ledger.list_for_provider("servicenow", limit=2)) == 2
        assert len(ledger.list_for_provider("servicenow", limit=0)) == 1
        assert len(ledger.list_for_provider("servicenow", limit=MAX_LOG_LIMIT + 50)) == 5

    def test_to_dict_shape(self, ledger):
        ledger.append("servicenow", IntegrationAuditAction.INTEGRATION_CONNECTED, {"from_status": "token_acquired"})

        row = ledger.list_for_provider("servicenow")[0].to_dict()

        assert set(row) == {"id", "provider", "action", "actor", "timestamp", "details"}
        assert row["action"] == "integration.connected"


class TestFallback:
    """Database failures are logged, never raised."""

    @staticmethod
    def _broken_factory():
        raise RuntimeError("database unavailable")

    def test_write_failure_uses_fallback_logger(self, caplog):
        ledger = AuditLedger(self._broken_factory)

        with caplog.at_level(logging.ERROR, logger="audit.fallback"):
            result = ledger.append(
                "servicenow",
                IntegrationAuditAction.TOKEN_REFRESH_FAILED,
                {"error": "boom", "refresh_token": "ref"},
            )

        assert result is None
        records = [r for r in caplog.records if r.name == "audit.fallback"]
        assert len(records) == 1
        entry = json.loads(records[0].audit_entry)
        assert entry["action"] == "token.refresh.failed"
        assert entry["details"]["refresh_token"] == "[REDACTED]"
        assert "database unavailable" in entry["fallback_reason"]
