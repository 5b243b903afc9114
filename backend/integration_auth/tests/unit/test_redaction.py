"""
Tests for credential redaction in logs and error text.
"""

import logging

import pytest

from integration_auth.credentials import refresh, store
from integration_auth.credentials.redaction import (
    CREDENTIAL_LOGGERS,
    REDACTED_VALUE,
    CredentialLoggingFilter,
    is_credential_secret_key,
    redact_credential_data,
    redact_credential_value,
    setup_credential_logging,
)
from integration_auth.integrations import connectivity, http, lifecycle, oauth


class TestSecretKeys:

    @pytest.mark.parametrize("key", [
        "access_token", "refresh_token", "client_secret", "clientSecret",
        "password", "Authorization", "api_key",
    ])
    def test_secret_keys(self, key):
        assert is_credential_secret_key(key)

    @pytest.mark.parametrize("key", [
        "provider", "instance_url", "client_id", "grant_type",
        "token_expires_at", "has_tokens", "has_refresh_token",
    ])
    def test_allowed_keys(self, key):
        assert not is_credential_secret_key(key)


class TestRedactValue:

    def test_bearer_header(self):
        assert redact_credential_value("Authorization: Bearer abc.def-123") == (
            f"Authorization: Bearer {REDACTED_VALUE}"
        )

    def test_form_encoded_secrets(self):
        text = "grant_type=refresh_token&refresh_token=ref1&client_secret=s3cret&client_id=abc"

        redacted = redact_credential_value(text)

        assert "ref1" not in redacted
        assert "s3cret" not in redacted
        assert "client_id=abc" in redacted

    def test_json_secrets(self):
        redacted = redact_credential_value('{"access_token": "tok1", "scope": "useraccount"}')

        assert "tok1" not in redacted
        assert "useraccount" in redacted

    def test_known_secrets_scrubbed_verbatim(self):
        redacted = redact_credential_value(
            "client rejected: s3cret is wrong", secrets=["s3cret", None, ""]
        )

        assert redacted == f"client rejected: {REDACTED_VALUE} is wrong"

    def test_non_strings_untouched(self):
        assert redact_credential_value(401) == 401
        assert redact_credential_value(None) is None


class TestRedactData:

    def test_nested_structures(self):
        redacted = redact_credential_data({
            "provider": "servicenow",
            "client_secret": "s3cret",
            "response": {"access_token": "tok1", "items": [{"refresh_token": "ref1"}]},
            "note": "Bearer tok1",
        })

        assert redacted["provider"] == "servicenow"
        assert redacted["client_secret"] == REDACTED_VALUE
        assert redacted["response"]["access_token"] == REDACTED_VALUE
        assert redacted["response"]["items"][0]["refresh_token"] == REDACTED_VALUE
        assert "tok1" not in redacted["note"]


class TestLoggingFilter:

    def test_extra_fields_redacted(self, caplog):
        log = logging.getLogger("integration_auth.tests.redaction")
        log.addFilter(CredentialLoggingFilter())
        try:
            with caplog.at_level(logging.INFO, logger="integration_auth.tests.redaction"):
                log.info(
                    "Token stored",
                    extra={"provider": "servicenow", "access_token": "tok1"},
                )
        finally:
            log.filters.clear()

        record = caplog.records[-1]
        assert record.provider == "servicenow"
        assert record.access_token == REDACTED_VALUE

    def test_message_args_redacted(self, caplog):
        log = logging.getLogger("integration_auth.tests.redaction_args")
        log.addFilter(CredentialLoggingFilter())
        try:
            with caplog.at_level(logging.INFO, logger="integration_auth.tests.redaction_args"):
                log.info("Sending %s", "Bearer tok1")
        finally:
            log.filters.clear()

        assert "tok1" not in caplog.records[-1].getMessage()

    def test_setup_is_idempotent(self):
        setup_credential_logging()
        setup_credential_logging()

        filters = logging.getLogger("integration_auth.credentials.store").filters
        assert sum(isinstance(f, CredentialLoggingFilter) for f in filters) == 1

    @pytest.mark.parametrize("name", [
        "integration_auth.integrations.oauth",
        "integration_auth.credentials.store",
        "integration_auth.credentials.refresh",
    ])
    def test_module_loggers_redacted_after_setup(self, caplog, name):
        setup_credential_logging()

        with caplog.at_level(logging.INFO):
            logging.getLogger(name).info(
                "Token response received",
                extra={"provider": "servicenow", "access_token": "tok-plain"},
            )

        record = caplog.records[-1]
        assert record.name == name
        assert record.provider == "servicenow"
        assert record.access_token == REDACTED_VALUE

    @pytest.mark.parametrize("module", [store, refresh, oauth, connectivity, http, lifecycle])
    def test_every_credential_module_logger_covered(self, module):
        assert module.logger.name in CREDENTIAL_LOGGERS
