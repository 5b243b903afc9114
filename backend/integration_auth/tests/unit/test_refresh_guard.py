"""
Tests for the token refresh guard.

CRITICAL: These tests verify that:
1. A valid token is returned without any network call
2. An expired token is refreshed exactly once, even under concurrency
3. Refresh failures ask for re-authorization and leave the status alone
"""

import asyncio
from datetime import timedelta

import httpx
import pytest

from integration_auth.models.provider_credential import ConnectionStatus
from integration_auth.platform.audit import IntegrationAuditAction
from integration_auth.platform.errors import NotConnectedError, ReauthRequiredError


def _connect(services, clock, fields, refresh_token=None, lifetime=1800):
    services.connections.save_credentials("servicenow", fields)
    services.store.update_tokens(
        "servicenow",
        access_token="tok1",
        refresh_token=refresh_token,
        token_expires_at=clock() + timedelta(seconds=lifetime),
    )
    return services.connections.connect("servicenow")


def _actions(services):
    return [e.action for e in services.audit.list_for_provider("servicenow", limit=100)]


# ============================================================================
# TEST SUITE: VALID TOKENS
# ============================================================================

class TestValidToken:
    """No refresh while the token is outside the buffer."""

    @pytest.mark.asyncio
    async def test_valid_token_returned_without_network(
        self, services, clock, provider_api, client_credentials_fields
    ):
        _connect(services, clock, client_credentials_fields)

        token = await services.guard.get_valid_access_token("servicenow")

        assert token == "tok1"
        assert provider_api.token_requests == []

    @pytest.mark.asyncio
    async def test_token_inside_buffer_is_refreshed(
        self, services, clock, provider_api, client_credentials_fields, settings
    ):
        _connect(services, clock, client_credentials_fields)
        clock.advance(1800 - settings.refresh_buffer_seconds + 1)
        provider_api.queue_token(json={"access_token": "tok2", "expires_in": 1800})

        token = await services.guard.get_valid_access_token("servicenow")

        assert token == "tok2"
        assert len(provider_api.token_requests) == 1


# ============================================================================
# TEST SUITE: REFRESH TOKEN GRANT
# ============================================================================

class TestRefreshTokenGrant:
    """Expired token with a stored refresh token."""

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_once(
        self, services, clock, provider_api, authorization_code_fields
    ):
        _connect(services, clock, authorization_code_fields, refresh_token="ref1")
        clock.advance(1801)
        provider_api.queue_token(json={
            "access_token": "tok2",
            "refresh_token": "ref2",
            "expires_in": 1800,
        })

        token = await services.guard.get_valid_access_token("servicenow")

        assert token == "tok2"
        assert provider_api.token_requests == [{
            "grant_type": "refresh_token",
            "refresh_token": "ref1",
            "client_id": "abc",
            "client_secret": "s3cret",
        }]
        credential = services.store.get_credential("servicenow")
        assert credential.token_expires_at > clock()
        assert credential.status == ConnectionStatus.CONNECTED
        assert services.store.decrypt_refresh_token(credential) == "ref2"
        assert IntegrationAuditAction.TOKEN_REFRESHED.value in _actions(services)

    @pytest.mark.asyncio
    async def test_refresh_token_kept_when_not_rotated(
        self, services, clock, provider_api, authorization_code_fields
    ):
        _connect(services, clock, authorization_code_fields, refresh_token="ref1")
        clock.advance(1801)
        provider_api.queue_token(json={"access_token": "tok2", "expires_in": 1800})

        await services.guard.get_valid_access_token("servicenow")

        credential = services.store.get_credential("servicenow")
        assert services.store.decrypt_refresh_token(credential) == "ref1"

    @pytest.mark.asyncio
    async def test_rejected_refresh_requires_reauth(
        self, services, clock, provider_api, authorization_code_fields
    ):
        _connect(services, clock, authorization_code_fields, refresh_token="ref1")
        clock.advance(1801)
        provider_api.queue_token(status_code=400, json={"error": "invalid_grant"})

        with pytest.raises(ReauthRequiredError):
            await services.guard.get_valid_access_token("servicenow")

        credential = services.store.get_credential("servicenow")
        assert credential.status == ConnectionStatus.CONNECTED
        assert services.store.decrypt_access_token(credential) == "tok1"
        assert IntegrationAuditAction.TOKEN_REFRESH_FAILED.value in _actions(services)

    @pytest.mark.asyncio
    async def test_refresh_timeout_requires_reauth(
        self, services, clock, provider_api, authorization_code_fields
    ):
        _connect(services, clock, authorization_code_fields, refresh_token="ref1")
        clock.advance(1801)
        provider_api.queue_token_error(httpx.ConnectTimeout("timed out"))

        with pytest.raises(ReauthRequiredError):
            await services.guard.get_valid_access_token("servicenow")

    @pytest.mark.asyncio
    async def test_concurrent_callers_refresh_once(
        self, services, clock, provider_api, authorization_code_fields
    ):
        _connect(services, clock, authorization_code_fields, refresh_token="ref1")
        clock.advance(1801)
        provider_api.queue_token(json={"access_token": "tok2", "expires_in": 1800})

        tokens = await asyncio.gather(
            services.guard.get_valid_access_token("servicenow"),
            services.guard.get_valid_access_token("servicenow"),
            services.guard.get_valid_access_token("servicenow"),
        )

        assert tokens == ["tok2", "tok2", "tok2"]
        assert len(provider_api.token_requests) == 1


# ============================================================================
# TEST SUITE: CLIENT CREDENTIALS RE-ISSUE
# ============================================================================

class TestClientCredentialsReissue:
    """Expired client_credentials tokens are re-issued without user interaction."""

    @pytest.mark.asyncio
    async def test_reissued(self, services, clock, provider_api, client_credentials_fields):
        _connect(services, clock, client_credentials_fields)
        clock.advance(1801)
        provider_api.queue_token(json={"access_token": "tok2", "expires_in": 1800})

        token = await services.guard.get_valid_access_token("servicenow")

        assert token == "tok2"
        assert provider_api.token_requests[0]["grant_type"] == "client_credentials"
        assert services.store.get_credential("servicenow").status == ConnectionStatus.CONNECTED


# ============================================================================
# TEST SUITE: UNAVAILABLE TOKENS
# ============================================================================

class TestUnavailable:
    """Guard refuses when no valid token can be produced."""

    @pytest.mark.asyncio
    async def test_not_saved(self, services):
        with pytest.raises(NotConnectedError):
            await services.guard.get_valid_access_token("servicenow")

    @pytest.mark.asyncio
    async def test_tokens_but_not_connected(self, services, clock, client_credentials_fields):
        services.connections.save_credentials("servicenow", client_credentials_fields)
        services.store.update_tokens(
            "servicenow", access_token="tok1", token_expires_at=clock() + timedelta(hours=1)
        )

        with pytest.raises(NotConnectedError):
            await services.guard.get_valid_access_token("servicenow")

    @pytest.mark.asyncio
    async def test_after_disconnect(self, services, clock, client_credentials_fields):
        _connect(services, clock, client_credentials_fields)
        services.connections.disconnect("servicenow")

        with pytest.raises(NotConnectedError):
            await services.guard.get_valid_access_token("servicenow")

    @pytest.mark.asyncio
    async def test_no_refresh_path(self, services, clock, provider_api, authorization_code_fields):
        _connect(services, clock, authorization_code_fields)
        clock.advance(1801)

        with pytest.raises(ReauthRequiredError):
            await services.guard.get_valid_access_token("servicenow")

        assert provider_api.token_requests == []
        entry = next(
            e for e in services.audit.list_for_provider("servicenow")
            if e.action == IntegrationAuditAction.TOKEN_REFRESH_FAILED.value
        )
        assert entry.details["reason"] == "no_refresh_path"


# ============================================================================
# TEST SUITE: DISCONNECT DURING RENEWAL
# ============================================================================

class TestDisconnectDuringRenewal:
    """
    A disconnect that lands while the token request is in flight wins;
    the renewed token is discarded.
    """

    @pytest.mark.asyncio
    async def test_refresh_does_not_undo_disconnect(
        self, services, clock, provider_api, authorization_code_fields
    ):
        _connect(services, clock, authorization_code_fields, refresh_token="ref1")
        clock.advance(1801)
        provider_api.queue_token(json={"access_token": "tok2", "expires_in": 1800})
        provider_api.on_token_request = lambda: services.connections.disconnect("servicenow")

        with pytest.raises(NotConnectedError):
            await services.guard.get_valid_access_token("servicenow")

        credential = services.store.get_credential("servicenow")
        assert credential.status == ConnectionStatus.DISCONNECTED
        assert credential.access_token_encrypted is None
        assert credential.refresh_token_encrypted is None
        assert len(provider_api.token_requests) == 1
        entry = next(
            e for e in services.audit.list_for_provider("servicenow")
            if e.action == IntegrationAuditAction.TOKEN_REFRESH_FAILED.value
        )
        assert entry.details["reason"] == "disconnected"

    @pytest.mark.asyncio
    async def test_reissue_does_not_undo_disconnect(
        self, services, clock, provider_api, client_credentials_fields
    ):
        _connect(services, clock, client_credentials_fields)
        clock.advance(1801)
        provider_api.queue_token(json={"access_token": "tok2", "expires_in": 1800})
        provider_api.on_token_request = lambda: services.connections.disconnect("servicenow")

        with pytest.raises(NotConnectedError):
            await services.guard.get_valid_access_token("servicenow")

        credential = services.store.get_credential("servicenow")
        assert credential.status == ConnectionStatus.DISCONNECTED
        assert credential.has_tokens is False
