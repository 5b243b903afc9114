"""
Authenticated calls to a provider's API and the connection test built on them.
"""

import logging
from typing import Any, Dict

import httpx

from integration_auth.credentials.redaction import redact_credential_value
from integration_auth.credentials.refresh import TokenRefreshGuard
from integration_auth.credentials.store import CredentialStore
from integration_auth.integrations.http import IntegrationHttpClient
from integration_auth.platform.audit import AuditLedger, IntegrationAuditAction
from integration_auth.platform.errors import AppError, TestFailedError

logger = logging.getLogger(__name__)

MAX_ERROR_SNIPPET_CHARS = 200


class ProviderApiClient:
    """
    Sends requests to a provider's API with a bearer token.

    The token always comes from the refresh guard, so an expired token
    is never attached.
    """

    def __init__(
        self,
        store: CredentialStore,
        guard: TokenRefreshGuard,
        http: IntegrationHttpClient,
    ):
        self.store = store
        self.guard = guard
        self.http = http

    async def request(
        self,
        provider: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request to `{instance}{path}`.

        Raises:
            NotConnectedError / ReauthRequiredError: From the guard
            httpx.HTTPError: On transport failures
        """
        token = await self.guard.get_valid_access_token(provider)
        credential = self.store.get_credential(provider)

        headers = {
            "Accept": "application/json",
            **kwargs.pop("headers", {}),
            "Authorization": f"Bearer {token}",
        }
        return await self.http.request(
            method,
            f"{credential.instance_url}{path}",
            headers=headers,
            **kwargs,
        )


class ConnectionTester:
    """Verifies connectivity and authorization against the provider."""

    def __init__(
        self,
        store: CredentialStore,
        api: ProviderApiClient,
        audit: AuditLedger,
    ):
        self.store = store
        self.api = api
        self.audit = audit

    async def test_connection(self, provider: str) -> Dict[str, Any]:
        """
        Run the provider's test call, refreshing the token first if needed.

        Returns:
            {"msg": ..., "data": {"incident_count": N}}

        Raises:
            TestFailedError: On transport failure or a non-2xx response
            NotConnectedError / ReauthRequiredError: From the guard
        """
        try:
            profile = self.store.profile_for(provider)
            try:
                response = await self.api.request(provider, "GET", profile.test_path)
            except httpx.TimeoutException as e:
                raise TestFailedError("Connection test timed out") from e
            except httpx.HTTPError as e:
                raise TestFailedError(
                    f"Connection test could not reach the instance ({type(e).__name__})"
                ) from e

            if not response.is_success:
                snippet = redact_credential_value(response.text[:MAX_ERROR_SNIPPET_CHARS])
                message = f"Connection test failed with status {response.status_code}"
                if snippet:
                    message = f"{message}: {snippet}"
                raise TestFailedError(message, upstream_status=response.status_code)

            try:
                payload = response.json()
            except ValueError as e:
                raise TestFailedError(
                    "Connection test returned an invalid response",
                    upstream_status=response.status_code,
                ) from e
        except AppError as e:
            details: Dict[str, Any] = {"error": e.message, "error_code": e.code}
            if e.details.get("upstream_status") is not None:
                details["upstream_status"] = e.details["upstream_status"]
            self.audit.append(provider, IntegrationAuditAction.CONNECTION_TEST_FAILED, details)
            raise

        records = payload.get("result") if isinstance(payload, dict) else None
        incident_count = len(records) if isinstance(records, list) else 0

        self.store.touch_last_test(provider)
        self.audit.append(
            provider,
            IntegrationAuditAction.CONNECTION_TEST_SUCCEEDED,
            {"incident_count": incident_count, "status_code": response.status_code},
        )
        logger.info(
            "Connection test succeeded",
            extra={"provider": provider, "incident_count": incident_count},
        )
        return {
            "msg": f"Successfully connected to {profile.display_name}",
            "data": {"incident_count": incident_count},
        }
