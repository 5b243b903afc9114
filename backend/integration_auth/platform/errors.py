"""
Consistent error handling for integration credential management.

Every failure raised by the credential, OAuth and refresh layers is an
AppError carrying a taxonomy code, so callers branch on kind instead of
parsing message text:

- 400: VALIDATION_ERROR, NOT_CONFIGURED, CSRF_VALIDATION_FAILED, AUTHORIZATION_DENIED,
       TOKENS_MISSING, NOT_CONNECTED
- 401: REAUTH_REQUIRED (re-run OAuth / token acquisition)
- 404: NOT_FOUND
- 500: SECRET_UNAVAILABLE, TOKEN_EXCHANGE_FAILED, TEST_FAILED

Responses use the shape {"ok": false, "code": ..., "message": ...}.
Stack traces, secrets and tokens are NEVER returned to clients.
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class AppError(Exception):
    """
    Base application error with consistent error shape.

    All custom errors should inherit from this class.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert to API error response format."""
        body = {
            "ok": False,
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    """Bad input (400)."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class CredentialNotFoundError(AppError):
    """No credential record exists for the provider (404)."""

    def __init__(self, provider: str):
        super().__init__(
            code="NOT_FOUND",
            message=f"No credentials saved for provider '{provider}'",
            status_code=status.HTTP_404_NOT_FOUND,
        )
        self.provider = provider


class NotConfiguredError(AppError):
    """Missing prerequisite credentials (400). Remediation: re-enter credentials."""

    def __init__(self, message: str = "Credentials not saved. Please save credentials first."):
        super().__init__(
            code="NOT_CONFIGURED",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class CsrfValidationError(AppError):
    """OAuth state mismatch (400) - SECURITY EVENT."""

    def __init__(self, message: str = "Invalid state parameter. Possible CSRF attack."):
        super().__init__(
            code="CSRF_VALIDATION_FAILED",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class AuthorizationDeniedError(AppError):
    """Provider redirected back with an OAuth error (400). No exchange is attempted."""

    def __init__(self, error: str, description: Optional[str] = None):
        message = f"Authorization failed: {description or error}"
        super().__init__(
            code="AUTHORIZATION_DENIED",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"oauth_error": error},
        )
        self.error = error


class SecretUnavailableError(AppError):
    """Client secret missing or undecryptable (500)."""

    def __init__(self, message: str = "Client secret is unavailable. Please save credentials again."):
        super().__init__(
            code="SECRET_UNAVAILABLE",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class TokenExchangeError(AppError):
    """
    Token endpoint returned non-2xx, timed out or was unreachable (500).

    Remediation: transient, retry. upstream_body must already be scrubbed
    of the client secret by the caller.
    """

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        upstream_body: Optional[str] = None,
    ):
        details: dict[str, Any] = {}
        if upstream_status is not None:
            details["upstream_status"] = upstream_status
        if upstream_body:
            details["upstream_body"] = upstream_body
        super().__init__(
            code="TOKEN_EXCHANGE_FAILED",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body


class ReauthRequiredError(AppError):
    """Token expired with no viable refresh path (401). Remediation: reconnect."""

    def __init__(self, message: str = "Access token expired. Please reconnect."):
        super().__init__(
            code="REAUTH_REQUIRED",
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
        )


class TokensMissingError(AppError):
    """Connect attempted without a usable access token (400)."""

    def __init__(self, message: str = "Tokens not found. Please complete OAuth setup first."):
        super().__init__(
            code="TOKENS_MISSING",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class NotConnectedError(AppError):
    """Authenticated call attempted on an inactive integration (400)."""

    def __init__(self, message: str = "Integration is not connected. Please complete OAuth setup first."):
        super().__init__(
            code="NOT_CONNECTED",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class TestFailedError(AppError):
    """Connectivity/auth check against the provider failed."""

    __test__ = False  # keep pytest from collecting this class

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        if upstream_status == status.HTTP_401_UNAUTHORIZED:
            status_code = status.HTTP_401_UNAUTHORIZED
        details = {"upstream_status": upstream_status} if upstream_status is not None else None
        super().__init__(
            code="TEST_FAILED",
            message=message,
            status_code=status_code,
            details=details,
        )
        self.upstream_status = upstream_status


CORRELATION_HEADER = "X-Correlation-ID"


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id(request: Request) -> str:
    """Header value if the caller sent one, else the id stamped on request.state, else a new one."""
    header_value = request.headers.get(CORRELATION_HEADER)
    if header_value:
        return header_value
    return getattr(request.state, "correlation_id", None) or generate_correlation_id()


def _app_error_response(request: Request, exc: AppError, correlation_id: str) -> JSONResponse:
    logger.warning(
        "Integration request failed",
        extra={
            "correlation_id": correlation_id,
            "error_code": exc.code,
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={CORRELATION_HEADER: correlation_id},
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Stamps a correlation id on every response and renders failures.

    AppErrors keep their code and status; anything else becomes a
    generic INTERNAL_ERROR. Stack traces are NEVER returned to clients.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id

        try:
            response = await call_next(request)
        except AppError as e:
            return _app_error_response(request, e, correlation_id)
        except Exception as e:
            logger.exception(
                "Unhandled exception in integration request",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                }
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "ok": False,
                    "code": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                    "details": {"correlation_id": correlation_id},
                },
                headers={CORRELATION_HEADER: correlation_id},
            )

        response.headers[CORRELATION_HEADER] = correlation_id
        return response


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Exception handler registered on the app for AppError raised in routes and dependencies."""
    return _app_error_response(request, exc, get_correlation_id(request))
