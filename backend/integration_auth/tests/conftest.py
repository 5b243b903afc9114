"""
Shared pytest fixtures for integration credential tests.

- In-memory SQLite (StaticPool) with both tables created
- A controllable clock shared by the engine, guard and state machine
- A scripted provider served through httpx.MockTransport
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qsl

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from integration_auth.app import create_app
from integration_auth.config.integrations import IntegrationSettings
from integration_auth.credentials.encryption import SecretCipher
from integration_auth.database.session import build_session_factory, init_db
from integration_auth.integrations.services import build_services

TEST_SECRET_KEY = "integration-test-passphrase"
INSTANCE = "https://acme.service-now.com"


# ============================================================================
# HELPERS
# ============================================================================

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class FakeProvider:
    """
    Scripted stand-in for a provider instance.

    Token endpoint calls are recorded as parsed form dicts. Any other
    call is treated as a table API call. `on_token_request` runs while a
    token request is in flight, before its response is returned.
    """

    def __init__(self):
        self.on_token_request: Optional[Callable[[], None]] = None
        self.token_requests: List[Dict[str, str]] = []
        self.api_requests: List[httpx.Request] = []
        self._token_responses: List[Any] = []
        self._api_responses: List[Any] = []

    def queue_token(self, status_code: int = 200, json: Any = None, text: Optional[str] = None):
        self._token_responses.append(_response(status_code, json, text))

    def queue_token_error(self, exc: Exception):
        self._token_responses.append(exc)

    def queue_api(self, status_code: int = 200, json: Any = None, text: Optional[str] = None):
        self._api_responses.append(_response(status_code, json, text))

    def queue_api_error(self, exc: Exception):
        self._api_responses.append(exc)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/oauth_token.do"):
            self.token_requests.append(dict(parse_qsl(request.content.decode("utf-8"))))
            if self.on_token_request is not None:
                self.on_token_request()
            return self._next(self._token_responses, request, default=httpx.Response(
                500, json={"error": "no scripted token response"}
            ))

        self.api_requests.append(request)
        return self._next(self._api_responses, request, default=httpx.Response(
            200, json={"result": [{"number": "INC0010001"}]}
        ))

    @staticmethod
    def _next(queue: List[Any], request: httpx.Request, default: httpx.Response) -> httpx.Response:
        if not queue:
            return default
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def _response(status_code: int, json: Any, text: Optional[str]) -> httpx.Response:
    if text is not None:
        return httpx.Response(status_code, text=text)
    return httpx.Response(status_code, json=json if json is not None else {})


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def settings():
    """Settings isolated from the environment."""
    return IntegrationSettings(
        secret_key=TEST_SECRET_KEY,
        database_url="sqlite://",
        base_url="http://localhost:3000",
    )


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def cipher(settings):
    return SecretCipher.from_key_material(settings.secret_key)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider_api():
    return FakeProvider()


@pytest.fixture
def services(settings, session_factory, provider_api, clock):
    """Fully wired services against SQLite and the scripted provider."""
    return build_services(
        settings,
        session_factory,
        transport=provider_api.transport,
        now_fn=clock,
    )


@pytest.fixture
def client(settings, session_factory, provider_api, clock):
    app = create_app(
        settings,
        session_factory=session_factory,
        transport=provider_api.transport,
        now_fn=clock,
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def client_credentials_fields():
    return {
        "instance": INSTANCE,
        "client_id": "abc",
        "client_secret": "s3cret",
        "grant_type": "client_credentials",
    }


@pytest.fixture
def authorization_code_fields():
    return {
        "instance": INSTANCE,
        "client_id": "abc",
        "client_secret": "s3cret",
        "grant_type": "authorization_code",
    }
