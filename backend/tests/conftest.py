"""Test fixtures: in-memory database, fake HighLevel API, configured app."""

import base64
import os

# Settings are read once; set the environment before anything imports them.
os.environ.update(
    {
        "DATABASE_URL": "sqlite://",
        "HL_CLIENT_ID": "test-client-id",
        "HL_CLIENT_SECRET": "test-client-secret",
        "REDIRECT_URI": "http://testserver/oauth/callback",
        "HL_API_BASE": "https://hl.test",
        "ENCRYPTION_KEY": base64.b64encode(b"k" * 32).decode(),
        "S2S_SHARED_SECRET": "s2s-test-secret-that-is-long-enough-for-hs256",
        "PROXY_EXTRA_ALLOWED": "/contacts/*",
        "REFRESHER_ENABLED": "false",
        "LOG_FORMAT": "text",
    }
)

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from token_gateway.config import get_settings  # noqa: E402
from token_gateway.crypto import TokenCipher  # noqa: E402
from token_gateway.database import Base, SessionLocal, engine  # noqa: E402
from token_gateway.deps import get_provider  # noqa: E402
from token_gateway.installations import InstallationStore  # noqa: E402
from token_gateway.main import create_app  # noqa: E402
from token_gateway.metrics import Metrics  # noqa: E402
from token_gateway.provider import HighLevelClient  # noqa: E402
from token_gateway.s2s import issue_service_token  # noqa: E402


class FakeHighLevel:
    """Stands in for services.leadconnectorhq.com behind httpx.MockTransport."""

    def __init__(self):
        self.calls: list[httpx.Request] = []
        self.token_responses: list[tuple[int, object]] = []
        self.routes: dict[tuple[str, str], tuple[int, object]] = {}
        self.issued = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if request.url.path == "/oauth/token":
            if self.token_responses:
                status, body = self.token_responses.pop(0)
                if isinstance(body, Exception):
                    raise body
                return httpx.Response(status, json=body)
            self.issued += 1
            return httpx.Response(
                200,
                json={
                    "access_token": f"access-{self.issued}",
                    "refresh_token": f"refresh-{self.issued}",
                    "expires_in": 86399,
                    "scope": "contacts.readonly contacts.write",
                    "token_type": "Bearer",
                },
            )
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": "not found"})
        status, body = route
        if isinstance(body, Exception):
            raise body
        if isinstance(body, httpx.Response):
            return body
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [c for c in self.calls if c.url.path == path]

    def token_forms(self) -> list[dict]:
        return [dict(httpx.QueryParams(c.content.decode())) for c in self.calls_to("/oauth/token")]


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture(autouse=True)
def tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def cipher(settings):
    return TokenCipher(settings.encryption_key.get_secret_value())


@pytest.fixture
def store(db, cipher):
    return InstallationStore(db, cipher)


@pytest.fixture
def fake_hl():
    return FakeHighLevel()


@pytest.fixture
def provider(settings, fake_hl):
    return HighLevelClient(settings, transport=httpx.MockTransport(fake_hl))


@pytest.fixture
def metrics():
    return Metrics()


@pytest.fixture
def app(provider):
    application = create_app()
    application.dependency_overrides[get_provider] = lambda: provider
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def service_token(settings):
    def make(tenant=None, **kwargs):
        opts = {"issuer": settings.s2s_issuer, "audience": settings.s2s_audience, "tenant": tenant}
        opts.update(kwargs)
        return issue_service_token(settings.s2s_shared_secret.get_secret_value(), **opts)

    return make


@pytest.fixture
def auth_headers(service_token):
    def make(tenant=None, **kwargs):
        return {"Authorization": f"Bearer {service_token(tenant, **kwargs)}"}

    return make
