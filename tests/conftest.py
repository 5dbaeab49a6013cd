"""
Shared fixtures for the ltikit tests.

Fixtures:
  - settings:          Settings for https://tool.example.edu with small RSA keys
  - async_engine:      In-memory aiosqlite engine with all tables created
  - session_factory:   async_sessionmaker bound to the test engine
  - storage:           LTIStorage on the test database
  - platform:          FakePlatform answering the LMS side of every outbound call
  - http_client:       httpx.AsyncClient routed to the fake platform
  - now:               Fixed epoch seconds used as the toolkit clock
  - make_toolkit:      Factory building an LTIToolkit with test callbacks
  - lti10_consumer:    Consumer with key k1 / secret s1
  - lti13_consumer:    LTI 1.3 consumer pointing at the fake platform
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator, Callable

import httpx
import jwt
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from ltikit import outcomes
from ltikit.keys import generate_keypair, public_jwk
from ltikit.lti13 import LTI_CLAIM, PLATFORM_CONFIGURATION, TOOL_CONFIGURATION
from ltikit.models import Base, Consumer, ConsumerCreate
from ltikit.settings import Settings, clear_settings_cache
from ltikit.storage import LTIStorage
from ltikit.toolkit import LTIToolkit

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TEST_KEY_SIZE = 2048


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture(scope="function")
def settings() -> Settings:
    clear_settings_cache()
    return Settings(
        env="local",
        database_url=TEST_DATABASE_URL,
        domain_name="https://tool.example.edu",
        admin_email="admin@tool.example.edu",
        deployment_name="Example University",
        deployment_id="example-university",
        title="Example Tool",
        description="A tool used in tests",
        icon_url="https://tool.example.edu/icon.png",
        tool_id="example_tool",
        rsa_key_size=TEST_KEY_SIZE,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture(scope="function")
async def async_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
def storage(session_factory: async_sessionmaker[AsyncSession]) -> LTIStorage:
    return LTIStorage(session_factory, key_size=TEST_KEY_SIZE)


# ---------------------------------------------------------------------------
# Fake LMS
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def platform_keys() -> tuple[str, str]:
    """``(public_pem, private_pem)`` the fake platform signs id_tokens with."""
    return generate_keypair(TEST_KEY_SIZE)


class FakePlatform:
    """
    In-process stand-in for an LMS.

    Routes are keyed by ``(method, url)``; each value builds the response
    for a request.  Every request is recorded in ``requests``.
    """

    ISSUER = "https://lms.example.edu"
    KID = "platform-key-1"
    CLIENT_ID = "10000000000001"
    DEPLOYMENT_ID = "1:8865aa05b4b79b64a91a86042e43af5ea8ae79eb"

    KEYSET_URL = ISSUER + "/api/lti/security/jwks"
    AUTH_URL = ISSUER + "/api/lti/authorize_redirect"
    TOKEN_URL = ISSUER + "/login/oauth2/token"
    LINEITEM_URL = ISSUER + "/api/lti/courses/1/line_items/7"
    OUTCOME_URL = ISSUER + "/api/lti/v1/tools/1/grade_passback"
    OPENID_URL = ISSUER + "/api/lti/security/openid-configuration"
    REGISTRATION_URL = ISSUER + "/api/lti/registrations"

    def __init__(self, public_pem: str, private_pem: str):
        self.public_pem = public_pem
        self.private_pem = private_pem
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {
            ("GET", self.KEYSET_URL): lambda request: httpx.Response(200, json=self.jwks()),
            ("POST", self.TOKEN_URL): lambda request: httpx.Response(
                200, json={"access_token": "platform-access-token", "token_type": "Bearer", "expires_in": 3600}
            ),
            ("POST", self.LINEITEM_URL + "/scores"): lambda request: httpx.Response(200, json={}),
            ("POST", self.OUTCOME_URL): lambda request: httpx.Response(
                200, content=self.outcome_response("success")
            ),
            ("GET", self.OPENID_URL): lambda request: httpx.Response(200, json=self.openid_configuration()),
            ("POST", self.REGISTRATION_URL): lambda request: httpx.Response(
                200,
                json={
                    "client_id": self.CLIENT_ID,
                    TOOL_CONFIGURATION: {"deployment_id": self.DEPLOYMENT_ID},
                },
            ),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, str(request.url)))
        if route is None:
            return httpx.Response(404, json={"error": "not found"})
        return route(request)

    def requests_to(self, method: str, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and str(r.url) == url]

    # ── Documents ────────────────────────────────────────────────────

    def jwks(self) -> dict:
        return {"keys": [public_jwk(self.public_pem, self.KID)]}

    def outcome_response(self, code_major: str) -> bytes:
        return outcomes.build_response(code_major, "status", f"Result {code_major}", "lms-1", "tool-1")

    def openid_configuration(self) -> dict:
        return {
            "issuer": self.ISSUER,
            "authorization_endpoint": self.AUTH_URL,
            "token_endpoint": self.TOKEN_URL,
            "jwks_uri": self.KEYSET_URL,
            "registration_endpoint": self.REGISTRATION_URL,
            PLATFORM_CONFIGURATION: {
                "product_family_code": "canvas",
                "version": "cloud",
                "https://canvas.instructure.com/lti/account_name": "Example Canvas",
            },
        }

    # ── id_tokens ────────────────────────────────────────────────────

    def id_token(self, nonce: str, overrides: dict | None = None, kid: str | None = None) -> str:
        now = int(time.time())
        claims = {
            "iss": self.ISSUER,
            "aud": self.CLIENT_ID,
            "sub": "user-sub-42",
            "iat": now,
            "exp": now + 600,
            "nonce": nonce,
            "name": "Ada Lovelace",
            "given_name": "Ada",
            "family_name": "Lovelace",
            "email": "ada@example.edu",
            LTI_CLAIM + "message_type": "LtiResourceLinkRequest",
            LTI_CLAIM + "version": "1.3.0",
            LTI_CLAIM + "deployment_id": self.DEPLOYMENT_ID,
            LTI_CLAIM + "roles": ["http://purl.imsglobal.org/vocab/lis/v2/membership#Learner"],
            LTI_CLAIM + "context": {"id": "course-13", "label": "CS101", "title": "Intro to CS"},
            LTI_CLAIM + "resource_link": {"id": "link-9", "title": "Week 1 Quiz"},
            LTI_CLAIM + "tool_platform": {
                "product_family_code": "canvas",
                "guid": "canvas-guid",
                "name": "Example Canvas",
                "version": "cloud",
            },
            LTI_CLAIM + "custom": {"project": "alpha"},
            "https://purl.imsglobal.org/spec/lti-ags/claim/endpoint": {
                "lineitem": self.LINEITEM_URL,
                "scope": ["https://purl.imsglobal.org/spec/lti-ags/scope/score"],
            },
        }
        claims.update(overrides or {})
        claims = {name: value for name, value in claims.items() if value is not None}
        return jwt.encode(claims, self.private_pem, algorithm="RS256", headers={"kid": kid or self.KID})


@pytest.fixture(scope="function")
def platform(platform_keys: tuple[str, str]) -> FakePlatform:
    return FakePlatform(*platform_keys)


@pytest_asyncio.fixture(scope="function")
async def http_client(platform: FakePlatform) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(platform.handler)) as client:
        yield client


# ---------------------------------------------------------------------------
# Toolkit
# ---------------------------------------------------------------------------


@pytest.fixture(scope="function")
def now() -> int:
    return int(time.time())


@pytest.fixture(scope="function")
def make_toolkit(
    storage: LTIStorage, settings: Settings, http_client: httpx.AsyncClient, now: int
) -> Callable[..., LTIToolkit]:
    """Factory fixture: make_toolkit(handle_launch=..., ...) → LTIToolkit."""

    def _make(**kwargs) -> LTIToolkit:
        return LTIToolkit(
            storage, settings=settings, http_client=http_client, clock=lambda: now, **kwargs
        )

    return _make


@pytest_asyncio.fixture(scope="function")
async def lti10_consumer(storage: LTIStorage) -> Consumer:
    consumer, _ = await storage.create_consumer(
        ConsumerCreate(name="Example Moodle", key="k1", secret="s1")
    )
    return consumer


@pytest_asyncio.fixture(scope="function")
async def lti13_consumer(storage: LTIStorage) -> Consumer:
    consumer, _ = await storage.create_consumer(
        ConsumerCreate(
            name="Example Canvas",
            key="canvas-key",
            lti13=True,
            client_id=FakePlatform.CLIENT_ID,
            platform_id=FakePlatform.ISSUER,
            deployment_id=FakePlatform.DEPLOYMENT_ID,
            keyset_url=FakePlatform.KEYSET_URL,
            token_url=FakePlatform.TOKEN_URL,
            auth_url=FakePlatform.AUTH_URL,
        )
    )
    return consumer
