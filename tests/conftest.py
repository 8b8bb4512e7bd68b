"""
Shared test configuration and fixtures for the starter service tests.

Provides the Postgres-backed database fixtures used by the adapter tests, a
running application with fake Mailgun and Google servers for handler tests,
and an in-memory adapter for exercising magic-link sign in without a database.
"""

import os
import uuid
from typing import Any, Dict, List, Optional
import pytest
import pytest_asyncio
import aiohttp
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from st.shipfa.starter.app.config import (
    AuthOptionsAppKey,
    MailgunClientAppKey,
    Settings,
)
from st.shipfa.starter.app.server import start_web_server
from st.shipfa.starter.auth.providers import EmailProvider
from st.shipfa.starter.model.base import Base
from tests.test_helpers import (
    TEST_BASE_URL,
    TEST_SECRET,
    TEST_SIGNING_KEY,
    InMemoryAdapter,
)


# Test database configuration
TEST_DB_HOST = os.getenv("TEST_DB_HOST", "postgres")
TEST_DB_PORT = os.getenv("TEST_DB_PORT", "5432")
TEST_DB_USER = os.getenv("TEST_DB_USER", "postgres")
TEST_DB_PASSWORD = os.getenv("TEST_DB_PASSWORD", "password")

# Admin URL for database creation/deletion (connects to postgres database)
ADMIN_DATABASE_URL = f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@{TEST_DB_HOST}:{TEST_DB_PORT}/postgres"


async def check_postgres_available():
    """Check if PostgreSQL is available for testing."""
    try:
        admin_engine = create_async_engine(ADMIN_DATABASE_URL, echo=False)
        async with admin_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        await admin_engine.dispose()
        return True
    except Exception:
        return False


@pytest_asyncio.fixture(scope="function")
async def test_database():
    """Create and clean up test database for each test function."""
    if not await check_postgres_available():
        pytest.skip("PostgreSQL database not available for testing")

    unique_db_name = f"starter_test_{uuid.uuid4().hex[:8]}"
    unique_db_url = (
        f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@"
        f"{TEST_DB_HOST}:{TEST_DB_PORT}/{unique_db_name}"
    )

    admin_engine = create_async_engine(
        ADMIN_DATABASE_URL, echo=False, isolation_level="AUTOCOMMIT"
    )

    try:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"CREATE DATABASE {unique_db_name}"))

        yield unique_db_url

    finally:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"DROP DATABASE IF EXISTS {unique_db_name}"))
        await admin_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def engine(test_database):
    """Create async SQLAlchemy engine for testing with PostgreSQL."""
    engine = create_async_engine(
        test_database,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(engine):
    """Session factory configured the way the application configures it."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class FakeMailgun:
    """Records messages posted to the Mailgun Messages API."""

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []
        self.status = 200

    async def handle_messages(self, request: web.Request) -> web.Response:
        form = await request.post()
        self.messages.append(
            {
                "domain": request.match_info["domain"],
                "authorization": request.headers.get("Authorization"),
                "fields": {k: form.getall(k) for k in set(form.keys())},
            }
        )
        if self.status != 200:
            return web.Response(status=self.status, text="Forbidden")
        return web.json_response(
            {"id": f"<{uuid.uuid4().hex}@mg.example.com>", "message": "Queued. Thank you."}
        )

    def field(self, index: int, name: str) -> Optional[str]:
        values = self.messages[index]["fields"].get(name)
        return values[0] if values else None


class FakeGoogle:
    """Token and userinfo endpoints behaving like Google's."""

    def __init__(self) -> None:
        self.token_requests: List[Dict[str, str]] = []
        self.token_status = 200
        self.userinfo = {
            "sub": "1234567890",
            "given_name": "Ada",
            "name": "Ada Lovelace",
            "email": "ada@example.com",
            "picture": "https://example.com/ada.png",
        }

    async def handle_token(self, request: web.Request) -> web.Response:
        form = await request.post()
        self.token_requests.append({k: str(v) for k, v in form.items()})
        if self.token_status != 200:
            return web.json_response({"error": "invalid_grant"}, status=self.token_status)
        return web.json_response(
            {
                "access_token": "ya29.access-token",
                "refresh_token": "1//refresh-token",
                "expires_in": 3599,
                "token_type": "Bearer",
                "scope": "openid email profile",
                "id_token": "id-token",
            }
        )

    async def handle_userinfo(self, request: web.Request) -> web.Response:
        if request.headers.get("Authorization") != "Bearer ya29.access-token":
            return web.Response(status=401)
        return web.json_response(self.userinfo)


@pytest_asyncio.fixture
async def fake_mailgun():
    fake = FakeMailgun()
    # Mailgun accepts messages up to 25 MB.
    app = web.Application(client_max_size=25 * 1024 * 1024)
    app.add_routes([web.post("/v3/{domain}/messages", fake.handle_messages)])
    server = TestServer(app)
    await server.start_server()
    fake.url = str(server.make_url("")).rstrip("/")
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def fake_google():
    fake = FakeGoogle()
    app = web.Application()
    app.add_routes(
        [
            web.post("/token", fake.handle_token),
            web.get("/userinfo", fake.handle_userinfo),
        ]
    )
    server = TestServer(app)
    await server.start_server()
    fake.url = str(server.make_url("")).rstrip("/")
    yield fake
    await server.close()


@pytest.fixture
def settings_factory(fake_mailgun):
    def factory(**overrides) -> Settings:
        values: Dict[str, Any] = {
            "environment": "test",
            "auth_secret": TEST_SECRET,
            "auth_url": TEST_BASE_URL,
            "mailgun_api_key": "key-test",
            "mailgun_webhook_signing_key": TEST_SIGNING_KEY,
            "mailgun_domain": "mg.example.com",
            "mailgun_api_base": fake_mailgun.url,
            "mailgun_forward_replies_to": "admin@example.com",
            "google_id": "google-client-id",
            "google_secret": "google-client-secret",
            "metrics_backend": "none",
            "database_url": None,
            "sentry_dsn": None,
        }
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture
def settings(settings_factory):
    return settings_factory()


@pytest_asyncio.fixture
async def client_factory():
    clients: List[TestClient] = []

    async def factory(settings: Settings) -> TestClient:
        app = await start_web_server(settings)
        # Cookies are passed explicitly so every request states what it carries.
        test_client = TestClient(TestServer(app), cookie_jar=aiohttp.DummyCookieJar())
        await test_client.start_server()
        clients.append(test_client)
        return test_client

    yield factory

    for test_client in clients:
        await test_client.close()


@pytest_asyncio.fixture
async def client(client_factory, settings, fake_google):
    """Running application, with the Google provider pointed at the fake server."""
    test_client = await client_factory(settings)
    google = test_client.server.app[AuthOptionsAppKey].provider("google")
    google.authorization_endpoint = f"{fake_google.url}/authorize"
    google.token_endpoint = f"{fake_google.url}/token"
    google.userinfo_endpoint = f"{fake_google.url}/userinfo"
    return test_client


@pytest_asyncio.fixture
async def email_client(client):
    """Running application with an in-memory adapter and the email provider enabled."""
    app = client.server.app
    options = app[AuthOptionsAppKey]
    options.adapter = InMemoryAdapter()
    options.providers.append(
        EmailProvider(
            mailgun_client=app[MailgunClientAppKey],
            sender="Starter <noreply@mg.example.com>",
            max_age=3600,
        )
    )
    return client


