"""
Test fixtures for the PayAuth test suite.

This module provides shared fixtures used across all test files:

  - db_engine / db_session: Fresh in-memory SQLite database for each test
  - settlement_gateway: In-process mock gateway the app settles through
  - client: Async HTTP test client (unauthenticated)
  - authenticated_client: Test client with a signed-up account and session token
  - fresh_client: authenticated_client whose session just confirmed its password
  - funded_client: fresh_client with a PIN of 1234 and a 5000.00 balance
  - second_account: Another signed-up account, for transfer and isolation tests
  - account: An Account created directly through the service layer
  - authenticator: A software P-256 authenticator that signs assertions
  - impostor: Another key presenting the same credential id

Key design decisions:
  - Required secrets are set in the environment before payauth is imported,
    because payauth.config builds its Settings at import time.
  - get_db is overridden with the same commit-on-domain-error behavior as
    production, so failed ledger records persist in tests as well.
  - Authorization attempts live in a process-wide registry; it is cleared
    around every test.
"""

import hashlib
import json
import os

from cryptography.fernet import Fernet

os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("TEMPLATE_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from payauth.attempts import registry
from payauth.config import settings
from payauth.database import Base, get_db, get_session_factory
from payauth.exceptions import PayAuthError
from payauth.gateway import MockSettlementGateway, get_settlement_gateway
from payauth.main import app
from payauth.rate_limit import LIMITERS
from payauth.security import b64url_encode, generate_challenge
from payauth.services import auth_service


# In-memory SQLite for fast, isolated tests
TEST_DATABASE_URL = "sqlite+aiosqlite://"

PASSWORD = "SecurePass123!"
PIN = "1234"
STARTING_BALANCE = 500_000


@pytest.fixture(autouse=True)
def clear_attempts():
    registry.clear()
    yield
    registry.clear()


@pytest.fixture(autouse=True)
def clear_rate_limits():
    for limiter in LIMITERS:
        limiter.clear()
    yield
    for limiter in LIMITERS:
        limiter.clear()


@pytest_asyncio.fixture
async def db_engine():
    """Create a fresh async engine with all tables for each test."""
    engine = create_async_engine(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine):
    """Provide an async session bound to the test engine."""
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with async_session() as session:
        yield session


@pytest.fixture
def settlement_gateway():
    return MockSettlementGateway()


@pytest_asyncio.fixture
async def client(db_engine, settlement_gateway, monkeypatch):
    """
    Async HTTP test client with the test database injected.

    This overrides get_db, the background-task session factory and the
    settlement gateway, so every request hits the in-memory test database
    and settles through the mock gateway.
    """
    monkeypatch.setattr(settings, "SETTLEMENT_BACKOFF_SECONDS", 0)
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async def override_get_db():
        async with async_session() as session:
            try:
                yield session
                await session.commit()
            except PayAuthError:
                await session.commit()
                raise
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: async_session
    app.dependency_overrides[get_settlement_gateway] = lambda: settlement_gateway

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


async def _signup(client, email, display_name):
    response = await client.post(
        "/auth/signup",
        json={"email": email, "password": PASSWORD, "display_name": display_name},
    )
    assert response.status_code == 201, f"Signup failed: {response.text}"
    return response.json()


@pytest_asyncio.fixture
async def authenticated_client(client):
    """
    Test client with a signed-up account and session token.

    Signs up via the real signup endpoint, then sets the Authorization
    header on the client for all subsequent requests.
    """
    data = await _signup(client, "testuser@example.com", "Test User")
    client.headers["Authorization"] = f"Bearer {data['token']}"
    return client


@pytest_asyncio.fixture
async def fresh_client(authenticated_client):
    """Authenticated client that just re-entered its password."""
    response = await authenticated_client.post(
        "/auth/confirm-password", json={"password": PASSWORD},
    )
    assert response.status_code == 200, response.text
    return authenticated_client


@pytest_asyncio.fixture
async def funded_client(fresh_client):
    """Fresh client with PIN 1234 and STARTING_BALANCE in the wallet."""
    response = await fresh_client.put("/auth/pin", json={"pin": PIN})
    assert response.status_code == 200, response.text
    response = await fresh_client.post(
        "/accounts/me/add-money",
        json={"amount_minor": STARTING_BALANCE, "idempotency_key": "fixture-topup"},
    )
    assert response.status_code == 201, response.text
    return fresh_client


@pytest_asyncio.fixture
async def second_account(client):
    """
    A second account. Returns its id and auth headers without touching the
    client's default headers, so it can be used alongside authenticated_client.
    """
    data = await _signup(client, "seconduser@example.com", "Second User")
    return {
        "account_id": data["account_id"],
        "headers": {"Authorization": f"Bearer {data['token']}"},
    }


@pytest_asyncio.fixture
async def account(db_session):
    """An Account created through the service layer, for service-level tests."""
    account, _ = await auth_service.signup(
        db_session, "service@example.com", PASSWORD, "Service User",
    )
    await db_session.commit()
    return account


class SoftwareAuthenticator:
    """
    Minimal platform authenticator: a P-256 key that signs assertions the
    way a browser would return them from navigator.credentials.get().
    """

    def __init__(self, credential_id: bytes = b"test-credential-1"):
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = b64url_encode(credential_id)
        self.sign_count = 0

    def template(self) -> dict:
        public_der = self.private_key.public_key().public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return {
            "credential_id": self.credential_id,
            "public_key": b64url_encode(public_der),
            "algorithm": "ES256",
        }

    def assert_challenge(
        self,
        challenge: str | None = None,
        *,
        origin: str | None = None,
        rp_id: str | None = None,
        user_present: bool = True,
        sign_count: int | None = None,
    ) -> dict:
        if sign_count is None:
            self.sign_count += 1
            sign_count = self.sign_count
        client_data = json.dumps({
            "type": "webauthn.get",
            "challenge": challenge or generate_challenge(),
            "origin": origin or settings.RP_ORIGIN,
        }).encode()
        authenticator_data = (
            hashlib.sha256((rp_id or settings.RP_ID).encode()).digest()
            + bytes([0x01 if user_present else 0x00])
            + sign_count.to_bytes(4, "big")
        )
        signature = self.private_key.sign(
            authenticator_data + hashlib.sha256(client_data).digest(),
            ec.ECDSA(hashes.SHA256()),
        )
        return {
            "credential_id": self.credential_id,
            "authenticator_data": b64url_encode(authenticator_data),
            "client_data_json": b64url_encode(client_data),
            "signature": b64url_encode(signature),
        }


@pytest.fixture
def authenticator():
    return SoftwareAuthenticator()


@pytest.fixture
def impostor():
    """A different key claiming the same credential id as `authenticator`."""
    return SoftwareAuthenticator()
