"""
Test configuration and fixtures.
Uses an in-memory SQLite database created from the ORM metadata per test.
"""
import hashlib
import hmac
import os
import time
import uuid as uuid_module

# Set test environment before any imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["APP_BASE_URL"] = "https://reviseflow.test"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ.pop("OPENAI_API_KEY", None)

import copy
import pytest
from typing import AsyncGenerator, Dict, Optional

from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from reviseflow.ai.base import InferenceProvider, CompletionResult, ImageResult
from reviseflow.models.base import Base
from reviseflow.models.user import User
from reviseflow.models.entitlement import UserEntitlement
from reviseflow.services.billing_client import StripeBillingClient


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
WEBHOOK_SECRET = "whsec_test_secret"
BROWSER_ORIGIN = "https://reviseflow.test"
BROWSER_HEADERS = {
    "Origin": BROWSER_ORIGIN,
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) ReviseFlowTest/1.0",
}


class FakeProvider(InferenceProvider):
    """Records calls and returns canned completions, or raises a configured error."""

    def __init__(self):
        self.text = "Photosynthesis turns light energy into chemical energy."
        self.usage: Dict = {"input_tokens": 50, "output_tokens": 100}
        self.error: Optional[Exception] = None
        self.image_url: Optional[str] = "https://images.test/generated.png"
        self.calls = []
        self.image_calls = []

    async def respond(self, model, input_messages, max_output_tokens):
        self.calls.append({
            "model": model,
            "input_messages": input_messages,
            "max_output_tokens": max_output_tokens,
        })
        if self.error is not None:
            raise self.error
        return CompletionResult(text=self.text, usage=copy.deepcopy(self.usage))

    async def generate_image(self, model, prompt, size="1024x1024"):
        self.image_calls.append({"model": model, "prompt": prompt, "size": size})
        if self.error is not None:
            raise self.error
        return ImageResult(url=self.image_url, revised_prompt=None)

    def is_configured(self):
        return True


class FakeBillingClient(StripeBillingClient):
    """Real signature verification; subscriptions served from a dict."""

    def __init__(self):
        super().__init__(secret_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET, tolerance=300)
        self.subscriptions: Dict[str, Dict] = {}
        self.retrieve_error: Optional[Exception] = None
        self.retrieved = []

    async def retrieve_subscription(self, subscription_id):
        self.retrieved.append(subscription_id)
        if self.retrieve_error is not None:
            raise self.retrieve_error
        return copy.deepcopy(self.subscriptions[subscription_id])


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def sign():
    """The sign_payload helper, for test modules."""
    return sign_payload


@pytest.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    async with session_maker() as session:
        yield session

    await engine.dispose()


async def create_user(db_session: AsyncSession, role: str = "free", timezone: str = "UTC") -> User:
    """Create a user, with an entitlement row unless the role is free."""
    user = User(
        id=str(uuid_module.uuid4()),
        firebase_uid=f"firebase-test-uid-{uuid_module.uuid4().hex[:8]}",
        email=f"{role}@example.com",
    )
    db_session.add(user)
    if role != "free" or timezone != "UTC":
        db_session.add(UserEntitlement(user_id=user.id, tier=role, role=role, timezone=timezone))
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
def make_user(db_session: AsyncSession):
    """Factory fixture: await make_user("plus") creates a user with that role."""
    async def _make(role: str = "free", timezone: str = "UTC") -> User:
        return await create_user(db_session, role, timezone)
    return _make


@pytest.fixture(scope="function")
async def test_user(db_session: AsyncSession) -> User:
    """Create a free-tier test user (no entitlement row)."""
    return await create_user(db_session, "free")


@pytest.fixture(scope="function")
async def plus_user(db_session: AsyncSession) -> User:
    return await create_user(db_session, "plus")


@pytest.fixture(scope="function")
async def pro_user(db_session: AsyncSession) -> User:
    return await create_user(db_session, "pro")


@pytest.fixture(scope="function")
async def admin_user(db_session: AsyncSession) -> User:
    return await create_user(db_session, "admin")


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def fake_billing() -> FakeBillingClient:
    return FakeBillingClient()


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    """Per-process limiter state must not leak between tests."""
    from reviseflow.middleware.request_guards import ai_rate_limiter
    ai_rate_limiter.reset()
    yield
    ai_rate_limiter.reset()


def get_test_app(
    db_session: AsyncSession,
    user: Optional[User],
    provider: FakeProvider,
    billing: FakeBillingClient,
) -> FastAPI:
    """Create a test FastAPI app with overridden dependencies."""
    from reviseflow.main import app
    from reviseflow.database import get_db
    from reviseflow.auth.dependencies import get_current_user
    from reviseflow.api.ai import get_provider
    from reviseflow.services.billing_client import get_billing_client

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider] = lambda: provider
    app.dependency_overrides[get_billing_client] = lambda: billing

    if user is not None:
        async def override_get_current_user():
            return user
        app.dependency_overrides[get_current_user] = override_get_current_user

    return app


async def _client(app: FastAPI) -> AsyncClient:
    transport = ASGITransport(app=app)
    return AsyncClient(transport=transport, base_url="http://test", headers=BROWSER_HEADERS)


@pytest.fixture(scope="function")
async def client(db_session, test_user, fake_provider, fake_billing) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for a free-tier user."""
    app = get_test_app(db_session, test_user, fake_provider, fake_billing)
    async with await _client(app) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def plus_client(db_session, plus_user, fake_provider, fake_billing) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for a Plus user."""
    app = get_test_app(db_session, plus_user, fake_provider, fake_billing)
    async with await _client(app) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def anonymous_client(db_session, fake_provider, fake_billing) -> AsyncGenerator[AsyncClient, None]:
    """Client without an authenticated user; also used for webhooks."""
    app = get_test_app(db_session, None, fake_provider, fake_billing)
    async with await _client(app) as ac:
        yield ac
    app.dependency_overrides.clear()
