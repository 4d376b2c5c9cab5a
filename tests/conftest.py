"""Shared test fixtures: per-test SQLite DB, fake upstream, and test client."""

import os
from collections.abc import AsyncGenerator, Callable

from cryptography.fernet import Fernet

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())

import httpx  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

# Import all models so metadata is populated
import app.models  # noqa: E402, F401
from app.core import diagnostics  # noqa: E402
from app.core.config import get_settings  # noqa: E402
from app.core.database import get_session, get_session_factory  # noqa: E402
from app.core.pricing import ModelPrice, pricing_table  # noqa: E402
from app.main import app  # noqa: E402
from app.services import recorder  # noqa: E402
from app.services.directory import tenant_directory  # noqa: E402
from app.services.forwarding import get_upstream_client  # noqa: E402
from app.services.ledger import budget_ledger  # noqa: E402

UPSTREAM_URL = "https://upstream.test"
UPSTREAM_KEY = "upstream-secret"

# Per-token prices used across the suite
GPT4O = ModelPrice(input_per_token=2.5e-6, output_per_token=10e-6)
GPT35 = ModelPrice(input_per_token=0.5e-6, output_per_token=1.5e-6)


class FakeUpstream:
    """Stands in for the provider. Tests swap ``handler`` per scenario."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = lambda _: httpx.Response(
            200, json=chat_completion()
        )

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        await request.aread()
        self.requests.append(request)
        return self.handler(request)


def chat_completion(model: str = "gpt-4o-2024-08-06", prompt: int = 100, completion: int = 50) -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "model": model,
        "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hello"}}],
        "usage": {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": prompt + completion,
        },
    }


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tollbooth.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def test_session_factory(engine):
    """Session factory bound to the test SQLite engine."""
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(test_session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as sess:
        yield sess
        await sess.rollback()


@pytest.fixture(autouse=True)
def reset_state(monkeypatch):
    """Process-wide singletons start every test empty."""
    settings = get_settings()
    monkeypatch.setattr(settings, "upstream_url", UPSTREAM_URL)
    monkeypatch.setattr(settings, "upstream_api_key", UPSTREAM_KEY)
    monkeypatch.setattr(settings, "reject_unpriced_models", True)
    monkeypatch.setattr(settings, "enforce_user_budgets_for_header_users", True)

    tenant_directory.invalidate()
    budget_ledger.use_strategy(None)
    diagnostics.reset()
    pricing_table.clear()
    pricing_table.install_catalog({"gpt-4o": GPT4O, "gpt-3.5-turbo": GPT35})
    yield
    tenant_directory.invalidate()
    pricing_table.clear()


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
async def client(session, test_session_factory, upstream) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async test client with DB session and upstream overrides."""

    async def _override_session():
        yield session

    upstream_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_session_factory] = lambda: test_session_factory
    app.dependency_overrides[get_upstream_client] = lambda: upstream_client

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await recorder.drain()
    await upstream_client.aclose()
    app.dependency_overrides.clear()
