from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from app.core.config import settings

# Override settings for tests
settings.cron_secret = "test-cron-secret"
settings.openai_api_key = "sk-test-fake-key"
settings.task_provider_api_key = "test-provider-key"
settings.app_env = "development"
settings.sentry_dsn = ""

from app.main import app  # noqa: E402


class FakeSession:
    """Async-context-manager session double; every call is recorded on ``db``."""

    def __init__(self, db: MagicMock):
        self.db = db

    async def __aenter__(self):
        return self.db

    async def __aexit__(self, *exc):
        return False


def make_db() -> MagicMock:
    db = MagicMock()
    db.execute = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.flush = AsyncMock()
    db.get = AsyncMock(return_value=None)
    return db


@pytest.fixture
def db() -> MagicMock:
    return make_db()


@pytest.fixture
def session_factory(db: MagicMock):
    """Callable returning a fresh async context manager around the shared ``db`` mock."""
    return lambda: FakeSession(db)


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_context():
    """Factory for TaskContext snapshots with sensible defaults."""
    import uuid
    from datetime import datetime, timezone

    from app.services.task_store import TaskContext

    def _make(**overrides) -> TaskContext:
        values = {
            "task_id": "task-1",
            "status": "PENDING",
            "channel": "chatgpt",
            "retry_count": 0,
            "created_at": datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc),
            "prompt_id": uuid.UUID("00000000-0000-0000-0000-0000000000a1"),
            "prompt_text": "What is the best project management tool?",
            "locale": "US",
            "entity_id": uuid.UUID("00000000-0000-0000-0000-0000000000e1"),
            "entity_name": "Acme",
            "tenant_ids": [uuid.UUID("00000000-0000-0000-0000-0000000000f1")],
        }
        values.update(overrides)
        return TaskContext(**values)

    return _make
