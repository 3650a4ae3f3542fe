import os

# Settings are cached on first import, so the environment goes first
os.environ["DEBUG"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = ""
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["RESEND_API_KEY"] = ""

import pytest  # noqa: E402

from paygate.config import get_settings  # noqa: E402
from paygate.container import build_container  # noqa: E402
from paygate.db.session import create_engine, create_session_factory  # noqa: E402
from paygate.models import Base  # noqa: E402
from paygate.services.task_queue import InProcessTaskQueue  # noqa: E402
from tests.helpers import FakeGateway  # noqa: E402


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
async def db_engine(tmp_path):
    """A fresh SQLite file database per test."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'paygate.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
async def container(settings, session_factory, gateway):
    container = build_container(settings, session_factory, gateway=gateway, queue=InProcessTaskQueue())
    yield container
    await container.close()
