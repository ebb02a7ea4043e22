import httpx
import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis

from boxoffice.config import Settings
from boxoffice.main import create_app
from boxoffice.models import Role
from tests.helpers import seed_user


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'boxoffice.db'}",
        rate_limit_enabled=False,
        idempotency_wait_seconds=5.0,
        idempotency_poll_seconds=0.02,
        log_level="WARNING",
    )


@pytest.fixture
def app(settings):
    app = create_app(settings, redis=FakeAsyncRedis(decode_responses=True))
    yield app
    app.state.engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver", timeout=30.0) as c:
        yield c
    await app.state.redis.aclose()


@pytest.fixture
def organizer(app):
    return seed_user(app, "organizer@example.com", Role.ORGANIZER.value)


@pytest.fixture
def buyer(app):
    return seed_user(app, "buyer@example.com")


@pytest.fixture
def recipient(app):
    return seed_user(app, "friend@example.com")


@pytest.fixture
def staff(app):
    return seed_user(app, "gate@example.com", Role.STAFF.value)


@pytest.fixture
def admin(app):
    return seed_user(app, "root@example.com", Role.SUPER_ADMIN.value)
