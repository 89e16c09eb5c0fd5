import os

# Settings are read once and cached, so the environment is fixed before any app import
os.environ["REDIS_DSN"] = ""
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["CREATE_TABLES_ON_STARTUP"] = "false"

import pytest
from httpx import ASGITransport, AsyncClient

from taskboard.cache.layer import cache_layer
from taskboard.core.security import create_access_token
from taskboard.database import atomic, build_engine, build_session_factory, create_db_and_tables, get_db
from taskboard.main import app
from taskboard.models import UserCreate, UserRead
from taskboard.services.user_service import UserService


@pytest.fixture(autouse=True)
def clear_cache():
    cache_layer.clear()
    yield
    cache_layer.clear()


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'taskboard.db'}")
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(db):
    async def _make_user(email: str, password: str = "secret123", name: str | None = None):
        user_data = UserCreate(email=email, password=password, name=name)
        async with atomic(db):
            user = await UserService.create_user_row(user_data, db)
        # detached snapshot: ORM rows expire whenever a service call rolls back
        return UserRead.model_validate(user)

    return _make_user


@pytest.fixture
async def owner(make_user):
    return await make_user("alice@example.com", name="alice")


@pytest.fixture
async def other_owner(make_user):
    return await make_user("bob@example.com", name="bob")


@pytest.fixture
def owner_headers(owner) -> dict:
    return {"Authorization": f"Bearer {create_access_token(owner.id)}"}


@pytest.fixture
def other_headers(other_owner) -> dict:
    return {"Authorization": f"Bearer {create_access_token(other_owner.id)}"}


@pytest.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
