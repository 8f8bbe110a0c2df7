"""Service test fixtures: the FastAPI app over SQLite and the fake tool chain."""

from httpx import ASGITransport, AsyncClient
import pytest

from ml2_backend.config import get_settings
from ml2_backend.database import get_async_session
from ml2_backend.dependencies import get_invoker, get_storage
from ml2_backend.main import app
from ml2_backend.pipeline import ProjectLocks, get_project_locks


@pytest.fixture
async def client(session_maker, settings, storage, invoker):
    async def override_session():
        async with session_maker() as session:
            yield session

    locks = ProjectLocks()
    app.dependency_overrides[get_async_session] = override_session
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_invoker] = lambda: invoker
    app.dependency_overrides[get_project_locks] = lambda: locks

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def alice(client):
    response = await client.post("/api/v1/users", json={"name": "alice", "email": "alice@example.com"})
    assert response.status_code == 201
    return {"X-User-Name": "alice"}


@pytest.fixture
async def bob(client):
    response = await client.post("/api/v1/users", json={"name": "bob"})
    assert response.status_code == 201
    return {"X-User-Name": "bob"}
