import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import create_db_engine, create_db_and_tables
from main import create_app
from storage import MemoryStorage, DatabaseStorage


@pytest.fixture
def anyio_backend():
    return "asyncio"


# Every test that uses storage runs once per realization
@pytest.fixture(name="storage", params=["memory", "database"])
def storage_fixture(request):
    """Create a fresh, empty store for each test"""
    if request.param == "memory":
        yield MemoryStorage()
        return

    # In-memory SQLite database shared through a StaticPool
    engine = create_db_engine("sqlite://")
    create_db_and_tables(engine)
    yield DatabaseStorage(engine)
    engine.dispose()


@pytest.fixture(name="settings")
def settings_fixture():
    return Settings(
        STORAGE_BACKEND="memory",
        SESSION_SECRET_KEY="test-session-secret",
        ENFORCE_INSTRUCTOR_OWNERSHIP=True,
    )


@pytest.fixture(name="app")
def app_fixture(settings, storage):
    return create_app(settings, storage)


@pytest.fixture(name="client_factory")
def client_factory_fixture(app):
    """Hand out independent clients so each one carries its own session cookie"""
    clients = []

    def factory(target_app=None):
        client = TestClient(target_app or app)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()


@pytest.fixture(name="client")
def client_fixture(client_factory):
    return client_factory()


@pytest.fixture(name="login_as")
def login_as_fixture(client_factory):
    """Register a user with the given role and return a client logged in as them"""
    def login_as(username, role, target_app=None):
        client = client_factory(target_app)
        response = client.post(
            "/api/register",
            json={
                "username": username,
                "password": f"{username}-password",
                "role": role,
                "fullName": username.title(),
                "email": f"{username}@example.edu",
            }
        )
        assert response.status_code == 201, response.text
        return client, response.json()

    return login_as
