import pytest
from fastapi.testclient import TestClient

from backend.auth.dependencies import get_current_actor, get_event_publisher
from backend.database import get_db
from backend.main import app
from backend.models.user import Actor, Role, User


@pytest.fixture
def current_actor() -> dict:
    return {}


@pytest.fixture
def client(db, publisher, current_actor, monkeypatch: pytest.MonkeyPatch):
    for module in ('appointment_routes', 'availability_routes', 'admin_routes'):
        monkeypatch.setattr(f'backend.routes.{module}.ensure_database_ready', lambda: None)

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = lambda: current_actor['actor']
    app.dependency_overrides[get_event_publisher] = lambda: publisher
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def login(client, current_actor):
    def _login(user: User) -> TestClient:
        current_actor['actor'] = Actor(user_id=user.id, role=Role(user.role))
        return client

    return _login
