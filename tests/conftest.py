"""
Pytest configuration and shared fixtures for tasksync tests.
"""

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from tasksync.core.config import Settings
from tasksync.main import create_app
from tasksync.services.sessions import SessionRegistry
from tasksync.services.task_store import TaskStore
from tasksync.storage.files import DataPaths

from fakes import FakeClock


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=tmp_path / "data",
        write_debounce_ms=20,
        bcrypt_rounds=4,
        session_max_age_minutes=60,
        google_client_id="",
        google_client_secret="",
        microsoft_client_id="",
        microsoft_client_secret="",
        log_level="DEBUG",
    )


@pytest.fixture()
def paths(settings: Settings) -> DataPaths:
    p = DataPaths(settings.data_dir)
    p.ensure()
    return p


@pytest.fixture()
def store(paths: DataPaths) -> TaskStore:
    return TaskStore(paths, debounce_seconds=0.05)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sessions(paths: DataPaths, clock: FakeClock) -> SessionRegistry:
    return SessionRegistry(paths.sessions_file, max_age_seconds=3600, clock=clock)


@pytest.fixture()
def app(settings: Settings):
    return create_app(settings)


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def login():
    """Log in with a password and return the bearer headers for that session."""

    def _login(client: TestClient, password: str) -> dict:
        response = client.post("/api/auth/login", json={"password": password})
        assert response.status_code == 200, response.text
        return {"Authorization": f"Bearer {response.json()['token']}"}

    return _login
