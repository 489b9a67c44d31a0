# tests/conftest.py

import os

# Set the TESTING environment variable to use the test database
os.environ["TESTING"] = "1"

import asyncio
import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel

from omtii import models  # noqa: F401
from omtii import settings
from omtii.backend import create_backend
from omtii.db import engine
from omtii.main import app

PASSWORD = "Passw0rdX"


# Fixture to create the database and tables for testing
@pytest.fixture(name="create_test_database")
def create_test_database_fixture():
    SQLModel.metadata.create_all(engine)
    yield
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def backend(create_test_database, tmp_path):
    return create_backend(engine, "test-secret", str(tmp_path / "storage"), "http://testserver")


@pytest.fixture
def settle():
    """Let the event loop run the callbacks and tasks scheduled so far."""
    async def _settle(rounds: int = 10):
        for _ in range(rounds):
            await asyncio.sleep(0)
    return _settle


@pytest.fixture
def signup(backend):
    """Register an account and return its identity id."""
    async def _signup(email: str, account_type: str = "buyer", name: str | None = None) -> int:
        session = await backend.auth.sign_up(
            email, PASSWORD, {"full_name": name or email.split("@")[0].title(), "account_type": account_type}
        )
        return session.user.id
    return _signup


@pytest.fixture(name="client")
def client_fixture(create_test_database, tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "STORAGE_ROOT", str(tmp_path / "storage"))
    with TestClient(app) as client:
        yield client
