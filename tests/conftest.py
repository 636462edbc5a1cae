"""
Shared fixtures: in-memory database, a registered user, and an API client.
"""

import pytest
from fastapi.testclient import TestClient

import account_service
from database import Database
from main import create_app
from websocket_service import manager


@pytest.fixture
def database():
    db_handle = Database("sqlite://").open()
    db_handle.create_all()
    yield db_handle
    db_handle.close()


@pytest.fixture
def db(database):
    session = database.session()
    yield session
    session.close()


@pytest.fixture
def user(db):
    return account_service.register_user(db, "trader@example.com", "hunter2")


@pytest.fixture
def client():
    manager.languages.clear()
    app = create_app("sqlite://")
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(client):
    client.post("/auth/signup", json={"email": "api@example.com", "password": "hunter2"})
    resp = client.post("/auth/login", json={"email": "api@example.com", "password": "hunter2"})
    token = resp.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}
