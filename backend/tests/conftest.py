from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from stockgame import settlement
from stockgame.auth import hash_password
from stockgame.config import Settings
from stockgame.main import configure_app
from stockgame.models import User, utcnow

ADMIN_EMAIL = "adminUser@email.com"
ADMIN_PASSWORD = "adminPassword"
TEST_ITERATIONS = 1000


def auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def future_window() -> tuple[datetime, datetime]:
    now = utcnow()
    return now - timedelta(days=1), now + timedelta(days=30)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        environment="development",
        database_url=f"sqlite:///{tmp_path / 'stockgame.db'}",
        jwt_secret="test-secret",
        password_pbkdf2_iterations=TEST_ITERATIONS,
        admin_email=ADMIN_EMAIL,
        admin_password=ADMIN_PASSWORD,
    )


@pytest.fixture
def app(settings):
    return configure_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def db(app, client):
    session = app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def admin_token(client):
    response = client.post("/api/users/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert response.status_code == 200
    return response.json()["token"]


@pytest.fixture
def user_token(client):
    response = client.post(
        "/api/users/register",
        json={"email": "testuser@example.com", "password": "testpassword"},
    )
    assert response.status_code == 201
    return response.json()["token"]


@pytest.fixture
def game_id(client, admin_token):
    start, end = future_window()
    response = client.post(
        "/api/games/create",
        json={
            "name": "Shared Test Game",
            "startTime": start.isoformat() + "Z",
            "endTime": end.isoformat() + "Z",
            "initialAmount": 1000,
        },
        headers=auth_header(admin_token),
    )
    assert response.status_code == 201
    return response.json()["id"]


def make_user(db, email: str, is_admin: bool = False) -> User:
    user = User(
        email=email,
        password_hash=hash_password("password123", iterations=TEST_ITERATIONS),
        is_admin=is_admin,
    )
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def game(db):
    start, end = future_window()
    return settlement.create_game(
        db,
        name="Service Game",
        start_time=start,
        end_time=end,
        initial_amount=1000,
    )
