import pytest

from app import app as flask_app, init_db


@pytest.fixture
def app(tmp_path):
    flask_app.config.update(
        TESTING=True,
        DATABASE=str(tmp_path / "test.db"),
        DEFAULT_ADMIN_PASSWORD="admin",
    )
    init_db()
    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, username="admin", password="admin"):
    return client.post("/api/login", json={"username": username, "password": password})


@pytest.fixture
def admin_client(client):
    assert login(client).status_code == 200
    return client


@pytest.fixture
def user_client(app, admin_client):
    admin_client.post("/api/users", json={"username": "bob", "password": "hunter2", "is_admin": False})
    client = app.test_client()
    assert login(client, "bob", "hunter2").status_code == 200
    return client
