import pytest

from app import create_app
from session_tokens import SESSION_COOKIE, issue_session_token

SECRET = "test-secret"


@pytest.fixture
def app(tmp_path):
    app = create_app(
        {
            "TESTING": True,
            "DATABASE": str(tmp_path / "tutor.db"),
            "AUTH_SECRET": SECRET,
            "ADMIN_USERNAME": "admin",
            "ADMIN_PASSWORD": "s3cret",
            "AUTH_COOKIE_SECURE": False,
        }
    )
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_client(app):
    client = app.test_client()
    client.set_cookie(SESSION_COOKIE, issue_session_token("admin", SECRET))
    return client
