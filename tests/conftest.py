import pytest
from werkzeug.security import generate_password_hash

from app.panotify import create_app
from app.panotify import auth as auth_module
from app.panotify.db import session_scope
from app.panotify.models import Base, User
from app.panotify.rbac import ensure_roles

CSRF = "test-csrf-token"
PASSWORD = "password123"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("EXAM_GRACE_SECONDS", "30")
    for k in ("PASSWORD_MIN_LENGTH", "LOGIN_RATE_LIMIT", "LOGIN_RATE_WINDOW"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    app.config["TESTING"] = True
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        roles = ensure_roles(s)
        admin = User(
            username="admin",
            email="admin@example.com",
            password_hash=generate_password_hash(PASSWORD),
            first_name="Ada",
            last_name="Admin",
            account_type="Admin",
            is_active=True,
        )
        admin.roles.append(roles["admin"])
        s.add(admin)

    auth_module._login_attempts.clear()
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def make_user(app):
    """Create an account with the role matching its type; returns the user id."""

    def _make(username: str, account_type: str = "Student", *, password: str = PASSWORD, **extra) -> int:
        with session_scope(app) as s:
            roles = ensure_roles(s)
            user = User(
                username=username,
                email=extra.pop("email", f"{username}@example.com"),
                password_hash=generate_password_hash(password),
                first_name=extra.pop("first_name", username.title()),
                last_name=extra.pop("last_name", "Tester"),
                account_type=account_type,
                is_active=extra.pop("is_active", True),
                **extra,
            )
            user.roles.append(roles[account_type.lower()])
            s.add(user)
            s.flush()
            return user.id

    return _make


@pytest.fixture()
def login(client):
    def _login(username: str, password: str = PASSWORD, account_type: str = ""):
        r = client.post(
            "/auth/login",
            data={"login": username, "password": password, "account_type": account_type},
            follow_redirects=False,
        )
        with client.session_transaction() as sess:
            sess["csrf_token"] = CSRF
        return r

    return _login


@pytest.fixture()
def post(client):
    """POST with the session CSRF token attached."""

    def _post(url: str, data: dict | None = None, **kwargs):
        with client.session_transaction() as sess:
            sess["csrf_token"] = CSRF
        payload = dict(data or {})
        payload["csrf_token"] = CSRF
        return client.post(url, data=payload, **kwargs)

    return _post
