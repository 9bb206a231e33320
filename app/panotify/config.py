import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    exam_grace_seconds: int
    password_min_length: int
    login_rate_limit: int
    login_rate_window: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///panotify.db"),
        exam_grace_seconds=_getenv_int("EXAM_GRACE_SECONDS", 30),
        password_min_length=_getenv_int("PASSWORD_MIN_LENGTH", 8),
        login_rate_limit=_getenv_int("LOGIN_RATE_LIMIT", 5),
        login_rate_window=_getenv_int("LOGIN_RATE_WINDOW", 300),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "EXAM_GRACE_SECONDS": s.exam_grace_seconds,
        "PASSWORD_MIN_LENGTH": s.password_min_length,
        "LOGIN_RATE_LIMIT": s.login_rate_limit,
        "LOGIN_RATE_WINDOW": s.login_rate_window,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # exam forms are small; keep request bodies bounded
        "MAX_CONTENT_LENGTH": 2 * 1024 * 1024,
    }
