import os
import tempfile
from pathlib import Path

# Point the app at a throwaway database and log file before it is imported.
_TMP = Path(tempfile.mkdtemp(prefix="esglite-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'test.db'}"
os.environ["AUTH_LOG_FILE"] = str(_TMP / "auth.log")
os.environ.setdefault("CAPTCHA_PROVIDER", "math")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from esglite.core.settings import get_settings  # noqa: E402
from esglite.db import Base, SessionLocal, engine, init_db  # noqa: E402
from esglite.db_models import User  # noqa: E402
from esglite.main import app  # noqa: E402
from esglite.security.passwords import hash_password  # noqa: E402
from esglite.security.sessions import create_session  # noqa: E402

PASSWORD = "Sup3r-secret"


def reset_limits() -> None:
    limiter = getattr(app.state, "limiter", None)
    if limiter is not None:
        limiter.reset()


@pytest.fixture(autouse=True)
def _fresh_state():
    get_settings.cache_clear()
    Base.metadata.drop_all(bind=engine)
    init_db()
    reset_limits()
    yield
    get_settings.cache_clear()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def make_user(db, email="user@example.com", password=PASSWORD, totp_secret=None) -> User:
    user = User(email=email, name="Test User", password_hash=hash_password(password), totp_secret=totp_secret)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def login_cookies(db, user: User) -> dict:
    issued = create_session(db, user)
    return {get_settings().session_cookie_name: issued.token}


@pytest.fixture
def user(db):
    return make_user(db)


@pytest.fixture
def auth_client(db, user):
    return TestClient(app, cookies=login_cookies(db, user))
