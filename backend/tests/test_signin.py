import hashlib
from datetime import timedelta

import pyotp
from sqlalchemy import select, update

from conftest import PASSWORD, make_user, reset_limits
from esglite.core.settings import reload_settings
from esglite.db_models import UserSession, utcnow_naive
from esglite.security.mfa import regenerate_backup_codes
from esglite.security.sessions import cleanup_expired_sessions, create_session, validate_session

EMAIL = "signin@example.com"


def _signin(client, password=PASSWORD, **extra):
    payload = {"email": EMAIL, "password": password}
    payload.update(extra)
    return client.post("/auth/password/signin", json=payload)


def _static_captcha(monkeypatch):
    monkeypatch.setenv("CAPTCHA_PROVIDER", "static")
    monkeypatch.setenv("CAPTCHA_STATIC_TOKEN", "1234")
    reload_settings()


def test_signup_then_signin_sets_session(client, db):
    r = client.post("/auth/signup", json={"email": "New@Example.com", "password": "Abcdef12!"})
    assert r.status_code == 201
    assert r.json()["email"] == "new@example.com"

    dup = client.post("/auth/signup", json={"email": "new@example.com", "password": "Abcdef12!"})
    assert dup.status_code == 409
    assert dup.json() == {"error": "email_already_exists"}

    ok = client.post("/auth/password/signin", json={"email": "new@example.com", "password": "Abcdef12!"})
    assert ok.status_code == 200
    assert ok.json()["success"] is True
    assert ok.cookies.get("esg_session")

    check = client.get("/auth/session/check")
    assert check.status_code == 200
    assert check.json()["authenticated"] is True
    assert check.json()["timestamp"].endswith("Z")


def test_signup_password_policy(client):
    r = client.post("/auth/signup", json={"email": "weak@example.com", "password": "alllowercase"})
    assert r.status_code == 400
    assert r.json() == {"error": "invalid_payload"}


def test_wrong_password_counts_down(client, db):
    make_user(db, email=EMAIL)
    r = _signin(client, password="wrong")
    assert r.status_code == 401
    assert r.json() == {"error": "invalid_credentials", "remainingAttempts": 4, "requiresCaptcha": False}

    r = client.post("/auth/password/signin", json={"email": "nobody@example.com", "password": "x"})
    assert r.status_code == 401
    assert r.json()["error"] == "invalid_credentials"


def test_captcha_escalation_then_lockout(client, db, monkeypatch):
    _static_captcha(monkeypatch)
    make_user(db, email=EMAIL)

    for _ in range(3):
        r = _signin(client, password="wrong")
        assert r.status_code == 401
    assert r.json()["requiresCaptcha"] is True
    assert r.headers.get("X-Captcha-Required") == "true"

    # Correct password, but a CAPTCHA is now required.
    r = _signin(client)
    assert r.status_code == 400
    assert r.json() == {"error": "captcha_required"}

    r = _signin(client, captchaToken="9999")
    assert r.status_code == 400
    assert r.json() == {"error": "captcha_failed", "reason": "invalid_token"}

    r = _signin(client, password="wrong", captchaToken="1234")
    assert r.status_code == 401
    assert r.json()["remainingAttempts"] == 1

    locked = _signin(client, password="wrong", captchaToken="1234")
    assert locked.status_code == 429
    assert locked.json()["error"] == "too_many_attempts"
    assert int(locked.headers["Retry-After"]) > 0

    # Even the right password is refused while blocked.
    still = _signin(client, captchaToken="1234")
    assert still.status_code == 429


def test_success_clears_failures(client, db, monkeypatch):
    _static_captcha(monkeypatch)
    make_user(db, email=EMAIL)
    for _ in range(3):
        _signin(client, password="wrong")

    assert _signin(client, captchaToken="1234").status_code == 200

    r = _signin(client, password="wrong")
    assert r.json()["remainingAttempts"] == 4
    assert r.json()["requiresCaptcha"] is False


def test_signin_with_totp(client, db):
    secret = pyotp.random_base32()
    make_user(db, email=EMAIL, totp_secret=secret)

    r = _signin(client)
    assert r.status_code == 401
    assert r.json() == {"error": "mfa_required"}

    r = _signin(client, totpCode="000000")
    assert r.status_code == 401
    assert r.json() == {"error": "invalid_otp"}

    r = _signin(client, totpCode=pyotp.TOTP(secret).now())
    assert r.status_code == 200
    assert r.cookies.get("mfa") == "verified"


def test_signin_totp_code_cannot_be_replayed(client, db):
    secret = pyotp.random_base32()
    make_user(db, email=EMAIL, totp_secret=secret)
    code = pyotp.TOTP(secret).now()

    assert _signin(client, totpCode=code).status_code == 200
    client.cookies.clear()
    r = _signin(client, totpCode=code)
    assert r.status_code == 401
    assert r.json() == {"error": "invalid_otp"}


def test_signin_with_backup_code_once(client, db):
    user = make_user(db, email=EMAIL, totp_secret=pyotp.random_base32())
    codes = regenerate_backup_codes(db, user)

    assert _signin(client, backupCode=codes[0]).status_code == 200
    reset_limits()
    r = _signin(client, backupCode=codes[0])
    assert r.status_code == 401
    assert r.json() == {"error": "invalid_backup_code"}


def test_clear_session(client, db):
    user = make_user(db, email=EMAIL)
    assert _signin(client).status_code == 200
    assert client.get("/auth/session/check").json()["authenticated"] is True

    r = client.post("/auth/clear-session")
    assert r.status_code == 200
    assert r.json() == {"message": "Session cleared"}
    sessions = db.execute(select(UserSession).where(UserSession.user_id == user.id)).scalars().all()
    assert sessions == []
    assert client.get("/auth/session/check").json()["authenticated"] is False


def test_session_check_without_cookie(client):
    r = client.get("/auth/session/check")
    assert r.status_code == 200
    assert r.json()["authenticated"] is False


def test_session_check_failure_reports_unauthenticated(client, monkeypatch):
    def boom(request, db):
        raise RuntimeError("store down")

    monkeypatch.setattr("esglite.routers.auth.is_session_active", boom)
    r = client.get("/auth/session/check")
    assert r.status_code == 500
    assert r.json()["authenticated"] is False


def test_signin_rate_limited(client, db, monkeypatch):
    monkeypatch.setenv("SIGNIN_RATE_LIMIT", "2/minute")
    reload_settings()
    make_user(db, email=EMAIL)
    _signin(client)
    _signin(client)
    r = _signin(client)
    assert r.status_code == 429
    assert r.json()["error"] == "too_many_requests"


def test_expired_sessions_are_rejected_and_cleaned_up(db):
    user = make_user(db, email=EMAIL)
    stale = create_session(db, user)
    fresh = create_session(db, user)
    db.execute(
        update(UserSession)
        .where(UserSession.token_hash == hashlib.sha256(stale.token.encode()).hexdigest())
        .values(expires_at=utcnow_naive() - timedelta(seconds=1))
        .execution_options(synchronize_session=False)
    )
    db.commit()

    assert validate_session(db, stale.token) is None
    assert validate_session(db, fresh.token) is not None
    assert cleanup_expired_sessions(db) == 1
    assert validate_session(db, fresh.token) is not None
