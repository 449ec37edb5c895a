import logging

from fastapi.testclient import TestClient

from esglite.core.settings import reload_settings
from esglite.main import (
    ALLOWED_ORIGINS,
    SECURITY_HEADERS,
    STRICT_TRANSPORT_SECURITY,
    app,
)


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_security_headers_present(client):
    response = client.get("/health")
    for header, value in SECURITY_HEADERS.items():
        assert response.headers.get(header) == value
    assert response.headers.get("Strict-Transport-Security") == STRICT_TRANSPORT_SECURITY


def test_cors_preflight_allows_known_origin(client):
    origin = ALLOWED_ORIGINS[0]
    response = client.options(
        "/auth/captcha/verify",
        headers={
            "origin": origin,
            "access-control-request-method": "POST",
            "access-control-request-headers": "content-type",
        },
    )

    assert response.status_code == 200
    assert response.headers.get("access-control-allow-origin") == origin
    assert response.headers.get("access-control-allow-credentials") == "true"


def test_put_and_delete_are_refused(client):
    assert client.put("/auth/totp/setup").status_code == 405
    assert client.delete("/auth/clear-session").status_code == 405


def test_post_with_non_json_body_is_refused(client):
    r = client.post(
        "/auth/captcha/verify",
        content=b"token=abc",
        headers={"content-type": "application/x-www-form-urlencoded"},
    )
    assert r.status_code == 415


def test_unknown_payload_shape_is_a_400(client):
    r = client.post("/auth/password/signin", json={"email": "not-an-email", "password": "x"})
    assert r.status_code == 400
    assert r.json() == {"error": "invalid_payload"}


def _startup_warnings(caplog):
    caplog.clear()
    with caplog.at_level(logging.WARNING, logger="esglite.auth"):
        with TestClient(app):
            pass
    return [r.getMessage() for r in caplog.records if r.name == "esglite.auth"]


def test_startup_warns_when_backup_code_pepper_is_unset(caplog, monkeypatch):
    monkeypatch.delenv("BACKUP_CODE_PEPPER", raising=False)
    reload_settings()
    assert any("BACKUP_CODE_PEPPER" in message for message in _startup_warnings(caplog))

    monkeypatch.setenv("BACKUP_CODE_PEPPER", "s3cret-pepper")
    reload_settings()
    assert not any("BACKUP_CODE_PEPPER" in message for message in _startup_warnings(caplog))
