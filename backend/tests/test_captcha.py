import asyncio

import httpx

from esglite.core.settings import reload_settings
from esglite.main import app
from esglite.security import captcha_guard
from esglite.security.captcha_guard import CaptchaService, generate_math_challenge, get_captcha_service


def _solve(challenge: dict) -> str:
    a, op, b = challenge["challenge"].removesuffix(" = ?").split()
    answer = int(a) + int(b) if op == "+" else int(a) - int(b)
    return f"{challenge['id']}:{answer}"


def _remote_service(monkeypatch, handler, provider="recaptcha"):
    monkeypatch.setenv("CAPTCHA_PROVIDER", provider)
    monkeypatch.setenv("CAPTCHA_SITE_KEY", "site-key")
    monkeypatch.setenv("CAPTCHA_SECRET_KEY", "secret-key")
    return CaptchaService(reload_settings(), transport=httpx.MockTransport(handler))


def test_config_never_exposes_secret(client, monkeypatch):
    monkeypatch.setenv("CAPTCHA_PROVIDER", "turnstile")
    monkeypatch.setenv("CAPTCHA_SITE_KEY", "0x4AAA-site")
    monkeypatch.setenv("CAPTCHA_SECRET_KEY", "0x4AAA-secret")
    reload_settings()

    r = client.get("/auth/captcha/config")
    assert r.status_code == 200
    body = r.json()
    assert body["provider"] == "turnstile"
    assert body["siteKey"] == "0x4AAA-site"
    assert isinstance(body["settings"], dict)
    assert "0x4AAA-secret" not in r.text


def test_verify_without_token_is_rejected_before_provider_call(client):
    calls = []

    class Spy(CaptchaService):
        async def validate_for_auth(self, token, client_ip=None, action=None):
            calls.append(token)
            return await super().validate_for_auth(token, client_ip, action)

    app.dependency_overrides[get_captcha_service] = lambda: Spy()
    try:
        for body in ({}, {"token": ""}, {"token": None, "action": "signin"}):
            r = client.post("/auth/captcha/verify", json=body)
            assert r.status_code == 400
            assert r.json() == {"error": "captcha_token_required"}
    finally:
        app.dependency_overrides.clear()
    assert calls == []


def test_math_challenge_round_trip(client):
    r = client.get("/auth/captcha/math")
    assert r.status_code == 200
    challenge = r.json()
    assert set(challenge) == {"challenge", "id"}

    ok = client.post("/auth/captcha/verify", json={"token": _solve(challenge)})
    assert ok.status_code == 200
    assert ok.json() == {"success": True, "message": "CAPTCHA verified successfully"}

    # Each challenge can only be redeemed once.
    again = client.post("/auth/captcha/verify", json={"token": _solve(challenge)})
    assert again.status_code == 400
    assert again.json() == {"error": "challenge_expired", "success": False}


def test_math_wrong_answer(client):
    challenge = generate_math_challenge()
    r = client.post("/auth/captcha/verify", json={"token": f"{challenge['id']}:-999"})
    assert r.status_code == 400
    assert r.json()["error"] == "wrong_answer"


def test_math_challenge_expires(monkeypatch):
    challenge = generate_math_challenge(ttl_seconds=60)
    real = captcha_guard.time.monotonic
    monkeypatch.setattr(captcha_guard.time, "monotonic", lambda: real() + 61)
    result = asyncio.run(CaptchaService(reload_settings()).validate_for_auth(_solve(challenge)))
    assert result.valid is False
    assert result.reason == "challenge_expired"


def test_static_provider(monkeypatch):
    monkeypatch.setenv("CAPTCHA_PROVIDER", "static")
    monkeypatch.setenv("CAPTCHA_STATIC_TOKEN", "letmein")
    service = CaptchaService(reload_settings())
    assert asyncio.run(service.validate_for_auth("letmein")).valid is True
    assert asyncio.run(service.validate_for_auth("nope")).reason == "invalid_token"


def test_recaptcha_success_sends_secret_and_ip(monkeypatch):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["form"] = dict(httpx.QueryParams(request.content.decode()))
        return httpx.Response(200, json={"success": True, "score": 0.9, "action": "signin"})

    service = _remote_service(monkeypatch, handler)
    result = asyncio.run(service.validate_for_auth("tok", "203.0.113.5", "signin"))
    assert result.valid is True
    assert result.score == 0.9
    assert seen["url"] == captcha_guard.VERIFY_URLS["recaptcha"]
    assert seen["form"] == {"secret": "secret-key", "response": "tok", "remoteip": "203.0.113.5"}


def test_recaptcha_low_score_and_action_mismatch(monkeypatch):
    def low(request):
        return httpx.Response(200, json={"success": True, "score": 0.1, "action": "signin"})

    def wrong_action(request):
        return httpx.Response(200, json={"success": True, "score": 0.9, "action": "signup"})

    assert asyncio.run(_remote_service(monkeypatch, low).validate_for_auth("t", None, "signin")).reason == "low_score"
    result = asyncio.run(_remote_service(monkeypatch, wrong_action).validate_for_auth("t", None, "signin"))
    assert result.reason == "action_mismatch"


def test_provider_error_codes_are_passed_through(monkeypatch):
    def handler(request):
        return httpx.Response(200, json={"success": False, "error-codes": ["timeout-or-duplicate"]})

    result = asyncio.run(_remote_service(monkeypatch, handler, "hcaptcha").validate_for_auth("t"))
    assert result.valid is False
    assert result.reason == "timeout-or-duplicate"


def test_provider_outage_is_a_verification_failure_not_a_crash(client, monkeypatch):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    service = _remote_service(monkeypatch, handler, "turnstile")
    app.dependency_overrides[get_captcha_service] = lambda: service
    try:
        r = client.post("/auth/captcha/verify", json={"token": "abc"})
    finally:
        app.dependency_overrides.clear()
    assert r.status_code == 400
    assert r.json() == {"error": "provider_unavailable", "success": False}


def test_provider_http_error_and_bad_json(monkeypatch):
    def server_error(request):
        return httpx.Response(503, text="maintenance")

    def not_json(request):
        return httpx.Response(200, text="<html>")

    for handler in (server_error, not_json):
        result = asyncio.run(_remote_service(monkeypatch, handler).validate_for_auth("t"))
        assert result.reason == "provider_unavailable"


def test_unreadable_score_is_a_verification_failure(monkeypatch):
    def handler(request):
        return httpx.Response(200, json={"success": True, "score": "n/a", "action": "signin"})

    result = asyncio.run(_remote_service(monkeypatch, handler).validate_for_auth("t", None, "signin"))
    assert result.valid is False
    assert result.reason == "provider_unavailable"

    def list_score(request):
        return httpx.Response(200, json={"success": True, "score": [0.9]})

    result = asyncio.run(_remote_service(monkeypatch, list_score).validate_for_auth("t"))
    assert result.reason == "provider_unavailable"


def test_remote_provider_without_secret(monkeypatch):
    monkeypatch.setenv("CAPTCHA_PROVIDER", "recaptcha")
    monkeypatch.delenv("CAPTCHA_SECRET_KEY", raising=False)
    result = asyncio.run(CaptchaService(reload_settings()).validate_for_auth("t"))
    assert result.reason == "provider_not_configured"
