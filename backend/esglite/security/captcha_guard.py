"""
CAPTCHA verification for the authentication flows.

Remote providers (reCAPTCHA, hCaptcha, Cloudflare Turnstile) are checked
through their ``siteverify`` endpoints. Two local providers need no network:

* ``math``   - arithmetic challenges issued by ``generate_math_challenge``;
  the client answers with a ``"<id>:<answer>"`` token.
* ``static`` - a fixed development token (``CAPTCHA_STATIC_TOKEN``).

``validate_for_auth`` never raises for provider trouble: timeouts, HTTP
errors and unreadable responses all come back as ``CaptchaResult(valid=False)``
with a reason the caller can pass through to the client.
"""

from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx

from esglite.core.settings import Settings, get_settings
from esglite.security.logger import auth_logger as logger

VERIFY_URLS = {
    "recaptcha": "https://www.google.com/recaptcha/api/siteverify",
    "hcaptcha": "https://api.hcaptcha.com/siteverify",
    "turnstile": "https://challenges.cloudflare.com/turnstile/v0/siteverify",
}

CLIENT_SETTINGS: Dict[str, Dict[str, Any]] = {
    "recaptcha": {"version": "v3", "action": "auth"},
    "hcaptcha": {"theme": "light", "size": "normal"},
    "turnstile": {"theme": "auto", "appearance": "always"},
    "math": {"challengeUrl": "/auth/captcha/math"},
    "static": {},
}


@dataclass(frozen=True)
class CaptchaResult:
    valid: bool
    reason: Optional[str] = None
    score: Optional[float] = None


# ---------------- Math challenges ----------------
_challenges: Dict[str, Tuple[int, float]] = {}
_challenges_lock = threading.Lock()


def _purge_challenges(now: float) -> None:
    expired = [cid for cid, (_, expires) in _challenges.items() if expires <= now]
    for cid in expired:
        _challenges.pop(cid, None)


def generate_math_challenge(ttl_seconds: Optional[int] = None) -> Dict[str, str]:
    """Issue an arithmetic challenge; only the id and the question leave the server."""
    ttl = ttl_seconds if ttl_seconds is not None else get_settings().captcha_math_ttl_seconds
    a = secrets.randbelow(20) + 1
    b = secrets.randbelow(20) + 1
    if secrets.randbelow(2):
        question, answer = f"{a} + {b}", a + b
    else:
        a, b = max(a, b), min(a, b)
        question, answer = f"{a} - {b}", a - b
    challenge_id = secrets.token_urlsafe(16)
    now = time.monotonic()
    with _challenges_lock:
        _purge_challenges(now)
        _challenges[challenge_id] = (answer, now + ttl)
    return {"id": challenge_id, "challenge": f"{question} = ?"}


def _redeem_math_token(token: str) -> CaptchaResult:
    challenge_id, sep, raw_answer = token.partition(":")
    if not sep or not challenge_id:
        return CaptchaResult(valid=False, reason="invalid_token")
    now = time.monotonic()
    with _challenges_lock:
        # Single use: popped whether or not the answer is right.
        entry = _challenges.pop(challenge_id, None)
    if entry is None:
        return CaptchaResult(valid=False, reason="challenge_expired")
    answer, expires = entry
    if expires <= now:
        return CaptchaResult(valid=False, reason="challenge_expired")
    try:
        given = int(raw_answer.strip())
    except ValueError:
        return CaptchaResult(valid=False, reason="wrong_answer")
    if given != answer:
        return CaptchaResult(valid=False, reason="wrong_answer")
    return CaptchaResult(valid=True)


# ---------------- Service ----------------
class CaptchaService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._transport = transport

    @property
    def provider(self) -> str:
        return self.settings.captcha_provider

    def get_client_config(self) -> Dict[str, Any]:
        """Public configuration for the browser widget. Never includes the secret key."""
        return {
            "provider": self.provider,
            "siteKey": self.settings.captcha_site_key,
            "settings": dict(CLIENT_SETTINGS.get(self.provider, {})),
        }

    async def validate_for_auth(
        self, token: Optional[str], client_ip: Optional[str] = None, action: Optional[str] = None
    ) -> CaptchaResult:
        if not token or not token.strip():
            return CaptchaResult(valid=False, reason="missing_token")
        token = token.strip()

        if self.provider == "static":
            ok = secrets.compare_digest(token, self.settings.captcha_static_token)
            return CaptchaResult(valid=ok, reason=None if ok else "invalid_token")
        if self.provider == "math":
            return _redeem_math_token(token)
        return await self._verify_remote(token, client_ip, action)

    async def _verify_remote(
        self, token: str, client_ip: Optional[str], action: Optional[str]
    ) -> CaptchaResult:
        secret = self.settings.captcha_secret_key
        if not secret:
            logger.error("CAPTCHA provider %s has no secret key configured", self.provider)
            return CaptchaResult(valid=False, reason="provider_not_configured")

        form = {"secret": secret, "response": token}
        if client_ip and client_ip != "unknown":
            form["remoteip"] = client_ip

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.captcha_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(VERIFY_URLS[self.provider], data=form)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("CAPTCHA provider %s unavailable: %s", self.provider, exc.__class__.__name__)
            return CaptchaResult(valid=False, reason="provider_unavailable")

        return self._interpret(payload, action)

    def _interpret(self, payload: Dict[str, Any], action: Optional[str]) -> CaptchaResult:
        if not isinstance(payload, dict):
            return CaptchaResult(valid=False, reason="provider_unavailable")
        if not payload.get("success"):
            codes = payload.get("error-codes") or []
            reason = ",".join(str(c) for c in codes) if codes else "invalid_token"
            return CaptchaResult(valid=False, reason=reason)

        raw_score = payload.get("score")
        if self.provider == "recaptcha" and raw_score is not None:
            try:
                score = float(raw_score)
            except (TypeError, ValueError):
                logger.warning("CAPTCHA provider %s returned an unreadable score", self.provider)
                return CaptchaResult(valid=False, reason="provider_unavailable")
            # v3 responses carry a score and the action the widget was rendered for.
            reported_action = payload.get("action")
            if action and reported_action and reported_action != action:
                return CaptchaResult(valid=False, reason="action_mismatch", score=score)
            if score < self.settings.captcha_min_score:
                return CaptchaResult(valid=False, reason="low_score", score=score)
            return CaptchaResult(valid=True, score=score)
        return CaptchaResult(valid=True)


def get_captcha_service() -> CaptchaService:
    return CaptchaService()


__all__ = [
    "CaptchaResult",
    "CaptchaService",
    "generate_math_challenge",
    "get_captcha_service",
]
