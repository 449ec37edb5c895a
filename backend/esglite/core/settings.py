from __future__ import annotations

import os
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field

DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]

CAPTCHA_PROVIDERS = ("recaptcha", "hcaptcha", "turnstile", "math", "static")


class Settings(BaseModel):
    database_url: str = Field(default="sqlite:///./esglite.db")
    allowed_origins: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    trust_proxy_headers: bool = Field(default=True)

    session_cookie_name: str = Field(default="esg_session")
    session_ttl_seconds: int = Field(default=30 * 24 * 60 * 60)
    cookie_secure: bool = Field(default=False)

    brute_force_max_attempts: int = Field(default=5)
    brute_force_captcha_threshold: int = Field(default=3)
    brute_force_window_seconds: int = Field(default=900)
    brute_force_lockout_seconds: int = Field(default=1800)

    captcha_provider: str = Field(default="math")
    captcha_site_key: Optional[str] = Field(default=None)
    captcha_secret_key: Optional[str] = Field(default=None)
    captcha_min_score: float = Field(default=0.5)
    captcha_timeout_seconds: float = Field(default=5.0)
    captcha_static_token: str = Field(default="1234")
    captcha_math_ttl_seconds: int = Field(default=300)

    totp_issuer: str = Field(default="ESG-Lite")
    backup_codes_count: int = Field(default=10)
    backup_code_pepper: str = Field(default="")

    signin_rate_limit: str = Field(default="20/minute")
    captcha_rate_limit: str = Field(default="30/minute")

    auth_log_file: str = Field(default="auth.log")

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name, default)
    if value is None or value == "":
        return default
    return value


def _flag(name: str, default: str) -> bool:
    return (_env(name, default) or default).strip().lower() in {"1", "true", "yes", "on"}


def _origins() -> List[str]:
    raw = os.getenv("ALLOWED_ORIGINS", "")
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or list(DEFAULT_ALLOWED_ORIGINS)


def _load_settings() -> Settings:
    provider = (_env("CAPTCHA_PROVIDER", "math") or "math").strip().lower()
    if provider not in CAPTCHA_PROVIDERS:
        raise ValueError(f"unsupported CAPTCHA_PROVIDER: {provider}")
    return Settings(
        database_url=_env("DATABASE_URL", "sqlite:///./esglite.db"),
        allowed_origins=_origins(),
        trust_proxy_headers=_flag("TRUST_PROXY_HEADERS", "1"),
        session_cookie_name=_env("SESSION_COOKIE_NAME", "esg_session"),
        session_ttl_seconds=int(_env("SESSION_TTL_SECONDS", str(30 * 24 * 60 * 60))),
        cookie_secure=_flag("COOKIE_SECURE", "0"),
        brute_force_max_attempts=int(_env("BRUTE_FORCE_MAX_ATTEMPTS", "5")),
        brute_force_captcha_threshold=int(_env("BRUTE_FORCE_CAPTCHA_THRESHOLD", "3")),
        brute_force_window_seconds=int(_env("BRUTE_FORCE_WINDOW_SECONDS", "900")),
        brute_force_lockout_seconds=int(_env("BRUTE_FORCE_LOCKOUT_SECONDS", "1800")),
        captcha_provider=provider,
        captcha_site_key=_env("CAPTCHA_SITE_KEY"),
        captcha_secret_key=_env("CAPTCHA_SECRET_KEY"),
        captcha_min_score=float(_env("CAPTCHA_MIN_SCORE", "0.5")),
        captcha_timeout_seconds=float(_env("CAPTCHA_TIMEOUT_SECONDS", "5")),
        captcha_static_token=_env("CAPTCHA_STATIC_TOKEN", "1234"),
        captcha_math_ttl_seconds=int(_env("CAPTCHA_MATH_TTL_SECONDS", "300")),
        totp_issuer=_env("TOTP_ISSUER", "ESG-Lite"),
        backup_codes_count=int(_env("BACKUP_CODES_COUNT", "10")),
        backup_code_pepper=_env("BACKUP_CODE_PEPPER", "") or "",
        signin_rate_limit=_env("SIGNIN_RATE_LIMIT", "20/minute"),
        captcha_rate_limit=_env("CAPTCHA_RATE_LIMIT", "30/minute"),
        auth_log_file=_env("AUTH_LOG_FILE", "auth.log"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return _load_settings()


def reload_settings() -> Settings:
    get_settings.cache_clear()
    return get_settings()


__all__ = ["Settings", "get_settings", "reload_settings"]
