"""
Server-side sessions.

The cookie carries a random token; the database only ever sees its SHA-256
digest, so a dump of ``user_sessions`` cannot be replayed.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from fastapi import Request, Response
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from esglite.core.settings import get_settings
from esglite.db_models import User, UserSession, utcnow_naive

MFA_COOKIE_NAME = "mfa"


@dataclass
class IssuedSession:
    token: str
    user_id: str
    expires_at: datetime


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_session_token() -> str:
    return secrets.token_urlsafe(32)


def create_session(
    db: Session,
    user: User,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> IssuedSession:
    settings = get_settings()
    token = generate_session_token()
    expires_at = utcnow_naive() + timedelta(seconds=settings.session_ttl_seconds)
    db.add(
        UserSession(
            user_id=user.id,
            token_hash=_hash_token(token),
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent[:512] if user_agent else None,
        )
    )
    db.commit()
    return IssuedSession(token=token, user_id=user.id, expires_at=expires_at)


def validate_session(db: Session, token: str) -> Optional[Tuple[UserSession, User]]:
    stmt = (
        select(UserSession)
        .where(UserSession.token_hash == _hash_token(token))
        .where(UserSession.expires_at > utcnow_naive())
    )
    session = db.execute(stmt).scalar_one_or_none()
    if session is None:
        return None
    user = db.get(User, session.user_id)
    if user is None:
        return None
    return session, user


def delete_session(db: Session, token: str) -> bool:
    result = db.execute(
        delete(UserSession)
        .where(UserSession.token_hash == _hash_token(token))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount > 0


def cleanup_expired_sessions(db: Session) -> int:
    result = db.execute(
        delete(UserSession)
        .where(UserSession.expires_at <= utcnow_naive())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


def session_token_from_request(request: Request) -> Optional[str]:
    """Session token from the cookie, or from an ``Authorization: Bearer`` header."""
    token = request.cookies.get(get_settings().session_cookie_name)
    if token:
        return token
    parts = request.headers.get("authorization", "").split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def set_session_cookie(response: Response, issued: IssuedSession) -> None:
    settings = get_settings()
    response.set_cookie(
        settings.session_cookie_name,
        issued.token,
        max_age=settings.session_ttl_seconds,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def set_mfa_cookie(response: Response) -> None:
    response.set_cookie(
        MFA_COOKIE_NAME,
        "verified",
        path="/",
        samesite="lax",
        secure=get_settings().cookie_secure,
    )


def clear_session_cookies(response: Response) -> None:
    response.delete_cookie(get_settings().session_cookie_name, path="/")
    response.delete_cookie(MFA_COOKIE_NAME, path="/")
