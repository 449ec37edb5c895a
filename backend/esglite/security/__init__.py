from dataclasses import dataclass
from typing import Literal, Optional

from fastapi import Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from esglite.core.errors import unauthorized
from esglite.db import get_db
from esglite.db_models import User
from esglite.security.logger import auth_logger as logger
from esglite.security.sessions import session_token_from_request, validate_session

LookupFailure = Literal["no_session", "session_invalid", "lookup_failed"]


@dataclass(frozen=True)
class SessionLookup:
    """Exactly one of ``user`` / ``error`` is set."""

    user: Optional[User] = None
    error: Optional[LookupFailure] = None


def get_current_user_from_session(request: Request, db: Session) -> SessionLookup:
    token = session_token_from_request(request)
    if not token:
        return SessionLookup(error="no_session")
    try:
        found = validate_session(db, token)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Session lookup failed")
        return SessionLookup(error="lookup_failed")
    if found is None:
        return SessionLookup(error="session_invalid")
    _, user = found
    return SessionLookup(user=user)


def require_user(request: Request, db: Session = Depends(get_db)) -> User:
    lookup = get_current_user_from_session(request, db)
    if lookup.error or lookup.user is None:
        raise unauthorized()
    return lookup.user


def is_session_active(request: Request, db: Session) -> bool:
    token = session_token_from_request(request)
    if not token:
        return False
    return validate_session(db, token) is not None


__all__ = [
    "SessionLookup",
    "get_current_user_from_session",
    "is_session_active",
    "require_user",
]
