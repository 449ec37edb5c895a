# backend/esglite/routers/auth.py
from datetime import UTC, datetime
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from esglite.core.errors import TOO_MANY_ATTEMPTS, ApiError, bad_request
from esglite.db import get_db
from esglite.db_models import User
from esglite.models import SigninPayload, SignupPayload, SignupResponse
from esglite.security import is_session_active
from esglite.security.attempts import AttemptKey, BruteForceGuard, GuardStatus
from esglite.security.captcha_guard import CaptchaService, get_captcha_service
from esglite.security.client_ip import get_client_ip
from esglite.security.logger import auth_logger as logger, mask_identifier
from esglite.security.mfa import accept_totp, consume_backup_code
from esglite.security.passwords import hash_password, verify_password
from esglite.security.rate_limit import limiter, signin_limit
from esglite.security.sessions import (
    clear_session_cookies,
    create_session,
    delete_session,
    session_token_from_request,
    set_mfa_cookie,
    set_session_cookie,
)

SIGNIN_ENDPOINT = "signin"

router = APIRouter(prefix="/auth", tags=["auth"])


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _locked(status_: GuardStatus) -> ApiError:
    headers: Dict[str, str] = {"X-Captcha-Required": "true"}
    if status_.retry_after:
        headers["Retry-After"] = str(status_.retry_after)
    return ApiError(
        status.HTTP_429_TOO_MANY_REQUESTS,
        TOO_MANY_ATTEMPTS,
        headers=headers,
        retryAfter=status_.retry_after,
    )


def _record_failure(guard: BruteForceGuard, key: AttemptKey) -> Optional[GuardStatus]:
    # The failed credential is recorded even if the caller is about to get a 401.
    try:
        return guard.report_failure(key)
    except SQLAlchemyError:
        guard.db.rollback()
        logger.exception("Could not record failed %s attempt", key.endpoint)
        return None


def _credential_failure(guard: BruteForceGuard, key: AttemptKey, error: str) -> ApiError:
    after = _record_failure(guard, key)
    if after is not None and after.blocked:
        return _locked(after)
    headers = {"X-Captcha-Required": "true"} if after is not None and after.requires_captcha else None
    if error != "invalid_credentials":
        return ApiError(status.HTTP_401_UNAUTHORIZED, error, headers=headers)
    return ApiError(
        status.HTTP_401_UNAUTHORIZED,
        error,
        headers=headers,
        remainingAttempts=after.remaining_attempts if after is not None else None,
        requiresCaptcha=after.requires_captcha if after is not None else False,
    )


# ---------------- Signup ----------------
@router.post("/signup", response_model=SignupResponse, status_code=201)
@limiter.limit(signin_limit)
def signup(request: Request, payload: SignupPayload, db: Session = Depends(get_db)) -> SignupResponse:
    email = _normalize_email(str(payload.email))
    existing = db.execute(select(User).where(func.lower(User.email) == email)).scalars().first()
    if existing:
        raise ApiError(status.HTTP_409_CONFLICT, "email_already_exists")

    user = User(email=email, name=payload.name, password_hash=hash_password(payload.password))
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ApiError(status.HTTP_409_CONFLICT, "email_already_exists")
    db.refresh(user)
    logger.info("Signup for %s from IP %s", mask_identifier(email), get_client_ip(request))
    return SignupResponse(id=user.id, email=user.email)


# ---------------- Password sign-in ----------------
@router.post("/password/signin")
@limiter.limit(signin_limit)
async def password_signin(
    request: Request,
    payload: SigninPayload,
    db: Session = Depends(get_db),
    captcha: CaptchaService = Depends(get_captcha_service),
) -> JSONResponse:
    ip = get_client_ip(request)
    email = _normalize_email(str(payload.email))
    key = AttemptKey.build(ip, email, SIGNIN_ENDPOINT)
    guard = BruteForceGuard(db)
    logger.info("Sign-in attempt for %s from IP %s", mask_identifier(email), ip)

    current = guard.check(key)
    if current.blocked:
        logger.warning("Sign-in blocked for %s from IP %s", mask_identifier(email), ip)
        raise _locked(current)

    if current.requires_captcha:
        if not payload.captcha_token:
            raise ApiError(
                status.HTTP_400_BAD_REQUEST,
                "captcha_required",
                headers={"X-Captcha-Required": "true"},
            )
        result = await captcha.validate_for_auth(payload.captcha_token, ip, SIGNIN_ENDPOINT)
        if not result.valid:
            logger.warning("CAPTCHA failed on sign-in from IP %s: %s", ip, result.reason)
            raise bad_request("captcha_failed", reason=result.reason)

    try:
        user = db.execute(select(User).where(func.lower(User.email) == email)).scalars().first()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("User lookup failed during sign-in")
        raise ApiError(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error")

    if not verify_password(payload.password, user.password_hash if user else None):
        logger.warning("Failed sign-in for %s from IP %s", mask_identifier(email), ip)
        raise _credential_failure(guard, key, "invalid_credentials")

    mfa_verified = False
    if user.totp_enabled:
        if payload.totp_code:
            if not accept_totp(db, user, payload.totp_code):
                raise _credential_failure(guard, key, "invalid_otp")
        elif payload.backup_code:
            if not consume_backup_code(db, user, payload.backup_code):
                raise _credential_failure(guard, key, "invalid_backup_code")
            logger.info("Backup code used at sign-in for %s", mask_identifier(email))
        else:
            raise ApiError(status.HTTP_401_UNAUTHORIZED, "mfa_required")
        mfa_verified = True

    guard.report_success(key)
    issued = create_session(db, user, ip_address=ip, user_agent=request.headers.get("user-agent"))
    logger.info("Successful sign-in for %s from IP %s", mask_identifier(email), ip)

    response = JSONResponse(
        {"success": True, "user": {"id": user.id, "email": user.email, "name": user.name}}
    )
    set_session_cookie(response, issued)
    if mfa_verified:
        set_mfa_cookie(response)
    return response


# ---------------- Session ----------------
@router.get("/session/check")
def session_check(request: Request, db: Session = Depends(get_db)) -> JSONResponse:
    try:
        active = is_session_active(request, db)
    except Exception:
        logger.exception("Session check failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"authenticated": False, "error": "session_check_failed"},
        )
    return JSONResponse(
        {"authenticated": active, "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z")}
    )


@router.post("/clear-session")
def clear_session(request: Request, db: Session = Depends(get_db)) -> JSONResponse:
    token = session_token_from_request(request)
    if token:
        try:
            delete_session(db, token)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not delete server session")
    response = JSONResponse({"message": "Session cleared"})
    clear_session_cookies(response)
    return response
