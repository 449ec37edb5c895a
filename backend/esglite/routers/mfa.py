from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from esglite.core.errors import INVALID_PAYLOAD, TOO_MANY_ATTEMPTS, ApiError, bad_request
from esglite.db import get_db
from esglite.db_models import User
from esglite.models import BackupCodesResponse, CodePayload, TotpSetupResponse, TotpStatusResponse
from esglite.security import require_user
from esglite.security.attempts import AttemptKey, BruteForceGuard
from esglite.security.captcha_guard import CaptchaService, get_captcha_service
from esglite.security.client_ip import get_client_ip
from esglite.security.logger import auth_logger as logger, mask_identifier
from esglite.security.mfa import (
    TotpAlreadyEnabled,
    TotpNotEnabled,
    accept_totp,
    consume_backup_code,
    disable_totp,
    regenerate_backup_codes,
    remaining_backup_codes,
    setup_totp,
    totp_status,
)
from esglite.security.sessions import set_mfa_cookie

MFA_ENDPOINT = "mfa"

router = APIRouter(prefix="/auth", tags=["mfa"])


def _internal_error() -> ApiError:
    return ApiError(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error")


async def _mfa_guard(
    request: Request,
    db: Session,
    user: User,
    payload: CodePayload,
    captcha: CaptchaService,
):
    ip = get_client_ip(request)
    guard = BruteForceGuard(db)
    key = AttemptKey.build(ip, user.id, MFA_ENDPOINT)
    current = guard.check(key)
    if current.blocked:
        headers = {"X-Captcha-Required": "true"}
        if current.retry_after:
            headers["Retry-After"] = str(current.retry_after)
        raise ApiError(
            status.HTTP_429_TOO_MANY_REQUESTS,
            TOO_MANY_ATTEMPTS,
            headers=headers,
            retryAfter=current.retry_after,
        )
    if current.requires_captcha:
        if not payload.captcha_token:
            raise ApiError(
                status.HTTP_400_BAD_REQUEST,
                "captcha_required",
                headers={"X-Captcha-Required": "true"},
            )
        result = await captcha.validate_for_auth(payload.captcha_token, ip, MFA_ENDPOINT)
        if not result.valid:
            logger.warning("CAPTCHA failed on code entry from IP %s: %s", ip, result.reason)
            raise bad_request("captcha_failed", reason=result.reason)
    return guard, key


def _invalid_code(guard: BruteForceGuard, key: AttemptKey) -> ApiError:
    after = guard.report_failure(key)
    headers = {"X-Captcha-Required": "true"} if after.requires_captcha else None
    return ApiError(status.HTTP_400_BAD_REQUEST, "invalid_code", headers=headers)


def _verified_response() -> JSONResponse:
    response = JSONResponse({"ok": True})
    set_mfa_cookie(response)
    return response


# ---------------- TOTP ----------------
@router.post("/totp/setup", response_model=TotpSetupResponse)
def totp_setup(user: User = Depends(require_user), db: Session = Depends(get_db)) -> TotpSetupResponse:
    try:
        enrolled = setup_totp(db, user)
    except TotpAlreadyEnabled:
        raise bad_request("totp_already_enabled")
    except Exception:
        logger.exception("TOTP setup failed")
        raise _internal_error()
    logger.info("TOTP enrolled for %s", mask_identifier(user.email))
    return TotpSetupResponse(**enrolled)


@router.get("/totp/status", response_model=TotpStatusResponse)
def totp_status_route(user: User = Depends(require_user)) -> TotpStatusResponse:
    return TotpStatusResponse(**totp_status(user))


@router.post("/totp/verify")
async def totp_verify(
    request: Request,
    payload: CodePayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    captcha: CaptchaService = Depends(get_captcha_service),
) -> JSONResponse:
    if not payload.code:
        raise bad_request(INVALID_PAYLOAD)
    if not user.totp_secret:
        raise bad_request("totp_not_enabled")
    guard, key = await _mfa_guard(request, db, user, payload, captcha)
    if not accept_totp(db, user, payload.code):
        raise _invalid_code(guard, key)
    guard.report_success(key)
    return _verified_response()


@router.post("/totp/disable")
async def totp_disable(
    request: Request,
    payload: CodePayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    captcha: CaptchaService = Depends(get_captcha_service),
) -> JSONResponse:
    if not payload.code:
        raise bad_request(INVALID_PAYLOAD)
    if not user.totp_secret:
        raise bad_request("totp_not_enabled")
    guard, key = await _mfa_guard(request, db, user, payload, captcha)
    if not accept_totp(db, user, payload.code):
        raise _invalid_code(guard, key)
    try:
        disable_totp(db, user)
    except Exception:
        logger.exception("TOTP disable failed")
        raise _internal_error()
    guard.report_success(key)
    logger.info("TOTP disabled for %s", mask_identifier(user.email))
    return _verified_response()


# ---------------- Backup codes ----------------
@router.post("/backup-codes/generate", response_model=BackupCodesResponse)
def backup_codes_generate(
    user: User = Depends(require_user), db: Session = Depends(get_db)
) -> BackupCodesResponse:
    try:
        codes = regenerate_backup_codes(db, user)
    except TotpNotEnabled:
        raise bad_request("totp_not_enabled")
    except Exception:
        logger.exception("Backup code generation failed")
        raise _internal_error()
    logger.info("Backup codes regenerated for %s", mask_identifier(user.email))
    return BackupCodesResponse(codes=codes)


@router.post("/backup-codes/use")
async def backup_codes_use(
    request: Request,
    payload: CodePayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    captcha: CaptchaService = Depends(get_captcha_service),
) -> JSONResponse:
    if not payload.code:
        raise bad_request(INVALID_PAYLOAD)
    guard, key = await _mfa_guard(request, db, user, payload, captcha)
    try:
        consumed = consume_backup_code(db, user, payload.code)
    except Exception:
        logger.exception("Backup code check failed")
        raise _internal_error()
    if not consumed:
        raise _invalid_code(guard, key)
    guard.report_success(key)
    logger.info("Backup code used by %s", mask_identifier(user.email))
    return _verified_response()


@router.get("/backup-codes/status")
def backup_codes_status(user: User = Depends(require_user), db: Session = Depends(get_db)) -> dict:
    return {"remaining": remaining_backup_codes(db, user)}
