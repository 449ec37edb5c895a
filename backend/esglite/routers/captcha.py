from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from esglite.core.errors import ApiError, bad_request
from esglite.models import CaptchaVerifyPayload
from esglite.security.captcha_guard import CaptchaService, generate_math_challenge, get_captcha_service
from esglite.security.client_ip import get_client_ip
from esglite.security.logger import auth_logger as logger
from esglite.security.rate_limit import captcha_limit, limiter

router = APIRouter(prefix="/auth/captcha", tags=["captcha"])


@router.get("/config")
def captcha_config(captcha: CaptchaService = Depends(get_captcha_service)) -> JSONResponse:
    try:
        config = captcha.get_client_config()
    except Exception:
        logger.exception("CAPTCHA config error")
        raise ApiError(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error")
    return JSONResponse(
        {"provider": config["provider"], "siteKey": config["siteKey"], "settings": config["settings"]}
    )


@router.get("/math")
@limiter.limit(captcha_limit)
def math_challenge(request: Request) -> JSONResponse:
    try:
        challenge = generate_math_challenge()
    except Exception:
        logger.exception("Math CAPTCHA error")
        raise ApiError(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error")
    return JSONResponse({"challenge": challenge["challenge"], "id": challenge["id"]})


@router.post("/verify")
@limiter.limit(captcha_limit)
async def captcha_verify(
    request: Request,
    payload: CaptchaVerifyPayload,
    captcha: CaptchaService = Depends(get_captcha_service),
) -> JSONResponse:
    if not payload.token:
        raise bad_request("captcha_token_required")

    ip = get_client_ip(request)
    try:
        result = await captcha.validate_for_auth(payload.token, ip, payload.action)
    except Exception:
        logger.exception("CAPTCHA verification error")
        raise ApiError(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error")

    if not result.valid:
        logger.warning("CAPTCHA verification failed from IP %s: %s", ip, result.reason)
        raise bad_request(result.reason or "captcha_verification_failed", success=False)
    return JSONResponse({"success": True, "message": "CAPTCHA verified successfully"})
