from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from esglite.db import get_db
from esglite.security.attempts import SAFE_DEFAULT_STATUS, AttemptKey, BruteForceGuard
from esglite.security.client_ip import get_client_ip
from esglite.security.logger import auth_logger as logger

router = APIRouter(prefix="/auth/brute-force", tags=["auth"])


@router.post("/check")
async def brute_force_check(request: Request, db: Session = Depends(get_db)) -> JSONResponse:
    """
    Report whether the caller may attempt ``endpoint`` right now.

    Body: ``{"identifier"?: str, "endpoint"?: str}`` (endpoint defaults to
    ``"auth"``). Any failure, including an unreadable body, answers with the
    permissive default instead of an error status.
    """
    try:
        body = await request.json() if await request.body() else {}
        if not isinstance(body, dict):
            raise ValueError("body must be a JSON object")
        identifier = body.get("identifier")
        endpoint = body.get("endpoint") or "auth"
        if identifier is not None and not isinstance(identifier, str):
            raise ValueError("identifier must be a string")
        if not isinstance(endpoint, str):
            raise ValueError("endpoint must be a string")
        key = AttemptKey.build(get_client_ip(request), identifier, endpoint)
        status_ = BruteForceGuard(db).check(key)
    except Exception:
        logger.exception("Brute force check error")
        status_ = SAFE_DEFAULT_STATUS
    return JSONResponse(status_.to_dict())
