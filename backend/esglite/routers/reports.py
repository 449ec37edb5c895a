from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from esglite.core.errors import ApiError
from esglite.db import get_db
from esglite.db_models import User
from esglite.security import require_user
from esglite.security.logger import auth_logger as logger
from esglite.services.report_validator import validate_organization_for_report

router = APIRouter(prefix="/reports", tags=["reports"])


@router.get("/validate")
def validate_report(user: User = Depends(require_user), db: Session = Depends(get_db)) -> dict:
    """Is the organization's data complete enough to generate a 296-FZ report?"""
    try:
        result = validate_organization_for_report(db, user.id)
    except Exception:
        logger.exception("Report validation failed for user %s", user.id)
        raise ApiError(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error")
    return {"success": True, **result.to_dict()}
