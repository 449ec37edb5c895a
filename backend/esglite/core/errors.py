"""
API error type with a stable, machine-readable error code.

Handlers raise ``ApiError``; ``esglite.main`` renders it as
``{"error": <code>, **extra}`` so clients can branch on the code instead of
parsing free text.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

UNAUTHORIZED = "unauthorized"
INTERNAL_ERROR = "internal_error"
INVALID_PAYLOAD = "invalid_payload"
TOO_MANY_ATTEMPTS = "too_many_attempts"


class ApiError(HTTPException):
    def __init__(
        self,
        status_code: int,
        error: str,
        headers: Optional[Dict[str, str]] = None,
        **extra: Any,
    ) -> None:
        super().__init__(status_code=status_code, detail=error, headers=headers)
        self.error = error
        self.extra = extra

    def body(self) -> Dict[str, Any]:
        return {"error": self.error, **self.extra}


def unauthorized() -> ApiError:
    return ApiError(status.HTTP_401_UNAUTHORIZED, UNAUTHORIZED)


def bad_request(error: str, **extra: Any) -> ApiError:
    return ApiError(status.HTTP_400_BAD_REQUEST, error, **extra)


__all__ = [
    "ApiError",
    "INTERNAL_ERROR",
    "INVALID_PAYLOAD",
    "TOO_MANY_ATTEMPTS",
    "UNAUTHORIZED",
    "bad_request",
    "unauthorized",
]
