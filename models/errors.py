"""Structured error codes shared by the REST and WebSocket surfaces.

Error responses follow one JSON shape::

    {"error": ERROR_CODE, "message": "...", "details": {...}}
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Canonical error codes for the doubt service."""

    INVALID_REQUEST = "INVALID_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    DEPENDENCY_FAILURE = "DEPENDENCY_FAILURE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


HTTP_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.DEPENDENCY_FAILURE: 502,
    ErrorCode.INTERNAL_ERROR: 500,
}


def error_body(code: ErrorCode, message: str, details=None) -> dict:
    """Build the JSON error envelope."""
    return {"error": code.value, "message": message, "details": details}
