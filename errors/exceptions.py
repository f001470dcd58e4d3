"""Domain-specific exceptions for the doubt service.

These exceptions let the lifecycle manager and the API layer distinguish
between failure modes: caller mistakes abort the operation and surface as
4xx responses, collaborator failures surface as 502 only when they break
the primary write.
"""

from __future__ import annotations

from typing import Any

from models.errors import HTTP_STATUS_BY_CODE, ErrorCode


class DoubtServiceError(Exception):
    """Base class for all doubt-service errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return HTTP_STATUS_BY_CODE[self.code]


class InvalidRequestError(DoubtServiceError):
    """Malformed or out-of-range input.

    ``details`` is a list of ``{"field": ..., "message": ...}`` entries.
    """

    code = ErrorCode.INVALID_REQUEST


class UnauthorizedError(DoubtServiceError):
    """No credential, or a credential that does not verify."""

    code = ErrorCode.UNAUTHORIZED


class AccessDeniedError(DoubtServiceError):
    """The principal may not perform this operation on this resource."""

    code = ErrorCode.FORBIDDEN


class NotFoundError(DoubtServiceError):
    """A referenced resource id does not resolve."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, resource: str, resource_id: str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} '{resource_id}' not found")


class ConflictError(DoubtServiceError):
    """The resource is in a state that forbids the operation."""

    code = ErrorCode.CONFLICT


class DependencyFailureError(DoubtServiceError):
    """A downstream collaborator (store, AI, ranking, realtime) failed."""

    code = ErrorCode.DEPENDENCY_FAILURE

    def __init__(self, dependency: str, message: str) -> None:
        self.dependency = dependency
        super().__init__(f"{dependency} failed: {message}")
