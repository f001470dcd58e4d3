"""Custom exception hierarchy for the doubt service."""

from errors.exceptions import (
    AccessDeniedError,
    ConflictError,
    DependencyFailureError,
    DoubtServiceError,
    InvalidRequestError,
    NotFoundError,
    UnauthorizedError,
)

__all__ = [
    "AccessDeniedError",
    "ConflictError",
    "DependencyFailureError",
    "DoubtServiceError",
    "InvalidRequestError",
    "NotFoundError",
    "UnauthorizedError",
]
