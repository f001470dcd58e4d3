"""Authenticated principal: who is calling, and in which role."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class UserRole(str, Enum):
    """Platform roles."""

    STUDENT = "student"
    PARENT = "parent"
    EDUCATOR = "educator"
    ADMIN = "admin"
    OPERATION_MANAGER = "operation_manager"


STAFF_ROLES = frozenset({UserRole.ADMIN, UserRole.OPERATION_MANAGER})


class Principal(BaseModel):
    """Caller identity produced by the principal provider."""

    id: str
    role: UserRole
    name: str = ""

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES
