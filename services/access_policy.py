"""Access policy: who may do what to a doubt.

Every check reduces a (principal, doubt) pair to the set of relationships
the principal holds on that doubt, then compares it with the capability
set of the requested operation.  Nothing here touches the store: the
caller resolves parent links up front and passes ``is_linked_parent``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from errors.exceptions import AccessDeniedError, ConflictError
from models.doubt import Doubt, DoubtStatus
from models.principal import Principal, UserRole


class Operation(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE_FIELDS = "update_fields"
    UPDATE_STATUS = "update_status"
    ASSIGN = "assign"
    RESPOND = "respond"
    RATE = "rate"


class Relation(str, Enum):
    OWNER = "owner"
    ASSIGNEE = "assignee"
    LINKED_PARENT = "linked_parent"
    STAFF = "staff"
    EDUCATOR = "educator"


CAPABILITIES: dict[Operation, frozenset[Relation]] = {
    Operation.READ: frozenset(
        {Relation.OWNER, Relation.ASSIGNEE, Relation.LINKED_PARENT, Relation.STAFF}
    ),
    Operation.UPDATE_FIELDS: frozenset({Relation.OWNER, Relation.ASSIGNEE, Relation.STAFF}),
    Operation.UPDATE_STATUS: frozenset({Relation.OWNER, Relation.ASSIGNEE, Relation.STAFF}),
    Operation.ASSIGN: frozenset({Relation.STAFF}),
    # Any educator may answer: the thread is an open Q&A pool.
    Operation.RESPOND: frozenset(
        {Relation.OWNER, Relation.ASSIGNEE, Relation.STAFF, Relation.EDUCATOR}
    ),
    Operation.RATE: frozenset({Relation.OWNER}),
}

# Status targets each relationship may set explicitly.
STATUS_TARGETS: dict[Relation, frozenset[DoubtStatus]] = {
    Relation.STAFF: frozenset(DoubtStatus),
    Relation.ASSIGNEE: frozenset(
        {DoubtStatus.IN_PROGRESS, DoubtStatus.RESOLVED, DoubtStatus.CLOSED}
    ),
    Relation.OWNER: frozenset({DoubtStatus.RESOLVED, DoubtStatus.CLOSED}),
}


def relations(
    principal: Principal, doubt: Doubt, *, is_linked_parent: bool = False
) -> frozenset[Relation]:
    held: set[Relation] = set()
    if principal.role == UserRole.STUDENT and doubt.student_id == principal.id:
        held.add(Relation.OWNER)
    if principal.role == UserRole.EDUCATOR:
        held.add(Relation.EDUCATOR)
        if doubt.assigned_educator_id == principal.id:
            held.add(Relation.ASSIGNEE)
    if principal.role == UserRole.PARENT and is_linked_parent:
        held.add(Relation.LINKED_PARENT)
    if principal.is_staff:
        held.add(Relation.STAFF)
    return frozenset(held)


def can_create(principal: Principal) -> bool:
    return principal.role == UserRole.STUDENT


def can_access(
    principal: Principal,
    doubt: Doubt,
    operation: Operation,
    *,
    is_linked_parent: bool = False,
) -> bool:
    """Pure predicate: may *principal* perform *operation* on *doubt*?"""
    if operation == Operation.CREATE:
        return can_create(principal)
    held = relations(principal, doubt, is_linked_parent=is_linked_parent)
    if not held & CAPABILITIES[operation]:
        return False
    if operation == Operation.RATE:
        return doubt.status == DoubtStatus.RESOLVED
    return True


def allowed_status_targets(principal: Principal, doubt: Doubt) -> frozenset[DoubtStatus]:
    targets: set[DoubtStatus] = set()
    for rel in relations(principal, doubt):
        targets |= STATUS_TARGETS.get(rel, frozenset())
    return frozenset(targets)


def authorize(
    principal: Principal,
    doubt: Doubt,
    operation: Operation,
    *,
    is_linked_parent: bool = False,
) -> None:
    """Raise unless :func:`can_access` allows the operation.

    Rating by the owner of a doubt that is not yet resolved is a
    :class:`ConflictError`; every other refusal is :class:`AccessDeniedError`.
    """
    if can_access(principal, doubt, operation, is_linked_parent=is_linked_parent):
        return
    if operation == Operation.RATE and Relation.OWNER in relations(principal, doubt):
        raise ConflictError(
            "Only resolved doubts can be rated",
            details={"status": doubt.status.value},
        )
    raise AccessDeniedError(f"Not allowed to {operation.value} this doubt")


def list_scope(principal: Principal, child_ids: list[str] | None = None) -> dict[str, Any]:
    """Default visibility for list queries, as ``DoubtQuery`` keyword arguments.

    Parents see their linked children's doubts only; an empty link set
    yields an empty ``student_ids`` scope (an empty page, not an error).
    """
    if principal.is_staff:
        return {}
    if principal.role == UserRole.STUDENT:
        return {"student_ids": frozenset({principal.id})}
    if principal.role == UserRole.EDUCATOR:
        return {"participant_id": principal.id}
    if principal.role == UserRole.PARENT:
        return {"student_ids": frozenset(child_ids or ())}
    return {"student_ids": frozenset()}


def can_filter_by_person(principal: Principal) -> bool:
    """``student_id`` / ``educator_id`` list filters are honoured for staff and educators."""
    return principal.is_staff or principal.role == UserRole.EDUCATOR
