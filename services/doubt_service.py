"""Doubt lifecycle manager: the state machine behind every doubt operation.

Statuses only move forward::

    open → assigned → in_progress → resolved → closed

Primary writes (the doubt, a response, a rating) decide success.  Activity
entries and notifications are scheduled on the :class:`SideEffectRunner`
and never fail the caller.  Auto-assignment and AI answers run inline but
are bounded by their own timeouts and degrade to "nothing happened".
"""

from __future__ import annotations

import logging
import math
from typing import Any

from errors.exceptions import (
    AccessDeniedError,
    ConflictError,
    InvalidRequestError,
    NotFoundError,
)
from models.doubt import (
    PRE_WORK_STATUSES,
    STATUS_RANK,
    AuthorType,
    Doubt,
    DoubtAssignment,
    DoubtDetail,
    DoubtRating,
    DoubtResponse,
    DoubtStatus,
    normalize_tags,
    utcnow,
)
from models.notification import ActivityType, NotificationType
from models.principal import Principal, UserRole
from models.request import (
    DoubtCreateRequest,
    DoubtFilters,
    DoubtPage,
    DoubtUpdateRequest,
    RatingRequest,
    ResponseCreateRequest,
)
from services import access_policy
from services.access_policy import Operation
from services.activity_log import ActivityLog
from services.ai_responder import AIResponseGenerator
from services.auto_assignment import AutoAssignmentEngine
from services.concurrency import SideEffectRunner
from services.doubt_store import DoubtQuery, DoubtStore
from services.notification_dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
MAX_UPDATE_ATTEMPTS = 3
RESPONSE_PREVIEW_CHARS = 100

_GENERAL_FIELDS = ("priority", "tags", "estimated_time_minutes")


def _snapshot(doubt: Doubt, keys: set[str] | None = None) -> dict[str, Any]:
    return doubt.model_dump(mode="json", include=keys, exclude={"response_count"})


def _preview(content: str) -> str:
    if len(content) <= RESPONSE_PREVIEW_CHARS:
        return content
    return content[:RESPONSE_PREVIEW_CHARS] + "..."


class DoubtLifecycleManager:
    def __init__(
        self,
        store: DoubtStore,
        activity: ActivityLog,
        dispatcher: NotificationDispatcher,
        runner: SideEffectRunner,
        auto_assigner: AutoAssignmentEngine | None = None,
        ai: AIResponseGenerator | None = None,
    ) -> None:
        self._store = store
        self._activity = activity
        self._dispatcher = dispatcher
        self._runner = runner
        self._auto_assigner = auto_assigner
        self._ai = ai

    # ── helpers ──────────────────────────────────────────────

    async def _load(self, doubt_id: str) -> Doubt:
        doubt = await self._store.get_doubt(doubt_id)
        if doubt is None:
            raise NotFoundError("Doubt", doubt_id)
        return doubt

    async def _authorize(self, principal: Principal, doubt: Doubt, operation: Operation) -> None:
        linked = False
        if principal.role == UserRole.PARENT and operation == Operation.READ:
            linked = await self._store.is_parent_of(principal.id, doubt.student_id)
        access_policy.authorize(principal, doubt, operation, is_linked_parent=linked)

    # ── create ───────────────────────────────────────────────

    async def create_doubt(self, principal: Principal, request: DoubtCreateRequest) -> Doubt:
        """Store a new ``open`` doubt owned by the caller, then try AI or auto-assignment."""
        if not access_policy.can_create(principal):
            raise AccessDeniedError("Only students can raise doubts")

        doubt = Doubt(
            title=request.title,
            description=request.description,
            subject=request.subject,
            type=request.type,
            priority=request.priority,
            difficulty_level=request.difficulty_level,
            tags=request.tags,
            attachments=request.attachments,
            student_id=principal.id,
            status=DoubtStatus.OPEN,
        )
        doubt = await self._store.insert_doubt(doubt)
        logger.info("Doubt %s created by student %s (%s)", doubt.id, principal.id, doubt.subject)

        self._activity.record(
            doubt.id,
            principal.id,
            ActivityType.DOUBT_CREATED,
            f"Student created a new doubt: {doubt.title}",
            new_values=_snapshot(doubt),
        )
        self._dispatcher.dispatch(
            principal.id,
            NotificationType.NEW_DOUBT,
            "Doubt Submitted",
            f'Your doubt "{doubt.title}" has been submitted.',
            doubt_id=doubt.id,
            metadata={
                "doubt_title": doubt.title,
                "subject": doubt.subject,
                "priority": doubt.priority.value,
                "student_name": principal.name,
            },
        )

        if request.prefer_ai:
            return await self._attach_ai_answer(doubt)
        return await self._auto_assign(doubt)

    async def _attach_ai_answer(self, doubt: Doubt) -> Doubt:
        if self._ai is None:
            logger.info("AI answers disabled; doubt %s stays open", doubt.id)
            return doubt
        answer = await self._ai.generate(doubt)
        if answer is None:
            return doubt

        try:
            response = await self._store.insert_response(
                DoubtResponse(
                    doubt_id=doubt.id,
                    author_id=None,
                    author_type=AuthorType.AI,
                    content=answer.content,
                    ai_generated=True,
                    ai_model=answer.model,
                    ai_confidence_score=answer.confidence,
                )
            )
            updated = await self._store.update_doubt(doubt.id, {"ai_assisted": True})
        except Exception:
            logger.exception("Storing AI answer for doubt %s failed", doubt.id)
            return doubt

        self._activity.record(
            doubt.id,
            None,
            ActivityType.AI_RESPONSE_ADDED,
            "AI generated an answer",
            new_values={"response_id": response.id, "ai_model": answer.model},
        )
        self._dispatcher.dispatch(
            doubt.student_id,
            NotificationType.RESPONSE_ADDED,
            "AI Answer Ready",
            f'An AI-generated answer was added to your doubt "{doubt.title}".',
            doubt_id=doubt.id,
            metadata={"response_id": response.id, "ai_generated": True},
        )
        return updated or doubt.model_copy(update={"ai_assisted": True})

    async def _auto_assign(self, doubt: Doubt) -> Doubt:
        if self._auto_assigner is None:
            return doubt
        assigned = await self._auto_assigner.assign(doubt.id, doubt.subject)
        if assigned is None:
            self._runner.spawn(
                self._dispatcher.notify_specialists(doubt), label="notify:specialists"
            )
            return doubt

        self._dispatcher.dispatch(
            assigned.assigned_educator_id,
            NotificationType.DOUBT_ASSIGNED,
            "New Doubt Assigned",
            f'You have been assigned the doubt "{doubt.title}".',
            doubt_id=doubt.id,
            metadata={"doubt_title": doubt.title, "subject": doubt.subject},
        )
        return assigned

    # ── read ─────────────────────────────────────────────────

    async def list_doubts(
        self,
        principal: Principal,
        filters: DoubtFilters | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> DoubtPage:
        """One page of the doubts visible to *principal*, newest first."""
        if page < 1:
            raise InvalidRequestError(
                "Invalid pagination", [{"field": "page", "message": "must be >= 1"}]
            )
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise InvalidRequestError(
                "Invalid pagination",
                [{"field": "limit", "message": f"must be between 1 and {MAX_PAGE_SIZE}"}],
            )
        filters = filters or DoubtFilters()

        child_ids = None
        if principal.role == UserRole.PARENT:
            child_ids = await self._store.children_of(principal.id)
            if not child_ids:
                return DoubtPage(items=[], total=0, page=page, limit=limit, total_pages=0)

        by_person = access_policy.can_filter_by_person(principal)
        query = DoubtQuery(
            **access_policy.list_scope(principal, child_ids),
            status=filters.status,
            subject=filters.subject,
            priority=filters.priority,
            student_id=filters.student_id if by_person else None,
            educator_id=filters.educator_id if by_person else None,
            search=filters.search,
        )
        items, total = await self._store.query_doubts(query, (page - 1) * limit, limit)
        return DoubtPage(
            items=items,
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    async def get_doubt(self, principal: Principal, doubt_id: str) -> DoubtDetail:
        doubt = await self._load(doubt_id)
        await self._authorize(principal, doubt, Operation.READ)
        responses = await self._store.list_responses(doubt_id)
        ratings = await self._store.list_ratings(doubt_id)
        return DoubtDetail(
            **doubt.model_dump(exclude={"response_count"}),
            response_count=len(responses),
            responses=responses,
            ratings=ratings,
        )

    # ── update ───────────────────────────────────────────────

    async def update_doubt(
        self, principal: Principal, doubt_id: str, request: DoubtUpdateRequest
    ) -> Doubt:
        """Apply the fields present in *request*.

        Status changes are compare-and-set against the status that was
        validated; a lost race re-reads and re-validates before giving up.
        """
        supplied = request.model_fields_set
        if not supplied:
            raise InvalidRequestError("No updatable fields supplied")

        for attempt in range(1, MAX_UPDATE_ATTEMPTS + 1):
            current = await self._load(doubt_id)
            changes = await self._plan_update(principal, current, request, supplied)
            if not changes:
                return current

            updated = await self._store.update_doubt(
                doubt_id, changes, expected_status=current.status
            )
            if updated is not None:
                self._after_update(principal, current, updated, changes)
                return updated
            logger.info(
                "Doubt %s changed during update (attempt %d/%d)",
                doubt_id, attempt, MAX_UPDATE_ATTEMPTS,
            )

        raise ConflictError("Doubt was modified concurrently, please retry")

    async def _plan_update(
        self,
        principal: Principal,
        current: Doubt,
        request: DoubtUpdateRequest,
        supplied: set[str],
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        now = utcnow()
        await self._authorize(principal, current, Operation.UPDATE_FIELDS)

        for field in _GENERAL_FIELDS:
            if field not in supplied:
                continue
            value = getattr(request, field)
            if field == "priority" and value is None:
                raise InvalidRequestError(
                    "Invalid update", [{"field": "priority", "message": "may not be null"}]
                )
            if field == "tags":
                value = normalize_tags(value or [])
            if value != getattr(current, field):
                changes[field] = value

        if "assigned_educator_id" in supplied:
            await self._authorize(principal, current, Operation.ASSIGN)
            educator_id = request.assigned_educator_id
            if not educator_id:
                raise InvalidRequestError(
                    "Invalid update",
                    [{"field": "assigned_educator_id", "message": "an educator id is required"}],
                )
            if educator_id != current.assigned_educator_id:
                if current.status in (DoubtStatus.RESOLVED, DoubtStatus.CLOSED):
                    raise ConflictError(
                        f"Cannot reassign a {current.status.value} doubt",
                        details={"status": current.status.value},
                    )
                user = await self._store.get_user(educator_id)
                if user is None or user.get("role") != UserRole.EDUCATOR.value:
                    raise InvalidRequestError(
                        "Invalid update",
                        [{"field": "assigned_educator_id", "message": "user is not an educator"}],
                    )
                changes["assigned_educator_id"] = educator_id
                changes["assigned_at"] = now
                if current.status == DoubtStatus.OPEN:
                    changes["status"] = DoubtStatus.ASSIGNED

        if "status" in supplied and request.status is None:
            raise InvalidRequestError(
                "Invalid update", [{"field": "status", "message": "may not be null"}]
            )
        if "status" in supplied and request.status != current.status:
            target = request.status
            await self._authorize(principal, current, Operation.UPDATE_STATUS)
            if current.status == DoubtStatus.CLOSED:
                raise ConflictError("Closed doubts cannot change status", details={"status": "closed"})
            if STATUS_RANK[target] < STATUS_RANK[current.status]:
                raise ConflictError(
                    f"Cannot move a doubt from {current.status.value} back to {target.value}",
                    details={"from": current.status.value, "to": target.value},
                )
            if target not in access_policy.allowed_status_targets(principal, current):
                raise AccessDeniedError(f"Not allowed to set status '{target.value}'")
            educator = changes.get("assigned_educator_id") or current.assigned_educator_id
            if target == DoubtStatus.ASSIGNED and not educator:
                raise InvalidRequestError(
                    "Invalid update",
                    [{"field": "status", "message": "'assigned' requires an assigned educator"}],
                )
            changes["status"] = target
            if target == DoubtStatus.RESOLVED:
                changes["resolved_at"] = now
            elif target == DoubtStatus.CLOSED:
                changes["closed_at"] = now

        return changes

    def _after_update(
        self, principal: Principal, before: Doubt, after: Doubt, changes: dict[str, Any]
    ) -> None:
        keys = set(changes)
        status_changed = "status" in changes and before.status != after.status
        new_educator = changes.get("assigned_educator_id")

        if new_educator and before.assigned_educator_id:
            kind, text = ActivityType.DOUBT_REASSIGNED, "Doubt reassigned to another educator"
        elif new_educator:
            kind, text = ActivityType.DOUBT_ASSIGNED, "Doubt assigned to educator"
        elif status_changed:
            kind, text = ActivityType.STATUS_CHANGED, (
                f"Status changed from {before.status.value} to {after.status.value}"
            )
        else:
            kind, text = ActivityType.DOUBT_UPDATED, f"Doubt updated by {principal.role.value}"
        self._activity.record(
            after.id,
            principal.id,
            kind,
            text,
            old_values=_snapshot(before, keys),
            new_values=_snapshot(after, keys),
            metadata={"assigned_by": principal.id} if new_educator else None,
        )

        if new_educator:
            self._runner.spawn(
                self._store.insert_assignment(
                    DoubtAssignment(
                        doubt_id=after.id,
                        educator_id=new_educator,
                        assigned_by=principal.id,
                        assigned_at=after.assigned_at or utcnow(),
                    )
                ),
                label="assignment-history",
            )
            self._dispatcher.dispatch(
                new_educator,
                NotificationType.DOUBT_ASSIGNED,
                "New Doubt Assigned",
                f'You have been assigned the doubt "{after.title}".',
                doubt_id=after.id,
                metadata={"doubt_title": after.title, "subject": after.subject},
            )

        if not status_changed:
            return
        if after.status == DoubtStatus.RESOLVED:
            self._runner.spawn(
                self._dispatcher.notify_participants(
                    after,
                    NotificationType.DOUBT_RESOLVED,
                    "Doubt Resolved",
                    f'The doubt "{after.title}" has been resolved.',
                    exclude_user_id=principal.id,
                ),
                label="notify:doubt_resolved",
            )
        elif after.status == DoubtStatus.CLOSED:
            self._runner.spawn(
                self._dispatcher.notify_participants(
                    after,
                    NotificationType.DOUBT_CLOSED,
                    "Doubt Closed",
                    f'The doubt "{after.title}" has been closed.',
                    exclude_user_id=principal.id,
                ),
                label="notify:doubt_closed",
            )
        elif after.status == DoubtStatus.IN_PROGRESS:
            self._notify_work_started(after, actor_id=principal.id)

    def _notify_work_started(self, doubt: Doubt, actor_id: str | None) -> None:
        if doubt.student_id == actor_id:
            return
        self._dispatcher.dispatch(
            doubt.student_id,
            NotificationType.DOUBT_IN_PROGRESS,
            "Educator Started Working",
            f'An educator is now working on your doubt "{doubt.title}".',
            doubt_id=doubt.id,
            metadata={"doubt_title": doubt.title},
        )

    # ── respond ──────────────────────────────────────────────

    async def add_response(
        self, principal: Principal, doubt_id: str, request: ResponseCreateRequest
    ) -> DoubtResponse:
        """Append a reply; the first non-owner reply moves open/assigned → in_progress."""
        doubt = await self._load(doubt_id)
        await self._authorize(principal, doubt, Operation.RESPOND)
        if doubt.status == DoubtStatus.CLOSED:
            raise ConflictError("Closed doubts do not accept responses", details={"status": "closed"})

        if request.parent_response_id:
            thread = await self._store.list_responses(doubt_id)
            if not any(r.id == request.parent_response_id for r in thread):
                raise InvalidRequestError(
                    "Invalid response",
                    [{"field": "parent_response_id", "message": "not a response in this doubt"}],
                )

        response = await self._store.insert_response(
            DoubtResponse(
                doubt_id=doubt_id,
                author_id=principal.id,
                author_type=AuthorType(principal.role.value),
                content=request.content,
                attachments=request.attachments,
                parent_response_id=request.parent_response_id,
            )
        )

        moved: Doubt | None = None
        if principal.id != doubt.student_id and doubt.status in PRE_WORK_STATUSES:
            try:
                moved = await self._store.transition_status(
                    doubt_id, PRE_WORK_STATUSES, DoubtStatus.IN_PROGRESS
                )
            except Exception:
                logger.exception("in_progress transition for doubt %s failed", doubt_id)
        current = moved or doubt

        self._activity.record(
            doubt_id,
            principal.id,
            ActivityType.RESPONSE_ADDED,
            f"{principal.role.value} added a response",
            new_values={"response_id": response.id, "author_type": response.author_type.value},
            metadata={"status_changed_to": DoubtStatus.IN_PROGRESS.value} if moved else None,
        )
        if moved is not None:
            self._notify_work_started(moved, actor_id=principal.id)

        self._runner.spawn(
            self._dispatcher.notify_participants(
                current,
                NotificationType.RESPONSE_ADDED,
                "New Response Added",
                f'A new response has been added to the doubt "{current.title}".',
                exclude_user_id=principal.id,
                metadata={"response_id": response.id},
            ),
            label="notify:response_added",
        )
        self._runner.spawn(
            self._dispatcher.publish_to_doubt(
                doubt_id,
                "new_response",
                {
                    "doubt_id": doubt_id,
                    "response_id": response.id,
                    "author_name": principal.name,
                    "author_type": response.author_type.value,
                    "content": _preview(response.content),
                    "created_at": response.created_at.isoformat(),
                },
            ),
            label="realtime:new_response",
        )
        return response

    # ── rate ─────────────────────────────────────────────────

    async def rate_doubt(
        self, principal: Principal, doubt_id: str, request: RatingRequest
    ) -> DoubtRating:
        """Upsert the owner's rating of a resolved doubt."""
        doubt = await self._load(doubt_id)
        await self._authorize(principal, doubt, Operation.RATE)

        rating = await self._store.upsert_rating(
            DoubtRating(
                doubt_id=doubt_id,
                student_id=principal.id,
                rating=request.rating,
                feedback=request.feedback,
                response_quality_rating=request.response_quality_rating,
                response_speed_rating=request.response_speed_rating,
                educator_rating=request.educator_rating,
            ),
            required_status=DoubtStatus.RESOLVED,
        )
        if rating is None:
            current = await self._load(doubt_id)
            raise ConflictError(
                "Only resolved doubts can be rated",
                details={"status": current.status.value},
            )
        self._activity.record(
            doubt_id,
            principal.id,
            ActivityType.RATING_ADDED,
            f"Student rated the doubt resolution: {rating.rating}/5",
            new_values=rating.model_dump(mode="json", exclude={"id"}),
        )
        if doubt.assigned_educator_id:
            self._dispatcher.dispatch(
                doubt.assigned_educator_id,
                NotificationType.RATING_ADDED,
                "Doubt Rated",
                f'Your resolution of "{doubt.title}" received a {rating.rating}/5 rating.',
                doubt_id=doubt_id,
                metadata={"doubt_title": doubt.title, "rating": rating.rating},
            )
        return rating
