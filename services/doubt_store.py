"""Doubt persistence: abstract store interface plus an in-memory backend.

The lifecycle manager only talks to :class:`DoubtStore`.  Two backends:

- :class:`InMemoryDoubtStore`: single-process store for development and tests.
- ``services.supabase_store.SupabaseDoubtStore``: PostgREST over HTTP.

Guarded writes (``update_doubt`` with ``expected_status``,
``transition_status``, ``assign_educator``) are compare-and-set operations:
they return ``None`` when the guard does not hold instead of overwriting.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from models.doubt import (
    Doubt,
    DoubtAssignment,
    DoubtPriority,
    DoubtRating,
    DoubtResponse,
    DoubtStatus,
    EducatorSpecialization,
    EducatorSuggestion,
    utcnow,
)
from models.notification import ActivityLogEntry, DoubtNotification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DoubtQuery:
    """Store-level doubt query: visibility scope plus optional filters.

    ``student_ids`` restricts owners (parent scope); ``participant_id``
    matches doubts assigned to *or* raised by that user (educator scope).
    """

    student_ids: frozenset[str] | None = None
    participant_id: str | None = None
    status: DoubtStatus | None = None
    subject: str | None = None
    priority: DoubtPriority | None = None
    student_id: str | None = None
    educator_id: str | None = None
    search: str | None = None


# ── Abstract Interface ───────────────────────────────────────


class DoubtStore(ABC):
    """Abstract doubt store: implement for different backends."""

    # -- users / relationships ---------------------------------------------

    @abstractmethod
    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        """Return ``{"id", "role", "name", ...}`` or None."""

    @abstractmethod
    async def children_of(self, parent_id: str) -> list[str]:
        """Student ids linked to a parent."""

    @abstractmethod
    async def parents_of(self, student_id: str) -> list[str]:
        """Parent ids linked to a student."""

    @abstractmethod
    async def is_parent_of(self, parent_id: str, student_id: str) -> bool:
        ...

    # -- doubts ------------------------------------------------------------

    @abstractmethod
    async def insert_doubt(self, doubt: Doubt) -> Doubt:
        ...

    @abstractmethod
    async def get_doubt(self, doubt_id: str) -> Doubt | None:
        ...

    @abstractmethod
    async def query_doubts(
        self, query: DoubtQuery, offset: int, limit: int
    ) -> tuple[list[Doubt], int]:
        """Return one page (created_at descending) and the total match count."""

    @abstractmethod
    async def update_doubt(
        self,
        doubt_id: str,
        changes: dict[str, Any],
        expected_status: DoubtStatus | None = None,
    ) -> Doubt | None:
        """Apply *changes*; when *expected_status* is set, only if it still holds."""

    @abstractmethod
    async def transition_status(
        self,
        doubt_id: str,
        from_statuses: Iterable[DoubtStatus],
        to_status: DoubtStatus,
    ) -> Doubt | None:
        """Atomically move to *to_status* if the current status is in *from_statuses*."""

    @abstractmethod
    async def assign_educator(
        self, doubt_id: str, educator_id: str, assigned_by: str | None
    ) -> Doubt | None:
        """Assign an ``open`` doubt (→ ``assigned``) and record the assignment."""

    @abstractmethod
    async def insert_assignment(self, assignment: DoubtAssignment) -> None:
        ...

    @abstractmethod
    async def doubts_created_between(self, start: datetime, end: datetime) -> list[Doubt]:
        ...

    # -- responses / ratings -------------------------------------------------

    @abstractmethod
    async def insert_response(self, response: DoubtResponse) -> DoubtResponse:
        ...

    @abstractmethod
    async def list_responses(self, doubt_id: str) -> list[DoubtResponse]:
        """Thread in created_at ascending order, ties in insertion order."""

    @abstractmethod
    async def count_responses(self, doubt_id: str) -> int:
        ...

    @abstractmethod
    async def upsert_rating(
        self, rating: DoubtRating, required_status: DoubtStatus | None = None
    ) -> DoubtRating | None:
        """Insert or replace the rating for (doubt_id, student_id).

        With *required_status* the write only happens while the doubt is in
        that status, atomically with respect to status transitions; ``None``
        is returned when the guard does not hold.
        """

    @abstractmethod
    async def list_ratings(self, doubt_id: str) -> list[DoubtRating]:
        ...

    @abstractmethod
    async def ratings_between(self, start: datetime, end: datetime) -> list[DoubtRating]:
        ...

    # -- notifications -------------------------------------------------------

    @abstractmethod
    async def insert_notification(self, notification: DoubtNotification) -> DoubtNotification:
        ...

    @abstractmethod
    async def mark_notifications_read(
        self, notification_ids: list[str], user_id: str, read_at: datetime
    ) -> int:
        """Flip is_read for the user's own notifications.  Returns rows updated."""

    @abstractmethod
    async def count_unread(self, user_id: str) -> int:
        ...

    @abstractmethod
    async def list_notifications(
        self, user_id: str, limit: int, offset: int
    ) -> list[DoubtNotification]:
        """Newest first."""

    @abstractmethod
    async def delete_notification(self, notification_id: str, user_id: str) -> bool:
        ...

    @abstractmethod
    async def purge_notifications_before(self, cutoff: datetime) -> int:
        ...

    # -- activity / educators -------------------------------------------------

    @abstractmethod
    async def insert_activity(self, entry: ActivityLogEntry) -> None:
        ...

    @abstractmethod
    async def active_specialists(self, subject: str) -> list[EducatorSpecialization]:
        ...

    @abstractmethod
    async def suggest_educators(self, subject: str) -> list[EducatorSuggestion]:
        """Ranked candidates for a subject, best first."""

    # -- lifecycle -----------------------------------------------------------

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# ── In-Memory Implementation ────────────────────────────────


# Ranking weights for the in-memory suggestion procedure.
_PROFICIENCY_WEIGHT = 20.0
_EXPERIENCE_WEIGHT = 2.0
_EXPERIENCE_CAP = 10
_LOAD_PENALTY = 5.0
_RESPONSIVENESS_WEIGHT = 1.0
_RESPONSIVENESS_CAP = 10
_RESPONSIVENESS_WINDOW = timedelta(days=7)

_OPEN_LOAD_STATUSES = frozenset(
    {DoubtStatus.OPEN, DoubtStatus.ASSIGNED, DoubtStatus.IN_PROGRESS}
)


class InMemoryDoubtStore(DoubtStore):
    """Dict-backed store.  Guarded writes run under an ``asyncio.Lock``.

    Suitable for single-instance deployments and tests.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._users: dict[str, dict[str, Any]] = {}
        self._parent_links: dict[str, set[str]] = {}
        self._doubts: dict[str, Doubt] = {}
        self._responses: dict[str, list[DoubtResponse]] = {}
        self._ratings: dict[tuple[str, str], DoubtRating] = {}
        self._notifications: dict[str, DoubtNotification] = {}
        self._activity: list[ActivityLogEntry] = []
        self._assignments: list[DoubtAssignment] = []
        self._specializations: list[EducatorSpecialization] = []

    # -- seeding helpers (memory backend only) ------------------------------

    def add_user(self, user_id: str, role: str, name: str = "", email: str = "") -> None:
        self._users[user_id] = {"id": user_id, "role": role, "name": name, "email": email}

    def link_parent(self, parent_id: str, student_id: str) -> None:
        self._parent_links.setdefault(parent_id, set()).add(student_id)

    def add_specialization(self, spec: EducatorSpecialization) -> None:
        self._specializations.append(spec)

    @property
    def activity(self) -> list[ActivityLogEntry]:
        return list(self._activity)

    @property
    def assignments(self) -> list[DoubtAssignment]:
        return list(self._assignments)

    # -- users / relationships ---------------------------------------------

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        user = self._users.get(user_id)
        return dict(user) if user else None

    async def children_of(self, parent_id: str) -> list[str]:
        return sorted(self._parent_links.get(parent_id, ()))

    async def parents_of(self, student_id: str) -> list[str]:
        return sorted(p for p, kids in self._parent_links.items() if student_id in kids)

    async def is_parent_of(self, parent_id: str, student_id: str) -> bool:
        return student_id in self._parent_links.get(parent_id, ())

    # -- doubts ------------------------------------------------------------

    async def insert_doubt(self, doubt: Doubt) -> Doubt:
        self._doubts[doubt.id] = doubt.model_copy(deep=True)
        self._responses.setdefault(doubt.id, [])
        return doubt.model_copy(deep=True)

    async def get_doubt(self, doubt_id: str) -> Doubt | None:
        doubt = self._doubts.get(doubt_id)
        return doubt.model_copy(deep=True) if doubt else None

    def _matches(self, doubt: Doubt, q: DoubtQuery) -> bool:
        if q.student_ids is not None and doubt.student_id not in q.student_ids:
            return False
        if q.participant_id is not None and q.participant_id not in (
            doubt.assigned_educator_id,
            doubt.student_id,
        ):
            return False
        if q.status is not None and doubt.status != q.status:
            return False
        if q.subject is not None and doubt.subject != q.subject:
            return False
        if q.priority is not None and doubt.priority != q.priority:
            return False
        if q.student_id is not None and doubt.student_id != q.student_id:
            return False
        if q.educator_id is not None and doubt.assigned_educator_id != q.educator_id:
            return False
        if q.search:
            needle = q.search.lower()
            if needle not in doubt.title.lower() and needle not in doubt.description.lower():
                return False
        return True

    async def query_doubts(
        self, query: DoubtQuery, offset: int, limit: int
    ) -> tuple[list[Doubt], int]:
        # Newest insertion first so equal timestamps keep a stable order.
        matched = [d for d in reversed(self._doubts.values()) if self._matches(d, query)]
        matched.sort(key=lambda d: d.created_at, reverse=True)
        page = []
        for doubt in matched[offset:offset + limit]:
            item = doubt.model_copy(deep=True)
            item.response_count = len(self._responses.get(doubt.id, ()))
            page.append(item)
        return page, len(matched)

    async def update_doubt(
        self,
        doubt_id: str,
        changes: dict[str, Any],
        expected_status: DoubtStatus | None = None,
    ) -> Doubt | None:
        async with self._lock:
            current = self._doubts.get(doubt_id)
            if current is None:
                return None
            if expected_status is not None and current.status != expected_status:
                return None
            updated = current.model_copy(update={**changes, "updated_at": utcnow()}, deep=True)
            self._doubts[doubt_id] = updated
            return updated.model_copy(deep=True)

    async def transition_status(
        self,
        doubt_id: str,
        from_statuses: Iterable[DoubtStatus],
        to_status: DoubtStatus,
    ) -> Doubt | None:
        allowed = frozenset(from_statuses)
        async with self._lock:
            current = self._doubts.get(doubt_id)
            if current is None or current.status not in allowed:
                return None
            updated = current.model_copy(
                update={"status": to_status, "updated_at": utcnow()}, deep=True
            )
            self._doubts[doubt_id] = updated
            return updated.model_copy(deep=True)

    async def assign_educator(
        self, doubt_id: str, educator_id: str, assigned_by: str | None
    ) -> Doubt | None:
        async with self._lock:
            current = self._doubts.get(doubt_id)
            if current is None or current.status != DoubtStatus.OPEN:
                return None
            now = utcnow()
            updated = current.model_copy(
                update={
                    "assigned_educator_id": educator_id,
                    "assigned_at": now,
                    "status": DoubtStatus.ASSIGNED,
                    "updated_at": now,
                },
                deep=True,
            )
            self._doubts[doubt_id] = updated
            self._assignments.append(
                DoubtAssignment(
                    doubt_id=doubt_id,
                    educator_id=educator_id,
                    assigned_by=assigned_by,
                    assigned_at=now,
                )
            )
            return updated.model_copy(deep=True)

    async def insert_assignment(self, assignment: DoubtAssignment) -> None:
        self._assignments.append(assignment.model_copy(deep=True))

    async def doubts_created_between(self, start: datetime, end: datetime) -> list[Doubt]:
        return [
            d.model_copy(deep=True)
            for d in self._doubts.values()
            if start <= d.created_at <= end
        ]

    # -- responses / ratings -------------------------------------------------

    async def insert_response(self, response: DoubtResponse) -> DoubtResponse:
        self._responses.setdefault(response.doubt_id, []).append(response.model_copy(deep=True))
        return response.model_copy(deep=True)

    async def list_responses(self, doubt_id: str) -> list[DoubtResponse]:
        thread = [r.model_copy(deep=True) for r in self._responses.get(doubt_id, ())]
        # list.sort is stable: equal timestamps keep insertion order
        thread.sort(key=lambda r: r.created_at)
        return thread

    async def count_responses(self, doubt_id: str) -> int:
        return len(self._responses.get(doubt_id, ()))

    async def upsert_rating(
        self, rating: DoubtRating, required_status: DoubtStatus | None = None
    ) -> DoubtRating | None:
        async with self._lock:
            if required_status is not None:
                doubt = self._doubts.get(rating.doubt_id)
                if doubt is None or doubt.status != required_status:
                    return None
            key = (rating.doubt_id, rating.student_id)
            existing = self._ratings.get(key)
            if existing is not None:
                rating = rating.model_copy(
                    update={
                        "id": existing.id,
                        "created_at": existing.created_at,
                        "updated_at": utcnow(),
                    }
                )
            self._ratings[key] = rating.model_copy(deep=True)
            return rating.model_copy(deep=True)

    async def list_ratings(self, doubt_id: str) -> list[DoubtRating]:
        return [
            r.model_copy(deep=True)
            for (did, _), r in self._ratings.items()
            if did == doubt_id
        ]

    async def ratings_between(self, start: datetime, end: datetime) -> list[DoubtRating]:
        return [
            r.model_copy(deep=True)
            for r in self._ratings.values()
            if start <= r.created_at <= end
        ]

    # -- notifications -------------------------------------------------------

    async def insert_notification(self, notification: DoubtNotification) -> DoubtNotification:
        self._notifications[notification.id] = notification.model_copy(deep=True)
        return notification.model_copy(deep=True)

    async def mark_notifications_read(
        self, notification_ids: list[str], user_id: str, read_at: datetime
    ) -> int:
        updated = 0
        async with self._lock:
            for nid in notification_ids:
                n = self._notifications.get(nid)
                if n is None or n.user_id != user_id:
                    continue
                n.is_read = True
                n.read_at = read_at
                updated += 1
        return updated

    async def count_unread(self, user_id: str) -> int:
        return sum(
            1 for n in self._notifications.values()
            if n.user_id == user_id and not n.is_read
        )

    async def list_notifications(
        self, user_id: str, limit: int, offset: int
    ) -> list[DoubtNotification]:
        mine = [n for n in reversed(self._notifications.values()) if n.user_id == user_id]
        mine.sort(key=lambda n: n.created_at, reverse=True)
        return [n.model_copy(deep=True) for n in mine[offset:offset + limit]]

    async def delete_notification(self, notification_id: str, user_id: str) -> bool:
        n = self._notifications.get(notification_id)
        if n is None or n.user_id != user_id:
            return False
        del self._notifications[notification_id]
        return True

    async def purge_notifications_before(self, cutoff: datetime) -> int:
        expired = [nid for nid, n in self._notifications.items() if n.created_at < cutoff]
        for nid in expired:
            del self._notifications[nid]
        if expired:
            logger.info("Purged %d notifications older than %s", len(expired), cutoff.isoformat())
        return len(expired)

    # -- activity / educators -------------------------------------------------

    async def insert_activity(self, entry: ActivityLogEntry) -> None:
        self._activity.append(entry.model_copy(deep=True))

    async def active_specialists(self, subject: str) -> list[EducatorSpecialization]:
        wanted = subject.strip().lower()
        return [
            s.model_copy()
            for s in self._specializations
            if s.is_active and s.subject.strip().lower() == wanted
        ]

    async def suggest_educators(self, subject: str) -> list[EducatorSuggestion]:
        now = utcnow()
        suggestions: dict[str, EducatorSuggestion] = {}
        for spec in await self.active_specialists(subject):
            user = self._users.get(spec.educator_id)
            if user is not None and user.get("role") != "educator":
                continue
            load = sum(
                1 for d in self._doubts.values()
                if d.assigned_educator_id == spec.educator_id
                and d.status in _OPEN_LOAD_STATUSES
            )
            recent = sum(
                1
                for thread in self._responses.values()
                for r in thread
                if r.author_id == spec.educator_id
                and now - r.created_at <= _RESPONSIVENESS_WINDOW
            )
            score = (
                spec.proficiency_level * _PROFICIENCY_WEIGHT
                + min(spec.years_of_experience, _EXPERIENCE_CAP) * _EXPERIENCE_WEIGHT
                - load * _LOAD_PENALTY
                + min(recent, _RESPONSIVENESS_CAP) * _RESPONSIVENESS_WEIGHT
            )
            best = suggestions.get(spec.educator_id)
            if best is None or score > best.score:
                suggestions[spec.educator_id] = EducatorSuggestion(
                    educator_id=spec.educator_id, score=score
                )
        return sorted(suggestions.values(), key=lambda s: (-s.score, s.educator_id))
