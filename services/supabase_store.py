"""Supabase-backed :class:`DoubtStore`: PostgREST queries over :class:`SupabaseClient`.

Guarded writes are single ``PATCH`` requests whose filter includes the
expected prior status, so Postgres applies the compare-and-set atomically;
an empty representation means the guard did not hold.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from pydantic_core import to_jsonable_python

from errors.exceptions import DependencyFailureError
from models.doubt import (
    Doubt,
    DoubtAssignment,
    DoubtRating,
    DoubtResponse,
    DoubtStatus,
    EducatorSpecialization,
    EducatorSuggestion,
    utcnow,
)
from models.notification import ActivityLogEntry, DoubtNotification
from services.doubt_store import DoubtQuery, DoubtStore
from services.supabase_client import SupabaseClient

logger = logging.getLogger(__name__)

# Table names
DOUBTS = "doubts"
RESPONSES = "doubt_responses"
RATINGS = "doubt_ratings"
NOTIFICATIONS = "doubt_notifications"
ASSIGNMENTS = "doubt_assignments"
ACTIVITY = "doubt_activity_log"
SPECIALIZATIONS = "educator_specializations"
PARENT_LINKS = "parent_student_relationships"
USERS = "users"

# Postgres function: upsert a rating only while the doubt has the given status
GUARDED_RATING_RPC = "upsert_doubt_rating_if_status"

Params = list[tuple[str, str]]


def quote(value: str) -> str:
    """Quote a value inside an ``in.(...)`` list or ``or=(...)`` group.

    Plain column filters (``eq.``, ``ilike.``) take the raw value; PostgREST
    keeps any quotes there as part of the value.
    """
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def in_list(values: Iterable[Any]) -> str:
    return "in.(" + ",".join(quote(str(v)) for v in values) + ")"


def _ts(value: datetime) -> str:
    return value.isoformat()


def _jsonable(values: dict[str, Any]) -> dict[str, Any]:
    return to_jsonable_python(values)


def _first(rows: list[dict[str, Any]]) -> dict[str, Any] | None:
    return rows[0] if rows else None


def _doubt_from_row(row: dict[str, Any]) -> Doubt:
    row = dict(row)
    embedded = row.pop(RESPONSES, None)
    if isinstance(embedded, list) and embedded:
        row["response_count"] = embedded[0].get("count", 0)
    return Doubt.model_validate(row)


class SupabaseDoubtStore(DoubtStore):
    """PostgREST implementation.  The client's lifecycle is owned by this store."""

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def start(self) -> None:
        await self._client.start()

    # -- users / relationships ---------------------------------------------

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        rows, _ = await self._client.select(
            USERS, [("select", "id,role,full_name,email"), ("id", f"eq.{user_id}")]
        )
        row = _first(rows)
        if row is None:
            return None
        return {
            "id": row["id"],
            "role": row.get("role"),
            "name": row.get("full_name") or "",
            "email": row.get("email") or "",
        }

    async def children_of(self, parent_id: str) -> list[str]:
        rows, _ = await self._client.select(
            PARENT_LINKS, [("select", "student_id"), ("parent_id", f"eq.{parent_id}")]
        )
        return [r["student_id"] for r in rows]

    async def parents_of(self, student_id: str) -> list[str]:
        rows, _ = await self._client.select(
            PARENT_LINKS, [("select", "parent_id"), ("student_id", f"eq.{student_id}")]
        )
        return [r["parent_id"] for r in rows]

    async def is_parent_of(self, parent_id: str, student_id: str) -> bool:
        rows, _ = await self._client.select(
            PARENT_LINKS,
            [
                ("select", "parent_id"),
                ("parent_id", f"eq.{parent_id}"),
                ("student_id", f"eq.{student_id}"),
                ("limit", "1"),
            ],
        )
        return bool(rows)

    # -- doubts ------------------------------------------------------------

    async def insert_doubt(self, doubt: Doubt) -> Doubt:
        payload = doubt.model_dump(mode="json", exclude={"response_count"})
        rows = await self._client.insert(DOUBTS, payload)
        return _doubt_from_row(rows[0]) if rows else doubt

    async def get_doubt(self, doubt_id: str) -> Doubt | None:
        rows, _ = await self._client.select(DOUBTS, [("id", f"eq.{doubt_id}")])
        row = _first(rows)
        return _doubt_from_row(row) if row else None

    def _query_params(self, q: DoubtQuery) -> Params:
        params: Params = []
        or_groups: list[str] = []
        if q.student_ids is not None:
            params.append(("student_id", in_list(sorted(q.student_ids))))
        if q.participant_id is not None:
            pid = quote(q.participant_id)
            or_groups.append(f"assigned_educator_id.eq.{pid},student_id.eq.{pid}")
        if q.status is not None:
            params.append(("status", f"eq.{q.status.value}"))
        if q.subject is not None:
            params.append(("subject", f"eq.{q.subject}"))
        if q.priority is not None:
            params.append(("priority", f"eq.{q.priority.value}"))
        if q.student_id is not None:
            params.append(("student_id", f"eq.{q.student_id}"))
        if q.educator_id is not None:
            params.append(("assigned_educator_id", f"eq.{q.educator_id}"))
        if q.search:
            pattern = quote(f"*{q.search}*")
            or_groups.append(f"title.ilike.{pattern},description.ilike.{pattern}")

        if len(or_groups) == 1:
            params.append(("or", f"({or_groups[0]})"))
        elif or_groups:
            params.append(("and", "(" + ",".join(f"or({g})" for g in or_groups) + ")"))
        return params

    async def query_doubts(
        self, query: DoubtQuery, offset: int, limit: int
    ) -> tuple[list[Doubt], int]:
        if query.student_ids is not None and not query.student_ids:
            return [], 0
        params = self._query_params(query)
        params += [
            ("select", f"*,{RESPONSES}(count)"),
            ("order", "created_at.desc,id.desc"),
            ("offset", str(offset)),
            ("limit", str(limit)),
        ]
        rows, total = await self._client.select(DOUBTS, params, count=True)
        items = [_doubt_from_row(r) for r in rows]
        return items, total if total is not None else len(items)

    async def update_doubt(
        self,
        doubt_id: str,
        changes: dict[str, Any],
        expected_status: DoubtStatus | None = None,
    ) -> Doubt | None:
        params: Params = [("id", f"eq.{doubt_id}")]
        if expected_status is not None:
            params.append(("status", f"eq.{expected_status.value}"))
        values = _jsonable({**changes, "updated_at": utcnow()})
        row = _first(await self._client.update(DOUBTS, params, values))
        return _doubt_from_row(row) if row else None

    async def transition_status(
        self,
        doubt_id: str,
        from_statuses: Iterable[DoubtStatus],
        to_status: DoubtStatus,
    ) -> Doubt | None:
        params: Params = [
            ("id", f"eq.{doubt_id}"),
            ("status", in_list(s.value for s in from_statuses)),
        ]
        values = _jsonable({"status": to_status, "updated_at": utcnow()})
        row = _first(await self._client.update(DOUBTS, params, values))
        return _doubt_from_row(row) if row else None

    async def assign_educator(
        self, doubt_id: str, educator_id: str, assigned_by: str | None
    ) -> Doubt | None:
        now = utcnow()
        updated = await self.update_doubt(
            doubt_id,
            {
                "assigned_educator_id": educator_id,
                "assigned_at": now,
                "status": DoubtStatus.ASSIGNED,
            },
            expected_status=DoubtStatus.OPEN,
        )
        if updated is None:
            return None
        await self.insert_assignment(
            DoubtAssignment(
                doubt_id=doubt_id,
                educator_id=educator_id,
                assigned_by=assigned_by,
                assigned_at=now,
            )
        )
        return updated

    async def insert_assignment(self, assignment: DoubtAssignment) -> None:
        await self._client.insert(ASSIGNMENTS, assignment.model_dump(mode="json"))

    async def doubts_created_between(self, start: datetime, end: datetime) -> list[Doubt]:
        rows, _ = await self._client.select(
            DOUBTS,
            [("created_at", f"gte.{_ts(start)}"), ("created_at", f"lte.{_ts(end)}")],
        )
        return [_doubt_from_row(r) for r in rows]

    # -- responses / ratings -------------------------------------------------

    async def insert_response(self, response: DoubtResponse) -> DoubtResponse:
        rows = await self._client.insert(RESPONSES, response.model_dump(mode="json"))
        return DoubtResponse.model_validate(rows[0]) if rows else response

    async def list_responses(self, doubt_id: str) -> list[DoubtResponse]:
        rows, _ = await self._client.select(
            RESPONSES,
            [("doubt_id", f"eq.{doubt_id}"), ("order", "created_at.asc,id.asc")],
        )
        return [DoubtResponse.model_validate(r) for r in rows]

    async def count_responses(self, doubt_id: str) -> int:
        _, total = await self._client.select(
            RESPONSES,
            [("select", "id"), ("doubt_id", f"eq.{doubt_id}"), ("limit", "1")],
            count=True,
        )
        return total or 0

    async def upsert_rating(
        self, rating: DoubtRating, required_status: DoubtStatus | None = None
    ) -> DoubtRating | None:
        # id / created_at stay with the existing row on conflict
        payload = rating.model_dump(mode="json", exclude={"id", "created_at"})
        payload["updated_at"] = utcnow().isoformat()
        if required_status is not None:
            # Single-statement INSERT ... SELECT guarded on doubts.status
            rows = await self._client.rpc(
                GUARDED_RATING_RPC,
                {"rating": payload, "required_status": required_status.value},
            )
            row = _first(rows) if isinstance(rows, list) else rows
            return DoubtRating.model_validate(row) if row else None
        rows = await self._client.insert(RATINGS, payload, on_conflict="doubt_id,student_id")
        return DoubtRating.model_validate(rows[0]) if rows else rating

    async def list_ratings(self, doubt_id: str) -> list[DoubtRating]:
        rows, _ = await self._client.select(RATINGS, [("doubt_id", f"eq.{doubt_id}")])
        return [DoubtRating.model_validate(r) for r in rows]

    async def ratings_between(self, start: datetime, end: datetime) -> list[DoubtRating]:
        rows, _ = await self._client.select(
            RATINGS,
            [("created_at", f"gte.{_ts(start)}"), ("created_at", f"lte.{_ts(end)}")],
        )
        return [DoubtRating.model_validate(r) for r in rows]

    # -- notifications -------------------------------------------------------

    async def insert_notification(self, notification: DoubtNotification) -> DoubtNotification:
        rows = await self._client.insert(NOTIFICATIONS, notification.model_dump(mode="json"))
        return DoubtNotification.model_validate(rows[0]) if rows else notification

    async def mark_notifications_read(
        self, notification_ids: list[str], user_id: str, read_at: datetime
    ) -> int:
        rows = await self._client.update(
            NOTIFICATIONS,
            [("id", in_list(notification_ids)), ("user_id", f"eq.{user_id}")],
            {"is_read": True, "read_at": _ts(read_at)},
        )
        return len(rows)

    async def count_unread(self, user_id: str) -> int:
        _, total = await self._client.select(
            NOTIFICATIONS,
            [
                ("select", "id"),
                ("user_id", f"eq.{user_id}"),
                ("is_read", "eq.false"),
                ("limit", "1"),
            ],
            count=True,
        )
        return total or 0

    async def list_notifications(
        self, user_id: str, limit: int, offset: int
    ) -> list[DoubtNotification]:
        rows, _ = await self._client.select(
            NOTIFICATIONS,
            [
                ("user_id", f"eq.{user_id}"),
                ("order", "created_at.desc"),
                ("offset", str(offset)),
                ("limit", str(limit)),
            ],
        )
        return [DoubtNotification.model_validate(r) for r in rows]

    async def delete_notification(self, notification_id: str, user_id: str) -> bool:
        rows = await self._client.delete(
            NOTIFICATIONS,
            [("id", f"eq.{notification_id}"), ("user_id", f"eq.{user_id}")],
        )
        return bool(rows)

    async def purge_notifications_before(self, cutoff: datetime) -> int:
        rows = await self._client.delete(NOTIFICATIONS, [("created_at", f"lt.{_ts(cutoff)}")])
        if rows:
            logger.info("Purged %d notifications older than %s", len(rows), _ts(cutoff))
        return len(rows)

    # -- activity / educators -------------------------------------------------

    async def insert_activity(self, entry: ActivityLogEntry) -> None:
        await self._client.insert(ACTIVITY, entry.model_dump(mode="json"))

    async def active_specialists(self, subject: str) -> list[EducatorSpecialization]:
        rows, _ = await self._client.select(
            SPECIALIZATIONS,
            [("subject", f"ilike.{subject.strip()}"), ("is_active", "eq.true")],
        )
        return [EducatorSpecialization.model_validate(r) for r in rows]

    async def suggest_educators(self, subject: str) -> list[EducatorSuggestion]:
        rows = await self._client.rpc(
            "suggest_best_educator_for_doubt", {"doubt_subject": subject}
        )
        return [
            EducatorSuggestion(
                educator_id=r["educator_id"],
                score=float(r.get("score", r.get("match_score", 0)) or 0),
            )
            for r in rows or []
        ]

    # -- lifecycle -----------------------------------------------------------

    async def ping(self) -> bool:
        try:
            await self._client.select(DOUBTS, [("select", "id"), ("limit", "1")])
        except DependencyFailureError:
            logger.warning("Supabase ping failed", exc_info=True)
            return False
        return True

    async def close(self) -> None:
        await self._client.close()
