"""Tests for services/doubt_service.py: the doubt lifecycle manager."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from config.llm_config import LLMConfig
from errors.exceptions import (
    AccessDeniedError,
    ConflictError,
    InvalidRequestError,
    NotFoundError,
)
from models.doubt import AuthorType, DoubtPriority, DoubtStatus
from models.request import (
    DoubtFilters,
    DoubtUpdateRequest,
    RatingRequest,
    ResponseCreateRequest,
)
from services.ai_responder import AIResponseGenerator
from services.container import build_services


async def _types_for(store, user_id: str) -> list[str]:
    notes = await store.list_notifications(user_id, 100, 0)
    return [n.notification_type for n in notes]


def _activity_types(store, doubt_id: str) -> list[str]:
    return [a.activity_type for a in store.activity if a.doubt_id == doubt_id]


def _reply(text: str = "Start with the classification test from Anwar Ali Sarkar.") -> ResponseCreateRequest:
    return ResponseCreateRequest(content=text)


# ── create ───────────────────────────────────────────────────


class TestCreateDoubt:
    @pytest.mark.asyncio
    async def test_auto_assigns_best_specialist(self, services, manager, store, channel, student, create_request):
        doubt = await manager.create_doubt(student, create_request())
        await services.runner.drain()

        assert doubt.status == DoubtStatus.ASSIGNED
        assert doubt.assigned_educator_id == "edu-1"
        assert doubt.student_id == "stu-1"
        assert doubt.assigned_at is not None

        assert _activity_types(store, doubt.id) == ["doubt_created", "doubt_assigned"]
        auto = [a for a in store.activity if a.activity_type == "doubt_assigned"][0]
        assert auto.user_id is None
        assert auto.metadata["assigned_by"] is None

        assert [a.assigned_by for a in store.assignments] == [None]
        assert await _types_for(store, "stu-1") == ["new_doubt"]
        assert await _types_for(store, "edu-1") == ["doubt_assigned"]

        available = channel.named("new_doubt_available")
        assert available[0][0] == "educators"
        assert available[0][1]["doubt_id"] == doubt.id
        assert available[0][1]["student_name"] == "Asha"

    @pytest.mark.asyncio
    async def test_non_student_cannot_create(self, manager, educator, parent, create_request):
        for principal in (educator, parent):
            with pytest.raises(AccessDeniedError):
                await manager.create_doubt(principal, create_request())

    @pytest.mark.asyncio
    async def test_no_specialist_stays_open(self, services, manager, store, student, create_request):
        doubt = await manager.create_doubt(student, create_request(subject="Logical Reasoning"))
        await services.runner.drain()

        assert doubt.status == DoubtStatus.OPEN
        assert doubt.assigned_educator_id is None
        assert _activity_types(store, doubt.id) == ["doubt_created"]

    @pytest.mark.asyncio
    async def test_ranking_failure_notifies_specialists(self, services, manager, store, student, create_request):
        store.suggest_educators = AsyncMock(side_effect=RuntimeError("ranking down"))

        doubt = await manager.create_doubt(
            student, create_request(priority=DoubtPriority.URGENT)
        )
        await services.runner.drain()

        assert doubt.status == DoubtStatus.OPEN
        for educator_id in ("edu-1", "edu-2"):
            notes = await store.list_notifications(educator_id, 10, 0)
            assert [n.notification_type for n in notes] == ["new_doubt_available"]
            assert notes[0].priority.value == "high"

    @pytest.mark.asyncio
    async def test_prefer_ai_attaches_answer(self, services, manager, store, student, fake_ai, create_request):
        doubt = await manager.create_doubt(student, create_request(prefer_ai=True))
        await services.runner.drain()

        assert fake_ai.calls == [doubt.id]
        assert doubt.ai_assisted is True
        assert doubt.status == DoubtStatus.OPEN
        assert doubt.assigned_educator_id is None

        thread = await store.list_responses(doubt.id)
        assert len(thread) == 1
        assert thread[0].author_type == AuthorType.AI
        assert thread[0].author_id is None
        assert thread[0].ai_generated is True
        assert thread[0].ai_confidence_score == 0.85

        assert "ai_response_added" in _activity_types(store, doubt.id)
        notes = await store.list_notifications("stu-1", 10, 0)
        assert {n.title for n in notes} == {"Doubt Submitted", "AI Answer Ready"}

    @pytest.mark.asyncio
    async def test_prefer_ai_failure_keeps_doubt_open(self, services, manager, store, student, fake_ai, create_request):
        fake_ai.answer = None

        doubt = await manager.create_doubt(student, create_request(prefer_ai=True))
        await services.runner.drain()

        assert doubt.status == DoubtStatus.OPEN
        assert doubt.ai_assisted is False
        assert await store.list_responses(doubt.id) == []

    @pytest.mark.asyncio
    async def test_slow_ai_is_bounded(self, settings, store, channel, student, create_request):
        async def _slow(**kwargs):
            await asyncio.sleep(5)

        ai = AIResponseGenerator(LLMConfig(model="anthropic/claude-test"), timeout=0.05)
        bundle = build_services(settings, store=store, channel=channel, ai=ai)

        with patch("litellm.acompletion", new=_slow):
            doubt = await asyncio.wait_for(
                bundle.manager.create_doubt(student, create_request(prefer_ai=True)),
                timeout=2,
            )
        await bundle.runner.drain()

        assert doubt.status == DoubtStatus.OPEN
        assert doubt.ai_assisted is False
        stored = await store.get_doubt(doubt.id)
        assert stored is not None

    @pytest.mark.asyncio
    async def test_side_effect_failures_do_not_fail_create(self, services, manager, store, channel, student, create_request):
        channel.fail = True
        store.insert_activity = AsyncMock(side_effect=RuntimeError("audit table locked"))

        doubt = await manager.create_doubt(student, create_request())
        await services.runner.drain()

        assert (await store.get_doubt(doubt.id)) is not None
        assert services.runner.failures >= 1
        # the notification row is still the source of truth
        assert await _types_for(store, "stu-1") == ["new_doubt"]


# ── the full journey ─────────────────────────────────────────


class TestDoubtJourney:
    @pytest.mark.asyncio
    async def test_article_14_journey(self, services, manager, store, student, educator, parent, create_request):
        doubt = await manager.create_doubt(student, create_request())
        assert doubt.assigned_educator_id == "edu-1"

        response = await manager.add_response(educator, doubt.id, _reply())
        await services.runner.drain()
        assert response.author_type == AuthorType.EDUCATOR

        current = await store.get_doubt(doubt.id)
        assert current.status == DoubtStatus.IN_PROGRESS
        student_types = await _types_for(store, "stu-1")
        assert "response_added" in student_types
        assert "doubt_in_progress" in student_types
        assert "response_added" in await _types_for(store, "par-1")

        resolved = await manager.update_doubt(
            educator, doubt.id, DoubtUpdateRequest(status=DoubtStatus.RESOLVED)
        )
        await services.runner.drain()
        assert resolved.status == DoubtStatus.RESOLVED
        assert resolved.resolved_at is not None
        assert "doubt_resolved" in await _types_for(store, "stu-1")
        assert "doubt_resolved" in await _types_for(store, "par-1")
        assert "doubt_resolved" not in await _types_for(store, "edu-1")

        rating = await manager.rate_doubt(student, doubt.id, RatingRequest(rating=5, feedback="Clear"))
        await services.runner.drain()
        assert rating.rating == 5
        assert "rating_added" in await _types_for(store, "edu-1")

        closed = await manager.update_doubt(
            student, doubt.id, DoubtUpdateRequest(status=DoubtStatus.CLOSED)
        )
        await services.runner.drain()
        assert closed.status == DoubtStatus.CLOSED
        assert closed.closed_at is not None
        assert closed.resolved_at == resolved.resolved_at

        with pytest.raises(ConflictError):
            await manager.add_response(educator, doubt.id, _reply("one more thing"))
        with pytest.raises(ConflictError):
            await manager.update_doubt(
                educator, doubt.id, DoubtUpdateRequest(status=DoubtStatus.IN_PROGRESS)
            )

        detail = await manager.get_doubt(parent, doubt.id)
        assert detail.response_count == 1
        assert len(detail.ratings) == 1
        assert _activity_types(store, doubt.id) == [
            "doubt_created",
            "doubt_assigned",
            "response_added",
            "status_changed",
            "rating_added",
            "status_changed",
        ]


# ── responses ────────────────────────────────────────────────


class TestAddResponse:
    @pytest.mark.asyncio
    async def test_concurrent_first_responses_move_once(
        self, services, manager, store, student, educator, other_educator, create_request
    ):
        doubt = await manager.create_doubt(student, create_request())

        results = await asyncio.gather(
            manager.add_response(educator, doubt.id, _reply("First answer")),
            manager.add_response(other_educator, doubt.id, _reply("Second answer")),
        )
        await services.runner.drain()

        assert len(results) == 2
        assert len(await store.list_responses(doubt.id)) == 2
        assert (await store.get_doubt(doubt.id)).status == DoubtStatus.IN_PROGRESS
        assert (await _types_for(store, "stu-1")).count("doubt_in_progress") == 1

    @pytest.mark.asyncio
    async def test_owner_reply_keeps_status(self, services, manager, store, student, create_request):
        doubt = await manager.create_doubt(student, create_request(subject="Logical Reasoning"))

        response = await manager.add_response(student, doubt.id, _reply("Adding context"))
        await services.runner.drain()

        assert response.author_type == AuthorType.STUDENT
        assert (await store.get_doubt(doubt.id)).status == DoubtStatus.OPEN

    @pytest.mark.asyncio
    async def test_new_response_preview_published(self, services, manager, channel, student, educator, create_request):
        doubt = await manager.create_doubt(student, create_request())

        await manager.add_response(educator, doubt.id, _reply("x" * 150))
        await services.runner.drain()

        events = channel.to_room(f"doubt_{doubt.id}")
        previews = [payload for event, payload in events if event == "new_response"]
        assert len(previews) == 1
        assert previews[0]["content"] == "x" * 100 + "..."
        assert previews[0]["author_name"] == "Ravi"

    @pytest.mark.asyncio
    async def test_parent_and_stranger_cannot_respond(self, manager, student, parent, other_student, create_request):
        doubt = await manager.create_doubt(student, create_request())
        for principal in (parent, other_student):
            with pytest.raises(AccessDeniedError):
                await manager.add_response(principal, doubt.id, _reply())

    @pytest.mark.asyncio
    async def test_parent_response_must_be_in_thread(self, manager, student, educator, create_request):
        doubt = await manager.create_doubt(student, create_request())
        with pytest.raises(InvalidRequestError):
            await manager.add_response(
                educator,
                doubt.id,
                ResponseCreateRequest(content="Follow-up", parent_response_id="nope"),
            )

    @pytest.mark.asyncio
    async def test_threaded_reply(self, manager, store, student, educator, create_request):
        doubt = await manager.create_doubt(student, create_request())
        first = await manager.add_response(educator, doubt.id, _reply())

        second = await manager.add_response(
            student,
            doubt.id,
            ResponseCreateRequest(content="Thanks, what about State?", parent_response_id=first.id),
        )

        thread = await store.list_responses(doubt.id)
        assert [r.id for r in thread] == [first.id, second.id]
        assert thread[1].parent_response_id == first.id

    @pytest.mark.asyncio
    async def test_missing_doubt(self, manager, educator):
        with pytest.raises(NotFoundError):
            await manager.add_response(educator, "missing", _reply())


# ── updates ──────────────────────────────────────────────────


class TestUpdateDoubt:
    @pytest.mark.asyncio
    async def test_empty_update_rejected(self, manager, student, create_request):
        doubt = await manager.create_doubt(student, create_request())
        with pytest.raises(InvalidRequestError):
            await manager.update_doubt(student, doubt.id, DoubtUpdateRequest())

    @pytest.mark.asyncio
    async def test_backward_transition_is_conflict(self, manager, student, educator, create_request):
        doubt = await manager.create_doubt(student, create_request())
        await manager.add_response(educator, doubt.id, _reply())

        with pytest.raises(ConflictError):
            await manager.update_doubt(
                educator, doubt.id, DoubtUpdateRequest(status=DoubtStatus.ASSIGNED)
            )

    @pytest.mark.asyncio
    async def test_owner_cannot_start_work(self, manager, student, create_request):
        doubt = await manager.create_doubt(student, create_request())
        with pytest.raises(AccessDeniedError):
            await manager.update_doubt(
                student, doubt.id, DoubtUpdateRequest(status=DoubtStatus.IN_PROGRESS)
            )

    @pytest.mark.asyncio
    async def test_stranger_cannot_update(self, manager, student, other_student, other_educator, create_request):
        doubt = await manager.create_doubt(student, create_request())
        for principal in (other_student, other_educator):
            with pytest.raises(AccessDeniedError):
                await manager.update_doubt(
                    principal, doubt.id, DoubtUpdateRequest(priority=DoubtPriority.HIGH)
                )

    @pytest.mark.asyncio
    async def test_staff_reassign(self, services, manager, store, student, admin, create_request):
        doubt = await manager.create_doubt(student, create_request())

        updated = await manager.update_doubt(
            admin, doubt.id, DoubtUpdateRequest(assigned_educator_id="edu-2")
        )
        await services.runner.drain()

        assert updated.assigned_educator_id == "edu-2"
        assert updated.status == DoubtStatus.ASSIGNED
        assert "doubt_reassigned" in _activity_types(store, doubt.id)
        assert [a.assigned_by for a in store.assignments] == [None, "adm-1"]
        assert await _types_for(store, "edu-2") == ["doubt_assigned"]

    @pytest.mark.asyncio
    async def test_staff_assign_open_doubt(self, services, manager, store, student, ops_manager, create_request):
        doubt = await manager.create_doubt(student, create_request(subject="Logical Reasoning"))

        updated = await manager.update_doubt(
            ops_manager, doubt.id, DoubtUpdateRequest(assigned_educator_id="edu-1")
        )
        await services.runner.drain()

        assert updated.status == DoubtStatus.ASSIGNED
        assert "doubt_assigned" in _activity_types(store, doubt.id)

    @pytest.mark.asyncio
    async def test_assignee_cannot_reassign(self, manager, student, educator, create_request):
        doubt = await manager.create_doubt(student, create_request())
        with pytest.raises(AccessDeniedError):
            await manager.update_doubt(
                educator, doubt.id, DoubtUpdateRequest(assigned_educator_id="edu-2")
            )

    @pytest.mark.asyncio
    async def test_assign_to_non_educator(self, manager, student, admin, create_request):
        doubt = await manager.create_doubt(student, create_request())
        with pytest.raises(InvalidRequestError):
            await manager.update_doubt(
                admin, doubt.id, DoubtUpdateRequest(assigned_educator_id="stu-2")
            )

    @pytest.mark.asyncio
    async def test_reassign_resolved_is_conflict(self, manager, student, admin, create_request):
        doubt = await manager.create_doubt(student, create_request())
        await manager.update_doubt(admin, doubt.id, DoubtUpdateRequest(status=DoubtStatus.RESOLVED))

        with pytest.raises(ConflictError):
            await manager.update_doubt(
                admin, doubt.id, DoubtUpdateRequest(assigned_educator_id="edu-2")
            )

    @pytest.mark.asyncio
    async def test_general_fields(self, services, manager, store, student, create_request):
        doubt = await manager.create_doubt(student, create_request())

        updated = await manager.update_doubt(
            student,
            doubt.id,
            DoubtUpdateRequest(
                priority=DoubtPriority.HIGH,
                tags=[" article-14 ", "equality", "article-14", ""],
                estimated_time_minutes=20,
            ),
        )
        await services.runner.drain()

        assert updated.priority == DoubtPriority.HIGH
        assert updated.tags == ["article-14", "equality"]
        assert updated.estimated_time_minutes == 20
        assert updated.status == doubt.status
        assert _activity_types(store, doubt.id)[-1] == "doubt_updated"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["priority", "status"])
    async def test_explicit_null_rejected(self, manager, admin, student, create_request, field):
        doubt = await manager.create_doubt(student, create_request())
        with pytest.raises(InvalidRequestError) as exc_info:
            await manager.update_doubt(admin, doubt.id, DoubtUpdateRequest(**{field: None}))
        assert exc_info.value.details == [{"field": field, "message": "may not be null"}]

    @pytest.mark.asyncio
    async def test_lost_race_is_retried(self, manager, store, student, educator, create_request):
        doubt = await manager.create_doubt(student, create_request())
        real_update = store.update_doubt
        calls = []

        async def _lose_first(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                return None
            return await real_update(*args, **kwargs)

        store.update_doubt = AsyncMock(side_effect=_lose_first)

        updated = await manager.update_doubt(
            educator, doubt.id, DoubtUpdateRequest(status=DoubtStatus.IN_PROGRESS)
        )

        assert updated.status == DoubtStatus.IN_PROGRESS
        assert store.update_doubt.await_count == 2

    @pytest.mark.asyncio
    async def test_persistent_race_is_conflict(self, manager, store, student, educator, create_request):
        doubt = await manager.create_doubt(student, create_request())
        store.update_doubt = AsyncMock(return_value=None)

        with pytest.raises(ConflictError):
            await manager.update_doubt(
                educator, doubt.id, DoubtUpdateRequest(status=DoubtStatus.IN_PROGRESS)
            )
        assert store.update_doubt.await_count == 3


# ── rating ───────────────────────────────────────────────────


class TestRateDoubt:
    @pytest.mark.asyncio
    async def test_unresolved_is_conflict(self, manager, student, create_request):
        doubt = await manager.create_doubt(student, create_request())
        with pytest.raises(ConflictError):
            await manager.rate_doubt(student, doubt.id, RatingRequest(rating=4))

    @pytest.mark.asyncio
    async def test_only_owner_rates(self, manager, student, other_student, admin, create_request):
        doubt = await manager.create_doubt(student, create_request())
        await manager.update_doubt(admin, doubt.id, DoubtUpdateRequest(status=DoubtStatus.RESOLVED))
        for principal in (other_student, admin):
            with pytest.raises(AccessDeniedError):
                await manager.rate_doubt(principal, doubt.id, RatingRequest(rating=4))

    @pytest.mark.asyncio
    async def test_rating_is_upserted(self, manager, store, student, admin, create_request):
        doubt = await manager.create_doubt(student, create_request())
        await manager.update_doubt(admin, doubt.id, DoubtUpdateRequest(status=DoubtStatus.RESOLVED))

        first = await manager.rate_doubt(student, doubt.id, RatingRequest(rating=3))
        second = await manager.rate_doubt(
            student, doubt.id, RatingRequest(rating=5, feedback="Much clearer now")
        )

        ratings = await store.list_ratings(doubt.id)
        assert len(ratings) == 1
        assert second.id == first.id
        assert ratings[0].rating == 5
        assert ratings[0].feedback == "Much clearer now"

    @pytest.mark.asyncio
    async def test_close_racing_the_rating_is_conflict(self, manager, store, student, admin, create_request):
        doubt = await manager.create_doubt(student, create_request())
        await manager.update_doubt(admin, doubt.id, DoubtUpdateRequest(status=DoubtStatus.RESOLVED))
        real_upsert = store.upsert_rating

        async def _closed_first(rating, required_status=None):
            # staff closes the doubt between the read and the write
            await store.transition_status(doubt.id, [DoubtStatus.RESOLVED], DoubtStatus.CLOSED)
            return await real_upsert(rating, required_status)

        store.upsert_rating = AsyncMock(side_effect=_closed_first)

        with pytest.raises(ConflictError) as exc_info:
            await manager.rate_doubt(student, doubt.id, RatingRequest(rating=5))

        assert exc_info.value.details == {"status": "closed"}
        assert await store.list_ratings(doubt.id) == []


# ── reads ────────────────────────────────────────────────────


class TestReadDoubts:
    @pytest.mark.asyncio
    async def test_get_doubt_access(self, manager, student, other_student, unlinked_parent, parent, admin, create_request):
        doubt = await manager.create_doubt(student, create_request())

        assert (await manager.get_doubt(parent, doubt.id)).id == doubt.id
        assert (await manager.get_doubt(admin, doubt.id)).id == doubt.id
        for principal in (other_student, unlinked_parent):
            with pytest.raises(AccessDeniedError):
                await manager.get_doubt(principal, doubt.id)
        with pytest.raises(NotFoundError):
            await manager.get_doubt(admin, "missing")

    @pytest.mark.asyncio
    async def test_list_visibility(
        self, manager, student, other_student, parent, unlinked_parent, educator, admin, create_request
    ):
        mine = await manager.create_doubt(student, create_request())
        theirs = await manager.create_doubt(
            other_student, create_request(title="Tort of negligence", subject="Legal Reasoning")
        )

        student_page = await manager.list_doubts(student)
        assert [d.id for d in student_page.items] == [mine.id]

        parent_page = await manager.list_doubts(parent)
        assert [d.id for d in parent_page.items] == [mine.id]

        empty = await manager.list_doubts(unlinked_parent)
        assert empty.items == [] and empty.total == 0 and empty.total_pages == 0

        educator_page = await manager.list_doubts(educator)
        assert [d.id for d in educator_page.items] == [mine.id]

        admin_page = await manager.list_doubts(admin)
        assert [d.id for d in admin_page.items] == [theirs.id, mine.id]

    @pytest.mark.asyncio
    async def test_person_filter_ignored_for_students(self, manager, student, other_student, create_request):
        await manager.create_doubt(student, create_request())
        await manager.create_doubt(other_student, create_request())

        page = await manager.list_doubts(student, DoubtFilters(student_id="stu-2"))
        assert {d.student_id for d in page.items} == {"stu-1"}

    @pytest.mark.asyncio
    async def test_filters_and_pagination(self, manager, student, admin, create_request):
        for i in range(5):
            await manager.create_doubt(
                student, create_request(title=f"Preamble question {i}", subject="Logical Reasoning")
            )
        await manager.create_doubt(student, create_request())

        page = await manager.list_doubts(
            admin, DoubtFilters(status=DoubtStatus.OPEN), page=2, limit=2
        )
        assert page.total == 5
        assert page.total_pages == 3
        assert len(page.items) == 2

        searched = await manager.list_doubts(admin, DoubtFilters(search="preamble"))
        assert searched.total == 5

        assigned = await manager.list_doubts(admin, DoubtFilters(educator_id="edu-1"))
        assert assigned.total == 1

    @pytest.mark.asyncio
    async def test_response_count_in_list(self, manager, student, educator, create_request):
        doubt = await manager.create_doubt(student, create_request())
        await manager.add_response(educator, doubt.id, _reply())

        page = await manager.list_doubts(student)
        assert page.items[0].response_count == 1

    @pytest.mark.asyncio
    async def test_invalid_pagination(self, manager, admin):
        with pytest.raises(InvalidRequestError):
            await manager.list_doubts(admin, page=0)
        with pytest.raises(InvalidRequestError):
            await manager.list_doubts(admin, limit=101)
