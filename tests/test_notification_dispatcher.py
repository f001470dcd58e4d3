"""Tests for services/notification_dispatcher.py: persist then fan out."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from models.doubt import Doubt, DoubtPriority, DoubtStatus, DoubtType, utcnow
from models.notification import NotificationPriority, NotificationType
from services.concurrency import SideEffectRunner
from services.notification_dispatcher import NotificationDispatcher, periodic_purge


@pytest.fixture
def runner() -> SideEffectRunner:
    return SideEffectRunner()


@pytest.fixture
def dispatcher(store, channel, runner) -> NotificationDispatcher:
    return NotificationDispatcher(store, channel, runner)


def _doubt(**overrides) -> Doubt:
    data = {
        "title": "Res judicata",
        "description": "When does res judicata bar a second suit?",
        "subject": "Constitutional Law",
        "type": DoubtType.CONCEPT,
        "student_id": "stu-1",
        "assigned_educator_id": "edu-1",
        "status": DoubtStatus.IN_PROGRESS,
    }
    data.update(overrides)
    return Doubt(**data)


# ── send / fan-out ───────────────────────────────────────────


class TestSend:
    @pytest.mark.asyncio
    async def test_persists_and_publishes_to_user_room(self, dispatcher, store, channel):
        note = await dispatcher.send("stu-1", NotificationType.SYSTEM_MESSAGE, "Hello", "Welcome")

        stored = await store.list_notifications("stu-1", 10, 0)
        assert [n.id for n in stored] == [note.id]
        assert note.notification_type == "system_message"
        assert note.is_read is False

        events = channel.to_room("user_stu-1")
        assert events[0][0] == "notification"
        assert events[0][1]["id"] == note.id

    @pytest.mark.asyncio
    async def test_doubt_scoped_goes_to_doubt_room(self, dispatcher, channel):
        await dispatcher.send(
            "stu-1", NotificationType.RESPONSE_ADDED, "New", "reply", doubt_id="d-1"
        )
        events = channel.to_room("doubt_d-1")
        assert events[0][0] == "doubt_update"
        assert events[0][1]["type"] == "response_added"

    @pytest.mark.asyncio
    async def test_new_doubt_broadcast_to_educators(self, dispatcher, channel):
        await dispatcher.send(
            "stu-1",
            NotificationType.NEW_DOUBT,
            "Doubt Submitted",
            "submitted",
            doubt_id="d-1",
            metadata={"doubt_title": "Res judicata", "subject": "Civil", "priority": "high"},
        )
        (room, payload), = channel.named("new_doubt_available")
        assert room == "educators"
        assert payload["title"] == "Res judicata"
        assert payload["student_name"] == "Student"

    @pytest.mark.asyncio
    async def test_resolution_broadcast_to_admins(self, dispatcher, channel):
        await dispatcher.send(
            "stu-1", NotificationType.DOUBT_RESOLVED, "Resolved", "done", doubt_id="d-1"
        )
        (room, payload), = channel.named("doubt_statistics_update")
        assert room == "admins"
        assert payload["type"] == "doubt_resolved"

    @pytest.mark.asyncio
    async def test_publish_failure_still_returns_row(self, dispatcher, store, channel):
        channel.fail = True
        note = await dispatcher.send("stu-1", "system_message", "Hello", "Welcome")
        assert note.user_id == "stu-1"
        assert await store.count_unread("stu-1") == 1

    @pytest.mark.asyncio
    async def test_send_twice_stores_twice(self, dispatcher, store):
        await dispatcher.send("stu-1", "system_message", "Hello", "Welcome")
        await dispatcher.send("stu-1", "system_message", "Hello", "Welcome")
        assert await store.count_unread("stu-1") == 2

    @pytest.mark.asyncio
    async def test_dispatch_is_background(self, dispatcher, store, runner):
        dispatcher.dispatch("stu-1", NotificationType.SYSTEM_MESSAGE, "Hi", "there")
        assert runner.pending == 1
        await runner.drain()
        assert await store.count_unread("stu-1") == 1


# ── participant fan-out ──────────────────────────────────────


class TestNotifyParticipants:
    @pytest.mark.asyncio
    async def test_response_includes_parents_and_skips_actor(self, dispatcher, store):
        sent = await dispatcher.notify_participants(
            _doubt(),
            NotificationType.RESPONSE_ADDED,
            "New Response",
            "reply",
            exclude_user_id="edu-1",
        )
        assert sorted(n.user_id for n in sent) == ["par-1", "stu-1"]
        assert all(n.metadata["doubt_title"] == "Res judicata" for n in sent)

    @pytest.mark.asyncio
    async def test_close_excludes_parents(self, dispatcher):
        sent = await dispatcher.notify_participants(
            _doubt(), NotificationType.DOUBT_CLOSED, "Closed", "closed"
        )
        assert sorted(n.user_id for n in sent) == ["edu-1", "stu-1"]

    @pytest.mark.asyncio
    async def test_one_failed_recipient_does_not_stop_others(self, dispatcher, store):
        real_insert = store.insert_notification

        async def _flaky(notification):
            if notification.user_id == "par-1":
                raise RuntimeError("row rejected")
            return await real_insert(notification)

        store.insert_notification = AsyncMock(side_effect=_flaky)
        sent = await dispatcher.notify_participants(
            _doubt(), NotificationType.DOUBT_RESOLVED, "Resolved", "done"
        )
        assert sorted(n.user_id for n in sent) == ["edu-1", "stu-1"]


class TestNotifySpecialists:
    @pytest.mark.asyncio
    async def test_urgent_is_high_priority(self, dispatcher):
        sent = await dispatcher.notify_specialists(
            _doubt(assigned_educator_id=None, status=DoubtStatus.OPEN, priority=DoubtPriority.URGENT)
        )
        assert sorted(n.user_id for n in sent) == ["edu-1", "edu-2"]
        assert {n.priority for n in sent} == {NotificationPriority.HIGH}
        assert {n.notification_type for n in sent} == {"new_doubt_available"}

    @pytest.mark.asyncio
    async def test_unknown_subject_notifies_nobody(self, dispatcher):
        sent = await dispatcher.notify_specialists(_doubt(subject="Quantitative Techniques"))
        assert sent == []


# ── inbox ────────────────────────────────────────────────────


class TestInbox:
    @pytest.mark.asyncio
    async def test_mark_read_only_own(self, dispatcher, store, channel):
        mine = await dispatcher.send("stu-1", "system_message", "a", "a")
        theirs = await dispatcher.send("stu-2", "system_message", "b", "b")

        updated = await dispatcher.mark_read([mine.id, theirs.id], "stu-1")

        assert updated == 1
        assert await dispatcher.unread_count("stu-1") == 0
        assert await dispatcher.unread_count("stu-2") == 1
        assert channel.to_room("user_stu-1")[-1][0] == "notifications_read"

    @pytest.mark.asyncio
    async def test_list_newest_first_with_offset(self, dispatcher):
        first = await dispatcher.send("stu-1", "system_message", "1", "1")
        second = await dispatcher.send("stu-1", "system_message", "2", "2")

        assert [n.id for n in await dispatcher.list_for_user("stu-1")] == [second.id, first.id]
        assert [n.id for n in await dispatcher.list_for_user("stu-1", limit=1, offset=1)] == [first.id]

    @pytest.mark.asyncio
    async def test_delete_only_own(self, dispatcher):
        note = await dispatcher.send("stu-1", "system_message", "a", "a")
        assert await dispatcher.delete_for_user(note.id, "stu-2") is False
        assert await dispatcher.delete_for_user(note.id, "stu-1") is True
        assert await dispatcher.delete_for_user(note.id, "stu-1") is False

    @pytest.mark.asyncio
    async def test_purge_older_than(self, dispatcher, store):
        old = await dispatcher.send("stu-1", "system_message", "old", "old")
        await dispatcher.send("stu-1", "system_message", "new", "new")
        store._notifications[old.id].created_at = utcnow() - timedelta(days=45)

        assert await dispatcher.purge_older_than(30) == 1
        assert [n.title for n in await dispatcher.list_for_user("stu-1")] == ["new"]


@pytest.mark.asyncio
async def test_periodic_purge_survives_errors(dispatcher):
    dispatcher.purge_older_than = AsyncMock(side_effect=[RuntimeError("db down"), 0, 0])

    with patch("services.notification_dispatcher.asyncio.sleep", new=AsyncMock(side_effect=[None, None, asyncio.CancelledError()])):
        with pytest.raises(asyncio.CancelledError):
            await periodic_purge(dispatcher, interval_seconds=1, days=30)

    assert dispatcher.purge_older_than.await_count == 2
