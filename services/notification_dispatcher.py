"""Notification dispatcher: persist a notification, then fan it out.

Each :meth:`NotificationDispatcher.send` writes one row and publishes it:

- ``user_{id}``  → ``notification`` (always)
- ``doubt_{id}`` → ``doubt_update`` (doubt-scoped notifications)
- ``educators``  → ``new_doubt_available`` (type ``new_doubt``)
- ``admins``     → ``doubt_statistics_update`` (``doubt_resolved`` / ``doubt_closed``)

Delivery is at-least-once: calling ``send`` twice stores two rows.  The
row is the source of truth; a failed publish is logged and the stored
notification is still returned.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from models.doubt import Doubt, DoubtPriority, utcnow
from models.notification import DoubtNotification, NotificationPriority, NotificationType
from services.concurrency import SideEffectRunner
from services.doubt_store import DoubtStore
from services.realtime import (
    ADMINS_ROOM,
    EDUCATORS_ROOM,
    RealtimeChannel,
    doubt_room,
    user_room,
)

logger = logging.getLogger(__name__)

_STAFF_BROADCAST_TYPES = frozenset(
    {NotificationType.DOUBT_RESOLVED.value, NotificationType.DOUBT_CLOSED.value}
)


def _type_value(kind: NotificationType | str) -> str:
    return kind.value if isinstance(kind, NotificationType) else kind


def _includes_parents(kind: str) -> bool:
    # Parents follow answers and resolutions of their child's doubts.
    return "response" in kind or "resolved" in kind


class NotificationDispatcher:
    def __init__(
        self,
        store: DoubtStore,
        channel: RealtimeChannel,
        runner: SideEffectRunner,
    ) -> None:
        self._store = store
        self._channel = channel
        self._runner = runner

    # -- sending -------------------------------------------------------------

    async def send(
        self,
        user_id: str,
        notification_type: NotificationType | str,
        title: str,
        message: str,
        *,
        doubt_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        priority: NotificationPriority = NotificationPriority.NORMAL,
    ) -> DoubtNotification:
        notification = DoubtNotification(
            doubt_id=doubt_id,
            user_id=user_id,
            notification_type=_type_value(notification_type),
            title=title,
            message=message,
            metadata=metadata or {},
            priority=priority,
        )
        stored = await self._store.insert_notification(notification)
        await self._fan_out(stored)
        logger.info("Notification sent: %s to user %s", stored.notification_type, user_id)
        return stored

    def dispatch(self, user_id: str, notification_type: NotificationType | str, title: str,
                 message: str, **kwargs: Any) -> None:
        """Best-effort :meth:`send` on the side-effect runner."""
        self._runner.spawn(
            self.send(user_id, notification_type, title, message, **kwargs),
            label=f"notify:{_type_value(notification_type)}",
        )

    async def _publish(self, room: str, event: str, payload: dict[str, Any]) -> None:
        try:
            await self._channel.publish(room, event, payload)
        except Exception:
            logger.exception("Realtime publish failed: %s → %s", event, room)

    async def _fan_out(self, n: DoubtNotification) -> None:
        await self._publish(user_room(n.user_id), "notification", n.model_dump(mode="json"))
        if n.doubt_id is None:
            return

        now = utcnow().isoformat()
        await self._publish(
            doubt_room(n.doubt_id),
            "doubt_update",
            {
                "doubt_id": n.doubt_id,
                "type": n.notification_type,
                "message": n.message,
                "timestamp": now,
            },
        )
        if n.notification_type == NotificationType.NEW_DOUBT.value:
            await self._publish(
                EDUCATORS_ROOM,
                "new_doubt_available",
                {
                    "doubt_id": n.doubt_id,
                    "title": n.metadata.get("doubt_title", n.title),
                    "subject": n.metadata.get("subject"),
                    "priority": n.metadata.get("priority"),
                    "student_name": n.metadata.get("student_name") or "Student",
                },
            )
        if n.notification_type in _STAFF_BROADCAST_TYPES:
            await self._publish(
                ADMINS_ROOM,
                "doubt_statistics_update",
                {"type": n.notification_type, "doubt_id": n.doubt_id, "timestamp": now},
            )

    async def publish_to_doubt(self, doubt_id: str, event: str, payload: dict[str, Any]) -> None:
        """Raw event to everyone watching a doubt (no stored row)."""
        await self._publish(doubt_room(doubt_id), event, payload)

    # -- fan-out helpers -----------------------------------------------------

    async def notify_participants(
        self,
        doubt: Doubt,
        notification_type: NotificationType | str,
        title: str,
        message: str,
        *,
        exclude_user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        priority: NotificationPriority = NotificationPriority.NORMAL,
    ) -> list[DoubtNotification]:
        """Notify the student, the assigned educator and, for answers and
        resolutions, the student's linked parents.  *exclude_user_id* (usually
        the actor) is skipped."""
        kind = _type_value(notification_type)
        recipients: list[str] = [doubt.student_id]
        if doubt.assigned_educator_id:
            recipients.append(doubt.assigned_educator_id)
        if _includes_parents(kind):
            recipients.extend(await self._store.parents_of(doubt.student_id))

        unique = [uid for uid in dict.fromkeys(recipients) if uid != exclude_user_id]
        payload = {**(metadata or {}), "doubt_title": doubt.title}
        results = await asyncio.gather(
            *(
                self.send(uid, kind, title, message,
                          doubt_id=doubt.id, metadata=payload, priority=priority)
                for uid in unique
            ),
            return_exceptions=True,
        )
        sent = []
        for uid, result in zip(unique, results):
            if isinstance(result, BaseException):
                logger.error("Notification %s to %s failed: %s", kind, uid, result)
            else:
                sent.append(result)
        return sent

    async def notify_specialists(self, doubt: Doubt) -> list[DoubtNotification]:
        """Tell every active specialist of the doubt's subject that it is waiting."""
        specialists = await self._store.active_specialists(doubt.subject)
        priority = (
            NotificationPriority.HIGH
            if doubt.priority == DoubtPriority.URGENT
            else NotificationPriority.NORMAL
        )
        educator_ids = list(dict.fromkeys(s.educator_id for s in specialists))
        return await self.send_bulk(
            educator_ids,
            NotificationType.NEW_DOUBT_AVAILABLE,
            "New Doubt Available",
            f'New {doubt.subject} doubt: "{doubt.title}"',
            doubt_id=doubt.id,
            metadata={"subject": doubt.subject, "difficulty": doubt.difficulty_level},
            priority=priority,
        )

    async def send_bulk(
        self,
        user_ids: list[str],
        notification_type: NotificationType | str,
        title: str,
        message: str,
        *,
        doubt_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        priority: NotificationPriority = NotificationPriority.NORMAL,
    ) -> list[DoubtNotification]:
        results = await asyncio.gather(
            *(
                self.send(uid, notification_type, title, message,
                          doubt_id=doubt_id, metadata=metadata, priority=priority)
                for uid in user_ids
            ),
            return_exceptions=True,
        )
        sent = [r for r in results if isinstance(r, DoubtNotification)]
        failed = len(results) - len(sent)
        if failed:
            logger.error("Bulk notification: %d of %d sends failed", failed, len(results))
        return sent

    # -- reading / housekeeping ---------------------------------------------

    async def mark_read(self, notification_ids: list[str], user_id: str) -> int:
        """Mark the caller's own notifications read; ids of others are ignored."""
        updated = await self._store.mark_notifications_read(notification_ids, user_id, utcnow())
        await self._publish(
            user_room(user_id),
            "notifications_read",
            {"notification_ids": notification_ids, "timestamp": utcnow().isoformat()},
        )
        return updated

    async def unread_count(self, user_id: str) -> int:
        return await self._store.count_unread(user_id)

    async def list_for_user(
        self, user_id: str, limit: int = 20, offset: int = 0
    ) -> list[DoubtNotification]:
        return await self._store.list_notifications(user_id, limit, offset)

    async def delete_for_user(self, notification_id: str, user_id: str) -> bool:
        return await self._store.delete_notification(notification_id, user_id)

    async def purge_older_than(self, days: int) -> int:
        cutoff = utcnow() - timedelta(days=days)
        return await self._store.purge_notifications_before(cutoff)


# ── Background Retention Task ────────────────────────────────


async def periodic_purge(
    dispatcher: NotificationDispatcher, interval_seconds: int = 3600, days: int = 30
) -> None:
    """Background task that periodically deletes expired notifications.

    Should be started as an ``asyncio.Task`` in the FastAPI lifespan.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await dispatcher.purge_older_than(days)
        except Exception:
            logger.exception("Notification purge failed")
