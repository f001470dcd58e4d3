"""Activity log: append-only audit trail of doubt mutations.

Writes are best-effort: :meth:`ActivityLog.record` schedules the insert on
the side-effect runner and returns immediately.  A failed write is logged
by the runner and never reaches the caller.
"""

from __future__ import annotations

import logging
from typing import Any

from models.notification import ActivityLogEntry, ActivityType
from services.concurrency import SideEffectRunner
from services.doubt_store import DoubtStore

logger = logging.getLogger(__name__)


class ActivityLog:
    def __init__(self, store: DoubtStore, runner: SideEffectRunner) -> None:
        self._store = store
        self._runner = runner

    async def write(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        await self._store.insert_activity(entry)
        logger.debug(
            "Activity %s on doubt %s by %s",
            entry.activity_type, entry.doubt_id, entry.user_id or "system",
        )
        return entry

    def record(
        self,
        doubt_id: str,
        user_id: str | None,
        activity_type: ActivityType | str,
        description: str,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Schedule one audit entry.  ``user_id=None`` marks a system action."""
        kind = activity_type.value if isinstance(activity_type, ActivityType) else activity_type
        entry = ActivityLogEntry(
            doubt_id=doubt_id,
            user_id=user_id,
            activity_type=kind,
            description=description,
            old_values=old_values,
            new_values=new_values,
            metadata=metadata or {},
        )
        self._runner.spawn(self.write(entry), label=f"activity:{kind}")
