"""Auto-assignment: hand a fresh doubt to the best-ranked educator.

Ranking is delegated to the store (``suggest_educators``); the engine takes
the top candidate and performs a guarded open → assigned write.  Finding
nobody is an expected outcome, not an error.
"""

from __future__ import annotations

import asyncio
import logging

from models.doubt import Doubt, DoubtStatus
from models.notification import ActivityType
from services.activity_log import ActivityLog
from services.doubt_store import DoubtStore

logger = logging.getLogger(__name__)


class AutoAssignmentEngine:
    def __init__(self, store: DoubtStore, activity: ActivityLog, timeout: float = 5.0) -> None:
        self._store = store
        self._activity = activity
        self._timeout = timeout

    async def assign(self, doubt_id: str, subject: str) -> Doubt | None:
        """Assign and return the updated doubt, or ``None`` when nobody was assigned.

        Timeouts and collaborator errors are soft failures: logged, ``None``.
        """
        try:
            return await asyncio.wait_for(self._assign(doubt_id, subject), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Auto-assignment for doubt %s timed out after %.1fs", doubt_id, self._timeout)
        except Exception:
            logger.exception("Auto-assignment for doubt %s failed", doubt_id)
        return None

    async def _assign(self, doubt_id: str, subject: str) -> Doubt | None:
        suggestions = await self._store.suggest_educators(subject)
        if not suggestions:
            logger.info("No educator available for %s doubt %s", subject, doubt_id)
            return None

        best = suggestions[0]
        doubt = await self._store.assign_educator(doubt_id, best.educator_id, assigned_by=None)
        if doubt is None:
            logger.info("Doubt %s no longer open; skipping auto-assignment", doubt_id)
            return None

        self._activity.record(
            doubt_id,
            None,
            ActivityType.DOUBT_ASSIGNED,
            "Doubt auto-assigned to educator",
            old_values={"status": DoubtStatus.OPEN.value, "assigned_educator_id": None},
            new_values={
                "status": doubt.status.value,
                "assigned_educator_id": best.educator_id,
            },
            metadata={"assigned_by": None, "score": best.score},
        )
        logger.info("Auto-assigned doubt %s to educator %s", doubt_id, best.educator_id)
        return doubt
