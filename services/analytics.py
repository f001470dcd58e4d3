"""Doubt analytics: staff overview of volume, resolution and satisfaction."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel

from errors.exceptions import AccessDeniedError
from models.doubt import utcnow
from models.principal import Principal
from services.doubt_store import DoubtStore

logger = logging.getLogger(__name__)


class Period(str, Enum):
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class AnalyticsOverview(BaseModel):
    period: Period
    start: datetime
    end: datetime
    total_doubts: int
    resolved_doubts: int
    resolution_rate: float  # percent
    avg_resolution_minutes: float | None
    avg_rating: float | None
    subject_distribution: dict[str, int]
    active_educators: int


def period_window(period: Period, now: datetime | None = None) -> tuple[datetime, datetime]:
    end = now or utcnow()
    if period == Period.TODAY:
        start = end.replace(hour=0, minute=0, second=0, microsecond=0)
    elif period == Period.MONTH:
        start = end - timedelta(days=30)
    elif period == Period.YEAR:
        start = end - timedelta(days=365)
    else:
        start = end - timedelta(days=7)
    return start, end


class DoubtAnalytics:
    def __init__(self, store: DoubtStore) -> None:
        self._store = store

    async def overview(self, principal: Principal, period: Period = Period.WEEK) -> AnalyticsOverview:
        if not principal.is_staff:
            raise AccessDeniedError("Analytics are available to staff only")

        start, end = period_window(period)
        doubts = await self._store.doubts_created_between(start, end)
        ratings = await self._store.ratings_between(start, end)

        # resolved_at survives the move to closed, so closed doubts count too
        resolved = [d for d in doubts if d.resolved_at is not None]
        durations = [
            (d.resolved_at - d.created_at).total_seconds() / 60
            for d in resolved
            if d.resolved_at >= d.created_at
        ]
        total = len(doubts)

        return AnalyticsOverview(
            period=period,
            start=start,
            end=end,
            total_doubts=total,
            resolved_doubts=len(resolved),
            resolution_rate=round(len(resolved) / total * 100, 1) if total else 0.0,
            avg_resolution_minutes=round(sum(durations) / len(durations), 1) if durations else None,
            avg_rating=round(sum(r.rating for r in ratings) / len(ratings), 1) if ratings else None,
            subject_distribution=dict(Counter(d.subject for d in doubts)),
            active_educators=len({d.assigned_educator_id for d in doubts if d.assigned_educator_id}),
        )
