"""Doubt data models: doubts, thread responses, ratings, educator competence."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_tags(tags: list[str]) -> list[str]:
    """Strip, drop blanks, dedupe (first occurrence wins)."""
    seen: dict[str, None] = {}
    for tag in tags:
        tag = tag.strip()
        if tag:
            seen.setdefault(tag, None)
    return list(seen)


# ── Enums ────────────────────────────────────────────────────


class DoubtStatus(str, Enum):
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


# Forward-only ordering of the lifecycle.
STATUS_RANK: dict[DoubtStatus, int] = {
    DoubtStatus.OPEN: 0,
    DoubtStatus.ASSIGNED: 1,
    DoubtStatus.IN_PROGRESS: 2,
    DoubtStatus.RESOLVED: 3,
    DoubtStatus.CLOSED: 4,
}

# Statuses from which the first non-owner response moves a doubt to in_progress.
PRE_WORK_STATUSES = frozenset({DoubtStatus.OPEN, DoubtStatus.ASSIGNED})


class DoubtType(str, Enum):
    CONCEPT = "concept"
    PROBLEM = "problem"
    HOMEWORK = "homework"
    EXAM_PREP = "exam_prep"
    OTHER = "other"


class DoubtPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class AuthorType(str, Enum):
    STUDENT = "student"
    EDUCATOR = "educator"
    ADMIN = "admin"
    OPERATION_MANAGER = "operation_manager"
    AI = "ai"


# ── Doubt ────────────────────────────────────────────────────


class Doubt(BaseModel):
    """A single question raised by a student."""

    id: str = Field(default_factory=new_id)
    title: str
    description: str
    subject: str
    type: DoubtType
    priority: DoubtPriority = DoubtPriority.MEDIUM
    difficulty_level: int = Field(default=3, ge=1, le=5)
    tags: list[str] = Field(default_factory=list)
    attachments: list[Any] = Field(default_factory=list)
    status: DoubtStatus = DoubtStatus.OPEN
    student_id: str
    assigned_educator_id: str | None = None
    assigned_at: datetime | None = None
    estimated_time_minutes: int | None = None
    ai_assisted: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    resolved_at: datetime | None = None
    closed_at: datetime | None = None
    # Populated by list queries only.
    response_count: int = 0

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, v: list[str]) -> list[str]:
        return normalize_tags(v)


class DoubtResponse(BaseModel):
    """A reply within a doubt's thread. Immutable once created."""

    id: str = Field(default_factory=new_id)
    doubt_id: str
    author_id: str | None = None  # None for AI-authored replies
    author_type: AuthorType
    content: str
    attachments: list[Any] = Field(default_factory=list)
    parent_response_id: str | None = None
    ai_generated: bool = False
    ai_model: str | None = None
    ai_confidence_score: float | None = None
    created_at: datetime = Field(default_factory=utcnow)


class DoubtRating(BaseModel):
    """A student's evaluation of a resolved doubt; unique per (doubt, student)."""

    id: str = Field(default_factory=new_id)
    doubt_id: str
    student_id: str
    rating: int = Field(ge=1, le=5)
    feedback: str | None = None
    response_quality_rating: int | None = Field(default=None, ge=1, le=5)
    response_speed_rating: int | None = Field(default=None, ge=1, le=5)
    educator_rating: int | None = Field(default=None, ge=1, le=5)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DoubtDetail(Doubt):
    """A doubt with its thread (created_at ascending) and ratings."""

    responses: list[DoubtResponse] = Field(default_factory=list)
    ratings: list[DoubtRating] = Field(default_factory=list)


class DoubtAssignment(BaseModel):
    """Assignment history row. ``assigned_by=None`` marks auto-assignment."""

    id: str = Field(default_factory=new_id)
    doubt_id: str
    educator_id: str
    assigned_by: str | None = None
    assigned_at: datetime = Field(default_factory=utcnow)


# ── Educator competence ──────────────────────────────────────


class EducatorSpecialization(BaseModel):
    educator_id: str
    subject: str
    proficiency_level: int = Field(default=3, ge=1, le=5)
    years_of_experience: int = 0
    is_active: bool = True


class EducatorSuggestion(BaseModel):
    """One ranked candidate from the suggestion procedure."""

    educator_id: str
    score: float = 0.0
