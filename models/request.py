"""API request / response models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from models.doubt import Doubt, DoubtPriority, DoubtStatus, DoubtType
from models.notification import DoubtNotification


class _RequestModel(BaseModel):
    """Request bodies: trimmed strings, unknown keys dropped."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")


# ── Doubts ───────────────────────────────────────────────────


class DoubtCreateRequest(_RequestModel):
    """POST /api/doubts: request body.

    A client-supplied ``student_id`` is dropped; the owner is always the caller.
    """

    title: str = Field(min_length=5, max_length=255)
    description: str = Field(min_length=10, max_length=5000)
    subject: str = Field(min_length=1, max_length=100)
    type: DoubtType
    priority: DoubtPriority = DoubtPriority.MEDIUM
    tags: list[str] = Field(default_factory=list)
    attachments: list[Any] = Field(default_factory=list)
    difficulty_level: int = Field(default=3, ge=1, le=5)
    prefer_ai: bool = False


class DoubtUpdateRequest(_RequestModel):
    """PUT /api/doubts/{id}: only fields present in the body are applied."""

    status: DoubtStatus | None = None
    assigned_educator_id: str | None = None
    priority: DoubtPriority | None = None
    tags: list[str] | None = None
    estimated_time_minutes: int | None = Field(default=None, ge=1)


class ResponseCreateRequest(_RequestModel):
    """POST /api/doubts/{id}/responses: request body."""

    content: str = Field(min_length=1, max_length=10000)
    attachments: list[Any] = Field(default_factory=list)
    parent_response_id: str | None = None


class RatingRequest(_RequestModel):
    """POST /api/doubts/{id}/rate: request body."""

    rating: int = Field(ge=1, le=5)
    feedback: str | None = Field(default=None, max_length=1000)
    response_quality_rating: int | None = Field(default=None, ge=1, le=5)
    response_speed_rating: int | None = Field(default=None, ge=1, le=5)
    educator_rating: int | None = Field(default=None, ge=1, le=5)


class DoubtFilters(_RequestModel):
    """GET /api/doubts: optional filters (applied after visibility scoping)."""

    status: DoubtStatus | None = None
    subject: str | None = Field(default=None, min_length=1, max_length=100)
    priority: DoubtPriority | None = None
    student_id: str | None = None
    educator_id: str | None = None
    search: str | None = Field(default=None, min_length=1, max_length=255)


class DoubtPage(BaseModel):
    """GET /api/doubts: response body."""

    items: list[Doubt]
    total: int
    page: int
    limit: int
    total_pages: int


# ── Notifications ────────────────────────────────────────────


class MarkReadRequest(_RequestModel):
    """PUT /api/notifications/mark-read: request body."""

    notification_ids: list[str] = Field(min_length=1)


class NotificationTestRequest(_RequestModel):
    """POST /api/notifications/test: staff-only request body."""

    user_id: str | None = None
    title: str = "Test Notification"
    message: str = "This is a test notification from the system."
    type: str = "system_message"


class NotificationPage(BaseModel):
    """GET /api/notifications: response body."""

    notifications: list[DoubtNotification]
    total: int
    limit: int
    offset: int
