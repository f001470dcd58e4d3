"""Notification and activity-log records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from models.doubt import new_id, utcnow


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class NotificationType(str, Enum):
    NEW_DOUBT = "new_doubt"
    NEW_DOUBT_AVAILABLE = "new_doubt_available"
    DOUBT_ASSIGNED = "doubt_assigned"
    RESPONSE_ADDED = "response_added"
    DOUBT_IN_PROGRESS = "doubt_in_progress"
    DOUBT_RESOLVED = "doubt_resolved"
    DOUBT_CLOSED = "doubt_closed"
    RATING_ADDED = "rating_added"
    SYSTEM_MESSAGE = "system_message"


class DoubtNotification(BaseModel):
    """A persisted fan-out record for one recipient."""

    id: str = Field(default_factory=new_id)
    doubt_id: str | None = None
    user_id: str
    notification_type: str
    title: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    priority: NotificationPriority = NotificationPriority.NORMAL
    is_read: bool = False
    read_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


class ActivityType(str, Enum):
    DOUBT_CREATED = "doubt_created"
    DOUBT_UPDATED = "doubt_updated"
    DOUBT_ASSIGNED = "doubt_assigned"
    DOUBT_REASSIGNED = "doubt_reassigned"
    STATUS_CHANGED = "status_changed"
    RESPONSE_ADDED = "response_added"
    AI_RESPONSE_ADDED = "ai_response_added"
    RATING_ADDED = "rating_added"


class ActivityLogEntry(BaseModel):
    """Append-only audit record of one doubt mutation."""

    id: str = Field(default_factory=new_id)
    doubt_id: str
    user_id: str | None = None
    activity_type: str
    description: str
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
