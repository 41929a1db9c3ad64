"""
Domain Models using Pydantic for validation.

Architecture Decision: Why Pydantic?
Rows come back from SQLite as naive datetimes and preferences are loaded from
JSON, so every boundary goes through model validation. Instants are always
normalised to aware UTC; calendar dates are kept separately because they
depend on the user's selected zone.
"""

import datetime
import enum
import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


TERMINAL_STATUSES = frozenset({"completed", "canceled"})


def new_id() -> str:
    """Client-side identifier, available before the row is persisted."""
    return uuid.uuid4().hex


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def ensure_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


class TimerState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


class Task(BaseModel):
    """
    Represents a trackable task, usually mirrored from a Linear issue.

    A task is either global (visible to everyone) or visible only to its
    assignee.
    """
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1, max_length=300)
    color: str = "#3b82f6"

    # Linear linkage
    external_issue_id: Optional[str] = None
    external_identifier: Optional[str] = None
    external_status: Optional[str] = None
    external_updated_at: Optional[datetime.datetime] = None

    assignee_id: Optional[str] = None
    assignee_name: Optional[str] = None
    is_global: bool = False

    # Denormalized names used by the spreadsheet export
    team_name: Optional[str] = None
    project_name: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    priority: Optional[int] = None

    created_at: datetime.datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "external_updated_at")
    @classmethod
    def _normalize_instants(cls, value):
        return ensure_utc(value)

    @property
    def is_terminal(self) -> bool:
        return self.external_status in TERMINAL_STATUSES

    def is_visible_to(self, user_id: Optional[str]) -> bool:
        if self.is_global:
            return True
        return user_id is not None and self.assignee_id == user_id


class TimeEntry(BaseModel):
    """
    One contiguous interval of work on one task by one user.

    An entry with ``end_time`` unset is open and still accumulating time.
    ``date`` is the calendar date the entry is attributed to in the user's
    zone.
    """
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    user_id: str
    task_id: str
    start_time: datetime.datetime
    end_time: Optional[datetime.datetime] = None
    comment: str = ""
    date: datetime.date
    created_at: datetime.datetime = Field(default_factory=utcnow)

    @field_validator("start_time", "end_time", "created_at")
    @classmethod
    def _normalize_instants(cls, value):
        return ensure_utc(value)

    @field_validator("comment", mode="before")
    @classmethod
    def _comment_not_null(cls, value):
        return value or ""

    @model_validator(mode="after")
    def _check_order(self):
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def duration_seconds(self, now: Optional[datetime.datetime] = None) -> float:
        """Seconds covered by the entry; open entries are measured up to ``now``."""
        end = self.end_time or ensure_utc(now) or utcnow()
        return max(0.0, (end - self.start_time).total_seconds())


class UserPreferences(BaseModel):
    """
    Per-user settings persisted next to the database.
    """
    model_config = ConfigDict(from_attributes=True)

    user_id: str = Field(default="me@example.com", description="Identifier of the tracking user (e-mail)")
    user_name: Optional[str] = Field(default=None, description="Display name used in exports and reports")
    timezone: str = Field(default="Asia/Tokyo", description="Key of the zone used for day attribution")
    last_comment: str = Field(default="", description="Comment carried over to the next started entry")
