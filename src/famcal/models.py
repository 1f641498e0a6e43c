"""Calendar, permission, and event models."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _ensure_valid_timezone(value: str) -> str:
    normalized = value.strip()
    try:
        ZoneInfo(normalized)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"timezone must be a valid IANA timezone, got {value!r}") from exc
    return normalized


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class CalendarType(StrEnum):
    """Where a calendar's events originate."""

    LOCAL = "local"
    GOOGLE = "google"
    ICAL = "ical"


class EventStatus(StrEnum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class RecurrenceType(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SyncStatus(StrEnum):
    IDLE = "idle"
    SYNCING = "syncing"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------


class RecurrenceRule(BaseModel):
    """Fixed-frequency recurrence with an optional count or end instant.

    Setting both ``count`` and ``until`` is rejected. Setting neither makes
    the series unbounded; queries clip it to their window.
    """

    model_config = ConfigDict(extra="forbid")

    type: RecurrenceType
    interval: int = Field(default=1, ge=1)
    count: int | None = Field(default=None, ge=1)
    until: datetime | None = None
    exception_dates: list[datetime] = Field(default_factory=list)

    @field_validator("until")
    @classmethod
    def _normalize_until(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value) if value is not None else None

    @field_validator("exception_dates")
    @classmethod
    def _normalize_exception_dates(cls, value: list[datetime]) -> list[datetime]:
        return [ensure_aware(item) for item in value]

    @model_validator(mode="after")
    def _validate_bounds(self) -> RecurrenceRule:
        if self.count is not None and self.until is not None:
            raise ValueError("recurrence may set count or until, not both")
        return self


# ---------------------------------------------------------------------------
# Calendars and permissions
# ---------------------------------------------------------------------------


class ExternalConfig(BaseModel):
    """Provider linkage for a calendar. Token fields hold Fernet ciphertext."""

    model_config = ConfigDict(extra="forbid")

    remote_calendar_id: str | None = None
    access_token: str | None = Field(default=None, repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    token_expires_at: datetime | None = None
    feed_url: str | None = None
    sync_token: str | None = None
    last_synced_at: datetime | None = None
    access_role: str | None = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.access_token or self.refresh_token)


class Calendar(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=new_id)
    name: str
    description: str | None = None
    color: str | None = None
    type: CalendarType = CalendarType.LOCAL
    family_id: str | None = None
    owner_id: str | None = None
    is_default: bool = False
    timezone: str = "UTC"
    external_config: ExternalConfig = Field(default_factory=ExternalConfig)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_family_scoped(self) -> bool:
        return self.family_id is not None

    @property
    def is_provider_backed(self) -> bool:
        return self.type is not CalendarType.LOCAL


class CalendarCreate(BaseModel):
    """Input for creating a calendar."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    description: str | None = None
    color: str | None = None
    type: CalendarType = CalendarType.LOCAL
    family_id: str | None = None
    owner_id: str | None = None
    is_default: bool = False
    timezone: str = "UTC"
    external_config: ExternalConfig = Field(default_factory=ExternalConfig)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("name must be a non-empty string")
        return normalized

    @field_validator("timezone")
    @classmethod
    def _normalize_timezone(cls, value: str) -> str:
        return _ensure_valid_timezone(value)


class CalendarUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    color: str | None = None
    is_default: bool | None = None
    timezone: str | None = None

    @field_validator("timezone")
    @classmethod
    def _normalize_timezone(cls, value: str | None) -> str | None:
        return _ensure_valid_timezone(value) if value is not None else None


class CalendarPermission(BaseModel):
    """Capability grant for one user on one calendar."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: str
    user_id: str
    can_view: bool = False
    can_edit: bool = False
    can_share: bool = False


class PermissionFlags(BaseModel):
    """Partial capability set used for checks and updates."""

    model_config = ConfigDict(extra="forbid")

    can_view: bool | None = None
    can_edit: bool | None = None
    can_share: bool | None = None

    def requested(self) -> dict[str, bool]:
        return self.model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class Event(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=new_id)
    calendar_id: str
    family_id: str | None = None
    title: str
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    status: EventStatus = EventStatus.CONFIRMED
    created_by: str
    user_id: str | None = None
    external_id: str | None = None
    recurrence: RecurrenceRule | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_boundary(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    def overlaps(self, start: datetime | None, end: datetime | None) -> bool:
        """Return True when the event intersects the closed window ``[start, end]``."""
        if start is not None and self.end_time < start:
            return False
        if end is not None and self.start_time > end:
            return False
        return True


class EventCreate(BaseModel):
    """Input for creating an event."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: str
    title: str = Field(min_length=1)
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    status: EventStatus = EventStatus.CONFIRMED
    user_id: str | None = None
    external_id: str | None = None
    recurrence: RecurrenceRule | None = None

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string")
        return normalized

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_boundary(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @model_validator(mode="after")
    def _validate_window(self) -> EventCreate:
        if self.start_time > self.end_time:
            raise ValueError("start_time must not be after end_time")
        return self


class EventUpdate(BaseModel):
    """Partial event update; only explicitly set fields are applied."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    location: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    status: EventStatus | None = None
    user_id: str | None = None
    external_id: str | None = None
    recurrence: RecurrenceRule | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_boundary(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value) if value is not None else None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class CalendarSyncState(BaseModel):
    """In-process sync bookkeeping for one calendar."""

    model_config = ConfigDict(extra="ignore")

    status: SyncStatus = SyncStatus.IDLE
    last_sync_at: datetime | None = None
    last_error: str | None = None
    last_change_count: int = 0
