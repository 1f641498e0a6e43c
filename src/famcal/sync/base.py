"""Provider adapter interface and the provider-neutral remote event shape."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, time, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, field_validator

from famcal.models import (
    Calendar,
    Event,
    EventStatus,
    RecurrenceRule,
    RecurrenceType,
    ensure_aware,
)

logger = logging.getLogger(__name__)

DEFAULT_SYNC_WINDOW_DAYS = 30

# RRULE parts that do not change which instants a fixed-frequency rule yields.
_NEUTRAL_RRULE_PARTS = frozenset({"FREQ", "INTERVAL", "COUNT", "UNTIL", "WKST"})
_RRULE_UNTIL_FORMATS = ("%Y%m%dT%H%M%SZ", "%Y%m%dT%H%M%S")


class RemoteEvent(BaseModel):
    """An event as reported by a provider, keyed by its provider id."""

    model_config = ConfigDict(extra="forbid")

    external_id: str
    title: str = "(untitled)"
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    status: EventStatus = EventStatus.CONFIRMED
    recurrence: RecurrenceRule | None = None
    updated_at: datetime | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_boundary(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    def mirrored_fields(self) -> dict[str, Any]:
        """Fields copied onto the local event on create and update."""
        end_time = max(self.end_time, self.start_time)
        return {
            "title": self.title.strip() or "(untitled)",
            "description": self.description,
            "location": self.location,
            "start_time": self.start_time,
            "end_time": end_time,
            "status": self.status,
            "external_id": self.external_id,
            "recurrence": self.recurrence,
        }

    def to_create(self, calendar_id: str) -> dict[str, Any]:
        return {"calendar_id": calendar_id, **self.mirrored_fields()}

    def matches(self, event: Event) -> bool:
        """Return True when ``event`` already carries every mirrored field."""
        for name, value in self.mirrored_fields().items():
            if getattr(event, name) != value:
                return False
        return True


@dataclass
class SyncBatch:
    """Changes returned by one provider pull.

    ``complete`` marks a batch that lists the provider's entire state, so
    local events missing from ``updated`` are stale and get deleted.
    """

    updated: list[RemoteEvent] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)
    next_sync_token: str | None = None
    complete: bool = False


# ---------------------------------------------------------------------------
# RRULE conversion
# ---------------------------------------------------------------------------


def _parse_rrule_until(value: str) -> datetime:
    for fmt in _RRULE_UNTIL_FORMATS:
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    # Date-only UNTIL is inclusive of the whole day.
    day = datetime.strptime(value, "%Y%m%d").date()
    return datetime.combine(day, time.max, tzinfo=UTC)


def parse_rrule(value: str) -> RecurrenceRule | None:
    """Convert an RFC 5545 ``RRULE`` into a :class:`RecurrenceRule`.

    Only plain fixed-frequency rules are representable. Rules using other
    parts (``BYDAY``, ``BYMONTHDAY``, ...) or sub-daily frequencies return
    None so the caller keeps just the first instance.
    """
    body = value.strip()
    if body.upper().startswith("RRULE:"):
        body = body[len("RRULE:") :]
    parts: dict[str, str] = {}
    for chunk in body.split(";"):
        if "=" not in chunk:
            continue
        key, _, raw = chunk.partition("=")
        parts[key.strip().upper()] = raw.strip()

    unsupported = set(parts) - _NEUTRAL_RRULE_PARTS
    if unsupported:
        logger.debug("Unsupported RRULE parts %s in %r", sorted(unsupported), value)
        return None
    try:
        rule_type = RecurrenceType(parts.get("FREQ", "").lower())
    except ValueError:
        logger.debug("Unsupported RRULE frequency in %r", value)
        return None

    try:
        interval = int(parts.get("INTERVAL", "1"))
        count = int(parts["COUNT"]) if "COUNT" in parts else None
        until = _parse_rrule_until(parts["UNTIL"]) if "UNTIL" in parts else None
        return RecurrenceRule(type=rule_type, interval=interval, count=count, until=until)
    except ValueError:
        logger.debug("Malformed RRULE %r", value)
        return None


def _parse_exdate_line(line: str) -> list[datetime]:
    """Parse ``EXDATE[;TZID=..]:v1,v2`` into aware instants."""
    head, _, values = line.partition(":")
    tz: tzinfo = UTC
    for param in head.split(";")[1:]:
        key, _, raw = param.partition("=")
        if key.strip().upper() == "TZID":
            try:
                tz = ZoneInfo(raw.strip())
            except (ZoneInfoNotFoundError, ValueError):
                logger.debug("Unknown EXDATE TZID %r; assuming UTC", raw)
    instants: list[datetime] = []
    for raw in values.split(","):
        raw = raw.strip()
        if not raw:
            continue
        try:
            if raw.endswith("Z"):
                instants.append(datetime.strptime(raw, "%Y%m%dT%H%M%SZ").replace(tzinfo=UTC))
            elif "T" in raw:
                instants.append(datetime.strptime(raw, "%Y%m%dT%H%M%S").replace(tzinfo=tz))
            else:
                instants.append(datetime.strptime(raw, "%Y%m%d").replace(tzinfo=tz))
        except ValueError:
            logger.debug("Malformed EXDATE value %r", raw)
    return instants


def parse_recurrence_lines(lines: list[str]) -> RecurrenceRule | None:
    """Build a rule from provider ``RRULE``/``EXDATE`` lines (RDATE is ignored)."""
    rule: RecurrenceRule | None = None
    exception_dates: list[datetime] = []
    for line in lines:
        normalized = line.strip()
        upper = normalized.upper()
        if upper.startswith("RRULE:") and rule is None:
            rule = parse_rrule(normalized)
            if rule is None:
                return None
        elif upper.startswith("EXDATE"):
            exception_dates.extend(_parse_exdate_line(normalized))
    if rule is None:
        return None
    if exception_dates:
        rule = rule.model_copy(update={"exception_dates": sorted(exception_dates)})
    return rule


def _format_instant(value: datetime) -> str:
    return ensure_aware(value).astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def format_rrule(rule: RecurrenceRule) -> list[str]:
    """Render a rule as ``RRULE``/``EXDATE`` lines."""
    parts = [f"FREQ={rule.type.value.upper()}"]
    if rule.interval != 1:
        parts.append(f"INTERVAL={rule.interval}")
    if rule.count is not None:
        parts.append(f"COUNT={rule.count}")
    if rule.until is not None:
        parts.append(f"UNTIL={_format_instant(rule.until)}")
    lines = [f"RRULE:{';'.join(parts)}"]
    if rule.exception_dates:
        lines.append(
            "EXDATE:" + ",".join(_format_instant(value) for value in rule.exception_dates)
        )
    return lines


# ---------------------------------------------------------------------------
# Adapter interface
# ---------------------------------------------------------------------------


class CalendarProviderAdapter(abc.ABC):
    """Provider abstraction used by the sync engine.

    Adapters speak the provider's wire format and return ``RemoteEvent``
    instances; they never touch the repository.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @property
    def writable(self) -> bool:
        """Whether local mutations can be pushed to the provider."""
        return True

    @abc.abstractmethod
    async def validate(self, calendar: Calendar) -> dict[str, Any]:
        """Check the remote calendar is reachable with the stored credentials.

        Returns provider metadata about the calendar. Raises
        ``ConfigurationError`` for an unknown or malformed remote and
        ``AuthenticationError`` / ``SyncError`` for access failures.
        """
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        calendar: Calendar,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[RemoteEvent]:
        """Return remote events overlapping an optional window."""
        ...

    @abc.abstractmethod
    async def get_event(self, calendar: Calendar, external_id: str) -> RemoteEvent | None:
        """Fetch a single remote event by provider id."""
        ...

    @abc.abstractmethod
    async def insert_event(self, calendar: Calendar, event: Event) -> RemoteEvent:
        """Create ``event`` remotely and return the stored remote copy."""
        ...

    @abc.abstractmethod
    async def update_event(self, calendar: Calendar, event: Event) -> RemoteEvent:
        """Patch the remote counterpart of ``event`` (``event.external_id``)."""
        ...

    @abc.abstractmethod
    async def delete_event(self, calendar: Calendar, external_id: str) -> None:
        """Delete a remote event. Already-deleted events are not an error."""
        ...

    @abc.abstractmethod
    async def sync_incremental(
        self,
        calendar: Calendar,
        *,
        sync_token: str | None,
        full_sync_window_days: int = DEFAULT_SYNC_WINDOW_DAYS,
    ) -> SyncBatch:
        """Fetch changes since ``sync_token`` (a full pull when None).

        Raises ``SyncTokenExpired`` when the provider no longer accepts the
        token; the caller retries once with ``sync_token=None``.
        """
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release provider resources."""
        ...
