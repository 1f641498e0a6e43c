"""Pull-only iCal (``.ics``) feed adapter."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from icalendar import Calendar as ICalendar

from famcal.errors import ConfigurationError, ProviderRequestError, SyncError
from famcal.models import Calendar, Event, EventStatus
from famcal.sync.base import (
    DEFAULT_SYNC_WINDOW_DAYS,
    CalendarProviderAdapter,
    RemoteEvent,
    SyncBatch,
    parse_rrule,
)

logger = logging.getLogger(__name__)

ALLOWED_FEED_SCHEMES = ("http://", "https://", "webcal://")


def normalize_feed_url(url: str) -> str:
    """Validate a feed URL; ``webcal://`` is fetched over https."""
    normalized = url.strip()
    if not normalized.lower().startswith(ALLOWED_FEED_SCHEMES):
        raise ConfigurationError(
            f"iCal feed URL must use http, https or webcal: {normalized!r}",
            details={"feed_url": normalized},
        )
    if normalized.lower().startswith("webcal://"):
        normalized = "https://" + normalized[len("webcal://") :]
    return normalized


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def _as_datetime(value: date | datetime, tz: ZoneInfo) -> datetime:
    """Floating times and all-day dates are placed in the calendar timezone."""
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=tz)
    return datetime(value.year, value.month, value.day, tzinfo=tz)


def _exception_dates(component: Any, tz: ZoneInfo) -> list[datetime]:
    raw = component.get("EXDATE")
    if raw is None:
        return []
    entries = raw if isinstance(raw, list) else [raw]
    instants: list[datetime] = []
    for entry in entries:
        for item in getattr(entry, "dts", []):
            instants.append(_as_datetime(item.dt, tz))
    return sorted(instants)


def _status(component: Any) -> EventStatus:
    raw = component.get("STATUS")
    if raw is None:
        return EventStatus.CONFIRMED
    try:
        return EventStatus(str(raw).strip().lower())
    except ValueError:
        return EventStatus.CONFIRMED


def _text(component: Any, name: str) -> str | None:
    raw = component.get(name)
    if raw is None:
        return None
    normalized = str(raw).strip()
    return normalized or None


def vevent_to_remote(component: Any, *, timezone: str) -> RemoteEvent | None:
    """Convert one VEVENT into a :class:`RemoteEvent`.

    Returns None for components that cannot be mirrored (no UID or DTSTART).
    """
    uid = _text(component, "UID")
    dtstart = component.get("DTSTART")
    if uid is None or dtstart is None:
        return None

    tz = _zone(timezone)
    start_time = _as_datetime(dtstart.dt, tz)
    dtend = component.get("DTEND")
    duration = component.get("DURATION")
    if dtend is not None:
        end_time = _as_datetime(dtend.dt, tz)
    elif duration is not None:
        end_time = start_time + duration.dt
    elif isinstance(dtstart.dt, datetime):
        end_time = start_time
    else:
        # All-day event without DTEND lasts one day.
        end_time = start_time + timedelta(days=1)

    recurrence = None
    rrule = component.get("RRULE")
    if isinstance(rrule, list):
        rrule = rrule[0] if rrule else None
    if rrule is not None:
        recurrence = parse_rrule(rrule.to_ical().decode())
        exception_dates = _exception_dates(component, tz)
        if recurrence is not None and exception_dates:
            recurrence = recurrence.model_copy(update={"exception_dates": exception_dates})

    last_modified = component.get("LAST-MODIFIED")
    return RemoteEvent(
        external_id=uid,
        title=_text(component, "SUMMARY") or "(untitled)",
        description=_text(component, "DESCRIPTION"),
        location=_text(component, "LOCATION"),
        start_time=start_time,
        end_time=max(end_time, start_time),
        status=_status(component),
        recurrence=recurrence,
        updated_at=_as_datetime(last_modified.dt, tz) if last_modified is not None else None,
    )


def parse_feed(content: bytes | str, *, timezone: str = "UTC") -> list[RemoteEvent]:
    """Parse an iCal document into remote events, one per UID.

    Overridden instances (``RECURRENCE-ID``) are skipped; the series master
    stands for the whole series.
    """
    try:
        document = ICalendar.from_ical(content)
    except ValueError as exc:
        raise ConfigurationError(f"Feed is not a valid iCalendar document: {exc}") from exc

    events: list[RemoteEvent] = []
    seen: set[str] = set()
    for component in document.walk("VEVENT"):
        if component.get("RECURRENCE-ID") is not None:
            continue
        remote = vevent_to_remote(component, timezone=timezone)
        if remote is None:
            logger.debug("Skipping VEVENT without UID or DTSTART")
            continue
        if remote.external_id in seen:
            continue
        seen.add(remote.external_id)
        events.append(remote)
    return events


class ICalFeedAdapter(CalendarProviderAdapter):
    """Reads a public or secret-URL iCal feed. Local changes are never pushed."""

    def __init__(self, *, http_client: httpx.AsyncClient | None = None) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0, follow_redirects=True)

    @property
    def name(self) -> str:
        return "ical"

    @property
    def writable(self) -> bool:
        return False

    @staticmethod
    def _feed_url(calendar: Calendar) -> str:
        feed_url = calendar.external_config.feed_url
        if not feed_url:
            raise ConfigurationError(f"Calendar {calendar.id} has no feed_url configured")
        return normalize_feed_url(feed_url)

    async def _fetch(self, calendar: Calendar) -> list[RemoteEvent]:
        url = self._feed_url(calendar)
        try:
            response = await self._http_client.get(url, headers={"Accept": "text/calendar"})
        except httpx.HTTPError as exc:
            raise SyncError(f"iCal feed request failed: {exc}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                status_code=response.status_code,
                message=f"iCal feed returned {response.status_code}",
            )
        return parse_feed(response.content, timezone=calendar.timezone)

    async def validate(self, calendar: Calendar) -> dict[str, Any]:
        events = await self._fetch(calendar)
        return {"feed_url": self._feed_url(calendar), "event_count": len(events)}

    async def list_events(
        self,
        calendar: Calendar,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[RemoteEvent]:
        events = await self._fetch(calendar)
        return [
            event
            for event in events
            if (start is None or event.end_time >= start or event.recurrence is not None)
            and (end is None or event.start_time <= end)
        ]

    async def get_event(self, calendar: Calendar, external_id: str) -> RemoteEvent | None:
        for event in await self._fetch(calendar):
            if event.external_id == external_id:
                return event
        return None

    async def insert_event(self, calendar: Calendar, event: Event) -> RemoteEvent:
        raise SyncError(f"iCal calendar {calendar.id} is read-only")

    async def update_event(self, calendar: Calendar, event: Event) -> RemoteEvent:
        raise SyncError(f"iCal calendar {calendar.id} is read-only")

    async def delete_event(self, calendar: Calendar, external_id: str) -> None:
        raise SyncError(f"iCal calendar {calendar.id} is read-only")

    async def sync_incremental(
        self,
        calendar: Calendar,
        *,
        sync_token: str | None,
        full_sync_window_days: int = DEFAULT_SYNC_WINDOW_DAYS,
    ) -> SyncBatch:
        """Every pull is a full snapshot of the feed."""
        return SyncBatch(updated=await self._fetch(calendar), complete=True)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
