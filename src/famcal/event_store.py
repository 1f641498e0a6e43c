"""Permission-checked event operations.

Every event mutation, local or sync-originated, goes through ``EventStore``.
Each operation resolves the target first (``NotFound``), then checks the
acting user's capability (``PermissionDenied``), then touches storage.

Side effects after a successful write, in order:

1. the calendar's cached range queries are invalidated;
2. a notification is queued (fire-and-forget);
3. when ``propagate`` is set and the calendar is provider-backed with push
   support, the change is pushed through the outbound publisher. A push
   failure raises ``SyncError`` but the local write is kept.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Protocol

from famcal import recurrence
from famcal.cache import EventCache, get_cache_key
from famcal.calendars import CalendarService, coerce_model
from famcal.errors import NotFound, ValidationError
from famcal.models import Calendar, Event, EventCreate, EventUpdate
from famcal.notifications import NotificationDispatcher
from famcal.permissions import PermissionAuthority
from famcal.storage.base import CalendarRepository

logger = logging.getLogger(__name__)

DEFAULT_MAX_EVENTS_PER_CALENDAR = 1000
TASK_EVENT_PREFIX = "task-"
SHOPPING_EVENT_PREFIX = "shopping-"


class OutboundPublisher(Protocol):
    """Receives local mutations on provider-backed calendars."""

    def accepts_push(self, calendar: Calendar) -> bool: ...

    async def push_created(self, calendar: Calendar, event: Event) -> Event: ...

    async def push_updated(self, calendar: Calendar, event: Event) -> Event: ...

    async def push_deleted(self, calendar: Calendar, event: Event) -> None: ...


class EventStore:
    """Event CRUD, range queries with recurrence expansion, and upsert helpers."""

    def __init__(
        self,
        repository: CalendarRepository,
        calendars: CalendarService,
        permissions: PermissionAuthority,
        *,
        cache: EventCache | None = None,
        notifications: NotificationDispatcher | None = None,
        max_events_per_calendar: int = DEFAULT_MAX_EVENTS_PER_CALENDAR,
    ) -> None:
        self._repository = repository
        self._calendars = calendars
        self._permissions = permissions
        self._cache = cache
        self._notifications = notifications
        self._max_events_per_calendar = max_events_per_calendar
        self._outbound: OutboundPublisher | None = None

    def attach_outbound(self, publisher: OutboundPublisher | None) -> None:
        self._outbound = publisher

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create_event(
        self,
        data: EventCreate | dict[str, Any],
        acting_user_id: str,
        *,
        event_id: str | None = None,
        propagate: bool = True,
    ) -> Event:
        """Create an event on ``data.calendar_id``. Requires ``can_edit``."""
        payload = coerce_model(EventCreate, data)
        calendar = await self._calendars.require_calendar(payload.calendar_id)
        await self._permissions.require_permission(calendar.id, acting_user_id, can_edit=True)

        stored_count = await self._repository.count_events(calendar.id)
        if stored_count >= self._max_events_per_calendar:
            raise ValidationError(
                f"Calendar {calendar.id} already holds the maximum of "
                f"{self._max_events_per_calendar} events",
                details={"calendar_id": calendar.id, "limit": self._max_events_per_calendar},
            )

        fields = payload.model_dump()
        if event_id is not None:
            fields["id"] = event_id
        event = Event(**fields, family_id=calendar.family_id, created_by=acting_user_id)
        stored = await self._repository.insert_event(event)
        logger.info("Event created: id=%s calendar=%s", stored.id, calendar.id)

        self._after_write(calendar.id)
        if self._notifications is not None:
            self._notifications.publish_created(stored)
            self._notifications.schedule_default_reminder(stored)

        publisher = self._publisher_for(calendar)
        if propagate and publisher is not None:
            stored = await publisher.push_created(calendar, stored)
        return stored

    async def get_event(self, event_id: str, acting_user_id: str) -> Event:
        """Return an event. ``NotFound`` when absent, then ``can_view`` is required."""
        event = await self._require_event(event_id)
        await self._permissions.require_permission(
            event.calendar_id, acting_user_id, can_view=True
        )
        return event

    async def update_event(
        self,
        event_id: str,
        data: EventUpdate | dict[str, Any],
        acting_user_id: str,
        *,
        propagate: bool = True,
    ) -> Event:
        """Apply the explicitly set fields of ``data``. Requires ``can_edit``."""
        payload = coerce_model(EventUpdate, data)
        event = await self._require_event(event_id)
        await self._permissions.require_permission(
            event.calendar_id, acting_user_id, can_edit=True
        )

        changes = payload.changes()
        for required in ("title", "start_time", "end_time", "status"):
            if required in changes and changes[required] is None:
                raise ValidationError(f"{required} cannot be cleared")
        updated = Event.model_validate(
            {**event.model_dump(), **changes, "updated_at": datetime.now(UTC)}
        )
        if updated.start_time > updated.end_time:
            raise ValidationError(
                "start_time must not be after end_time",
                details={"event_id": event_id},
            )

        stored = await self._repository.update_event(updated)
        logger.info("Event updated: id=%s fields=%s", stored.id, sorted(changes))

        self._after_write(stored.calendar_id)
        if self._notifications is not None:
            self._notifications.publish_updated(stored)
            if stored.start_time != event.start_time:
                self._notifications.schedule_default_reminder(stored)

        if propagate:
            calendar = await self._calendars.require_calendar(stored.calendar_id)
            publisher = self._publisher_for(calendar)
            if publisher is not None:
                stored = await publisher.push_updated(calendar, stored)
        return stored

    async def delete_event(
        self,
        event_id: str,
        acting_user_id: str,
        *,
        propagate: bool = True,
    ) -> None:
        """Delete an event. Requires ``can_edit``."""
        event = await self._require_event(event_id)
        await self._permissions.require_permission(
            event.calendar_id, acting_user_id, can_edit=True
        )
        await self._repository.delete_event(event_id)
        logger.info("Event deleted: id=%s calendar=%s", event_id, event.calendar_id)

        self._after_write(event.calendar_id)
        if self._notifications is not None:
            self._notifications.cancel_reminder(event_id)
            self._notifications.publish_deleted(event)

        if propagate and event.external_id is not None:
            calendar = await self._calendars.require_calendar(event.calendar_id)
            publisher = self._publisher_for(calendar)
            if publisher is not None:
                await publisher.push_deleted(calendar, event)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_calendar_events(
        self,
        calendar_id: str,
        acting_user_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Event]:
        """Events of one calendar, in every status, ordered by start then id.

        With both ``start`` and ``end`` given, recurring events are expanded
        into their occurrences inside the window. Otherwise stored events are
        returned as-is (recurring templates unexpanded), filtered by whichever
        bound was supplied.
        """
        await self._calendars.require_calendar(calendar_id)
        await self._permissions.require_permission(calendar_id, acting_user_id, can_view=True)

        cache_key = get_cache_key({"calendar_id": calendar_id, "start": start, "end": end})
        if self._cache is not None:
            cached = self._cache.get(cache_key)
            if cached is not None:
                return cached

        stored = await self._repository.list_events(calendar_id, start=start, end=end)
        if start is not None and end is not None:
            events = recurrence.expand_all(stored, start, end)
        else:
            events = [event for event in stored if event.overlaps(start, end)]
            events.sort(key=lambda event: (event.start_time, event.id))

        if self._cache is not None:
            self._cache.set(cache_key, events)
        return events

    async def get_family_events(
        self,
        family_id: str,
        acting_user_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Event]:
        """Union of the family calendars' events that the user may view."""
        merged: list[Event] = []
        for calendar in await self._calendars.get_family_calendars(family_id):
            if not await self._permissions.check_permission(
                calendar.id, acting_user_id, can_view=True
            ):
                continue
            merged.extend(await self.get_calendar_events(calendar.id, acting_user_id, start, end))
        merged.sort(key=lambda event: (event.start_time, event.id))
        return merged

    def expand_recurring_event(self, event: Event, start: datetime, end: datetime) -> list[Event]:
        return recurrence.expand(event, start, end)

    # ------------------------------------------------------------------
    # Idempotent upserts for linked records
    # ------------------------------------------------------------------

    async def upsert_task_deadline(
        self,
        *,
        calendar_id: str,
        task_id: str,
        title: str,
        deadline: datetime,
        acting_user_id: str,
        assignee_id: str | None = None,
    ) -> Event:
        """Create or move the deadline event for a task (event id ``task-<task_id>``)."""
        return await self._upsert_point_event(
            event_id=f"{TASK_EVENT_PREFIX}{task_id}",
            calendar_id=calendar_id,
            title=f"Task Deadline: {title}",
            at=deadline,
            acting_user_id=acting_user_id,
            assignee_id=assignee_id,
        )

    async def upsert_shopping_schedule(
        self,
        *,
        calendar_id: str,
        schedule_id: str,
        title: str,
        date: datetime,
        acting_user_id: str,
        assignee_id: str | None = None,
    ) -> Event:
        """Create or move a shopping trip event (event id ``shopping-<schedule_id>``)."""
        return await self._upsert_point_event(
            event_id=f"{SHOPPING_EVENT_PREFIX}{schedule_id}",
            calendar_id=calendar_id,
            title=f"Shopping: {title}",
            at=date,
            acting_user_id=acting_user_id,
            assignee_id=assignee_id,
        )

    async def _upsert_point_event(
        self,
        *,
        event_id: str,
        calendar_id: str,
        title: str,
        at: datetime,
        acting_user_id: str,
        assignee_id: str | None,
    ) -> Event:
        existing = await self._repository.get_event(event_id)
        if existing is None:
            return await self.create_event(
                {
                    "calendar_id": calendar_id,
                    "title": title,
                    "start_time": at,
                    "end_time": at,
                    "user_id": assignee_id,
                },
                acting_user_id,
                event_id=event_id,
            )
        # Re-invocation only moves the event in time.
        return await self.update_event(
            event_id,
            EventUpdate(start_time=at, end_time=at),
            acting_user_id,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_event(self, event_id: str) -> Event:
        event = await self._repository.get_event(event_id)
        if event is None:
            raise NotFound.event(event_id)
        return event

    def _after_write(self, calendar_id: str) -> None:
        if self._cache is not None:
            self._cache.invalidate_calendar(calendar_id)

    def _publisher_for(self, calendar: Calendar) -> OutboundPublisher | None:
        if self._outbound is None or not self._outbound.accepts_push(calendar):
            return None
        return self._outbound

    async def link_external_id(self, event_id: str, external_id: str) -> Event:
        """Record the provider id of a pushed event.

        Bookkeeping after an authorized push: no permission check, no
        notification, no further propagation.
        """
        event = await self._require_event(event_id)
        linked = await self._repository.update_event(
            event.model_copy(update={"external_id": external_id})
        )
        self._after_write(linked.calendar_id)
        return linked
