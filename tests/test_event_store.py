"""Unit tests for the event store.

Covers:
- create/get/update/delete with NotFound-before-PermissionDenied ordering
- Validation: time ordering, clearing required fields, per-calendar limit
- Range queries with recurrence expansion, caching and cache invalidation
- Family-wide queries limited to viewable calendars
- Task-deadline and shopping-schedule upserts
- Reminders follow deletes and moves
- Outbound push to provider-backed calendars, and propagate=False
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta

import pytest

from famcal.calendars import CalendarService
from famcal.config import CalendarSettings
from famcal.errors import NotFound, PermissionDenied, ValidationError
from famcal.event_store import EventStore
from famcal.models import Calendar, CalendarType, Event, EventStatus, EventUpdate
from famcal.notifications import Notification, NotificationDispatcher, NotificationType
from famcal.permissions import PermissionAuthority
from famcal.storage.memory import InMemoryRepository

pytestmark = pytest.mark.unit


def _utc(month: int, day: int, hour: int = 0) -> datetime:
    return datetime(2026, month, day, hour, tzinfo=UTC)


def _payload(calendar_id: str, **overrides):
    payload = {
        "calendar_id": calendar_id,
        "title": "Soccer practice",
        "start_time": _utc(3, 4, 17),
        "end_time": _utc(3, 4, 18),
    }
    payload.update(overrides)
    return payload


class RecordingPublisher:
    """Outbound publisher double that records calls."""

    def __init__(
        self, writable_types: frozenset[CalendarType] = frozenset({CalendarType.GOOGLE})
    ) -> None:
        self.calls: list[tuple[str, str]] = []
        self.writable_types = writable_types

    def accepts_push(self, calendar: Calendar) -> bool:
        return calendar.type in self.writable_types

    async def push_created(self, calendar: Calendar, event: Event) -> Event:
        self.calls.append(("created", event.id))
        return event.model_copy(update={"external_id": f"remote-{event.id}"})

    async def push_updated(self, calendar: Calendar, event: Event) -> Event:
        self.calls.append(("updated", event.id))
        return event

    async def push_deleted(self, calendar: Calendar, event: Event) -> None:
        self.calls.append(("deleted", event.id))


# ============================================================================
# Create
# ============================================================================


class TestCreateEvent:
    async def test_create_stamps_family_and_creator(
        self, event_store: EventStore, family_calendar: Calendar
    ):
        event = await event_store.create_event(_payload(family_calendar.id), "bob")
        assert event.family_id == "fam-1"
        assert event.created_by == "bob"
        assert event.status is EventStatus.CONFIRMED

    async def test_create_queues_notification(
        self,
        event_store: EventStore,
        family_calendar: Calendar,
        notifications: NotificationDispatcher,
    ):
        await event_store.create_event(_payload(family_calendar.id), "alice")
        assert notifications.queue_depth == 1

    async def test_future_event_gets_default_reminder(
        self,
        event_store: EventStore,
        family_calendar: Calendar,
        notifications: NotificationDispatcher,
    ):
        start = datetime.now(UTC) + timedelta(days=1)
        await event_store.create_event(
            _payload(family_calendar.id, start_time=start, end_time=start + timedelta(hours=1)),
            "alice",
        )
        assert notifications.pending_reminders == 1

    async def test_outsider_cannot_create(
        self, event_store: EventStore, family_calendar: Calendar
    ):
        with pytest.raises(PermissionDenied):
            await event_store.create_event(_payload(family_calendar.id), "carol")

    async def test_unknown_calendar_is_not_found_even_for_outsider(self, event_store: EventStore):
        with pytest.raises(NotFound):
            await event_store.create_event(_payload("missing"), "carol")

    async def test_start_after_end_is_rejected(
        self, event_store: EventStore, family_calendar: Calendar
    ):
        with pytest.raises(ValidationError, match="start_time must not be after end_time"):
            await event_store.create_event(
                _payload(family_calendar.id, start_time=_utc(3, 5), end_time=_utc(3, 4)),
                "alice",
            )

    async def test_zero_length_event_is_allowed(
        self, event_store: EventStore, family_calendar: Calendar
    ):
        event = await event_store.create_event(
            _payload(family_calendar.id, start_time=_utc(3, 5), end_time=_utc(3, 5)), "alice"
        )
        assert event.duration == timedelta(0)

    async def test_per_calendar_limit(
        self,
        repository: InMemoryRepository,
        calendars: CalendarService,
        permissions: PermissionAuthority,
        family_calendar: Calendar,
    ):
        store = EventStore(repository, calendars, permissions, max_events_per_calendar=2)
        await store.create_event(_payload(family_calendar.id), "alice")
        await store.create_event(_payload(family_calendar.id), "alice")
        with pytest.raises(ValidationError, match="maximum of 2 events"):
            await store.create_event(_payload(family_calendar.id), "alice")


# ============================================================================
# Read, update, delete
# ============================================================================


class TestGetUpdateDelete:
    async def test_get_event_checks_view(
        self, event_store: EventStore, family_calendar: Calendar
    ):
        event = await event_store.create_event(_payload(family_calendar.id), "alice")
        assert (await event_store.get_event(event.id, "bob")).title == "Soccer practice"
        with pytest.raises(PermissionDenied):
            await event_store.get_event(event.id, "carol")

    async def test_get_missing_event(self, event_store: EventStore):
        with pytest.raises(NotFound) as exc_info:
            await event_store.get_event("nope", "alice")
        assert exc_info.value.code == "EVENT_NOT_FOUND"

    async def test_partial_update_keeps_other_fields(
        self, event_store: EventStore, family_calendar: Calendar
    ):
        event = await event_store.create_event(
            _payload(family_calendar.id, location="Field 3"), "alice"
        )
        updated = await event_store.update_event(event.id, {"title": "Match"}, "bob")
        assert updated.title == "Match"
        assert updated.location == "Field 3"
        assert updated.start_time == event.start_time
        assert updated.updated_at >= event.updated_at

    async def test_optional_field_can_be_cleared(
        self, event_store: EventStore, family_calendar: Calendar
    ):
        event = await event_store.create_event(
            _payload(family_calendar.id, location="Field 3"), "alice"
        )
        updated = await event_store.update_event(event.id, EventUpdate(location=None), "alice")
        assert updated.location is None

    async def test_required_field_cannot_be_cleared(
        self, event_store: EventStore, family_calendar: Calendar
    ):
        event = await event_store.create_event(_payload(family_calendar.id), "alice")
        with pytest.raises(ValidationError, match="start_time cannot be cleared"):
            await event_store.update_event(event.id, {"start_time": None}, "alice")

    async def test_update_cannot_invert_times(
        self, event_store: EventStore, family_calendar: Calendar
    ):
        event = await event_store.create_event(_payload(family_calendar.id), "alice")
        with pytest.raises(ValidationError):
            await event_store.update_event(event.id, {"end_time": _utc(3, 1)}, "alice")

    async def test_update_requires_edit(
        self, event_store: EventStore, family_calendar: Calendar, calendars: CalendarService
    ):
        event = await event_store.create_event(_payload(family_calendar.id), "alice")
        await calendars.add_user_to_calendar(family_calendar.id, "carol", {"can_view": True})
        with pytest.raises(PermissionDenied):
            await event_store.update_event(event.id, {"title": "Mine"}, "carol")

        unchanged = await event_store.get_event(event.id, "carol")
        assert unchanged.title == "Soccer practice"
        assert unchanged.updated_at == event.updated_at

    async def test_delete_requires_edit(
        self, event_store: EventStore, family_calendar: Calendar, calendars: CalendarService
    ):
        event = await event_store.create_event(_payload(family_calendar.id), "alice")
        await calendars.add_user_to_calendar(family_calendar.id, "carol", {"can_view": True})
        with pytest.raises(PermissionDenied):
            await event_store.delete_event(event.id, "carol")
        assert (await event_store.get_event(event.id, "carol")).title == "Soccer practice"

    async def test_view_only_member_cannot_create(
        self, event_store: EventStore, family_calendar: Calendar, calendars: CalendarService
    ):
        await calendars.add_user_to_calendar(family_calendar.id, "carol", {"can_view": True})
        with pytest.raises(PermissionDenied):
            await event_store.create_event(_payload(family_calendar.id), "carol")
        assert await event_store.get_calendar_events(family_calendar.id, "carol") == []

    async def test_delete(self, event_store: EventStore, family_calendar: Calendar):
        event = await event_store.create_event(_payload(family_calendar.id), "alice")
        await event_store.delete_event(event.id, "bob")
        with pytest.raises(NotFound):
            await event_store.get_event(event.id, "alice")


# ============================================================================
# Queries
# ============================================================================


class TestQueries:
    async def test_window_query_expands_recurrence(
        self, event_store: EventStore, family_calendar: Calendar
    ):
        await event_store.create_event(
            _payload(
                family_calendar.id,
                start_time=_utc(3, 2, 7),
                end_time=_utc(3, 2, 8),
                recurrence={"type": "daily", "count": 10},
            ),
            "alice",
        )
        events = await event_store.get_calendar_events(
            family_calendar.id, "bob", _utc(3, 4), _utc(3, 6)
        )
        assert [event.start_time for event in events] == [_utc(3, 4, 7), _utc(3, 5, 7)]

    def test_expand_recurring_event(self, event_store: EventStore):
        template = Event(
            calendar_id="cal-1",
            title="Swim club",
            start_time=_utc(3, 2, 16),
            end_time=_utc(3, 2, 17),
            created_by="alice",
            recurrence={"type": "weekly", "interval": 1, "count": 4},
        )
        occurrences = event_store.expand_recurring_event(template, _utc(3, 1), _utc(3, 31))
        assert [event.start_time for event in occurrences] == [
            _utc(3, 2, 16),
            _utc(3, 9, 16),
            _utc(3, 16, 16),
            _utc(3, 23, 16),
        ]
        assert {event.id for event in occurrences} == {template.id}

    async def test_unbounded_query_returns_templates(
        self, event_store: EventStore, family_calendar: Calendar
    ):
        await event_store.create_event(
            _payload(family_calendar.id, recurrence={"type": "weekly"}), "alice"
        )
        events = await event_store.get_calendar_events(family_calendar.id, "alice")
        assert len(events) == 1
        assert events[0].recurrence is not None

    async def test_query_includes_every_status(
        self, event_store: EventStore, family_calendar: Calendar
    ):
        await event_store.create_event(_payload(family_calendar.id, status="cancelled"), "alice")
        events = await event_store.get_calendar_events(family_calendar.id, "alice")
        assert [event.status for event in events] == [EventStatus.CANCELLED]

    async def test_query_requires_view(self, event_store: EventStore, family_calendar: Calendar):
        with pytest.raises(PermissionDenied):
            await event_store.get_calendar_events(family_calendar.id, "carol")

    async def test_results_are_cached_until_a_write(
        self,
        event_store: EventStore,
        family_calendar: Calendar,
        repository: InMemoryRepository,
    ):
        first = await event_store.create_event(_payload(family_calendar.id), "alice")
        assert len(await event_store.get_calendar_events(family_calendar.id, "alice")) == 1

        # Written behind the store's back: the cached result is still served.
        await repository.insert_event(first.model_copy(update={"id": "sneaky"}))
        assert len(await event_store.get_calendar_events(family_calendar.id, "alice")) == 1

        await event_store.create_event(_payload(family_calendar.id), "alice")
        assert len(await event_store.get_calendar_events(family_calendar.id, "alice")) == 3

    async def test_family_events_only_from_viewable_calendars(
        self,
        event_store: EventStore,
        calendars: CalendarService,
        family_calendar: Calendar,
    ):
        private = await calendars.create_calendar(
            {"name": "Surprise party", "family_id": "fam-1", "owner_id": "alice"},
            family_member_ids=[],
        )
        await event_store.create_event(_payload(family_calendar.id, title="Dinner"), "alice")
        await event_store.create_event(_payload(private.id, title="Party"), "alice")

        bob_view = await event_store.get_family_events("fam-1", "bob")
        assert [event.title for event in bob_view] == ["Dinner"]
        alice_view = await event_store.get_family_events("fam-1", "alice")
        assert sorted(event.title for event in alice_view) == ["Dinner", "Party"]


# ============================================================================
# Upserts
# ============================================================================


class TestUpserts:
    async def test_task_deadline_created_then_moved(
        self, event_store: EventStore, family_calendar: Calendar, repository: InMemoryRepository
    ):
        created = await event_store.upsert_task_deadline(
            calendar_id=family_calendar.id,
            task_id="t1",
            title="Science project",
            deadline=_utc(3, 10, 17),
            acting_user_id="alice",
            assignee_id="bob",
        )
        assert created.id == "task-t1"
        assert created.title == "Task Deadline: Science project"
        assert created.start_time == created.end_time == _utc(3, 10, 17)
        assert created.user_id == "bob"

        moved = await event_store.upsert_task_deadline(
            calendar_id=family_calendar.id,
            task_id="t1",
            title="Renamed project",
            deadline=_utc(3, 12, 17),
            acting_user_id="alice",
        )
        assert moved.id == "task-t1"
        assert moved.title == "Task Deadline: Science project"
        assert moved.start_time == _utc(3, 12, 17)
        assert await repository.count_events(family_calendar.id) == 1

    async def test_shopping_schedule(self, event_store: EventStore, family_calendar: Calendar):
        event = await event_store.upsert_shopping_schedule(
            calendar_id=family_calendar.id,
            schedule_id="s1",
            title="Groceries",
            date=_utc(3, 7, 10),
            acting_user_id="bob",
        )
        assert event.id == "shopping-s1"
        assert event.title == "Shopping: Groceries"


# ============================================================================
# Reminders
# ============================================================================


class TestReminders:
    @pytest.fixture
    async def dispatcher(self) -> AsyncIterator[NotificationDispatcher]:
        dispatcher = NotificationDispatcher(CalendarSettings(reminder_minutes_before=0))
        await dispatcher.start()
        yield dispatcher
        await dispatcher.stop(drain_timeout_s=0)

    @pytest.fixture
    def store(
        self,
        repository: InMemoryRepository,
        calendars: CalendarService,
        permissions: PermissionAuthority,
        dispatcher: NotificationDispatcher,
    ) -> EventStore:
        return EventStore(repository, calendars, permissions, notifications=dispatcher)

    @staticmethod
    def _soon(milliseconds: int = 100) -> datetime:
        return datetime.now(UTC) + timedelta(milliseconds=milliseconds)

    async def test_deleted_event_sends_no_reminder(
        self, store: EventStore, dispatcher: NotificationDispatcher, family_calendar: Calendar
    ):
        received: list[Notification] = []
        dispatcher.subscribe(received.append)
        start = self._soon()
        event = await store.create_event(
            _payload(family_calendar.id, title="Dentist", start_time=start, end_time=start),
            "alice",
        )
        assert dispatcher.pending_reminders == 1

        await store.delete_event(event.id, "alice")
        assert dispatcher.pending_reminders == 0
        await asyncio.sleep(0.3)

        assert NotificationType.EVENT_REMINDER not in [n.type for n in received]
        assert received[-1].type is NotificationType.EVENT_CANCELLATION

    async def test_moved_deadline_reminds_at_the_new_time(
        self, store: EventStore, dispatcher: NotificationDispatcher, family_calendar: Calendar
    ):
        received: list[Notification] = []
        dispatcher.subscribe(received.append)
        upsert = {
            "calendar_id": family_calendar.id,
            "task_id": "t1",
            "title": "Permission slip",
            "acting_user_id": "alice",
        }
        await store.upsert_task_deadline(
            **upsert, deadline=datetime.now(UTC) + timedelta(hours=1)
        )
        new_deadline = self._soon()
        await store.upsert_task_deadline(**upsert, deadline=new_deadline)
        assert dispatcher.pending_reminders == 1

        await asyncio.sleep(0.3)

        reminders = [n for n in received if n.type is NotificationType.EVENT_REMINDER]
        assert [n.event.start_time for n in reminders] == [new_deadline]
        assert dispatcher.pending_reminders == 0

    async def test_update_without_moving_keeps_the_reminder(
        self, store: EventStore, dispatcher: NotificationDispatcher, family_calendar: Calendar
    ):
        start = datetime.now(UTC) + timedelta(hours=1)
        event = await store.create_event(
            _payload(family_calendar.id, start_time=start, end_time=start), "alice"
        )
        await store.update_event(event.id, {"location": "Field 2"}, "alice")
        assert dispatcher.pending_reminders == 1


# ============================================================================
# Outbound propagation
# ============================================================================


class TestPropagation:
    @pytest.fixture
    async def google_calendar(self, calendars: CalendarService) -> Calendar:
        return await calendars.create_calendar(
            {"name": "Work", "owner_id": "alice", "type": "google"}
        )

    async def test_create_on_provider_calendar_is_pushed(
        self, event_store: EventStore, google_calendar: Calendar
    ):
        publisher = RecordingPublisher()
        event_store.attach_outbound(publisher)
        event = await event_store.create_event(_payload(google_calendar.id), "alice")
        assert publisher.calls == [("created", event.id)]
        assert event.external_id == f"remote-{event.id}"

    async def test_propagate_false_skips_push(
        self, event_store: EventStore, google_calendar: Calendar
    ):
        publisher = RecordingPublisher()
        event_store.attach_outbound(publisher)
        event = await event_store.create_event(
            _payload(google_calendar.id), "alice", propagate=False
        )
        await event_store.update_event(event.id, {"title": "x"}, "alice", propagate=False)
        await event_store.delete_event(event.id, "alice", propagate=False)
        assert publisher.calls == []

    async def test_local_calendar_is_never_pushed(
        self, event_store: EventStore, personal_calendar: Calendar
    ):
        publisher = RecordingPublisher()
        event_store.attach_outbound(publisher)
        event = await event_store.create_event(_payload(personal_calendar.id), "alice")
        await event_store.update_event(event.id, {"title": "x"}, "alice")
        assert publisher.calls == []

    async def test_delete_without_external_id_is_not_pushed(
        self, event_store: EventStore, google_calendar: Calendar
    ):
        event = await event_store.create_event(
            _payload(google_calendar.id), "alice", propagate=False
        )
        publisher = RecordingPublisher()
        event_store.attach_outbound(publisher)
        await event_store.delete_event(event.id, "alice")
        assert publisher.calls == []

    async def test_link_external_id(self, event_store: EventStore, google_calendar: Calendar):
        event = await event_store.create_event(
            _payload(google_calendar.id), "alice", propagate=False
        )
        linked = await event_store.link_external_id(event.id, "g-123")
        assert linked.external_id == "g-123"
        assert (await event_store.get_event(event.id, "alice")).external_id == "g-123"
