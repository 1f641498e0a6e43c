"""Dict-backed repository for tests and single-process development."""

from __future__ import annotations

from datetime import datetime

from famcal.models import Calendar, CalendarPermission, CalendarType, Event
from famcal.storage.base import CalendarRepository


class InMemoryRepository(CalendarRepository):
    """In-process repository.

    Models are deep-copied on the way in and out, so callers never hold a
    reference to stored state.
    """

    def __init__(self) -> None:
        self._calendars: dict[str, Calendar] = {}
        self._permissions: dict[tuple[str, str], CalendarPermission] = {}
        self._events: dict[str, Event] = {}
        self._families: dict[str, list[str]] = {}

    # -- calendars ---------------------------------------------------------

    async def insert_calendar(self, calendar: Calendar) -> Calendar:
        if calendar.id in self._calendars:
            raise ValueError(f"Calendar already exists: {calendar.id}")
        self._calendars[calendar.id] = calendar.model_copy(deep=True)
        return calendar.model_copy(deep=True)

    async def get_calendar(self, calendar_id: str) -> Calendar | None:
        calendar = self._calendars.get(calendar_id)
        return calendar.model_copy(deep=True) if calendar is not None else None

    async def update_calendar(self, calendar: Calendar) -> Calendar:
        if calendar.id not in self._calendars:
            raise KeyError(calendar.id)
        self._calendars[calendar.id] = calendar.model_copy(deep=True)
        return calendar.model_copy(deep=True)

    async def delete_calendar(self, calendar_id: str) -> bool:
        if self._calendars.pop(calendar_id, None) is None:
            return False
        for key in [key for key in self._permissions if key[0] == calendar_id]:
            del self._permissions[key]
        await self.delete_calendar_events(calendar_id)
        return True

    async def list_calendars(
        self,
        *,
        owner_id: str | None = None,
        family_id: str | None = None,
        calendar_type: CalendarType | None = None,
    ) -> list[Calendar]:
        matches = [
            calendar
            for calendar in self._calendars.values()
            if (owner_id is None or calendar.owner_id == owner_id)
            and (family_id is None or calendar.family_id == family_id)
            and (calendar_type is None or calendar.type == calendar_type)
        ]
        matches.sort(key=lambda calendar: (calendar.created_at, calendar.id))
        return [calendar.model_copy(deep=True) for calendar in matches]

    async def list_viewable_calendars(self, user_id: str) -> list[Calendar]:
        calendar_ids = {
            calendar_id
            for (calendar_id, permission_user), permission in self._permissions.items()
            if permission_user == user_id and permission.can_view
        }
        matches = [self._calendars[cid] for cid in calendar_ids if cid in self._calendars]
        matches.sort(key=lambda calendar: (calendar.created_at, calendar.id))
        return [calendar.model_copy(deep=True) for calendar in matches]

    async def clear_default(
        self,
        *,
        owner_id: str | None,
        family_id: str | None,
        except_calendar_id: str,
    ) -> None:
        for calendar_id, calendar in self._calendars.items():
            if calendar_id == except_calendar_id or not calendar.is_default:
                continue
            same_scope = (
                calendar.family_id == family_id
                if family_id is not None
                else calendar.family_id is None and calendar.owner_id == owner_id
            )
            if same_scope:
                self._calendars[calendar_id] = calendar.model_copy(update={"is_default": False})

    # -- permissions -------------------------------------------------------

    async def upsert_permission(self, permission: CalendarPermission) -> CalendarPermission:
        self._permissions[(permission.calendar_id, permission.user_id)] = permission.model_copy()
        return permission.model_copy()

    async def get_permission(self, calendar_id: str, user_id: str) -> CalendarPermission | None:
        permission = self._permissions.get((calendar_id, user_id))
        return permission.model_copy() if permission is not None else None

    async def list_permissions(self, calendar_id: str) -> list[CalendarPermission]:
        return [
            permission.model_copy()
            for (cid, _), permission in sorted(self._permissions.items())
            if cid == calendar_id
        ]

    async def delete_permission(self, calendar_id: str, user_id: str) -> bool:
        return self._permissions.pop((calendar_id, user_id), None) is not None

    # -- events ------------------------------------------------------------

    async def insert_event(self, event: Event) -> Event:
        if event.id in self._events:
            raise ValueError(f"Event already exists: {event.id}")
        self._events[event.id] = event.model_copy(deep=True)
        return event.model_copy(deep=True)

    async def get_event(self, event_id: str) -> Event | None:
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event is not None else None

    async def get_event_by_external_id(self, calendar_id: str, external_id: str) -> Event | None:
        for event in self._events.values():
            if event.calendar_id == calendar_id and event.external_id == external_id:
                return event.model_copy(deep=True)
        return None

    async def list_events(
        self,
        calendar_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Event]:
        matches = [
            event
            for event in self._events.values()
            if event.calendar_id == calendar_id
            and (event.recurrence is not None or event.overlaps(start, end))
        ]
        matches.sort(key=lambda event: (event.start_time, event.id))
        return [event.model_copy(deep=True) for event in matches]

    async def update_event(self, event: Event) -> Event:
        if event.id not in self._events:
            raise KeyError(event.id)
        self._events[event.id] = event.model_copy(deep=True)
        return event.model_copy(deep=True)

    async def delete_event(self, event_id: str) -> bool:
        return self._events.pop(event_id, None) is not None

    async def delete_calendar_events(self, calendar_id: str) -> int:
        doomed = [eid for eid, event in self._events.items() if event.calendar_id == calendar_id]
        for event_id in doomed:
            del self._events[event_id]
        return len(doomed)

    async def count_events(self, calendar_id: str | None = None) -> int:
        return sum(
            1
            for event in self._events.values()
            if calendar_id is None or event.calendar_id == calendar_id
        )

    async def count_upcoming_events(self, now: datetime) -> int:
        return sum(1 for event in self._events.values() if event.start_time >= now)

    async def count_calendars(self) -> int:
        return len(self._calendars)

    # -- families ----------------------------------------------------------

    async def add_family_member(self, family_id: str, user_id: str) -> None:
        members = self._families.setdefault(family_id, [])
        if user_id not in members:
            members.append(user_id)

    async def get_family_member_ids(self, family_id: str) -> list[str]:
        return list(self._families.get(family_id, []))
