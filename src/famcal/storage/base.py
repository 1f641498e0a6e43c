"""Repository abstraction for calendars, permissions, events, and families."""

from __future__ import annotations

import abc
from datetime import datetime

from famcal.models import Calendar, CalendarPermission, CalendarType, Event


class CalendarRepository(abc.ABC):
    """Persistence boundary used by the domain services.

    Implementations store and return pydantic models. They perform no
    authorization; callers go through :class:`~famcal.permissions.PermissionAuthority`.
    """

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def insert_calendar(self, calendar: Calendar) -> Calendar: ...

    @abc.abstractmethod
    async def get_calendar(self, calendar_id: str) -> Calendar | None: ...

    @abc.abstractmethod
    async def update_calendar(self, calendar: Calendar) -> Calendar:
        """Replace the stored calendar row with ``calendar``."""
        ...

    @abc.abstractmethod
    async def delete_calendar(self, calendar_id: str) -> bool:
        """Delete a calendar together with its permissions and events."""
        ...

    @abc.abstractmethod
    async def list_calendars(
        self,
        *,
        owner_id: str | None = None,
        family_id: str | None = None,
        calendar_type: CalendarType | None = None,
    ) -> list[Calendar]:
        """Return calendars matching every filter that is not ``None``."""
        ...

    @abc.abstractmethod
    async def list_viewable_calendars(self, user_id: str) -> list[Calendar]:
        """Return calendars on which ``user_id`` holds ``can_view``."""
        ...

    @abc.abstractmethod
    async def clear_default(
        self,
        *,
        owner_id: str | None,
        family_id: str | None,
        except_calendar_id: str,
    ) -> None:
        """Unset ``is_default`` on every other calendar in the same scope."""
        ...

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def upsert_permission(self, permission: CalendarPermission) -> CalendarPermission: ...

    @abc.abstractmethod
    async def get_permission(self, calendar_id: str, user_id: str) -> CalendarPermission | None: ...

    @abc.abstractmethod
    async def list_permissions(self, calendar_id: str) -> list[CalendarPermission]: ...

    @abc.abstractmethod
    async def delete_permission(self, calendar_id: str, user_id: str) -> bool: ...

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def insert_event(self, event: Event) -> Event: ...

    @abc.abstractmethod
    async def get_event(self, event_id: str) -> Event | None: ...

    @abc.abstractmethod
    async def get_event_by_external_id(
        self, calendar_id: str, external_id: str
    ) -> Event | None: ...

    @abc.abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Event]:
        """Return stored events for a calendar.

        Recurring templates are always returned (expansion decides whether
        they produce occurrences in the window); one-off events are returned
        only when they overlap ``[start, end]``.
        """
        ...

    @abc.abstractmethod
    async def update_event(self, event: Event) -> Event: ...

    @abc.abstractmethod
    async def delete_event(self, event_id: str) -> bool: ...

    @abc.abstractmethod
    async def delete_calendar_events(self, calendar_id: str) -> int: ...

    @abc.abstractmethod
    async def count_events(self, calendar_id: str | None = None) -> int: ...

    @abc.abstractmethod
    async def count_upcoming_events(self, now: datetime) -> int: ...

    @abc.abstractmethod
    async def count_calendars(self) -> int: ...

    # ------------------------------------------------------------------
    # Families
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def add_family_member(self, family_id: str, user_id: str) -> None: ...

    @abc.abstractmethod
    async def get_family_member_ids(self, family_id: str) -> list[str]: ...

    async def close(self) -> None:  # noqa: B027
        """Release backend resources. No-op by default."""
