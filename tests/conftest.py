"""Shared fixtures for the famcal test suite.

Everything here runs against the in-memory repository; nothing needs a
database or network access.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from famcal.cache import EventCache
from famcal.calendars import CalendarService
from famcal.config import CalendarSettings
from famcal.event_store import EventStore
from famcal.models import Calendar
from famcal.notifications import NotificationDispatcher
from famcal.permissions import PermissionAuthority
from famcal.storage.memory import InMemoryRepository

FAMILY_ID = "fam-1"
OWNER = "alice"
MEMBER = "bob"
OUTSIDER = "carol"


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def permissions(repository: InMemoryRepository) -> PermissionAuthority:
    return PermissionAuthority(repository)


@pytest.fixture
def calendars(repository: InMemoryRepository, permissions: PermissionAuthority) -> CalendarService:
    return CalendarService(repository, permissions)


@pytest.fixture
def cache() -> EventCache:
    return EventCache(ttl_seconds=60)


@pytest.fixture
async def notifications() -> AsyncIterator[NotificationDispatcher]:
    dispatcher = NotificationDispatcher(CalendarSettings())
    yield dispatcher
    await dispatcher.stop(drain_timeout_s=0)


@pytest.fixture
def event_store(
    repository: InMemoryRepository,
    calendars: CalendarService,
    permissions: PermissionAuthority,
    cache: EventCache,
    notifications: NotificationDispatcher,
) -> EventStore:
    return EventStore(
        repository,
        calendars,
        permissions,
        cache=cache,
        notifications=notifications,
    )


@pytest.fixture
async def family_calendar(calendars: CalendarService) -> Calendar:
    """Family calendar owned by alice; bob is a family member, carol is not."""
    return await calendars.create_calendar(
        {"name": "Family", "family_id": FAMILY_ID, "owner_id": OWNER},
        family_member_ids=[OWNER, MEMBER],
    )


@pytest.fixture
async def personal_calendar(calendars: CalendarService) -> Calendar:
    return await calendars.create_calendar({"name": "Alice", "owner_id": OWNER})
