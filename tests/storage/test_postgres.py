"""Unit tests for the asyncpg repository against a mocked pool.

Covers:
- Row mapping for calendars (JSONB external_config) and events (JSONB recurrence)
- Command-status parsing for update/delete results
- Dynamic WHERE clause construction for list_calendars
- Parameters passed for windowed event listing and counts
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from famcal.models import Calendar, CalendarType, Event, ExternalConfig, RecurrenceRule
from famcal.storage.postgres import PostgresRepository, _affected

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 1, 9, tzinfo=UTC)


def _pool() -> MagicMock:
    pool = MagicMock()
    pool.execute = AsyncMock(return_value="INSERT 0 1")
    pool.fetch = AsyncMock(return_value=[])
    pool.fetchrow = AsyncMock(return_value=None)
    pool.fetchval = AsyncMock(return_value=0)
    return pool


def _calendar_row(**overrides) -> dict:
    row = {
        "id": "cal-1",
        "name": "Work",
        "description": None,
        "color": None,
        "type": "google",
        "family_id": None,
        "owner_id": "alice",
        "is_default": False,
        "timezone": "Europe/Berlin",
        "external_config": json.dumps({"remote_calendar_id": "primary", "sync_token": "s1"}),
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _event_row(**overrides) -> dict:
    row = {
        "id": "evt-1",
        "calendar_id": "cal-1",
        "family_id": None,
        "title": "Standup",
        "description": None,
        "location": None,
        "start_time": NOW,
        "end_time": NOW,
        "status": "confirmed",
        "created_by": "alice",
        "user_id": None,
        "external_id": "g-1",
        "recurrence": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


# ============================================================================
# Row mapping
# ============================================================================


class TestRowMapping:
    async def test_calendar_row_with_json_string(self):
        pool = _pool()
        pool.fetchrow.return_value = _calendar_row()
        calendar = await PostgresRepository(pool).get_calendar("cal-1")
        assert calendar is not None
        assert calendar.type is CalendarType.GOOGLE
        assert calendar.external_config.sync_token == "s1"

    async def test_calendar_row_with_decoded_json(self):
        pool = _pool()
        pool.fetchrow.return_value = _calendar_row(external_config=None)
        calendar = await PostgresRepository(pool).get_calendar("cal-1")
        assert calendar.external_config == ExternalConfig()

    async def test_event_row_with_recurrence(self):
        pool = _pool()
        pool.fetchrow.return_value = _event_row(
            recurrence=json.dumps({"type": "weekly", "interval": 2, "count": 4})
        )
        event = await PostgresRepository(pool).get_event("evt-1")
        assert event.recurrence == RecurrenceRule(type="weekly", interval=2, count=4)

    async def test_missing_rows(self):
        repo = PostgresRepository(_pool())
        assert await repo.get_calendar("x") is None
        assert await repo.get_event("x") is None
        assert await repo.get_permission("x", "alice") is None


# ============================================================================
# Writes
# ============================================================================


class TestWrites:
    async def test_insert_calendar_serialises_external_config(self):
        pool = _pool()
        calendar = Calendar(
            id="cal-1",
            name="Work",
            owner_id="alice",
            external_config=ExternalConfig(feed_url="https://example.com/a.ics"),
        )
        await PostgresRepository(pool).insert_calendar(calendar)
        args = pool.execute.await_args.args
        assert "INSERT INTO calendars" in args[0]
        assert json.loads(args[10]) == {"feed_url": "https://example.com/a.ics"}

    async def test_update_of_missing_row_raises(self):
        pool = _pool()
        pool.execute.return_value = "UPDATE 0"
        with pytest.raises(KeyError):
            await PostgresRepository(pool).update_calendar(
                Calendar(id="cal-1", name="Work", owner_id="alice")
            )

    async def test_insert_event_passes_recurrence_json(self):
        pool = _pool()
        event = Event(
            id="evt-1",
            calendar_id="cal-1",
            title="Standup",
            start_time=NOW,
            end_time=NOW,
            created_by="alice",
            recurrence=RecurrenceRule(type="daily", count=3),
        )
        await PostgresRepository(pool).insert_event(event)
        args = pool.execute.await_args.args
        assert json.loads(args[13])["count"] == 3
        assert args[9] == "confirmed"

    async def test_delete_results(self):
        pool = _pool()
        pool.execute.return_value = "DELETE 3"
        repo = PostgresRepository(pool)
        assert await repo.delete_calendar_events("cal-1") == 3
        pool.execute.return_value = "DELETE 0"
        assert await repo.delete_event("evt-1") is False

    def test_affected_parsing(self):
        assert _affected("UPDATE 2") == 2
        assert _affected("garbage") == 0


# ============================================================================
# Queries
# ============================================================================


class TestQueries:
    async def test_list_calendars_builds_where_clause(self):
        pool = _pool()
        await PostgresRepository(pool).list_calendars(
            family_id="fam-1", calendar_type=CalendarType.ICAL
        )
        query, *params = pool.fetch.await_args.args
        assert "WHERE family_id = $1 AND type = $2" in query
        assert params == ["fam-1", "ical"]

    async def test_list_calendars_without_filters(self):
        pool = _pool()
        await PostgresRepository(pool).list_calendars()
        query = pool.fetch.await_args.args[0]
        assert "WHERE" not in query

    async def test_list_events_passes_window(self):
        pool = _pool()
        pool.fetch.return_value = [_event_row()]
        events = await PostgresRepository(pool).list_events("cal-1", start=NOW, end=None)
        assert [event.id for event in events] == ["evt-1"]
        assert pool.fetch.await_args.args[1:] == ("cal-1", NOW, None)

    async def test_counts(self):
        pool = _pool()
        pool.fetchval.return_value = 7
        repo = PostgresRepository(pool)
        assert await repo.count_events() == 7
        assert await repo.count_events("cal-1") == 7
        assert await repo.count_upcoming_events(NOW) == 7
        assert await repo.count_calendars() == 7

    async def test_family_members(self):
        pool = _pool()
        pool.fetch.return_value = [{"user_id": "alice"}, {"user_id": "bob"}]
        assert await PostgresRepository(pool).get_family_member_ids("fam-1") == ["alice", "bob"]
