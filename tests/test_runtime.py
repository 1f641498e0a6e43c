"""Tests for the composition root: wiring, lifecycle and the health report."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from famcal.config import ENCRYPTION_KEY_ENV, parse_config
from famcal.errors import ConfigurationError, ValidationError
from famcal.models import Calendar, CalendarType
from famcal.runtime import CalendarRuntime
from famcal.storage import InMemoryRepository, PostgresRepository
from famcal.sync.google import GoogleCalendarAdapter
from famcal.sync.ical import ICalFeedAdapter

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _no_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv(ENCRYPTION_KEY_ENV, raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)


def _runtime(data: dict | None = None, *, encryption_key: str | None = None) -> CalendarRuntime:
    config = parse_config(data or {})
    config.encryption_key = encryption_key
    return CalendarRuntime(config, http_client=MagicMock(spec=httpx.AsyncClient))


def _provider_calendar(calendar_type: CalendarType) -> Calendar:
    return Calendar(name="Remote", owner_id="alice", type=calendar_type)


class TestWiring:
    def test_memory_backend_by_default(self):
        runtime = _runtime()
        assert isinstance(runtime.repository, InMemoryRepository)
        assert runtime.database is None

    def test_postgres_backend_builds_pool_lazily(self):
        runtime = _runtime(
            {"database": {"backend": "postgres", "url": "postgresql://u:p@db:5432/famcal"}}
        )
        assert isinstance(runtime.repository, PostgresRepository)
        assert runtime.database is not None

    def test_postgres_backend_without_url(self):
        config = parse_config({})
        config.database.backend = "postgres"
        with pytest.raises(ConfigurationError, match="database.url"):
            CalendarRuntime(config, http_client=MagicMock(spec=httpx.AsyncClient))

    def test_without_encryption_key_only_ical_is_available(self):
        runtime = _runtime()
        assert runtime.vault is None
        adapter = runtime.sync.adapter_for(_provider_calendar(CalendarType.ICAL))
        assert isinstance(adapter, ICalFeedAdapter)
        with pytest.raises(ConfigurationError):
            runtime.sync.adapter_for(_provider_calendar(CalendarType.GOOGLE))

    def test_encryption_key_enables_google(self):
        runtime = _runtime(encryption_key="test-secret")
        assert runtime.vault is not None
        adapter = runtime.sync.adapter_for(_provider_calendar(CalendarType.GOOGLE))
        assert isinstance(adapter, GoogleCalendarAdapter)

    async def test_event_limit_comes_from_config(self):
        runtime = _runtime({"calendar": {"max_events_per_calendar": 1}})
        calendar = await runtime.calendars.create_calendar({"name": "Home", "owner_id": "alice"})
        start = datetime(2026, 3, 1, 9, tzinfo=UTC)
        event = {"calendar_id": calendar.id, "title": "One", "start_time": start, "end_time": start}
        await runtime.events.create_event(event, "alice")
        with pytest.raises(ValidationError, match="maximum"):
            await runtime.events.create_event({**event, "title": "Two"}, "alice")
        await runtime.notifications.stop(drain_timeout_s=0)


class TestLifecycle:
    async def test_context_manager(self):
        async with _runtime() as runtime:
            assert runtime.running
        assert not runtime.running

    async def test_poller_follows_sync_setting(self):
        runtime = _runtime({"sync": {"enabled": True}})
        with patch.object(runtime.sync, "start_poller") as start_poller:
            await runtime.start()
            await runtime.shutdown()
        start_poller.assert_called_once_with()

    async def test_poll_argument_overrides_setting(self):
        runtime = _runtime({"sync": {"enabled": True}})
        with patch.object(runtime.sync, "start_poller") as start_poller:
            await runtime.start(poll=False)
            await runtime.shutdown()
        start_poller.assert_not_called()

    async def test_shutdown_continues_after_a_failing_step(self):
        runtime = _runtime()
        await runtime.start()
        with patch.object(runtime.sync, "shutdown", AsyncMock(side_effect=RuntimeError("boom"))):
            await runtime.shutdown()
        assert not runtime.running
        assert runtime.notifications.queue_depth == 0


class TestHealth:
    async def test_healthy_report_counts_storage(self):
        async with _runtime() as runtime:
            calendar = await runtime.calendars.create_calendar(
                {"name": "Home", "owner_id": "alice"}
            )
            soon = datetime.now(UTC) + timedelta(days=1)
            await runtime.events.create_event(
                {"calendar_id": calendar.id, "title": "Soon", "start_time": soon, "end_time": soon},
                "alice",
            )
            report = await runtime.health()

        assert report["status"] == "healthy"
        assert report["message"] == "Calendar service is healthy"
        assert report["metrics"] == {
            "total_events": 1,
            "upcoming_events": 1,
            "calendars_count": 1,
        }
        assert datetime.fromisoformat(report["timestamp"]).tzinfo is not None

    async def test_unhealthy_when_storage_fails(self):
        runtime = _runtime()
        with patch.object(
            runtime.repository, "count_events", AsyncMock(side_effect=RuntimeError("db down"))
        ):
            report = await runtime.health()
        assert report["status"] == "unhealthy"
        assert report["error"] == "db down"
        assert "metrics" not in report
