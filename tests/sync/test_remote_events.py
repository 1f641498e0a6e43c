"""Unit tests for the provider-neutral remote event shape and RRULE helpers."""

from __future__ import annotations

from datetime import UTC, datetime, time

import pytest

from famcal.models import Event, EventStatus, RecurrenceRule, RecurrenceType
from famcal.sync.base import (
    RemoteEvent,
    format_rrule,
    parse_recurrence_lines,
    parse_rrule,
)

pytestmark = pytest.mark.unit

START = datetime(2026, 3, 1, 9, tzinfo=UTC)


# ============================================================================
# parse_rrule
# ============================================================================


class TestParseRrule:
    def test_plain_weekly(self):
        rule = parse_rrule("RRULE:FREQ=WEEKLY;INTERVAL=2;COUNT=5")
        assert rule == RecurrenceRule(type=RecurrenceType.WEEKLY, interval=2, count=5)

    def test_without_prefix_and_wkst(self):
        rule = parse_rrule("FREQ=DAILY;WKST=MO")
        assert rule is not None and rule.type is RecurrenceType.DAILY

    def test_until_utc(self):
        rule = parse_rrule("FREQ=MONTHLY;UNTIL=20261231T235959Z")
        assert rule.until == datetime(2026, 12, 31, 23, 59, 59, tzinfo=UTC)

    def test_date_only_until_covers_the_whole_day(self):
        rule = parse_rrule("FREQ=YEARLY;UNTIL=20300101")
        assert rule.until == datetime.combine(datetime(2030, 1, 1).date(), time.max, tzinfo=UTC)

    @pytest.mark.parametrize(
        "value",
        [
            "FREQ=WEEKLY;BYDAY=MO,WE",
            "FREQ=HOURLY",
            "FREQ=DAILY;COUNT=abc",
            "FREQ=DAILY;COUNT=2;UNTIL=20260101T000000Z",
        ],
    )
    def test_unrepresentable_rules_return_none(self, value):
        assert parse_rrule(value) is None


# ============================================================================
# Recurrence lines
# ============================================================================


class TestRecurrenceLines:
    def test_exdates_are_attached(self):
        rule = parse_recurrence_lines(
            [
                "RRULE:FREQ=DAILY;COUNT=5",
                "EXDATE;TZID=Europe/Berlin:20260302T100000,20260303T100000",
            ]
        )
        assert rule is not None
        assert rule.exception_dates == [
            datetime(2026, 3, 2, 9, tzinfo=UTC),
            datetime(2026, 3, 3, 9, tzinfo=UTC),
        ]

    def test_unsupported_rrule_drops_recurrence(self):
        assert parse_recurrence_lines(["RRULE:FREQ=MONTHLY;BYMONTHDAY=-1"]) is None

    def test_no_rrule(self):
        assert parse_recurrence_lines(["RDATE:20260301T090000Z"]) is None

    def test_format_round_trips_through_parse(self):
        rule = RecurrenceRule(
            type=RecurrenceType.WEEKLY,
            interval=3,
            until=datetime(2026, 6, 1, tzinfo=UTC),
            exception_dates=[datetime(2026, 3, 8, 9, tzinfo=UTC)],
        )
        lines = format_rrule(rule)
        assert lines == [
            "RRULE:FREQ=WEEKLY;INTERVAL=3;UNTIL=20260601T000000Z",
            "EXDATE:20260308T090000Z",
        ]
        assert parse_recurrence_lines(lines) == rule


# ============================================================================
# RemoteEvent
# ============================================================================


class TestRemoteEvent:
    def _remote(self, **overrides) -> RemoteEvent:
        fields = {
            "external_id": "g-1",
            "title": "Dentist",
            "start_time": START,
            "end_time": START,
        }
        fields.update(overrides)
        return RemoteEvent(**fields)

    def test_to_create_carries_external_id(self):
        payload = self._remote(location="Main St").to_create("cal-1")
        assert payload["calendar_id"] == "cal-1"
        assert payload["external_id"] == "g-1"
        assert payload["location"] == "Main St"

    def test_end_before_start_is_clamped(self):
        fields = self._remote(end_time=datetime(2026, 2, 1, tzinfo=UTC)).mirrored_fields()
        assert fields["end_time"] == START

    def test_naive_times_become_utc(self):
        remote = self._remote(start_time=datetime(2026, 3, 1, 9), end_time=datetime(2026, 3, 1, 9))
        assert remote.start_time == START

    def test_matches(self):
        remote = self._remote()
        local = Event(
            calendar_id="cal-1",
            created_by="alice",
            **remote.mirrored_fields(),
        )
        assert remote.matches(local)
        assert not remote.matches(local.model_copy(update={"title": "Changed"}))
        assert not self._remote(status=EventStatus.TENTATIVE).matches(local)
