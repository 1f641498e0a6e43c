"""Recurrence expansion: template event + query window -> concrete occurrences.

Expansion is pure. It never touches storage, so synced events and locally
created events expand identically.

Rules supported: daily, weekly, monthly, and yearly steps with an interval,
bounded by ``count`` or ``until`` (or unbounded and clipped by the window),
minus exact-instant exception dates. Monthly and yearly candidates are
computed from the series start rather than from the previous candidate, so a
series starting on the 31st lands on the last day of short months without
drifting afterwards.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from dateutil.relativedelta import relativedelta

from famcal.models import Event, RecurrenceRule, RecurrenceType

# Upper bound on candidates generated for one template.
MAX_OCCURRENCES = 10_000


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def candidate_start(series_start: datetime, rule: RecurrenceRule, index: int) -> datetime:
    """Return the start of the ``index``-th candidate (0-based) of a series."""
    steps = rule.interval * index
    if rule.type is RecurrenceType.DAILY:
        return series_start + timedelta(days=steps)
    if rule.type is RecurrenceType.WEEKLY:
        return series_start + timedelta(weeks=steps)
    if rule.type is RecurrenceType.MONTHLY:
        return series_start + relativedelta(months=steps)
    return series_start + relativedelta(years=steps)


def expand(template: Event, range_start: datetime, range_end: datetime) -> list[Event]:
    """Expand ``template`` into occurrences overlapping ``[range_start, range_end]``.

    A template without a recurrence rule is returned as-is when it overlaps
    the window. Out-of-window and excepted candidates still consume ``count``.
    Occurrences keep every template field (including ``id``) except the
    start and end instants, and preserve the template's duration.
    """
    range_start = _aware(range_start)
    range_end = _aware(range_end)

    rule = template.recurrence
    if rule is None:
        return [template] if template.overlaps(range_start, range_end) else []

    duration = template.duration
    exceptions = set(rule.exception_dates)
    occurrences: list[Event] = []

    for index in range(MAX_OCCURRENCES):
        if rule.count is not None and index >= rule.count:
            break
        start = candidate_start(template.start_time, rule, index)
        if rule.until is not None and start > rule.until:
            break
        # Candidates are monotonic, so nothing later can enter the window.
        if start > range_end:
            break
        if start in exceptions:
            continue
        end = start + duration
        if end < range_start:
            continue
        occurrences.append(template.model_copy(update={"start_time": start, "end_time": end}))

    occurrences.sort(key=lambda occurrence: (occurrence.start_time, occurrence.id))
    return occurrences


def expand_all(events: list[Event], range_start: datetime, range_end: datetime) -> list[Event]:
    """Expand every event in ``events`` and merge into one ordered list."""
    expanded: list[Event] = []
    for event in events:
        expanded.extend(expand(event, range_start, range_end))
    expanded.sort(key=lambda occurrence: (occurrence.start_time, occurrence.id))
    return expanded
