"""Provider adapters and the engine that reconciles them with local events."""

from famcal.sync.base import CalendarProviderAdapter, RemoteEvent, SyncBatch
from famcal.sync.engine import SyncEngine, SyncResult
from famcal.sync.google import GoogleCalendarAdapter
from famcal.sync.ical import ICalFeedAdapter

__all__ = [
    "CalendarProviderAdapter",
    "GoogleCalendarAdapter",
    "ICalFeedAdapter",
    "RemoteEvent",
    "SyncBatch",
    "SyncEngine",
    "SyncResult",
]
