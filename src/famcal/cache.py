"""Advisory TTL cache for event range queries.

Entries expire on read against a monotonic clock. The cache is process-local
and purely an optimisation: misses fall through to the repository, and the
event store invalidates a calendar's entries whenever it writes to it.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any

from famcal.models import Event

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300


def get_cache_key(params: dict[str, Any]) -> str:
    """Build a canonical key: ``k:json(v)`` pairs sorted by key, joined by ``|``."""
    return "|".join(
        f"{key}:{json.dumps(value, default=str, sort_keys=True)}"
        for key, value in sorted(params.items())
    )


class EventCache:
    """Maps canonical query keys to event lists with a per-entry expiry."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, list[Event]]] = {}

    def get(self, key: str) -> list[Event] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, events = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return [event.model_copy(deep=True) for event in events]

    def set(self, key: str, events: list[Event], ttl_seconds: float | None = None) -> None:
        ttl = self._ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[key] = (
            self._clock() + ttl,
            [event.model_copy(deep=True) for event in events],
        )
        logger.debug("Cached %d events for key: %s", len(events), key)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def invalidate_calendar(self, calendar_id: str) -> int:
        """Drop every entry whose key was built with this ``calendar_id``."""
        marker = f"calendar_id:{json.dumps(calendar_id)}"
        doomed = [key for key in self._entries if marker in key.split("|")]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()
        logger.debug("Cleared entire event cache")

    def __len__(self) -> int:
        return len(self._entries)
