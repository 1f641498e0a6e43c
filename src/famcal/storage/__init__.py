"""Persistence backends for calendars, permissions, and events."""

from famcal.storage.base import CalendarRepository
from famcal.storage.memory import InMemoryRepository
from famcal.storage.postgres import PostgresRepository

__all__ = ["CalendarRepository", "InMemoryRepository", "PostgresRepository"]
