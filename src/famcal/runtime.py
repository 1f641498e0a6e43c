"""Composition root: builds and owns every famcal component for one process."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from famcal.cache import EventCache
from famcal.calendars import CalendarService
from famcal.config import FamcalConfig
from famcal.core.telemetry import init_telemetry
from famcal.db import Database
from famcal.errors import ConfigurationError
from famcal.event_store import EventStore
from famcal.migrations import run_migrations
from famcal.models import CalendarType
from famcal.notifications import NotificationDispatcher
from famcal.permissions import PermissionAuthority
from famcal.storage import CalendarRepository, InMemoryRepository, PostgresRepository
from famcal.sync.base import CalendarProviderAdapter
from famcal.sync.engine import SyncEngine
from famcal.sync.google import GoogleCalendarAdapter
from famcal.sync.ical import ICalFeedAdapter
from famcal.vault import CredentialVault

logger = logging.getLogger(__name__)


def _require_database_url(config: FamcalConfig) -> str:
    if not config.database.url:
        raise ConfigurationError(
            "database.url (or DATABASE_URL) is required for the postgres backend"
        )
    return config.database.url


class CalendarRuntime:
    """Wires repository, services, cache, notifications, vault and sync.

    Construction only builds objects. :meth:`start` opens the database pool
    (running migrations first when asked), starts the notification worker
    and, when ``[sync] enabled``, the background poller. :meth:`shutdown`
    undoes all of it in reverse order.
    """

    def __init__(
        self,
        config: FamcalConfig,
        *,
        repository: CalendarRepository | None = None,
        database: Database | None = None,
        adapters: dict[CalendarType, CalendarProviderAdapter] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.database = database
        if repository is None:
            repository = self._build_repository(config)
        self.repository = repository

        self.permissions = PermissionAuthority(repository)
        self.calendars = CalendarService(repository, self.permissions)
        self.cache = EventCache(config.cache.ttl_seconds)
        self.notifications = NotificationDispatcher(config.calendar)
        self.events = EventStore(
            repository,
            self.calendars,
            self.permissions,
            cache=self.cache,
            notifications=self.notifications,
            max_events_per_calendar=config.calendar.max_events_per_calendar,
        )

        self.vault: CredentialVault | None = None
        if config.encryption_key:
            self.vault = CredentialVault(
                config.encryption_key,
                repository=repository,
                oauth=config.google,
                http_client=http_client,
            )
        else:
            logger.warning("No encryption key configured; Google calendars are unavailable")

        if adapters is None:
            adapters = {CalendarType.ICAL: ICalFeedAdapter(http_client=http_client)}
            if self.vault is not None:
                adapters[CalendarType.GOOGLE] = GoogleCalendarAdapter(
                    self.vault,
                    api_base_url=config.google.api_base_url,
                    http_client=http_client,
                )
        self.sync = SyncEngine(
            repository,
            self.calendars,
            self.events,
            adapters=adapters,
            vault=self.vault,
            settings=config.sync,
        )
        self._started = False

    def _build_repository(self, config: FamcalConfig) -> CalendarRepository:
        if config.database.backend == "postgres":
            if self.database is None:
                self.database = Database.from_url(
                    _require_database_url(config),
                    min_pool_size=config.database.min_pool_size,
                    max_pool_size=config.database.max_pool_size,
                )
            return PostgresRepository(self.database)
        return InMemoryRepository()

    @property
    def running(self) -> bool:
        return self._started

    @classmethod
    def from_config(cls, config: FamcalConfig) -> CalendarRuntime:
        return cls(config)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, *, migrate: bool = False, poll: bool | None = None) -> None:
        """Start the runtime.

        Parameters
        ----------
        migrate:
            Apply Alembic migrations before connecting (postgres only).
        poll:
            Start the sync poller; defaults to ``[sync] enabled``.
        """
        init_telemetry("famcal")

        if self.database is not None:
            if migrate:
                await run_migrations(_require_database_url(self.config))
            await self.database.connect()

        await self.notifications.start()
        should_poll = self.config.sync.enabled if poll is None else poll
        if should_poll:
            self.sync.start_poller()
        self._started = True
        logger.info(
            "famcal runtime started (backend=%s, poller=%s)",
            self.config.database.backend,
            "on" if should_poll else "off",
        )

    async def shutdown(self) -> None:
        """Graceful shutdown.

        1. Stop the sync poller and close provider adapters
        2. Drain queued notifications and cancel pending reminders
        3. Close the vault's HTTP client
        4. Release the repository and the database pool
        """
        # 1. Sync
        try:
            await self.sync.shutdown()
        except Exception:
            logger.exception("Error while stopping the sync engine")

        # 2. Notifications
        try:
            await self.notifications.stop()
        except Exception:
            logger.exception("Error while stopping the notification dispatcher")

        # 3. Vault
        if self.vault is not None:
            try:
                await self.vault.shutdown()
            except Exception:
                logger.exception("Error while closing the credential vault")

        # 4. Storage
        await self.repository.close()
        if self.database is not None:
            await self.database.close()

        self._started = False
        logger.info("famcal runtime shutdown complete")

    async def __aenter__(self) -> CalendarRuntime:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health(self) -> dict[str, Any]:
        """Report storage reachability plus event and calendar counts."""
        now = datetime.now(UTC)
        try:
            total_events = await self.repository.count_events()
            upcoming_events = await self.repository.count_upcoming_events(now)
            calendars_count = await self.repository.count_calendars()
        except Exception as exc:
            logger.error("Health check failed: %s", exc, exc_info=True)
            return {
                "status": "unhealthy",
                "timestamp": now.isoformat(),
                "message": "Storage backend check failed",
                "error": str(exc)[:200],
            }
        return {
            "status": "healthy",
            "timestamp": now.isoformat(),
            "message": "Calendar service is healthy",
            "metrics": {
                "total_events": total_events,
                "upcoming_events": upcoming_events,
                "calendars_count": calendars_count,
            },
        }
