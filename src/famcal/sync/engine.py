"""Synchronization engine: reconciles provider calendars into the event store.

Each provider-backed calendar has an in-process state machine::

    idle -> syncing -> idle | failed

``failed`` heals to ``idle`` on the next successful pass. Passes are
single-flight per calendar: a trigger for a calendar that is already syncing
returns None without doing anything. Different calendars sync concurrently.

Remote changes are written through :class:`~famcal.event_store.EventStore`
as the calendar owner with ``propagate=False``, so they are permission
checked and never echoed back to the provider. The new sync cursor is only
committed after every change in the batch was applied; a failed pass leaves
the previous cursor in place.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from famcal.calendars import CalendarService, coerce_model
from famcal.config import SyncConfig
from famcal.core.logging import sync_log_context
from famcal.core.telemetry import sync_span
from famcal.errors import (
    CalendarError,
    ConfigurationError,
    SyncError,
    SyncTokenExpired,
    ValidationError,
    redact_credential_values,
)
from famcal.event_store import EventStore
from famcal.models import (
    Calendar,
    CalendarCreate,
    CalendarSyncState,
    CalendarType,
    Event,
    ExternalConfig,
    SyncStatus,
)
from famcal.storage.base import CalendarRepository
from famcal.sync.base import CalendarProviderAdapter, SyncBatch
from famcal.sync.ical import normalize_feed_url
from famcal.vault import CredentialVault

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of one completed sync pass."""

    calendar_id: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    full_resync: bool = False

    @property
    def change_count(self) -> int:
        return self.created + self.updated + self.deleted

    def to_dict(self) -> dict[str, Any]:
        return {
            "calendar_id": self.calendar_id,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "full_resync": self.full_resync,
        }


class SyncEngine:
    """Pulls provider changes, pushes local changes, and links new calendars.

    Parameters
    ----------
    repository:
        Storage for calendars and events.
    calendars:
        Calendar service used for creation, lookup and deletion.
    events:
        Event store that every synced change is written through. The engine
        registers itself as the store's outbound publisher.
    adapters:
        Provider adapter per calendar type.
    vault:
        Credential vault; required to link Google calendars.
    settings:
        Poll interval and full-sync window.
    """

    def __init__(
        self,
        repository: CalendarRepository,
        calendars: CalendarService,
        events: EventStore,
        *,
        adapters: dict[CalendarType, CalendarProviderAdapter],
        vault: CredentialVault | None = None,
        settings: SyncConfig | None = None,
    ) -> None:
        self._repository = repository
        self._calendars = calendars
        self._events = events
        self._adapters = dict(adapters)
        self._vault = vault
        self._settings = settings or SyncConfig()
        self._states: dict[str, CalendarSyncState] = {}
        self._in_flight: set[str] = set()
        self._force_sync_event = asyncio.Event()
        self._poller_task: asyncio.Task | None = None
        events.attach_outbound(self)

    def adapter_for(self, calendar: Calendar) -> CalendarProviderAdapter:
        adapter = self._adapters.get(calendar.type)
        if adapter is None:
            raise ConfigurationError(
                f"No sync adapter configured for {calendar.type} calendars",
                details={"calendar_id": calendar.id, "type": calendar.type.value},
            )
        return adapter

    def get_sync_state(self, calendar_id: str) -> CalendarSyncState:
        state = self._states.get(calendar_id)
        return state.model_copy() if state is not None else CalendarSyncState()

    # ------------------------------------------------------------------
    # Linking calendars
    # ------------------------------------------------------------------

    async def add_google_calendar(
        self,
        data: CalendarCreate | dict[str, Any],
        *,
        access_token: str | None,
        refresh_token: str | None = None,
        token_expires_at: datetime | None = None,
        remote_calendar_id: str = "primary",
        family_member_ids: list[str] | None = None,
    ) -> Calendar:
        """Link a Google calendar after checking the credentials reach it.

        Tokens are encrypted before anything is stored. Nothing is persisted
        when validation fails.
        """
        if self._vault is None:
            raise ConfigurationError("An encryption key is required to link Google calendars")
        if not access_token and not refresh_token:
            raise ValidationError("Linking a Google calendar needs an access or refresh token")

        payload = self._provider_payload(data, CalendarType.GOOGLE)
        external = self._vault.seal(
            ExternalConfig(remote_calendar_id=remote_calendar_id),
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=token_expires_at,
        )
        linked = payload.model_copy(update={"external_config": external})
        candidate = Calendar(**linked.model_dump())
        try:
            metadata = await self.adapter_for(candidate).validate(candidate)
        finally:
            refreshed = self._vault.take_unsaved_refresh(candidate.id)
        if refreshed is not None:
            external = refreshed
        external = external.model_copy(update={"access_role": metadata.get("access_role")})

        calendar = await self._calendars.create_calendar(
            payload.model_copy(update={"external_config": external}),
            family_member_ids=family_member_ids,
        )
        logger.info(
            "Linked Google calendar %s (remote=%s, access_role=%s)",
            calendar.id,
            remote_calendar_id,
            external.access_role,
        )
        self.request_sync()
        return calendar

    async def add_ical_calendar(
        self,
        data: CalendarCreate | dict[str, Any],
        *,
        feed_url: str,
        family_member_ids: list[str] | None = None,
    ) -> Calendar:
        """Subscribe to an iCal feed after checking it downloads and parses."""
        payload = self._provider_payload(data, CalendarType.ICAL)
        external = ExternalConfig(feed_url=normalize_feed_url(feed_url))
        linked = payload.model_copy(update={"external_config": external})
        candidate = Calendar(**linked.model_dump())
        metadata = await self.adapter_for(candidate).validate(candidate)

        calendar = await self._calendars.create_calendar(
            linked, family_member_ids=family_member_ids
        )
        logger.info(
            "Subscribed iCal calendar %s (%d events in feed)",
            calendar.id,
            metadata.get("event_count", 0),
        )
        self.request_sync()
        return calendar

    async def remove_calendar(self, calendar_id: str, acting_user_id: str) -> None:
        """Unlink a provider calendar: local events, credentials, then the calendar.

        The remote calendar is left untouched.
        """
        calendar = await self._calendars.require_calendar(calendar_id)
        await self._calendars.permissions.require_permission(
            calendar_id, acting_user_id, can_edit=True
        )
        removed = await self._repository.delete_calendar_events(calendar_id)
        if calendar.external_config.has_credentials:
            await self._repository.update_calendar(
                calendar.model_copy(
                    update={
                        "external_config": CredentialVault.strip(calendar.external_config),
                        "updated_at": datetime.now(UTC),
                    }
                )
            )
        await self._calendars.delete_calendar(calendar_id, acting_user_id)
        self._states.pop(calendar_id, None)
        logger.info("Removed %s calendar %s (%d local events)", calendar.type, calendar_id, removed)

    @staticmethod
    def _provider_payload(
        data: CalendarCreate | dict[str, Any], calendar_type: CalendarType
    ) -> CalendarCreate:
        payload = coerce_model(CalendarCreate, data)
        if payload.owner_id is None:
            raise ValidationError(
                "Provider calendars need an owner_id; synced changes are made on their behalf"
            )
        return payload.model_copy(update={"type": calendar_type})

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def sync_calendar(self, calendar_id: str) -> SyncResult | None:
        """Run one sync pass. Returns None when a pass is already running.

        Raises
        ------
        NotFound
            The calendar does not exist.
        SyncError
            The pass failed; local events and the cursor are unchanged by the
            failed step and the state is ``failed``.
        """
        calendar = await self._calendars.require_calendar(calendar_id)
        if not calendar.is_provider_backed:
            raise ValidationError(f"Calendar {calendar_id} is local; there is nothing to sync")
        if calendar_id in self._in_flight:
            logger.info("Sync already running for calendar %s; skipping trigger", calendar_id)
            return None

        self._in_flight.add(calendar_id)
        state = self._states.setdefault(calendar_id, CalendarSyncState())
        state.status = SyncStatus.SYNCING
        try:
            with sync_log_context(calendar.family_id, calendar.id), sync_span(
                calendar.id, calendar.type.value
            ):
                result = await self._run_pass(calendar)
        except Exception as exc:
            state.status = SyncStatus.FAILED
            state.last_error = redact_credential_values(str(exc))[:200]
            logger.error("Calendar sync failed (calendar_id=%s): %s", calendar_id, state.last_error)
            if isinstance(exc, SyncError):
                raise
            if isinstance(exc, CalendarError):
                raise SyncError(
                    f"Sync failed for calendar {calendar_id}: {exc.message}",
                    details={"calendar_id": calendar_id, "cause": exc.code},
                ) from exc
            raise
        finally:
            self._in_flight.discard(calendar_id)

        state.status = SyncStatus.IDLE
        state.last_sync_at = datetime.now(UTC)
        state.last_error = None
        state.last_change_count = result.change_count
        logger.info(
            "Calendar sync completed (calendar_id=%s, created=%d, updated=%d, deleted=%d)",
            calendar_id,
            result.created,
            result.updated,
            result.deleted,
        )
        return result

    async def sync_all(self) -> dict[str, SyncResult | Exception | None]:
        """Sync every provider-backed calendar concurrently.

        One calendar failing does not stop the others; its exception is
        returned in its slot (and recorded in its sync state).
        """
        calendars: list[Calendar] = []
        for calendar_type in self._adapters:
            calendars.extend(await self._repository.list_calendars(calendar_type=calendar_type))

        results = await asyncio.gather(
            *(self.sync_calendar(calendar.id) for calendar in calendars),
            return_exceptions=True,
        )
        outcome: dict[str, SyncResult | Exception | None] = {}
        for calendar, result in zip(calendars, results, strict=True):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            outcome[calendar.id] = result
        return outcome

    async def _run_pass(self, calendar: Calendar) -> SyncResult:
        adapter = self.adapter_for(calendar)
        full_resync = False
        try:
            batch = await adapter.sync_incremental(
                calendar,
                sync_token=calendar.external_config.sync_token,
                full_sync_window_days=self._settings.full_sync_window_days,
            )
        except SyncTokenExpired:
            logger.warning(
                "Sync token expired for calendar '%s'; performing full re-sync", calendar.id
            )
            full_resync = True
            batch = await adapter.sync_incremental(
                calendar,
                sync_token=None,
                full_sync_window_days=self._settings.full_sync_window_days,
            )

        result = await self._apply_batch(calendar, batch)
        result.full_resync = full_resync
        await self._commit_cursor(calendar.id, batch.next_sync_token)
        return result

    async def _apply_batch(self, calendar: Calendar, batch: SyncBatch) -> SyncResult:
        actor = calendar.owner_id
        if actor is None:
            raise SyncError(f"Calendar {calendar.id} has no owner to attribute synced changes to")

        result = SyncResult(calendar_id=calendar.id)
        local_events = await self._repository.list_events(calendar.id)
        by_external_id: dict[str, Event] = {
            event.external_id: event for event in local_events if event.external_id is not None
        }

        for remote in batch.updated:
            existing = by_external_id.get(remote.external_id)
            if existing is None:
                created = await self._events.create_event(
                    remote.to_create(calendar.id), actor, propagate=False
                )
                by_external_id[remote.external_id] = created
                result.created += 1
            elif not remote.matches(existing):
                await self._events.update_event(
                    existing.id, remote.mirrored_fields(), actor, propagate=False
                )
                result.updated += 1

        removed: set[str] = set()
        for external_id in batch.deleted_ids:
            existing = by_external_id.pop(external_id, None)
            if existing is not None:
                await self._events.delete_event(existing.id, actor, propagate=False)
                removed.add(existing.id)

        if batch.complete:
            # Mirror: anything the provider no longer lists goes, including local-only edits.
            remote_ids = {remote.external_id for remote in batch.updated}
            for event in local_events:
                if event.id not in removed and event.external_id not in remote_ids:
                    await self._events.delete_event(event.id, actor, propagate=False)
                    removed.add(event.id)

        result.deleted = len(removed)
        return result

    async def _commit_cursor(self, calendar_id: str, next_sync_token: str | None) -> None:
        # Re-read so credentials refreshed during the pass are not overwritten.
        current = await self._calendars.require_calendar(calendar_id)
        now = datetime.now(UTC)
        external = current.external_config.model_copy(
            update={"sync_token": next_sync_token, "last_synced_at": now}
        )
        await self._repository.update_calendar(
            current.model_copy(update={"external_config": external, "updated_at": now})
        )

    # ------------------------------------------------------------------
    # Push (outbound publisher for the event store)
    # ------------------------------------------------------------------

    def accepts_push(self, calendar: Calendar) -> bool:
        """Local changes go out only to provider calendars whose adapter can write."""
        if not calendar.is_provider_backed:
            return False
        return self.adapter_for(calendar).writable

    async def push_created(self, calendar: Calendar, event: Event) -> Event:
        adapter = self.adapter_for(calendar)
        try:
            remote = await adapter.insert_event(calendar, event)
        except CalendarError as exc:
            raise self._push_failure("create", calendar, event, exc) from exc
        return await self._events.link_external_id(event.id, remote.external_id)

    async def push_updated(self, calendar: Calendar, event: Event) -> Event:
        if event.external_id is None:
            return await self.push_created(calendar, event)
        adapter = self.adapter_for(calendar)
        try:
            await adapter.update_event(calendar, event)
        except CalendarError as exc:
            raise self._push_failure("update", calendar, event, exc) from exc
        return event

    async def push_deleted(self, calendar: Calendar, event: Event) -> None:
        if event.external_id is None:
            return
        adapter = self.adapter_for(calendar)
        try:
            await adapter.delete_event(calendar, event.external_id)
        except CalendarError as exc:
            raise self._push_failure("delete", calendar, event, exc) from exc

    @staticmethod
    def _push_failure(
        action: str, calendar: Calendar, event: Event, exc: CalendarError
    ) -> SyncError:
        logger.warning(
            "Push of local %s failed (calendar_id=%s, event_id=%s): %s",
            action,
            calendar.id,
            event.id,
            exc.code,
        )
        return SyncError(
            f"Event {event.id} was saved locally but the {action} could not be pushed to "
            f"{calendar.type}: {exc.message}",
            details={"calendar_id": calendar.id, "event_id": event.id, "cause": exc.code},
        )

    # ------------------------------------------------------------------
    # Poller
    # ------------------------------------------------------------------

    def request_sync(self) -> None:
        """Wake the poller for an immediate pass (no-op while the poller is stopped)."""
        self._force_sync_event.set()

    async def run_poller(self, interval_seconds: float | None = None) -> None:
        """Sync all calendars every interval until cancelled."""
        interval = interval_seconds or self._settings.interval_seconds
        logger.debug("Calendar sync poller loop started (interval=%ds)", interval)
        while True:
            self._force_sync_event.clear()
            try:
                await self.sync_all()
            except Exception as exc:
                logger.error("Calendar sync poller error: %s", exc, exc_info=True)

            try:
                await asyncio.wait_for(self._force_sync_event.wait(), timeout=interval)
                logger.debug("Calendar sync poller: immediate sync triggered")
            except TimeoutError:
                pass

    def start_poller(self) -> None:
        if self._poller_task is not None and not self._poller_task.done():
            return
        self._poller_task = asyncio.create_task(self.run_poller(), name="famcal-sync-poller")
        logger.info("Calendar sync poller started (interval=%ds)", self._settings.interval_seconds)

    async def stop_poller(self) -> None:
        if self._poller_task is not None and not self._poller_task.done():
            self._poller_task.cancel()
            try:
                await self._poller_task
            except asyncio.CancelledError:
                pass
        self._poller_task = None

    async def shutdown(self) -> None:
        await self.stop_poller()
        for adapter in self._adapters.values():
            await adapter.shutdown()
