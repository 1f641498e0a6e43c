"""Fire-and-forget notification dispatch for event lifecycle changes.

Domain mutations call ``publish_*`` which only does a non-blocking
``put_nowait`` onto an in-memory queue. A worker task drains the queue and
fans each notification out to the registered subscribers. Subscriber
failures are logged and never propagate back to the mutation that caused
them.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from famcal.config import CalendarSettings
from famcal.models import Event

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_CAPACITY = 256


class NotificationType(StrEnum):
    EVENT_REMINDER = "EVENT_REMINDER"
    EVENT_UPDATE = "EVENT_UPDATE"
    EVENT_CANCELLATION = "EVENT_CANCELLATION"


class Notification(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: NotificationType
    event: Event
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


NotificationHandler = Callable[[Notification], Awaitable[None] | None]


class NotificationDispatcher:
    """Queue-backed notification fan-out.

    Parameters
    ----------
    settings:
        Toggles for creation/update notifications and the default reminder
        lead time.
    queue_capacity:
        Maximum queued notifications. When full, new notifications are
        dropped with a warning.
    """

    def __init__(
        self,
        settings: CalendarSettings | None = None,
        *,
        queue_capacity: int = DEFAULT_QUEUE_CAPACITY,
    ) -> None:
        self._settings = settings or CalendarSettings()
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=queue_capacity)
        self._subscribers: list[NotificationHandler] = []
        self._worker_task: asyncio.Task | None = None
        self._reminder_tasks: dict[str, asyncio.Task] = {}
        self._dropped_total = 0
        self._delivered_total = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._worker_task is not None:
            return
        self._worker_task = asyncio.create_task(
            self._worker_loop(), name="famcal-notification-worker"
        )
        logger.info("Notification dispatcher started (capacity=%d)", self._queue.maxsize)

    async def stop(self, drain_timeout_s: float = 5.0) -> None:
        """Drain queued notifications (bounded), then cancel the worker and reminders."""
        reminders = list(self._reminder_tasks.values())
        for task in reminders:
            task.cancel()
        for task in reminders:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._reminder_tasks.clear()

        if self._worker_task is None:
            return

        if drain_timeout_s > 0 and not self._queue.empty():
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout_s)
            except TimeoutError:
                logger.warning(
                    "Notification drain timed out after %.1fs; %d notifications dropped",
                    drain_timeout_s,
                    self._queue.qsize(),
                )

        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None
        logger.info(
            "Notification dispatcher stopped: delivered=%d dropped=%d",
            self._delivered_total,
            self._dropped_total,
        )

    def subscribe(self, handler: NotificationHandler) -> None:
        self._subscribers.append(handler)

    def unsubscribe(self, handler: NotificationHandler) -> None:
        if handler in self._subscribers:
            self._subscribers.remove(handler)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish(self, notification: Notification) -> bool:
        """Enqueue without blocking. Returns False when the queue is full."""
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            self._dropped_total += 1
            logger.warning(
                "Notification queue full; dropping %s for event %s",
                notification.type,
                notification.event.id,
            )
            return False
        return True

    def publish_created(self, event: Event) -> bool:
        if not self._settings.notify_on_event_creation:
            return False
        return self.publish(
            Notification(
                type=NotificationType.EVENT_UPDATE,
                event=event,
                message=f"New event created: {event.title}",
            )
        )

    def publish_updated(self, event: Event) -> bool:
        if not self._settings.notify_on_event_update:
            return False
        return self.publish(
            Notification(
                type=NotificationType.EVENT_UPDATE,
                event=event,
                message=f"Event updated: {event.title}",
            )
        )

    def publish_deleted(self, event: Event) -> bool:
        return self.publish(
            Notification(
                type=NotificationType.EVENT_CANCELLATION,
                event=event,
                message=f"Event cancelled: {event.title}",
            )
        )

    def schedule_reminder(self, event: Event, reminder_time: datetime) -> asyncio.Task | None:
        """Publish an ``EVENT_REMINDER`` at ``reminder_time``.

        At most one reminder is pending per event: scheduling again replaces
        the previous one. Returns None (and schedules nothing) when the
        reminder time has already passed.
        """
        self.cancel_reminder(event.id)
        delay = (reminder_time - datetime.now(UTC)).total_seconds()
        if delay <= 0:
            return None

        async def _fire() -> None:
            await asyncio.sleep(delay)
            self.publish(
                Notification(
                    type=NotificationType.EVENT_REMINDER,
                    event=event,
                    message=f"Reminder: {event.title} starts at {event.start_time.isoformat()}",
                )
            )

        task = asyncio.create_task(_fire(), name=f"famcal-reminder-{event.id}")
        self._reminder_tasks[event.id] = task
        task.add_done_callback(lambda done: self._forget_reminder(event.id, done))
        return task

    def cancel_reminder(self, event_id: str) -> bool:
        """Cancel the pending reminder for ``event_id``. Returns False if none was pending."""
        task = self._reminder_tasks.pop(event_id, None)
        if task is None:
            return False
        task.cancel()
        return True

    def _forget_reminder(self, event_id: str, task: asyncio.Task) -> None:
        if self._reminder_tasks.get(event_id) is task:
            del self._reminder_tasks[event_id]

    def schedule_default_reminder(self, event: Event) -> asyncio.Task | None:
        lead = timedelta(minutes=self._settings.reminder_minutes_before)
        return self.schedule_reminder(event, event.start_time - lead)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _worker_loop(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self._deliver(notification)
            finally:
                self._queue.task_done()

    async def _deliver(self, notification: Notification) -> None:
        for handler in list(self._subscribers):
            try:
                result = handler(notification)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Notification handler failed for %s (event %s)",
                    notification.type,
                    notification.event.id,
                )
        self._delivered_total += 1
        logger.info("Calendar notification sent: %s %s", notification.type, notification.message)

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def pending_reminders(self) -> int:
        return len(self._reminder_tasks)
