"""PostgreSQL repository backed by an asyncpg pool.

Tables are created by the ``core`` Alembic chain (see ``alembic/versions``).
``external_config`` and ``recurrence`` are stored as JSONB; everything else
maps column-for-column onto the pydantic models.

Note: decrypted provider tokens never reach this layer. ``external_config``
holds Fernet ciphertext only, and nothing here logs it.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from famcal.models import (
    Calendar,
    CalendarPermission,
    CalendarType,
    Event,
    ExternalConfig,
    RecurrenceRule,
)
from famcal.storage.base import CalendarRepository

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_CALENDAR_COLUMNS = (
    "id, name, description, color, type, family_id, owner_id, is_default, "
    "timezone, external_config, created_at, updated_at"
)
_EVENT_COLUMNS = (
    "id, calendar_id, family_id, title, description, location, start_time, end_time, "
    "status, created_by, user_id, external_id, recurrence, created_at, updated_at"
)


def _decode_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_calendar(row: Any) -> Calendar:
    return Calendar(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        color=row["color"],
        type=CalendarType(row["type"]),
        family_id=row["family_id"],
        owner_id=row["owner_id"],
        is_default=row["is_default"],
        timezone=row["timezone"],
        external_config=ExternalConfig.model_validate(_decode_json(row["external_config"]) or {}),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_event(row: Any) -> Event:
    recurrence_raw = _decode_json(row["recurrence"])
    return Event(
        id=row["id"],
        calendar_id=row["calendar_id"],
        family_id=row["family_id"],
        title=row["title"],
        description=row["description"],
        location=row["location"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        status=row["status"],
        created_by=row["created_by"],
        user_id=row["user_id"],
        external_id=row["external_id"],
        recurrence=RecurrenceRule.model_validate(recurrence_raw) if recurrence_raw else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_permission(row: Any) -> CalendarPermission:
    return CalendarPermission(
        calendar_id=row["calendar_id"],
        user_id=row["user_id"],
        can_view=row["can_view"],
        can_edit=row["can_edit"],
        can_share=row["can_share"],
    )


def _external_config_json(calendar: Calendar) -> str:
    return json.dumps(calendar.external_config.model_dump(mode="json", exclude_none=True))


def _recurrence_json(event: Event) -> str | None:
    if event.recurrence is None:
        return None
    return json.dumps(event.recurrence.model_dump(mode="json"))


def _affected(status: str) -> int:
    """Parse the row count out of an asyncpg command status (``'DELETE 3'``)."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class PostgresRepository(CalendarRepository):
    """asyncpg-backed repository.

    Parameters
    ----------
    pool:
        An ``asyncpg.Pool`` or a :class:`~famcal.db.Database` (which proxies
        ``fetch``/``fetchrow``/``fetchval``/``execute``).
    """

    def __init__(self, pool: asyncpg.Pool | Any) -> None:
        self._pool = pool

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    async def insert_calendar(self, calendar: Calendar) -> Calendar:
        await self._pool.execute(
            f"""
            INSERT INTO calendars ({_CALENDAR_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb, $11, $12)
            """,
            calendar.id,
            calendar.name,
            calendar.description,
            calendar.color,
            calendar.type.value,
            calendar.family_id,
            calendar.owner_id,
            calendar.is_default,
            calendar.timezone,
            _external_config_json(calendar),
            calendar.created_at,
            calendar.updated_at,
        )
        logger.debug("Calendar inserted: id=%s type=%s", calendar.id, calendar.type)
        return calendar

    async def get_calendar(self, calendar_id: str) -> Calendar | None:
        row = await self._pool.fetchrow(
            f"SELECT {_CALENDAR_COLUMNS} FROM calendars WHERE id = $1",
            calendar_id,
        )
        return _row_to_calendar(row) if row is not None else None

    async def update_calendar(self, calendar: Calendar) -> Calendar:
        status = await self._pool.execute(
            """
            UPDATE calendars SET
                name            = $2,
                description     = $3,
                color           = $4,
                type            = $5,
                family_id       = $6,
                owner_id        = $7,
                is_default      = $8,
                timezone        = $9,
                external_config = $10::jsonb,
                updated_at      = $11
            WHERE id = $1
            """,
            calendar.id,
            calendar.name,
            calendar.description,
            calendar.color,
            calendar.type.value,
            calendar.family_id,
            calendar.owner_id,
            calendar.is_default,
            calendar.timezone,
            _external_config_json(calendar),
            calendar.updated_at,
        )
        if _affected(status) == 0:
            raise KeyError(calendar.id)
        return calendar

    async def delete_calendar(self, calendar_id: str) -> bool:
        # calendar_permissions and events cascade via foreign keys.
        status = await self._pool.execute("DELETE FROM calendars WHERE id = $1", calendar_id)
        return _affected(status) > 0

    async def list_calendars(
        self,
        *,
        owner_id: str | None = None,
        family_id: str | None = None,
        calendar_type: CalendarType | None = None,
    ) -> list[Calendar]:
        clauses: list[str] = []
        args: list[Any] = []
        for column, value in (
            ("owner_id", owner_id),
            ("family_id", family_id),
            ("type", calendar_type.value if calendar_type is not None else None),
        ):
            if value is not None:
                args.append(value)
                clauses.append(f"{column} = ${len(args)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._pool.fetch(
            f"SELECT {_CALENDAR_COLUMNS} FROM calendars {where} ORDER BY created_at, id",
            *args,
        )
        return [_row_to_calendar(row) for row in rows]

    async def list_viewable_calendars(self, user_id: str) -> list[Calendar]:
        rows = await self._pool.fetch(
            f"""
            SELECT {", ".join("c." + col.strip() for col in _CALENDAR_COLUMNS.split(","))}
            FROM calendars c
            JOIN calendar_permissions p ON p.calendar_id = c.id
            WHERE p.user_id = $1 AND p.can_view
            ORDER BY c.created_at, c.id
            """,
            user_id,
        )
        return [_row_to_calendar(row) for row in rows]

    async def clear_default(
        self,
        *,
        owner_id: str | None,
        family_id: str | None,
        except_calendar_id: str,
    ) -> None:
        if family_id is not None:
            await self._pool.execute(
                """
                UPDATE calendars SET is_default = false, updated_at = now()
                WHERE family_id = $1 AND id <> $2 AND is_default
                """,
                family_id,
                except_calendar_id,
            )
            return
        await self._pool.execute(
            """
            UPDATE calendars SET is_default = false, updated_at = now()
            WHERE family_id IS NULL AND owner_id IS NOT DISTINCT FROM $1
              AND id <> $2 AND is_default
            """,
            owner_id,
            except_calendar_id,
        )

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def upsert_permission(self, permission: CalendarPermission) -> CalendarPermission:
        await self._pool.execute(
            """
            INSERT INTO calendar_permissions (calendar_id, user_id, can_view, can_edit, can_share)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (calendar_id, user_id) DO UPDATE SET
                can_view   = EXCLUDED.can_view,
                can_edit   = EXCLUDED.can_edit,
                can_share  = EXCLUDED.can_share,
                updated_at = now()
            """,
            permission.calendar_id,
            permission.user_id,
            permission.can_view,
            permission.can_edit,
            permission.can_share,
        )
        return permission

    async def get_permission(self, calendar_id: str, user_id: str) -> CalendarPermission | None:
        row = await self._pool.fetchrow(
            """
            SELECT calendar_id, user_id, can_view, can_edit, can_share
            FROM calendar_permissions
            WHERE calendar_id = $1 AND user_id = $2
            """,
            calendar_id,
            user_id,
        )
        return _row_to_permission(row) if row is not None else None

    async def list_permissions(self, calendar_id: str) -> list[CalendarPermission]:
        rows = await self._pool.fetch(
            """
            SELECT calendar_id, user_id, can_view, can_edit, can_share
            FROM calendar_permissions
            WHERE calendar_id = $1
            ORDER BY user_id
            """,
            calendar_id,
        )
        return [_row_to_permission(row) for row in rows]

    async def delete_permission(self, calendar_id: str, user_id: str) -> bool:
        status = await self._pool.execute(
            "DELETE FROM calendar_permissions WHERE calendar_id = $1 AND user_id = $2",
            calendar_id,
            user_id,
        )
        return _affected(status) > 0

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def insert_event(self, event: Event) -> Event:
        await self._pool.execute(
            f"""
            INSERT INTO events ({_EVENT_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::jsonb, $14, $15)
            """,
            *self._event_args(event),
        )
        return event

    async def get_event(self, event_id: str) -> Event | None:
        row = await self._pool.fetchrow(
            f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = $1",
            event_id,
        )
        return _row_to_event(row) if row is not None else None

    async def get_event_by_external_id(self, calendar_id: str, external_id: str) -> Event | None:
        row = await self._pool.fetchrow(
            f"SELECT {_EVENT_COLUMNS} FROM events WHERE calendar_id = $1 AND external_id = $2",
            calendar_id,
            external_id,
        )
        return _row_to_event(row) if row is not None else None

    async def list_events(
        self,
        calendar_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Event]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_EVENT_COLUMNS} FROM events
            WHERE calendar_id = $1
              AND (
                recurrence IS NOT NULL
                OR (($2::timestamptz IS NULL OR end_time >= $2)
                    AND ($3::timestamptz IS NULL OR start_time <= $3))
              )
            ORDER BY start_time, id
            """,
            calendar_id,
            start,
            end,
        )
        return [_row_to_event(row) for row in rows]

    async def update_event(self, event: Event) -> Event:
        status = await self._pool.execute(
            """
            UPDATE events SET
                calendar_id = $2,
                family_id   = $3,
                title       = $4,
                description = $5,
                location    = $6,
                start_time  = $7,
                end_time    = $8,
                status      = $9,
                created_by  = $10,
                user_id     = $11,
                external_id = $12,
                recurrence  = $13::jsonb,
                created_at  = $14,
                updated_at  = $15
            WHERE id = $1
            """,
            *self._event_args(event),
        )
        if _affected(status) == 0:
            raise KeyError(event.id)
        return event

    async def delete_event(self, event_id: str) -> bool:
        status = await self._pool.execute("DELETE FROM events WHERE id = $1", event_id)
        return _affected(status) > 0

    async def delete_calendar_events(self, calendar_id: str) -> int:
        status = await self._pool.execute("DELETE FROM events WHERE calendar_id = $1", calendar_id)
        return _affected(status)

    async def count_events(self, calendar_id: str | None = None) -> int:
        if calendar_id is None:
            return int(await self._pool.fetchval("SELECT count(*) FROM events"))
        return int(
            await self._pool.fetchval(
                "SELECT count(*) FROM events WHERE calendar_id = $1", calendar_id
            )
        )

    async def count_upcoming_events(self, now: datetime) -> int:
        return int(
            await self._pool.fetchval("SELECT count(*) FROM events WHERE start_time >= $1", now)
        )

    async def count_calendars(self) -> int:
        return int(await self._pool.fetchval("SELECT count(*) FROM calendars"))

    # ------------------------------------------------------------------
    # Families
    # ------------------------------------------------------------------

    async def add_family_member(self, family_id: str, user_id: str) -> None:
        await self._pool.execute(
            """
            INSERT INTO family_members (family_id, user_id)
            VALUES ($1, $2)
            ON CONFLICT (family_id, user_id) DO NOTHING
            """,
            family_id,
            user_id,
        )

    async def get_family_member_ids(self, family_id: str) -> list[str]:
        rows = await self._pool.fetch(
            "SELECT user_id FROM family_members WHERE family_id = $1 ORDER BY joined_at, user_id",
            family_id,
        )
        return [row["user_id"] for row in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _event_args(event: Event) -> tuple[Any, ...]:
        return (
            event.id,
            event.calendar_id,
            event.family_id,
            event.title,
            event.description,
            event.location,
            event.start_time,
            event.end_time,
            event.status.value,
            event.created_by,
            event.user_id,
            event.external_id,
            _recurrence_json(event),
            event.created_at,
            event.updated_at,
        )
