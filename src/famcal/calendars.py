"""Calendar domain service: lifecycle, default-calendar scope, sharing."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, TypeVar

import pydantic

from famcal.errors import NotFound, ValidationError
from famcal.models import (
    Calendar,
    CalendarCreate,
    CalendarPermission,
    CalendarUpdate,
    PermissionFlags,
)
from famcal.permissions import PermissionAuthority
from famcal.storage.base import CalendarRepository

logger = logging.getLogger(__name__)

_ModelT = TypeVar("_ModelT", bound=pydantic.BaseModel)


def coerce_model(model: type[_ModelT], data: _ModelT | dict[str, Any]) -> _ModelT:
    """Validate ``data`` into ``model``, mapping pydantic failures onto ``ValidationError``."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        errors = [
            {"loc": ".".join(str(part) for part in error["loc"]), "msg": error["msg"]}
            for error in exc.errors()
        ]
        summary = "; ".join(f"{error['loc'] or model.__name__}: {error['msg']}" for error in errors)
        raise ValidationError(
            f"Invalid {model.__name__}: {summary}", details={"errors": errors}
        ) from exc


class CalendarService:
    """Create, read, update and delete calendars.

    Creation provisions default permissions and enforces the single-default
    rule: at most one ``is_default`` calendar per family (for family-scoped
    calendars) or per owner (for personal ones).
    """

    def __init__(self, repository: CalendarRepository, permissions: PermissionAuthority) -> None:
        self._repository = repository
        self._permissions = permissions

    @property
    def permissions(self) -> PermissionAuthority:
        return self._permissions

    async def create_calendar(
        self,
        data: CalendarCreate | dict[str, Any],
        *,
        family_member_ids: list[str] | None = None,
    ) -> Calendar:
        """Create a calendar and provision its initial permissions.

        ``family_member_ids`` overrides the repository's family membership
        lookup; when omitted, members are read from the repository.
        """
        payload = coerce_model(CalendarCreate, data)
        if payload.owner_id is None and payload.family_id is None:
            raise ValidationError("A calendar needs an owner_id, a family_id, or both")

        calendar = Calendar(**payload.model_dump())
        stored = await self._repository.insert_calendar(calendar)
        if stored.is_default:
            await self._clear_other_defaults(stored)

        if stored.owner_id is not None:
            if stored.family_id is not None and family_member_ids is None:
                family_member_ids = await self._repository.get_family_member_ids(stored.family_id)
            await self._permissions.provision_defaults(stored, stored.owner_id, family_member_ids)
        elif stored.family_id is not None:
            members = family_member_ids
            if members is None:
                members = await self._repository.get_family_member_ids(stored.family_id)
            for member_id in members:
                await self._permissions.add_user(
                    stored.id, member_id, {"can_view": True, "can_edit": True}
                )

        logger.info(
            "Calendar created: id=%s type=%s family=%s owner=%s",
            stored.id,
            stored.type,
            stored.family_id,
            stored.owner_id,
        )
        return stored

    async def get_calendar(self, calendar_id: str) -> Calendar | None:
        return await self._repository.get_calendar(calendar_id)

    async def require_calendar(self, calendar_id: str) -> Calendar:
        calendar = await self._repository.get_calendar(calendar_id)
        if calendar is None:
            raise NotFound.calendar(calendar_id)
        return calendar

    async def get_user_calendars(self, user_id: str) -> list[Calendar]:
        """Calendars the user can view (owned, shared, and family)."""
        return await self._repository.list_viewable_calendars(user_id)

    async def get_family_calendars(self, family_id: str) -> list[Calendar]:
        return await self._repository.list_calendars(family_id=family_id)

    async def update_calendar(
        self,
        calendar_id: str,
        data: CalendarUpdate | dict[str, Any],
        acting_user_id: str,
    ) -> Calendar:
        payload = coerce_model(CalendarUpdate, data)
        calendar = await self.require_calendar(calendar_id)
        await self._permissions.require_permission(calendar_id, acting_user_id, can_edit=True)

        changes = payload.model_dump(exclude_unset=True)
        updated = calendar.model_copy(update={**changes, "updated_at": datetime.now(UTC)})
        stored = await self._repository.update_calendar(updated)
        if stored.is_default and not calendar.is_default:
            await self._clear_other_defaults(stored)
        return stored

    async def delete_calendar(self, calendar_id: str, acting_user_id: str) -> None:
        """Delete a calendar with its permissions and events. Requires ``can_edit``."""
        await self.require_calendar(calendar_id)
        await self._permissions.require_permission(calendar_id, acting_user_id, can_edit=True)
        await self._repository.delete_calendar(calendar_id)
        logger.info("Calendar deleted: id=%s by=%s", calendar_id, acting_user_id)

    # ------------------------------------------------------------------
    # Sharing
    # ------------------------------------------------------------------

    async def add_user_to_calendar(
        self,
        calendar_id: str,
        user_id: str,
        flags: PermissionFlags | dict[str, bool] | None = None,
    ) -> CalendarPermission:
        await self.require_calendar(calendar_id)
        return await self._permissions.add_user(calendar_id, user_id, flags)

    async def update_permission(
        self,
        calendar_id: str,
        user_id: str,
        flags: PermissionFlags | dict[str, bool],
    ) -> CalendarPermission:
        await self.require_calendar(calendar_id)
        return await self._permissions.update_permission(calendar_id, user_id, flags)

    async def remove_user_from_calendar(self, calendar_id: str, user_id: str) -> bool:
        return await self._permissions.remove_user(calendar_id, user_id)

    async def get_permission(self, calendar_id: str, user_id: str) -> CalendarPermission | None:
        return await self._permissions.get_permission(calendar_id, user_id)

    async def check_permission(
        self,
        calendar_id: str,
        user_id: str,
        flags: PermissionFlags | dict[str, bool],
    ) -> bool:
        requested = coerce_model(PermissionFlags, flags)
        return await self._permissions.check_permission(
            calendar_id,
            user_id,
            can_view=requested.can_view,
            can_edit=requested.can_edit,
            can_share=requested.can_share,
        )

    async def _clear_other_defaults(self, calendar: Calendar) -> None:
        await self._repository.clear_default(
            owner_id=calendar.owner_id,
            family_id=calendar.family_id,
            except_calendar_id=calendar.id,
        )
