"""Permission authority: per-calendar capability grants.

A user's capabilities on a calendar are exactly the flags on their
``CalendarPermission`` row. No row means no access; ownership grants
nothing implicitly beyond the row provisioned at creation.
"""

from __future__ import annotations

import logging

from famcal.errors import PermissionDenied
from famcal.models import Calendar, CalendarPermission, PermissionFlags
from famcal.storage.base import CalendarRepository

logger = logging.getLogger(__name__)

FULL_ACCESS = PermissionFlags(can_view=True, can_edit=True, can_share=True)
FAMILY_MEMBER_ACCESS = PermissionFlags(can_view=True, can_edit=True, can_share=False)


def _coerce_flags(flags: PermissionFlags | dict[str, bool] | None) -> PermissionFlags:
    if flags is None:
        return PermissionFlags()
    if isinstance(flags, PermissionFlags):
        return flags
    return PermissionFlags.model_validate(flags)


class PermissionAuthority:
    """Owns ``CalendarPermission`` rows and answers capability checks.

    The mutation helpers here (``add_user``, ``update_permission``,
    ``remove_user``) are a plain store: authorizing who may grant access is
    the caller's concern.
    """

    def __init__(self, repository: CalendarRepository) -> None:
        self._repository = repository

    async def check_permission(
        self,
        calendar_id: str,
        user_id: str,
        *,
        can_view: bool | None = None,
        can_edit: bool | None = None,
        can_share: bool | None = None,
    ) -> bool:
        """Return True iff a row exists and every requested flag is true on it."""
        permission = await self._repository.get_permission(calendar_id, user_id)
        if permission is None:
            return False
        requested = PermissionFlags(can_view=can_view, can_edit=can_edit, can_share=can_share)
        return all(
            getattr(permission, flag) for flag, wanted in requested.requested().items() if wanted
        )

    async def require_permission(
        self,
        calendar_id: str,
        user_id: str,
        *,
        can_view: bool | None = None,
        can_edit: bool | None = None,
        can_share: bool | None = None,
    ) -> None:
        """Raise :class:`PermissionDenied` unless ``check_permission`` passes."""
        allowed = await self.check_permission(
            calendar_id,
            user_id,
            can_view=can_view,
            can_edit=can_edit,
            can_share=can_share,
        )
        if not allowed:
            wanted = [
                name
                for name, flag in (
                    ("view", can_view),
                    ("edit", can_edit),
                    ("share", can_share),
                )
                if flag
            ]
            raise PermissionDenied(
                f"User does not have permission to {'/'.join(wanted) or 'access'} "
                f"calendar {calendar_id}",
                details={"calendar_id": calendar_id, "user_id": user_id, "required": wanted},
            )

    async def provision_defaults(
        self,
        calendar: Calendar,
        owner_id: str,
        family_member_ids: list[str] | None = None,
    ) -> list[CalendarPermission]:
        """Create the initial grants for a freshly created calendar.

        The owner gets full access. When the calendar is family-scoped, every
        other listed family member gets view and edit without share.
        """
        granted = [await self._write(calendar.id, owner_id, FULL_ACCESS)]
        if calendar.is_family_scoped:
            for member_id in family_member_ids or []:
                if member_id == owner_id:
                    continue
                granted.append(await self._write(calendar.id, member_id, FAMILY_MEMBER_ACCESS))
        logger.debug(
            "Provisioned %d permission row(s) for calendar %s", len(granted), calendar.id
        )
        return granted

    async def add_user(
        self,
        calendar_id: str,
        user_id: str,
        flags: PermissionFlags | dict[str, bool] | None = None,
    ) -> CalendarPermission:
        """Grant ``user_id`` the given flags (unset flags default to False)."""
        return await self._write(calendar_id, user_id, _coerce_flags(flags))

    async def update_permission(
        self,
        calendar_id: str,
        user_id: str,
        flags: PermissionFlags | dict[str, bool],
    ) -> CalendarPermission:
        """Apply the set flags onto the existing row (creating it when absent)."""
        existing = await self._repository.get_permission(calendar_id, user_id)
        base = existing or CalendarPermission(calendar_id=calendar_id, user_id=user_id)
        updated = base.model_copy(update=_coerce_flags(flags).requested())
        return await self._repository.upsert_permission(updated)

    async def remove_user(self, calendar_id: str, user_id: str) -> bool:
        removed = await self._repository.delete_permission(calendar_id, user_id)
        if removed:
            logger.info("Removed user %s from calendar %s", user_id, calendar_id)
        return removed

    async def get_permission(self, calendar_id: str, user_id: str) -> CalendarPermission | None:
        return await self._repository.get_permission(calendar_id, user_id)

    async def list_permissions(self, calendar_id: str) -> list[CalendarPermission]:
        return await self._repository.list_permissions(calendar_id)

    async def _write(
        self, calendar_id: str, user_id: str, flags: PermissionFlags
    ) -> CalendarPermission:
        return await self._repository.upsert_permission(
            CalendarPermission(
                calendar_id=calendar_id,
                user_id=user_id,
                can_view=bool(flags.can_view),
                can_edit=bool(flags.can_edit),
                can_share=bool(flags.can_share),
            )
        )
