"""Unit tests for the permission authority.

Covers:
- Default provisioning: owner gets full access, family members view/edit
- No row means no access; requested flags must all be true
- require_permission raises PermissionDenied with the required capability
- update_permission merges only the flags that were set
- remove_user
"""

from __future__ import annotations

import pytest

from famcal.errors import PermissionDenied
from famcal.models import Calendar, PermissionFlags
from famcal.permissions import PermissionAuthority

pytestmark = pytest.mark.unit


def _calendar(*, family_id: str | None = None) -> Calendar:
    return Calendar(id="cal-1", name="Family", owner_id="alice", family_id=family_id)


# ============================================================================
# Provisioning
# ============================================================================


class TestProvisionDefaults:
    async def test_owner_gets_full_access(self, permissions: PermissionAuthority):
        await permissions.provision_defaults(_calendar(), "alice")
        row = await permissions.get_permission("cal-1", "alice")
        assert row is not None
        assert (row.can_view, row.can_edit, row.can_share) == (True, True, True)

    async def test_family_members_get_view_and_edit_without_share(
        self, permissions: PermissionAuthority
    ):
        await permissions.provision_defaults(
            _calendar(family_id="fam-1"), "alice", ["alice", "bob", "dave"]
        )
        rows = await permissions.list_permissions("cal-1")
        assert [row.user_id for row in rows] == ["alice", "bob", "dave"]
        bob = next(row for row in rows if row.user_id == "bob")
        assert (bob.can_view, bob.can_edit, bob.can_share) == (True, True, False)

    async def test_owner_listed_as_member_keeps_share(self, permissions: PermissionAuthority):
        await permissions.provision_defaults(_calendar(family_id="fam-1"), "alice", ["alice"])
        row = await permissions.get_permission("cal-1", "alice")
        assert row is not None and row.can_share

    async def test_personal_calendar_ignores_member_list(self, permissions: PermissionAuthority):
        granted = await permissions.provision_defaults(_calendar(), "alice", ["bob"])
        assert [row.user_id for row in granted] == ["alice"]


# ============================================================================
# Checks
# ============================================================================


class TestCheckPermission:
    async def test_no_row_means_no_access(self, permissions: PermissionAuthority):
        assert await permissions.check_permission("cal-1", "carol", can_view=True) is False

    async def test_all_requested_flags_must_hold(self, permissions: PermissionAuthority):
        await permissions.add_user("cal-1", "bob", {"can_view": True})
        assert await permissions.check_permission("cal-1", "bob", can_view=True)
        assert not await permissions.check_permission("cal-1", "bob", can_view=True, can_edit=True)

    async def test_no_flags_requested_only_needs_a_row(self, permissions: PermissionAuthority):
        await permissions.add_user("cal-1", "bob")
        assert await permissions.check_permission("cal-1", "bob")

    async def test_require_permission_reports_missing_capability(
        self, permissions: PermissionAuthority
    ):
        await permissions.add_user("cal-1", "bob", PermissionFlags(can_view=True))
        with pytest.raises(PermissionDenied) as exc_info:
            await permissions.require_permission("cal-1", "bob", can_edit=True)
        assert exc_info.value.details["required"] == ["edit"]
        assert exc_info.value.status_code == 403


# ============================================================================
# Mutations
# ============================================================================


class TestMutations:
    async def test_update_merges_set_flags_only(self, permissions: PermissionAuthority):
        await permissions.add_user("cal-1", "bob", {"can_view": True, "can_edit": True})
        updated = await permissions.update_permission("cal-1", "bob", {"can_share": True})
        assert (updated.can_view, updated.can_edit, updated.can_share) == (True, True, True)

    async def test_update_creates_missing_row(self, permissions: PermissionAuthority):
        created = await permissions.update_permission("cal-1", "bob", {"can_view": True})
        assert created.can_view and not created.can_edit

    async def test_remove_user(self, permissions: PermissionAuthority):
        await permissions.add_user("cal-1", "bob", {"can_view": True})
        assert await permissions.remove_user("cal-1", "bob") is True
        assert await permissions.remove_user("cal-1", "bob") is False
        assert await permissions.get_permission("cal-1", "bob") is None
