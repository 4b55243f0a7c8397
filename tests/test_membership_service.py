import uuid

import pytest
from conftest import membership_rows

from app.core.exceptions import (
    GroupNotFoundError,
    InvalidRequestError,
    InvalidRoleError,
    MemberNotFoundError,
    MemberNotPendingError,
    PermissionDeniedError,
)
from app.models.group_member import MemberRole, MemberStatus
from app.models.notification import NotificationType
from app.services import membership_store
from app.services.permissions import DenialReason


@pytest.fixture
async def team(db, groups, owner, alice, bob):
    """Owner, alice as admin and bob as member, all active."""
    group = await groups.create_group(
        db, "Team", owner, initial_member_ids=[alice, bob], initial_roles={alice: "admin"}
    )
    return group.id


@pytest.fixture
async def gated(db, groups, owner, alice):
    group = await groups.create_group(
        db, "Gated", owner, requires_approval=True, initial_member_ids=[alice], initial_roles={alice: "admin"}
    )
    return group.id, group.join_code


async def test_add_member_is_idempotent(db, memberships, notifier, team, carol):
    notifier.sent.clear()

    first = await memberships.add_member(db, team, carol)
    first_id = first.id
    second = await memberships.add_member(db, team, carol, role="admin")

    assert second.id == first_id
    assert (await membership_rows(db, team))[carol] == ("member", "active", False)
    assert notifier.recipients(NotificationType.GROUP_INVITE) == {carol}
    assert len(notifier.sent) == 1


async def test_add_member_resolves_insert_conflict_to_existing_row(db, memberships, notifier, team, carol, monkeypatch):
    await memberships.add_member(db, team, carol)
    notifier.sent.clear()

    real_get = membership_store.get_membership
    calls = []

    async def stale_then_real(session, group_id, user_id):
        calls.append(user_id)
        if len(calls) == 1:
            return None
        return await real_get(session, group_id, user_id)

    monkeypatch.setattr(membership_store, "get_membership", stale_then_real)

    member = await memberships.add_member(db, team, carol)

    assert member.user_id == carol
    assert len(calls) == 2
    assert notifier.sent == []
    assert len(await membership_rows(db, team)) == 4


async def test_add_pending_member_is_invited(db, memberships, notifier, team, carol):
    notifier.sent.clear()

    await memberships.add_member(db, team, carol, status=MemberStatus.PENDING)

    [invite] = notifier.of_type(NotificationType.GROUP_INVITE)
    assert invite.title == "Group invitation"
    assert invite.metadata["status"] == "pending"


async def test_add_member_to_unknown_group(db, memberships, carol):
    with pytest.raises(GroupNotFoundError):
        await memberships.add_member(db, uuid.uuid4(), carol)


async def test_add_member_rejects_unknown_role(db, memberships, team, carol):
    with pytest.raises(InvalidRoleError):
        await memberships.add_member(db, team, carol, role="superuser")


async def test_add_member_cannot_create_second_owner(db, memberships, notifier, team, owner, carol):
    notifier.sent.clear()

    with pytest.raises(InvalidRoleError):
        await memberships.add_member(db, team, carol, role="owner")

    rows = await membership_rows(db, team)
    assert [uid for uid, row in rows.items() if row[0] == "owner"] == [owner]
    assert carol not in rows
    assert notifier.sent == []


async def test_add_member_keeps_direct_chat_to_two(db, groups, memberships, alice, bob, carol):
    dm = await groups.get_or_create_direct_chat(db, alice, bob)

    with pytest.raises(InvalidRequestError):
        await memberships.add_member(db, dm, carol)

    assert set(await membership_rows(db, dm)) == {alice, bob}


async def test_owner_row_always_manages(db, memberships, team, owner):
    snapshot = await memberships.require_manager(db, team, owner)
    assert snapshot.role == MemberRole.OWNER
    assert snapshot.can_manage_members is True


async def test_invite_requires_manager(db, memberships, team, alice, bob, carol):
    with pytest.raises(PermissionDeniedError):
        await memberships.invite_member(db, team, carol, bob)
    # admin without the management flag is not a manager either
    with pytest.raises(PermissionDeniedError):
        await memberships.invite_member(db, team, carol, alice)


async def test_invite_into_direct_chat_is_rejected(db, groups, memberships, alice, bob, carol):
    dm = await groups.get_or_create_direct_chat(db, alice, bob)
    await membership_store.update_membership(db, dm, alice, can_manage_members=True, role="admin")
    await db.commit()

    with pytest.raises(InvalidRequestError):
        await memberships.invite_member(db, dm, carol, alice)


async def test_owner_removes_member_and_notifies(db, memberships, notifier, team, owner, bob):
    notifier.sent.clear()

    await memberships.remove_member(db, team, bob, owner)

    assert bob not in await membership_rows(db, team)
    [removed] = notifier.of_type(NotificationType.GROUP_REMOVED)
    assert removed.user_id == bob
    assert removed.metadata["group_id"] == team


async def test_owner_removes_admin(db, memberships, team, owner, alice):
    await memberships.remove_member(db, team, alice, owner)
    assert alice not in await membership_rows(db, team)


async def test_nobody_removes_owner(db, memberships, team, owner, alice):
    await memberships.toggle_admin_permission(db, team, alice, True, owner)

    with pytest.raises(PermissionDeniedError) as exc_info:
        await memberships.remove_member(db, team, owner, alice)
    assert exc_info.value.reason is DenialReason.CANNOT_REMOVE_OWNER
    assert exc_info.value.status_code == 403
    assert exc_info.value.detail["reason"] == "cannot-remove-owner"


async def test_admin_without_rights_removing_owner_is_not_a_member(db, memberships, team, owner, alice):
    with pytest.raises(PermissionDeniedError) as exc_info:
        await memberships.remove_member(db, team, owner, alice)
    assert exc_info.value.reason is DenialReason.NOT_A_MEMBER


@pytest.mark.parametrize("actor_can_manage", [True, False])
@pytest.mark.parametrize("target_can_manage", [True, False])
async def test_admins_cannot_remove_admins(db, memberships, team, owner, alice, carol, actor_can_manage, target_can_manage):
    await memberships.toggle_admin_permission(db, team, alice, actor_can_manage, owner)
    await memberships.add_member(db, team, carol, role="admin", can_manage=target_can_manage)

    with pytest.raises(PermissionDeniedError) as exc_info:
        await memberships.remove_member(db, team, carol, alice)
    assert exc_info.value.reason is DenialReason.ADMINS_CANNOT_REMOVE_ADMINS
    assert carol in await membership_rows(db, team)


async def test_manager_admin_removes_member(db, memberships, team, owner, alice, bob):
    await memberships.toggle_admin_permission(db, team, alice, True, owner)
    await memberships.remove_member(db, team, bob, alice)
    assert bob not in await membership_rows(db, team)


async def test_member_cannot_remove(db, memberships, team, alice, bob):
    with pytest.raises(PermissionDeniedError) as exc_info:
        await memberships.remove_member(db, team, alice, bob)
    assert exc_info.value.reason is DenialReason.NOT_A_MEMBER


async def test_remove_unknown_member(db, memberships, team, owner, carol):
    with pytest.raises(MemberNotFoundError):
        await memberships.remove_member(db, team, carol, owner)


async def test_promote_and_demote(db, memberships, team, owner, alice, bob):
    await memberships.toggle_admin_permission(db, team, alice, True, owner)

    promoted = await memberships.update_member_role(db, team, bob, "admin", owner)
    assert promoted.role == "admin"
    assert promoted.can_manage_members is False

    await memberships.update_member_role(db, team, alice, MemberRole.MEMBER, owner)
    assert (await membership_rows(db, team))[alice] == ("member", "active", False)


async def test_role_change_is_owner_only(db, memberships, team, owner, alice, bob):
    await memberships.toggle_admin_permission(db, team, alice, True, owner)

    with pytest.raises(PermissionDeniedError) as exc_info:
        await memberships.update_member_role(db, team, bob, "admin", alice)
    assert exc_info.value.reason is DenialReason.ONLY_OWNER_CAN_CHANGE_ROLES


async def test_owner_role_cannot_be_assigned_or_changed(db, memberships, team, owner):
    with pytest.raises(InvalidRoleError):
        await memberships.update_member_role(db, team, owner, "owner", owner)
    with pytest.raises(PermissionDeniedError) as exc_info:
        await memberships.update_member_role(db, team, owner, "member", owner)
    assert exc_info.value.reason is DenialReason.CANNOT_CHANGE_OWNER_ROLE


async def test_role_change_of_pending_member_is_not_found(db, groups, memberships, gated, owner, carol):
    group_id, code = gated
    await groups.join_by_code(db, code, carol)

    with pytest.raises(MemberNotFoundError):
        await memberships.update_member_role(db, group_id, carol, "admin", owner)


async def test_last_role_change_wins(db, memberships, team, owner, bob):
    await memberships.update_member_role(db, team, bob, "admin", owner)
    await memberships.update_member_role(db, team, bob, "member", owner)
    await memberships.update_member_role(db, team, bob, "admin", owner)

    assert (await membership_rows(db, team))[bob][0] == "admin"


async def test_toggle_permission_requires_admin_target(db, memberships, team, owner, bob):
    with pytest.raises(PermissionDeniedError) as exc_info:
        await memberships.toggle_admin_permission(db, team, bob, True, owner)
    assert exc_info.value.reason is DenialReason.TARGET_NOT_ADMIN


async def test_toggle_permission_is_owner_only(db, memberships, team, owner, alice, carol):
    await memberships.toggle_admin_permission(db, team, alice, True, owner)
    await memberships.add_member(db, team, carol, role="admin")

    with pytest.raises(PermissionDeniedError) as exc_info:
        await memberships.toggle_admin_permission(db, team, carol, True, alice)
    assert exc_info.value.reason is DenialReason.ONLY_OWNER_CAN_TOGGLE_PERMISSION


async def test_toggle_permission_on_and_off(db, memberships, team, owner, alice):
    member = await memberships.toggle_admin_permission(db, team, alice, True, owner)
    assert member.can_manage_members is True
    member = await memberships.toggle_admin_permission(db, team, alice, False, owner)
    assert member.can_manage_members is False


async def test_approve_pending_member(db, groups, memberships, notifier, gated, owner, carol):
    group_id, code = gated
    await groups.join_by_code(db, code, carol)
    notifier.sent.clear()

    member = await memberships.update_member_status(db, group_id, carol, "active", owner)

    assert member.status == "active"
    approvals = notifier.of_type(NotificationType.GROUP_APPROVAL)
    assert [n.user_id for n in approvals] == [carol]
    assert len(notifier.sent) == 1
    snapshot = await memberships.require_active_member(db, group_id, carol)
    assert snapshot.role == MemberRole.MEMBER


async def test_approving_active_member_is_a_no_op(db, memberships, notifier, gated, owner, alice):
    group_id, _ = gated
    notifier.sent.clear()

    member = await memberships.update_member_status(db, group_id, alice, MemberStatus.ACTIVE, owner)

    assert member.status == "active"
    assert notifier.sent == []


async def test_reject_pending_member_deletes_row(db, groups, memberships, notifier, gated, owner, carol):
    group_id, code = gated
    await groups.join_by_code(db, code, carol)
    notifier.sent.clear()

    result = await memberships.update_member_status(db, group_id, carol, "rejected", owner)

    assert result is None
    assert carol not in await membership_rows(db, group_id)
    assert notifier.sent == []


async def test_rejecting_active_member_is_refused(db, memberships, gated, owner, alice):
    group_id, _ = gated
    with pytest.raises(MemberNotPendingError):
        await memberships.update_member_status(db, group_id, alice, "rejected", owner)


async def test_status_change_requires_manager(db, groups, memberships, gated, alice, carol):
    group_id, code = gated
    await groups.join_by_code(db, code, carol)

    with pytest.raises(PermissionDeniedError):
        await memberships.update_member_status(db, group_id, carol, "active", alice)
    assert (await membership_rows(db, group_id))[carol][1] == "pending"


async def test_status_change_rejects_unknown_status(db, memberships, gated, owner, alice):
    group_id, _ = gated
    with pytest.raises(InvalidRequestError):
        await memberships.update_member_status(db, group_id, alice, "banned", owner)


async def test_member_leaves(db, memberships, notifier, team, bob):
    notifier.sent.clear()

    await memberships.leave_group(db, team, bob)

    assert bob not in await membership_rows(db, team)
    assert notifier.sent == []


async def test_owner_cannot_leave(db, memberships, team, owner):
    with pytest.raises(PermissionDeniedError) as exc_info:
        await memberships.leave_group(db, team, owner)
    assert exc_info.value.reason is DenialReason.OWNER_CANNOT_LEAVE


async def test_leave_when_not_a_member(db, memberships, team, carol):
    with pytest.raises(PermissionDeniedError) as exc_info:
        await memberships.leave_group(db, team, carol)
    assert exc_info.value.reason is DenialReason.NOT_A_MEMBER


async def test_members_are_ordered_by_role(db, groups, memberships, owner, alice, bob, carol):
    group = await groups.create_group(
        db, "Team", owner, initial_member_ids=[carol, bob, alice], initial_roles={alice: "admin"}
    )

    members = await memberships.get_group_members(db, group.id)

    roles = [m.role for m in members]
    assert roles == ["owner", "admin", "member", "member"]
    assert members[0].user_id == owner
    assert members[1].user_id == alice


async def test_pending_listing(db, groups, memberships, gated, carol):
    group_id, code = gated
    await groups.join_by_code(db, code, carol)

    pending = await memberships.get_pending_members(db, group_id)
    active = await memberships.get_group_members(db, group_id)

    assert [m.user_id for m in pending] == [carol]
    assert carol not in {m.user_id for m in active}


async def test_failing_notifier_does_not_break_mutation(db, memberships, team, owner, bob, caplog):
    class ExplodingNotifier:
        def notify(self, *args, **kwargs):
            raise RuntimeError("queue is gone")

    memberships.notifier = ExplodingNotifier()

    with caplog.at_level("ERROR"):
        await memberships.remove_member(db, team, bob, owner)

    assert bob not in await membership_rows(db, team)
    assert "group_removed" in caplog.text
