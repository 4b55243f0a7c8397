"""Authorization decisions for group membership operations.

Every function here is pure: callers load fresh ``MembershipSnapshot`` values
right before deciding and pass ``None`` for a user with no row. A ``pending``
snapshot carries no capabilities and is treated the same as ``None``.
"""

from dataclasses import dataclass
from enum import Enum

from app.models.group_member import MemberRole
from app.schemas.groups import MembershipSnapshot


class DenialReason(str, Enum):
    NOT_A_MEMBER = "not-a-member"
    CANNOT_REMOVE_OWNER = "cannot-remove-owner"
    ADMINS_CANNOT_REMOVE_ADMINS = "admins-cannot-remove-admins"
    ONLY_OWNER_CAN_CHANGE_ROLES = "only-owner-can-change-roles"
    CANNOT_CHANGE_OWNER_ROLE = "cannot-change-owner-role"
    ONLY_OWNER_CAN_TOGGLE_PERMISSION = "only-owner-can-toggle-permission"
    TARGET_NOT_ADMIN = "target-not-admin"
    ONLY_OWNER_CAN_REGENERATE_CODE = "only-owner-can-regenerate-code"
    OWNER_CANNOT_LEAVE = "owner-cannot-leave"


@dataclass(frozen=True)
class Decision:
    reason: DenialReason | None = None

    @property
    def allowed(self) -> bool:
        return self.reason is None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision()


def deny(reason: DenialReason) -> Decision:
    return Decision(reason)


def _active(snapshot: MembershipSnapshot | None) -> MembershipSnapshot | None:
    if snapshot is None or not snapshot.is_active:
        return None
    return snapshot


def _is_owner(snapshot: MembershipSnapshot | None) -> bool:
    active = _active(snapshot)
    return active is not None and active.role == MemberRole.OWNER


def can_manage_members(actor: MembershipSnapshot | None) -> bool:
    actor = _active(actor)
    if actor is None:
        return False
    if actor.role == MemberRole.OWNER:
        return True
    return actor.role == MemberRole.ADMIN and actor.can_manage_members


def can_remove(actor: MembershipSnapshot | None, target: MembershipSnapshot) -> Decision:
    actor = _active(actor)
    if actor is None or actor.role == MemberRole.MEMBER:
        return deny(DenialReason.NOT_A_MEMBER)
    # holds whether or not the acting admin carries can_manage_members
    if actor.role == MemberRole.ADMIN and target.role == MemberRole.ADMIN:
        return deny(DenialReason.ADMINS_CANNOT_REMOVE_ADMINS)
    if not can_manage_members(actor):
        return deny(DenialReason.NOT_A_MEMBER)
    if target.role == MemberRole.OWNER:
        return deny(DenialReason.CANNOT_REMOVE_OWNER)
    return ALLOW


def can_change_role(actor: MembershipSnapshot | None) -> bool:
    return _is_owner(actor)


def can_change_role_of(actor: MembershipSnapshot | None, target: MembershipSnapshot) -> Decision:
    if not can_change_role(actor):
        return deny(DenialReason.ONLY_OWNER_CAN_CHANGE_ROLES)
    if target.role == MemberRole.OWNER:
        return deny(DenialReason.CANNOT_CHANGE_OWNER_ROLE)
    return ALLOW


def can_toggle_admin_permission(actor: MembershipSnapshot | None, target: MembershipSnapshot) -> Decision:
    if not _is_owner(actor):
        return deny(DenialReason.ONLY_OWNER_CAN_TOGGLE_PERMISSION)
    if target.role != MemberRole.ADMIN:
        return deny(DenialReason.TARGET_NOT_ADMIN)
    return ALLOW


def can_regenerate_join_code(actor: MembershipSnapshot | None) -> Decision:
    if not _is_owner(actor):
        return deny(DenialReason.ONLY_OWNER_CAN_REGENERATE_CODE)
    return ALLOW


def can_leave(actor: MembershipSnapshot | None) -> Decision:
    actor = _active(actor)
    if actor is None:
        return deny(DenialReason.NOT_A_MEMBER)
    if actor.role == MemberRole.OWNER:
        return deny(DenialReason.OWNER_CANNOT_LEAVE)
    return ALLOW


def apply_role(role: MemberRole, can_manage: bool) -> bool:
    """Return the ``can_manage_members`` value a row with ``role`` must carry."""
    if role == MemberRole.OWNER:
        return True
    if role == MemberRole.MEMBER:
        return False
    return can_manage
