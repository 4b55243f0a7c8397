"""Membership lifecycle for a single ``(group, user)`` pair.

    (absent) --add--> active | pending
    pending  --approve--> active        group_approval notification
    pending  --reject--> (deleted)
    active   --remove / leave--> (deleted)
    active(member) <--promote / demote--> active(admin)

Each transition is one commit. Notifications are enqueued only after the
commit succeeded and never affect the result of the operation.
"""

import logging
import uuid
from typing import Awaitable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    InvalidRequestError,
    InvalidRoleError,
    MemberNotFoundError,
    MemberNotPendingError,
    PermissionDeniedError,
    PersistenceError,
)
from app.models.group_member import GroupMember, MemberRole, MemberStatus
from app.models.notification import NotificationType
from app.schemas.groups import GroupSnapshot, MembershipSnapshot
from app.services import membership_store, permissions
from app.services.gateway_client import UserDirectory
from app.services.group_service import get_group
from app.services.notifications import NotificationSink
from app.services.permissions import Decision, DenialReason

logger = logging.getLogger(__name__)

STATUS_REJECTED = "rejected"


def _ensure(decision: Decision) -> None:
    if not decision:
        raise PermissionDeniedError(decision.reason)


def _parse_role(role: MemberRole | str) -> MemberRole:
    try:
        return MemberRole(role)
    except ValueError:
        raise InvalidRoleError(str(role))


async def _apply(db: AsyncSession, statement: Awaitable[int]) -> int:
    try:
        rowcount = await statement
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError() from exc
    return rowcount


class MembershipService:
    def __init__(self, notifier: NotificationSink, directory: UserDirectory):
        self.notifier = notifier
        self.directory = directory

    async def _load_group(self, db: AsyncSession, group_id: uuid.UUID) -> GroupSnapshot:
        return GroupSnapshot.model_validate(await get_group(db, group_id))

    async def stage_member(
        self,
        db: AsyncSession,
        group_id: uuid.UUID,
        user_id: uuid.UUID,
        role: MemberRole = MemberRole.MEMBER,
        status: MemberStatus = MemberStatus.ACTIVE,
        can_manage: bool = False,
    ) -> tuple[GroupMember, bool]:
        """Flush a new membership row inside the caller's transaction.

        Returns the existing row and ``False`` when the pair is already present.
        Owner rows are always active and always carry ``can_manage_members``.
        """
        existing = await membership_store.get_membership(db, group_id, user_id)
        if existing is not None:
            return existing, False

        if role == MemberRole.OWNER:
            status = MemberStatus.ACTIVE
        username = await self.directory.get_display_name(user_id)
        member = membership_store.stage_membership(
            db,
            group_id=group_id,
            user_id=user_id,
            username=username,
            role=role,
            status=status,
            can_manage_members=permissions.apply_role(role, can_manage),
        )
        await db.flush()
        return member, True

    async def insert_member(
        self,
        db: AsyncSession,
        group_id: uuid.UUID,
        user_id: uuid.UUID,
        role: MemberRole = MemberRole.MEMBER,
        status: MemberStatus = MemberStatus.ACTIVE,
        can_manage: bool = False,
    ) -> tuple[GroupMember, bool]:
        """Insert and commit; a uniqueness conflict resolves to the existing row."""
        try:
            member, created = await self.stage_member(db, group_id, user_id, role, status, can_manage)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            member = await membership_store.get_membership(db, group_id, user_id)
            if member is None:
                raise PersistenceError("Could not add member")
            logger.info(f"Concurrent add of user {user_id} to group {group_id} resolved to existing row")
            return member, False
        except SQLAlchemyError as exc:
            await db.rollback()
            raise PersistenceError() from exc

        if created:
            logger.info(f"Added user {user_id} to group {group_id} as {member.role} ({member.status})")
        return member, created

    async def add_member(
        self,
        db: AsyncSession,
        group_id: uuid.UUID,
        user_id: uuid.UUID,
        role: MemberRole | str = MemberRole.MEMBER,
        status: MemberStatus | str = MemberStatus.ACTIVE,
        can_manage: bool = False,
    ) -> GroupMember:
        """Add ``user_id`` to an existing team group.

        The owner row is only ever written by group creation, and direct chats
        keep exactly their two participants.
        """
        role = _parse_role(role)
        if role == MemberRole.OWNER:
            raise InvalidRoleError(role.value)
        group = await self._load_group(db, group_id)
        if group.is_direct_message:
            raise InvalidRequestError("Direct chats cannot take additional members")
        member, created = await self.insert_member(
            db, group_id, user_id, role, MemberStatus(status), can_manage
        )
        if created:
            self.notify_added(group, member)
        return member

    def send_notification(
        self,
        user_id: uuid.UUID,
        type: NotificationType,
        title: str,
        message: str,
        metadata: dict | None = None,
    ) -> None:
        try:
            self.notifier.notify(user_id, type, title, message, metadata)
        except Exception:
            logger.exception(f"Could not enqueue {type.value} notification for {user_id}")

    def notify_added(self, group: GroupSnapshot, member: GroupMember) -> None:
        if member.role == MemberRole.OWNER or group.is_direct_message:
            return
        if member.status == MemberStatus.PENDING:
            title = "Group invitation"
            message = f"You have been invited to join \"{group.name}\""
        else:
            title = "Added to group"
            message = f"You have been added to \"{group.name}\""
        self.send_notification(
            member.user_id,
            NotificationType.GROUP_INVITE,
            title,
            message,
            {"group_id": group.id, "group_name": group.name, "status": member.status},
        )

    async def invite_member(
        self,
        db: AsyncSession,
        group_id: uuid.UUID,
        user_id: uuid.UUID,
        requester_id: uuid.UUID,
    ) -> GroupMember:
        await self._load_group(db, group_id)
        actor = await membership_store.get_snapshot(db, group_id, requester_id)
        if not permissions.can_manage_members(actor):
            raise PermissionDeniedError(DenialReason.NOT_A_MEMBER)
        return await self.add_member(db, group_id, user_id)

    async def remove_member(
        self,
        db: AsyncSession,
        group_id: uuid.UUID,
        target_user_id: uuid.UUID,
        requester_id: uuid.UUID,
    ) -> None:
        group = await self._load_group(db, group_id)
        actor = await membership_store.get_snapshot(db, group_id, requester_id)
        target = await membership_store.get_snapshot(db, group_id, target_user_id)
        if target is None:
            if not permissions.can_manage_members(actor):
                raise PermissionDeniedError(DenialReason.NOT_A_MEMBER)
            raise MemberNotFoundError()
        _ensure(permissions.can_remove(actor, target))

        deleted = await _apply(db, membership_store.delete_membership(db, group_id, target_user_id))
        if not deleted:
            raise MemberNotFoundError()
        logger.info(f"User {requester_id} removed user {target_user_id} from group {group_id}")

        self.send_notification(
            target_user_id,
            NotificationType.GROUP_REMOVED,
            "Removed from group",
            f"You have been removed from \"{group.name}\"",
            {"group_id": group.id, "group_name": group.name},
        )

    async def leave_group(self, db: AsyncSession, group_id: uuid.UUID, user_id: uuid.UUID) -> None:
        await self._load_group(db, group_id)
        actor = await membership_store.get_snapshot(db, group_id, user_id)
        _ensure(permissions.can_leave(actor))

        deleted = await _apply(db, membership_store.delete_membership(db, group_id, user_id))
        if not deleted:
            raise MemberNotFoundError()
        logger.info(f"User {user_id} left group {group_id}")

    async def _load_pair(
        self,
        db: AsyncSession,
        group_id: uuid.UUID,
        target_user_id: uuid.UUID,
        requester_id: uuid.UUID,
    ) -> tuple[MembershipSnapshot | None, MembershipSnapshot | None]:
        await self._load_group(db, group_id)
        actor = await membership_store.get_snapshot(db, group_id, requester_id)
        target = await membership_store.get_snapshot(db, group_id, target_user_id)
        if target is not None and not target.is_active:
            target = None
        return actor, target

    async def update_member_role(
        self,
        db: AsyncSession,
        group_id: uuid.UUID,
        target_user_id: uuid.UUID,
        new_role: MemberRole | str,
        requester_id: uuid.UUID,
    ) -> GroupMember:
        role = _parse_role(new_role)
        if role == MemberRole.OWNER:
            raise InvalidRoleError(role.value)

        actor, target = await self._load_pair(db, group_id, target_user_id, requester_id)
        if target is None:
            if not permissions.can_change_role(actor):
                raise PermissionDeniedError(DenialReason.ONLY_OWNER_CAN_CHANGE_ROLES)
            raise MemberNotFoundError()
        _ensure(permissions.can_change_role_of(actor, target))

        values = {"role": role.value}
        if role == MemberRole.MEMBER:
            values["can_manage_members"] = False
        updated = await _apply(db, membership_store.update_membership(db, group_id, target_user_id, **values))
        if not updated:
            raise MemberNotFoundError()
        logger.info(f"User {requester_id} set role of {target_user_id} in group {group_id} to {role.value}")
        return await membership_store.get_membership(db, group_id, target_user_id)

    async def toggle_admin_permission(
        self,
        db: AsyncSession,
        group_id: uuid.UUID,
        admin_user_id: uuid.UUID,
        can_manage: bool,
        owner_id: uuid.UUID,
    ) -> GroupMember:
        actor, target = await self._load_pair(db, group_id, admin_user_id, owner_id)
        if target is None:
            if not permissions.can_change_role(actor):
                raise PermissionDeniedError(DenialReason.ONLY_OWNER_CAN_TOGGLE_PERMISSION)
            raise MemberNotFoundError()
        _ensure(permissions.can_toggle_admin_permission(actor, target))

        updated = await _apply(
            db,
            membership_store.update_membership(db, group_id, admin_user_id, can_manage_members=bool(can_manage)),
        )
        if not updated:
            raise MemberNotFoundError()
        logger.info(f"User {owner_id} set can_manage_members={can_manage} for {admin_user_id} in group {group_id}")
        return await membership_store.get_membership(db, group_id, admin_user_id)

    async def update_member_status(
        self,
        db: AsyncSession,
        group_id: uuid.UUID,
        user_id: uuid.UUID,
        status: MemberStatus | str,
        requester_id: uuid.UUID,
    ) -> GroupMember | None:
        """Approve (``active``) or reject (``rejected``) a pending join request.

        Rejection deletes the row and returns ``None``.
        """
        status = getattr(status, "value", status)
        if status not in (MemberStatus.ACTIVE.value, STATUS_REJECTED):
            raise InvalidRequestError(f"Unsupported status \"{status}\"")

        group = await self._load_group(db, group_id)
        actor = await membership_store.get_snapshot(db, group_id, requester_id)
        if not permissions.can_manage_members(actor):
            raise PermissionDeniedError(DenialReason.NOT_A_MEMBER)

        member = await membership_store.get_membership(db, group_id, user_id)
        if member is None:
            raise MemberNotFoundError()
        if member.status == MemberStatus.ACTIVE:
            if status == MemberStatus.ACTIVE.value:
                return member
            raise MemberNotPendingError()

        if status == STATUS_REJECTED:
            deleted = await _apply(db, membership_store.delete_membership(db, group_id, user_id))
            if not deleted:
                raise MemberNotFoundError()
            logger.info(f"User {requester_id} rejected join request of {user_id} for group {group_id}")
            return None

        updated = await _apply(
            db,
            membership_store.update_membership(db, group_id, user_id, status=MemberStatus.ACTIVE.value),
        )
        if not updated:
            raise MemberNotFoundError()
        logger.info(f"User {requester_id} approved join request of {user_id} for group {group_id}")

        self.send_notification(
            user_id,
            NotificationType.GROUP_APPROVAL,
            "Join request approved",
            f"Your request to join \"{group.name}\" has been approved",
            {"group_id": group.id, "group_name": group.name},
        )
        return await membership_store.get_membership(db, group_id, user_id)

    async def require_active_member(
        self, db: AsyncSession, group_id: uuid.UUID, user_id: uuid.UUID
    ) -> MembershipSnapshot:
        await self._load_group(db, group_id)
        snapshot = await membership_store.get_snapshot(db, group_id, user_id)
        if snapshot is None or not snapshot.is_active:
            raise PermissionDeniedError(DenialReason.NOT_A_MEMBER)
        return snapshot

    async def require_manager(self, db: AsyncSession, group_id: uuid.UUID, user_id: uuid.UUID) -> MembershipSnapshot:
        snapshot = await self.require_active_member(db, group_id, user_id)
        if not permissions.can_manage_members(snapshot):
            raise PermissionDeniedError(DenialReason.NOT_A_MEMBER)
        return snapshot

    async def get_pending_members(self, db: AsyncSession, group_id: uuid.UUID) -> list[GroupMember]:
        return await membership_store.list_memberships(db, group_id, MemberStatus.PENDING)

    async def get_group_members(self, db: AsyncSession, group_id: uuid.UUID) -> list[GroupMember]:
        return await membership_store.list_memberships(db, group_id, MemberStatus.ACTIVE)
