import logging
import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AlreadyMemberError,
    AlreadyPendingError,
    GroupNotFoundError,
    InvalidJoinCodeError,
    InvalidRequestError,
    InvalidRoleError,
    PermissionDeniedError,
    PersistenceError,
)
from app.models.group import Group
from app.models.group_member import GroupMember, MemberRole, MemberStatus
from app.models.notification import NotificationType
from app.schemas.groups import GroupSnapshot
from app.services import membership_store, permissions

if TYPE_CHECKING:
    from app.services.membership_service import MembershipService

logger = logging.getLogger(__name__)

JOIN_CODE_ALPHABET = string.ascii_uppercase + string.digits
_MAX_JOIN_CODE_ATTEMPTS = 10


@dataclass
class JoinResult:
    status: MemberStatus
    group: Group

    @property
    def message(self) -> str:
        if self.status == MemberStatus.PENDING:
            return "Join request sent. Waiting for approval."
        return "Joined group successfully"


def generate_join_code(length: int | None = None) -> str:
    length = length or settings.JOIN_CODE_LENGTH
    return "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(length))


def normalize_join_code(code: str) -> str:
    return code.strip().upper()


def direct_chat_name(user_a: uuid.UUID, user_b: uuid.UUID) -> str:
    low, high = sorted([str(user_a), str(user_b)])
    return f"dm-{low}-{high}"


async def get_group(db: AsyncSession, group_id: uuid.UUID) -> Group:
    result = await db.execute(select(Group).where(Group.id == group_id))
    group = result.scalar_one_or_none()
    if group is None:
        raise GroupNotFoundError()
    return group


async def list_groups_for_user(db: AsyncSession, user_id: uuid.UUID) -> list[tuple[Group, str]]:
    """Active, non-DM groups of the user together with the user's role."""
    result = await db.execute(
        select(Group, GroupMember.role)
        .join(GroupMember, GroupMember.group_id == Group.id)
        .where(
            GroupMember.user_id == user_id,
            GroupMember.status == MemberStatus.ACTIVE.value,
            Group.is_direct_message.is_(False),
        )
        .order_by(Group.created_at)
    )
    return [(group, role) for group, role in result.all()]


def _initial_role(value: MemberRole | str | None) -> MemberRole:
    if value is None:
        return MemberRole.MEMBER
    try:
        role = MemberRole(value)
    except ValueError:
        raise InvalidRoleError(str(value))
    if role == MemberRole.OWNER:
        logger.warning("Ignoring owner role requested for an initial member")
        return MemberRole.MEMBER
    return role


class GroupService:
    def __init__(self, memberships: "MembershipService"):
        self.memberships = memberships

    async def _generate_unique_join_code(self, db: AsyncSession) -> str:
        for _ in range(_MAX_JOIN_CODE_ATTEMPTS):
            code = generate_join_code()
            taken = await db.execute(select(Group.id).where(Group.join_code == code))
            if taken.scalar_one_or_none() is None:
                return code
        raise PersistenceError("Could not allocate a unique join code")

    async def create_group(
        self,
        db: AsyncSession,
        name: str,
        owner_id: uuid.UUID,
        requires_approval: bool = False,
        initial_member_ids: Iterable[uuid.UUID] = (),
        initial_roles: Mapping[uuid.UUID, MemberRole | str] | None = None,
    ) -> Group:
        name = name.strip()
        if not name:
            raise InvalidRequestError("Group name is required")
        initial_roles = initial_roles or {}

        added: list[GroupMember] = []
        try:
            group = Group(
                name=name,
                owner_id=owner_id,
                join_code=await self._generate_unique_join_code(db),
                requires_approval=requires_approval,
                is_direct_message=False,
            )
            db.add(group)
            await db.flush()

            await self.memberships.stage_member(db, group.id, owner_id, role=MemberRole.OWNER)

            for uid in dict.fromkeys(initial_member_ids):
                if uid == owner_id:
                    continue
                member, created = await self.memberships.stage_member(
                    db, group.id, uid, role=_initial_role(initial_roles.get(uid))
                )
                if created:
                    added.append(member)

            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            raise PersistenceError(f"Could not create group \"{name}\"") from exc

        logger.info(f"Group {group.id} \"{name}\" created by {owner_id} with {len(added)} initial member(s)")
        snapshot = GroupSnapshot.model_validate(group)
        for member in added:
            self.memberships.notify_added(snapshot, member)
        return group

    async def _find_direct_chat(self, db: AsyncSession, name: str) -> uuid.UUID | None:
        result = await db.execute(
            select(Group.id).where(Group.name == name, Group.is_direct_message.is_(True))
        )
        return result.scalar_one_or_none()

    async def get_or_create_direct_chat(self, db: AsyncSession, user_a: uuid.UUID, user_b: uuid.UUID) -> uuid.UUID:
        if user_a == user_b:
            raise InvalidRequestError("Cannot open a direct chat with yourself")
        name = direct_chat_name(user_a, user_b)

        for _ in range(settings.DM_CREATE_MAX_ATTEMPTS):
            existing_id = await self._find_direct_chat(db, name)
            if existing_id is not None:
                return existing_id

            try:
                group = Group(
                    name=name,
                    owner_id=user_a,
                    join_code=None,
                    requires_approval=False,
                    is_direct_message=True,
                )
                db.add(group)
                await db.flush()
                group_id = group.id
                for uid in (user_a, user_b):
                    await self.memberships.stage_member(db, group_id, uid, role=MemberRole.MEMBER)
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info(f"Direct chat {name} was created concurrently, looking it up again")
                continue
            except SQLAlchemyError as exc:
                await db.rollback()
                raise PersistenceError("Could not create direct chat") from exc

            logger.info(f"Created direct chat {group_id} for {user_a} and {user_b}")
            return group_id

        raise PersistenceError("Could not create direct chat")

    async def regenerate_join_code(self, db: AsyncSession, group_id: uuid.UUID, requester_id: uuid.UUID) -> str:
        group = await get_group(db, group_id)
        actor = await membership_store.get_snapshot(db, group_id, requester_id)
        decision = permissions.can_regenerate_join_code(actor)
        if not decision:
            raise PermissionDeniedError(decision.reason)

        try:
            new_code = await self._generate_unique_join_code(db)
            group.join_code = new_code
            group.updated_at = datetime.now(timezone.utc)
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            raise PersistenceError("Could not regenerate join code") from exc

        logger.info(f"Join code of group {group_id} regenerated by {requester_id}")
        return new_code

    async def join_by_code(self, db: AsyncSession, code: str, user_id: uuid.UUID) -> JoinResult:
        result = await db.execute(select(Group).where(Group.join_code == normalize_join_code(code)))
        group = result.scalar_one_or_none()
        if group is None or group.is_direct_message:
            raise InvalidJoinCodeError()

        existing = await membership_store.get_membership(db, group.id, user_id)
        if existing is not None:
            if existing.status == MemberStatus.PENDING:
                raise AlreadyPendingError()
            raise AlreadyMemberError()

        snapshot = GroupSnapshot.model_validate(group)
        target_status = MemberStatus.PENDING if group.requires_approval else MemberStatus.ACTIVE
        member, created = await self.memberships.insert_member(
            db, group.id, user_id, MemberRole.MEMBER, target_status
        )
        if not created:
            await db.refresh(group)
        status = MemberStatus(member.status)

        if created and status == MemberStatus.PENDING:
            await self._notify_join_request(db, snapshot, member)
        return JoinResult(status=status, group=group)

    async def _notify_join_request(self, db: AsyncSession, group: GroupSnapshot, joiner: GroupMember) -> None:
        managers = await membership_store.list_managers(db, group.id)
        for manager in managers:
            self.memberships.send_notification(
                manager.user_id,
                NotificationType.JOIN_REQUEST,
                "New join request",
                f"{joiner.username} wants to join \"{group.name}\"",
                {"group_id": group.id, "joiner_id": joiner.user_id},
            )

    async def get_group_detail(
        self, db: AsyncSession, group_id: uuid.UUID, requester_id: uuid.UUID
    ) -> tuple[Group, MemberRole]:
        snapshot = await self.memberships.require_active_member(db, group_id, requester_id)
        return await get_group(db, group_id), snapshot.role
