import uuid

from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.group_member import ROLE_RANK, GroupMember, MemberRole, MemberStatus
from app.schemas.groups import MembershipSnapshot

_role_order = case(
    {role.value: rank for role, rank in ROLE_RANK.items()},
    value=GroupMember.role,
    else_=len(ROLE_RANK),
)


async def get_membership(db: AsyncSession, group_id: uuid.UUID, user_id: uuid.UUID) -> GroupMember | None:
    result = await db.execute(
        select(GroupMember).where(
            GroupMember.group_id == group_id,
            GroupMember.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def get_snapshot(db: AsyncSession, group_id: uuid.UUID, user_id: uuid.UUID) -> MembershipSnapshot | None:
    member = await get_membership(db, group_id, user_id)
    return to_snapshot(member) if member is not None else None


def to_snapshot(member: GroupMember) -> MembershipSnapshot:
    return MembershipSnapshot.model_validate(member)


def stage_membership(
    db: AsyncSession,
    group_id: uuid.UUID,
    user_id: uuid.UUID,
    username: str,
    role: MemberRole,
    status: MemberStatus,
    can_manage_members: bool,
) -> GroupMember:
    """Add a new row to the session; the caller flushes and commits."""
    member = GroupMember(
        group_id=group_id,
        user_id=user_id,
        username=username,
        role=role.value,
        status=status.value,
        can_manage_members=can_manage_members,
    )
    db.add(member)
    return member


async def update_membership(db: AsyncSession, group_id: uuid.UUID, user_id: uuid.UUID, **values) -> int:
    result = await db.execute(
        update(GroupMember)
        .where(GroupMember.group_id == group_id, GroupMember.user_id == user_id)
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount


async def delete_membership(db: AsyncSession, group_id: uuid.UUID, user_id: uuid.UUID) -> int:
    result = await db.execute(
        delete(GroupMember)
        .where(GroupMember.group_id == group_id, GroupMember.user_id == user_id)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount


async def list_memberships(db: AsyncSession, group_id: uuid.UUID, status: MemberStatus) -> list[GroupMember]:
    result = await db.execute(
        select(GroupMember)
        .where(GroupMember.group_id == group_id, GroupMember.status == status.value)
        .order_by(_role_order, GroupMember.joined_at)
    )
    return list(result.scalars().all())


async def list_managers(db: AsyncSession, group_id: uuid.UUID) -> list[GroupMember]:
    """Active owners and admins, the audience for join requests."""
    result = await db.execute(
        select(GroupMember).where(
            GroupMember.group_id == group_id,
            GroupMember.status == MemberStatus.ACTIVE.value,
            GroupMember.role.in_([MemberRole.OWNER.value, MemberRole.ADMIN.value]),
        )
    )
    return list(result.scalars().all())
