import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_group_service, get_membership_service
from app.core.security import get_current_user
from app.db.session import get_db
from app.models.group import Group
from app.models.group_member import MemberRole
from app.schemas.auth import CurrentUser
from app.schemas.groups import (
    DirectChatRequest,
    DirectChatResponse,
    GroupCreate,
    GroupMemberResponse,
    GroupResponse,
    MemberAdd,
    MemberPermissionUpdate,
    MemberRoleUpdate,
    MemberStatusUpdate,
)
from app.services import group_service as groups
from app.services.group_service import GroupService
from app.services.membership_service import MembershipService

router = APIRouter(prefix="/api/v1/groups", tags=["groups"])


def group_response(group: Group, role: MemberRole | str | None = None, include_code: bool = True) -> GroupResponse:
    return GroupResponse(
        id=group.id,
        name=group.name,
        owner_id=group.owner_id,
        join_code=group.join_code if include_code else None,
        requires_approval=group.requires_approval,
        is_direct_message=group.is_direct_message,
        role=role,
        created_at=group.created_at,
        updated_at=group.updated_at,
    )


@router.post("", response_model=GroupResponse, status_code=201)
async def create_group(
    body: GroupCreate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: GroupService = Depends(get_group_service),
):
    group = await service.create_group(
        db,
        name=body.name,
        owner_id=current_user.user_id,
        requires_approval=body.requires_approval,
        initial_member_ids=body.member_ids,
        initial_roles=body.member_roles,
    )
    return group_response(group, MemberRole.OWNER)


@router.get("", response_model=list[GroupResponse])
async def list_groups(
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    rows = await groups.list_groups_for_user(db, current_user.user_id)
    return [
        group_response(group, role, include_code=role in (MemberRole.OWNER, MemberRole.ADMIN))
        for group, role in rows
    ]


@router.post("/direct", response_model=DirectChatResponse)
async def open_direct_chat(
    body: DirectChatRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: GroupService = Depends(get_group_service),
):
    group_id = await service.get_or_create_direct_chat(db, current_user.user_id, body.user_id)
    return DirectChatResponse(group_id=group_id)


@router.get("/{group_id}", response_model=GroupResponse)
async def get_group(
    group_id: uuid.UUID,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: GroupService = Depends(get_group_service),
):
    group, role = await service.get_group_detail(db, group_id, current_user.user_id)
    return group_response(group, role, include_code=role in (MemberRole.OWNER, MemberRole.ADMIN))


@router.get("/{group_id}/members", response_model=list[GroupMemberResponse])
async def list_members(
    group_id: uuid.UUID,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    memberships: MembershipService = Depends(get_membership_service),
):
    await memberships.require_active_member(db, group_id, current_user.user_id)
    members = await memberships.get_group_members(db, group_id)
    return [GroupMemberResponse.model_validate(m) for m in members]


@router.get("/{group_id}/pending", response_model=list[GroupMemberResponse])
async def list_pending_members(
    group_id: uuid.UUID,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    memberships: MembershipService = Depends(get_membership_service),
):
    await memberships.require_manager(db, group_id, current_user.user_id)
    members = await memberships.get_pending_members(db, group_id)
    return [GroupMemberResponse.model_validate(m) for m in members]


@router.post("/{group_id}/members", response_model=GroupMemberResponse, status_code=201)
async def add_member(
    group_id: uuid.UUID,
    body: MemberAdd,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    memberships: MembershipService = Depends(get_membership_service),
):
    member = await memberships.invite_member(db, group_id, body.user_id, current_user.user_id)
    return GroupMemberResponse.model_validate(member)


@router.delete("/{group_id}/members/{user_id}", status_code=204)
async def remove_member(
    group_id: uuid.UUID,
    user_id: uuid.UUID,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    memberships: MembershipService = Depends(get_membership_service),
):
    await memberships.remove_member(db, group_id, user_id, current_user.user_id)


@router.put("/{group_id}/members/{user_id}/role", response_model=GroupMemberResponse)
async def update_member_role(
    group_id: uuid.UUID,
    user_id: uuid.UUID,
    body: MemberRoleUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    memberships: MembershipService = Depends(get_membership_service),
):
    member = await memberships.update_member_role(db, group_id, user_id, body.role, current_user.user_id)
    return GroupMemberResponse.model_validate(member)


@router.put("/{group_id}/members/{user_id}/permission", response_model=GroupMemberResponse)
async def update_member_permission(
    group_id: uuid.UUID,
    user_id: uuid.UUID,
    body: MemberPermissionUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    memberships: MembershipService = Depends(get_membership_service),
):
    member = await memberships.toggle_admin_permission(
        db, group_id, user_id, body.can_manage_members, current_user.user_id
    )
    return GroupMemberResponse.model_validate(member)


@router.put("/{group_id}/members/{user_id}/status", response_model=GroupMemberResponse | None)
async def update_member_status(
    group_id: uuid.UUID,
    user_id: uuid.UUID,
    body: MemberStatusUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    memberships: MembershipService = Depends(get_membership_service),
):
    member = await memberships.update_member_status(db, group_id, user_id, body.status, current_user.user_id)
    return GroupMemberResponse.model_validate(member) if member is not None else None


@router.post("/{group_id}/leave", status_code=204)
async def leave_group(
    group_id: uuid.UUID,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    memberships: MembershipService = Depends(get_membership_service),
):
    await memberships.leave_group(db, group_id, current_user.user_id)
