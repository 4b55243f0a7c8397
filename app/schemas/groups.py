import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.models.group_member import MemberRole, MemberStatus


class MembershipSnapshot(BaseModel):
    """Immutable view of a ``group_members`` row used for authorization decisions."""

    group_id: uuid.UUID
    user_id: uuid.UUID
    role: MemberRole
    status: MemberStatus
    can_manage_members: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == MemberStatus.ACTIVE

    class Config:
        from_attributes = True
        frozen = True


class GroupSnapshot(BaseModel):
    id: uuid.UUID
    name: str
    owner_id: uuid.UUID
    join_code: str | None = None
    requires_approval: bool
    is_direct_message: bool

    class Config:
        from_attributes = True
        frozen = True


class GroupCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    requires_approval: bool = False
    member_ids: list[uuid.UUID] = Field(default_factory=list)
    member_roles: dict[uuid.UUID, Literal["admin", "member"]] = Field(default_factory=dict)


class JoinByCodeRequest(BaseModel):
    join_code: str = Field(..., min_length=1, max_length=16)


class DirectChatRequest(BaseModel):
    user_id: uuid.UUID


class DirectChatResponse(BaseModel):
    group_id: uuid.UUID


class MemberAdd(BaseModel):
    user_id: uuid.UUID


class MemberRoleUpdate(BaseModel):
    role: Literal["admin", "member"]


class MemberPermissionUpdate(BaseModel):
    can_manage_members: bool


class MemberStatusUpdate(BaseModel):
    status: Literal["active", "rejected"]


class JoinCodeResponse(BaseModel):
    join_code: str


class GroupMemberResponse(BaseModel):
    id: uuid.UUID
    group_id: uuid.UUID
    user_id: uuid.UUID
    username: str
    role: MemberRole
    status: MemberStatus
    can_manage_members: bool
    joined_at: datetime

    class Config:
        from_attributes = True


class GroupResponse(BaseModel):
    id: uuid.UUID
    name: str
    owner_id: uuid.UUID
    join_code: str | None = None
    requires_approval: bool
    is_direct_message: bool
    role: MemberRole | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class JoinResponse(BaseModel):
    status: MemberStatus
    message: str
    group: GroupResponse
