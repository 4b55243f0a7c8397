import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_group_service
from app.api.groups import group_response
from app.core.security import get_current_user
from app.db.session import get_db
from app.models.group_member import MemberRole
from app.schemas.auth import CurrentUser
from app.schemas.groups import JoinByCodeRequest, JoinCodeResponse, JoinResponse
from app.services.group_service import GroupService

router = APIRouter(prefix="/api/v1/groups", tags=["invites"])


@router.post("/join", response_model=JoinResponse)
async def join_via_code(
    body: JoinByCodeRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: GroupService = Depends(get_group_service),
):
    result = await service.join_by_code(db, body.join_code, current_user.user_id)
    return JoinResponse(
        status=result.status,
        message=result.message,
        group=group_response(result.group, MemberRole.MEMBER, include_code=False),
    )


@router.post("/{group_id}/regenerate-code", response_model=JoinCodeResponse)
async def regenerate_code(
    group_id: uuid.UUID,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: GroupService = Depends(get_group_service),
):
    new_code = await service.regenerate_join_code(db, group_id, current_user.user_id)
    return JoinCodeResponse(join_code=new_code)
