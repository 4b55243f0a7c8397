from fastapi import Request

from app.services.group_service import GroupService
from app.services.membership_service import MembershipService


def get_membership_service(request: Request) -> MembershipService:
    return request.app.state.membership_service


def get_group_service(request: Request) -> GroupService:
    return request.app.state.group_service
