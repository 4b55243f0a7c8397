from fastapi import HTTPException, status

from app.services.permissions import DenialReason


class CollabServiceError(HTTPException):
    code = "collab_error"

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR, **extra):
        self.message = message
        super().__init__(status_code=status_code, detail={"code": self.code, "message": message, **extra})


class GroupNotFoundError(CollabServiceError):
    code = "group_not_found"

    def __init__(self):
        super().__init__("Group not found", status_code=status.HTTP_404_NOT_FOUND)


class InvalidJoinCodeError(CollabServiceError):
    code = "invalid_join_code"

    def __init__(self):
        super().__init__("Invalid Group Code", status_code=status.HTTP_404_NOT_FOUND)


class MemberNotFoundError(CollabServiceError):
    code = "member_not_found"

    def __init__(self):
        super().__init__("User is not a member of this group", status_code=status.HTTP_404_NOT_FOUND)


class NotificationNotFoundError(CollabServiceError):
    code = "notification_not_found"

    def __init__(self):
        super().__init__("Notification not found", status_code=status.HTTP_404_NOT_FOUND)


class AlreadyMemberError(CollabServiceError):
    code = "already_member"

    def __init__(self):
        super().__init__("Already a member of this group", status_code=status.HTTP_409_CONFLICT)


class AlreadyPendingError(CollabServiceError):
    code = "already_pending"

    def __init__(self):
        super().__init__("Join request is already pending approval", status_code=status.HTTP_409_CONFLICT)


class MemberNotPendingError(CollabServiceError):
    code = "member_not_pending"

    def __init__(self):
        super().__init__("Membership is not awaiting approval", status_code=status.HTTP_409_CONFLICT)


_DENIAL_MESSAGES = {
    DenialReason.NOT_A_MEMBER: "You are not allowed to manage members of this group",
    DenialReason.CANNOT_REMOVE_OWNER: "Cannot remove the group owner",
    DenialReason.ADMINS_CANNOT_REMOVE_ADMINS: "Admins cannot remove other admins",
    DenialReason.ONLY_OWNER_CAN_CHANGE_ROLES: "Only the owner can change roles",
    DenialReason.CANNOT_CHANGE_OWNER_ROLE: "Cannot change the owner's role",
    DenialReason.ONLY_OWNER_CAN_TOGGLE_PERMISSION: "Only the owner can change admin permissions",
    DenialReason.TARGET_NOT_ADMIN: "Permissions can only be toggled on admins",
    DenialReason.ONLY_OWNER_CAN_REGENERATE_CODE: "Only the owner can regenerate the join code",
    DenialReason.OWNER_CANNOT_LEAVE: "The owner cannot leave the group",
}


class PermissionDeniedError(CollabServiceError):
    code = "permission_denied"

    def __init__(self, reason: DenialReason):
        self.reason = reason
        super().__init__(
            _DENIAL_MESSAGES[reason],
            status_code=status.HTTP_403_FORBIDDEN,
            reason=reason.value,
        )


class InvalidRoleError(CollabServiceError):
    code = "invalid_role"

    def __init__(self, role: str):
        super().__init__(f"Role \"{role}\" cannot be assigned", status_code=status.HTTP_400_BAD_REQUEST)


class InvalidRequestError(CollabServiceError):
    code = "invalid_request"

    def __init__(self, message: str):
        super().__init__(message, status_code=status.HTTP_400_BAD_REQUEST)


class PersistenceError(CollabServiceError):
    code = "persistence_error"

    def __init__(self, message: str = "The database rejected the operation"):
        super().__init__(message, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
