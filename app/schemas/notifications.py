import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class NotificationResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    type: str
    title: str
    message: str
    metadata: dict = Field(default_factory=dict, validation_alias="extra_data")
    read: bool
    created_at: datetime

    class Config:
        from_attributes = True
        populate_by_name = True


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    unread: int


class ReadAllResponse(BaseModel):
    updated: int
