from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field
from pydantic.config import ConfigDict


NotificationType = Literal["submission", "review", "review_decision", "role_change", "system"]


class Notification(BaseModel):
    """
    通知实体（用于 API 返回）

    中文注释:
    - notifications 表由 Supabase 存储；此模型用于后端显式校验输出结构。
    """

    id: UUID
    user_id: UUID
    submission_id: Optional[UUID] = None
    type: NotificationType
    title: str = Field(..., max_length=255)
    message: str = Field(..., max_length=2000)
    is_read: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationMarkRead(BaseModel):
    notification_ids: List[str] = Field(..., alias="notificationIds")
    read: bool = True

    model_config = ConfigDict(populate_by_name=True)
