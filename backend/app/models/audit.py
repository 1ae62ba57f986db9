from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuditAction(str, Enum):
    USER_SIGNUP = "user_signup"
    USER_APPROVED = "user_approved"
    USER_REJECTED = "user_rejected"
    USER_REMOVED = "user_removed"
    ROLE_CHANGE = "role_change"
    SUBMISSION_CREATED = "submission_created"
    SUBMISSION_UPDATED = "submission_updated"
    SUBMISSION_SUBMITTED = "submission_submitted"
    DOCUMENT_UPLOADED = "document_uploaded"
    REVIEW_CREATED = "review_created"
    REVIEW_APPROVED = "review_approved"
    REVIEW_REJECTED = "review_rejected"
    SUBMISSION_ARCHIVED = "submission_archived"
    SETTINGS_UPDATED = "settings_updated"
    USER_LOGIN = "user_login"
    USER_LOGOUT = "user_logout"


class AuditEntryCreate(BaseModel):
    """
    audit_logs 写入结构（只追加，不更新不删除）。
    """

    user_id: str
    action: str
    action_type: AuditAction
    submission_id: Optional[str] = None
    target_user_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(use_enum_values=True)


class AuditLogFilters(BaseModel):
    submission_id: Optional[str] = None
    action_type: Optional[str] = None
    user_id: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
