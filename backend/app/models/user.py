from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

ApprovalStatus = Literal["pending", "approved", "rejected"]


class Profile(BaseModel):
    """
    Database model for public.profiles
    """

    id: UUID
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: Optional[str] = None
    institution: Optional[str] = None
    approval_status: Optional[ApprovalStatus] = None
    rejected_reason: Optional[str] = None
    approved_by: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UpdateRoleRequest(BaseModel):
    user_id: UUID = Field(..., alias="userId")
    role: str = Field(..., min_length=1, max_length=50)

    model_config = ConfigDict(populate_by_name=True)


class ApproveUserRequest(BaseModel):
    user_id: UUID = Field(..., alias="userId")
    action: Literal["approve", "reject"]
    reason: Optional[str] = Field(default=None, max_length=2000)

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def _reason_required_on_reject(self) -> "ApproveUserRequest":
        if self.action == "reject" and not (self.reason or "").strip():
            raise ValueError("Rejection reason is required")
        return self


class RemoveUserRequest(BaseModel):
    user_id: UUID = Field(..., alias="userId")
    reason: str = Field(..., min_length=1, max_length=2000)

    model_config = ConfigDict(populate_by_name=True)


class WorkflowSettingsUpdate(BaseModel):
    review_timeouts_days: Optional[int] = Field(default=None, ge=1, le=365)
    escalation_email: Optional[str] = Field(default=None, max_length=320)
    default_primary_contact: Optional[str] = Field(default=None, max_length=320)
    file_retention_years: Optional[int] = Field(default=None, ge=1, le=100)
