from typing import Optional

from fastapi import APIRouter, Depends

from app.core.role_matrix import Capability, secondary_stages
from app.core.roles import RequestContext, get_request_context, require_capability
from app.models.submission import workflow_definition
from app.models.user import ApproveUserRequest, RemoveUserRequest, UpdateRoleRequest
from app.services.user_management import UserManagementService

router = APIRouter(prefix="/users", tags=["User Management"])

user_viewers = require_capability(Capability.VIEW_USERS)
user_managers = require_capability(Capability.MANAGE_USERS)
signup_approvers = require_capability(Capability.APPROVE_USERS)


def get_user_management_service() -> UserManagementService:
    return UserManagementService()


@router.get("/me")
async def get_me(ctx: RequestContext = Depends(get_request_context)):
    """
    当前用户身份 + 能力列表 + 状态机定义（前端据此决定显示哪些按钮）。
    """
    return {
        "success": True,
        "data": {
            "id": ctx.user_id,
            "email": ctx.email,
            "full_name": ctx.full_name,
            "role": ctx.role,
            "institution": ctx.institution,
            "capabilities": ctx.capabilities,
            "secondary_stages": sorted(secondary_stages(ctx.role)),
            "workflow": workflow_definition(),
        },
    }


@router.get("")
async def list_users(
    approval_status: Optional[str] = None,
    role: Optional[str] = None,
    ctx: RequestContext = Depends(user_viewers),
    service: UserManagementService = Depends(get_user_management_service),
):
    return {
        "success": True,
        "data": service.list_users(ctx, approval_status=approval_status, role=role),
    }


@router.patch("")
async def update_user_role(
    payload: UpdateRoleRequest,
    ctx: RequestContext = Depends(user_managers),
    service: UserManagementService = Depends(get_user_management_service),
):
    """
    修改用户角色（administrator / institution_manager；registration 只读）。
    """
    return service.update_role(ctx, payload)


@router.post("/approve")
async def approve_user(
    payload: ApproveUserRequest,
    ctx: RequestContext = Depends(signup_approvers),
    service: UserManagementService = Depends(get_user_management_service),
):
    return service.review_signup(ctx, payload)


@router.post("/remove")
async def remove_user(
    payload: RemoveUserRequest,
    ctx: RequestContext = Depends(user_managers),
    service: UserManagementService = Depends(get_user_management_service),
):
    return service.remove_user(ctx, payload)
