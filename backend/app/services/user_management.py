from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException

from app.core.role_matrix import Capability, Role, is_valid_role, normalize_role
from app.core.roles import RequestContext
from app.lib.api_client import supabase_admin
from app.models.audit import AuditAction
from app.models.user import ApproveUserRequest, RemoveUserRequest, UpdateRoleRequest
from app.services.audit_service import AuditService
from app.services.notification_service import NotificationService

logger = logging.getLogger("rfaportal.users")

PROFILE_COLUMNS = "id,email,full_name,role,institution,approval_status,created_at"


class UserManagementService:
    """
    用户管理：列表、角色变更、注册审批、移除。

    中文注释:
    - registration 角色只读；institution_manager 只能操作本机构用户，且不能授予 administrator、不能移除管理员。
    - 所有写操作都写 audit_logs（role_change / user_approved / user_rejected / user_removed）。
    """

    def __init__(
        self,
        client: Any = None,
        audit: Optional[AuditService] = None,
        notifications: Optional[NotificationService] = None,
    ) -> None:
        self.client = client if client is not None else supabase_admin
        self.audit = audit if audit is not None else AuditService(self.client)
        self.notifications = notifications if notifications is not None else NotificationService(self.client)

    def _get_profile(self, user_id: str) -> Dict[str, Any]:
        res = (
            self.client.table("profiles")
            .select(PROFILE_COLUMNS)
            .eq("id", user_id)
            .limit(1)
            .execute()
        )
        rows = getattr(res, "data", None) or []
        if not rows:
            raise HTTPException(status_code=404, detail="User not found")
        return rows[0]

    def _ensure_same_institution(self, ctx: RequestContext, target: Dict[str, Any]) -> None:
        if ctx.can(Capability.VIEW_ALL_INSTITUTIONS):
            return
        if str(target.get("institution") or "") != str(ctx.institution or ""):
            raise HTTPException(status_code=403, detail="You can only modify users from your own institution")

    def list_users(
        self,
        ctx: RequestContext,
        *,
        approval_status: Optional[str] = None,
        role: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query = self.client.table("profiles").select(PROFILE_COLUMNS)
        if not ctx.can(Capability.VIEW_ALL_INSTITUTIONS):
            query = query.eq("institution", ctx.institution)
        if approval_status:
            query = query.eq("approval_status", approval_status)
        if role:
            query = query.eq("role", normalize_role(role))
        res = query.order("full_name", desc=False).execute()
        return getattr(res, "data", None) or []

    def update_role(self, ctx: RequestContext, payload: UpdateRoleRequest) -> Dict[str, Any]:
        new_role = normalize_role(payload.role)
        if not is_valid_role(new_role):
            raise HTTPException(status_code=400, detail="Invalid role")
        if new_role == Role.ADMINISTRATOR.value and not ctx.can(Capability.VIEW_ALL_INSTITUTIONS):
            raise HTTPException(status_code=403, detail="Institution Managers cannot assign the Administrator role")

        user_id = str(payload.user_id)
        target = self._get_profile(user_id)
        self._ensure_same_institution(ctx, target)
        # 与移除同一条保护：非管理员不能改动管理员账号的角色
        if normalize_role(target.get("role")) == Role.ADMINISTRATOR.value and ctx.role != Role.ADMINISTRATOR.value:
            raise HTTPException(status_code=403, detail="Cannot change the role of Administrator accounts")

        old_role = target.get("role")
        res = self.client.table("profiles").update({"role": new_role}).eq("id", user_id).execute()
        rows = getattr(res, "data", None) or []
        if not rows:
            raise HTTPException(status_code=500, detail="Failed to update role")

        name = target.get("full_name") or target.get("email") or user_id
        action = f"Changed {name}'s role from {old_role} to {new_role}"
        self.audit.log_user_action(
            actor_id=ctx.user_id,
            action_type=AuditAction.ROLE_CHANGE,
            action=action,
            target_user_id=user_id,
            details={
                "target_user_id": user_id,
                "target_user_name": target.get("full_name"),
                "target_user_email": target.get("email"),
                "old_role": old_role,
                "new_role": new_role,
                "changed_by_id": ctx.user_id,
                "changed_by_role": ctx.role,
            },
        )
        self.notifications.create_notification(
            user_id=user_id,
            submission_id=None,
            type="role_change",
            title="Your Role Has Been Updated",
            message=action,
        )
        logger.info("[Users] role changed: %s %s -> %s by %s", user_id, old_role, new_role, ctx.user_id)
        return {
            "success": True,
            "user": rows[0],
            "message": f"Successfully updated {name} to {new_role}",
        }

    def review_signup(self, ctx: RequestContext, payload: ApproveUserRequest) -> Dict[str, Any]:
        user_id = str(payload.user_id)
        target = self._get_profile(user_id)
        name = target.get("full_name") or target.get("email") or user_id
        now = datetime.now(timezone.utc).isoformat()

        if payload.action == "approve":
            update = {"approval_status": "approved", "approved_by": ctx.user_id, "approved_at": now}
            action_type = AuditAction.USER_APPROVED
            action = f"Approved user signup: {name}"
            details: Dict[str, Any] = {
                "approved_user_id": user_id,
                "approved_user_name": target.get("full_name"),
                "approved_user_email": target.get("email"),
                "institution": target.get("institution"),
                "approver_id": ctx.user_id,
            }
        else:
            update = {
                "approval_status": "rejected",
                "rejected_reason": payload.reason,
                "approved_by": ctx.user_id,
                "approved_at": now,
            }
            action_type = AuditAction.USER_REJECTED
            action = f"Rejected user signup: {name}"
            details = {
                "rejected_user_id": user_id,
                "rejected_user_name": target.get("full_name"),
                "rejected_user_email": target.get("email"),
                "institution": target.get("institution"),
                "reason": payload.reason,
                "approver_id": ctx.user_id,
            }

        self.client.table("profiles").update(update).eq("id", user_id).execute()
        self.audit.log_user_action(
            actor_id=ctx.user_id,
            action_type=action_type,
            action=action,
            target_user_id=user_id,
            details=details,
        )
        verb = "approved" if payload.action == "approve" else "rejected"
        return {"success": True, "message": f"Successfully {verb} {name}"}

    def remove_user(self, ctx: RequestContext, payload: RemoveUserRequest) -> Dict[str, Any]:
        user_id = str(payload.user_id)
        target = self._get_profile(user_id)
        self._ensure_same_institution(ctx, target)

        target_role = normalize_role(target.get("role"))
        if target_role == Role.ADMINISTRATOR.value and ctx.role != Role.ADMINISTRATOR.value:
            raise HTTPException(status_code=403, detail="Cannot remove Administrator accounts")

        name = target.get("full_name") or target.get("email") or user_id
        # 先写审计再删除：删除后 profile 信息不可再取
        self.audit.log_user_action(
            actor_id=ctx.user_id,
            action_type=AuditAction.USER_REMOVED,
            action=f"Removed user from system: {name}",
            target_user_id=user_id,
            details={
                "removed_user_id": user_id,
                "removed_user_name": target.get("full_name"),
                "removed_user_email": target.get("email"),
                "removed_user_role": target.get("role"),
                "institution": target.get("institution"),
                "reason": payload.reason,
                "remover_id": ctx.user_id,
            },
        )
        try:
            self.client.rpc("delete_user_completely", {"user_id": user_id}).execute()
        except Exception as e:
            logger.error("[Users] delete_user_completely failed for %s: %s", user_id, e)
            raise HTTPException(status_code=500, detail="Failed to remove user") from e
        return {"success": True, "message": f"Successfully removed {name} from the system"}
