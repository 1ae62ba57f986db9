from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, HTTPException

from app.core.auth_utils import get_current_user
from app.core.role_matrix import Capability, has_capability, list_capabilities, normalize_role
from app.lib.api_client import supabase_admin

logger = logging.getLogger("rfaportal.roles")


@dataclass(frozen=True)
class RequestContext:
    """
    请求级身份上下文。

    中文注释:
    - 每个请求只解析一次身份与 profile，之后显式传给 service / 流程引擎，不再在各处重复查询。
    - role 已经过 normalize_role（历史别名已解析）。
    """

    user_id: str
    email: Optional[str]
    role: str
    institution: Optional[str]
    full_name: Optional[str] = None
    approval_status: Optional[str] = None

    def can(self, capability: str | Capability) -> bool:
        return has_capability(self.role, capability)

    @property
    def capabilities(self) -> list[str]:
        return sorted(list_capabilities(self.role))


def _load_profile(user_id: str) -> Optional[dict]:
    try:
        resp = (
            supabase_admin.table("profiles")
            .select("id,email,full_name,role,institution,approval_status")
            .eq("id", user_id)
            .limit(1)
            .execute()
        )
    except Exception as e:
        logger.error("[Profile] load failed for %s: %s", user_id, e)
        raise HTTPException(status_code=500, detail="Failed to load profile") from e
    rows = getattr(resp, "data", None) or []
    return rows[0] if rows else None


async def get_request_context(current_user: dict = Depends(get_current_user)) -> RequestContext:
    """
    由 JWT 用户 + profiles 行构造 RequestContext。

    - profile 不存在: 404（与旧实现一致）
    - 注册待审批/被拒绝的账号: 403
    """
    user_id = str(current_user["id"])
    profile = _load_profile(user_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")

    approval_status = profile.get("approval_status")
    if approval_status in {"pending", "rejected"}:
        raise HTTPException(status_code=403, detail=f"Account {approval_status}")

    return RequestContext(
        user_id=user_id,
        email=profile.get("email") or current_user.get("email"),
        role=normalize_role(profile.get("role")),
        institution=profile.get("institution"),
        full_name=profile.get("full_name"),
        approval_status=approval_status,
    )


def require_capability(*capabilities: str | Capability) -> Callable[..., RequestContext]:
    """
    路由依赖：要求当前角色至少具备其中一项能力。
    """

    async def _dep(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
        if not any(ctx.can(c) for c in capabilities):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return ctx

    return _dep
